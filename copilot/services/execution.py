"""Simulated execution scheduler.

Each submitted draft runs as its own asyncio Task:

    queued -> (funding check) -> executing -> sleep(delay) -> executed
                    \\-> blocked

Executions are serialized with a lock so at most one draft is executing at a
time. On success the draft's preview message is rewritten in place and the
conversation returns to Idle if (and only if) it still names this draft.
Only reset cancels a task.
"""
import asyncio
import time
from typing import Dict, List, Optional, Tuple

from copilot.agents import response_templates as templates
from copilot.core.diagnostics import Diagnostics
from copilot.core.logging import get_logger
from copilot.db.repo.drafts_repo import DraftsRepo
from copilot.db.repo.messages_repo import MessagesRepo, build_message
from copilot.orchestrator.state_machine import IN_FLIGHT_DRAFT_STATUSES, DraftStatus
from copilot.services.account import SimulatedAccount
from copilot.services.conversation_state import ConversationStateStore
from copilot.services.draft_lifecycle import DraftLifecycleManager

logger = get_logger(__name__)


class ExecutionScheduler:
    """Owns the background execution tasks."""

    def __init__(
        self,
        lifecycle: DraftLifecycleManager,
        drafts_repo: DraftsRepo,
        messages_repo: MessagesRepo,
        state_store: ConversationStateStore,
        account: SimulatedAccount,
        diagnostics: Diagnostics,
        delay_seconds: float = 1.5,
    ):
        self.lifecycle = lifecycle
        self.drafts = drafts_repo
        self.messages = messages_repo
        self.state = state_store
        self.account = account
        self.diagnostics = diagnostics
        self.delay_seconds = delay_seconds
        self._lock = asyncio.Lock()
        self._tasks: Dict[str, Tuple[str, asyncio.Task]] = {}
        self._failures: List[BaseException] = []

    def submit(self, session_id: str, draft_id: str) -> Optional[asyncio.Task]:
        """Queue a draft (from draft or blocked) and start its execution task.

        Returns None if the draft could not be queued.
        """
        queued = self.lifecycle.transition_status(draft_id, DraftStatus.QUEUED)
        if queued is None:
            return None
        task = asyncio.create_task(self._run(session_id, draft_id), name=f"execute:{draft_id}")
        self._tasks[draft_id] = (session_id, task)
        task.add_done_callback(lambda _t, d=draft_id: self._tasks.pop(d, None))
        return task

    def in_flight(self, session_id: Optional[str] = None) -> List[str]:
        return [d for d, (s, _) in self._tasks.items() if session_id is None or s == session_id]

    async def _run(self, session_id: str, draft_id: str) -> None:
        started = time.monotonic()
        try:
            async with self._lock:
                await self._execute(session_id, draft_id)
        except asyncio.CancelledError:
            logger.info(
                "Execution of %s cancelled", draft_id,
                extra={"session_id": session_id, "draft_id": draft_id, "event": "execution_cancelled"},
            )
            raise
        except Exception as exc:
            self._failures.append(exc)
            logger.exception(
                "Execution of %s failed", draft_id,
                extra={"session_id": session_id, "draft_id": draft_id, "event": "execution_failed"},
            )
            self.state.settle(session_id, draft_id)
            raise
        finally:
            logger.debug(
                "Execution task for %s finished", draft_id,
                extra={"draft_id": draft_id, "elapsed_ms": int((time.monotonic() - started) * 1000)},
            )

    def _block(self, session_id: str, draft) -> None:
        blocked = self.lifecycle.transition_status(draft.draft_id, DraftStatus.BLOCKED)
        if blocked is None:
            return
        card = templates.blocked_card(blocked, self.account.available_collateral())
        self.messages.append(build_message(session_id, "assistant", card["content"], draft_id=draft.draft_id, render_hints=card["render_hints"]))
        self.state.settle(session_id, draft.draft_id)

    async def _execute(self, session_id: str, draft_id: str) -> None:
        draft = self.drafts.get(draft_id)
        if draft is None or draft.status != DraftStatus.QUEUED:
            # discarded by a reset while waiting for the lock
            return

        if not self.account.has_collateral_for(draft.margin_usd):
            self._block(session_id, draft)
            return

        if self.lifecycle.transition_status(draft_id, DraftStatus.EXECUTING) is None:
            return

        await asyncio.sleep(self.delay_seconds)

        draft = self.drafts.get(draft_id)
        if draft is None or draft.status != DraftStatus.EXECUTING:
            return
        if not self.account.has_collateral_for(draft.margin_usd):
            self._block(session_id, draft)
            return

        executed = self.lifecycle.transition_status(draft_id, DraftStatus.EXECUTED)
        if executed is None:
            return
        self.account.apply_execution(executed)

        self._replace_preview(session_id, executed)
        self.state.settle(session_id, draft_id)
        logger.info(
            "Executed %s on %s", draft_id, executed.market,
            extra={"session_id": session_id, "draft_id": draft_id, "event": "draft_executed"},
        )

    def _replace_preview(self, session_id: str, draft) -> None:
        """Turn the draft's preview message into its executed card."""
        card = templates.executed_card(draft)
        preview = self.messages.find_draft_preview(session_id, draft.draft_id)
        if preview is None:
            self.messages.append(build_message(session_id, "assistant", card["content"], draft_id=draft.draft_id, render_hints=card["render_hints"]))
            return
        if not self.diagnostics.check(
            preview.draft_id == draft.draft_id,
            "message_draft_mismatch",
            "executed card would overwrite a message for another draft",
            message_id=preview.message_id,
            draft_id=draft.draft_id,
        ):
            return
        updated = self.messages.replace_draft_message(preview.message_id, draft.draft_id, card["content"], card["render_hints"])
        self.diagnostics.check(
            updated,
            "message_draft_mismatch",
            "preview message no longer references this draft",
            message_id=preview.message_id,
            draft_id=draft.draft_id,
        )

    def cancel_session(self, session_id: str) -> List[str]:
        """Cancel every in-flight execution of a session and discard its drafts."""
        cancelled: List[str] = []
        for draft_id, (owner, task) in list(self._tasks.items()):
            if owner != session_id:
                continue
            task.cancel()
            draft = self.drafts.get(draft_id)
            if draft is not None and draft.status in IN_FLIGHT_DRAFT_STATUSES:
                self.lifecycle.discard(draft_id)
            cancelled.append(draft_id)
        return cancelled

    async def drain(self) -> None:
        """Wait for every running execution. Re-raises the first task failure."""
        while True:
            tasks = [t for _, t in list(self._tasks.values()) if not t.done()]
            if not tasks:
                break
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._failures:
            failure = self._failures.pop(0)
            self._failures.clear()
            raise failure
