"""Conversation state management.

One ConversationState per session, persisted as JSON on the conversations row.
Every write is validated against the mode transition table and applied with a
compare-and-set on the stored JSON, so a late writer (an execution settling
after a reset, say) can never overwrite a newer state.
"""
from typing import Optional, Tuple

from copilot.agents.schemas import (
    AwaitingConfirmationState,
    AwaitingMarketClarificationState,
    ExecutingState,
    IdleState,
    Modifications,
    PendingIntent,
    conversation_state_adapter,
    state_mode,
)
from copilot.core.diagnostics import Diagnostics
from copilot.core.logging import get_logger
from copilot.db.repo.sessions_repo import SessionsRepo
from copilot.orchestrator.state_machine import ConversationMode, can_transition_mode

logger = get_logger(__name__)


class ConversationStateStore:
    """Reads and writes the per-session conversation state."""

    def __init__(self, sessions_repo: SessionsRepo, diagnostics: Diagnostics):
        self.sessions = sessions_repo
        self.diagnostics = diagnostics

    def _read(self, session_id: str) -> Tuple[Optional[str], object]:
        raw = self.sessions.get_state_json(session_id)
        if not raw:
            return raw, IdleState()
        return raw, conversation_state_adapter.validate_json(raw)

    def get(self, session_id: str):
        """Current state; Idle for unknown sessions."""
        return self._read(session_id)[1]

    def transition(self, session_id: str, new_state) -> bool:
        """Validated compare-and-set to new_state.

        Returns False if the transition is not allowed (non-strict mode) or the
        state changed underneath us.
        """
        raw, current = self._read(session_id)
        current_mode = state_mode(current)
        new_mode = state_mode(new_state)
        if not self.diagnostics.check(
            can_transition_mode(current_mode, new_mode),
            "invalid_mode_transition",
            f"{current_mode.value} -> {new_mode.value} is not allowed",
            session_id=session_id,
        ):
            return False
        return self._swap(session_id, raw, current_mode, new_state)

    def _swap(self, session_id: str, expected_raw: Optional[str], current_mode: ConversationMode, new_state) -> bool:
        new_raw = new_state.model_dump_json()
        if expected_raw is None:
            ok = self.sessions.set_state_json(session_id, new_raw)
        else:
            ok = self.sessions.compare_and_set_state_json(session_id, expected_raw, new_raw)
        if not ok:
            logger.warning(
                "State for %s changed concurrently; %s not applied", session_id, new_state.mode,
                extra={"session_id": session_id, "event": "state_cas_lost", "mode": new_state.mode},
            )
            return False
        logger.info(
            "Conversation %s: %s -> %s", session_id, current_mode.value, new_state.mode,
            extra={"session_id": session_id, "event": "mode_transition", "mode": new_state.mode},
        )
        return True

    # ---- Named transitions ----

    def await_clarification(
        self,
        session_id: str,
        pending_intent: PendingIntent,
        modifiers: Modifications,
        candidates=(),
        retries: int = 0,
    ) -> bool:
        return self.transition(
            session_id,
            AwaitingMarketClarificationState(
                pending_intent=pending_intent,
                extracted_modifiers=modifiers,
                candidates=list(candidates),
                retries=retries,
            ),
        )

    def await_confirmation(self, session_id: str, draft_id: str) -> bool:
        return self.transition(session_id, AwaitingConfirmationState(draft_id=draft_id, high_risk=True))

    def begin_executing(self, session_id: str, draft_id: str) -> bool:
        return self.transition(session_id, ExecutingState(draft_id=draft_id))

    def to_idle(self, session_id: str) -> bool:
        """Unconditional return to Idle (reset, discard, give up)."""
        raw, current = self._read(session_id)
        if isinstance(current, IdleState):
            return True
        return self._swap(session_id, raw, state_mode(current), IdleState())

    def settle(self, session_id: str, draft_id: str) -> bool:
        """Executing{draft_id} -> Idle, only if the state still names that draft."""
        raw, current = self._read(session_id)
        if not (isinstance(current, ExecutingState) and current.draft_id == draft_id):
            logger.info(
                "Settlement of %s left state %s untouched", draft_id, current.mode,
                extra={"session_id": session_id, "draft_id": draft_id, "event": "settle_skipped"},
            )
            return False
        return self._swap(session_id, raw, ConversationMode.EXECUTING, IdleState())
