from typing import List, Optional
import json
from copilot.agents.schemas import ChatSession, Message
from copilot.db.connect import get_conn
from copilot.core.time import now_iso
from copilot.core.logging import get_logger

logger = get_logger(__name__)

UNTITLED = "Untitled"
TITLE_MAX_CHARS = 60
IDLE_STATE_JSON = json.dumps({"mode": "idle"})


def title_from_text(text: str) -> str:
    """Session title derived from the first user message."""
    title = " ".join(text.split())
    if len(title) > TITLE_MAX_CHARS:
        title = title[:TITLE_MAX_CHARS - 3].rstrip() + "..."
    return title or UNTITLED


def _row_to_session(row) -> ChatSession:
    return ChatSession(
        session_id=row["session_id"],
        title=row["title"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        last_message_at=row["last_message_at"],
    )


class SessionsRepo:
    def create(self, session_id: str, title: str = UNTITLED) -> ChatSession:
        """Create an empty session."""
        now = now_iso()
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO conversations (session_id, title, state_json, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_id, title, IDLE_STATE_JSON, now, now)
            )
            conn.commit()
        logger.info(f"Created session {session_id}", extra={"session_id": session_id, "event": "session_created"})
        return ChatSession(session_id=session_id, title=title, created_at=now, updated_at=now)

    def create_with_first_message(self, session_id: str, message: Message) -> ChatSession:
        """Create a session and append its first user message in one transaction.

        Either both rows exist afterwards or neither does.
        """
        now = now_iso()
        title = title_from_text(message.content)
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO conversations (session_id, title, state_json, created_at, updated_at, last_message_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (session_id, UNTITLED, IDLE_STATE_JSON, now, now, message.created_at)
            )
            cursor.execute(
                """
                INSERT INTO messages (
                    message_id, session_id, role, content, draft_id,
                    render_hints_json, idempotency_key, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.message_id, session_id, message.role, message.content,
                    message.draft_id, json.dumps(message.render_hints),
                    message.idempotency_key, message.created_at
                )
            )
            # Title moves off the sentinel only once a user message exists
            cursor.execute(
                "UPDATE conversations SET title = ? WHERE session_id = ? AND title = ?",
                (title, session_id, UNTITLED)
            )
            conn.commit()
        logger.info(
            f"Created session {session_id} with first message",
            extra={"session_id": session_id, "event": "session_created"},
        )
        return ChatSession(
            session_id=session_id, title=title, created_at=now, updated_at=now,
            last_message_at=message.created_at,
        )

    def get(self, session_id: str) -> Optional[ChatSession]:
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM conversations WHERE session_id = ?", (session_id,))
            row = cursor.fetchone()
            return _row_to_session(row) if row else None

    def exists(self, session_id: str) -> bool:
        return self.get(session_id) is not None

    def list_sessions(self, limit: int = 100) -> List[ChatSession]:
        """Sessions, most recently active first."""
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT * FROM conversations ORDER BY updated_at DESC, created_at DESC LIMIT ?",
                (limit,)
            )
            return [_row_to_session(row) for row in cursor.fetchall()]

    def rename_if_untitled(self, session_id: str, text: str) -> bool:
        """Replace the sentinel title; no-op once a real title is set."""
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE conversations SET title = ?, updated_at = ? WHERE session_id = ? AND title = ?",
                (title_from_text(text), now_iso(), session_id, UNTITLED)
            )
            conn.commit()
            return cursor.rowcount > 0

    def get_state_json(self, session_id: str) -> Optional[str]:
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT state_json FROM conversations WHERE session_id = ?", (session_id,))
            row = cursor.fetchone()
            return row["state_json"] if row else None

    def set_state_json(self, session_id: str, state_json: str) -> bool:
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE conversations SET state_json = ?, updated_at = ? WHERE session_id = ?",
                (state_json, now_iso(), session_id)
            )
            conn.commit()
            return cursor.rowcount > 0

    def compare_and_set_state_json(self, session_id: str, expected_json: str, new_json: str) -> bool:
        """Swap the state only if it still equals expected_json.

        Returns True if the row was updated, False if the state had moved on.
        """
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE conversations SET state_json = ?, updated_at = ?
                WHERE session_id = ? AND state_json = ?
                """,
                (new_json, now_iso(), session_id, expected_json)
            )
            conn.commit()
            return cursor.rowcount > 0

    def delete(self, session_id: str) -> bool:
        """Explicit delete; messages and drafts cascade."""
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute("DELETE FROM conversations WHERE session_id = ?", (session_id,))
            conn.commit()
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info(f"Deleted session {session_id}", extra={"session_id": session_id, "event": "session_deleted"})
        return deleted
