from typing import Any, Dict, List, Optional
import json
from copilot.agents.schemas import Message
from copilot.db.connect import get_conn
from copilot.core.ids import new_id
from copilot.core.time import now_iso
from copilot.core.logging import get_logger

logger = get_logger(__name__)


def _row_to_message(row) -> Message:
    return Message(
        message_id=row["message_id"],
        session_id=row["session_id"],
        role=row["role"],
        content=row["content"],
        draft_id=row["draft_id"],
        render_hints=json.loads(row["render_hints_json"]) if row["render_hints_json"] else {},
        idempotency_key=row["idempotency_key"],
        created_at=row["created_at"],
    )


def build_message(
    session_id: str,
    role: str,
    content: str,
    draft_id: Optional[str] = None,
    render_hints: Optional[Dict[str, Any]] = None,
    idempotency_key: Optional[str] = None,
) -> Message:
    """New, not yet persisted message."""
    return Message(
        message_id=new_id("msg_"),
        session_id=session_id,
        role=role,
        content=content,
        draft_id=draft_id,
        render_hints=render_hints or {},
        idempotency_key=idempotency_key,
        created_at=now_iso(),
    )


class MessagesRepo:
    def append(self, message: Message) -> Message:
        """Append a message to an existing session. Messages are immutable once appended."""
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO messages (
                    message_id, session_id, role, content, draft_id,
                    render_hints_json, idempotency_key, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.message_id, message.session_id, message.role, message.content,
                    message.draft_id, json.dumps(message.render_hints),
                    message.idempotency_key, message.created_at
                )
            )
            cursor.execute(
                "UPDATE conversations SET updated_at = ?, last_message_at = ? WHERE session_id = ?",
                (message.created_at, message.created_at, message.session_id)
            )
            conn.commit()
        return message

    def get(self, message_id: str) -> Optional[Message]:
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM messages WHERE message_id = ?", (message_id,))
            row = cursor.fetchone()
            return _row_to_message(row) if row else None

    def find_recent_by_idempotency_key(
        self,
        idempotency_key: str,
        since: str,
        session_id: Optional[str] = None,
    ) -> Optional[Message]:
        """Most recent user message with this key created at or after `since`.

        Scoped to session_id when given. Without a session only messages that
        opened their session match, so a retried first turn finds the session
        it created and nothing else.
        """
        query = """
            SELECT * FROM messages AS m
            WHERE m.idempotency_key = ? AND m.role = 'user' AND m.created_at >= ?
        """
        params: List[Any] = [idempotency_key, since]
        if session_id:
            query += " AND m.session_id = ?"
            params.append(session_id)
        else:
            query += " AND m.seq = (SELECT MIN(seq) FROM messages WHERE session_id = m.session_id)"
        query += " ORDER BY m.seq DESC LIMIT 1"

        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            row = cursor.fetchone()
            return _row_to_message(row) if row else None

    def list_for_session(self, session_id: str) -> List[Message]:
        """Messages in append order."""
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM messages WHERE session_id = ? ORDER BY seq ASC", (session_id,))
            return [_row_to_message(row) for row in cursor.fetchall()]

    def list_after(self, session_id: str, message_id: str) -> List[Message]:
        """Messages appended after message_id (the replies to a user message)."""
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT * FROM messages
                WHERE session_id = ? AND seq > (SELECT seq FROM messages WHERE message_id = ?)
                ORDER BY seq ASC
                """,
                (session_id, message_id)
            )
            return [_row_to_message(row) for row in cursor.fetchall()]

    def count_by_role(self, session_id: str, role: str) -> int:
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "SELECT COUNT(*) AS n FROM messages WHERE session_id = ? AND role = ?",
                (session_id, role)
            )
            return cursor.fetchone()["n"]

    def find_draft_preview(self, session_id: str, draft_id: str) -> Optional[Message]:
        """The assistant message that previews draft_id."""
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT * FROM messages
                WHERE session_id = ? AND draft_id = ? AND role = 'assistant'
                ORDER BY seq ASC LIMIT 1
                """,
                (session_id, draft_id)
            )
            row = cursor.fetchone()
            return _row_to_message(row) if row else None

    def replace_draft_message(
        self,
        message_id: str,
        draft_id: str,
        content: str,
        render_hints: Dict[str, Any],
    ) -> bool:
        """The one in-place update: turn a draft preview into its executed card.

        Guarded on draft_id so a message is never rewritten for another draft.
        Returns True if the row was updated.
        """
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE messages SET content = ?, render_hints_json = ?
                WHERE message_id = ? AND draft_id = ?
                """,
                (content, json.dumps(render_hints), message_id, draft_id)
            )
            conn.commit()
            return cursor.rowcount > 0
