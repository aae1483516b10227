from typing import Iterable, List, Optional
import json
from copilot.agents.schemas import PositionDraft
from copilot.db.connect import get_conn
from copilot.core.time import now_iso
from copilot.core.logging import get_logger
from copilot.orchestrator.state_machine import DraftStatus

logger = get_logger(__name__)


def _row_to_draft(row) -> PositionDraft:
    return PositionDraft(
        draft_id=row["draft_id"],
        session_id=row["session_id"],
        instrument=row["instrument"],
        side=row["side"],
        market=row["market"],
        risk_percent=row["risk_percent"],
        leverage=row["leverage"],
        margin_usd=row["margin_usd"],
        notional_usd=row["notional_usd"],
        stop_loss=row["stop_loss"],
        take_profit=row["take_profit"],
        sizing_basis=row["sizing_basis"],
        status=row["status"],
        origin_key=row["origin_key"],
        source_text=row["source_text"],
        high_risk_reasons=json.loads(row["high_risk_reasons_json"] or "[]"),
        details=json.loads(row["details_json"]),
        realized_pnl_usd=row["realized_pnl_usd"],
        realized_pnl_pct=row["realized_pnl_pct"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class DraftsRepo:
    def insert(self, draft: PositionDraft) -> PositionDraft:
        now = now_iso()
        draft = draft.model_copy(update={"created_at": draft.created_at or now, "updated_at": now})
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO drafts (
                    draft_id, session_id, instrument, side, market, risk_percent,
                    leverage, margin_usd, notional_usd, stop_loss, take_profit,
                    sizing_basis, status, origin_key, source_text,
                    high_risk_reasons_json, details_json, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    draft.draft_id, draft.session_id, draft.instrument.value, draft.side,
                    draft.market, draft.risk_percent, draft.leverage, draft.margin_usd,
                    draft.notional_usd, draft.stop_loss, draft.take_profit,
                    draft.sizing_basis, draft.status.value, draft.origin_key, draft.source_text,
                    json.dumps(draft.high_risk_reasons), draft.details.model_dump_json(),
                    draft.created_at, draft.updated_at
                )
            )
            conn.commit()
        return draft

    def get(self, draft_id: str) -> Optional[PositionDraft]:
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT * FROM drafts WHERE draft_id = ?", (draft_id,))
            row = cursor.fetchone()
            return _row_to_draft(row) if row else None

    def list_for_session(
        self,
        session_id: str,
        statuses: Optional[Iterable[DraftStatus]] = None,
    ) -> List[PositionDraft]:
        """Drafts of a session in creation order, optionally filtered by status."""
        query = "SELECT * FROM drafts WHERE session_id = ?"
        params: list = [session_id]
        if statuses is not None:
            values = [DraftStatus(s).value for s in statuses]
            query += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY created_at ASC, rowid ASC"
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return [_row_to_draft(row) for row in cursor.fetchall()]

    def find_in_status(self, session_id: str, instrument: str, status: DraftStatus) -> List[PositionDraft]:
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT * FROM drafts
                WHERE session_id = ? AND instrument = ? AND status = ?
                ORDER BY created_at ASC
                """,
                (session_id, instrument, DraftStatus(status).value)
            )
            return [_row_to_draft(row) for row in cursor.fetchall()]

    def list_by_status(self, statuses: Iterable[DraftStatus]) -> List[PositionDraft]:
        """Drafts across all sessions in the given statuses."""
        values = [DraftStatus(s).value for s in statuses]
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT * FROM drafts WHERE status IN ({', '.join('?' for _ in values)}) ORDER BY created_at ASC",
                values
            )
            return [_row_to_draft(row) for row in cursor.fetchall()]

    def save(self, draft: PositionDraft) -> PositionDraft:
        """Persist mutable fields. Market, instrument and session never change."""
        draft = draft.model_copy(update={"updated_at": now_iso()})
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                UPDATE drafts SET
                    side = ?, risk_percent = ?, leverage = ?, margin_usd = ?, notional_usd = ?,
                    stop_loss = ?, take_profit = ?, sizing_basis = ?,
                    high_risk_reasons_json = ?, details_json = ?,
                    realized_pnl_usd = ?, realized_pnl_pct = ?, updated_at = ?
                WHERE draft_id = ?
                """,
                (
                    draft.side, draft.risk_percent, draft.leverage, draft.margin_usd,
                    draft.notional_usd, draft.stop_loss, draft.take_profit, draft.sizing_basis,
                    json.dumps(draft.high_risk_reasons), draft.details.model_dump_json(),
                    draft.realized_pnl_usd, draft.realized_pnl_pct, draft.updated_at,
                    draft.draft_id
                )
            )
            conn.commit()
        return draft

    def compare_and_set_status(self, draft_id: str, expected: DraftStatus, new_status: DraftStatus) -> bool:
        """Move status only if it is still `expected`.

        Returns True if the row was updated, False if another path got there first.
        """
        with get_conn() as conn:
            cursor = conn.cursor()
            cursor.execute(
                "UPDATE drafts SET status = ?, updated_at = ? WHERE draft_id = ? AND status = ?",
                (DraftStatus(new_status).value, now_iso(), draft_id, DraftStatus(expected).value)
            )
            conn.commit()
            return cursor.rowcount > 0
