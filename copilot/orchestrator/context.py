"""Turn-scoped identifiers.

Computed once, synchronously, when a turn or action starts and passed down
explicitly. Nothing below the turn handler looks up "the current session" or
"the selected draft" on its own.
"""
from dataclasses import dataclass, replace
from typing import Optional


@dataclass(frozen=True)
class TurnContext:
    session_id: str
    turn_key: Optional[str] = None
    intent: Optional[str] = None
    selected_draft_id: Optional[str] = None
    target_draft_id: Optional[str] = None
    request_id: Optional[str] = None

    def with_intent(self, intent: str, target_draft_id: Optional[str] = None) -> "TurnContext":
        return replace(self, intent=intent, target_draft_id=target_draft_id)

    def log_extra(self) -> dict:
        """Correlation fields for structured log records."""
        return {
            "session_id": self.session_id,
            "turn_key": self.turn_key,
            "intent": self.intent,
            "draft_id": self.target_draft_id,
            "request_id": self.request_id,
        }
