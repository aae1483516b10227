"""Draft and conversation state machines.

Defines the canonical lifecycle states for position drafts and for the
per-session conversation mode, along with validated transitions. All status
updates MUST go through these enums and guards.
"""
from enum import Enum


class DraftStatus(str, Enum):
    DRAFT = "draft"
    QUEUED = "queued"
    EXECUTING = "executing"
    EXECUTED = "executed"
    BLOCKED = "blocked"
    CLOSED = "closed"
    DISCARDED = "discarded"


class ConversationMode(str, Enum):
    IDLE = "idle"
    AWAITING_MARKET_CLARIFICATION = "awaiting_market_clarification"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    EXECUTING = "executing"


# ---- Transition tables ----

_DRAFT_TRANSITIONS: dict[DraftStatus, list[DraftStatus]] = {
    DraftStatus.DRAFT: [DraftStatus.QUEUED, DraftStatus.DISCARDED],
    DraftStatus.QUEUED: [DraftStatus.EXECUTING, DraftStatus.BLOCKED, DraftStatus.DISCARDED],
    DraftStatus.EXECUTING: [DraftStatus.EXECUTED, DraftStatus.BLOCKED, DraftStatus.DISCARDED],
    # blocked -> queued is the only re-entry, triggered by funding
    DraftStatus.BLOCKED: [DraftStatus.QUEUED, DraftStatus.DISCARDED],
    DraftStatus.EXECUTED: [DraftStatus.CLOSED],
    DraftStatus.CLOSED: [],     # terminal
    DraftStatus.DISCARDED: [],  # terminal
}

_MODE_TRANSITIONS: dict[ConversationMode, list[ConversationMode]] = {
    ConversationMode.IDLE: [
        ConversationMode.AWAITING_MARKET_CLARIFICATION,
        ConversationMode.AWAITING_CONFIRMATION,
        ConversationMode.EXECUTING,
    ],
    ConversationMode.AWAITING_MARKET_CLARIFICATION: [
        ConversationMode.AWAITING_MARKET_CLARIFICATION,  # re-prompt
        ConversationMode.AWAITING_CONFIRMATION,
        ConversationMode.EXECUTING,
    ],
    ConversationMode.AWAITING_CONFIRMATION: [
        ConversationMode.EXECUTING,
    ],
    ConversationMode.EXECUTING: [
        # a new high-risk draft can park while an earlier one is in flight
        ConversationMode.AWAITING_CONFIRMATION,
        ConversationMode.AWAITING_MARKET_CLARIFICATION,
        ConversationMode.EXECUTING,
    ],
}

TERMINAL_DRAFT_STATUSES = frozenset({DraftStatus.CLOSED, DraftStatus.DISCARDED})
IN_FLIGHT_DRAFT_STATUSES = frozenset({DraftStatus.QUEUED, DraftStatus.EXECUTING})
# Statuses that count as an existing position for UPDATE target resolution
OPEN_DRAFT_STATUSES = frozenset({
    DraftStatus.DRAFT,
    DraftStatus.QUEUED,
    DraftStatus.EXECUTING,
    DraftStatus.EXECUTED,
    DraftStatus.BLOCKED,
})


def can_transition_draft(current: DraftStatus, next_status: DraftStatus) -> bool:
    """Check if a draft status transition is valid."""
    return next_status in _DRAFT_TRANSITIONS.get(current, [])


def can_transition_mode(current: ConversationMode, next_mode: ConversationMode) -> bool:
    """Check if a conversation mode transition is valid.

    Returning to IDLE is always allowed (settle, discard, reset, give up).
    """
    if next_mode == ConversationMode.IDLE:
        return True
    return next_mode in _MODE_TRANSITIONS.get(current, [])
