"""Strict Pydantic schemas for drafts, messages and conversation state."""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator

from copilot.core.markets import InstrumentClass
from copilot.orchestrator.state_machine import ConversationMode, DraftStatus


# ---- Market extraction ----

class MarketNone(BaseModel):
    kind: Literal["none"] = "none"

    @property
    def symbols(self) -> List[str]:
        return []


class MarketSingle(BaseModel):
    kind: Literal["single"] = "single"
    symbol: str

    @property
    def symbols(self) -> List[str]:
        return [self.symbol]


class MarketAmbiguous(BaseModel):
    kind: Literal["ambiguous"] = "ambiguous"
    candidates: List[str] = Field(..., min_length=2)

    @property
    def symbols(self) -> List[str]:
        return list(self.candidates)


MarketExtractionResult = Annotated[
    Union[MarketNone, MarketSingle, MarketAmbiguous],
    Field(discriminator="kind"),
]


# ---- Modifications ----

class Modifications(BaseModel):
    """Explicit size/risk/leverage/side-change tokens pulled from one message."""
    size_usd: Optional[float] = Field(None, gt=0)
    risk_percent: Optional[float] = Field(None, gt=0, le=100)
    leverage: Optional[float] = Field(None, ge=1)
    requested_leverage: Optional[float] = None  # raw value before clamping
    side_flip: Optional[Literal["long", "short", "hedge"]] = None
    stop_loss: Optional[float] = Field(None, gt=0)
    take_profit: Optional[float] = Field(None, gt=0)

    def is_empty(self) -> bool:
        return all(
            getattr(self, name) is None
            for name in ("size_usd", "risk_percent", "leverage", "side_flip", "stop_loss", "take_profit")
        )


# ---- Draft specs (parsed, market not yet attached) ----

class _DraftSpecBase(BaseModel):
    risk_percent: Optional[float] = Field(None, gt=0, le=100)
    margin_usd: Optional[float] = Field(None, gt=0)
    source_text: str = ""


class PerpDraftSpec(_DraftSpecBase):
    instrument: Literal["perp"] = "perp"
    side: Literal["long", "short"] = "long"
    leverage: Optional[float] = Field(None, ge=1)
    stop_loss: Optional[float] = Field(None, gt=0)
    take_profit: Optional[float] = Field(None, gt=0)
    omit_stop_loss: bool = False


class EventDraftSpec(_DraftSpecBase):
    instrument: Literal["event"] = "event"
    side: Literal["yes", "no"] = "yes"


class DefiDraftSpec(_DraftSpecBase):
    instrument: Literal["defi"] = "defi"
    side: Literal["deposit"] = "deposit"


DraftSpec = Annotated[
    Union[PerpDraftSpec, EventDraftSpec, DefiDraftSpec],
    Field(discriminator="instrument"),
]


# ---- Instrument-specific draft details ----

class PerpDetails(BaseModel):
    instrument: Literal["perp"] = "perp"
    entry_price: Optional[float] = None
    liq_buffer_pct: Optional[float] = None


class EventDetails(BaseModel):
    instrument: Literal["event"] = "event"
    event_label: str
    max_payout_usd: float = 0.0
    outcome: Optional[Literal["won", "lost"]] = None


class DefiDetails(BaseModel):
    instrument: Literal["defi"] = "defi"
    protocol: str
    asset: str
    apy_pct: float


DraftDetails = Annotated[
    Union[PerpDetails, EventDetails, DefiDetails],
    Field(discriminator="instrument"),
]


class PositionDraft(BaseModel):
    """A user-reviewable position proposal and, once executed, the live position."""
    draft_id: str
    session_id: str
    instrument: InstrumentClass
    side: str
    market: str
    risk_percent: float = Field(..., gt=0, le=100)
    leverage: float = Field(1.0, ge=1)
    margin_usd: float = Field(..., gt=0)
    notional_usd: float = Field(..., gt=0)
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    sizing_basis: Literal["risk", "margin"] = "risk"
    status: DraftStatus = DraftStatus.DRAFT
    origin_key: Optional[str] = None
    source_text: str = ""
    high_risk_reasons: List[str] = Field(default_factory=list)
    details: DraftDetails
    realized_pnl_usd: Optional[float] = None
    realized_pnl_pct: Optional[float] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @model_validator(mode="after")
    def _details_match_instrument(self):
        if self.details.instrument != self.instrument.value:
            raise ValueError(
                f"details for {self.details.instrument} attached to {self.instrument.value} draft"
            )
        return self


class DraftUpdates(BaseModel):
    """Fields accepted by the single authorized update path."""
    risk_percent: Optional[float] = Field(None, gt=0, le=100)
    margin_usd: Optional[float] = Field(None, gt=0)
    leverage: Optional[float] = Field(None, ge=1)
    stop_loss: Optional[float] = Field(None, gt=0)
    take_profit: Optional[float] = Field(None, gt=0)
    side: Optional[str] = None

    def is_empty(self) -> bool:
        return all(v is None for v in self.model_dump().values())


# ---- Messages & sessions ----

class Message(BaseModel):
    message_id: str
    session_id: str
    role: Literal["user", "assistant"]
    content: str
    draft_id: Optional[str] = None
    render_hints: Dict[str, Any] = Field(default_factory=dict)
    idempotency_key: Optional[str] = None
    created_at: str


class ChatSession(BaseModel):
    session_id: str
    title: str
    created_at: str
    updated_at: str
    last_message_at: Optional[str] = None


# ---- Conversation state ----

class PendingIntent(BaseModel):
    """Parsed intent parked while the user is asked which market they mean."""
    instrument: InstrumentClass
    spec: DraftSpec
    raw_text: str


class IdleState(BaseModel):
    mode: Literal["idle"] = "idle"


class AwaitingMarketClarificationState(BaseModel):
    mode: Literal["awaiting_market_clarification"] = "awaiting_market_clarification"
    pending_intent: PendingIntent
    extracted_modifiers: Modifications = Field(default_factory=Modifications)
    candidates: List[str] = Field(default_factory=list)
    retries: int = 0


class AwaitingConfirmationState(BaseModel):
    mode: Literal["awaiting_confirmation"] = "awaiting_confirmation"
    draft_id: str
    high_risk: bool = True


class ExecutingState(BaseModel):
    mode: Literal["executing"] = "executing"
    draft_id: str


ConversationState = Annotated[
    Union[IdleState, AwaitingMarketClarificationState, AwaitingConfirmationState, ExecutingState],
    Field(discriminator="mode"),
]

conversation_state_adapter = TypeAdapter(ConversationState)


# ---- Turn result ----

class TurnResult(BaseModel):
    """Outcome of one turn or explicit action."""
    session_id: str
    intent: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    state: ConversationState = Field(default_factory=IdleState)
    draft_id: Optional[str] = None
    duplicate: bool = False
    error_code: Optional[str] = None
    input_text: Optional[str] = None
    suggested_text: Optional[str] = None


def state_mode(state) -> ConversationMode:
    """Conversation mode of a ConversationState instance."""
    return ConversationMode(state.mode)
