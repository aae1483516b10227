"""Chat API routes."""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from copilot.agents.schemas import TurnResult
from copilot.api.deps import get_request_id, get_turn_handler
from copilot.api.routes.utils import structured_error
from copilot.core.logging import get_logger
from copilot.orchestrator.turn_handler import TurnHandler

router = APIRouter()
logger = get_logger(__name__)


class TurnRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=4000)
    session_id: Optional[str] = Field(None, max_length=100)
    selected_draft_id: Optional[str] = Field(None, max_length=100)
    idempotency_key: Optional[str] = Field(None, max_length=200)

    model_config = {"extra": "forbid"}


@router.post("/turns", response_model=TurnResult)
async def post_turn(
    body: TurnRequest,
    handler: TurnHandler = Depends(get_turn_handler),
    request_id: str = Depends(get_request_id),
):
    """Process one user message.

    A new session is created when session_id is omitted or unknown. Repeats
    of the same message inside the idempotency window return the original
    reply with duplicate=true.
    """
    try:
        return await handler.process_turn(
            body.text,
            session_id=body.session_id,
            selected_draft_id=body.selected_draft_id,
            idempotency_key=body.idempotency_key,
            request_id=request_id,
        )
    except ValueError as e:
        return structured_error(422, "EMPTY_MESSAGE", str(e), request_id)
