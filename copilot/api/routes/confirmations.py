"""High-risk confirmation routes.

Each action applies to the draft the session's AwaitingConfirmation state
names; when nothing is pending the reply carries NO_PENDING_CONFIRMATION.
"""
from fastapi import APIRouter, Depends

from copilot.agents.schemas import TurnResult
from copilot.api.deps import get_request_id, get_turn_handler
from copilot.orchestrator.turn_handler import TurnHandler

router = APIRouter()


@router.post("/{session_id}/proceed", response_model=TurnResult)
async def proceed(
    session_id: str,
    handler: TurnHandler = Depends(get_turn_handler),
    request_id: str = Depends(get_request_id),
):
    return await handler.confirm(session_id, request_id=request_id)


@router.post("/{session_id}/edit", response_model=TurnResult)
async def edit(
    session_id: str,
    handler: TurnHandler = Depends(get_turn_handler),
    request_id: str = Depends(get_request_id),
):
    """Discard the pending draft; input_text holds its original message."""
    return await handler.edit(session_id, request_id=request_id)


@router.post("/{session_id}/rewrite", response_model=TurnResult)
async def rewrite(
    session_id: str,
    handler: TurnHandler = Depends(get_turn_handler),
    request_id: str = Depends(get_request_id),
):
    """Discard the pending draft; suggested_text holds a safer version."""
    return await handler.rewrite(session_id, request_id=request_id)
