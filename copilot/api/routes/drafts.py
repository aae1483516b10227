"""Draft and position routes."""
from fastapi import APIRouter, Depends

from copilot.agents.schemas import PositionDraft, TurnResult
from copilot.api.deps import get_request_id, get_turn_handler
from copilot.api.routes.utils import structured_error
from copilot.orchestrator.turn_handler import TurnHandler

router = APIRouter()


def _not_found(draft_id: str, request_id: str):
    return structured_error(404, "DRAFT_NOT_FOUND", f"Draft {draft_id} not found", request_id)


@router.get("/{draft_id}", response_model=PositionDraft)
async def get_draft(
    draft_id: str,
    handler: TurnHandler = Depends(get_turn_handler),
    request_id: str = Depends(get_request_id),
):
    draft = handler.drafts.get(draft_id)
    if draft is None:
        return _not_found(draft_id, request_id)
    return draft


@router.post("/{draft_id}/execute", response_model=TurnResult)
async def execute_draft(
    draft_id: str,
    handler: TurnHandler = Depends(get_turn_handler),
    request_id: str = Depends(get_request_id),
):
    """Run a draft that was saved while another awaited confirmation."""
    draft = handler.drafts.get(draft_id)
    if draft is None:
        return _not_found(draft_id, request_id)
    return await handler.execute_draft(draft.session_id, draft_id, request_id=request_id)


@router.post("/{draft_id}/retry", response_model=TurnResult)
async def retry_draft(
    draft_id: str,
    handler: TurnHandler = Depends(get_turn_handler),
    request_id: str = Depends(get_request_id),
):
    """Resubmit a blocked draft."""
    draft = handler.drafts.get(draft_id)
    if draft is None:
        return _not_found(draft_id, request_id)
    return await handler.retry_blocked(draft.session_id, draft_id, request_id=request_id)


@router.post("/{draft_id}/discard", response_model=TurnResult)
async def discard_draft(
    draft_id: str,
    handler: TurnHandler = Depends(get_turn_handler),
    request_id: str = Depends(get_request_id),
):
    draft = handler.drafts.get(draft_id)
    if draft is None:
        return _not_found(draft_id, request_id)
    return await handler.discard_draft(draft.session_id, draft_id, request_id=request_id)


@router.post("/{draft_id}/close", response_model=TurnResult)
async def close_position(
    draft_id: str,
    handler: TurnHandler = Depends(get_turn_handler),
    request_id: str = Depends(get_request_id),
):
    draft = handler.drafts.get(draft_id)
    if draft is None:
        return _not_found(draft_id, request_id)
    return await handler.close_position(draft.session_id, draft_id, request_id=request_id)
