"""Session ledger routes."""
from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from copilot.agents.schemas import ChatSession, ConversationState, Message, PositionDraft, TurnResult
from copilot.api.deps import get_request_id, get_turn_handler
from copilot.core.ids import new_id
from copilot.orchestrator.turn_handler import SessionNotFound, TurnHandler

router = APIRouter()


class SessionDetail(BaseModel):
    session: ChatSession
    state: ConversationState
    drafts: List[PositionDraft]


def _get_session(handler: TurnHandler, session_id: str) -> ChatSession:
    session = handler.sessions.get(session_id)
    if session is None:
        raise SessionNotFound(session_id)
    return session


@router.get("", response_model=List[ChatSession])
async def list_sessions(
    limit: int = Query(100, ge=1, le=500),
    handler: TurnHandler = Depends(get_turn_handler),
):
    """Most recently active sessions first."""
    return handler.sessions.list_sessions(limit=limit)


@router.post("", response_model=ChatSession, status_code=201)
async def create_session(handler: TurnHandler = Depends(get_turn_handler)):
    """Open an empty, untitled session."""
    return handler.sessions.create(new_id("sess_"))


@router.get("/{session_id}", response_model=SessionDetail)
async def get_session(session_id: str, handler: TurnHandler = Depends(get_turn_handler)):
    session = _get_session(handler, session_id)
    return SessionDetail(
        session=session,
        state=handler.state.get(session_id),
        drafts=handler.drafts.list_for_session(session_id),
    )


@router.get("/{session_id}/messages", response_model=List[Message])
async def list_messages(session_id: str, handler: TurnHandler = Depends(get_turn_handler)):
    _get_session(handler, session_id)
    return handler.messages.list_for_session(session_id)


@router.get("/{session_id}/drafts", response_model=List[PositionDraft])
async def list_drafts(session_id: str, handler: TurnHandler = Depends(get_turn_handler)):
    _get_session(handler, session_id)
    return handler.drafts.list_for_session(session_id)


@router.post("/{session_id}/reset", response_model=TurnResult)
async def reset_session(
    session_id: str,
    handler: TurnHandler = Depends(get_turn_handler),
    request_id: str = Depends(get_request_id),
):
    """Clear any pending clarification or confirmation and cancel executions."""
    return await handler.reset(session_id, request_id=request_id)


@router.delete("/{session_id}")
async def delete_session(session_id: str, handler: TurnHandler = Depends(get_turn_handler)):
    handler.delete_session(session_id)
    return {"status": "OK", "session_id": session_id}
