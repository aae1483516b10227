"""Simulated account routes."""
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from copilot.api.deps import get_turn_handler
from copilot.orchestrator.turn_handler import TurnHandler

router = APIRouter()


class FundRequest(BaseModel):
    amount_usd: float = Field(..., gt=0, le=1_000_000)
    session_id: Optional[str] = Field(None, max_length=100)

    model_config = {"extra": "forbid"}


@router.get("")
async def get_account(handler: TurnHandler = Depends(get_turn_handler)):
    return handler.account.snapshot()


@router.post("/fund")
async def fund_account(body: FundRequest, handler: TurnHandler = Depends(get_turn_handler)):
    """Deposit collateral. With AUTO_RETRY_BLOCKED on, blocked drafts re-queue."""
    return await handler.fund(body.amount_usd, session_id=body.session_id)
