"""FastAPI dependencies."""
from fastapi import HTTPException, Request

from copilot.orchestrator.turn_handler import TurnHandler


def get_turn_handler(request: Request) -> TurnHandler:
    """The app-wide TurnHandler built at startup."""
    handler = getattr(request.app.state, "turn_handler", None)
    if handler is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return handler


def get_request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "")
