"""Utility functions for API routes."""
from fastapi.responses import JSONResponse


def structured_error(status_code: int, code: str, message: str, request_id: str) -> JSONResponse:
    """Return a structured JSON error with X-Request-ID header."""
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "ERROR",
            "error": {"code": code, "message": message, "request_id": request_id},
            "request_id": request_id,
        },
        headers={"X-Request-ID": request_id},
    )
