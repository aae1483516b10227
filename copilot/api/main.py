"""FastAPI application entry point."""
import contextvars
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from copilot.api.routes import account, chat, confirmations, drafts, sessions
from copilot.api.routes.utils import structured_error
from copilot.core.error_codes import InvariantViolation
from copilot.core.logging import get_logger, setup_logging
from copilot.db.connect import get_conn, get_schema_status, init_db
from copilot.orchestrator.turn_handler import SessionNotFound, build_turn_handler

# Thread/async-safe request ID propagation via contextvars
_request_id_ctx: contextvars.ContextVar[str] = contextvars.ContextVar('request_id', default='')


class RequestIDFilter(logging.Filter):
    """Logging filter that injects request_id from contextvars into log records."""
    def filter(self, record):
        if not getattr(record, "request_id", None):
            record.request_id = _request_id_ctx.get('')
        return True


setup_logging()
# Handler-level so records propagated from module loggers get request_id too
for _handler in logging.getLogger().handlers:
    _handler.addFilter(RequestIDFilter())
logger = get_logger(__name__)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or str(uuid.uuid4())[:8]


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request id to the request, its log records and the response.

    A caller-supplied X-Request-ID is kept so retries correlate in the logs.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = _request_id_ctx.set(request_id)
        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            _request_id_ctx.reset(token)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Server cannot serve without schema, so init failures are fatal
    init_db()
    schema_status = get_schema_status()
    logger.info(
        "Schema status: db=%s | applied=%d | pending=%d | ok=%s",
        schema_status["db_path"],
        len(schema_status["applied_migrations"]),
        len(schema_status["pending_migrations"]),
        schema_status["schema_ok"],
    )
    app.state.turn_handler = build_turn_handler()
    yield
    in_flight = app.state.turn_handler.scheduler.in_flight()
    if in_flight:
        logger.warning("Shutting down with %d execution(s) in flight", len(in_flight))


app = FastAPI(title="Trade Intent Copilot API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SessionNotFound)
async def session_not_found_handler(request: Request, exc: SessionNotFound):
    return structured_error(404, "SESSION_NOT_FOUND", f"Session {exc} not found", _request_id(request))


@app.exception_handler(InvariantViolation)
async def invariant_violation_handler(request: Request, exc: InvariantViolation):
    request_id = _request_id(request)
    logger.error("Invariant violation surfaced to API: %s | req=%s", exc, request_id)
    return structured_error(500, "INVARIANT_VIOLATION", "Internal state check failed", request_id)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Return structured JSON for any HTTPException, keeping its status code."""
    return structured_error(exc.status_code, f"HTTP_{exc.status_code}", str(exc.detail), _request_id(request))


# Last resort: errors are always JSON, never HTML
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    request_id = _request_id(request)
    logger.exception("Unhandled error: %s | req=%s | %s %s", str(exc)[:200], request_id, request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "status": "ERROR",
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An internal error occurred",
                "request_id": request_id,
            },
            "request_id": request_id,
        },
        headers={"X-Request-ID": request_id},
    )


app.include_router(chat.router, prefix="/api/v1/chat", tags=["chat"])
app.include_router(sessions.router, prefix="/api/v1/sessions", tags=["sessions"])
app.include_router(confirmations.router, prefix="/api/v1/confirmations", tags=["confirmations"])
app.include_router(drafts.router, prefix="/api/v1/drafts", tags=["drafts"])
app.include_router(account.router, prefix="/api/v1/account", tags=["account"])


@app.get("/")
async def root():
    return {"message": "Trade Intent Copilot API"}


@app.get("/health")
async def health():
    """DB readiness plus schema and migration status."""
    db_ok = False
    try:
        with get_conn() as conn:
            conn.execute("SELECT 1")
        db_ok = True
    except Exception as e:
        logger.error("Health check DB probe failed: %s", str(e)[:200])

    schema_status = get_schema_status() if db_ok else {}
    healthy = db_ok and schema_status.get("schema_ok", False)
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "ok" if healthy else "degraded",
            "db_ok": db_ok,
            "schema_ok": schema_status.get("schema_ok", False),
            "pending_migrations": schema_status.get("pending_migrations", []),
        },
    )
