"""FastAPI application for tempsix."""

import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated, Any, Literal

from fastapi import APIRouter, FastAPI, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from . import allocator, db, lifecycle, relay
from ._version import __version__
from .errors import RelayError, StoreError
from .lifecycle import SweepTask
from .metrics import metrics
from .options import RelayOptions

logger = logging.getLogger(__name__)

router = APIRouter()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the store and run the sweep for the lifetime of the process."""
    options: RelayOptions = app.state.options
    db.configure(options.db_path)
    db.init_db()

    sweep_task: SweepTask | None = None
    if options.sweep_enabled:
        sweep_task = SweepTask.from_options(options)
        sweep_task.start()
    else:
        logger.info("Sweep disabled via TEMPSIX_SWEEP_ENABLED=0")
    app.state.sweep_task = sweep_task

    yield

    if sweep_task is not None:
        await sweep_task.stop()
    db.close_db()


def create_app(options: RelayOptions | None = None) -> FastAPI:
    """Build the application. Options default to RelayOptions.load()."""
    options = options or RelayOptions.load()

    application = FastAPI(
        title="tempsix",
        description="Anonymous messaging relay with short-lived numeric identities",
        version=__version__,
        lifespan=lifespan,
    )
    application.state.options = options

    application.add_middleware(
        CORSMiddleware,
        allow_origins=options.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
        max_age=86400,
    )
    application.middleware("http")(add_timing_middleware)
    application.add_exception_handler(RelayError, relay_error_handler)
    application.add_exception_handler(RequestValidationError, request_validation_handler)
    application.include_router(router)

    return application


# --- Response envelope ---


def format_response(
    success: bool,
    data: Any = None,
    error: str | None = None,
    code: str | None = None,
) -> dict:
    """Build the {success, data?, error?, code?} envelope every endpoint returns."""
    response: dict[str, Any] = {"success": success}
    if data is not None:
        response["data"] = data
    if error:
        response["error"] = error
    if code:
        response["code"] = code
    return response


async def relay_error_handler(request: Request, exc: RelayError) -> JSONResponse:
    """Map core exceptions onto the envelope. Store details never reach clients."""
    if isinstance(exc, StoreError):
        logger.error(f"Store failure on {request.method} {request.url.path}: {exc.__cause__}")
    return JSONResponse(
        status_code=exc.status,
        content=format_response(False, error=exc.message, code=exc.code),
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Answer malformed requests with 400 and the envelope instead of FastAPI's 422."""
    errors = exc.errors()
    if any(err.get("loc", ())[:1] == ("path",) for err in errors):
        return JSONResponse(
            status_code=400,
            content=format_response(
                False,
                error="Invalid user ID format. Must be exactly 6 digits.",
                code="INVALID_ID_FORMAT",
            ),
        )
    fields = sorted({str(err["loc"][-1]) for err in errors if err.get("loc")})
    return JSONResponse(
        status_code=400,
        content=format_response(
            False,
            error=f"Invalid request: {', '.join(fields)}" if fields else "Invalid request",
            code="INVALID_REQUEST",
        ),
    )


# --- Request Timing Middleware ---


async def add_timing_middleware(request: Request, call_next):
    """Middleware to track request timing for metrics."""
    start_time = time.perf_counter()

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000

    # Aggregate by resource rather than by identity
    path = request.url.path
    if path.startswith("/api/messages"):
        endpoint = "messages/read" if path.endswith("/read") else f"messages/{request.method.lower()}"
    elif path.startswith("/api/users"):
        endpoint = f"users/{path.rsplit('/', 1)[-1]}" if path.count("/") > 3 else "users"
    elif path.startswith("/api/"):
        endpoint = path.split("/")[2]
    elif path in ("/", "/metrics"):
        endpoint = path[1:] or "root"
    else:
        endpoint = "other"

    metrics.record_request(endpoint, duration_ms)

    response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"

    return response


# --- Request/Response Models ---


class ReserveIdentityRequest(BaseModel):
    code: str


class SendMessageRequest(BaseModel):
    sender_id: str
    recipient_id: str
    content: str
    sender_fingerprint: str | None = None


class MarkReadRequest(BaseModel):
    message_ids: list[str] | None = None


UserId = Annotated[str, Path(pattern=r"^[0-9]{6}$")]


# --- Routes ---


def _options(request: Request) -> RelayOptions:
    return request.app.state.options


@router.get("/")
def root():
    """Service summary."""
    return {
        "message": "tempsix anonymous messages API",
        "version": __version__,
        "status": "running",
        "endpoints": {
            "generate_id": "GET /api/generate-id",
            "check_id": "GET /api/check-id/{code}",
            "create_user": "POST /api/users",
            "send_message": "POST /api/messages/send",
            "get_messages": "GET /api/messages/{recipient_id}",
            "mark_as_read": "PUT /api/messages/{user_id}/read",
            "heartbeat": "PUT /api/users/{user_id}/heartbeat",
            "exists": "GET /api/users/{user_id}/exists",
            "delete_user": "DELETE /api/users/{user_id}",
            "user_stats": "GET /api/users/{user_id}/stats",
            "health": "GET /api/health",
        },
        "timestamp": db.to_iso(db.utcnow()),
    }


@router.get("/api/generate-id")
def generate_id(request: Request):
    """Allocate a random unique 6-digit identity."""
    code = allocator.allocate(max_attempts=_options(request).max_allocation_attempts)
    return format_response(True, {"code": code})


@router.get("/api/check-id/{code}")
def check_id(code: UserId):
    """Check if a specific code is available."""
    return format_response(True, {"available": allocator.is_available(code), "code": code})


@router.post("/api/users", status_code=201)
def create_user(body: ReserveIdentityRequest):
    """Reserve an identity with a caller-chosen code."""
    identity = allocator.reserve(body.code)
    return format_response(
        True, {"code": identity["code"], "created_at": identity["created_at"]}
    )


@router.post("/api/messages/send", status_code=201)
def send_message(body: SendMessageRequest, request: Request):
    """Send a message to another identity."""
    receipt = relay.send(
        body.sender_id,
        body.recipient_id,
        body.content,
        body.sender_fingerprint,
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        accept_language=request.headers.get("accept-language"),
    )
    return format_response(True, receipt)


@router.get("/api/messages/{recipient_id}")
def get_messages(
    recipient_id: UserId,
    request: Request,
    page: Annotated[int, Query()] = 1,
    limit: Annotated[int | None, Query()] = None,
    unread: Annotated[bool, Query()] = False,
):
    """Fetch a page of messages. Every message returned is deleted."""
    options = _options(request)
    result = relay.receive(
        recipient_id,
        page=page,
        limit=limit if limit is not None else options.default_page_limit,
        unread_only=unread,
        max_limit=options.max_page_limit,
    )
    return format_response(True, result)


@router.put("/api/messages/{user_id}/read")
def mark_messages_read(user_id: UserId, body: MarkReadRequest | None = None):
    """Mark messages read (all of them, or the given ids)."""
    result = relay.mark_read(user_id, body.message_ids if body else None)
    return format_response(True, result)


@router.get("/api/users/{user_id}/stats")
def user_stats(user_id: UserId):
    """Inbox statistics for an identity."""
    return format_response(True, relay.get_stats(user_id))


@router.put("/api/users/{user_id}/heartbeat")
def heartbeat(user_id: UserId):
    """Refresh an identity's activity timestamp."""
    last_active_at = lifecycle.touch(user_id)
    return format_response(True, {"user_id": user_id, "last_active_at": last_active_at})


@router.get("/api/users/{user_id}/exists")
def user_exists(user_id: UserId):
    """Check if an identity still exists."""
    return format_response(True, {"exists": lifecycle.exists(user_id), "user_id": user_id})


def _delete(user_id: str, immediate: bool, reason: str) -> dict:
    """Run a delete and always answer with success.

    Cleanup calls come from page unloads and retries; a store failure is
    logged and reported in the payload rather than as an error status.
    """
    try:
        result = lifecycle.delete_identity(user_id, immediate=immediate, reason=reason)
    except StoreError as e:
        logger.exception(f"Error deleting user {user_id}")
        return format_response(
            True,
            {
                "user_id": user_id,
                "deleted_messages": 0,
                "was_deleted": False,
                "reason": reason,
                "error": e.message,
            },
        )
    return format_response(True, result)


@router.delete("/api/users/{user_id}")
def delete_user(
    user_id: UserId,
    immediate: Annotated[bool, Query()] = False,
    reason: Annotated[Literal["manual", "beacon", "inactivity"], Query()] = "manual",
):
    """Delete an identity now, or mark it for deletion."""
    return _delete(user_id, immediate, reason)


@router.post("/api/users/{user_id}/beacon")
def delete_user_beacon(user_id: UserId):
    """Page-unload variant of delete (navigator.sendBeacon can only POST)."""
    return _delete(user_id, False, lifecycle.REASON_BEACON)


@router.get("/api/health")
def health():
    """Health check including a store round-trip."""
    timestamp = db.to_iso(db.utcnow())
    try:
        db.ping()
    except Exception:
        logger.exception("Health check failed")
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "timestamp": timestamp,
                "error": "Database connection failed",
            },
        )
    return {"status": "healthy", "database": "connected", "timestamp": timestamp}


@router.get("/metrics")
def get_metrics(request: Request):
    """Application metrics."""
    sweep_task: SweepTask | None = getattr(request.app.state, "sweep_task", None)
    last_report = sweep_task.last_report if sweep_task else None
    options = _options(request)
    return {
        **metrics.to_dict(),
        "sweep": {
            "enabled": sweep_task is not None,
            "interval_seconds": options.sweep_interval_seconds,
            "inactivity_seconds": options.inactivity_seconds,
            "grace_seconds": options.grace_seconds,
            "last_report": last_report.to_dict() if last_report else None,
        },
    }


app = create_app()
