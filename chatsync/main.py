import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Header, status, Query
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from chatsync import registry, store
from chatsync.config import settings
from chatsync.errors import ChatError, Forbidden, RoomNotFound
from chatsync.storage import init_db, check_db_health, get_db
from chatsync.logging_utils import setup_logging, RequestLoggingMiddleware, log_message_data
from chatsync.metrics import record_operation, record_prune, get_metrics, get_metrics_content_type
from chatsync.reaper import Reaper, prune_expired_messages
from chatsync.utils import has_permission
from chatsync.schemas import (
    CreateRoomRequest,
    EditMessageRequest,
    ErrorResponse,
    HealthResponse,
    MessageView,
    MutationResponse,
    PruneResponse,
    ReactionRequest,
    RoomExistsResponse,
    RoomResponse,
    SendMessageRequest,
    SendMessageResponse,
    TTLResponse,
)


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def _on_pruned(result) -> None:
    record_prune(result.messages, result.rooms)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database, start the background reaper
    - Shutdown: Stop the reaper
    """
    init_db()
    reaper = Reaper(settings.REAPER_INTERVAL_SECONDS, on_pruned=_on_pruned)
    reaper.start()
    app.state.reaper = reaper
    yield
    await reaper.stop()


app = FastAPI(
    title="chatsync",
    description="Ephemeral chat rooms with idempotent, poll-friendly message sync",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)

ERROR_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Room not found"},
    409: {"model": ErrorResponse, "description": "Conflict"},
    422: {"model": ErrorResponse, "description": "Validation error"},
}


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Map domain errors to their status with a sanitized body."""
    logger.info(f"Chat error: {type(exc).__name__} ({exc.kind.value})")
    return JSONResponse(
        status_code=exc.http_status,
        content={"detail": exc.public_message, "kind": exc.kind.value, "code": type(exc).__name__},
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and every
    chat table exists. Otherwise returns 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Room Routes
# =============================================================================

@app.post(
    "/rooms",
    response_model=RoomResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def create_room(
    body: CreateRoomRequest,
    request: Request,
    db: Session = Depends(get_db)
) -> RoomResponse:
    """
    Create a room. The code is trimmed and must be 1-30 characters.
    Concurrent creation of the same code: the first writer wins,
    everyone else gets 409.
    """
    try:
        code = registry.create_room(db, body.code)
    except ChatError as e:
        record_operation("create_room", e.kind.value)
        raise
    record_operation("create_room", "created")
    log_message_data(request, room=code, result="created")
    return RoomResponse(code=code)


@app.get("/rooms/{code}/exists", response_model=RoomExistsResponse)
async def room_exists(code: str, db: Session = Depends(get_db)) -> RoomExistsResponse:
    """Pure existence check."""
    return RoomExistsResponse(code=code.strip(), exists=registry.room_exists(db, code))


# =============================================================================
# Message Routes
# =============================================================================

def _require_room(db: Session, code: str) -> str:
    # Malformed codes are rejected (422) before anything else
    code = registry.normalize_room_code(code)
    if not registry.room_exists(db, code):
        raise RoomNotFound()
    return code


@app.get(
    "/rooms/{code}/messages",
    response_model=list[MessageView],
    responses=ERROR_RESPONSES,
)
async def list_messages(
    code: str,
    after: Annotated[int | None, Query(ge=0, description="Only return messages with id > after")] = None,
    db: Session = Depends(get_db)
) -> list[MessageView]:
    """
    Non-expired messages of a room in ascending id order.

    Without `after` this is the full snapshot used for cold starts; with it
    the incremental fetch used by polling. 404 tells pollers the room is
    gone (reaped) and they should stop.
    """
    code = _require_room(db, code)
    if after is None:
        messages = store.get_messages(db, code)
    else:
        messages = store.fetch_messages_after_id(db, code, after)
    logger.debug(f"GET messages: room={code}, after={after}, returned={len(messages)}")
    return [store.to_message_view(m) for m in messages]


@app.post(
    "/rooms/{code}/messages",
    response_model=SendMessageResponse,
    responses=ERROR_RESPONSES,
)
async def send_message(
    code: str,
    body: SendMessageRequest,
    request: Request,
    db: Session = Depends(get_db)
) -> SendMessageResponse:
    """
    Append a message. Idempotent per nonce: a replay with the same owner and
    content returns the original id with duplicate=true.
    """
    try:
        result = store.send_message(
            db,
            room_code=code,
            content=body.content,
            nickname=body.nickname,
            owner_id=body.owner_id,
            reply_to_id=body.reply_to_id,
            image=body.image,
            video=body.video,
            audio=body.audio,
            nonce=body.nonce,
        )
    except ChatError as e:
        record_operation("send", e.kind.value)
        log_message_data(request, room=code.strip(), result=e.kind.value)
        raise

    outcome = "duplicate" if result.duplicate else "created"
    record_operation("send", outcome)
    log_message_data(request, room=code.strip(), message_id=result.id, dup=result.duplicate, result=outcome)
    return SendMessageResponse(id=result.id, duplicate=result.duplicate)


def _mutation_result(request: Request, operation: str, code: str, message_id: int, ok: bool) -> MutationResponse:
    outcome = "ok" if ok else "noop"
    record_operation(operation, outcome)
    log_message_data(request, room=code.strip(), message_id=message_id, result=outcome)
    return MutationResponse(ok=ok)


@app.patch(
    "/rooms/{code}/messages/{message_id}",
    response_model=MutationResponse,
    responses=ERROR_RESPONSES,
)
async def edit_message(
    code: str,
    message_id: int,
    body: EditMessageRequest,
    request: Request,
    db: Session = Depends(get_db)
) -> MutationResponse:
    """Owner-only edit. ok=false when the message is gone or not yours."""
    ok = store.edit_message(
        db,
        room_code=code,
        message_id=message_id,
        owner_id=body.owner_id,
        new_content=body.content,
        new_image=body.image,
        new_video=body.video,
        new_audio=body.audio,
    )
    return _mutation_result(request, "edit", code, message_id, ok)


@app.delete(
    "/rooms/{code}/messages/{message_id}",
    response_model=MutationResponse,
    responses=ERROR_RESPONSES,
)
async def delete_message(
    code: str,
    message_id: int,
    owner_id: Annotated[str, Query(min_length=1)],
    request: Request,
    db: Session = Depends(get_db)
) -> MutationResponse:
    """Owner-only delete. ok=false when the message is gone or not yours."""
    ok = store.delete_message(db, room_code=code, message_id=message_id, owner_id=owner_id)
    return _mutation_result(request, "delete", code, message_id, ok)


@app.post(
    "/rooms/{code}/messages/{message_id}/reactions",
    response_model=MutationResponse,
    responses=ERROR_RESPONSES,
)
async def add_reaction(
    code: str,
    message_id: int,
    body: ReactionRequest,
    request: Request,
    db: Session = Depends(get_db)
) -> MutationResponse:
    """Add (user_id, emoji). Adding an existing pair is a successful no-op."""
    ok = store.add_reaction(db, room_code=code, message_id=message_id, user_id=body.user_id, emoji=body.emoji)
    return _mutation_result(request, "add_reaction", code, message_id, ok)


@app.delete(
    "/rooms/{code}/messages/{message_id}/reactions",
    response_model=MutationResponse,
    responses=ERROR_RESPONSES,
)
async def remove_reaction(
    code: str,
    message_id: int,
    user_id: Annotated[str, Query(min_length=1)],
    emoji: Annotated[str, Query(min_length=1, max_length=32)],
    request: Request,
    db: Session = Depends(get_db)
) -> MutationResponse:
    """Remove (user_id, emoji). Removing an absent pair is a successful no-op."""
    ok = store.remove_reaction(db, room_code=code, message_id=message_id, user_id=user_id, emoji=emoji)
    return _mutation_result(request, "remove_reaction", code, message_id, ok)


@app.get("/ttl", response_model=TTLResponse)
async def message_ttl() -> TTLResponse:
    """Retention window after which messages disappear."""
    return TTLResponse(ttl_seconds=int(store.get_message_ttl().total_seconds()))


# =============================================================================
# Admin Routes
# =============================================================================

@app.post(
    "/admin/prune",
    response_model=PruneResponse,
    responses={403: {"model": ErrorResponse, "description": "Not an admin"}},
)
async def prune(
    x_admin_token: Annotated[str | None, Header(alias="X-Admin-Token")] = None,
    db: Session = Depends(get_db)
) -> PruneResponse:
    """Remove expired messages and idle empty rooms now. Admin only."""
    if not has_permission(x_admin_token, settings.ADMIN_TOKEN, "prune"):
        logger.warning("Prune refused: caller is not an admin")
        raise Forbidden()

    result = prune_expired_messages(db)
    record_prune(result.messages, result.rooms)
    return PruneResponse(messages_pruned=result.messages, rooms_pruned=result.rooms)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics:
    - http_requests_total, request_latency_seconds
    - message_operations_total
    - reaper_pruned_total
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
