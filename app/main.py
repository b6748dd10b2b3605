import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, Optional

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from app.config import settings
from app.errors import ChatServiceError
from app.feed import MessageFeed
from app.identity import Identity, get_identity, get_optional_identity
from app.logging_utils import setup_logging, bind_log_context, RequestLoggingMiddleware, log_request_data
from app.metrics import record_message_appended, get_metrics, get_metrics_content_type
from app.receipts import ReadTrigger, mark_read, mark_read_quietly, on_foreground, to_response, unread_for
from app.schemas import (
    ErrorResponse,
    HealthResponse,
    MarkReadRequest,
    MarkReadResponse,
    MessageCreate,
    MessageResponse,
    UnreadResponse,
    UploadResponse,
)
from app.storage import init_db, check_db_health, get_db, append_message, get_message, query_recent
from app.uploads import LocalBlobStore, PillowImageCodec, UploadCoordinator


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Fire-and-forget mark-as-read tasks; referenced here so they outlive their socket
_background_tasks: set = set()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and blob directory
    """
    init_db()
    Path(settings.BLOB_DIR).mkdir(parents=True, exist_ok=True)
    yield


app = FastAPI(
    title="Chat Read-Receipt API",
    description="Message store, read receipts, live feed and image uploads for a chat client",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)

app.state.feed = MessageFeed()
app.state.uploader = UploadCoordinator(
    codec=PillowImageCodec(),
    blob_store=LocalBlobStore(
        root=settings.BLOB_DIR,
        base_url=settings.BLOB_BASE_URL,
        chunk_size=settings.UPLOAD_CHUNK_SIZE,
    ),
)

app.mount(settings.BLOB_BASE_URL, StaticFiles(directory=settings.BLOB_DIR, check_dir=False), name="blobs")


@app.exception_handler(ChatServiceError)
async def chat_service_error_handler(request: Request, exc: ChatServiceError) -> JSONResponse:
    """Render every service error as {"detail": ...} with its status code."""
    logger.warning(f"{type(exc).__name__}: {exc.detail}")
    log_request_data(request, result=type(exc).__name__)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


def _dispatch_background(func, *args) -> None:
    task = asyncio.create_task(run_in_threadpool(func, *args))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the
    schema is applied, otherwise 503.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Message Routes
# =============================================================================

@app.post(
    "/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        401: {"model": ErrorResponse, "description": "No identity"},
        422: {"model": ErrorResponse, "description": "Validation error"},
        503: {"model": ErrorResponse, "description": "Store unavailable"},
    }
)
async def send_message(
    request: Request,
    body: MessageCreate,
    identity: Annotated[Optional[Identity], Depends(get_optional_identity)],
    db: Session = Depends(get_db)
) -> MessageResponse:
    """
    Append a message. The store assigns id and timestamp and derives the
    type (text, image, mixed) from the attached content.

    On failure nothing is created, so the client keeps its input and can retry.
    """
    logger.info("POST /messages")

    message = append_message(
        db=db,
        identity=identity,
        text=body.text,
        image_url=body.image_url,
        thumbnail_url=body.thumbnail_url,
    )

    record_message_appended(message.type)
    log_request_data(request, message_id=message.id, result="created")

    return to_response(message, identity.user_id)


@app.get("/messages", response_model=list[MessageResponse])
async def list_recent_messages(
    identity: Annotated[Optional[Identity], Depends(get_optional_identity)],
    limit: Annotated[int, Query(ge=1, le=500, description="Maximum number of messages to return")] = settings.FEED_LIMIT,
    db: Session = Depends(get_db)
) -> list[MessageResponse]:
    """
    Newest `limit` messages, oldest first. One-shot version of the live feed.
    read_count excludes the viewer.
    """
    logger.info(f"GET /messages: limit={limit}")
    viewer_id = identity.user_id if identity else None
    return [to_response(message, viewer_id) for message in query_recent(db, limit)]


@app.post(
    "/messages/read",
    response_model=MarkReadResponse,
    responses={
        401: {"model": ErrorResponse, "description": "No identity"},
        404: {"model": ErrorResponse, "description": "Unknown message id"},
        503: {"model": ErrorResponse, "description": "Store unavailable"},
    }
)
async def mark_messages_read(
    request: Request,
    body: MarkReadRequest,
    identity: Annotated[Identity, Depends(get_identity)],
    db: Session = Depends(get_db)
) -> MarkReadResponse:
    """
    Mark messages as read by the caller in one batch.

    Without message_ids the current feed window is used. Already-read and
    self-authored messages are skipped, so repeating the call is harmless.
    """
    if body.message_ids is None:
        messages = query_recent(db)
    else:
        messages = [get_message(db, message_id) for message_id in body.message_ids]

    marked = mark_read(db, identity.user_id, messages)
    log_request_data(request, result="marked", marked=len(marked))
    return MarkReadResponse(marked=marked)


@app.get(
    "/messages/unread",
    response_model=UnreadResponse,
    responses={401: {"model": ErrorResponse, "description": "No identity"}},
)
async def list_unread_messages(
    identity: Annotated[Identity, Depends(get_identity)],
    limit: Annotated[int, Query(ge=1, le=500)] = settings.FEED_LIMIT,
    db: Session = Depends(get_db)
) -> UnreadResponse:
    """
    Ids in the newest `limit` messages the caller has not read yet.
    Own messages are never unread.
    """
    message_ids = unread_for(identity.user_id, query_recent(db, limit))
    return UnreadResponse(message_ids=message_ids, count=len(message_ids))


@app.get(
    "/messages/{message_id}",
    response_model=MessageResponse,
    responses={404: {"model": ErrorResponse, "description": "Message not found"}},
)
async def read_message(
    message_id: str,
    identity: Annotated[Optional[Identity], Depends(get_optional_identity)],
    db: Session = Depends(get_db)
) -> MessageResponse:
    message = get_message(db, message_id)
    return to_response(message, identity.user_id if identity else None)


# =============================================================================
# Read Triggers
# =============================================================================

@app.post("/presence/foreground", status_code=status.HTTP_202_ACCEPTED)
async def foreground(
    background_tasks: BackgroundTasks,
    identity: Annotated[Optional[Identity], Depends(get_optional_identity)],
) -> dict:
    """
    The client regained focus: mark the current window read in the
    background. Best effort; always accepted.
    """
    if identity is not None:
        background_tasks.add_task(on_foreground, identity.user_id)
    return {"status": "accepted"}


@app.websocket("/feed")
async def feed_socket(
    websocket: WebSocket,
    identity: Annotated[Optional[Identity], Depends(get_optional_identity)],
) -> None:
    """
    Live feed. Sends a FeedSnapshot JSON document on connect and after every
    store change. Each snapshot with unread messages triggers a best-effort
    mark-as-read for the connected user without delaying delivery.

    Client events: {"type": "foreground"} runs the foreground trigger.
    """
    await websocket.accept()
    with bind_log_context(user_id=identity.user_id if identity else None):
        logger.info("Feed client connected")
        await _serve_feed(websocket, identity)


async def _serve_feed(websocket: WebSocket, identity: Optional[Identity]) -> None:
    feed: MessageFeed = app.state.feed
    subscription = feed.subscribe(identity)

    async def receive_events() -> None:
        try:
            while True:
                try:
                    event = await websocket.receive_json()
                except ValueError as e:
                    logger.warning(f"Ignoring malformed feed event: {e}")
                    continue
                if isinstance(event, dict) and event.get("type") == "foreground" and identity is not None:
                    _dispatch_background(on_foreground, identity.user_id)
                else:
                    logger.debug(f"Ignoring feed event: {event}")
        except WebSocketDisconnect:
            logger.info("Feed client disconnected")
        finally:
            subscription.cancel()

    receiver = asyncio.create_task(receive_events())
    try:
        async for snapshot in subscription:
            await websocket.send_text(snapshot.model_dump_json())
            if identity is not None and unread_for(identity.user_id, snapshot.messages):
                _dispatch_background(
                    mark_read_quietly, identity.user_id, snapshot.messages, ReadTrigger.SNAPSHOT
                )
    except WebSocketDisconnect:
        logger.info("Feed client disconnected during send")
    except ChatServiceError as e:
        logger.error(f"Feed stopped: {e.detail}")
        await websocket.close(code=1011)
    finally:
        subscription.cancel()
        receiver.cancel()


# =============================================================================
# Upload Route
# =============================================================================

@app.post(
    "/uploads/images",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        401: {"model": ErrorResponse, "description": "No identity"},
        502: {"model": ErrorResponse, "description": "Upload failed"},
    }
)
async def upload_image(
    request: Request,
    identity: Annotated[Optional[Identity], Depends(get_optional_identity)],
) -> UploadResponse:
    """
    Upload raw image bytes. Returns URLs of the full-size and thumbnail
    derivatives, to be sent with the message afterwards.
    """
    raw_body = await request.body()
    logger.info(f"POST /uploads/images: {len(raw_body)} bytes")

    def on_progress(value: float) -> None:
        logger.debug(f"Upload progress: {value:.2f}")

    result = await run_in_threadpool(app.state.uploader.upload, identity, raw_body, on_progress)
    log_request_data(request, result="uploaded")
    return UploadResponse(image_url=result.image_url, thumbnail_url=result.thumbnail_url)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
