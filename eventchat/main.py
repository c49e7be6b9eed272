import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Annotated, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from eventchat.config import settings
from eventchat.dispatcher import NotificationDispatcher, NotificationOutbox
from eventchat.exceptions import StoreError
from eventchat.feed import change_feed
from eventchat.logging_utils import RequestLoggingMiddleware, log_hook_data, setup_logging
from eventchat.metrics import get_metrics, get_metrics_content_type, record_hook_outcome
from eventchat.push_gateway import ExpoPushGateway
from eventchat.schemas import (
    ConversationCreateRequest,
    ConversationResponse,
    CountResponse,
    DeviceTokenRequest,
    DeviceTokenResponse,
    DispatchHookRequest,
    DispatchHookResponse,
    ErrorResponse,
    HealthResponse,
    MessageCreateRequest,
    MessageResponse,
    MessagesListResponse,
    MessageUpdateRequest,
    ReactionRequest,
    ReactionResponse,
    StatusResponse,
    TypingRequest,
)
from eventchat.storage import (
    add_reaction,
    check_db_health,
    count_messages,
    create_conversation,
    create_message,
    delete_message,
    get_conversation,
    get_db,
    get_message,
    get_messages_before,
    get_messages_window,
    get_notification,
    init_db,
    register_device_token,
    remove_device_token,
    remove_reaction,
    update_message_body,
)
from eventchat.utils import sse_format, to_iso, verify_hmac_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables, build the push gateway, start the notification outbox
    - Shutdown: stop the outbox and close the gateway's HTTP client
    """
    # Startup
    init_db()
    gateway = getattr(app.state, "push_gateway", None)
    owns_gateway = gateway is None
    if owns_gateway:
        gateway = ExpoPushGateway(
            url=settings.PUSH_GATEWAY_URL,
            timeout_seconds=settings.PUSH_TIMEOUT_SECONDS,
            access_token=settings.PUSH_ACCESS_TOKEN,
        )
    dispatcher = NotificationDispatcher(gateway, deadline_seconds=settings.DISPATCH_DEADLINE_SECONDS)
    app.state.outbox = NotificationOutbox(dispatcher, concurrency=settings.DISPATCH_CONCURRENCY)
    await app.state.outbox.start()
    yield
    # Shutdown
    await app.state.outbox.stop()
    app.state.outbox = None
    if owns_gateway:
        await gateway.close()


app = FastAPI(
    title="Event Chat API",
    description="Staff/guest event chat with change feed and push notification fan-out",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


def _http_error(e: StoreError) -> HTTPException:
    """Translate a repository error to the matching HTTP status."""
    return HTTPException(status_code=e.status_code or status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))


def _enqueue_notification(request: Request, notification_id: int) -> None:
    outbox: Optional[NotificationOutbox] = getattr(request.app.state, "outbox", None)
    if outbox is None:
        logger.warning(f"No outbox running; notification {notification_id} stays pending")
        return
    outbox.enqueue(notification_id)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    Used by orchestrators to determine if the app needs to be restarted.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. WEBHOOK_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WEBHOOK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="WEBHOOK_SECRET not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Conversation Routes
# =============================================================================

@app.post("/conversations", response_model=ConversationResponse)
async def open_conversation(
    payload: ConversationCreateRequest,
    response: Response,
    db: Session = Depends(get_db)
) -> ConversationResponse:
    """
    Open the conversation between an admin and a guest for an event.

    Returns 201 when created, 200 when it already existed.
    """
    conversation, created = create_conversation(
        db,
        event_id=payload.event_id,
        admin_identity=payload.admin_identity,
        guest_identity=payload.guest_identity,
    )
    response.status_code = status.HTTP_201_CREATED if created else status.HTTP_200_OK
    return ConversationResponse.model_validate(conversation)


@app.get(
    "/conversations/{conversation_id}/messages",
    response_model=MessagesListResponse,
    responses={404: {"model": ErrorResponse, "description": "Conversation not found"}},
)
async def list_messages(
    conversation_id: int,
    limit: Annotated[int, Query(ge=1, le=settings.MAX_PAGE_SIZE, description="Page size")] = settings.PAGE_SIZE,
    offset: Annotated[Optional[int], Query(ge=0, description="Window start (count-then-offset paging)")] = None,
    before_created_at: Annotated[Optional[datetime], Query(description="Keyset cursor timestamp (ISO-8601 UTC)")] = None,
    before_id: Annotated[Optional[int], Query(ge=1, description="Keyset cursor message id")] = None,
    db: Session = Depends(get_db)
) -> MessagesListResponse:
    """
    Page through a conversation's messages, oldest first within the page.

    Query Parameters:
        - limit: page size (default PAGE_SIZE, max MAX_PAGE_SIZE)
        - offset: window start; selects count-then-offset paging
        - before_created_at + before_id: keyset cursor; returns the `limit`
          newest messages strictly before it
        - neither: the newest page

    Response:
        - data: messages ordered by created_at ASC, id ASC
        - total: total messages in the conversation
        - limit, offset: echo of the window (offset is 0 for keyset pages)
    """
    logger.info(
        f"GET messages: conversation={conversation_id}, limit={limit}, offset={offset}, "
        f"before=({before_created_at}, {before_id})"
    )
    try:
        get_conversation(db, conversation_id)
        if offset is not None:
            if before_created_at is not None or before_id is not None:
                raise HTTPException(
                    status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                    detail="offset cannot be combined with a keyset cursor",
                )
            messages, total = get_messages_window(db, conversation_id, limit, offset)
        else:
            cursor = to_iso(before_created_at) if before_created_at is not None else None
            messages, total = get_messages_before(db, conversation_id, limit, cursor, before_id)
    except StoreError as e:
        raise _http_error(e)

    data = [MessageResponse.model_validate(msg) for msg in messages]
    logger.debug(f"Returned {len(data)} of {total} messages for conversation {conversation_id}")
    return MessagesListResponse(data=data, total=total, limit=limit, offset=offset or 0)


@app.get("/conversations/{conversation_id}/messages/count", response_model=CountResponse)
async def message_count(conversation_id: int, db: Session = Depends(get_db)) -> CountResponse:
    try:
        get_conversation(db, conversation_id)
    except StoreError as e:
        raise _http_error(e)
    return CountResponse(total=count_messages(db, conversation_id))


# =============================================================================
# Message Routes
# =============================================================================

@app.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        403: {"model": ErrorResponse, "description": "Sender is not a party of the conversation"},
        404: {"model": ErrorResponse, "description": "Conversation or reply target not found"},
        422: {"description": "Validation error"},
    }
)
async def post_message(
    conversation_id: int,
    payload: MessageCreateRequest,
    request: Request,
    db: Session = Depends(get_db)
) -> MessageResponse:
    """
    Insert a message.

    The insert commits together with a pending notification record; the
    record is then handed to the outbox and the insert is published on the
    change feed. Push delivery never affects this response.
    """
    try:
        message, record = create_message(
            db,
            conversation_id=conversation_id,
            sender_type=payload.sender_type,
            sender_identity=payload.sender_identity,
            body=payload.body,
            reply_to_id=payload.reply_to_id,
            sender_name=payload.sender_name,
            preview_length=settings.PUSH_PREVIEW_LENGTH,
        )
    except StoreError as e:
        logger.warning(f"Message rejected in conversation {conversation_id}: {e}")
        raise _http_error(e)

    result = MessageResponse.model_validate(message)
    _enqueue_notification(request, record.id)
    change_feed.message_inserted(result)
    return result


@app.patch("/messages/{message_id}", response_model=MessageResponse)
async def edit_message(
    message_id: int,
    payload: MessageUpdateRequest,
    db: Session = Depends(get_db)
) -> MessageResponse:
    """Edit a message body; only its sender may do so."""
    try:
        message = update_message_body(db, message_id, payload.editor_identity, payload.body)
        message = get_message(db, message_id)
    except StoreError as e:
        raise _http_error(e)

    result = MessageResponse.model_validate(message)
    change_feed.message_updated(result)
    return result


@app.delete("/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_message(
    message_id: int,
    requester: Annotated[str, Query(min_length=1, description="Identity requesting the delete")],
    db: Session = Depends(get_db)
) -> Response:
    """Hard-delete a message; only its sender may do so."""
    try:
        conversation_id = delete_message(db, message_id, requester)
    except StoreError as e:
        raise _http_error(e)

    change_feed.message_deleted(conversation_id, message_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# Reaction Routes
# =============================================================================

@app.post("/messages/{message_id}/reactions", response_model=ReactionResponse)
async def react(
    message_id: int,
    payload: ReactionRequest,
    db: Session = Depends(get_db)
) -> ReactionResponse:
    """
    Add a reaction. Idempotent: an existing (message, reactor, emoji) returns
    200 with duplicate=true and publishes nothing.
    """
    try:
        conversation_id, is_duplicate = add_reaction(db, message_id, payload.reactor, payload.emoji)
    except StoreError as e:
        raise _http_error(e)

    if not is_duplicate:
        change_feed.reaction_changed(conversation_id, message_id, payload.reactor, payload.emoji, added=True)
    return ReactionResponse(status="ok", duplicate=is_duplicate)


@app.delete("/messages/{message_id}/reactions", response_model=ReactionResponse)
async def unreact(
    message_id: int,
    reactor: Annotated[str, Query(min_length=1)],
    emoji: Annotated[str, Query(min_length=1)],
    db: Session = Depends(get_db)
) -> ReactionResponse:
    """Remove a reaction. Removing one that does not exist is not an error."""
    try:
        conversation_id, removed = remove_reaction(db, message_id, reactor, emoji)
    except StoreError as e:
        raise _http_error(e)

    if removed:
        change_feed.reaction_changed(conversation_id, message_id, reactor, emoji, added=False)
    return ReactionResponse(status="ok", duplicate=not removed)


# =============================================================================
# Typing Indicator Route
# =============================================================================

@app.post(
    "/conversations/{conversation_id}/typing",
    response_model=StatusResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={403: {"model": ErrorResponse, "description": "Identity is not a party of the conversation"}},
)
async def typing_indicator(
    conversation_id: int,
    payload: TypingRequest,
    db: Session = Depends(get_db)
) -> StatusResponse:
    """
    Broadcast a typing start/stop on the conversation's change feed.

    Nothing is stored; subscribers that miss the event simply never show it.
    """
    try:
        conversation = get_conversation(db, conversation_id)
    except StoreError as e:
        raise _http_error(e)
    if not conversation.is_party(payload.identity):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"{payload.identity} is not a party of conversation {conversation_id}",
        )

    change_feed.typing_changed(conversation_id, payload.identity, payload.is_typing)
    return StatusResponse(status="accepted")


# =============================================================================
# Device Token Routes
# =============================================================================

@app.put("/devices", response_model=DeviceTokenResponse)
async def put_device(payload: DeviceTokenRequest, db: Session = Depends(get_db)) -> DeviceTokenResponse:
    """Register or refresh a push token for an identity."""
    created = register_device_token(db, payload.identity, payload.token, payload.platform)
    return DeviceTokenResponse(status="ok", created=created)


@app.delete("/devices/{token}", response_model=StatusResponse)
async def delete_device(token: str, db: Session = Depends(get_db)) -> StatusResponse:
    if not remove_device_token(db, token):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="device token not found")
    return StatusResponse(status="ok")


# =============================================================================
# Change Feed Route
# =============================================================================

@app.get("/conversations/{conversation_id}/feed")
async def conversation_feed(
    conversation_id: int,
    request: Request,
    db: Session = Depends(get_db)
) -> StreamingResponse:
    """
    Server-Sent Events stream of a conversation's changes.

    Each event is `event: <type>`, `id: <seq>`, `data: <FeedEvent JSON>`.
    Comment lines are sent as keepalives. Events published while a client
    is disconnected are not replayed; clients reload the newest page on
    every (re)connect.
    """
    try:
        get_conversation(db, conversation_id)
    except StoreError as e:
        raise _http_error(e)

    # Subscribe before the response starts so nothing published after the
    # client sees the stream open is missed
    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = change_feed.subscribe(conversation_id, queue.put_nowait)
    logger.info(f"Feed opened for conversation {conversation_id}")

    async def event_stream():
        try:
            yield ": connected\n\n"
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=settings.FEED_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield sse_format(event.model_dump_json(), event=event.type, event_id=str(event.seq))
        finally:
            unsubscribe()
            logger.info(f"Feed closed for conversation {conversation_id}")

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# =============================================================================
# Dispatch Hook Route
# =============================================================================

@app.post(
    "/hooks/message-inserted",
    response_model=DispatchHookResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        404: {"model": ErrorResponse, "description": "Notification record not found"},
        422: {"description": "Validation error"},
    }
)
async def message_inserted_hook(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    db: Session = Depends(get_db)
) -> DispatchHookResponse:
    """
    Trigger dispatch of a notification record from an external insert hook.

    - Validates HMAC-SHA256 signature using X-Signature header
    - Body: {"notification_id": <int>}
    - The dispatch runs on the outbox; a record that is no longer pending is
      skipped there, so repeated calls never produce a second attempt

    Headers:
        - Content-Type: application/json
        - X-Signature: hex HMAC-SHA256 of raw body using WEBHOOK_SECRET
    """
    raw_body = await request.body()
    logger.debug(f"Dispatch hook body size: {len(raw_body)} bytes")

    if not x_signature or not verify_hmac_signature(raw_body, x_signature, settings.WEBHOOK_SECRET):
        logger.error("Missing or invalid X-Signature on dispatch hook")
        record_hook_outcome("invalid_signature")
        log_hook_data(request=request, result="invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )

    try:
        hook = DispatchHookRequest.model_validate(json.loads(raw_body))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.error(f"Dispatch hook validation error: {e}")
        record_hook_outcome("validation_error")
        log_hook_data(request=request, result="validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )

    try:
        get_notification(db, hook.notification_id)
    except StoreError as e:
        record_hook_outcome("not_found")
        log_hook_data(request=request, notification_id=hook.notification_id, result="not_found")
        raise _http_error(e)

    _enqueue_notification(request, hook.notification_id)
    record_hook_outcome("queued")
    log_hook_data(request=request, notification_id=hook.notification_id, result="queued")
    return DispatchHookResponse(status="queued", notification_id=hook.notification_id)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total: Total HTTP requests by method, path, status
    - request_latency_seconds: Request latency histogram
    - dispatch_hook_requests_total: Dispatch hook outcomes by result
    - push_dispatch_total / push_receipts_total: Dispatcher outcomes
    - feed_events_published_total: Change feed events by type
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
