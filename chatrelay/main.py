import json
import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError

from chatrelay.config import settings
from chatrelay.dispatcher import CanonicalMessage, Dispatcher, Outcome
from chatrelay.errors import StorageError
from chatrelay.inference import AzureChatBackend, EchoBackend, InferenceBackend
from chatrelay.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from chatrelay.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from chatrelay.schemas import (
    ContextEntryResponse,
    ContextResponse,
    ErrorResponse,
    HealthResponse,
    InboundMessage,
    MessageStateResponse,
    PartitionsListResponse,
    StatsResponse,
    WebhookResponse,
)
from chatrelay.storage import PartitionRegistry
from chatrelay.utils import verify_handshake_signature, verify_hmac_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


# =============================================================================
# Dependencies
# =============================================================================

@lru_cache()
def get_registry() -> PartitionRegistry:
    return PartitionRegistry(settings.PARTITION_DIR)


@lru_cache()
def get_backend() -> InferenceBackend:
    if settings.AZURE_AI_INFERENCE_ENDPOINT and settings.AZURE_AI_INFERENCE_API_KEY:
        return AzureChatBackend(
            endpoint=settings.AZURE_AI_INFERENCE_ENDPOINT,
            api_key=settings.AZURE_AI_INFERENCE_API_KEY,
            model=settings.AZURE_AI_MODEL,
            api_version=settings.AZURE_AI_API_VERSION,
            system_prompt=settings.SYSTEM_PROMPT,
            image_prompt=settings.IMAGE_PROMPT,
            max_tokens=settings.AZURE_AI_MAX_TOKENS,
            temperature=settings.AZURE_AI_TEMPERATURE,
            timeout_seconds=settings.INFERENCE_TIMEOUT_SECONDS,
        )
    logger.warning("No inference endpoint configured, falling back to echo backend")
    return EchoBackend()


def get_dispatcher(
    registry: PartitionRegistry = Depends(get_registry),
    backend: InferenceBackend = Depends(get_backend),
) -> Dispatcher:
    return _build_dispatcher(registry, backend)


@lru_cache()
def _build_dispatcher(registry: PartitionRegistry, backend: InferenceBackend) -> Dispatcher:
    return Dispatcher(
        registry,
        backend,
        dead_knock_threshold=settings.DEAD_KNOCK_THRESHOLD,
        dead_timeout_seconds=settings.DEAD_TIMEOUT_SECONDS,
        channel_timeout_seconds=settings.CHANNEL_TIMEOUT_SECONDS,
        poll_interval_seconds=settings.POLL_INTERVAL_SECONDS,
        context_window=settings.CONTEXT_WINDOW,
        fallback_reply=settings.FALLBACK_REPLY,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: fail fast on an invalid dead-letter policy
    - Shutdown: close every partition engine
    """
    _build_dispatcher(get_registry(), get_backend())
    yield
    get_registry().dispose()


app = FastAPI(
    title="Chat Relay",
    description="Bridges a redelivering chat webhook channel to a slow inference backend",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(
    response: Response,
    registry: PartitionRegistry = Depends(get_registry),
) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. WEBHOOK_SECRET and CHANNEL_TOKEN are set
    2. The partition directory is writable and open partitions respond

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WEBHOOK_SECRET or not settings.CHANNEL_TOKEN:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="WEBHOOK_SECRET or CHANNEL_TOKEN not configured")

    if not registry.check_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Partition storage not usable")

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@app.get("/webhook", response_class=PlainTextResponse)
async def webhook_handshake(
    signature: str = "",
    timestamp: str = "",
    nonce: str = "",
    echostr: str = "",
) -> PlainTextResponse:
    """Server-address verification: echo ``echostr`` back when the signature matches."""
    if not settings.CHANNEL_TOKEN or not verify_handshake_signature(
        settings.CHANNEL_TOKEN, timestamp, nonce, signature
    ):
        logger.warning("Handshake with invalid signature")
        return PlainTextResponse("Invalid signature", status_code=status.HTTP_403_FORBIDDEN)
    logger.info("Handshake verified")
    return PlainTextResponse(echostr)


@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        202: {"model": WebhookResponse, "description": "Still computing, channel should redeliver"},
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"description": "Validation error"},
        503: {"model": ErrorResponse, "description": "Message state unknown"},
    }
)
async def webhook(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """
    Relay one inbound delivery.

    - Validates HMAC-SHA256 signature using X-Signature header
    - Validates request body against InboundMessage schema
    - First sighting: calls the inference backend and returns its reply
    - Redelivery: answers from buffered replies, waits, or falls back
    """
    raw_body = await request.body()

    if not x_signature or not verify_hmac_signature(raw_body, x_signature, settings.WEBHOOK_SECRET):
        logger.error("Missing or invalid X-Signature")
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request=request, result="invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )

    body_dict = None
    try:
        body_dict = json.loads(raw_body)
        inbound = InboundMessage.model_validate(body_dict)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON: {e}")
        record_webhook_outcome("validation_error")
        log_webhook_data(request=request, result="validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid JSON: {str(e)}"
        )
    except ValidationError as e:
        logger.error(f"Validation error: {e}")
        record_webhook_outcome("validation_error")
        log_webhook_data(
            request=request,
            message_id=body_dict.get("message_id") if isinstance(body_dict, dict) else None,
            result="validation_error"
        )
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )

    message = CanonicalMessage(
        message_id=inbound.message_id,
        remote_id=inbound.from_user,
        local_id=inbound.to,
        created_at=inbound.create_time,
        type=inbound.msg_type.value,
        payload=inbound.payload(),
    )
    result = await dispatcher.dispatch(message)

    if result.outcome in (Outcome.ANSWER, Outcome.ACK) or result.state == "dead":
        record_webhook_outcome(result.state)
    else:
        record_webhook_outcome(result.outcome.value)
    log_webhook_data(
        request=request,
        message_id=message.message_id,
        state=result.state,
        knock_count=result.knock_count,
        result=result.outcome.value,
    )

    if result.outcome == Outcome.ERROR:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="message state unknown, retry"
        )
    if result.outcome == Outcome.WAIT:
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=WebhookResponse(status="pending", state=result.state).model_dump(),
        )
    return WebhookResponse(status="ok", state=result.state, replies=result.replies)


# =============================================================================
# Conversation Inspection Routes
# =============================================================================

def _require_conversation(dispatcher: Dispatcher, remote_id: str, local_id: str) -> None:
    # Inspection must not create partitions as a side effect
    if not dispatcher.registry.exists(remote_id, local_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="conversation not found")


@app.get("/conversations", response_model=PartitionsListResponse)
async def list_conversations(
    registry: PartitionRegistry = Depends(get_registry),
) -> PartitionsListResponse:
    """List every conversation partition with its participant pair."""
    partitions = registry.list_partitions()
    return PartitionsListResponse(data=partitions, total=len(partitions))


@app.get("/conversations/{remote_id}/{local_id}/context", response_model=ContextResponse)
async def conversation_context(
    remote_id: str,
    local_id: str,
    n: Annotated[int, Query(le=100, description="Number of most recent messages")] = 10,
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> ContextResponse:
    """Most recent messages newest first, each with its replies in sequence order."""
    _require_conversation(dispatcher, remote_id, local_id)
    try:
        entries = dispatcher.engine_for(remote_id, local_id).get_context(n)
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return ContextResponse(
        data=[ContextEntryResponse(user=e.user, agent=e.agent) for e in entries]
    )


@app.get(
    "/conversations/{remote_id}/{local_id}/messages/{message_id}",
    response_model=MessageStateResponse,
    responses={404: {"model": ErrorResponse}},
)
async def conversation_message(
    remote_id: str,
    local_id: str,
    message_id: str,
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> MessageStateResponse:
    """Stored state of one message, including dead letters that were never replied."""
    _require_conversation(dispatcher, remote_id, local_id)
    try:
        engine = dispatcher.engine_for(remote_id, local_id)
        row = engine.get_message(message_id)
        if row is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="message not found")
        peek = engine.peek_reply(message_id)
        replies = engine.list_replies(message_id)
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return MessageStateResponse(
        **row,
        reply_status=peek.status,
        replies=[{"sequence": r.sequence, "type": r.type, "payload": r.payload} for r in replies],
    )


@app.get("/conversations/{remote_id}/{local_id}/stats", response_model=StatsResponse)
async def conversation_stats(
    remote_id: str,
    local_id: str,
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> StatsResponse:
    _require_conversation(dispatcher, remote_id, local_id)
    try:
        stats = dispatcher.engine_for(remote_id, local_id).get_stats()
    except StorageError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return StatsResponse(**stats)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
