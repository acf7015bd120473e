import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from chatrelay.metrics import record_http_request


# Context variable to store request_id for the current request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Custom JSON formatter to ensure ISO-8601 timestamps and request_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        # ISO-8601 in UTC with a Z suffix
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        # Set by the middleware for the life of one request
        if 'request_id' not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record['request_id'] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())
    # Replace whatever handlers uvicorn or a previous call installed
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))
    logger.addHandler(json_handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Request lines come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    # SQLAlchemy is chatty at INFO once a partition is opened per conversation
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every HTTP request as one structured JSON line.

    Keys: ts, level, request_id, method, path, status, latency_ms.

    /webhook requests additionally carry:
    - message_id: from the request body (when it parsed)
    - state: engine state (new, pending, replied, dead)
    - knock_count: redeliveries seen so far
    - dup: True for any delivery after the first sighting
    - result: dispatch outcome (answer, ack, wait, fallback, error,
      invalid_signature, validation_error)
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        # Every logger in this request picks the id up through the formatter
        token = request_id_ctx.set(request_id)
        start_time = time.time()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.time() - start_time

            # Scrapes would otherwise dominate the request counters
            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            if hasattr(request.state, "webhook_log_data"):
                log_data.update(request.state.webhook_log_data)

            logger = logging.getLogger("chatrelay.requests")
            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(
    request: Request,
    message_id: Optional[str] = None,
    state: Optional[str] = None,
    knock_count: Optional[int] = None,
    result: Optional[str] = None,
):
    """
    Attach webhook-specific logging data to the request state.
    The middleware merges it into the request log line.

    Args:
        request: FastAPI request object
        message_id: Message id from the webhook payload
        state: Engine state of the message (new, pending, replied, dead)
        knock_count: Redeliveries seen before this one
        result: Dispatch outcome or rejection reason (answer, ack, wait,
            fallback, error, invalid_signature, validation_error)
    """
    webhook_data = {}

    if message_id is not None:
        webhook_data["message_id"] = message_id
    if state is not None:
        webhook_data["state"] = state
    if knock_count is not None:
        webhook_data["knock_count"] = knock_count
    if result is not None:
        webhook_data["result"] = result

    webhook_data["dup"] = state is not None and state != "new"

    request.state.webhook_log_data = webhook_data
