import logging
import sys
import time
import uuid

import structlog
from fastapi import Request
from starlette.responses import JSONResponse

logger = structlog.get_logger("beautypage")

_MASKED_KEYS = ("phone", "client_phone", "contact")


def masking_processor(logger, method_name, event_dict):
    """Masks phone numbers in log events."""
    for key in _MASKED_KEYS:
        if event_dict.get(key):
            val = str(event_dict[key])
            event_dict[key] = f"{val[:3]}***{val[-2:]}" if len(val) > 5 else "***"
    return event_dict


LOG_PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
    masking_processor,
    structlog.processors.JSONRenderer(),
]


def setup_logging(level: str = "INFO"):
    """One JSON line per event on stdout, request context merged in."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, str(level).upper(), logging.INFO),
    )
    structlog.configure(
        processors=LOG_PROCESSORS,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    # SQL echo stays off even at DEBUG
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


async def request_tracing_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        path=request.url.path,
        method=request.method,
        app="beautypage",
    )

    start_time = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        logger.error("http_request_failed", error=str(exc), duration_ms=duration_ms)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error", "request_id": request_id},
        )

    duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
    logger.info("http_request", status=response.status_code, duration_ms=duration_ms)
    response.headers["X-Request-ID"] = request_id
    return response
