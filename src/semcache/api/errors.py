"""
Exception handlers.

Every SemCacheError renders as {detail, retry_after?, fallback?} with the
status its class declares. 429 and 503 responses also carry Retry-After;
rate-limit rejections carry the X-RateLimit-* headers.
"""

import logging
import math

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from semcache.core.metrics import metrics
from semcache.domain.exceptions import RateLimitExceededError, SemCacheError

logger = logging.getLogger(__name__)


def error_headers(exc: SemCacheError) -> dict[str, str]:
    headers: dict[str, str] = {}
    if exc.retry_after is not None and exc.status_code in (429, 503):
        headers["Retry-After"] = str(exc.retry_after)
    if isinstance(exc, RateLimitExceededError):
        headers["X-RateLimit-Limit"] = str(exc.limit)
        headers["X-RateLimit-Remaining"] = str(exc.remaining)
        headers["X-RateLimit-Reset"] = str(math.ceil(exc.reset_at))
    return headers


async def semcache_error_handler(request: Request, exc: SemCacheError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    else:
        logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=error_headers(exc),
    )


def describe_validation_errors(errors) -> str:
    """First pydantic error as "field: message"."""
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": describe_validation_errors(exc.errors())})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    metrics.increment_dict("requests_by_status", "500")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(SemCacheError, semcache_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
