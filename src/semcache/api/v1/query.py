"""Cache query endpoint."""

import asyncio
import json
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from semcache.api.converters import to_api_query_response, to_domain_query_request
from semcache.api.deps import parse_bearer
from semcache.api.schemas.query import ErrorSchema, QueryRequestSchema, QueryResponseSchema
from semcache.domain.exceptions import NotCacheableError, RequestTimeoutError, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["Cache"])


async def _read_body(request: Request):
    content_type = request.headers.get("content-type")
    if not content_type:
        raise ValidationError("Content-Type header is required")
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type != "application/json" and not media_type.endswith("+json"):
        raise NotCacheableError(f"Content type {media_type!r} cannot be cached")
    raw = await request.body()
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValidationError(f"Request body is not valid JSON: {e}") from e


@router.post(
    "/cache/query",
    response_model=QueryResponseSchema,
    responses={
        400: {"model": ErrorSchema, "description": "Invalid parameters"},
        401: {"model": ErrorSchema, "description": "Missing, invalid or revoked API key"},
        403: {"model": ErrorSchema, "description": "API key not valid for the project"},
        422: {"model": ErrorSchema, "description": "Content not cacheable"},
        429: {"model": ErrorSchema, "description": "Rate limit or monthly quota exceeded"},
        502: {"model": ErrorSchema, "description": "Upstream provider error"},
        503: {"model": ErrorSchema, "description": "Temporarily unavailable"},
    },
    openapi_extra={
        "requestBody": {
            "required": True,
            "content": {
                "application/json": {"schema": QueryRequestSchema.model_json_schema()}
            },
        }
    },
    summary="Answer a prompt from the semantic cache",
    description="Embeds the prompt, searches the project's partition for a similar "
    "previously answered prompt and returns the cached answer when the similarity "
    "reaches the threshold. Otherwise the target model is called, the answer cached "
    "and returned.",
)
async def cache_query(request: Request) -> JSONResponse:
    settings = request.app.state.settings
    orchestrator = request.app.state.orchestrator
    project_scope = request.headers.get("x-project-id") or None

    # Authenticate before looking at the body: bad keys get 401 whatever they send
    token = parse_bearer(request.headers.get("authorization"))
    principal = await orchestrator.authorize(token, project_scope)

    payload = await _read_body(request)
    query = to_domain_query_request(payload, settings.cache.default_similarity_threshold)
    timeout = settings.request_timeout_seconds

    try:
        outcome = await asyncio.wait_for(
            orchestrator.handle(token, query, project_scope=project_scope, principal=principal),
            timeout=timeout,
        )
    except TimeoutError as e:
        logger.warning("Query %s exceeded the %.1fs deadline", query.id, timeout)
        raise RequestTimeoutError(
            "The request did not complete in time; the answer will be cached when ready",
            retry_after=5,
        ) from e

    return JSONResponse(
        content=to_api_query_response(outcome.result),
        headers=outcome.rate_limit.headers(),
    )
