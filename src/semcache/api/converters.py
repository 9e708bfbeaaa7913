"""
API <-> Domain converters (mappers).

Keep FastAPI/Pydantic (API layer) types separate from domain dataclasses.
Small, pure functions that translate between layers.
"""

from typing import Any

import pydantic

from semcache.api.errors import describe_validation_errors
from semcache.api.schemas.admin import IssuedKeyResponse, ProjectResponse, UsageResponse
from semcache.api.schemas.query import DebugSchema, QueryRequestSchema, QueryResponseSchema
from semcache.domain.exceptions import NotCacheableError, ValidationError
from semcache.domain.models import APIKey, Project, QueryRequest, QueryResult, UsageRecord


def to_domain_query_request(payload: Any, default_threshold: float) -> QueryRequest:
    """Convert a decoded JSON body into a domain QueryRequest.

    Streaming requests and structured prompts raise NotCacheableError (422);
    anything else the schema rejects raises ValidationError (400). Checks that
    depend on configuration (prompt length, supported models) happen in the
    orchestrator.
    """
    if isinstance(payload, dict):
        if payload.get("stream") is True:
            raise NotCacheableError("Streaming requests cannot be cached")
        if isinstance(payload.get("prompt"), (list, dict)):
            raise NotCacheableError("Only plain text prompts can be cached")

    try:
        schema = QueryRequestSchema.model_validate(payload)
    except pydantic.ValidationError as e:
        raise ValidationError(describe_validation_errors(e.errors())) from e

    threshold = schema.similarity_threshold
    return QueryRequest(
        prompt=schema.prompt,
        model=schema.model,
        similarity_threshold=default_threshold if threshold is None else threshold,
        context=schema.context,
        include_debug=schema.include_debug,
    )


def to_api_query_response(result: QueryResult) -> dict[str, Any]:
    """Convert a domain QueryResult to the response body. `debug` only when present."""
    response = QueryResponseSchema(
        cache_hit=result.cache_hit,
        response=result.response,
        similarity_score=result.similarity_score,
        cost_saved=result.cost_saved,
        llm_provider=result.llm_provider,
        debug=DebugSchema(**vars(result.debug)) if result.debug is not None else None,
    )
    body = response.model_dump()
    if result.debug is None:
        del body["debug"]
    return body


def to_api_project(project: Project) -> ProjectResponse:
    """Convert a domain Project to the admin response."""
    return ProjectResponse(
        id=project.id,
        name=project.name,
        tier=project.tier.value,
        created_at=project.created_at,
    )


def to_api_issued_key(token: str, key: APIKey) -> IssuedKeyResponse:
    """The only response that ever carries the plaintext token."""
    return IssuedKeyResponse(
        key_id=key.key_id,
        project_id=key.project_id,
        api_key=token,
        prefix=key.prefix,
        created_at=key.created_at,
    )


def to_api_usage(record: UsageRecord, monthly_quota: int) -> UsageResponse:
    """Convert a UsageRecord; monthly_quota 0 means unlimited."""
    return UsageResponse(
        project_id=record.project_id,
        period=record.period,
        total_queries=record.total_queries,
        cache_hits=record.cache_hits,
        cache_misses=record.cache_misses,
        cost_saved=record.cost_saved,
        monthly_quota=monthly_quota,
    )
