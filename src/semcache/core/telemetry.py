"""
Structured usage events for the dashboard and billing collaborators.

Logs METADATA only - never prompt, response, context or credentials.
"""

import structlog

from semcache.domain.exceptions import SemCacheError
from semcache.domain.models import QueryRequest, QueryResult

# Configure structlog for JSON output
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)

logger = structlog.get_logger("semcache.telemetry")


def log_query_completed(
    project_id: str, request: QueryRequest, result: QueryResult, total_time_ms: float
) -> None:
    """One event per successful query. No content logged."""
    logger.info(
        "query_completed",
        request_id=request.id,
        project_id=project_id,
        model=request.model,
        cache_hit=result.cache_hit,
        coalesced=result.coalesced,
        similarity_score=result.similarity_score,
        threshold=request.similarity_threshold,
        cost_saved=result.cost_saved,
        provider=result.llm_provider,
        entry_id=result.entry_id,
        total_time_ms=round(total_time_ms, 2),
    )


def log_query_failed(
    project_id: str | None, request: QueryRequest, state: str, error: BaseException
) -> None:
    """Log query failure with the state it failed in."""
    log_data = {
        "request_id": request.id,
        "project_id": project_id,
        "model": request.model,
        "failed_state": state,
        "error_type": type(error).__name__,
    }

    if isinstance(error, SemCacheError):
        log_data["status_code"] = error.status_code
        log_data["error_message"] = error.message

    logger.error("query_failed", **log_data)


def log_persistence_failed(project_id: str, entry_id: str, attempt: str, error: Exception) -> None:
    logger.error(
        "persistence_failed",
        project_id=project_id,
        entry_id=entry_id,
        attempt=attempt,
        error_type=type(error).__name__,
    )
