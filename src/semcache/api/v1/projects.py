"""Project-scoped endpoints authenticated with the project's own API key."""

import logging
import re
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query, Request, Response

from semcache.api.converters import to_api_usage
from semcache.api.deps import authorize_project, bearer_token
from semcache.api.schemas.admin import CredentialRequest, UsageResponse
from semcache.domain.exceptions import NotFoundError, ValidationError
from semcache.domain.models import ProviderCredential

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/projects/{project_id}", tags=["Projects"])

_PERIOD = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


def _require_known_provider(request: Request, provider: str) -> None:
    if provider not in request.app.state.registry:
        raise NotFoundError(f"Unknown provider: {provider!r}")


@router.put("/credentials/{provider}", status_code=204, summary="Store or rotate a provider key")
async def put_credential(
    project_id: str,
    provider: str,
    body: CredentialRequest,
    request: Request,
    token: str = Depends(bearer_token),
) -> Response:
    await authorize_project(request, project_id, token)
    _require_known_provider(request, provider)
    store = request.app.state.store
    existing = await store.get_credential(project_id, provider)
    now = datetime.now(UTC)
    await store.put_credential(
        ProviderCredential(
            project_id=project_id,
            provider=provider,
            secret=body.api_key,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
    )
    logger.info("%s credential for provider %s", "Rotated" if existing else "Stored", provider)
    return Response(status_code=204)


@router.delete("/credentials/{provider}", status_code=204, summary="Delete a provider key")
async def delete_credential(
    project_id: str, provider: str, request: Request, token: str = Depends(bearer_token)
) -> Response:
    await authorize_project(request, project_id, token)
    if not await request.app.state.store.delete_credential(project_id, provider):
        raise NotFoundError(f"No {provider} credential stored for this project")
    return Response(status_code=204)


@router.get("/usage", summary="Monthly usage")
async def get_usage(
    project_id: str,
    request: Request,
    period: str | None = Query(default=None, description="YYYY-MM, defaults to the current month"),
    token: str = Depends(bearer_token),
) -> UsageResponse:
    _, project = await authorize_project(request, project_id, token)
    if period is not None and not _PERIOD.match(period):
        raise ValidationError("period must be formatted as YYYY-MM")
    record = await request.app.state.quota.get_usage(project_id, period)
    return to_api_usage(record, request.app.state.settings.tiers.monthly_quota(project.tier))


@router.delete("/cache/entries/{entry_id}", status_code=204, summary="Delete a cache entry")
async def delete_entry(
    project_id: str, entry_id: str, request: Request, token: str = Depends(bearer_token)
) -> Response:
    await authorize_project(request, project_id, token)
    await request.app.state.orchestrator.delete_entry(project_id, entry_id)
    return Response(status_code=204)
