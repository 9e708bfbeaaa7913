"""Project and API key administration. Guarded by the X-Admin-Token header."""

import logging

from fastapi import APIRouter, Depends, Request, Response

from semcache.api.converters import to_api_issued_key, to_api_project
from semcache.api.deps import require_admin
from semcache.api.schemas.admin import CreateProjectRequest, IssuedKeyResponse, ProjectResponse
from semcache.domain.models import Tier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["Administration"], dependencies=[Depends(require_admin)])


@router.post("/projects", status_code=201, summary="Create a project")
async def create_project(body: CreateProjectRequest, request: Request) -> ProjectResponse:
    project = await request.app.state.key_store.create_project(body.name, Tier(body.tier))
    logger.info("Created project %s (%s)", project.id, project.tier.value)
    return to_api_project(project)


@router.post(
    "/projects/{project_id}/keys",
    status_code=201,
    summary="Issue an API key",
    description="The returned api_key is shown only once.",
)
async def issue_key(project_id: str, request: Request) -> IssuedKeyResponse:
    token, key = await request.app.state.key_store.issue_key(project_id)
    return to_api_issued_key(token, key)


@router.post(
    "/keys/{key_id}/revoke",
    status_code=204,
    summary="Revoke an API key",
    description="Immediate and irreversible. Revoking a revoked key is a no-op.",
)
async def revoke_key(key_id: str, request: Request) -> Response:
    await request.app.state.key_store.revoke_key(key_id)
    return Response(status_code=204)
