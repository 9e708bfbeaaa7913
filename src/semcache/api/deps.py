"""Request dependencies: bearer keys, admin token, wired services."""

import hmac

from fastapi import Header, Request

from semcache.domain.exceptions import AuthenticationError, ScopeError
from semcache.domain.models import APIKey, Project

BEARER_SCHEME = "bearer"


def parse_bearer(authorization: str | None) -> str:
    if not authorization:
        raise AuthenticationError("Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != BEARER_SCHEME or not token.strip():
        raise AuthenticationError("Authorization header must be 'Bearer <api key>'")
    return token.strip()


async def bearer_token(authorization: str | None = Header(default=None)) -> str:
    return parse_bearer(authorization)


async def require_admin(
    request: Request, x_admin_token: str | None = Header(default=None)
) -> None:
    expected = getattr(request.app.state, "admin_token", None)
    if not expected:
        raise AuthenticationError("Admin API is not configured")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise AuthenticationError("Invalid admin token")


async def authorize_project(request: Request, project_id: str, token: str) -> tuple[APIKey, Project]:
    """Authenticate the bearer key and require it to belong to project_id."""
    key, project = await request.app.state.key_store.authenticate(token)
    if project.id != project_id:
        raise ScopeError("API key does not belong to the requested project")
    return key, project
