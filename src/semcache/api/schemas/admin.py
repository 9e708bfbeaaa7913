"""Administration and project-scoped request/response schemas."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class CreateProjectRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200, examples=["acme-support"])
    tier: Literal["free", "pro", "enterprise"] = Field(default="free", examples=["pro"])


class ProjectResponse(BaseModel):
    id: str
    name: str
    tier: Literal["free", "pro", "enterprise"]
    created_at: datetime


class IssuedKeyResponse(BaseModel):
    """A newly issued key. The token is shown here once and never again."""

    key_id: str
    project_id: str
    api_key: str
    prefix: str
    created_at: datetime


class CredentialRequest(BaseModel):
    api_key: str = Field(min_length=1, description="Provider API key. Stored encrypted, never returned.")


class UsageResponse(BaseModel):
    """Monthly usage counters for a project."""

    project_id: str
    period: str = Field(examples=["2025-01"])
    total_queries: int
    cache_hits: int
    cache_misses: int
    cost_saved: float
    monthly_quota: int = Field(description="0 means unlimited.")
