"""Request/response schemas for the API layer."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from tenant_gate.auth.roles import Role
from tenant_gate.storage.orm import TenantPlan
from tenant_gate.storage.repositories import SLUG_MAX_LENGTH, SLUG_PATTERN

# --- Tenants ---


class TenantResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    slug: str
    subdomain: str | None
    plan: TenantPlan
    created_at: datetime


class TenantMembershipResponse(BaseModel):
    """A tenant the caller belongs to, with the caller's role in it."""

    tenant: TenantResponse
    role: Role
    is_current: bool


class TenantListResponse(BaseModel):
    """Response for ``GET /tenants``."""

    items: list[TenantMembershipResponse]
    count: int


class CurrentTenantResponse(BaseModel):
    """Resolved tenant context of the request."""

    tenant: TenantResponse
    role: Role
    permissions: list[str] = Field(
        description="Effective permissions; owners hold every permission."
    )
    resolved_by: str = Field(
        description="Resolution method: ``subdomain``, ``header`` or ``session``."
    )


class TenantStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    project_count: int
    document_count: int
    member_count: int
    recent_activity: int = Field(
        description="Audit events recorded within the statistics window."
    )
    generated_at: datetime


# --- Members ---


class MemberResponse(BaseModel):
    user_id: uuid.UUID
    email: str
    name: str | None
    role: Role
    joined_at: datetime


class MemberListResponse(BaseModel):
    items: list[MemberResponse]
    count: int


class TenantUpdateRequest(BaseModel):
    """Request body for ``PATCH /tenants/current``; omitted fields are kept."""

    name: str | None = Field(default=None, min_length=1, max_length=100)
    subdomain: str | None = Field(default=None, max_length=SLUG_MAX_LENGTH)
    settings: dict[str, Any] | None = Field(
        default=None, description="Merged into the existing settings."
    )


class TenantDetailResponse(TenantResponse):
    settings: dict[str, Any]


class RoleChangeRequest(BaseModel):
    """Request body for ``PATCH /tenants/current/members/{user_id}``."""

    role: Role


# --- Projects ---


class ProjectCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: str | None = Field(
        default=None,
        min_length=2,
        max_length=SLUG_MAX_LENGTH,
        pattern=SLUG_PATTERN.pattern,
        description="Derived from ``name`` when omitted.",
    )
    description: str | None = Field(default=None, max_length=2000)
    is_public: bool = False


class ProjectUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=2000)
    is_public: bool | None = None
    is_active: bool | None = None


class ProjectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    slug: str
    description: str | None
    is_public: bool
    is_active: bool
    created_at: datetime
    updated_at: datetime


class ProjectListResponse(BaseModel):
    items: list[ProjectResponse]
    total: int
    limit: int
    offset: int


# --- Documents ---


class DocumentCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    slug: str | None = Field(
        default=None, min_length=2, max_length=100, pattern=SLUG_PATTERN.pattern
    )
    content: str = ""
    is_published: bool = False


class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    project_id: uuid.UUID
    author_id: uuid.UUID | None
    title: str
    slug: str
    content: str
    is_published: bool
    created_at: datetime
    updated_at: datetime


class DocumentListResponse(BaseModel):
    items: list[DocumentResponse]
    total: int


# --- Events ---


class EventCreateRequest(BaseModel):
    """Analytics event; tenant and user are taken from the request context."""

    type: str = Field(..., min_length=1, max_length=100)
    resource_type: str | None = Field(default=None, max_length=50)
    resource_id: str | None = Field(default=None, max_length=64)
    data: dict[str, Any] = Field(default_factory=dict)


class EventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    type: str
    resource_type: str | None
    resource_id: str | None
    created_at: datetime


# --- Search ---


class SearchHit(BaseModel):
    kind: str = Field(description="``project`` or ``document``.")
    id: uuid.UUID
    title: str
    slug: str


class SearchResponse(BaseModel):
    query: str
    items: list[SearchHit]
    count: int
