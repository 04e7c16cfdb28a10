"""Tenant context, settings, switching, statistics and membership endpoints."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import structlog
from fastapi import APIRouter
from starlette.responses import Response

from tenant_gate.api.pipeline import PRESETS, RequestPipeline, RequestState
from tenant_gate.api.schemas import (
    CurrentTenantResponse,
    MemberListResponse,
    MemberResponse,
    RoleChangeRequest,
    TenantDetailResponse,
    TenantListResponse,
    TenantMembershipResponse,
    TenantResponse,
    TenantStatsResponse,
    TenantUpdateRequest,
)
from tenant_gate.auth.access_guard import AccessGuard
from tenant_gate.auth.roles import Permission, Role
from tenant_gate.errors import (
    InsufficientPermission,
    InvalidRequest,
    ResourceNotFound,
    UnauthorizedTenantAccess,
)
from tenant_gate.storage.orm import Membership, Tenant
from tenant_gate.storage.repositories import (
    MembershipRepository,
    TenantRepository,
    UserRepository,
)

logger = structlog.get_logger()

MANAGE_USERS = replace(PRESETS["tenant_api"], permission=Permission.MANAGE_USERS)
MANAGE_SETTINGS = replace(
    PRESETS["tenant_api"], permission=Permission.MANAGE_SETTINGS
)
DELETE_TENANT = replace(PRESETS["tenant_api"], permission=Permission.DELETE_TENANT)


def _member(membership: Membership) -> MemberResponse:
    return MemberResponse(
        user_id=membership.user_id,
        email=membership.user.email,
        name=membership.user.name,
        role=membership.role,
        joined_at=membership.joined_at,
    )


async def list_tenants(state: RequestState) -> TenantListResponse:
    """Tenants the authenticated user is an active member of."""
    principal = state.user
    memberships = await MembershipRepository(state.db).list_active_for_user(
        principal.user_id
    )
    items = [
        TenantMembershipResponse(
            tenant=TenantResponse.model_validate(m.tenant),
            role=m.role,
            is_current=m.tenant_id == principal.current_tenant_id,
        )
        for m in memberships
    ]
    return TenantListResponse(items=items, count=len(items))


async def switch_tenant(state: RequestState) -> TenantMembershipResponse:
    """Point the caller's current tenant at ``tenant_id``.

    Unknown, inactive and non-member tenants all answer 403.
    """
    tenant_id = state.path_uuid("tenant_id")
    principal = state.user
    tenant = await TenantRepository(state.db).get_active_by_id(tenant_id)
    if tenant is None:
        raise UnauthorizedTenantAccess()
    guard = AccessGuard(MembershipRepository(state.db))
    membership = await guard.authorize(principal.user_id, tenant_id)
    users = UserRepository(state.db)
    user = await users.get_by_id(principal.user_id)
    if user is None:
        raise UnauthorizedTenantAccess()
    await users.set_current_tenant(user, tenant_id)
    logger.info(
        "current_tenant_switched",
        user_id=str(principal.user_id),
        tenant_id=str(tenant_id),
    )
    return TenantMembershipResponse(
        tenant=TenantResponse.model_validate(tenant),
        role=membership.role,
        is_current=True,
    )


async def _current(state: RequestState) -> Tenant:
    tenant = await TenantRepository(state.db).get_active_by_id(state.context.tenant_id)
    if tenant is None:
        raise ResourceNotFound()
    return tenant


async def current_tenant(state: RequestState) -> CurrentTenantResponse:
    context = state.context
    tenant = await _current(state)
    return CurrentTenantResponse(
        tenant=TenantResponse.model_validate(tenant),
        role=context.role,
        permissions=sorted(str(p) for p in context.permissions),
        resolved_by=str(context.method),
    )


async def update_current_tenant(state: RequestState) -> TenantDetailResponse:
    """Rename the tenant, move its subdomain or merge settings."""
    body = await state.parse_body(TenantUpdateRequest)
    if body.name is None and body.subdomain is None and not body.settings:
        raise InvalidRequest("No fields to update")
    tenant = await _current(state)
    try:
        await TenantRepository(state.db).update(
            tenant, name=body.name, subdomain=body.subdomain, settings=body.settings
        )
    except ValueError as exc:
        raise InvalidRequest(str(exc)) from exc
    return TenantDetailResponse.model_validate(tenant)


async def delete_current_tenant(state: RequestState) -> Response:
    """Deactivate the tenant. Owners only, whatever custom grants say."""
    context = state.context
    if context.role is not Role.OWNER:
        raise InsufficientPermission(str(Permission.DELETE_TENANT))
    await TenantRepository(state.db).deactivate(context.tenant_id)
    logger.warning(
        "tenant_deactivation_requested",
        tenant_id=str(context.tenant_id),
        user_id=str(state.user.user_id),
    )
    return Response(status_code=204)


async def tenant_stats(state: RequestState) -> TenantStatsResponse:
    window = timedelta(days=state.settings.statistics_window_days)
    stats = await state.scoped.tenant_statistics(window=window)
    return TenantStatsResponse.model_validate(stats)


async def list_members(state: RequestState) -> MemberListResponse:
    members = await state.scoped.list_members()
    return MemberListResponse(items=[_member(m) for m in members], count=len(members))


async def change_member_role(state: RequestState) -> MemberResponse:
    """Change a member's role. Demoting the last owner is rejected (409)."""
    target_user_id = state.path_uuid("user_id")
    body = await state.parse_body(RoleChangeRequest)
    target = await state.access.change_role(state.actor, target_user_id, body.role)
    await state.db.refresh(target, ["user"])
    return _member(target)


async def remove_member(state: RequestState) -> Response:
    """Remove a member. Removing the last owner is rejected (409)."""
    target_user_id = state.path_uuid("user_id")
    await state.access.remove_member(state.actor, target_user_id)
    return Response(status_code=204)


def build_router(pipeline: RequestPipeline) -> APIRouter:
    router = APIRouter(tags=["tenants"])
    pipeline.route(
        router,
        "/tenants",
        list_tenants,
        methods=["GET"],
        options=PRESETS["protected_api"],
    )
    pipeline.route(
        router,
        "/tenants/{tenant_id}/switch",
        switch_tenant,
        methods=["POST"],
        options=PRESETS["protected_api"],
    )
    pipeline.route(
        router,
        "/tenants/current",
        current_tenant,
        methods=["GET"],
        options=PRESETS["tenant_api"],
    )
    pipeline.route(
        router,
        "/tenants/current",
        update_current_tenant,
        methods=["PATCH"],
        options=MANAGE_SETTINGS,
    )
    pipeline.route(
        router,
        "/tenants/current",
        delete_current_tenant,
        methods=["DELETE"],
        options=DELETE_TENANT,
        status_code=204,
    )
    pipeline.route(
        router,
        "/tenants/current/stats",
        tenant_stats,
        methods=["GET"],
        options=PRESETS["tenant_api"],
    )
    pipeline.route(
        router,
        "/tenants/current/members",
        list_members,
        methods=["GET"],
        options=PRESETS["tenant_api"],
    )
    pipeline.route(
        router,
        "/tenants/current/members/{user_id}",
        change_member_role,
        methods=["PATCH"],
        options=MANAGE_USERS,
    )
    pipeline.route(
        router,
        "/tenants/current/members/{user_id}",
        remove_member,
        methods=["DELETE"],
        options=MANAGE_USERS,
        status_code=204,
    )
    return router
