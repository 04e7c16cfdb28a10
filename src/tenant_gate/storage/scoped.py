"""Tenant-scoped data access façade.

``ScopedDataAccess`` is the only path from request handlers to tenant-owned
rows. Each instance is bound to one immutable tenant id, and every
statement it issues is intersected with that id:

* filters and payloads cannot override ``tenant_id`` (a supplied value is
  dropped and logged);
* ``create`` stamps ``tenant_id`` and the acting user server-side;
* reads skip soft-deleted rows (``is_active = False``) unless asked not to;
* ``update``/``delete`` of a row owned by another tenant behave exactly
  like a missing row;
* foreign keys to other tenant-owned rows (``documents.project_id``) must
  point inside the same tenant, otherwise the write fails as not found.
"""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any, Generic, TypeVar

import structlog
from sqlalchemy import ColumnElement, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from tenant_gate.auth.roles import Role
from tenant_gate.errors import InvalidRequest, ResourceNotFound
from tenant_gate.storage.audit import AuditRecord, AuditTrail
from tenant_gate.storage.orm import AuditEvent, Base, Document, Membership, Project

logger = structlog.get_logger()

ModelT = TypeVar("ModelT", bound=Base)

TENANT_FIELD = "tenant_id"
# Columns a caller may never set directly.
PROTECTED_FIELDS: frozenset[str] = frozenset(
    {"id", TENANT_FIELD, "created_at", "updated_at"}
)
MAX_PAGE_SIZE = 200


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass(frozen=True)
class TenantStatistics:
    project_count: int
    document_count: int
    member_count: int
    recent_activity: int
    generated_at: datetime


class ScopedResource(Generic[ModelT]):
    """CRUD over one tenant-owned model, confined to the owner's scope."""

    def __init__(
        self,
        access: ScopedDataAccess,
        model: type[ModelT],
        *,
        resource_type: str,
        actor_field: str | None = None,
        references: Mapping[str, str] | None = None,
        audited: bool = True,
    ) -> None:
        self._access = access
        self._model = model
        self._resource_type = resource_type
        self._actor_field = actor_field
        # column -> name of the scoped resource it points at
        self._references = dict(references or {})
        self._audited = audited
        self._columns = frozenset(model.__table__.columns.keys())

    @property
    def resource_type(self) -> str:
        return self._resource_type

    @property
    def _soft_deletable(self) -> bool:
        return "is_active" in self._columns

    def _scope(self, *, include_inactive: bool = False) -> list[ColumnElement[bool]]:
        model: Any = self._model
        clauses: list[ColumnElement[bool]] = [
            model.tenant_id == self._access.tenant_id
        ]
        if self._soft_deletable and not include_inactive:
            clauses.append(model.is_active.is_(True))
        return clauses

    def _filters(self, where: Mapping[str, Any] | None) -> list[ColumnElement[bool]]:
        clauses: list[ColumnElement[bool]] = []
        for name, value in (where or {}).items():
            if name == TENANT_FIELD:
                self._override_ignored("where")
                continue
            if name not in self._columns:
                raise InvalidRequest(f"Unknown filter field: {name}")
            column = getattr(self._model, name)
            if isinstance(value, list | tuple | set | frozenset):
                clauses.append(column.in_(list(value)))
            else:
                clauses.append(column == value)
        return clauses

    def _payload(self, data: Mapping[str, Any]) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for name, value in data.items():
            if name == TENANT_FIELD:
                self._override_ignored("data")
                continue
            if name in PROTECTED_FIELDS:
                raise InvalidRequest(f"Field cannot be set: {name}")
            if name not in self._columns:
                raise InvalidRequest(f"Unknown field: {name}")
            payload[name] = value
        return payload

    async def _check_references(self, payload: Mapping[str, Any]) -> None:
        for column, resource_name in self._references.items():
            if column not in payload:
                continue
            target = self._access.resource(resource_name)
            if not await target._contains(payload[column]):
                logger.warning(
                    "foreign_reference_rejected",
                    resource_type=self._resource_type,
                    field=column,
                    value=str(payload[column]),
                    tenant_id=str(self._access.tenant_id),
                )
                raise ResourceNotFound()

    def _override_ignored(self, where: str) -> None:
        logger.warning(
            "tenant_override_ignored",
            resource_type=self._resource_type,
            tenant_id=str(self._access.tenant_id),
            argument=where,
        )

    async def find_many(
        self,
        where: Mapping[str, Any] | None = None,
        *,
        include_inactive: bool = False,
        limit: int = 50,
        offset: int = 0,
        order_by: str = "created_at",
        descending: bool = True,
    ) -> list[ModelT]:
        """List rows of the scoped tenant matching ``where`` (column equality)."""
        if order_by not in self._columns:
            raise InvalidRequest(f"Unknown order field: {order_by}")
        column = getattr(self._model, order_by)
        stmt = (
            select(self._model)
            .where(*self._scope(include_inactive=include_inactive))
            .where(*self._filters(where))
            .order_by(column.desc() if descending else column.asc())
            .limit(max(1, min(limit, MAX_PAGE_SIZE)))
            .offset(max(0, offset))
        )
        result = await self._access.session.execute(stmt)
        rows = list(result.scalars().all())
        await self._audit("find_many", data={"count": len(rows)})
        return rows

    async def find_one(
        self, resource_id: uuid.UUID, *, include_inactive: bool = False
    ) -> ModelT | None:
        """Row by id within the scoped tenant, or None (also for foreign rows)."""
        row = await self._get(resource_id, include_inactive=include_inactive)
        if row is None:
            logger.warning(
                "resource_not_found_or_denied",
                resource_type=self._resource_type,
                resource_id=str(resource_id),
            )
        await self._audit("find_one", resource_id)
        return row

    async def search(
        self, term: str, fields: Sequence[str], *, limit: int = 20
    ) -> list[ModelT]:
        """Case-insensitive substring match over text ``fields``."""
        unknown = [name for name in fields if name not in self._columns]
        if unknown or not fields:
            raise InvalidRequest(f"Unknown search fields: {', '.join(unknown)}")
        pattern = f"%{_escape_like(term)}%"
        stmt = (
            select(self._model)
            .where(*self._scope())
            .where(
                or_(
                    *(
                        getattr(self._model, name).ilike(pattern, escape="\\")
                        for name in fields
                    )
                )
            )
            .limit(max(1, min(limit, MAX_PAGE_SIZE)))
        )
        result = await self._access.session.execute(stmt)
        rows = list(result.scalars().all())
        await self._audit("search", data={"count": len(rows)})
        return rows

    async def count(
        self,
        where: Mapping[str, Any] | None = None,
        *,
        include_inactive: bool = False,
    ) -> int:
        total = await self._count(where, include_inactive=include_inactive)
        await self._audit("count", data={"count": total})
        return total

    async def _count(
        self, where: Mapping[str, Any] | None = None, *, include_inactive: bool = False
    ) -> int:
        stmt = (
            select(func.count())
            .select_from(self._model)
            .where(*self._scope(include_inactive=include_inactive))
            .where(*self._filters(where))
        )
        result = await self._access.session.execute(stmt)
        return int(result.scalar_one())

    async def create(self, data: Mapping[str, Any]) -> ModelT:
        """Insert a row owned by the scoped tenant.

        Raises:
            ResourceNotFound: a referenced row is not in this tenant.
        """
        payload = self._payload(data)
        await self._check_references(payload)
        payload[TENANT_FIELD] = self._access.tenant_id
        if self._actor_field and self._access.actor_id is not None:
            payload[self._actor_field] = self._access.actor_id
        row = self._model(**payload)
        self._access.session.add(row)
        await self._access.session.flush()
        await self._audit("create", row.id)  # type: ignore[attr-defined]
        return row

    async def update(
        self, resource_id: uuid.UUID, data: Mapping[str, Any]
    ) -> ModelT:
        """Update a row of the scoped tenant.

        Raises:
            ResourceNotFound: no such row in this tenant, or a referenced
                row is not in this tenant.
        """
        payload = self._payload(data)
        if self._actor_field:
            payload.pop(self._actor_field, None)
        row = await self._get(resource_id, include_inactive=True)
        if row is None:
            raise ResourceNotFound()
        await self._check_references(payload)
        for name, value in payload.items():
            setattr(row, name, value)
        await self._access.session.flush()
        await self._audit("update", resource_id, data={"fields": sorted(payload)})
        return row

    async def delete(self, resource_id: uuid.UUID) -> None:
        """Hard-delete a row of the scoped tenant.

        Raises:
            ResourceNotFound: no such row in this tenant.
        """
        row = await self._get(resource_id, include_inactive=True)
        if row is None:
            raise ResourceNotFound()
        await self._access.session.delete(row)
        await self._access.session.flush()
        await self._audit("delete", resource_id)

    async def exists(self, resource_id: uuid.UUID) -> bool:
        """True if the row is in this tenant, archived rows included."""
        found = await self._contains(resource_id)
        await self._audit("exists", resource_id, data={"found": found})
        return found

    async def _contains(self, resource_id: uuid.UUID) -> bool:
        stmt = (
            select(func.count())
            .select_from(self._model)
            .where(*self._scope(include_inactive=True))
            .where(self._model.id == resource_id)  # type: ignore[attr-defined]
        )
        result = await self._access.session.execute(stmt)
        return int(result.scalar_one()) > 0

    async def _get(
        self, resource_id: uuid.UUID, *, include_inactive: bool
    ) -> ModelT | None:
        stmt = select(self._model).where(
            self._model.id == resource_id,  # type: ignore[attr-defined]
            *self._scope(include_inactive=include_inactive),
        )
        result = await self._access.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _audit(
        self,
        operation: str,
        resource_id: uuid.UUID | None = None,
        *,
        data: dict[str, Any] | None = None,
    ) -> None:
        if not self._audited:
            return
        await self._access.audit.record(
            self._access.session,
            AuditRecord(
                operation=operation,
                resource_type=self._resource_type,
                tenant_id=self._access.tenant_id,
                actor_id=self._access.actor_id,
                resource_id=str(resource_id) if resource_id else None,
                data=data or {},
            ),
        )


class ScopedDataAccess:
    """Per-request data access confined to one tenant.

    Usage::

        data = ScopedDataAccess(session, tenant_id, actor_id=user_id)
        projects = await data.projects.find_many({"is_public": True})
    """

    __slots__ = ("_actor_id", "_audit", "_resources", "_role", "_session", "_tenant_id")

    def __init__(
        self,
        session: AsyncSession,
        tenant_id: uuid.UUID,
        *,
        actor_id: uuid.UUID | None = None,
        role: Role | None = None,
        audit: AuditTrail | None = None,
    ) -> None:
        if tenant_id is None:
            msg = "tenant_id is required for tenant-scoped operations"
            raise ValueError(msg)
        self._session = session
        self._tenant_id = tenant_id
        self._actor_id = actor_id
        self._role = role
        self._audit = audit or AuditTrail()
        self._resources: dict[str, ScopedResource[Any]] = {
            "projects": ScopedResource(self, Project, resource_type="project"),
            "documents": ScopedResource(
                self,
                Document,
                resource_type="document",
                actor_field="author_id",
                references={"project_id": "projects"},
            ),
            # Events are the audit trail itself; do not audit them again.
            "events": ScopedResource(
                self,
                AuditEvent,
                resource_type="event",
                actor_field="user_id",
                audited=False,
            ),
        }

    @property
    def tenant_id(self) -> uuid.UUID:
        return self._tenant_id

    @property
    def actor_id(self) -> uuid.UUID | None:
        return self._actor_id

    @property
    def role(self) -> Role | None:
        return self._role

    @property
    def session(self) -> AsyncSession:
        return self._session

    @property
    def audit(self) -> AuditTrail:
        return self._audit

    @property
    def projects(self) -> ScopedResource[Project]:
        return self._resources["projects"]

    @property
    def documents(self) -> ScopedResource[Document]:
        return self._resources["documents"]

    @property
    def events(self) -> ScopedResource[AuditEvent]:
        return self._resources["events"]

    def resource(self, name: str) -> ScopedResource[Any]:
        """Resource accessor by name ("projects", "documents", "events")."""
        try:
            return self._resources[name]
        except KeyError:
            raise InvalidRequest(f"Unknown resource: {name}") from None

    async def validate_resource_access(self, name: str, resource_id: uuid.UUID) -> bool:
        """True if ``resource_id`` exists within this tenant."""
        has_access = await self.resource(name).exists(resource_id)
        if not has_access:
            logger.warning(
                "resource_access_validation_failed",
                resource=name,
                resource_id=str(resource_id),
                tenant_id=str(self._tenant_id),
            )
        return has_access

    async def list_members(self) -> list[Membership]:
        """Active memberships of this tenant, oldest first."""
        stmt = (
            select(Membership)
            .where(
                Membership.tenant_id == self._tenant_id,
                Membership.is_active.is_(True),
            )
            .options(selectinload(Membership.user))
            .order_by(Membership.joined_at.asc())
        )
        result = await self._session.execute(stmt)
        members = list(result.scalars().all())
        await self._record("list_members", "membership", {"count": len(members)})
        return members

    async def tenant_statistics(
        self, *, window: timedelta = timedelta(days=7), now: datetime | None = None
    ) -> TenantStatistics:
        """Aggregate counts for the tenant dashboard."""
        now = now or datetime.now(UTC)
        member_stmt = (
            select(func.count())
            .select_from(Membership)
            .where(
                Membership.tenant_id == self._tenant_id,
                Membership.is_active.is_(True),
            )
        )
        member_count = int((await self._session.execute(member_stmt)).scalar_one())
        recent_stmt = (
            select(func.count())
            .select_from(AuditEvent)
            .where(
                AuditEvent.tenant_id == self._tenant_id,
                AuditEvent.created_at >= now - window,
            )
        )
        recent_activity = int((await self._session.execute(recent_stmt)).scalar_one())
        stats = TenantStatistics(
            project_count=await self.projects._count(),
            document_count=await self.documents._count(),
            member_count=member_count,
            recent_activity=recent_activity,
            generated_at=now,
        )
        await self._record("statistics", "tenant", {"window_days": window.days})
        return stats

    async def _record(
        self, operation: str, resource_type: str, data: dict[str, Any]
    ) -> None:
        await self._audit.record(
            self._session,
            AuditRecord(
                operation=operation,
                resource_type=resource_type,
                tenant_id=self._tenant_id,
                actor_id=self._actor_id,
                resource_id=str(self._tenant_id),
                data=data,
            ),
        )
