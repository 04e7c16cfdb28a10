"""Best-effort audit trail for tenant-scoped data operations."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_gate.storage.orm import AuditEvent

logger = structlog.get_logger("tenant_gate.audit")

WRITE_OPERATIONS: frozenset[str] = frozenset({"create", "update", "delete"})


@dataclass(frozen=True)
class AuditRecord:
    operation: str
    resource_type: str
    tenant_id: uuid.UUID
    actor_id: uuid.UUID | None = None
    resource_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


class AuditTrail:
    """Emit audit records; never let a failure reach the caller.

    Every record is logged as a structured ``audit`` event. Write
    operations are additionally persisted as ``AuditEvent`` rows inside a
    SAVEPOINT, so a failed insert rolls back only itself.
    """

    def __init__(
        self,
        *,
        persist: bool = True,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> None:
        self._persist = persist
        self._ip_address = ip_address
        self._user_agent = user_agent

    async def record(self, session: AsyncSession, record: AuditRecord) -> None:
        try:
            logger.info(
                "audit",
                operation=record.operation,
                resource_type=record.resource_type,
                resource_id=record.resource_id,
                tenant_id=str(record.tenant_id),
                actor_id=str(record.actor_id) if record.actor_id else None,
            )
            if self._persist and record.operation in WRITE_OPERATIONS:
                await self._store(session, record)
        except Exception:
            logger.exception(
                "audit_write_failed",
                operation=record.operation,
                resource_type=record.resource_type,
                resource_id=record.resource_id,
            )

    async def _store(self, session: AsyncSession, record: AuditRecord) -> None:
        async with session.begin_nested():
            session.add(
                AuditEvent(
                    tenant_id=record.tenant_id,
                    user_id=record.actor_id,
                    type=f"audit.{record.operation}",
                    resource_type=record.resource_type,
                    resource_id=record.resource_id,
                    data=record.data,
                    ip_address=self._ip_address,
                    user_agent=self._user_agent,
                )
            )
