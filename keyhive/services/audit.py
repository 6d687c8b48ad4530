"""Audit trail.

Every state transition and every dispute or registry mutation emits one
``AuditEvent``. Emission is best-effort: a failing sink is logged and
ignored, never propagated into the operation that triggered it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from keyhive.identity import Actor
from keyhive.models.audit_log import AuditLog
from keyhive.models.types import new_id
from keyhive.utils.datetime import utcnow

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class AuditEvent:
    entity_type: str
    entity_id: str
    action: str
    actor_id: str | None = None
    actor_role: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=utcnow)


class AuditSink(ABC):
    """Destination for audit events."""

    @abstractmethod
    async def write(self, event: AuditEvent) -> None:
        """Persist or forward one event."""


class StructlogAuditSink(AuditSink):
    """Writes events to the structured log."""

    def __init__(self) -> None:
        self._log = logger.bind(sink="audit")

    async def write(self, event: AuditEvent) -> None:
        self._log.info(
            "audit.event",
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            action=event.action,
            actor_id=event.actor_id,
            actor_role=event.actor_role,
            details=event.details,
            occurred_at=event.occurred_at.isoformat(),
        )


class DatabaseAuditSink(AuditSink):
    """Writes events to ``audit_logs`` in a session of its own.

    A separate session keeps audit writes out of the caller's transaction, so
    an audit failure cannot roll back a transition.
    """

    def __init__(
        self,
        session_scope: Callable[[], AbstractAsyncContextManager[AsyncSession]] | None = None,
    ) -> None:
        if session_scope is None:
            from keyhive.db.session import get_async_session

            session_scope = get_async_session
        self._session_scope = session_scope

    async def write(self, event: AuditEvent) -> None:
        async with self._session_scope() as session:
            session.add(
                AuditLog(
                    id=new_id("aud"),
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    action=event.action,
                    actor_id=event.actor_id,
                    actor_role=event.actor_role,
                    details=event.details,
                    created_at=event.occurred_at,
                )
            )
            await session.commit()


class AuditLogger:
    """Fans events out to sinks; never raises."""

    def __init__(self, sinks: Sequence[AuditSink] | None = None) -> None:
        self._sinks = list(sinks) if sinks is not None else [StructlogAuditSink()]

    async def emit(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        *,
        actor: Actor | None = None,
        **details: Any,
    ) -> None:
        event = AuditEvent(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor.id if actor else None,
            actor_role=actor.role.value if actor else None,
            details=details,
        )
        for sink in self._sinks:
            try:
                await sink.write(event)
            except Exception as exc:
                logger.warning(
                    "audit.emit_failed",
                    sink=sink.__class__.__name__,
                    entity_type=entity_type,
                    entity_id=entity_id,
                    action=action,
                    error=str(exc),
                )
