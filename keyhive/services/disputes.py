"""Dispute handler.

Thin coordinator over the assignment state machine: decides who may open,
investigate and resolve disputes, and delegates the state changes to
``AssignmentManager``.
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from keyhive.concurrency.locks import hold_locks, lock_key
from keyhive.db.transaction import atomic
from keyhive.errors import NotFoundError, UnauthorizedError, WrongStateError
from keyhive.identity import Actor
from keyhive.managers.assignment import AssignmentManager
from keyhive.models.dispute import Dispute, DisputeOutcome, DisputeStatus
from keyhive.services.audit import AuditLogger

logger = structlog.get_logger()


class DisputeService:
    """Authorization and bookkeeping for disputes."""

    def __init__(
        self,
        db_session: AsyncSession,
        assignments: AssignmentManager,
        audit: AuditLogger | None = None,
    ) -> None:
        self._db = db_session
        self._assignments = assignments
        self._audit = audit or AuditLogger()
        self._log = logger.bind(service="disputes")

    async def open(
        self,
        assignment_id: str,
        actor: Actor,
        *,
        reason: str,
        evidence: dict[str, Any] | None = None,
    ) -> Dispute:
        """Open a dispute. Host, partner or guest of the assignment, or admin."""
        assignment = await self._assignments.get(assignment_id)
        if not actor.is_any(*assignment.parties()):
            raise UnauthorizedError(
                "Only parties to the assignment may open a dispute",
                details={"assignment_id": assignment_id},
            )
        return await self._assignments.open_dispute(
            assignment_id, actor, reason=reason, evidence=evidence
        )

    async def investigate(self, dispute_id: str, actor: Actor) -> Dispute:
        """Admin takes an open dispute under investigation."""
        if not actor.is_admin:
            raise UnauthorizedError("Only an admin may investigate disputes")

        dispute = await self.get(dispute_id)
        async with hold_locks(lock_key("assignment", dispute.key_assignment_id)):
            await self._db.rollback()
            async with atomic(self._db):
                dispute = await self.get(dispute_id)
                if dispute.status != DisputeStatus.OPEN:
                    raise WrongStateError(
                        "Only open disputes can be investigated",
                        details={
                            "dispute_id": dispute_id,
                            "status": DisputeStatus(dispute.status).value,
                        },
                    )
                dispute.status = DisputeStatus.INVESTIGATING

        self._log.info("dispute.investigate", dispute_id=dispute_id)
        await self._audit.emit("dispute", dispute_id, "investigate", actor=actor)
        return dispute

    async def resolve(
        self,
        dispute_id: str,
        actor: Actor,
        *,
        resolution: str,
        outcome: DisputeOutcome,
    ) -> Dispute:
        """Resolve a dispute.

        Allowed for the initiator, a counterpart (any other party to the
        assignment) or an admin.
        """
        dispute = await self.get(dispute_id)
        assignment = await self._assignments.get(dispute.key_assignment_id)
        if not actor.is_any(dispute.initiator_id, *assignment.parties()):
            raise UnauthorizedError(
                "Only the initiator, a counterpart or an admin may resolve a dispute",
                details={"dispute_id": dispute_id},
            )
        return await self._assignments.resolve_dispute(
            dispute_id, actor, resolution=resolution, outcome=outcome
        )

    async def get(self, dispute_id: str, actor: Actor | None = None) -> Dispute:
        result = await self._db.execute(select(Dispute).where(Dispute.id == dispute_id))
        dispute = result.scalars().first()
        if dispute is None:
            raise NotFoundError(f"Dispute not found: {dispute_id}")
        if actor is not None:
            # Raises NotFound for actors outside the assignment
            await self._assignments.get(dispute.key_assignment_id, actor)
        return dispute

    async def list_for_assignment(
        self,
        assignment_id: str,
        actor: Actor | None = None,
    ) -> list[Dispute]:
        await self._assignments.get(assignment_id, actor)
        result = await self._db.execute(
            select(Dispute)
            .where(Dispute.key_assignment_id == assignment_id)
            .order_by(Dispute.created_at.desc(), Dispute.id.desc())
        )
        return list(result.scalars().all())
