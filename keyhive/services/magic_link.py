"""Magic links - signed, expiring guest pickup links.

The link references the assignment, not the pickup code. Opening a link never
consumes anything, and the code is only revealed once the key is available.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from keyhive.config import Settings, get_settings
from keyhive.errors import UnauthorizedError, WrongStateError
from keyhive.identity import Actor
from keyhive.managers.assignment import AssignmentManager
from keyhive.models.assignment import AssignmentState
from keyhive.models.hive import Cell, Hive
from keyhive.models.key import Key
from keyhive.services.audit import AuditLogger
from keyhive.services.codes import CodeGenerator
from keyhive.utils.datetime import utcnow

logger = structlog.get_logger()


@dataclass(frozen=True, slots=True)
class MagicLink:
    url: str
    token: str
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class PickupDetails:
    assignment_id: str
    state: AssignmentState
    key_label: str | None
    hive_name: str | None
    hive_address: str | None
    cell_number: str | None
    pickup_code: str | None
    expected_return_at: datetime | None


class MagicLinkService:
    """Issues and opens guest magic links."""

    def __init__(
        self,
        db_session: AsyncSession,
        assignments: AssignmentManager,
        *,
        settings: Settings | None = None,
        codes: CodeGenerator | None = None,
        audit: AuditLogger | None = None,
    ) -> None:
        self._db = db_session
        self._assignments = assignments
        self._settings = settings or get_settings()
        self._codes = codes or CodeGenerator(self._settings)
        self._audit = audit or AuditLogger()
        self._log = logger.bind(service="magic_link")

    async def issue(self, assignment_id: str, actor: Actor) -> MagicLink:
        """Create a shareable link for the assignment's guest."""
        assignment = await self._assignments.get(assignment_id)
        if not actor.is_any(assignment.host_id):
            raise UnauthorizedError(
                "Only the host may share a pickup link",
                details={"assignment_id": assignment_id},
            )
        if assignment.is_closed:
            raise WrongStateError(
                "Closed assignments cannot be shared",
                details={"assignment_id": assignment_id, "current_state": "closed"},
            )

        config = self._settings.magic_link
        expires_at = (utcnow() + timedelta(days=config.ttl_days)).replace(microsecond=0)
        token = self._codes.sign_link(assignment_id, expires_at)
        url = f"{config.frontend_url.rstrip('/')}/guest/pickup/{token}"

        self._log.info(
            "magic_link.issue",
            assignment_id=assignment_id,
            expires_at=expires_at.isoformat(),
        )
        await self._audit.emit(
            "key_assignment",
            assignment_id,
            "issue_magic_link",
            actor=actor,
            expires_at=expires_at.isoformat(),
        )
        return MagicLink(url=url, token=token, expires_at=expires_at)

    async def open(self, token: str) -> PickupDetails:
        """Resolve a link to pickup details. Not consuming.

        Raises:
            InvalidCodeError: Bad signature or malformed token
            CodeExpiredError: Link has expired
        """
        assignment_id = self._codes.verify_link(token)
        assignment = await self._assignments.get(assignment_id)

        key = await self._db.get(Key, assignment.key_id)
        hive = await self._db.get(Hive, assignment.hive_id) if assignment.hive_id else None
        cell = await self._db.get(Cell, assignment.cell_id) if assignment.cell_id else None

        state = AssignmentState(assignment.state)
        self._log.info("magic_link.open", assignment_id=assignment_id, state=state.value)
        return PickupDetails(
            assignment_id=assignment.id,
            state=state,
            key_label=key.label if key else None,
            hive_name=hive.name if hive else None,
            hive_address=hive.address if hive else None,
            cell_number=cell.cell_number if cell else None,
            pickup_code=assignment.pickup_code if state == AssignmentState.AVAILABLE else None,
            expected_return_at=assignment.expected_return_at,
        )
