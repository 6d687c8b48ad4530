"""AssignmentManager - key assignment lifecycle.

    pending_drop -> dropped -> available -> picked_up -> [in_use] ->
    returned_pending -> returned_confirmed -> closed

Any non-closed state can branch into ``dispute``; resolving a dispute returns
to the state held before it was opened, or force-closes the assignment.

Every mutating operation follows the same shape:
1. take the in-process locks for the assignment and any cell/fob it touches
2. start a fresh transaction and re-read the assignment ``FOR UPDATE``
3. check authorization and state, then apply the change with a
   compare-and-swap on (state, version)
4. commit, then emit the audit event

A failed check leaves the assignment untouched.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from keyhive.concurrency.locks import cleanup_resource_locks, hold_locks, lock_key
from keyhive.config import Settings, get_settings
from keyhive.db.transaction import atomic
from keyhive.errors import (
    AlreadyDroppedError,
    CellUnavailableError,
    DisputeAlreadyOpenError,
    FobUnavailableError,
    HiveUnavailableError,
    InvalidCodeError,
    KeyAlreadyActiveError,
    NotFoundError,
    StateConflictError,
    UnauthorizedError,
    ValidationError,
    WrongStateError,
)
from keyhive.identity import Actor, ActorRole
from keyhive.managers.hive import HiveRegistry
from keyhive.models.access_token import TokenPurpose, TokenType
from keyhive.models.assignment import AssignmentState, KeyAssignment, can_transition
from keyhive.models.dispute import Dispute, DisputeOutcome, DisputeStatus
from keyhive.models.hive import HiveStatus
from keyhive.models.key import Key
from keyhive.models.types import new_id
from keyhive.services.audit import AuditLogger
from keyhive.services.codes import CodeGenerator, codes_match
from keyhive.services.tokens import AccessTokenValidator
from keyhive.utils.datetime import latest, utcnow

logger = structlog.get_logger()

# A guest can be bound until the key leaves the hive
_GUEST_ASSIGNABLE_STATES = (
    AssignmentState.PENDING_DROP,
    AssignmentState.DROPPED,
    AssignmentState.AVAILABLE,
)


def _state_details(
    assignment: KeyAssignment,
    *expected: AssignmentState,
) -> dict[str, Any]:
    return {
        "assignment_id": assignment.id,
        "current_state": AssignmentState(assignment.state).value,
        "expected_states": [s.value for s in expected],
    }


class AssignmentManager:
    """Manages the key assignment state machine."""

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        audit: AuditLogger | None = None,
        settings: Settings | None = None,
        codes: CodeGenerator | None = None,
    ) -> None:
        self._db = db_session
        self._settings = settings or get_settings()
        self._audit = audit or AuditLogger()
        self._codes = codes or CodeGenerator(self._settings)
        self._tokens = AccessTokenValidator(db_session, self._settings)
        self._registry = HiveRegistry(db_session, self._audit)
        self._log = logger.bind(manager="assignment")

    # -- reads -------------------------------------------------------------

    async def get(self, assignment_id: str, actor: Actor | None = None) -> KeyAssignment:
        """Get an assignment.

        Raises:
            NotFoundError: Unknown, or ``actor`` is not a party to it
        """
        result = await self._db.execute(
            select(KeyAssignment).where(KeyAssignment.id == assignment_id)
        )
        assignment = result.scalars().first()
        if assignment is None or (
            actor is not None and not actor.is_any(*assignment.parties())
        ):
            raise NotFoundError(f"Assignment not found: {assignment_id}")
        return assignment

    async def list_for_key(self, key_id: str, actor: Actor | None = None) -> list[KeyAssignment]:
        """Assignment history of a key, newest first."""
        key = await self._get_key(key_id)
        if actor is not None and not actor.is_any(key.host_id):
            raise NotFoundError(f"Key not found: {key_id}")

        result = await self._db.execute(
            select(KeyAssignment)
            .where(KeyAssignment.key_id == key_id)
            .order_by(KeyAssignment.created_at.desc(), KeyAssignment.id.desc())
        )
        return list(result.scalars().all())

    async def request_pickup_code(self, assignment_id: str, actor: Actor) -> str:
        """Return the existing pickup code of an ``available`` assignment.

        Codes are single-issue: asking again never mints a new one, so a code
        already shared with a guest stays valid.
        """
        assignment = await self.get(assignment_id)
        if not actor.is_any(assignment.host_id, assignment.partner_id):
            raise UnauthorizedError(
                "Only the host or the hive partner may read the pickup code",
                details={"assignment_id": assignment_id},
            )
        if assignment.state != AssignmentState.AVAILABLE or not assignment.pickup_code:
            raise WrongStateError(
                "Pickup code is issued once the key is available",
                details=_state_details(assignment, AssignmentState.AVAILABLE),
            )
        return assignment.pickup_code

    async def request_drop_off_code(self, assignment_id: str, actor: Actor) -> str:
        """Return the drop-off code while the key is still to be dropped."""
        assignment = await self.get(assignment_id)
        if not actor.is_any(assignment.host_id, assignment.partner_id):
            raise UnauthorizedError(
                "Only the host or the hive partner may read the drop-off code",
                details={"assignment_id": assignment_id},
            )
        self._require_state(assignment, AssignmentState.PENDING_DROP)
        return assignment.drop_off_code

    # -- lifecycle ---------------------------------------------------------

    async def create(self, key_id: str, actor: Actor) -> KeyAssignment:
        """Start a new cycle for a key in ``pending_drop``.

        Raises:
            NotFoundError: Key unknown or deleted
            UnauthorizedError: Actor is not the key's host
            KeyAlreadyActiveError: Key has a non-closed assignment
        """
        async with hold_locks(lock_key("key", key_id)):
            await self._db.rollback()
            async with atomic(self._db):
                key = await self._get_key(key_id)
                if not actor.is_any(key.host_id):
                    raise UnauthorizedError(
                        "Only the key's host may assign it",
                        details={"key_id": key_id},
                    )

                result = await self._db.execute(
                    select(KeyAssignment).where(
                        KeyAssignment.key_id == key_id,
                        KeyAssignment.state != AssignmentState.CLOSED,
                    )
                )
                active = result.scalars().first()
                if active is not None:
                    raise KeyAlreadyActiveError(
                        details={
                            "key_id": key_id,
                            "assignment_id": active.id,
                            "current_state": AssignmentState(active.state).value,
                        }
                    )

                now = utcnow()
                code = await self._codes.drop_off_code(self._db)
                assignment = KeyAssignment(
                    id=new_id("asg"),
                    key_id=key_id,
                    host_id=key.host_id,
                    drop_off_code=code,
                    state=AssignmentState.PENDING_DROP,
                    created_at=now,
                    updated_at=now,
                )
                self._db.add(assignment)
                await self._db.flush()
                await self._tokens.issue(
                    assignment.id,
                    code,
                    TokenPurpose.DROP_OFF,
                    created_by=actor.id,
                    now=now,
                )

        self._log.info("assignment.create", assignment_id=assignment.id, key_id=key_id)
        await self._emit(assignment, "create", actor)
        return assignment

    async def schedule_drop(
        self,
        assignment_id: str,
        actor: Actor,
        *,
        hive_id: str,
        scheduled_at: datetime,
    ) -> KeyAssignment:
        """Bind the target hive. No cell is reserved until the drop happens.

        Re-scheduling while still ``pending_drop`` replaces the target.
        """
        async with hold_locks(lock_key("assignment", assignment_id)):
            await self._db.rollback()
            async with atomic(self._db):
                assignment = await self._load_for_update(assignment_id)
                self._require_actor(actor, assignment, assignment.host_id)
                self._require_state(assignment, AssignmentState.PENDING_DROP)

                hive = await self._registry.get_hive(hive_id)
                await self._compare_and_set(
                    assignment,
                    hive_id=hive.id,
                    partner_id=hive.partner_id,
                    scheduled_drop_at=scheduled_at,
                )

        self._log.info(
            "assignment.schedule_drop",
            assignment_id=assignment_id,
            hive_id=hive_id,
            scheduled_at=scheduled_at.isoformat(),
        )
        await self._emit(
            assignment, "schedule_drop", actor, hive_id=hive_id, scheduled_at=scheduled_at.isoformat()
        )
        return assignment

    async def confirm_drop(
        self,
        assignment_id: str,
        actor: Actor,
        *,
        cell_id: str,
        nfc_fob_id: str | None = None,
        drop_off_code: str | None = None,
    ) -> KeyAssignment:
        """Partner confirms the key is in the cell.

        Cell and fob are reserved in the same transaction as the state change.
        With ``lifecycle.auto_make_available`` the assignment continues to
        ``available`` and receives its pickup code in that transaction too.

        Raises:
            AlreadyDroppedError: Assignment is already past ``pending_drop``
            WrongStateError: Assignment is closed or in dispute
            HiveUnavailableError: Hive is under maintenance or offline
            InvalidCodeError: Presented drop-off code does not match
            CellUnavailableError: Cell is occupied or out of service
            FobUnavailableError: Fob is assigned, damaged or stocked elsewhere
        """
        async with hold_locks(
            lock_key("assignment", assignment_id),
            lock_key("cell", cell_id),
            lock_key("fob", nfc_fob_id) if nfc_fob_id else None,
        ):
            await self._db.rollback()
            async with atomic(self._db):
                assignment = await self._load_for_update(assignment_id)
                cell = await self._registry.get_cell(cell_id)
                if assignment.hive_id is not None and cell.hive_id != assignment.hive_id:
                    raise ValidationError(
                        "Cell does not belong to the scheduled hive",
                        details={"cell_id": cell_id, "hive_id": assignment.hive_id},
                    )
                hive = await self._registry.get_hive(cell.hive_id)
                self._require_actor(actor, assignment, hive.partner_id)

                state = AssignmentState(assignment.state)
                if state in (AssignmentState.CLOSED, AssignmentState.DISPUTE):
                    raise WrongStateError(
                        details=_state_details(assignment, AssignmentState.PENDING_DROP)
                    )
                if state != AssignmentState.PENDING_DROP:
                    raise AlreadyDroppedError(
                        details=_state_details(assignment, AssignmentState.PENDING_DROP)
                    )

                if self._settings.lifecycle.block_unavailable_hives and not hive.accepts_drops:
                    raise HiveUnavailableError(
                        details={"hive_id": hive.id, "status": HiveStatus(hive.status).value}
                    )

                now = self._stamp(assignment)
                await self._check_drop_off_code(assignment, drop_off_code, now)

                if not await self._registry.try_reserve_cell(hive.id, cell_id, assignment.id):
                    raise CellUnavailableError(details={"cell_id": cell_id, "hive_id": hive.id})
                if nfc_fob_id and not await self._registry.try_reserve_fob(
                    hive.id, nfc_fob_id, assignment.id, slot=cell.cell_number
                ):
                    raise FobUnavailableError(details={"fob_id": nfc_fob_id, "hive_id": hive.id})
                await self._registry.mark_active(hive.id)

                await self._transition(
                    assignment,
                    AssignmentState.DROPPED,
                    dropped_at=now,
                    hive_id=hive.id,
                    partner_id=hive.partner_id,
                    cell_id=cell_id,
                    nfc_fob_id=nfc_fob_id,
                )
                cascaded = self._settings.lifecycle.auto_make_available
                if cascaded:
                    await self._make_available(assignment, actor)

        self._log.info(
            "assignment.confirm_drop",
            assignment_id=assignment_id,
            hive_id=hive.id,
            cell_id=cell_id,
            nfc_fob_id=nfc_fob_id,
            state=AssignmentState(assignment.state).value,
        )
        await self._emit(
            assignment, "confirm_drop", actor, cell_id=cell_id, nfc_fob_id=nfc_fob_id
        )
        if cascaded:
            await self._emit(assignment, "mark_available", actor)
        return assignment

    async def mark_available(self, assignment_id: str, actor: Actor) -> KeyAssignment:
        """Partner-driven ``dropped -> available``; issues the pickup code."""
        async with hold_locks(lock_key("assignment", assignment_id)):
            await self._db.rollback()
            async with atomic(self._db):
                assignment = await self._load_for_update(assignment_id)
                self._require_actor(actor, assignment, assignment.partner_id)
                self._require_state(assignment, AssignmentState.DROPPED)
                await self._make_available(assignment, actor)

        self._log.info("assignment.mark_available", assignment_id=assignment_id)
        await self._emit(assignment, "mark_available", actor)
        return assignment

    async def validate_pickup(
        self,
        assignment_id: str,
        actor: Actor,
        presented_code: str,
    ) -> KeyAssignment:
        """Guest claims the key with the pickup code.

        Checks run in this order: state, code match, expiry, prior use.
        On success the pickup token is consumed and the return window starts.

        Raises:
            WrongStateError: Assignment is not ``available``
            InvalidCodeError: Code does not match
            CodeExpiredError: Pickup token expired or revoked
            AlreadyUsedError: Pickup token already consumed
        """
        async with hold_locks(lock_key("assignment", assignment_id)):
            await self._db.rollback()
            async with atomic(self._db):
                assignment = await self._load_for_update(assignment_id)
                # Before the guest binding: a second guest after pickup gets WrongState.
                self._require_state(assignment, AssignmentState.AVAILABLE)
                if actor.role == ActorRole.GUEST:
                    if assignment.guest_id not in (None, actor.id):
                        raise UnauthorizedError(
                            "Assignment is reserved for another guest",
                            details={"assignment_id": assignment_id},
                        )
                else:
                    self._require_actor(actor, assignment, assignment.partner_id)

                if not assignment.pickup_code or not codes_match(
                    presented_code, assignment.pickup_code
                ):
                    raise InvalidCodeError(details={"assignment_id": assignment_id})
                token = await self._tokens.get_for_assignment(assignment.id, TokenPurpose.PICKUP)
                if token is None:
                    raise InvalidCodeError(details={"assignment_id": assignment_id})

                now = self._stamp(assignment)
                self._tokens.check(token, now=now)
                await self._tokens.consume(token, now=now)

                key = await self._get_key(assignment.key_id, include_deleted=True)
                values: dict[str, Any] = {
                    "picked_up_at": now,
                    "expected_return_at": now
                    + self._settings.packages.return_window(key.package_type),
                }
                if actor.role == ActorRole.GUEST and assignment.guest_id is None:
                    values["guest_id"] = actor.id
                await self._transition(assignment, AssignmentState.PICKED_UP, **values)

        self._log.info(
            "assignment.validate_pickup",
            assignment_id=assignment_id,
            guest_id=assignment.guest_id,
        )
        await self._emit(
            assignment,
            "validate_pickup",
            actor,
            expected_return_at=assignment.expected_return_at.isoformat(),
        )
        return assignment

    async def redeem_token(
        self,
        token_value: str,
        token_type: TokenType,
        actor: Actor,
    ) -> KeyAssignment:
        """Consume a presented token through the transition it unlocks.

        A pickup token runs ``validate_pickup``; a drop-off token needs a
        cell and is only redeemed by ``confirm_drop``.

        Raises:
            NotFoundError: No token with this value and type
            ValidationError: Token is a drop-off token
        """
        token = await self._tokens.lookup(token_value, token_type)
        if TokenPurpose(token.purpose) != TokenPurpose.PICKUP:
            raise ValidationError(
                "Drop-off codes are redeemed when the drop is confirmed",
                details={"purpose": TokenPurpose(token.purpose).value},
            )
        return await self.validate_pickup(token.key_assignment_id, actor, token_value)

    async def mark_in_use(self, assignment_id: str, actor: Actor) -> KeyAssignment:
        """Guest has left the hive with the key. Informational."""
        async with hold_locks(lock_key("assignment", assignment_id)):
            await self._db.rollback()
            async with atomic(self._db):
                assignment = await self._load_for_update(assignment_id)
                self._require_actor(actor, assignment, assignment.guest_id)
                self._require_state(assignment, AssignmentState.PICKED_UP)
                await self._transition(assignment, AssignmentState.IN_USE)

        self._log.info("assignment.mark_in_use", assignment_id=assignment_id)
        await self._emit(assignment, "mark_in_use", actor)
        return assignment

    async def initiate_return(self, assignment_id: str, actor: Actor) -> KeyAssignment:
        """Key is on its way back. ``returned_at`` waits for the partner."""
        async with hold_locks(lock_key("assignment", assignment_id)):
            await self._db.rollback()
            async with atomic(self._db):
                assignment = await self._load_for_update(assignment_id)
                self._require_actor(actor, assignment, assignment.guest_id, assignment.host_id)
                self._require_state(
                    assignment, AssignmentState.PICKED_UP, AssignmentState.IN_USE
                )
                await self._transition(assignment, AssignmentState.RETURNED_PENDING)

        self._log.info("assignment.initiate_return", assignment_id=assignment_id)
        await self._emit(assignment, "initiate_return", actor)
        return assignment

    async def confirm_return(
        self,
        assignment_id: str,
        actor: Actor,
        *,
        cell_id: str,
    ) -> KeyAssignment:
        """Partner confirms the key is back; cell and fob are released."""
        # Resources are fixed once dropped, so a pre-read is enough to pick locks
        current = await self.get(assignment_id)
        async with hold_locks(
            lock_key("assignment", assignment_id),
            lock_key("cell", current.cell_id) if current.cell_id else None,
            lock_key("fob", current.nfc_fob_id) if current.nfc_fob_id else None,
        ):
            await self._db.rollback()
            async with atomic(self._db):
                assignment = await self._load_for_update(assignment_id)
                self._require_actor(actor, assignment, assignment.partner_id)
                self._require_state(assignment, AssignmentState.RETURNED_PENDING)
                if assignment.cell_id != cell_id:
                    raise ValidationError(
                        "Key must be returned to the cell it was dropped in",
                        details={"cell_id": cell_id, "expected_cell_id": assignment.cell_id},
                    )

                now = self._stamp(assignment)
                await self._transition(
                    assignment,
                    AssignmentState.RETURNED_CONFIRMED,
                    returned_at=now,
                    resources_released_at=now,
                )
                await self._release_resources(assignment)

        self._log.info("assignment.confirm_return", assignment_id=assignment_id, cell_id=cell_id)
        await self._emit(assignment, "confirm_return", actor, cell_id=cell_id)
        return assignment

    async def close(self, assignment_id: str, actor: Actor) -> KeyAssignment:
        """Terminal ``returned_confirmed -> closed``."""
        async with hold_locks(lock_key("assignment", assignment_id)):
            await self._db.rollback()
            async with atomic(self._db):
                assignment = await self._load_for_update(assignment_id)
                self._require_actor(actor, assignment, assignment.host_id, assignment.partner_id)
                self._require_state(assignment, AssignmentState.RETURNED_CONFIRMED)
                await self._transition(
                    assignment, AssignmentState.CLOSED, closed_at=self._stamp(assignment)
                )

        # Closed is terminal; nothing serializes on this assignment again.
        await cleanup_resource_locks({lock_key("assignment", assignment_id)})
        self._log.info("assignment.close", assignment_id=assignment_id)
        await self._emit(assignment, "close", actor)
        return assignment

    async def assign_guest(
        self,
        assignment_id: str,
        actor: Actor,
        *,
        guest_id: str,
    ) -> KeyAssignment:
        """Host binds the guest who may pick the key up."""
        async with hold_locks(lock_key("assignment", assignment_id)):
            await self._db.rollback()
            async with atomic(self._db):
                assignment = await self._load_for_update(assignment_id)
                self._require_actor(actor, assignment, assignment.host_id)
                self._require_state(assignment, *_GUEST_ASSIGNABLE_STATES)
                await self._compare_and_set(assignment, guest_id=guest_id)

        self._log.info("assignment.assign_guest", assignment_id=assignment_id, guest_id=guest_id)
        await self._emit(assignment, "assign_guest", actor, guest_id=guest_id)
        return assignment

    # -- dispute branch ----------------------------------------------------

    async def open_dispute(
        self,
        assignment_id: str,
        actor: Actor,
        *,
        reason: str,
        evidence: dict[str, Any] | None = None,
    ) -> Dispute:
        """Move an assignment into ``dispute``, remembering where it was.

        Timeline fields are left as they are. Authorization is the caller's
        job (see ``DisputeService``).

        Raises:
            DisputeAlreadyOpenError: Assignment is already in dispute
            WrongStateError: Assignment is closed
        """
        async with hold_locks(lock_key("assignment", assignment_id)):
            await self._db.rollback()
            async with atomic(self._db):
                assignment = await self._load_for_update(assignment_id)
                state = AssignmentState(assignment.state)
                if state == AssignmentState.DISPUTE:
                    raise DisputeAlreadyOpenError(details={"assignment_id": assignment_id})
                if assignment.is_closed:
                    raise WrongStateError(
                        "Closed assignments cannot be disputed",
                        details=_state_details(assignment),
                    )

                dispute = Dispute(
                    id=new_id("dsp"),
                    key_assignment_id=assignment_id,
                    initiator_id=actor.id,
                    reason=reason,
                    evidence=evidence or {},
                    status=DisputeStatus.OPEN,
                    prior_state=state,
                    created_at=utcnow(),
                )
                self._db.add(dispute)
                await self._db.flush()
                await self._transition(assignment, AssignmentState.DISPUTE)

        self._log.info(
            "assignment.open_dispute",
            assignment_id=assignment_id,
            dispute_id=dispute.id,
            prior_state=state.value,
        )
        await self._emit(
            assignment, "open_dispute", actor, dispute_id=dispute.id, prior_state=state.value
        )
        return dispute

    async def resolve_dispute(
        self,
        dispute_id: str,
        actor: Actor,
        *,
        resolution: str,
        outcome: DisputeOutcome,
    ) -> Dispute:
        """Resolve a dispute and drive its assignment on.

        ``return_to_prior_state`` restores the state held before the dispute.
        ``force_close`` closes the assignment, releases any held cell and fob
        and revokes outstanding tokens.
        """
        outcome = DisputeOutcome(outcome)
        dispute = await self._get_dispute(dispute_id)
        current = await self.get(dispute.key_assignment_id)

        async with hold_locks(
            lock_key("assignment", current.id),
            lock_key("cell", current.cell_id) if current.cell_id else None,
            lock_key("fob", current.nfc_fob_id) if current.nfc_fob_id else None,
        ):
            await self._db.rollback()
            async with atomic(self._db):
                dispute = await self._get_dispute(dispute_id, for_update=True)
                if not dispute.is_active:
                    raise WrongStateError(
                        "Dispute is already resolved",
                        details={
                            "dispute_id": dispute_id,
                            "status": DisputeStatus(dispute.status).value,
                        },
                    )
                assignment = await self._load_for_update(dispute.key_assignment_id)
                self._require_state(assignment, AssignmentState.DISPUTE)

                now = self._stamp(assignment)
                if outcome == DisputeOutcome.RETURN_TO_PRIOR_STATE:
                    await self._compare_and_set(
                        assignment, state=AssignmentState(dispute.prior_state)
                    )
                else:
                    values: dict[str, Any] = {"state": AssignmentState.CLOSED, "closed_at": now}
                    release = assignment.holds_resources
                    if release:
                        values["resources_released_at"] = now
                    await self._compare_and_set(assignment, **values)
                    if release:
                        await self._release_resources(assignment)
                    await self._tokens.revoke_outstanding(assignment.id, now=now)

                dispute.status = DisputeStatus.RESOLVED
                dispute.outcome = outcome
                dispute.resolution = resolution
                dispute.resolved_by = actor.id
                dispute.resolved_at = now

        self._log.info(
            "assignment.resolve_dispute",
            assignment_id=assignment.id,
            dispute_id=dispute_id,
            outcome=outcome.value,
            state=AssignmentState(assignment.state).value,
        )
        await self._emit(
            assignment, "resolve_dispute", actor, dispute_id=dispute_id, outcome=outcome.value
        )
        return dispute

    # -- internals ---------------------------------------------------------

    async def _get_key(self, key_id: str, *, include_deleted: bool = False) -> Key:
        query = select(Key).where(Key.id == key_id)
        if not include_deleted:
            query = query.where(Key.deleted_at.is_(None))
        result = await self._db.execute(query)
        key = result.scalars().first()
        if key is None:
            raise NotFoundError(f"Key not found: {key_id}")
        return key

    async def _get_dispute(self, dispute_id: str, *, for_update: bool = False) -> Dispute:
        query = select(Dispute).where(Dispute.id == dispute_id)
        if for_update:
            query = query.with_for_update()
        result = await self._db.execute(query)
        dispute = result.scalars().first()
        if dispute is None:
            raise NotFoundError(f"Dispute not found: {dispute_id}")
        return dispute

    async def _load_for_update(self, assignment_id: str) -> KeyAssignment:
        # SELECT FOR UPDATE for PostgreSQL; in-memory locks cover SQLite
        result = await self._db.execute(
            select(KeyAssignment).where(KeyAssignment.id == assignment_id).with_for_update()
        )
        assignment = result.scalars().first()
        if assignment is None:
            raise NotFoundError(f"Assignment not found: {assignment_id}")
        return assignment

    @staticmethod
    def _require_actor(actor: Actor, assignment: KeyAssignment, *allowed: str | None) -> None:
        if not actor.is_any(*allowed):
            raise UnauthorizedError(details={"assignment_id": assignment.id, "actor_id": actor.id})

    @staticmethod
    def _require_state(assignment: KeyAssignment, *expected: AssignmentState) -> None:
        if AssignmentState(assignment.state) not in expected:
            raise WrongStateError(details=_state_details(assignment, *expected))

    @staticmethod
    def _stamp(assignment: KeyAssignment) -> datetime:
        """Now, but never earlier than anything already on the timeline."""
        return latest(utcnow(), assignment.last_event_at())

    async def _check_drop_off_code(
        self,
        assignment: KeyAssignment,
        drop_off_code: str | None,
        now: datetime,
    ) -> None:
        if drop_off_code is None:
            if self._settings.codes.require_drop_off_code:
                raise ValidationError("drop_off_code is required")
            return

        if not assignment.drop_off_code or not codes_match(drop_off_code, assignment.drop_off_code):
            raise InvalidCodeError(details={"assignment_id": assignment.id})
        token = await self._tokens.get_for_assignment(assignment.id, TokenPurpose.DROP_OFF)
        if token is not None:
            self._tokens.check(token, now=now)
            await self._tokens.consume(token, now=now)

    async def _make_available(self, assignment: KeyAssignment, actor: Actor) -> None:
        issue = assignment.pickup_code is None
        code = assignment.pickup_code or await self._codes.pickup_code(self._db)
        now = self._stamp(assignment)
        await self._transition(
            assignment,
            AssignmentState.AVAILABLE,
            available_at=now,
            pickup_code=code,
        )
        if issue:
            await self._tokens.issue(
                assignment.id,
                code,
                TokenPurpose.PICKUP,
                created_by=actor.id,
                now=now,
            )

    async def _release_resources(self, assignment: KeyAssignment) -> None:
        if assignment.cell_id:
            await self._registry.release_cell(assignment.cell_id)
        if assignment.nfc_fob_id:
            await self._registry.release_fob(assignment.nfc_fob_id)

    async def _transition(
        self,
        assignment: KeyAssignment,
        target: AssignmentState,
        **values: Any,
    ) -> None:
        """Move along one lifecycle edge."""
        if not can_transition(assignment.state, target):
            raise WrongStateError(details=_state_details(assignment, *self._sources(target)))
        await self._compare_and_set(assignment, state=target, **values)

    @staticmethod
    def _sources(target: AssignmentState) -> list[AssignmentState]:
        return [s for s in AssignmentState if can_transition(s, target)]

    async def _compare_and_set(self, assignment: KeyAssignment, **values: Any) -> None:
        """Write ``values`` only if state and version are still what we read.

        Raises:
            StateConflictError: Another request changed the assignment first
        """
        observed_state = AssignmentState(assignment.state)
        observed_version = assignment.version
        result = await self._db.execute(
            update(KeyAssignment)
            .where(
                KeyAssignment.id == assignment.id,
                KeyAssignment.state == observed_state,
                KeyAssignment.version == observed_version,
            )
            .values(updated_at=utcnow(), **values, version=observed_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            current_state = await self._db.scalar(
                select(KeyAssignment.state).where(KeyAssignment.id == assignment.id)
            )
            self._log.warning(
                "assignment.state_conflict",
                assignment_id=assignment.id,
                expected_state=observed_state.value,
                current_state=current_state.value if current_state else None,
            )
            raise StateConflictError(
                details={
                    "assignment_id": assignment.id,
                    "current_state": current_state.value if current_state else None,
                    "expected_state": observed_state.value,
                }
            )
        await self._db.refresh(assignment)

    async def _emit(
        self,
        assignment: KeyAssignment,
        action: str,
        actor: Actor,
        **details: Any,
    ) -> None:
        await self._audit.emit(
            "key_assignment",
            assignment.id,
            action,
            actor=actor,
            state=AssignmentState(assignment.state).value,
            version=assignment.version,
            **details,
        )
