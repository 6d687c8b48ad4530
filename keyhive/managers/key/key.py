"""KeyManager - host-owned key catalogue.

Key status is derived from the key's current assignment on read; nothing
here writes a status.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from keyhive.concurrency.locks import hold_locks, lock_key
from keyhive.db.transaction import atomic
from keyhive.errors import (
    KeyAlreadyActiveError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from keyhive.identity import Actor, ActorRole
from keyhive.models.assignment import AssignmentState, KeyAssignment
from keyhive.models.key import Key, KeyStatus, KeyType, PackageType
from keyhive.models.types import new_id
from keyhive.services.audit import AuditLogger
from keyhive.utils.datetime import utcnow

logger = structlog.get_logger()

_EDITABLE_FIELDS = frozenset(
    {"label", "description", "notes", "property_id", "key_type", "package_type"}
)


@dataclass(frozen=True, slots=True)
class KeyListItem:
    key: Key
    status: KeyStatus


class KeyManager:
    """Manages the key catalogue."""

    def __init__(
        self,
        db_session: AsyncSession,
        audit: AuditLogger | None = None,
    ) -> None:
        self._db = db_session
        self._audit = audit or AuditLogger()
        self._log = logger.bind(manager="key")

    async def create(
        self,
        actor: Actor,
        *,
        label: str,
        key_type: KeyType = KeyType.MASTER,
        package_type: PackageType = PackageType.WEEKLY,
        host_id: str | None = None,
        property_id: str | None = None,
        description: str | None = None,
        notes: str | None = None,
    ) -> Key:
        """Register a key. Hosts register for themselves; admins name the host."""
        if actor.role == ActorRole.HOST:
            if host_id not in (None, actor.id):
                raise UnauthorizedError("Hosts can only register their own keys")
            host_id = actor.id
        elif not actor.is_admin:
            raise UnauthorizedError("Only hosts and admins may register keys")
        if not host_id:
            raise ValidationError("host_id is required")

        now = utcnow()
        key = Key(
            id=new_id("key"),
            host_id=host_id,
            property_id=property_id,
            label=label,
            description=description,
            notes=notes,
            key_type=KeyType(key_type),
            package_type=PackageType(package_type),
            created_at=now,
            updated_at=now,
        )
        async with atomic(self._db):
            self._db.add(key)
        await self._db.refresh(key)

        self._log.info("key.create", key_id=key.id, host_id=host_id)
        await self._audit.emit("key", key.id, "create", actor=actor, label=label)
        return key

    async def get(self, key_id: str, actor: Actor | None = None) -> Key:
        """Get a key that is not soft-deleted.

        Raises:
            NotFoundError: Unknown, deleted, or not visible to ``actor``
        """
        result = await self._db.execute(
            select(Key).where(Key.id == key_id, Key.deleted_at.is_(None))
        )
        key = result.scalars().first()
        # Hide other hosts' keys rather than reveal they exist
        if key is None or (actor is not None and not actor.is_any(key.host_id)):
            raise NotFoundError(f"Key not found: {key_id}")
        return key

    async def list(self, *, host_id: str | None = None) -> list[KeyListItem]:
        query = select(Key).where(Key.deleted_at.is_(None)).order_by(Key.created_at, Key.id)
        if host_id is not None:
            query = query.where(Key.host_id == host_id)
        result = await self._db.execute(query)
        keys = list(result.scalars().all())

        items = []
        for key in keys:
            current = await self.current_assignment(key.id)
            items.append(KeyListItem(key=key, status=key.compute_status(current)))
        return items

    async def current_assignment(self, key_id: str) -> KeyAssignment | None:
        """The key's latest assignment, closed or not."""
        result = await self._db.execute(
            select(KeyAssignment)
            .where(KeyAssignment.key_id == key_id)
            .order_by(KeyAssignment.created_at.desc(), KeyAssignment.id.desc())
            .limit(1)
        )
        return result.scalars().first()

    async def status(self, key: Key) -> KeyStatus:
        return key.compute_status(await self.current_assignment(key.id))

    async def update(self, key_id: str, actor: Actor, **fields) -> Key:
        unknown = set(fields) - _EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Fields cannot be updated: {sorted(unknown)}")

        async with atomic(self._db):
            key = await self.get(key_id, actor)
            for name, value in fields.items():
                if name == "key_type":
                    value = KeyType(value)
                elif name == "package_type":
                    value = PackageType(value)
                setattr(key, name, value)
            key.updated_at = utcnow()

        self._log.info("key.update", key_id=key_id, fields=sorted(fields))
        await self._audit.emit("key", key_id, "update", actor=actor, fields=sorted(fields))
        return key

    async def delete(self, key_id: str, actor: Actor) -> None:
        """Soft-delete a key. Refused while it has a non-closed assignment."""
        async with hold_locks(lock_key("key", key_id)):
            await self._db.rollback()
            async with atomic(self._db):
                key = await self.get(key_id, actor)
                current = await self.current_assignment(key_id)
                if current is not None and not current.is_closed:
                    raise KeyAlreadyActiveError(
                        "Key has an active assignment and cannot be deleted",
                        details={
                            "key_id": key_id,
                            "assignment_id": current.id,
                            "current_state": AssignmentState(current.state).value,
                        },
                    )
                key.deleted_at = utcnow()

        self._log.info("key.delete", key_id=key_id)
        await self._audit.emit("key", key_id, "delete", actor=actor)
