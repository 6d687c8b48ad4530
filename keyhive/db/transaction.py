"""Transaction scope with storage errors mapped onto domain errors.

Mutating operations run their whole body inside ``atomic(session)``: either
every write commits, or the transaction is rolled back and the caller sees a
``KeyHiveError``.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from keyhive.errors import (
    CellUnavailableError,
    DisputeAlreadyOpenError,
    FobUnavailableError,
    KeyAlreadyActiveError,
    KeyHiveError,
    StorageError,
)

logger = structlog.get_logger()

# PostgreSQL reports the index name, SQLite reports table.column
_INTEGRITY_MARKERS: list[tuple[tuple[str, ...], type[KeyHiveError]]] = [
    (("uq_key_assignments_open_key", "key_assignments.key_id"), KeyAlreadyActiveError),
    (("uq_key_assignments_held_cell", "key_assignments.cell_id"), CellUnavailableError),
    (("uq_key_assignments_held_fob", "key_assignments.nfc_fob_id"), FobUnavailableError),
    (
        ("uq_disputes_active_assignment", "disputes.key_assignment_id"),
        DisputeAlreadyOpenError,
    ),
]


def map_integrity_error(exc: IntegrityError) -> KeyHiveError:
    """Translate a constraint violation into the matching domain error."""
    text = str(exc.orig)
    for markers, error_cls in _INTEGRITY_MARKERS:
        if any(marker in text for marker in markers):
            return error_cls(details={"constraint": text})
    return StorageError("Integrity violation", details={"constraint": text})


@asynccontextmanager
async def atomic(session: AsyncSession) -> AsyncGenerator[AsyncSession, None]:
    """Run a block in one transaction; commit on success, rollback on error."""
    try:
        yield session
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        error = map_integrity_error(exc)
        logger.warning("db.integrity_error", error_code=error.code, detail=str(exc.orig))
        raise error from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("db.storage_error", error=str(exc))
        raise StorageError(details={"reason": exc.__class__.__name__}) from exc
    except BaseException:
        await session.rollback()
        raise
