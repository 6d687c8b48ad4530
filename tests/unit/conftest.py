"""Shared fixtures: file-backed SQLite per test, managers and a stocked hive.

A file database (rather than :memory:) lets concurrency tests open several
independent sessions on the same data.
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

import keyhive.models  # noqa: F401
from keyhive.config import Settings
from keyhive.managers.assignment import AssignmentManager
from keyhive.managers.hive import HiveRegistry
from keyhive.managers.key import KeyManager
from keyhive.models.assignment import AssignmentState
from keyhive.services.audit import AuditLogger
from keyhive.utils.datetime import utcnow
from tests.fakes import GUEST, HOST, PARTNER, RecordingAuditSink


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Test settings with a fixed link secret."""
    return Settings(
        database={"url": f"sqlite+aiosqlite:///{tmp_path}/keyhive-test.db"},
        magic_link={"secret": "test-secret", "frontend_url": "https://app.test"},
    )


@pytest.fixture
async def engine(settings: Settings):
    engine = create_async_engine(settings.database.url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def audit(audit_sink: RecordingAuditSink) -> AuditLogger:
    return AuditLogger([audit_sink])


@pytest.fixture
def key_manager(db_session: AsyncSession, audit: AuditLogger) -> KeyManager:
    return KeyManager(db_session, audit)


@pytest.fixture
def registry(db_session: AsyncSession, audit: AuditLogger) -> HiveRegistry:
    return HiveRegistry(db_session, audit)


@pytest.fixture
def assignment_manager(
    db_session: AsyncSession,
    audit: AuditLogger,
    settings: Settings,
) -> AssignmentManager:
    return AssignmentManager(db_session, audit=audit, settings=settings)


@pytest.fixture
async def hive(registry: HiveRegistry):
    """Hive with three cells operated by PARTNER."""
    return await registry.create_hive(PARTNER, name="Central Station", total_cells=3)


@pytest.fixture
async def cells(registry: HiveRegistry, hive):
    return await registry.list_cells(hive.id)


@pytest.fixture
async def fob(registry: HiveRegistry, hive):
    return await registry.register_fob(PARTNER, fob_uid="04:A1:B2:C3", hive_id=hive.id)


@pytest.fixture
async def key(key_manager: KeyManager):
    return await key_manager.create(HOST, label="Front door", package_type="weekly")


@pytest.fixture
def soon():
    return utcnow() + timedelta(hours=2)


# Plain ids: ORM objects are expired whenever an operation starts a fresh
# transaction, so tests hold on to ids and re-read through the managers.


@pytest.fixture
def hive_id(hive) -> str:
    return hive.id


@pytest.fixture
def cell_ids(cells) -> list[str]:
    return [c.id for c in cells]


@pytest.fixture
def fob_id(fob) -> str:
    return fob.id


@pytest.fixture
def key_id(key) -> str:
    return key.id


_HAPPY_PATH = [
    AssignmentState.PENDING_DROP,
    AssignmentState.AVAILABLE,
    AssignmentState.PICKED_UP,
    AssignmentState.IN_USE,
    AssignmentState.RETURNED_PENDING,
    AssignmentState.RETURNED_CONFIRMED,
    AssignmentState.CLOSED,
]


@pytest.fixture
def drive(assignment_manager: AssignmentManager, key_id, hive_id, cell_ids, fob_id):
    """Create an assignment for ``key`` and walk it to ``target``.

    The drop goes into the first cell with the hive's fob.
    """

    async def _drive(target: AssignmentState) -> str:
        stop = _HAPPY_PATH.index(target)
        mgr = assignment_manager

        assignment_id = (await mgr.create(key_id, HOST)).id
        if stop >= 1:
            await mgr.schedule_drop(assignment_id, HOST, hive_id=hive_id, scheduled_at=utcnow())
            await mgr.confirm_drop(assignment_id, PARTNER, cell_id=cell_ids[0], nfc_fob_id=fob_id)
        if stop >= 2:
            code = await mgr.request_pickup_code(assignment_id, HOST)
            await mgr.validate_pickup(assignment_id, GUEST, code)
        if stop >= 3:
            await mgr.mark_in_use(assignment_id, GUEST)
        if stop >= 4:
            await mgr.initiate_return(assignment_id, GUEST)
        if stop >= 5:
            await mgr.confirm_return(assignment_id, PARTNER, cell_id=cell_ids[0])
        if stop >= 6:
            await mgr.close(assignment_id, HOST)
        return assignment_id

    return _drive
