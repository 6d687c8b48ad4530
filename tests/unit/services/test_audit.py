"""Unit tests for audit emission."""

from __future__ import annotations

from contextlib import asynccontextmanager

from sqlmodel import select

from keyhive.managers.assignment import AssignmentManager
from keyhive.models.assignment import AssignmentState
from keyhive.models.audit_log import AuditLog
from keyhive.services.audit import AuditLogger, DatabaseAuditSink
from tests.fakes import HOST, FailingAuditSink, RecordingAuditSink


class TestAuditLogger:
    async def test_fans_out_to_every_sink(self):
        first, second = RecordingAuditSink(), RecordingAuditSink()
        audit = AuditLogger([first, second])

        await audit.emit("key", "key-1", "create", actor=HOST, label="Front door")

        for sink in (first, second):
            assert len(sink.events) == 1
            event = sink.events[0]
            assert event.entity_type == "key"
            assert event.actor_id == "host-1"
            assert event.actor_role == "host"
            assert event.details == {"label": "Front door"}

    async def test_failing_sink_is_swallowed(self):
        failing, recording = FailingAuditSink(), RecordingAuditSink()
        audit = AuditLogger([failing, recording])

        await audit.emit("key", "key-1", "create")

        assert failing.calls == 1
        assert recording.actions() == ["create"]


class TestDatabaseAuditSink:
    async def test_writes_in_its_own_session(self, session_factory, db_session):
        @asynccontextmanager
        async def scope():
            async with session_factory() as session:
                yield session

        audit = AuditLogger([DatabaseAuditSink(scope)])
        await audit.emit("hive", "hive-1", "set_status", actor=HOST, status="offline")

        rows = (await db_session.execute(select(AuditLog))).scalars().all()
        assert len(rows) == 1
        assert rows[0].id.startswith("aud-")
        assert rows[0].entity_id == "hive-1"
        assert rows[0].details == {"status": "offline"}


class TestTransitionsSurviveAuditFailure:
    async def test_create_succeeds_with_broken_audit(self, db_session, settings, key):
        failing = FailingAuditSink()
        manager = AssignmentManager(db_session, audit=AuditLogger([failing]), settings=settings)

        assignment = await manager.create(key.id, HOST)

        assert assignment.state == AssignmentState.PENDING_DROP
        assert failing.calls == 1
