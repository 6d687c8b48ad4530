"""API test fixtures: the app wired to the per-test SQLite database."""

from __future__ import annotations

import httpx
import pytest

from keyhive.api.dependencies import get_audit_logger
from keyhive.db.session import get_session_dependency
from keyhive.main import create_app


@pytest.fixture
def app(session_factory, audit):
    app = create_app()

    async def _session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_session_dependency] = _session
    app.dependency_overrides[get_audit_logger] = lambda: audit
    return app


@pytest.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
