"""
Test configuration for MatchLens tests.

No Postgres, Redis, PayPal or Cloudinary needed:
  - the database is a throwaway SQLite file per test (aiosqlite driver), so two
    sessions contend for it the way two pooled Postgres connections would
  - PayPal / Cloudinary are faked with httpx.MockTransport or AsyncMock
  - the FastAPI app's lifespan is not run; fixtures put collaborators on app.state
"""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

import matchlens.models  # noqa: F401  registers tables on Base.metadata
from matchlens.database import Base, create_sessionmaker
from matchlens.intake.orchestrator import IntakeOrchestrator
from matchlens.tests.demo_payloads import capture_result


def _enable_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'matchlens.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 15},
    )
    event.listen(engine.sync_engine, "connect", _enable_foreign_keys)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return create_sessionmaker(engine)


@pytest_asyncio.fixture
async def db(sessionmaker):
    async with sessionmaker() as session:
        yield session


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------

@pytest.fixture
def uploader():
    """Uploads every photo: one deterministic URL per input, input order kept."""
    async def _upload(photos, folder):
        return [
            f"https://res.cloudinary.com/demo/image/upload/{folder}/{index}.jpg"
            for index, _ in enumerate(photos or [])
        ]

    fake = MagicMock()
    fake.upload_batch = AsyncMock(side_effect=_upload)
    return fake


@pytest.fixture
def verifier():
    """Confirms whatever order it is asked about, echoing the claim back."""
    async def _verify(order_id, payment_id, amount, currency):
        return capture_result(order_id, payment_id, amount=str(amount), currency=currency)

    fake = MagicMock()
    fake.verify = AsyncMock(side_effect=_verify)
    fake.create_order = AsyncMock()
    fake.confirm_capture = AsyncMock()
    return fake


@pytest.fixture
def orchestrator(sessionmaker, uploader, verifier):
    return IntakeOrchestrator(sessionmaker, uploader, verifier=verifier, verify_payments=True)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(engine, sessionmaker, uploader, verifier, orchestrator):
    """Async httpx client using ASGI transport, no live server needed."""
    from matchlens.main import app

    app.state.engine = engine
    app.state.sessionmaker = sessionmaker
    app.state.uploader = uploader
    app.state.verifier = verifier
    app.state.orchestrator = orchestrator
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
