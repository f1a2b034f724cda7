"""
Pytest configuration and fixtures.

Every test gets its own file-backed SQLite database so that concurrent
sessions (detection races, sweeper vs. worker) behave like separate
connections, plus a controllable clock and in-memory channel fakes.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Callable, Optional

# Settings are read at import time by the app modules
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("LLM_PROVIDER", "disabled")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{tempfile.gettempdir()}/ndr_backend_test_app.db")
os.environ.setdefault("JOB_WORKERS_ENABLED", "false")
os.environ.setdefault("SWEEPER_ENABLED", "false")

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from ndr_backend.app.core.database import Base
from ndr_backend.app.core.security import Role, create_access_token
import ndr_backend.app.models  # noqa: F401
from ndr_backend.app.schemas.ndr import ClassificationResult, TrackingUpdate
from ndr_backend.app.services.channels import ShipmentInfo
from ndr_backend.app.services.classification_service import ClassificationService
from ndr_backend.app.services.wiring import NDRServices, build_services, set_services
from ndr_backend.app.workers.job_worker import JobWorkerPool

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
T0 = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    """Injectable clock; tests move time forward explicitly."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class CountingClassifier(ClassificationService):
    """Keyword classifier that counts how often it was asked."""

    def __init__(self):
        super().__init__(adapter=None)
        self.calls = 0

    async def classify(self, raw_reason: str, remarks: Optional[str] = None) -> ClassificationResult:
        self.calls += 1
        return await super().classify(raw_reason, remarks)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ndr.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def services(session_factory, clock) -> NDRServices:
    svc = build_services(session_factory, clock=clock, classifier=CountingClassifier())
    await svc.workflows.seed_defaults()
    svc.shipments.add(ShipmentInfo(
        shipment_id="AWB1001",
        tenant_id=TENANT,
        customer_name="Test Customer",
        customer_phone="+919876543210",
        delivery_address={"line1": "12 MG Road", "city": "Bengaluru", "pincode": "560001"},
        origin_address={"line1": "Seller Warehouse, Plot 4", "city": "Gurugram", "pincode": "122001"},
    ))
    return svc


@pytest.fixture
def worker(services) -> JobWorkerPool:
    """Worker pool driven by hand through run_once."""
    return JobWorkerPool(services, worker_count=1, poll_interval=0.01, batch_size=50)


@pytest.fixture
def make_update(clock) -> Callable[..., TrackingUpdate]:
    def _make(
        status: str = "undelivered",
        remarks: str = "Customer not available, phone switched off",
        shipment_id: str = "AWB1001",
        occurred_at: Optional[datetime] = None,
    ) -> TrackingUpdate:
        return TrackingUpdate(
            shipment_id=shipment_id,
            status=status,
            remarks=remarks,
            location="Bengaluru Hub",
            occurred_at=occurred_at or clock(),
        )
    return _make


def auth_headers(role: str = Role.ADMIN, tenant_id: str = TENANT, username: str = "ops-user") -> dict:
    token = create_access_token({"sub": username, "role": role, "tenant_id": tenant_id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers() -> dict:
    return auth_headers()


@pytest.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    """API client bound to the per-test services."""
    from ndr_backend.app.events.bus import initialize_event_bus
    from ndr_backend.app.main import app

    initialize_event_bus(maxsize=100)
    set_services(services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    set_services(None)


@pytest.fixture
def headers_for() -> Callable[..., dict]:
    return auth_headers
