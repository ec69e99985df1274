"""Pytest configuration for test suite."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

# Add backend/src to Python path for imports
# This file is in backend/tests/, so we need to go up one level to backend/
BACKEND_DIR = Path(__file__).parent.parent
SRC_DIR = BACKEND_DIR / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from role_lifecycle.shared.errors import NotificationDeliveryError, StoreUnavailableError  # noqa: E402
from role_lifecycle.shared.rbac import (  # noqa: E402
    InMemoryAuditLog,
    InMemoryNotificationDispatcher,
    InMemoryRoleStore,
    LifecycleConfig,
    RoleLifecycleEngine,
)
from role_lifecycle.shared.rbac.audit import AuditLog  # noqa: E402
from role_lifecycle.shared.rbac.models import AuditRecord, NotificationEvent  # noqa: E402


START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock handed to the engine in place of utc_now."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now = self.now + delta
        return self.now


class FailingDispatcher(InMemoryNotificationDispatcher):
    """Dispatcher whose deliveries fail until ``failures`` attempts are used up."""

    def __init__(self, failures: int = 10**6, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures
        self.attempts = 0

    async def _deliver(self, event: NotificationEvent) -> None:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise NotificationDeliveryError("email service down")
        await super()._deliver(event)


class BrokenAuditLog(AuditLog):
    async def append(self, record: AuditRecord) -> None:
        raise StoreUnavailableError("audit table unavailable")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryRoleStore()


@pytest.fixture
def audit_log():
    return InMemoryAuditLog()


@pytest.fixture
def dispatcher():
    return InMemoryNotificationDispatcher()


@pytest.fixture
def config():
    return LifecycleConfig()


@pytest_asyncio.fixture
async def engine(store, audit_log, dispatcher, config, clock):
    engine = RoleLifecycleEngine(
        store=store,
        audit_log=audit_log,
        dispatcher=dispatcher,
        config=config,
        clock=clock,
    )
    yield engine
    await engine.drain_notifications()


@pytest_asyncio.fixture
async def seeded_admin(engine):
    """A permanent admin grant for ``root`` so other admin grants can be removed."""
    grant = await engine.assign("root", "admin", performed_by="bootstrap")
    await engine.drain_notifications()
    return grant
