"""
Shared fixtures: an in-memory Redis, the services built on it, and
mocked external collaborators.
"""

from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest

from bloom_control.clients.base import ProvisionResult
from bloom_control.clients.redis import RedisClient
from bloom_control.core.config import Settings
from bloom_control.core.initializer import RegionCatalog
from bloom_control.services.admission.admission import AdmissionService
from bloom_control.services.defense.defense import DefenseService
from bloom_control.services.ledger.ledger import Ledger
from bloom_control.services.lifecycle.lifecycle import LifecycleOrchestrator


WEBHOOK_SECRET = "test-webhook-secret"
INSTANCE_ID = "4711"
INSTANCE_ADDRESS = "203.0.113.7"


class FakeClock:
    """Settable epoch-seconds source for the admission counters."""

    def __init__(self, now: float = 1_700_000_040.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        webhook_secret=WEBHOOK_SECRET,
        idle_timeout_grace_seconds=0,
        terminal_host="terminal.example.com",
        environment="test",
    )


@pytest.fixture
async def redis_conn():
    conn = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield conn
    await conn.flushall()


@pytest.fixture
def redis_client(redis_conn):
    return RedisClient(redis_conn)


@pytest.fixture
def ledger(redis_client):
    return Ledger(redis_client)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def admission(redis_client, clock):
    return AdmissionService(redis_client, daily_cost_limit=5.0, clock=clock)


@pytest.fixture
def defense():
    return DefenseService()


@pytest.fixture
def region_catalog():
    return RegionCatalog.default()


@pytest.fixture
def provisioner():
    provisioner = MagicMock()
    provisioner.create_instance = AsyncMock(
        return_value=ProvisionResult(instance_id=INSTANCE_ID, server_name="bloom-test")
    )
    provisioner.delete_instance = AsyncMock(return_value=None)
    return provisioner


@pytest.fixture
def dns():
    dns = MagicMock()
    dns.update_record = AsyncMock(return_value=None)
    return dns


@pytest.fixture
def instance():
    instance = MagicMock()
    instance.trigger_sync = AsyncMock(return_value=None)
    instance.send_task = AsyncMock(return_value=None)
    return instance


@pytest.fixture
def orchestrator(ledger, admission, defense, provisioner, dns, instance, region_catalog, settings):
    return LifecycleOrchestrator(
        ledger, admission, defense, provisioner, dns, instance, region_catalog, settings
    )
