import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio

from chargeguard.central import AppContext, create_app
from chargeguard.config import Settings
from chargeguard.errors import CommunicationFailure
from chargeguard.gateway import device_id_for_slot, parse_reading
from chargeguard.repository import InMemoryRepository

T0 = datetime(2025, 3, 1, 8, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeGateway:
    """Scripted charger endpoint keyed by slot id."""

    def __init__(self):
        self.responses = {}
        self.delays = {}
        self.reading_calls = []
        self.stop_calls = []
        self.stop_response = {"result": {"status": "Accepted"}}

    def set_energy(self, slot_id, energy, **extra):
        self.responses[device_id_for_slot(slot_id)] = {"energy": energy, **extra}

    def set_response(self, slot_id, response):
        self.responses[device_id_for_slot(slot_id)] = response

    def set_delay(self, slot_id, seconds):
        self.delays[device_id_for_slot(slot_id)] = seconds

    async def get_reading(self, device_id, id_tag, connector_id=1):
        self.reading_calls.append((device_id, id_tag, connector_id))
        delay = self.delays.get(device_id)
        if delay:
            await asyncio.sleep(delay)
        response = self.responses.get(device_id)
        if isinstance(response, Exception):
            raise response
        if response is None:
            raise CommunicationFailure(f"{device_id} unreachable")
        return parse_reading(response)

    async def remote_stop(self, device_id, connector_id, transaction_id, id_tag):
        self.stop_calls.append((device_id, connector_id, transaction_id, id_tag))
        return self.stop_response

    async def close(self):
        pass


@pytest.fixture
def settings():
    return Settings(
        sweep_reading_timeout_sec=0.2,
        final_reading_timeout_sec=0.2,
        remote_stop_timeout_sec=0.2,
        monitor_reading_timeout_sec=0.2,
        monitor_interval_sec=0.05,
        sweep_enabled=False,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest_asyncio.fixture
async def repo():
    repo = InMemoryRepository()
    station = await repo.add_station("Central", price_per_kwh=10, tax=1.18)
    await repo.add_slot(station.id, no_of_connector=2)
    await repo.add_slot(station.id, no_of_connector=2)
    return repo


@pytest.fixture
def ctx(settings, repo, gateway, clock):
    return AppContext.build(settings, repo=repo, gateway=gateway, clock=clock)


@pytest_asyncio.fixture
async def client(ctx):
    app = create_app(ctx)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
