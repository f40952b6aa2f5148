"""
Test Configuration — Fixtures for a file-backed async SQLite store, fake
external endpoints and the API test client.

Each test gets its own database file under tmp_path, so tests never share
rows and concurrent sessions behave like separate connections.
"""

import asyncio
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient

from core.config import Settings
from core.errors import NotificationError
from db.models import Player
from db.session import create_session_factory
from db.store import SampleRecord, StoreAdapter
from loyalty.tiers import Tier

NOW = datetime(2026, 3, 14, 2, 0, 0)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        app_env="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'slotops.db'}",
        monitor_interval_seconds=300,
        monitor_concurrency=1,
        reclassify_concurrency=1,
        telemetry_retry_backoff_seconds=0,
        realert_after_minutes=None,
        _env_file=None,
    )


@pytest.fixture
async def store(settings):
    """Engine-owning store with all tables created."""
    adapter = StoreAdapter.from_settings(settings)
    await adapter.create_all()
    yield adapter
    await adapter.dispose()


@pytest.fixture
def session_factory(store):
    """Sessions on the same engine as `store`, for seeding and assertions."""
    return create_session_factory(store._engine)


@pytest.fixture
def make_player(session_factory):
    async def _make(
        total_wager,
        tier: Tier = Tier.SILVER,
        last_evaluated_at: datetime | None = NOW - timedelta(days=2),
        name: str = "Player",
    ) -> Player:
        async with session_factory() as db:
            player = Player(
                player_id=uuid.uuid4(),
                display_name=name,
                total_wager=Decimal(str(total_wager)),
                tier=tier.value,
                last_evaluated_at=last_evaluated_at,
            )
            db.add(player)
            await db.commit()
            return player

    return _make


# ─── Fakes for external endpoints ──────────────────────────────────────────


def sample(machine_id: str, utilization: float, status: str = "normal", location: str | None = "Floor A") -> SampleRecord:
    return SampleRecord(machine_id=machine_id, utilization=utilization, status=status, location=location)


class FakeTelemetrySource:
    """Replays scripted snapshots; an exception instance is raised instead."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = 0

    async def fetch_snapshot(self):
        self.calls += 1
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, BaseException):
            raise response
        return list(response)


class HangingTelemetrySource:
    """Never answers until cancelled."""

    def __init__(self):
        self.cancelled = False

    async def fetch_snapshot(self):
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise


class RecordingNotifier:
    name = "recording"

    def __init__(self, fail: bool = False):
        self.sent = []
        self.attempts = 0
        self.fail = fail

    async def send(self, alert):
        self.attempts += 1
        if self.fail:
            raise NotificationError("channel down")
        self.sent.append(alert)

    async def aclose(self):
        return None


class FakeTierAPI:
    """Records pushes; per-player failures are scripted with `errors`."""

    def __init__(self, errors: dict[str, Exception] | None = None):
        self.pushes: list[tuple[str, Tier, str]] = []
        self.errors = errors or {}

    async def push_tier(self, player_id, tier, idempotency_key):
        error = self.errors.get(str(player_id))
        if error is not None:
            raise error
        self.pushes.append((str(player_id), tier, idempotency_key))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def tier_api():
    return FakeTierAPI()


# ─── API client ────────────────────────────────────────────────────────────


@pytest.fixture
async def client(store):
    """Async test client with the store dependency overridden."""
    from api.deps import get_store
    from api.main import app

    async def override_get_store():
        return store

    app.dependency_overrides[get_store] = override_get_store

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
