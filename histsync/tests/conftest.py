"""Shared fixtures and fake remote responses for sync engine tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import httpx
import pytest

from histsync.processing.stages import register_default_stages
from histsync.services.remote import RemoteClient
from histsync.services.state import MemoryStateStorage
from histsync.services.store import Stores
from histsync.sync.base import Activity, Athlete, HistoryValue
from histsync.sync.config_loader import SyncConfig, load_sync_config
from histsync.sync.manifest import ManifestRegistry
from histsync.sync.ratelimit import RateLimiterGroup, build_rate_limiter_group

# 2023-11-14 22:13:20 UTC
TEST_NOW = 1_700_000_000.0
TEST_ATHLETE_ID = 1001


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------


class FakeClock:
    """Manual clock; ``sleep`` advances time instead of waiting."""

    def __init__(self, now: float = TEST_NOW) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += max(delay, 0.0)
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the real sync config for tests."""
    return load_sync_config()


@pytest.fixture
def stores() -> Stores:
    return Stores()


@pytest.fixture
def registry(sync_config: SyncConfig) -> ManifestRegistry:
    return register_default_stages(ManifestRegistry(), sync_config)


@pytest.fixture
def state_storage() -> MemoryStateStorage:
    return MemoryStateStorage()


@pytest.fixture
def rate_limiters(
    sync_config: SyncConfig, state_storage: MemoryStateStorage, clock: FakeClock
) -> RateLimiterGroup:
    return build_rate_limiter_group(
        sync_config.rate_limits, state_storage, clock=clock.time, sleep=clock.sleep
    )


@pytest.fixture
def make_remote() -> Callable[[Callable[[httpx.Request], httpx.Response]], RemoteClient]:
    """Factory for a ``RemoteClient`` answering from a handler function."""

    def _make(handler: Callable[[httpx.Request], httpx.Response]) -> RemoteClient:
        http = httpx.AsyncClient(
            transport=httpx.MockTransport(handler), base_url="https://remote.test"
        )
        return RemoteClient(http_client=http)

    return _make


@pytest.fixture
def athlete() -> Athlete:
    """An enabled athlete with max HR, weight and FTP history."""
    return Athlete(
        id=TEST_ATHLETE_ID,
        name="Test Athlete",
        gender="female",
        sync_enabled=True,
        ftp_history=[HistoryValue(ts=0, value=250)],
        weight_history=[HistoryValue(ts=0, value=60)],
        max_hr_history=[HistoryValue(ts=0, value=190)],
    )


# ---------------------------------------------------------------------------
# Fake remote data
# ---------------------------------------------------------------------------


def make_streams(basetype: str = "run", samples: int = 121, step: float = 5.0) -> dict[str, list]:
    """A steady effort: constant heart rate and speed, gently climbing."""
    time = [i * step for i in range(samples)]
    streams: dict[str, list] = {
        "time": time,
        "heartrate": [150 for _ in time],
        "distance": [i * step * 3.0 for i in range(samples)],
        "altitude": [100 + i * 0.1 for i in range(samples)],
        "velocity_smooth": [3.0 for _ in time],
    }
    if basetype == "ride":
        streams["watts"] = [200 for _ in time]
    return streams


def activity_model(activity_id: int, start: str, type_: str = "Run", name: str | None = None) -> dict[str, Any]:
    """One entry of the training-activities listing."""
    return {
        "id": activity_id,
        "name": name or f"Activity {activity_id}",
        "type": type_,
        "start_time": start,
        "distance": "10.0",
        "elapsed_time": "1:00:00",
        "static_map": "https://maps.example/x.png",
        "trainer": False,
    }


def training_activities_page(models: list[dict[str, Any]], page: int, per_page: int) -> dict[str, Any]:
    return {
        "total": len(models),
        "perPage": per_page,
        "page": page,
        "models": models[(page - 1) * per_page: page * per_page],
    }


def make_activity(activity_id: int, athlete_id: int = TEST_ATHLETE_ID, ts: float = TEST_NOW - 86400, basetype: str = "run") -> Activity:
    return Activity(id=activity_id, athlete=athlete_id, ts=ts, basetype=basetype, name=f"Activity {activity_id}")


def feed_payload(html: str) -> str:
    """Wrap an HTML fragment the way the interval feed does."""
    return f"jQuery('#interval-rides').html({json.dumps(html)})"


def feed_entry(activity_id: int, when: str, icon: str = "icon-run", title: str | None = None) -> str:
    title = (title or f"Activity {activity_id}").replace('"', '\\"')
    return (
        f'<div class="feed-entry activity" id="Activity-{activity_id}">'
        f'<span class="app-icon {icon}"></span>'
        f'<time datetime="{when}">{when}</time>'
        f'<script>var entity_id = "{activity_id}"; var opts = {{title: "{title}"}};</script>'
        f"</div>"
    )
