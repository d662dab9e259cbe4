"""Shared fixtures: settings on a temp SQLite file, a real Database, fake clocks and payloads."""

from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from spindex.config import CronSettings, DatabaseSettings, Settings, SpotifySettings, SyncSettings
from spindex.domain.ports import ICatalogClient
from spindex.infrastructure.persistence import Database


class FakeClock:
    """Monotonic clock that only moves when told to (or when something sleeps on it)."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeUtcNow:
    """Settable UTC wall clock for services that take a `now` callable."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    """Fake monotonic clock."""
    return FakeClock()


@pytest.fixture
def utc_clock() -> FakeUtcNow:
    """Fake UTC clock pinned to a fixed moment."""
    return FakeUtcNow(datetime(2026, 3, 14, 12, 0, tzinfo=UTC))


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at a throwaway SQLite file with test credentials."""
    return Settings(
        environment="development",
        spotify=SpotifySettings(client_id="test-id", client_secret="test-secret"),
        database=DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"),
        sync=SyncSettings(detail_refresh_timeout=0.5, artist_record_timeout=0.5),
        cron=CronSettings(secret=None),
    )


@pytest.fixture
async def database(settings: Settings) -> AsyncGenerator[Database, None]:
    """Real Database with all tables created."""
    db = Database(settings)
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
def catalog_client() -> AsyncMock:
    """Mock upstream catalog client."""
    client = AsyncMock(spec=ICatalogClient)
    client.get_artist_top_tracks.return_value = []
    client.search.return_value = {"artists": {"items": []}, "tracks": {"items": []}}
    return client


@pytest.fixture
def artist_payload() -> Callable[..., dict[str, Any]]:
    """Factory for Spotify artist objects."""

    def build(artist_id: str, name: str = "Test Artist", popularity: int = 50, **extra: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": artist_id,
            "name": name,
            "popularity": popularity,
            "genres": ["indie"],
            "followers": {"total": 1000},
            "images": [
                {"url": f"https://i.scdn.co/{artist_id}-small", "width": 64},
                {"url": f"https://i.scdn.co/{artist_id}-large", "width": 640},
            ],
            "external_urls": {"spotify": f"https://open.spotify.com/artist/{artist_id}"},
        }
        payload.update(extra)
        return payload

    return build


@pytest.fixture
def track_payload() -> Callable[..., dict[str, Any]]:
    """Factory for Spotify track objects."""

    def build(
        track_id: str,
        artist_id: str = "artist1",
        name: str = "Test Track",
        popularity: int = 40,
        **extra: Any,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": track_id,
            "name": name,
            "popularity": popularity,
            "duration_ms": 180_000,
            "preview_url": None,
            "artists": [{"id": artist_id, "name": "Test Artist"}],
            "album": {"name": "Test Album", "images": [{"url": "https://i.scdn.co/album", "width": 300}]},
            "external_urls": {"spotify": f"https://open.spotify.com/track/{track_id}"},
        }
        payload.update(extra)
        return payload

    return build
