"""Tests for the HTTP layer: status codes, headers and auth rules.

Services are mocks on app.state; the lifespan is NOT run (no `with TestClient(...)`), so
nothing here touches a database or Spotify.
"""

import json
from typing import Any
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

from spindex.api.rate_limit import RequestRateLimiter
from spindex.application.services import CatalogService, EventService, Resolver
from spindex.application.workers import SnapshotCronService
from spindex.config import ApiSettings, CronSettings, Settings
from spindex.domain.dtos import ArtistSyncResult, CronRunSummary
from spindex.domain.entities import EntityKind, EventRecord, LookupResult
from spindex.domain.exceptions import (
    LockNotAcquiredError,
    PersistenceUnavailableError,
    RateLimitExceededError,
    UpstreamUnavailableError,
)
from spindex.domain.ports import ICatalogClient
from spindex.main import create_app


def _client(settings: Settings, **state: Any) -> TestClient:
    app = create_app(settings)
    app.state.request_limiter = RequestRateLimiter()
    for name, value in state.items():
        setattr(app.state, name, value)
    return TestClient(app)


def _production(settings: Settings, secret: str | None) -> Settings:
    return settings.model_copy(
        update={"environment": "production", "cron": CronSettings(secret=secret)}
    )


class TestResolveRoute:
    """GET /api/resolve."""

    def test_resolves_artist(self, settings) -> None:
        """A hit answers kind and id."""
        resolver = AsyncMock(spec=Resolver)
        resolver.resolve_input.return_value = LookupResult(kind=EntityKind.ARTIST, id="a1")
        client = _client(settings, resolver=resolver)

        response = client.get("/api/resolve", params={"q": "radiohead"})

        assert response.status_code == 200
        assert response.json()["kind"] == "artist"
        assert response.json()["id"] == "a1"
        resolver.resolve_input.assert_awaited_once_with("radiohead", propagate_rate_limit=True)

    def test_no_match_is_404(self, settings) -> None:
        """Nothing found locally or upstream."""
        resolver = AsyncMock(spec=Resolver)
        resolver.resolve_input.return_value = None
        client = _client(settings, resolver=resolver)

        assert client.get("/api/resolve", params={"q": "zzz"}).status_code == 404

    def test_upstream_rate_limit_is_429(self, settings) -> None:
        """Spotify throttling surfaces as 429 with a whole-second Retry-After."""
        resolver = AsyncMock(spec=Resolver)
        resolver.resolve_input.side_effect = RateLimitExceededError(retry_after=2.2)
        client = _client(settings, resolver=resolver)

        response = client.get("/api/resolve", params={"q": "radiohead"})

        assert response.status_code == 429
        assert response.headers["retry-after"] == "3"
        assert response.json()["ok"] is False

    def test_blank_query_is_422(self, settings) -> None:
        """Whitespace-only input never reaches the resolver."""
        resolver = AsyncMock(spec=Resolver)
        client = _client(settings, resolver=resolver)

        assert client.get("/api/resolve", params={"q": "   "}).status_code == 422
        resolver.resolve_input.assert_not_awaited()

    def test_not_initialized_is_503(self, settings) -> None:
        """Missing app state (startup never finished) is a 503, not a crash."""
        client = _client(settings)

        assert client.get("/api/resolve", params={"q": "x"}).status_code == 503


class TestCronRoute:
    """POST /api/cron/snapshot auth rules."""

    @pytest.fixture
    def cron_service(self) -> AsyncMock:
        service = AsyncMock(spec=SnapshotCronService)
        service.run_snapshot_cron.return_value = CronRunSummary(
            processed=2, succeeded=2, artist_ids=["a1", "a2"]
        )
        return service

    def test_production_without_secret_is_disabled(self, settings, cron_service) -> None:
        """No CRON_SECRET in production: 403 whatever is sent."""
        client = _client(_production(settings, None), cron_service=cron_service)

        response = client.post("/api/cron/snapshot", headers={"X-Cron-Key": "anything"})

        assert response.status_code == 403
        cron_service.run_snapshot_cron.assert_not_awaited()

    @pytest.mark.parametrize("headers", [{}, {"X-Cron-Key": "wrong"}])
    def test_production_requires_key(self, settings, cron_service, headers) -> None:
        """Missing or wrong key in production: 401."""
        client = _client(_production(settings, "s3cret"), cron_service=cron_service)

        assert client.post("/api/cron/snapshot", headers=headers).status_code == 401

    def test_production_accepts_header_or_query(self, settings, cron_service) -> None:
        """The key may come as a header or as ?key=."""
        client = _client(_production(settings, "s3cret"), cron_service=cron_service)

        by_header = client.post("/api/cron/snapshot", headers={"X-Cron-Key": "s3cret"})
        by_query = client.post("/api/cron/snapshot", params={"key": "s3cret"})

        assert by_header.status_code == 200
        assert by_query.status_code == 200
        assert by_header.json()["data"]["artist_ids"] == ["a1", "a2"]

    def test_development_without_key_runs(self, settings, cron_service) -> None:
        """A local curl without any key just works."""
        client = _client(settings, cron_service=cron_service)

        assert client.post("/api/cron/snapshot").status_code == 200

    def test_development_wrong_key_is_401(self, settings, cron_service) -> None:
        """A key that IS sent must match, even in development."""
        dev = settings.model_copy(update={"cron": CronSettings(secret="s3cret")})
        client = _client(dev, cron_service=cron_service)

        assert client.post("/api/cron/snapshot", params={"key": "nope"}).status_code == 401

    def test_held_lock_is_409(self, settings, cron_service) -> None:
        """Another run in progress."""
        cron_service.run_snapshot_cron.side_effect = LockNotAcquiredError()
        client = _client(settings, cron_service=cron_service)

        assert client.post("/api/cron/snapshot").status_code == 409


class TestDebugTriageRoute:
    """GET /api/debug/triage."""

    @pytest.fixture
    def resolver(self) -> AsyncMock:
        resolver = AsyncMock(spec=Resolver)
        resolver.resolve_input.return_value = LookupResult(kind=EntityKind.ARTIST, id="a1")
        return resolver

    @pytest.fixture
    def spotify(self) -> AsyncMock:
        spotify = AsyncMock(spec=ICatalogClient)
        spotify.get_artist.return_value = {"id": "a1", "popularity": 81}
        spotify.get_artist_tracks_all.return_value = [
            {"id": f"t{i}", "name": f"Song {i}", "duration_ms": 1000 * i} for i in range(1, 6)
        ]
        return spotify

    def _production(self, settings: Settings, key: str | None) -> Settings:
        return settings.model_copy(
            update={"environment": "production", "api": ApiSettings(admin_debug_key=key)}
        )

    def test_walks_every_step(self, settings, resolver, spotify) -> None:
        """Resolve, popularity, then the full discography with the first three tracks."""
        client = _client(settings, resolver=resolver, spotify_client=spotify)

        response = client.get("/api/debug/triage", params={"q": "radiohead"})

        assert response.status_code == 200
        body = response.json()
        assert body["input"] == "radiohead"
        assert body["step_a"]["artist_id"] == "a1"
        assert body["step_b"]["artist_popularity"] == 81
        assert body["step_c"]["tracks_count"] == 5
        assert [track["id"] for track in body["step_c"]["top3"]] == ["t1", "t2", "t3"]
        spotify.get_artist_tracks_all.assert_awaited_once_with("a1")

    def test_default_query(self, settings, resolver, spotify) -> None:
        """No q falls back to a well-known artist."""
        client = _client(settings, resolver=resolver, spotify_client=spotify)

        assert client.get("/api/debug/triage").json()["input"] == "taylor swift"
        resolver.resolve_input.assert_awaited_once_with("taylor swift")

    def test_failing_step_is_500_and_stops(self, settings, resolver, spotify) -> None:
        """The failing step reports the upstream status; earlier steps stay in the body."""
        spotify.get_artist_tracks_all.side_effect = UpstreamUnavailableError(
            "Spotify API error 503", status_code=503
        )
        client = _client(settings, resolver=resolver, spotify_client=spotify)

        response = client.get("/api/debug/triage", params={"q": "radiohead"})

        assert response.status_code == 500
        body = response.json()
        assert body["step_b"]["ok"] is True
        assert body["step_c"] == {
            "ok": False,
            "status": 503,
            "error": "Spotify API error 503",
            "tracks_count": None,
            "top3": [],
        }

    def test_unresolved_input_is_500(self, settings, resolver, spotify) -> None:
        """Nothing matched: step A fails and the catalog is never asked."""
        resolver.resolve_input.return_value = None
        client = _client(settings, resolver=resolver, spotify_client=spotify)

        response = client.get("/api/debug/triage", params={"q": "zzz"})

        assert response.status_code == 500
        assert response.json()["step_a"]["ok"] is False
        assert response.json()["step_b"] is None
        spotify.get_artist.assert_not_awaited()

    def test_production_without_key_is_disabled(self, settings, resolver, spotify) -> None:
        """No API_ADMIN_DEBUG_KEY in production: 403."""
        prod = self._production(settings, None)
        client = _client(prod, resolver=resolver, spotify_client=spotify)

        response = client.get("/api/debug/triage", headers={"X-Admin-Key": "anything"})

        assert response.status_code == 403
        resolver.resolve_input.assert_not_awaited()

    @pytest.mark.parametrize("headers", [{}, {"X-Admin-Key": "wrong"}])
    def test_production_requires_admin_key(self, settings, resolver, spotify, headers) -> None:
        """Missing or wrong X-Admin-Key in production: 401."""
        prod = self._production(settings, "adm1n")
        client = _client(prod, resolver=resolver, spotify_client=spotify)

        assert client.get("/api/debug/triage", headers=headers).status_code == 401

    def test_production_with_admin_key(self, settings, resolver, spotify) -> None:
        """The right key opens the route."""
        prod = self._production(settings, "adm1n")
        client = _client(prod, resolver=resolver, spotify_client=spotify)

        response = client.get("/api/debug/triage", headers={"X-Admin-Key": "adm1n"})

        assert response.status_code == 200


class TestEventRoutes:
    """POST /api/events."""

    def test_create_event(self, settings, utc_clock) -> None:
        """Referrer and session id ride inside the stored input; client ip from the proxy header."""
        events = AsyncMock(spec=EventService)
        events.record_event.return_value = (
            EventRecord(id="e1", type="artist_view", artist_id="a1", created_at=utc_clock()),
            True,
        )
        client = _client(settings, event_service=events)

        response = client.post(
            "/api/events",
            json={"type": "artist_view", "artist_id": "a1", "referrer": "https://ref"},
            headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"},
        )

        assert response.status_code == 201
        assert response.json()["created"] is True
        kwargs = events.record_event.await_args.kwargs
        assert kwargs["ip"] == "203.0.113.7"
        assert json.loads(kwargs["input"])["referrer"] == "https://ref"

    def test_missing_type_is_422(self, settings) -> None:
        """type is required."""
        client = _client(settings, event_service=AsyncMock(spec=EventService))

        assert client.post("/api/events", json={"artist_id": "a1"}).status_code == 422

    def test_api_key_gate(self, settings) -> None:
        """With API_REQUEST_KEY set, requests need a matching X-API-Key."""
        events = AsyncMock(spec=EventService)
        gated = settings.model_copy(
            update={"api": settings.api.model_copy(update={"request_key": "k"})}
        )
        client = _client(gated, event_service=events)

        assert client.post("/api/events", json={"type": "search"}).status_code == 401
        events.record_event.assert_not_awaited()


class TestRequestLimits:
    """Per-client request limits."""

    def test_manual_sync_limited_per_client(self, settings) -> None:
        """The sixth sync within a minute is refused with Retry-After."""
        catalog = AsyncMock(spec=CatalogService)
        catalog.sync_artist.return_value = ArtistSyncResult(artist_id="a1", stored_tracks=10)
        client = _client(settings, catalog_service=catalog)

        statuses = [
            client.post("/api/artists/sync", json={"artist_id": "a1"}).status_code
            for _ in range(6)
        ]

        assert statuses == [200] * 5 + [429]
        refused = client.post("/api/artists/sync", json={"artist_id": "a1"})
        assert int(refused.headers["retry-after"]) >= 1
        assert catalog.sync_artist.await_count == 5


class TestHealthRoutes:
    """Probes."""

    def test_liveness(self, settings) -> None:
        """Always alive."""
        response = _client(settings).get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_ready(self, settings) -> None:
        """Database and Spotify both usable."""
        database = AsyncMock()
        spotify = AsyncMock()
        spotify.get_access_token.return_value = "token"
        client = _client(settings, database=database, spotify_client=spotify)

        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["checks"]["database"]["ok"] is True

    def test_not_ready_when_database_down(self, settings) -> None:
        """A failing ping makes the app not ready."""
        database = AsyncMock()
        database.ping.side_effect = PersistenceUnavailableError("Database unavailable")
        spotify = AsyncMock()
        spotify.get_access_token.return_value = "token"
        client = _client(settings, database=database, spotify_client=spotify)

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"
        assert response.json()["checks"]["database"]["error"] == "Database unavailable"
