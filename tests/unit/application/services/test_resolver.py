"""Tests for input resolution: permalinks, URIs, local cache, upstream search."""

import pytest

from spindex.application.services import Resolver
from spindex.application.services.resolver import parse_spotify_reference
from spindex.domain.entities import Artist, EntityKind, Track
from spindex.domain.exceptions import RateLimitExceededError, UpstreamUnavailableError
from spindex.infrastructure.persistence import ArtistRepository, TrackRepository


class TestParseSpotifyReference:
    """Pure parsing, no I/O."""

    def test_artist_permalink(self) -> None:
        """Query strings and locale segments don't get in the way."""
        result = parse_spotify_reference(
            "https://open.spotify.com/intl-de/artist/4tZwfgrHOc3mvqYlEYSvVi?si=abc"
        )
        assert result is not None
        assert result.kind is EntityKind.ARTIST
        assert result.id == "4tZwfgrHOc3mvqYlEYSvVi"

    def test_track_uri(self) -> None:
        """URIs are turned into a permalink."""
        result = parse_spotify_reference("spotify:track:0DiWol3AO6WpXZgp0goxAV")
        assert result is not None
        assert result.kind is EntityKind.TRACK
        assert result.url == "https://open.spotify.com/track/0DiWol3AO6WpXZgp0goxAV"

    def test_free_text(self) -> None:
        """Anything else isn't a reference."""
        assert parse_spotify_reference("daft punk") is None


class TestResolver:
    """Resolution order: reference, local cache, upstream search."""

    @pytest.fixture
    def resolver(self, database, catalog_client) -> Resolver:
        """Resolver on the test database and the mocked client."""
        return Resolver(database, catalog_client)

    @pytest.mark.asyncio
    async def test_blank_input(self, resolver, catalog_client) -> None:
        """Whitespace resolves to nothing without any lookup."""
        assert await resolver.resolve_input("   ") is None
        catalog_client.search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_permalink_skips_all_io(self, resolver, catalog_client) -> None:
        """Parsed references never touch the cache or upstream."""
        result = await resolver.resolve_input("https://open.spotify.com/artist/abc123")
        assert result is not None and result.id == "abc123"
        catalog_client.search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_local_cache_beats_upstream(self, resolver, database, catalog_client) -> None:
        """A cached name match answers without spending an upstream call."""
        async with database.session_scope() as session:
            await ArtistRepository(session).upsert(Artist(id="a1", name="Radiohead"))

        result = await resolver.resolve_input("radio")
        assert result is not None
        assert (result.kind, result.id) == (EntityKind.ARTIST, "a1")
        catalog_client.search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_local_track_match(self, resolver, database) -> None:
        """Tracks are matched when no artist name contains the text."""
        async with database.session_scope() as session:
            await TrackRepository(session).upsert(Track(id="t1", name="Karma Police"))

        result = await resolver.resolve_input("karma")
        assert result is not None
        assert (result.kind, result.id) == (EntityKind.TRACK, "t1")

    @pytest.mark.asyncio
    async def test_single_character_skips_local_lookup(
        self, resolver, database, catalog_client
    ) -> None:
        """One character would match half the cache, so it goes upstream."""
        async with database.session_scope() as session:
            await ArtistRepository(session).upsert(Artist(id="a1", name="Radiohead"))

        assert await resolver.resolve_input("r") is None
        catalog_client.search.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_upstream_artist_beats_track(self, resolver, catalog_client) -> None:
        """When search returns both, the artist wins."""
        catalog_client.search.return_value = {
            "artists": {"items": [{"id": "a9", "external_urls": {"spotify": "https://x/a9"}}]},
            "tracks": {"items": [{"id": "t9"}]},
        }
        result = await resolver.resolve_input("something")
        assert result is not None
        assert (result.kind, result.id, result.url) == (EntityKind.ARTIST, "a9", "https://x/a9")

    @pytest.mark.asyncio
    async def test_upstream_track_only(self, resolver, catalog_client) -> None:
        """A track hit is used when there's no artist hit."""
        catalog_client.search.return_value = {
            "artists": {"items": []},
            "tracks": {"items": [{"id": "t9"}]},
        }
        result = await resolver.resolve_input("some song")
        assert result is not None
        assert (result.kind, result.id) == (EntityKind.TRACK, "t9")

    @pytest.mark.asyncio
    async def test_rate_limited_search_is_not_found(self, resolver, catalog_client) -> None:
        """By default a rate-limited search with no local match resolves to None."""
        catalog_client.search.side_effect = RateLimitExceededError()
        assert await resolver.resolve_input("nothing cached") is None

    @pytest.mark.asyncio
    async def test_rate_limit_can_propagate(self, resolver, catalog_client) -> None:
        """The HTTP layer asks for the error so it can answer 429."""
        catalog_client.search.side_effect = RateLimitExceededError(retry_after=4)
        with pytest.raises(RateLimitExceededError):
            await resolver.resolve_input("nothing cached", propagate_rate_limit=True)

    @pytest.mark.asyncio
    async def test_network_failure_propagates(self, resolver, catalog_client) -> None:
        """A broken upstream is not reported as "not found"."""
        catalog_client.search.side_effect = UpstreamUnavailableError("down")
        with pytest.raises(UpstreamUnavailableError):
            await resolver.resolve_input("nothing cached")
