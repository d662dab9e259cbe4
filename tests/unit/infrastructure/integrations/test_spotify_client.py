"""Tests for the Spotify client: token flow, retries, shared rate limiting, de-duplication.

Hey future me - every test builds its ClientState on the fake clock, so backoff "sleeps" just
move the clock forward and get recorded in clock.sleeps. No test ever really waits.
"""

import asyncio
import re

import httpx
import pytest
from pytest_httpx import HTTPXMock

from spindex.config import SpotifySettings
from spindex.domain.exceptions import (
    ConfigurationError,
    ExternalServiceError,
    RateLimitExceededError,
    UpstreamUnavailableError,
)
from spindex.infrastructure.integrations import ClientState, SpotifyClient
from spindex.infrastructure.integrations.spotify_client import (
    artist_from_spotify,
    top_image,
    track_from_spotify,
)

TOKEN_URL = "https://accounts.spotify.com/api/token"
API = "https://api.spotify.com/v1"


@pytest.fixture
def spotify_settings() -> SpotifySettings:
    """Configured Spotify settings."""
    return SpotifySettings(client_id="id", client_secret="secret")


@pytest.fixture
async def client(spotify_settings: SpotifySettings, clock):
    """Client on the fake clock."""
    spotify = SpotifyClient(spotify_settings, state=ClientState(clock=clock, sleep=clock.sleep))
    yield spotify
    await spotify.close()


def add_token(httpx_mock: HTTPXMock, token: str = "tok-1") -> None:
    httpx_mock.add_response(
        method="POST", url=TOKEN_URL, json={"access_token": token, "expires_in": 3600}
    )


class TestAccessToken:
    """Client-credentials token handling."""

    @pytest.mark.asyncio
    async def test_token_fetched_once_and_cached(self, client, httpx_mock: HTTPXMock) -> None:
        """Second call is served from the cache."""
        add_token(httpx_mock)

        assert await client.get_access_token() == "tok-1"
        assert await client.get_access_token() == "tok-1"
        assert len(httpx_mock.get_requests(method="POST")) == 1

    @pytest.mark.asyncio
    async def test_token_request_uses_basic_auth(self, client, httpx_mock: HTTPXMock) -> None:
        """Credentials go in a Basic header, grant type in the form body."""
        add_token(httpx_mock)
        await client.get_access_token()

        request = httpx_mock.get_requests(method="POST")[0]
        assert request.headers["Authorization"].startswith("Basic ")
        assert b"grant_type=client_credentials" in request.content

    @pytest.mark.asyncio
    async def test_missing_credentials(self, clock) -> None:
        """No id/secret is a configuration problem, not an upstream one."""
        spotify = SpotifyClient(SpotifySettings(), state=ClientState(clock=clock))
        with pytest.raises(ConfigurationError):
            await spotify.get_access_token()

    @pytest.mark.asyncio
    async def test_rejected_credentials(self, client, httpx_mock: HTTPXMock) -> None:
        """A 400 from the token endpoint is an ExternalServiceError."""
        httpx_mock.add_response(method="POST", url=TOKEN_URL, status_code=400)
        with pytest.raises(ExternalServiceError) as exc_info:
            await client.get_access_token()
        assert exc_info.value.status_code == 400


class TestRequestRetries:
    """Retry and backoff behaviour of request()."""

    @pytest.mark.asyncio
    async def test_401_refreshes_token_once(self, client, httpx_mock: HTTPXMock) -> None:
        """A rejected token is replaced and the request repeated with the new one."""
        add_token(httpx_mock, "old")
        httpx_mock.add_response(method="GET", url=f"{API}/artists/a1", status_code=401)
        add_token(httpx_mock, "new")
        httpx_mock.add_response(method="GET", url=f"{API}/artists/a1", json={"id": "a1"})

        assert await client.get_artist("a1") == {"id": "a1"}
        gets = httpx_mock.get_requests(method="GET")
        assert gets[0].headers["Authorization"] == "Bearer old"
        assert gets[1].headers["Authorization"] == "Bearer new"

    @pytest.mark.asyncio
    async def test_second_401_is_not_retried(self, client, httpx_mock: HTTPXMock) -> None:
        """Only one refresh per request."""
        add_token(httpx_mock, "old")
        httpx_mock.add_response(method="GET", url=f"{API}/artists/a1", status_code=401)
        add_token(httpx_mock, "new")
        httpx_mock.add_response(method="GET", url=f"{API}/artists/a1", status_code=401)

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.get_artist("a1")
        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_429_honours_retry_after(self, client, clock, httpx_mock: HTTPXMock) -> None:
        """The wait is exactly Retry-After, then the request succeeds."""
        add_token(httpx_mock)
        httpx_mock.add_response(
            method="GET", url=f"{API}/artists/a1", status_code=429, headers={"Retry-After": "3"}
        )
        httpx_mock.add_response(method="GET", url=f"{API}/artists/a1", json={"id": "a1"})

        assert await client.get_artist("a1") == {"id": "a1"}
        assert clock.sleeps == [3.0]
        assert client.state.gate.limited_until == 0.0

    @pytest.mark.asyncio
    async def test_429_exhausted(self, client, clock, httpx_mock: HTTPXMock) -> None:
        """After five linear backoffs the rate limit surfaces as its own error."""
        add_token(httpx_mock)
        for _ in range(6):
            httpx_mock.add_response(method="GET", url=f"{API}/artists/a1", status_code=429)

        with pytest.raises(RateLimitExceededError):
            await client.get_artist("a1")
        assert clock.sleeps == [2.0, 4.0, 6.0, 8.0, 10.0]

    @pytest.mark.asyncio
    async def test_rate_limit_deadline_is_shared(self, client, clock, httpx_mock: HTTPXMock) -> None:
        """An unrelated request waits out a deadline set by someone else's 429."""
        add_token(httpx_mock)
        httpx_mock.add_response(method="GET", url=f"{API}/tracks/t1", json={"id": "t1"})
        await client.get_access_token()

        client.state.gate.block_for(5.0)
        await client.get_track("t1")
        assert clock.sleeps == [5.0]

    @pytest.mark.asyncio
    async def test_5xx_retried_then_unavailable(self, client, clock, httpx_mock: HTTPXMock) -> None:
        """Three exponential retries, then UpstreamUnavailableError."""
        add_token(httpx_mock)
        for _ in range(4):
            httpx_mock.add_response(method="GET", url=f"{API}/artists/a1", status_code=503)

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await client.get_artist("a1")
        assert exc_info.value.status_code == 503
        assert clock.sleeps == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_404_not_retried(self, client, httpx_mock: HTTPXMock) -> None:
        """Other 4xx fail immediately with the status attached."""
        add_token(httpx_mock)
        httpx_mock.add_response(method="GET", url=f"{API}/tracks/nope", status_code=404)

        with pytest.raises(ExternalServiceError) as exc_info:
            await client.get_track("nope")
        assert exc_info.value.status_code == 404
        assert not isinstance(exc_info.value, UpstreamUnavailableError)

    @pytest.mark.asyncio
    async def test_network_error_is_unavailable(self, client, httpx_mock: HTTPXMock) -> None:
        """Transport failures become UpstreamUnavailableError."""
        add_token(httpx_mock)
        httpx_mock.add_exception(httpx.ConnectError("refused"), method="GET")

        with pytest.raises(UpstreamUnavailableError):
            await client.get_artist("a1")

    @pytest.mark.asyncio
    async def test_rejected_token_is_not_kept(self, client, httpx_mock: HTTPXMock) -> None:
        """After a 401 the old token is dropped even if the refresh itself fails."""
        add_token(httpx_mock, "old")
        httpx_mock.add_response(method="GET", url=f"{API}/artists/a1", status_code=401)
        httpx_mock.add_response(method="POST", url=TOKEN_URL, status_code=400)

        with pytest.raises(ExternalServiceError):
            await client.get_artist("a1")
        assert client.state.cached_token() is None

    @pytest.mark.asyncio
    async def test_html_body_is_unavailable(self, client, httpx_mock: HTTPXMock) -> None:
        """A 200 that isn't JSON (proxy error page) surfaces with status and excerpt."""
        add_token(httpx_mock)
        httpx_mock.add_response(
            method="GET", url=f"{API}/artists/a1", status_code=200, text="<html>oops</html>"
        )

        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await client.get_artist("a1")
        assert exc_info.value.status_code == 200
        assert "<html>oops" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_token_without_access_token(self, client, httpx_mock: HTTPXMock) -> None:
        """A token payload missing access_token is rejected, not cached."""
        httpx_mock.add_response(method="POST", url=TOKEN_URL, json={"token_type": "Bearer"})

        with pytest.raises(ExternalServiceError):
            await client.get_access_token()
        assert client.state.cached_token() is None

    @pytest.mark.asyncio
    async def test_slow_response_hits_overall_timeout(self, clock) -> None:
        """A response that trickles past request_timeout is cut off as a whole."""

        async def stall(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(1)
            return httpx.Response(200, json={"id": "a1"})

        state = ClientState(clock=clock, sleep=clock.sleep)
        state.store_token("tok-1", 3600)
        spotify = SpotifyClient(
            SpotifySettings(client_id="id", client_secret="secret", request_timeout=0.05),
            state=state,
            transport=httpx.MockTransport(stall),
        )
        try:
            with pytest.raises(UpstreamUnavailableError, match="timed out"):
                await spotify.get_artist("a1")
        finally:
            await spotify.close()

    @pytest.mark.asyncio
    async def test_identical_concurrent_requests_share_one_call(
        self, client, httpx_mock: HTTPXMock
    ) -> None:
        """Two pages asking for the same artist at once cause one upstream GET."""
        add_token(httpx_mock)
        httpx_mock.add_response(method="GET", url=f"{API}/artists/a1", json={"id": "a1"})

        first, second = await asyncio.gather(client.get_artist("a1"), client.get_artist("a1"))
        assert first == second == {"id": "a1"}
        assert len(httpx_mock.get_requests(method="GET")) == 1


class TestCatalogEndpoints:
    """Mapping and pagination of the catalog endpoints."""

    @pytest.mark.asyncio
    async def test_top_tracks_sorted_and_truncated(
        self, client, httpx_mock: HTTPXMock, track_payload
    ) -> None:
        """At most 10 tracks, most popular first, owned by the requested artist."""
        add_token(httpx_mock)
        tracks = [track_payload(f"t{i}", artist_id="other", popularity=i * 5) for i in range(12)]
        httpx_mock.add_response(
            method="GET", url=re.compile(rf"{API}/artists/a1/top-tracks.*"), json={"tracks": tracks}
        )

        result = await client.get_artist_top_tracks("a1")
        assert len(result) == 10
        assert [t.popularity for t in result] == sorted((t.popularity for t in result), reverse=True)
        assert result[0].id == "t11"
        assert all(t.artist_id == "a1" for t in result)

    @pytest.mark.asyncio
    async def test_search_sends_both_types(self, client, httpx_mock: HTTPXMock) -> None:
        """Search asks for artists and tracks with limit 1."""
        add_token(httpx_mock)
        httpx_mock.add_response(method="GET", url=re.compile(rf"{API}/search.*"), json={})

        await client.search("daft punk")
        params = httpx_mock.get_requests(method="GET")[0].url.params
        assert params["q"] == "daft punk"
        assert params["type"] == "artist,track"
        assert params["limit"] == "1"

    @pytest.mark.asyncio
    async def test_artist_tracks_all_paginates_and_dedupes(
        self, client, httpx_mock: HTTPXMock, track_payload
    ) -> None:
        """Follows "next" links, keeps only credited tracks, one entry per id."""
        add_token(httpx_mock)
        httpx_mock.add_response(
            method="GET",
            url=re.compile(rf"{API}/artists/a1/albums\?include_groups.*"),
            json={"items": [{"id": "alb1"}], "next": f"{API}/artists/a1/albums?offset=50"},
        )
        httpx_mock.add_response(
            method="GET",
            url=f"{API}/artists/a1/albums?offset=50",
            json={"items": [{"id": "alb2"}], "next": None},
        )
        httpx_mock.add_response(
            method="GET",
            url=re.compile(rf"{API}/albums/alb1/tracks.*"),
            json={"items": [track_payload("t1", artist_id="a1"), track_payload("t2", artist_id="zz")]},
        )
        httpx_mock.add_response(
            method="GET",
            url=re.compile(rf"{API}/albums/alb2/tracks.*"),
            json={"items": [track_payload("t1", artist_id="a1"), track_payload("t3", artist_id="a1")]},
        )

        tracks = await client.get_artist_tracks_all("a1")
        assert [t["id"] for t in tracks] == ["t1", "t3"]


class TestPayloadMapping:
    """Spotify objects to entities."""

    def test_widest_image_wins(self) -> None:
        images = [
            {"url": "small", "width": 64},
            {"url": "large", "width": 640},
            {"url": "unknown", "width": None},
        ]
        assert top_image(images) == "large"
        assert top_image([]) is None
        assert top_image(None) is None

    def test_artist_mapping(self, artist_payload) -> None:
        artist = artist_from_spotify(artist_payload("a1", name="Mapped", popularity=73))

        assert artist.name == "Mapped"
        assert artist.spi == 73.0
        assert artist.followers == 1000
        assert artist.image_url == "https://i.scdn.co/a1-large"
        assert artist.spotify_url == "https://open.spotify.com/artist/a1"

    def test_track_owner_defaults_to_first_credited_artist(self, track_payload) -> None:
        payload = track_payload("t1", artist_id="a1")

        assert track_from_spotify(payload).artist_id == "a1"
        assert track_from_spotify(payload, artist_id="a9").artist_id == "a9"
        assert track_from_spotify(payload).album == "Test Album"
