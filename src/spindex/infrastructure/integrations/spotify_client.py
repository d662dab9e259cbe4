"""Spotify Web API client using the client-credentials flow."""

import asyncio
import base64
import json
import logging
from typing import Any

import httpx

from spindex.config.settings import SpotifySettings
from spindex.domain.entities import Artist, Track, calculate_spi
from spindex.domain.exceptions import (
    ConfigurationError,
    ExternalServiceError,
    RateLimitExceededError,
    UpstreamUnavailableError,
)
from spindex.domain.ports import ICatalogClient
from spindex.infrastructure.integrations.client_state import ClientState
from spindex.infrastructure.rate_limiter import RetryPolicy, parse_retry_after

logger = logging.getLogger(__name__)

TOP_TRACKS_LIMIT = 10
ALBUM_PAGE_SIZE = 50
ALBUM_FETCH_CONCURRENCY = 5
ALBUM_INCLUDE_GROUPS = "album,single,compilation,appears_on"


def top_image(images: list[dict[str, Any]] | None) -> str | None:
    """Pick the widest image URL from a Spotify images array."""
    if not images:
        return None
    best = max(images, key=lambda image: image.get("width") or 0)
    return best.get("url")


# Listen up, a 200 is not proof of JSON: a proxy or captive portal in front of Spotify can answer
# with an HTML page. That is transient from our side, so it maps to UpstreamUnavailableError like
# any other bad gateway and the callers fall back to cached data.
def _json_body(response: httpx.Response, what: str) -> Any:
    """Decode a JSON response body or raise UpstreamUnavailableError."""
    try:
        return response.json()
    except ValueError as exc:
        excerpt = response.text[:120].replace("\n", " ")
        raise UpstreamUnavailableError(
            f"Spotify returned a non-JSON body for {what} ({response.status_code}): {excerpt!r}",
            status_code=response.status_code,
        ) from exc


def artist_from_spotify(data: dict[str, Any]) -> Artist:
    """Map a Spotify artist object to an Artist entity."""
    popularity = int(data.get("popularity") or 0)
    return Artist(
        id=data["id"],
        name=data.get("name") or "",
        popularity=popularity,
        spi=calculate_spi(popularity),
        image_url=top_image(data.get("images")),
        spotify_url=(data.get("external_urls") or {}).get("spotify"),
        genres=list(data.get("genres") or []),
        followers=int((data.get("followers") or {}).get("total") or 0),
    )


# Hey future me - the owning artist is whoever the caller says it is (we fetched the track
# FOR that artist), otherwise the first credited artist. Features/collabs list several.
def track_from_spotify(data: dict[str, Any], artist_id: str | None = None) -> Track:
    """Map a Spotify track object to a Track entity."""
    album = data.get("album") or {}
    artists = data.get("artists") or []
    owner = artist_id or (artists[0].get("id") if artists else None)
    popularity = int(data.get("popularity") or 0)
    return Track(
        id=data["id"],
        name=data.get("name") or "",
        artist_id=owner,
        album=album.get("name"),
        image_url=top_image(album.get("images")),
        preview_url=data.get("preview_url"),
        spotify_url=(data.get("external_urls") or {}).get("spotify"),
        duration_ms=int(data.get("duration_ms") or 0),
        popularity=popularity,
        spi=calculate_spi(popularity),
    )


class SpotifyClient(ICatalogClient):
    """HTTP client for the Spotify catalog with retry, backoff and request de-duplication."""

    # Hey future me, this init is deceptively simple - we DON'T create the HTTP client here
    # because we need to be async-friendly. The actual client gets lazy-loaded in _get_client().
    # `transport` exists for tests (httpx.MockTransport); production leaves it None.
    def __init__(
        self,
        settings: SpotifySettings,
        state: ClientState | None = None,
        retry_policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize Spotify client.

        Args:
            settings: Spotify configuration settings
            state: Shared token/rate-limit/in-flight state (one per process)
            retry_policy: Backoff configuration
            transport: Optional httpx transport override
        """
        self.settings = settings
        self.state = state or ClientState()
        self.retry_policy = retry_policy or RetryPolicy()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.settings.request_timeout, transport=self._transport
            )
        return self._client

    # Hey, this close() is IMPORTANT - if you don't call it, you'll leak connections and
    # eventually run out of file descriptors. lifecycle.py calls it on shutdown.
    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def get_access_token(self, force_refresh: bool = False) -> str:
        """
        Get an app access token via client credentials.

        Concurrent callers share a single token request.

        Args:
            force_refresh: Ignore the cached token (used after a 401)

        Returns:
            Bearer token

        Raises:
            ConfigurationError: If client id/secret are not configured
            UpstreamUnavailableError: If the token endpoint is unreachable
            ExternalServiceError: If the token endpoint rejects the request
        """
        if not force_refresh:
            cached = self.state.cached_token()
            if cached is not None:
                return cached
        return await self.state.token_requests.do("client_credentials", self._fetch_token)

    async def _fetch_token(self) -> str:
        if not self.settings.is_configured:
            raise ConfigurationError(
                "Spotify credentials are not configured. "
                "Set SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET in your environment."
            )

        credentials = base64.b64encode(
            f"{self.settings.client_id}:{self.settings.client_secret}".encode()
        ).decode("ascii")

        client = await self._get_client()
        try:
            response = await asyncio.wait_for(
                client.post(
                    self.settings.token_url,
                    data={"grant_type": "client_credentials"},
                    headers={"Authorization": f"Basic {credentials}"},
                ),
                timeout=self.settings.request_timeout,
            )
        except (httpx.TransportError, TimeoutError) as exc:
            raise UpstreamUnavailableError(
                f"Spotify token endpoint unreachable: {exc}"
            ) from exc

        if response.status_code >= 500:
            raise UpstreamUnavailableError(
                f"Spotify token endpoint failed: {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code != 200:
            raise ExternalServiceError(
                f"Failed to get Spotify access token: {response.status_code}",
                status_code=response.status_code,
            )

        payload = _json_body(response, "token request")
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise ExternalServiceError(
                "Spotify token response has no access_token", status_code=response.status_code
            )
        token = self.state.store_token(
            payload["access_token"], float(payload.get("expires_in", 3600))
        )
        logger.debug("Fetched new Spotify app token")
        return token.value

    # Hey future me - CENTRALIZED API REQUEST! Every Spotify call goes through here.
    # Identical concurrent requests (same method + path + params) share ONE network call via
    # the state's SingleFlight. Retries live inside the shared call, so joiners see the final
    # outcome instead of each retrying on their own.
    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Make an authenticated API request.

        Args:
            method: HTTP method
            path: Path relative to the API base URL, or an absolute URL
                (pagination "next" links)
            params: Query parameters

        Returns:
            Decoded JSON body

        Raises:
            RateLimitExceededError: 429 persisted through every retry
            UpstreamUnavailableError: Network failure, timeout or 5xx after retries
            ExternalServiceError: Any other non-success status
        """
        key = f"{method.upper()}:{path}:{json.dumps(params or {}, sort_keys=True)}"
        return await self.state.requests.do(
            key, lambda: self._send(method.upper(), path, params)
        )

    async def _send(
        self, method: str, path: str, params: dict[str, Any] | None
    ) -> Any:
        client = await self._get_client()
        url = path if path.startswith("http") else f"{self.settings.api_base_url}{path}"
        policy = self.retry_policy

        token = await self.get_access_token()
        auth_retried = False
        rate_limit_attempt = 0
        server_error_attempt = 0

        while True:
            # Global throttle: wait out any deadline set by ANY request's 429.
            await self.state.gate.wait()

            # httpx applies request_timeout to each phase (connect, read, write, pool) on its own;
            # wait_for caps the whole attempt at the same budget.
            try:
                response = await asyncio.wait_for(
                    client.request(
                        method,
                        url,
                        params=params,
                        headers={"Authorization": f"Bearer {token}"},
                    ),
                    timeout=self.settings.request_timeout,
                )
            except (httpx.TimeoutException, TimeoutError) as exc:
                raise UpstreamUnavailableError(
                    f"Spotify API request timed out: {method} {path}"
                ) from exc
            except httpx.TransportError as exc:
                raise UpstreamUnavailableError(
                    f"Spotify API unreachable: {method} {path}: {exc}"
                ) from exc

            status = response.status_code

            if status == 401 and not auth_retried:
                logger.info("Spotify token rejected (401), refreshing once")
                auth_retried = True
                self.state.clear_token()
                token = await self.get_access_token(force_refresh=True)
                continue

            if status == 429:
                retry_after = parse_retry_after(response.headers.get("Retry-After"))
                if rate_limit_attempt >= policy.max_rate_limit_retries:
                    logger.error(
                        f"Spotify rate limit persisted after {rate_limit_attempt} retries: "
                        f"{method} {path}"
                    )
                    raise RateLimitExceededError(
                        retry_after=retry_after or self.state.gate.remaining() or None
                    )
                delay = policy.rate_limit_delay(rate_limit_attempt, retry_after)
                rate_limit_attempt += 1
                self.state.gate.block_for(delay)
                logger.warning(
                    f"Spotify 429 Rate Limit (attempt {rate_limit_attempt}/"
                    f"{policy.max_rate_limit_retries}): backing off {delay:.1f}s for {path}"
                )
                continue

            if status >= 500:
                if server_error_attempt < policy.max_server_error_retries:
                    delay = policy.server_error_delay(server_error_attempt)
                    server_error_attempt += 1
                    logger.warning(
                        f"Spotify {status} (attempt {server_error_attempt}/"
                        f"{policy.max_server_error_retries}): retrying {path} in {delay:.1f}s"
                    )
                    await self.state.sleep(delay)
                    continue
                raise UpstreamUnavailableError(
                    f"Spotify API error {status}: {method} {path}", status_code=status
                )

            if status >= 400:
                raise ExternalServiceError(
                    f"Spotify API error {status}: {method} {path}", status_code=status
                )

            self.state.gate.reset()
            return _json_body(response, f"{method} {path}")

    async def get_artist(self, artist_id: str) -> dict[str, Any]:
        """
        Get artist details.

        Args:
            artist_id: Spotify artist ID

        Returns:
            Artist object
        """
        result: dict[str, Any] = await self.request("GET", f"/artists/{artist_id}")
        return result

    async def get_track(self, track_id: str) -> dict[str, Any]:
        """
        Get track details.

        Args:
            track_id: Spotify track ID

        Returns:
            Track object
        """
        result: dict[str, Any] = await self.request("GET", f"/tracks/{track_id}")
        return result

    async def search(self, query: str, limit: int = 1) -> dict[str, Any]:
        """
        Search artists and tracks in one call.

        Args:
            query: Free text
            limit: Max hits per type

        Returns:
            Search response with "artists" and "tracks" pages
        """
        result: dict[str, Any] = await self.request(
            "GET",
            "/search",
            params={
                "q": query,
                "type": "artist,track",
                "limit": limit,
                "market": self.settings.market,
            },
        )
        return result

    async def get_artist_top_tracks(self, artist_id: str) -> list[Track]:
        """
        Get an artist's top tracks.

        Args:
            artist_id: Spotify artist ID

        Returns:
            Up to 10 tracks owned by artist_id, most popular first
        """
        data = await self.request(
            "GET",
            f"/artists/{artist_id}/top-tracks",
            params={"market": self.settings.market},
        )
        tracks = [
            track_from_spotify(item, artist_id=artist_id)
            for item in data.get("tracks") or []
            if item and item.get("id")
        ]
        tracks.sort(key=lambda track: track.popularity, reverse=True)
        return tracks[:TOP_TRACKS_LIMIT]

    async def _paginate(
        self, path: str, params: dict[str, Any] | None
    ) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        next_path: str | None = path
        next_params = params
        while next_path:
            page = await self.request("GET", next_path, params=next_params)
            items.extend(item for item in page.get("items") or [] if item)
            next_path = page.get("next")
            # "next" is an absolute URL that already carries the query string
            next_params = None
        return items

    async def get_artist_albums(self, artist_id: str) -> list[dict[str, Any]]:
        """Get every album, single, compilation and appearance of an artist."""
        return await self._paginate(
            f"/artists/{artist_id}/albums",
            {
                "include_groups": ALBUM_INCLUDE_GROUPS,
                "limit": ALBUM_PAGE_SIZE,
                "market": self.settings.market,
            },
        )

    async def get_album_tracks(self, album_id: str) -> list[dict[str, Any]]:
        """Get the (simplified) tracks of an album."""
        return await self._paginate(
            f"/albums/{album_id}/tracks",
            {"limit": ALBUM_PAGE_SIZE, "market": self.settings.market},
        )

    # Yo, this can be a LOT of requests for prolific artists (appears_on alone can be hundreds of
    # albums). We fetch album tracks 5 at a time so we don't trip the rate limit on our own.
    async def get_artist_tracks_all(self, artist_id: str) -> list[dict[str, Any]]:
        """
        Get every track credited to an artist across its discography.

        Args:
            artist_id: Spotify artist ID

        Returns:
            Simplified track objects, de-duplicated by id, in album order
        """
        albums = await self.get_artist_albums(artist_id)
        album_ids = list(dict.fromkeys(album["id"] for album in albums if album.get("id")))

        tracks: dict[str, dict[str, Any]] = {}
        for start in range(0, len(album_ids), ALBUM_FETCH_CONCURRENCY):
            chunk = album_ids[start : start + ALBUM_FETCH_CONCURRENCY]
            pages = await asyncio.gather(*(self.get_album_tracks(aid) for aid in chunk))
            for album_tracks in pages:
                for track in album_tracks:
                    track_id = track.get("id")
                    credited = any(
                        artist.get("id") == artist_id
                        for artist in track.get("artists") or []
                    )
                    if track_id and credited and track_id not in tracks:
                        tracks[track_id] = track
        return list(tracks.values())


__all__ = [
    "SpotifyClient",
    "artist_from_spotify",
    "top_image",
    "track_from_spotify",
]
