"""Turn free-form user input into a (kind, id) catalog reference.

Hey future me - order matters here and the first hit wins:

1. open.spotify.com permalink   -> parsed, no I/O at all
2. spotify:artist:<id> URI       -> parsed, no I/O at all
3. local cache name "contains"   -> one cheap DB query, no upstream call
4. upstream search (limit=1)     -> artist hit beats track hit

If step 4 hits a rate limit or the network is down we try the local cache once
more before giving up. Rate limiting then means "not found"; a network error is
re-raised so the caller can tell the user something is broken.
"""

import logging
import re

from spindex.domain.entities import Artist, EntityKind, LookupResult, Track
from spindex.domain.exceptions import (
    PersistenceUnavailableError,
    RateLimitExceededError,
    UpstreamUnavailableError,
)
from spindex.domain.ports import ICatalogClient
from spindex.infrastructure.persistence import ArtistRepository, Database, TrackRepository

logger = logging.getLogger(__name__)

# Permalinks may carry a locale segment (open.spotify.com/intl-de/artist/...).
SPOTIFY_URL_PATTERN = re.compile(
    r"open\.spotify\.com/(?:intl-[a-zA-Z-]+/)?(?P<kind>artist|track)/(?P<id>[a-zA-Z0-9]+)"
)
SPOTIFY_URI_PATTERN = re.compile(r"spotify:(?P<kind>artist|track):(?P<id>[a-zA-Z0-9]+)")

MIN_LOCAL_LOOKUP_LENGTH = 2


def parse_spotify_reference(text: str) -> LookupResult | None:
    """Parse a Spotify permalink or URI without any I/O."""
    trimmed = text.strip()

    url_match = SPOTIFY_URL_PATTERN.search(trimmed)
    if url_match:
        return LookupResult(
            kind=EntityKind(url_match.group("kind")), id=url_match.group("id"), url=trimmed
        )

    uri_match = SPOTIFY_URI_PATTERN.search(trimmed)
    if uri_match:
        kind = uri_match.group("kind")
        entity_id = uri_match.group("id")
        return LookupResult(
            kind=EntityKind(kind),
            id=entity_id,
            url=f"https://open.spotify.com/{kind}/{entity_id}",
        )
    return None


class Resolver:
    """Resolve user input to an artist or track id."""

    def __init__(self, database: Database, client: ICatalogClient) -> None:
        self._database = database
        self._client = client

    async def resolve_input(
        self, text: str, *, propagate_rate_limit: bool = False
    ) -> LookupResult | None:
        """Resolve input to {kind, id}.

        Args:
            text: URL, URI or free text
            propagate_rate_limit: Raise RateLimitExceededError instead of
                returning None when upstream is rate limited and nothing
                matched locally (the HTTP layer wants a distinct 429)

        Returns:
            Lookup result, or None if nothing matched anywhere

        Raises:
            UpstreamUnavailableError: Search failed for a non-rate-limit reason
                and nothing matched locally
            ExternalServiceError: Upstream rejected the search
        """
        trimmed = text.strip()
        if not trimmed:
            return None

        parsed = parse_spotify_reference(trimmed)
        if parsed is not None:
            return parsed

        if len(trimmed) >= MIN_LOCAL_LOOKUP_LENGTH:
            local = await self._lookup_local(trimmed)
            if local is not None:
                logger.debug(f"Resolved '{trimmed}' from local cache: {local.kind.value}")
                return local

        try:
            response = await self._client.search(trimmed, limit=1)
        except (RateLimitExceededError, UpstreamUnavailableError) as exc:
            logger.warning(
                f"Search for '{trimmed}' failed ({type(exc).__name__}), retrying local cache"
            )
            local = await self._lookup_local(trimmed)
            if local is not None:
                return local
            if isinstance(exc, RateLimitExceededError) and not propagate_rate_limit:
                return None
            raise

        artists = (response.get("artists") or {}).get("items") or []
        if artists and artists[0]:
            hit = artists[0]
            return LookupResult(
                kind=EntityKind.ARTIST,
                id=hit["id"],
                url=(hit.get("external_urls") or {}).get("spotify"),
            )

        tracks = (response.get("tracks") or {}).get("items") or []
        if tracks and tracks[0]:
            hit = tracks[0]
            return LookupResult(
                kind=EntityKind.TRACK,
                id=hit["id"],
                url=(hit.get("external_urls") or {}).get("spotify"),
            )
        return None

    async def _lookup_local(self, text: str) -> LookupResult | None:
        try:
            async with self._database.session_scope() as session:
                artist: Artist | None = await ArtistRepository(session).find_by_name_contains(
                    text
                )
                if artist is not None:
                    return LookupResult(kind=EntityKind.ARTIST, id=artist.id)
                track: Track | None = await TrackRepository(session).find_by_name_contains(text)
                if track is not None:
                    return LookupResult(kind=EntityKind.TRACK, id=track.id)
        except PersistenceUnavailableError:
            logger.warning("Local lookup skipped, database unavailable", exc_info=True)
        return None
