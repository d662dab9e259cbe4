"""Domain ports (interfaces) for external collaborators."""

from abc import ABC, abstractmethod
from typing import Any

from spindex.domain.entities import Track


class ICatalogClient(ABC):
    """Port for the upstream music catalog API.

    Implementations own authentication, retry/backoff and request
    de-duplication. Every method raises on failure; none returns a partial
    result silently.
    """

    @abstractmethod
    async def get_access_token(self, force_refresh: bool = False) -> str:
        """
        Get a bearer token, fetching a new one when missing or expired.

        Args:
            force_refresh: Ignore the cached token

        Returns:
            Access token string
        """
        pass

    @abstractmethod
    async def get_artist(self, artist_id: str) -> dict[str, Any]:
        """
        Get a single artist.

        Args:
            artist_id: Upstream artist id

        Returns:
            Raw artist object
        """
        pass

    @abstractmethod
    async def get_track(self, track_id: str) -> dict[str, Any]:
        """
        Get a single track.

        Args:
            track_id: Upstream track id

        Returns:
            Raw track object (with album and artists)
        """
        pass

    @abstractmethod
    async def search(self, query: str, limit: int = 1) -> dict[str, Any]:
        """
        Search artists and tracks.

        Args:
            query: Free text
            limit: Max hits per type

        Returns:
            Raw search response with "artists" and "tracks" pages
        """
        pass

    @abstractmethod
    async def get_artist_top_tracks(self, artist_id: str) -> list[Track]:
        """Get an artist's top tracks, most popular first (at most 10)."""
        pass

    @abstractmethod
    async def get_artist_tracks_all(self, artist_id: str) -> list[dict[str, Any]]:
        """Get every track credited to an artist across its discography."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release network resources."""
        pass


__all__ = ["ICatalogClient"]
