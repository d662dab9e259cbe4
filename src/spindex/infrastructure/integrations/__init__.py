"""External integration client implementations."""

from spindex.infrastructure.integrations.client_state import ClientState, SingleFlight
from spindex.infrastructure.integrations.spotify_client import SpotifyClient

__all__ = [
    "ClientState",
    "SingleFlight",
    "SpotifyClient",
]
