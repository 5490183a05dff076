"""Upstream API client package: broadcast metadata, stream sources, playlists.

WHY: The watch loop needs metadata snapshots and playlist text, with
failures sorted into "retry later", "credential expired" and "stream gone".

HOW: BroadcastApiClient wraps httpx.AsyncClient; responses are parsed into
the frozen dataclasses in models.py.

RULES:
- All upstream HTTP goes through BroadcastApiClient
- Playlist 404 is a lifecycle signal (StreamUnavailable), not an error
"""

from space_capture.api.client import (
    AuthExpiredError,
    BroadcastApiClient,
    FetchError,
    GuestTokenCredentials,
    StreamUnavailable,
    TransientFetchError,
)
from space_capture.api.models import BroadcastMetadata, BroadcastState, LiveStreamSource

__all__ = [
    "AuthExpiredError",
    "BroadcastApiClient",
    "BroadcastMetadata",
    "BroadcastState",
    "FetchError",
    "GuestTokenCredentials",
    "LiveStreamSource",
    "StreamUnavailable",
    "TransientFetchError",
]
