"""Typed lifecycle events published by the broadcast tracker.

WHY: Downstream consumers (the Slack notifier, the HTTP feed) react to a
small set of transitions. Publishing typed, immutable events on a queue
keeps the tracker free of notifier calls and of listener ordering rules.

RULES:
- Events are frozen snapshots; consumers must not need the tracker
- BroadcastLive is published once per watch, on the first RUNNING refresh
- CaptureCompleted is published only when at least one phrase was found
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Tuple, Union

from space_capture.api.models import BroadcastMetadata
from space_capture.core.captions import CaptionPhrase
from space_capture.core.job import CaptureMode


@dataclass(frozen=True)
class BroadcastLive:
    metadata: BroadcastMetadata


@dataclass(frozen=True)
class PlaylistResolved:
    """The dynamic playlist was resolved; master_playlist_url is shareable."""

    metadata: BroadcastMetadata
    master_playlist_url: str


@dataclass(frozen=True)
class CaptureCompleted:
    metadata: BroadcastMetadata
    master_playlist_url: str
    mode: CaptureMode
    audio_path: Optional[Path]
    phrases: Tuple[CaptionPhrase, ...]


WatchEvent = Union[BroadcastLive, PlaylistResolved, CaptureCompleted]


class Notifier(Protocol):
    """Anything that delivers a WatchEvent downstream (blocking call)."""

    def notify(self, event: WatchEvent) -> None: ...
