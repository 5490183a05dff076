"""Upstream API response dataclasses: broadcast metadata and stream source.

WHY: The upstream GraphQL/REST responses are deeply nested dicts. The core
only needs a handful of fields, and it needs them as an immutable snapshot
per refresh cycle. Typed dataclasses make that snapshot explicit.

HOW: Each dataclass has a from_dict() factory that digs the needed fields
out of the raw payload. Missing optional fields become None rather than
raising, since the upstream omits them freely (e.g. ended_at while live).

RULES:
- BroadcastMetadata is frozen; a refresh produces a new instance
- Times are epoch milliseconds (ints); ended_at is None until ended
- Unknown upstream states map to PENDING
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Dict, Optional


class BroadcastState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    ENDED = "ended"

    @classmethod
    def from_upstream(cls, value: Optional[str]) -> "BroadcastState":
        """Map upstream state strings ("Running", "Ended", ...) to a state."""
        normalized = (value or "").strip().lower()
        if normalized == "running":
            return cls.RUNNING
        if normalized in ("ended", "timedout"):
            return cls.ENDED
        return cls.PENDING


def _to_ms(value: Any) -> Optional[int]:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class BroadcastMetadata:
    """Snapshot of one broadcast's metadata.

    RULES:
    - broadcast_id: upstream rest_id of the broadcast
    - host_*: creator fields, empty strings when the creator is hidden
    - media_key: opaque key used to resolve the live stream source
    """

    broadcast_id: str
    state: BroadcastState
    title: str = ""
    host_screen_name: str = ""
    host_display_name: str = ""
    host_avatar_url: str = ""
    media_key: str = ""
    created_at: Optional[int] = None
    started_at: Optional[int] = None
    ended_at: Optional[int] = None

    @property
    def reference_time(self) -> Optional[int]:
        """started_at, falling back to created_at for never-started broadcasts."""
        return self.started_at or self.created_at

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BroadcastMetadata":
        """Parse the ``audioSpace`` object of an AudioSpaceById response.

        Accepts either the ``audioSpace`` object itself or its
        ``metadata`` child.
        """
        metadata = data.get("metadata", data) or {}
        # creator_results is null for hidden or suspended hosts
        creator = (metadata.get("creator_results") or {}).get("result") or {}
        legacy = creator.get("legacy") or {}
        return cls(
            broadcast_id=str(metadata.get("rest_id", "")),
            state=BroadcastState.from_upstream(metadata.get("state")),
            title=metadata.get("title") or "",
            host_screen_name=legacy.get("screen_name") or "",
            host_display_name=legacy.get("name") or "",
            host_avatar_url=legacy.get("profile_image_url_https") or "",
            media_key=metadata.get("media_key") or "",
            created_at=_to_ms(metadata.get("created_at")),
            started_at=_to_ms(metadata.get("started_at")),
            ended_at=_to_ms(metadata.get("ended_at")),
        )


@dataclass(frozen=True)
class LiveStreamSource:
    """Resolved dynamic playlist location and the auxiliary chat token."""

    location: str
    chat_token: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LiveStreamSource":
        source = data.get("source") or {}
        location = source.get("location") or source.get("noRedirectPlaybackUrl") or ""
        return cls(location=location, chat_token=data.get("chatToken") or "")
