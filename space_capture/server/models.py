"""Pydantic request/response models for the HTTP API.

WHY: The FastAPI endpoints need typed schemas for request validation,
response serialization, and the generated /docs page.

RULES:
- All models use Field(description=...) for OpenAPI documentation
- Status values come from the core enums (single source of truth)
- Response models never expose trackers, tasks or file system paths
  beyond the artifact file name
"""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class WatchRequest(BaseModel):
    """Optional body for POST /broadcasts/{broadcast_id}.

    RULES:
    - url overrides monitoring: the given playlist is captured directly
    - force finalizes immediately, even while the broadcast is live
    """

    url: Optional[str] = Field(
        default=None,
        description="Playlist URL to capture directly instead of monitoring the broadcast.",
    )
    force: bool = Field(
        default=False,
        description="Capture immediately, without waiting for the broadcast to end.",
    )


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class CaptureSummary(BaseModel):
    """One finished capture job of a watch."""

    job_id: str = Field(description="Unique capture job identifier.")
    mode: str = Field(description="Capture mode: 'preview' or 'final'.")
    stages: Dict[str, str] = Field(description="Stage name to stage status.")
    phrase_count: int = Field(description="Number of phrases in the annotation feed.")
    audio_file: Optional[str] = Field(default=None, description="Audio artifact file name.")
    error: Optional[str] = Field(default=None, description="Failure detail, if a stage failed.")


class BroadcastResponse(BaseModel):
    """Status of one watched broadcast.

    RULES:
    - status is the watch status (starting ... done, cancelled, failed)
    - state is the last observed broadcast state (pending, running, ended)
    """

    broadcast_id: str = Field(description="Upstream broadcast identifier.")
    status: str = Field(description="Current watch status.")
    state: Optional[str] = Field(default=None, description="Last observed broadcast state.")
    title: Optional[str] = Field(default=None, description="Broadcast title.")
    host: Optional[str] = Field(default=None, description="Host screen name.")
    playlist_url: Optional[str] = Field(default=None, description="Master playlist URL.")
    watermark: Optional[int] = Field(
        default=None, description="Highest chunk index seen on the live playlist."
    )
    created_at: float = Field(description="Watch start timestamp (Unix epoch seconds).")
    finished_at: Optional[float] = Field(
        default=None, description="Watch end timestamp (Unix epoch seconds)."
    )
    error: Optional[str] = Field(default=None, description="Error message if the watch failed.")
    captures: List[CaptureSummary] = Field(
        default_factory=list, description="Finished capture jobs, oldest first."
    )

    model_config = {"json_schema_extra": {
        "examples": [
            {
                "broadcast_id": "1YqKDqWqdPLJV",
                "status": "monitoring",
                "state": "running",
                "title": "Weekly community call",
                "host": "example",
                "playlist_url": "https://prod-fastly-us-east-1.video.pscp.tv/Transcoding/v1/hls/abc/non_transcode/us-east-1/periscope-replay-direct-prod-us-east-1-public/audio-space/master_playlist.m3u8",
                "watermark": 42,
                "created_at": 1739959200.0,
                "finished_at": None,
                "error": None,
                "captures": [],
            }
        ]
    }}


class PhraseResponse(BaseModel):
    timestamp_ms: int = Field(description="Offset of the phrase from the broadcast start.")
    timestamp: str = Field(description="Offset formatted as HH:MM:SS.")
    text: str = Field(description="Cleaned caption text.")
    tags: List[str] = Field(description="Keyword tags matched in this phrase.")
    markup: Optional[str] = Field(
        default=None, description="Caption text with matched keywords rendered."
    )


class PhraseFeedResponse(BaseModel):
    """Annotation feed of the latest successful capture."""

    broadcast_id: str = Field(description="Upstream broadcast identifier.")
    job_id: str = Field(description="Capture job the phrases came from.")
    mode: str = Field(description="Capture mode: 'preview' or 'final'.")
    phrases: List[PhraseResponse] = Field(description="Phrases in cue order.")


class ErrorResponse(BaseModel):
    """Standard error response body."""

    detail: str = Field(description="Human-readable error description.")


class HealthResponse(BaseModel):
    status: str = Field(description="Service health status.", json_schema_extra={"example": "ok"})
    version: str = Field(description="API version string.", json_schema_extra={"example": "0.1.0"})
    watches: int = Field(description="Number of active watches.")
