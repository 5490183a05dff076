"""FastAPI application exposing broadcast watches over HTTP.

WHY: Operators (and tools like n8n or curl) need to start and cancel
watches, see where each broadcast is in its lifecycle, and fetch the
annotation feed and audio once a capture finished, without shell access
to the host running the watcher.

HOW: create_app() builds the FastAPI app. Its lifespan opens one
BroadcastApiClient, builds the CapturePipeline and WatchSupervisor from
load_config(), starts the periodic cleanup task and, when Slack is
configured, the event dispatcher. Tests pass a ready supervisor (and
optionally a notifier) instead. Routes reach the supervisor through
request.app.state.

RULES:
- All endpoints have OpenAPI descriptions and a shared ErrorResponse schema
- POST /broadcasts/{id} answers 202 immediately; the watch runs as a task
- A second POST for an actively watched broadcast answers 409
- Broadcast ids are restricted to [A-Za-z0-9_-] (they end up in file names)
- The supervisor is shut down with the app only if the app created it
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
from contextlib import AsyncExitStack, asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import FileResponse, Response

from space_capture import __version__
from space_capture.core.captions import format_timestamp
from space_capture.core.events import Notifier
from space_capture.core.job import CaptureJob, Stage, StageStatus
from space_capture.core.pipeline import summarize_stages
from space_capture.core.supervisor import WatchRecord, WatchSupervisor
from space_capture.server.models import (
    BroadcastResponse,
    CaptureSummary,
    ErrorResponse,
    HealthResponse,
    PhraseFeedResponse,
    PhraseResponse,
    WatchRequest,
)

logger = logging.getLogger(__name__)

CLEANUP_INTERVAL_S = 300

_BROADCAST_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")

router = APIRouter()


# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------


async def _periodic_cleanup(supervisor: WatchSupervisor) -> None:
    """Drop expired watch records every 5 minutes."""
    while True:
        await asyncio.sleep(CLEANUP_INTERVAL_S)
        supervisor.cleanup_expired()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build (or adopt) the supervisor, start background tasks, tear down on exit."""
    async with AsyncExitStack() as stack:
        owned = app.state.supervisor is None
        if owned:
            app.state.supervisor = await _build_supervisor(stack)
            if app.state.notifier is None and os.environ.get("SLACK_BOT_TOKEN"):
                from space_capture.slack.notifier import SlackNotifier

                app.state.notifier = SlackNotifier.from_env()

        supervisor: WatchSupervisor = app.state.supervisor
        tasks = [asyncio.create_task(_periodic_cleanup(supervisor))]
        notifier: Optional[Notifier] = app.state.notifier
        if notifier is not None:
            tasks.append(asyncio.create_task(supervisor.dispatch_events(notifier.notify)))

        yield

        for task in tasks:
            task.cancel()
        await asyncio.wait(tasks)
        if owned:
            await supervisor.shutdown()


async def _build_supervisor(stack: AsyncExitStack) -> WatchSupervisor:
    from space_capture.api.client import BroadcastApiClient, GuestTokenCredentials
    from space_capture.config import load_config
    from space_capture.core.pipeline import CapturePipeline

    config = load_config()
    client = await stack.enter_async_context(BroadcastApiClient(GuestTokenCredentials()))
    return WatchSupervisor(client, CapturePipeline.from_config(config), config)


def create_app(
    supervisor: Optional[WatchSupervisor] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    """Create the FastAPI app.

    RULES:
    - supervisor=None → the lifespan builds one from the environment
    - notifier=None → Slack is used when SLACK_BOT_TOKEN is set (owned
      supervisor only), otherwise events are left on the queue
    """
    app = FastAPI(
        lifespan=lifespan,
        title="Space Capture API",
        description=(
            "Watch live audio broadcasts, capture them once they end, and "
            "read the keyword annotation feed of each capture. Start a watch, "
            "poll its status, and download the audio when it is done."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.supervisor = supervisor
    app.state.notifier = notifier
    app.include_router(router)
    return app


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def get_supervisor(request: Request) -> WatchSupervisor:
    return request.app.state.supervisor


def _validate_broadcast_id(broadcast_id: str) -> None:
    if not _BROADCAST_ID_RE.match(broadcast_id):
        raise HTTPException(status_code=400, detail="Invalid broadcast id")


def _get_record(supervisor: WatchSupervisor, broadcast_id: str) -> WatchRecord:
    _validate_broadcast_id(broadcast_id)
    record = supervisor.get(broadcast_id)
    if record is None:
        raise HTTPException(
            status_code=404, detail="Broadcast not watched: {}".format(broadcast_id)
        )
    return record


def _capture_summary(job: CaptureJob) -> CaptureSummary:
    return CaptureSummary(
        job_id=job.job_id,
        mode=job.mode.value,
        stages=summarize_stages(job),
        phrase_count=len(job.phrases),
        audio_file=job.audio_path.name if job.audio_path else None,
        error=job.error,
    )


def _record_to_response(record: WatchRecord) -> BroadcastResponse:
    """Convert a WatchRecord to a BroadcastResponse."""
    tracker = record.tracker
    metadata = tracker.metadata
    monitor = tracker.monitor
    return BroadcastResponse(
        broadcast_id=record.broadcast_id,
        status=record.status.value,
        state=metadata.state.value if metadata else None,
        title=metadata.title if metadata else None,
        host=metadata.host_screen_name if metadata else None,
        playlist_url=tracker.master_playlist_url or None,
        watermark=monitor.watermark if monitor else None,
        created_at=record.created_at,
        finished_at=record.finished_at,
        error=record.error,
        captures=[_capture_summary(job) for job in tracker.captures],
    )


def _latest_completed(record: WatchRecord) -> Optional[CaptureJob]:
    for job in reversed(record.tracker.captures):
        if job.completed:
            return job
    return None


def _latest_audio(record: WatchRecord) -> Optional[Path]:
    for job in reversed(record.tracker.captures):
        if job.status(Stage.EXTRACTION) is not StageStatus.COMPLETE:
            continue
        if job.audio_path is not None and job.audio_path.exists():
            return job.audio_path
    return None


# ---------------------------------------------------------------------------
# Endpoints: Broadcasts
# ---------------------------------------------------------------------------


@router.get(
    "/broadcasts",
    response_model=List[BroadcastResponse],
    tags=["broadcasts"],
    summary="List watched broadcasts",
    description="All active watches and finished watches that have not expired yet, oldest first.",
)
async def list_broadcasts(
    supervisor: WatchSupervisor = Depends(get_supervisor),
) -> List[BroadcastResponse]:
    return [_record_to_response(record) for record in supervisor.list()]


@router.post(
    "/broadcasts/{broadcast_id}",
    response_model=BroadcastResponse,
    status_code=202,
    tags=["broadcasts"],
    summary="Start watching a broadcast",
    description=(
        "Starts a watch in the background and returns immediately. With 'url' "
        "the given playlist is captured directly; with 'force' the broadcast "
        "is captured right away even if it is still live."
    ),
    responses={
        400: {"model": ErrorResponse, "description": "Invalid broadcast id"},
        409: {"model": ErrorResponse, "description": "Broadcast already watched"},
        429: {"model": ErrorResponse, "description": "Too many concurrent watches"},
    },
)
async def start_watch(
    broadcast_id: str,
    body: Optional[WatchRequest] = None,
    supervisor: WatchSupervisor = Depends(get_supervisor),
) -> BroadcastResponse:
    _validate_broadcast_id(broadcast_id)
    body = body or WatchRequest()

    existing = supervisor.get(broadcast_id)
    if existing is not None and existing.active:
        raise HTTPException(
            status_code=409,
            detail="Broadcast {} is already being watched".format(broadcast_id),
        )
    if body.force:
        logger.warning("Forced capture requested for broadcast %s", broadcast_id)

    try:
        record = supervisor.start(broadcast_id, capture_target=body.url, force=body.force)
    except ValueError as exc:
        raise HTTPException(status_code=429, detail=str(exc))
    return _record_to_response(record)


@router.get(
    "/broadcasts/{broadcast_id}",
    response_model=BroadcastResponse,
    tags=["broadcasts"],
    summary="Get watch status",
    responses={
        404: {"model": ErrorResponse, "description": "Broadcast not watched"},
    },
)
async def get_broadcast(
    broadcast_id: str,
    supervisor: WatchSupervisor = Depends(get_supervisor),
) -> BroadcastResponse:
    return _record_to_response(_get_record(supervisor, broadcast_id))


@router.delete(
    "/broadcasts/{broadcast_id}",
    status_code=204,
    tags=["broadcasts"],
    summary="Cancel a watch",
    description="Cancels the watch and any live preview capture it started.",
    responses={
        404: {"model": ErrorResponse, "description": "Broadcast not watched"},
        409: {"model": ErrorResponse, "description": "Watch already finished"},
    },
)
async def cancel_watch(
    broadcast_id: str,
    supervisor: WatchSupervisor = Depends(get_supervisor),
) -> Response:
    _get_record(supervisor, broadcast_id)
    if not supervisor.cancel(broadcast_id):
        raise HTTPException(status_code=409, detail="Watch already finished")
    return Response(status_code=204)


@router.get(
    "/broadcasts/{broadcast_id}/phrases",
    response_model=PhraseFeedResponse,
    tags=["broadcasts"],
    summary="Get the annotation feed",
    description=(
        "Phrases of the most recent successful capture. The list is empty "
        "when no keyword was detected."
    ),
    responses={
        404: {"model": ErrorResponse, "description": "Broadcast not watched or no capture yet"},
    },
)
async def get_phrases(
    broadcast_id: str,
    supervisor: WatchSupervisor = Depends(get_supervisor),
) -> PhraseFeedResponse:
    record = _get_record(supervisor, broadcast_id)
    job = _latest_completed(record)
    if job is None:
        raise HTTPException(status_code=404, detail="No completed capture yet")
    return PhraseFeedResponse(
        broadcast_id=broadcast_id,
        job_id=job.job_id,
        mode=job.mode.value,
        phrases=[
            PhraseResponse(
                timestamp_ms=p.timestamp_ms,
                timestamp=format_timestamp(p.timestamp_ms),
                text=p.text,
                tags=list(p.tags),
                markup=p.markup,
            )
            for p in job.phrases
        ],
    )


@router.get(
    "/broadcasts/{broadcast_id}/audio",
    tags=["broadcasts"],
    summary="Download the latest audio artifact",
    responses={
        404: {"model": ErrorResponse, "description": "Broadcast not watched or no audio yet"},
    },
)
async def download_audio(
    broadcast_id: str,
    supervisor: WatchSupervisor = Depends(get_supervisor),
) -> FileResponse:
    record = _get_record(supervisor, broadcast_id)
    audio_path = _latest_audio(record)
    if audio_path is None:
        raise HTTPException(status_code=404, detail="No audio captured yet")
    return FileResponse(audio_path, media_type="audio/mpeg", filename=audio_path.name)


# ---------------------------------------------------------------------------
# Endpoints: Health
# ---------------------------------------------------------------------------


@router.get(
    "/health",
    response_model=HealthResponse,
    tags=["health"],
    summary="Health check",
    description="Liveness check with the number of active watches.",
)
async def health_check(
    supervisor: WatchSupervisor = Depends(get_supervisor),
) -> HealthResponse:
    active = sum(1 for record in supervisor.list() if record.active)
    return HealthResponse(status="ok", version=__version__, watches=active)


def run_api(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Serve the API with uvicorn (blocking)."""
    import uvicorn

    uvicorn.run(create_app(), host=host, port=port)
