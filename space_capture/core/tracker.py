"""Per-broadcast lifecycle tracker: the watch loop that drives everything else.

WHY: One watched broadcast moves through pending → running → ended, and the
capture work depends on where it is: monitor the live playlist while it
runs, start a quick preview once audio exists, wait for the final playlist
to settle after it ends, then run the full capture. Transient upstream
failures must never kill the watch; they only delay it.

HOW: BroadcastLifecycleTracker owns the metadata snapshot and the resolved
stream source for one broadcast. run() repeats _cycle() until it finishes,
sleeping a fixed error_retry_interval after any TransientFetchError or
AuthExpiredError. _cycle() refreshes metadata, resolves the stream source
once, then alternates monitoring (StreamAvailabilityMonitor) and
verification (FinalizationVerifier) with finalize attempts until a final
capture has run. The live preview is a child asyncio.Task started from the
monitor's first-chunk hook. Transitions are published as typed events on
an asyncio.Queue.

RULES:
- Metadata refresh precedes every monitor/verifier/capture decision
- BroadcastLive is published once, on the first RUNNING refresh
- A capture_target override skips monitoring and captures directly (final)
- force=True finalizes immediately from the dynamic playlist
- A finalize that finds the broadcast still RUNNING resumes monitoring
- At most one preview per watch; it never blocks polling
- Cancelling run() cancels the preview task too
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from space_capture.api.client import AuthExpiredError, FetchError, TransientFetchError
from space_capture.api.models import BroadcastMetadata, BroadcastState, LiveStreamSource
from space_capture.core.events import (
    BroadcastLive,
    CaptureCompleted,
    PlaylistResolved,
    WatchEvent,
)
from space_capture.core.job import CaptureJob, CaptureMode
from space_capture.core.monitor import FinalizationVerifier, StreamAvailabilityMonitor
from space_capture.core.pipeline import CapturePipeline, CaptureResult
from space_capture.core.playlist import get_master_playlist_url

if TYPE_CHECKING:
    from space_capture.api.client import BroadcastApiClient
    from space_capture.config import WatchConfig

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_RE = re.compile(r'[/\\?%*:|"<>]')


class WatchState(str, enum.Enum):
    STARTING = "starting"
    MONITORING = "monitoring"
    VERIFYING = "verifying"
    CAPTURING = "capturing"
    DONE = "done"


class BroadcastLogAdapter(logging.LoggerAdapter):
    """Prefixes every record with the broadcast id."""

    def process(self, msg, kwargs):
        return "[{}] {}".format(self.extra["broadcast_id"], msg), kwargs


def clean_filename(value: str) -> str:
    return _UNSAFE_FILENAME_RE.sub("", value).strip()


class BroadcastLifecycleTracker:
    """Watches one broadcast from discovery to its final capture.

    RULES:
    - metadata is replaced (never mutated) on each refresh
    - source is resolved once and cached for the watch's lifetime
    - captures lists every finished CaptureJob, preview and final
    - events may be None (no consumer); publishing never blocks
    """

    def __init__(
        self,
        broadcast_id: str,
        client: "BroadcastApiClient",
        pipeline: CapturePipeline,
        config: "WatchConfig",
        events: Optional["asyncio.Queue[WatchEvent]"] = None,
        capture_target: Optional[str] = None,
        force: bool = False,
    ) -> None:
        self.broadcast_id = broadcast_id
        self._client = client
        self._pipeline = pipeline
        self._config = config
        self._events = events
        self._capture_target = capture_target
        self._force = force
        self._log = BroadcastLogAdapter(logger, {"broadcast_id": broadcast_id})

        self.state = WatchState.STARTING
        self.metadata: Optional[BroadcastMetadata] = None
        self.source: Optional[LiveStreamSource] = None
        self.playlist_url: Optional[str] = None
        self.monitor: Optional[StreamAvailabilityMonitor] = None
        self.captures: List[CaptureJob] = []
        self.last_result: Optional[CaptureResult] = None
        self.preview_task: Optional[asyncio.Task] = None
        self._live_notified = False
        self._finalize_failures = 0

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def refresh(self) -> BroadcastMetadata:
        """Fetch a fresh metadata snapshot.

        Raises:
            TransientFetchError: Network/5xx failure; caller retries later.
            AuthExpiredError: Credential rejected; refresh already scheduled.
        """
        metadata = await self._client.fetch_metadata(self.broadcast_id)
        self.metadata = metadata
        if metadata.state is BroadcastState.RUNNING and not self._live_notified:
            self._live_notified = True
            self._log.info("Broadcast is live: %s", metadata.title or "(untitled)")
            self._publish(BroadcastLive(metadata))
        return metadata

    # ------------------------------------------------------------------
    # Watch loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Watch until the final capture has run (or is given up).

        WHY: This is the single long-lived coroutine per broadcast; the
        supervisor wraps it in a task so it can be cancelled as a unit.

        RULES:
        - TransientFetchError / AuthExpiredError → sleep error_retry_interval, retry
        - On normal completion a still-running preview is awaited
        - Any other exit (cancellation or an unexpected error) cancels the preview
        """
        self._log.info("Watching...")
        finished = False
        try:
            while True:
                try:
                    await self._cycle()
                    break
                except (TransientFetchError, AuthExpiredError) as exc:
                    self._log.error("watch: %s", exc)
                    delay = self._config.error_retry_interval
                    self._log.info("Retry watch in %.1fs", delay)
                    await asyncio.sleep(delay)
            if self.preview_task is not None and not self.preview_task.done():
                await asyncio.wait([self.preview_task])
            finished = True
        except asyncio.CancelledError:
            self._log.info("Watch cancelled")
            raise
        finally:
            if not finished and self.preview_task is not None and not self.preview_task.done():
                self.preview_task.cancel()
            self.state = WatchState.DONE

    async def _cycle(self) -> None:
        if self.metadata is None:
            await self.refresh()

        if self._capture_target:
            self._log.info("Capturing from override url")
            self.playlist_url = self._capture_target
            await self._capture(CaptureMode.FINAL, self._capture_target)
            return

        if self.source is None:
            self.source = await self._client.fetch_live_stream_source(self.metadata.media_key)
            self.playlist_url = self.source.location
            self._log.debug("Publishing new dynamic playlist url")
            self._publish(PlaylistResolved(self.metadata, self.master_playlist_url))

        if self._force and self.metadata.state is not BroadcastState.ENDED:
            self._log.info("Forced capture of a live broadcast")
            await self._capture(CaptureMode.FINAL, self.playlist_url)
            return

        while True:
            if self.metadata.state is not BroadcastState.ENDED:
                await self._watch_stream()
            if await self._finalize():
                return

    async def _watch_stream(self) -> None:
        if self.monitor is None:
            self.monitor = StreamAvailabilityMonitor(
                self._client,
                self.playlist_url,
                self._config.poll_interval,
                on_first_chunk=self._start_preview,
                log=self._log,
            )
        else:
            self.monitor.resume()

        self.state = WatchState.MONITORING
        watermark = await self.monitor.watch()

        self.state = WatchState.VERIFYING
        verifier = FinalizationVerifier(
            self._client,
            self.playlist_url,
            watermark,
            self._config.finalize_max_retries,
            self._config.poll_interval,
            log=self._log,
        )
        await verifier.verify()

    async def _finalize(self) -> bool:
        """Run the final capture if the broadcast has really ended.

        Returns:
            True when the watch is finished, False to keep watching.
        """
        # Title may have changed since the last refresh
        metadata = await self.refresh()
        self._log_info(metadata)

        if metadata.state is BroadcastState.RUNNING:
            # Host disconnected for a while; keep polling the dynamic playlist
            self._log.info("Broadcast still running, resuming playlist checks")
            await asyncio.sleep(self._config.poll_interval)
            return False

        try:
            final_url = await self._client.fetch_final_playlist_url(self.playlist_url)
        except FetchError as exc:
            self._finalize_failures += 1
            if self._finalize_failures > self._config.finalize_max_retries:
                self._log.error(
                    "Giving up on final capture after %d attempts: %s",
                    self._finalize_failures,
                    exc,
                )
                return True
            self._log.warning("Final playlist not ready: %s", exc)
            await asyncio.sleep(self._config.error_retry_interval)
            return False

        await self._capture(CaptureMode.FINAL, final_url)
        return True

    # ------------------------------------------------------------------
    # Captures
    # ------------------------------------------------------------------

    def _start_preview(self, watermark: int) -> None:
        if self.preview_task is not None:
            return
        self._log.debug("First chunk seen (index %d), starting live preview", watermark)
        self.preview_task = asyncio.ensure_future(self._run_preview())
        self.preview_task.add_done_callback(self._on_preview_done)

    async def _run_preview(self) -> Optional[CaptureResult]:
        try:
            metadata = await self.refresh()
        except FetchError as exc:
            self._log.warning("Live preview skipped: %s", exc)
            return None
        self._log_info(metadata)
        if metadata.state is not BroadcastState.RUNNING:
            return None
        return await self._capture(CaptureMode.PREVIEW, self.playlist_url)

    def _on_preview_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log.error("Live preview failed", exc_info=exc)

    async def _capture(self, mode: CaptureMode, playlist_url: str) -> CaptureResult:
        metadata = self.metadata
        if mode is CaptureMode.FINAL:
            self.state = WatchState.CAPTURING
        job = self._pipeline.new_job(mode, playlist_url, self.audio_path(mode))
        result = await self._pipeline.run(
            job,
            metadata_tags=self.audio_tags(),
            broadcast_started_at=metadata.started_at if metadata else None,
        )
        if result.job is not None:
            self.captures.append(result.job)
        self.last_result = result

        if not result.success:
            self._log.warning("%s capture failed", mode.value.capitalize())
        elif result.phrases:
            self._log.debug(
                "Downloaded audio successfully, found %d phrases", len(result.phrases)
            )
            self._publish(
                CaptureCompleted(
                    metadata=metadata,
                    master_playlist_url=self.master_playlist_url,
                    mode=mode,
                    audio_path=job.audio_path,
                    phrases=tuple(result.phrases),
                )
            )
        else:
            self._log.info("%s capture finished, no phrases detected", mode.value.capitalize())
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @property
    def master_playlist_url(self) -> str:
        if not self.playlist_url:
            return ""
        return get_master_playlist_url(self.playlist_url)

    @property
    def filename(self) -> str:
        """{screen_name}-{MM-DD-YYYY}-{broadcast_id}, the artifact stem."""
        metadata = self.metadata
        screen_name = clean_filename(metadata.host_screen_name if metadata else "") or "unknown"
        reference = metadata.reference_time if metadata else None
        if reference:
            date = datetime.fromtimestamp(reference / 1000, tz=timezone.utc)
        else:
            date = datetime.now(tz=timezone.utc)
        return "{}-{}-{}".format(screen_name, date.strftime("%m-%d-%Y"), self.broadcast_id)

    def audio_path(self, mode: CaptureMode) -> Path:
        metadata = self.metadata
        subdir = clean_filename(metadata.host_screen_name if metadata else "") or "unknown"
        suffix = "-live" if mode is CaptureMode.PREVIEW else ""
        return Path(self._config.media_dir) / subdir / "{}{}.mp3".format(self.filename, suffix)

    def audio_tags(self) -> Dict[str, Any]:
        metadata = self.metadata
        if metadata is None:
            return {"episode_id": self.broadcast_id}
        return {
            "title": metadata.title,
            "author": metadata.host_display_name,
            "artist": metadata.host_display_name,
            "episode_id": self.broadcast_id,
        }

    def _log_info(self, metadata: BroadcastMetadata) -> None:
        self._log.info(
            "Broadcast info: username=%s started_at=%s title=%r playlist_url=%s",
            metadata.host_screen_name,
            metadata.started_at,
            metadata.title or None,
            self.master_playlist_url,
        )

    def _publish(self, event: WatchEvent) -> None:
        if self._events is not None:
            self._events.put_nowait(event)
