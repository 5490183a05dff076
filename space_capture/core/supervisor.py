"""In-process registry of broadcast watches and the event dispatcher.

WHY: Several broadcasts may be watched at once, from the CLI or the HTTP
API. Each watch is a long-running coroutine that has to be started, looked
up, cancelled and cleaned up, and the events all watches publish have to
reach the notifier without blocking any watch loop.

HOW: Three components work together:
  WatchStatus     - enum of externally visible watch states
  WatchRecord     - dataclass holding a tracker, its task and timing
  WatchSupervisor - dict-based store with start/get/list/cancel, TTL
                    cleanup, shutdown, and dispatch_events() which drains
                    the shared event queue under a concurrency limit

RULES:
- One active watch per broadcast id; a second start() raises ValueError
- Watch loops run as asyncio tasks on the supervisor's event loop
- cancel() cancels the watch task (and through it the preview task)
- Notifier calls are blocking; they run in a worker thread via
  asyncio.to_thread, at most notify_concurrency at a time
- A failing notifier call is logged and never stops the dispatcher
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Set

from space_capture.core.events import WatchEvent
from space_capture.core.pipeline import CapturePipeline
from space_capture.core.tracker import BroadcastLifecycleTracker

if TYPE_CHECKING:
    from space_capture.api.client import BroadcastApiClient
    from space_capture.config import WatchConfig

logger = logging.getLogger(__name__)

# Finished watches stay listed for this long (seconds)
DEFAULT_TTL_SECONDS = 3600


class WatchStatus(str, enum.Enum):
    """Externally visible state of a watch.

    RULES:
    - The first five mirror the tracker's WatchState while it runs
    - cancelled/failed are terminal states set by the supervisor
    """

    STARTING = "starting"
    MONITORING = "monitoring"
    VERIFYING = "verifying"
    CAPTURING = "capturing"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class WatchRecord:
    """A tracker, the task running it, and bookkeeping for the API."""

    broadcast_id: str
    tracker: BroadcastLifecycleTracker
    task: "asyncio.Task[None]"
    created_at: float
    finished_at: Optional[float] = None
    cancelled: bool = False
    error: Optional[str] = None

    @property
    def active(self) -> bool:
        return not self.task.done()

    @property
    def status(self) -> WatchStatus:
        if self.cancelled:
            return WatchStatus.CANCELLED
        if self.error is not None:
            return WatchStatus.FAILED
        return WatchStatus(self.tracker.state.value)


class WatchSupervisor:
    """Starts, tracks and stops broadcast watches.

    WHY: The CLI and the HTTP API both need "watch this broadcast" as a
    single call, and the API needs to list and cancel running watches.

    HOW: Records are kept in a plain dict keyed by broadcast id. All access
    happens on the event loop thread, so no lock is needed. Trackers share
    one API client, one capture pipeline and one event queue.

    RULES:
    - get() returns None for unknown ids
    - list() is ordered oldest first
    - cleanup_expired() only removes finished watches past the TTL
    """

    def __init__(
        self,
        client: "BroadcastApiClient",
        pipeline: CapturePipeline,
        config: "WatchConfig",
        events: Optional["asyncio.Queue[WatchEvent]"] = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        max_watches: int = 50,
    ) -> None:
        self._client = client
        self._pipeline = pipeline
        self._config = config
        self.events: "asyncio.Queue[WatchEvent]" = events if events is not None else asyncio.Queue()
        self._records: Dict[str, WatchRecord] = {}
        self._ttl_seconds = ttl_seconds
        self.max_watches = max_watches
        self._notify_tasks: Set[asyncio.Task] = set()

    def start(
        self,
        broadcast_id: str,
        capture_target: Optional[str] = None,
        force: bool = False,
    ) -> WatchRecord:
        """Create a tracker for broadcast_id and schedule its watch loop.

        Raises:
            ValueError: The broadcast is already watched, or the watch
                limit is reached.
        """
        existing = self._records.get(broadcast_id)
        if existing is not None and existing.active:
            raise ValueError("Broadcast {} is already being watched".format(broadcast_id))
        active = sum(1 for r in self._records.values() if r.active)
        if active >= self.max_watches:
            raise ValueError(
                "Maximum number of concurrent watches ({}) reached".format(self.max_watches)
            )

        tracker = BroadcastLifecycleTracker(
            broadcast_id,
            self._client,
            self._pipeline,
            self._config,
            events=self.events,
            capture_target=capture_target,
            force=force,
        )
        task = asyncio.ensure_future(tracker.run())
        record = WatchRecord(
            broadcast_id=broadcast_id,
            tracker=tracker,
            task=task,
            created_at=time.time(),
        )
        task.add_done_callback(lambda t: self._on_watch_done(record, t))
        self._records[broadcast_id] = record

        logger.info("Started watch for broadcast %s", broadcast_id)
        return record

    def get(self, broadcast_id: str) -> Optional[WatchRecord]:
        return self._records.get(broadcast_id)

    def list(self) -> List[WatchRecord]:
        return sorted(self._records.values(), key=lambda r: r.created_at)

    def cancel(self, broadcast_id: str) -> bool:
        """Cancel an active watch.

        Returns:
            True if a running watch was cancelled, False if the id is
            unknown or the watch already finished.
        """
        record = self._records.get(broadcast_id)
        if record is None or not record.active:
            return False
        record.cancelled = True
        record.task.cancel()
        logger.info("Cancelling watch for broadcast %s", broadcast_id)
        return True

    async def wait(self, broadcast_id: str) -> Optional[WatchRecord]:
        """Wait for a watch to finish (cancelled or not) and return its record."""
        record = self._records.get(broadcast_id)
        if record is None:
            return None
        await asyncio.wait([record.task])
        return record

    async def shutdown(self) -> None:
        """Cancel every active watch and pending notification, then wait for them."""
        tasks = []
        for record in self._records.values():
            if record.active:
                record.cancelled = True
                record.task.cancel()
                tasks.append(record.task)
        for task in list(self._notify_tasks):
            task.cancel()
            tasks.append(task)
        if tasks:
            await asyncio.wait(tasks)
        logger.info("Supervisor shut down (%d tasks cancelled)", len(tasks))

    def cleanup_expired(self) -> int:
        """Drop finished watches whose finished_at is older than the TTL."""
        now = time.time()
        expired = [
            broadcast_id
            for broadcast_id, record in self._records.items()
            if record.finished_at is not None and now - record.finished_at > self._ttl_seconds
        ]
        for broadcast_id in expired:
            del self._records[broadcast_id]
            logger.info("Expired watch %s", broadcast_id)
        return len(expired)

    def _on_watch_done(self, record: WatchRecord, task: asyncio.Task) -> None:
        record.finished_at = time.time()
        if task.cancelled():
            record.cancelled = True
            return
        exc = task.exception()
        if exc is not None:
            record.error = str(exc) or type(exc).__name__
            logger.error("Watch for broadcast %s failed", record.broadcast_id, exc_info=exc)
        else:
            logger.info("Watch for broadcast %s finished", record.broadcast_id)

    # ------------------------------------------------------------------
    # Event dispatch
    # ------------------------------------------------------------------

    async def dispatch_events(
        self,
        handler: Callable[[WatchEvent], None],
        concurrency: Optional[int] = None,
    ) -> None:
        """Feed queued events to a blocking handler, forever.

        WHY: Slack calls block and can be slow (file uploads). They must not
        stall watch loops, and a burst of captures must not open an
        unbounded number of uploads.

        HOW: Each event gets its own task that acquires a semaphore and then
        runs handler(event) via asyncio.to_thread. The loop only returns
        when cancelled.

        RULES:
        - At most `concurrency` handler calls run at once
        - Handler exceptions are logged, never propagated
        """
        limit = concurrency if concurrency is not None else self._config.notify_concurrency
        semaphore = asyncio.Semaphore(max(1, limit))
        while True:
            event = await self.events.get()
            task = asyncio.ensure_future(self._notify(handler, event, semaphore))
            self._notify_tasks.add(task)
            task.add_done_callback(self._notify_tasks.discard)

    async def _notify(
        self,
        handler: Callable[[WatchEvent], None],
        event: WatchEvent,
        semaphore: asyncio.Semaphore,
    ) -> None:
        try:
            async with semaphore:
                await asyncio.to_thread(handler, event)
        except Exception:
            logger.exception("Notification for %s failed", type(event).__name__)
        finally:
            self.events.task_done()
