"""Dynamic playlist monitoring and master playlist finalization checks.

WHY: There is no push signal for "the broadcast ended". The only view is
the live (dynamic) playlist, which keeps growing until it starts returning
404. Even then the master playlist may lag behind CDN replication, so
downloading the instant the dynamic playlist vanishes risks a truncated
file. These two components turn that polling-only view into a clear
"stream is over, safe to finalize" decision.

HOW:
  StreamAvailabilityMonitor - polls the dynamic playlist, keeps the chunk
      watermark (highest chunk index seen), fires on_first_chunk once, and
      reports UNAVAILABLE on 404.
  FinalizationVerifier - re-reads the final playlist until its chunk count
      reaches the watermark or the retry budget runs out.

RULES:
- The watermark never decreases
- on_first_chunk fires at most once per monitor, when the watermark first
  reaches >= 1; it must not block (the tracker starts a task in it)
- Only 404 ends monitoring; other fetch errors are logged and polling goes on
- The verifier authorizes within max_retries + 1 checks, always
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Callable, Optional, Protocol, Tuple

from space_capture.api.client import FetchError, StreamUnavailable
from space_capture.core.playlist import get_chunk_indexes

logger = logging.getLogger(__name__)


class PlaylistSource(Protocol):
    async def fetch_text(self, url: str) -> str: ...

    async def fetch_final_playlist(self, dynamic_url: str) -> Tuple[str, str]: ...


class MonitorState(str, enum.Enum):
    WATCHING = "watching"
    CHUNKS_SEEN = "chunks_seen"
    UNAVAILABLE = "unavailable"


class PollOutcome(str, enum.Enum):
    """Result of a single dynamic playlist poll."""

    NO_CHUNKS = "no_chunks"
    CHUNKS = "chunks"
    UNAVAILABLE = "unavailable"
    ERROR = "error"


class StreamAvailabilityMonitor:
    """Tracks one broadcast's dynamic playlist until it disappears.

    RULES:
    - watermark is None until a chunk has been seen
    - poll() never raises for fetch failures
    - watch() returns only once the playlist is UNAVAILABLE
    """

    def __init__(
        self,
        source: PlaylistSource,
        playlist_url: str,
        poll_interval: float,
        on_first_chunk: Optional[Callable[[int], None]] = None,
        log: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self._source = source
        self.playlist_url = playlist_url
        self._poll_interval = poll_interval
        self._on_first_chunk = on_first_chunk
        self._log = log or logger
        self.state = MonitorState.WATCHING
        self.watermark: Optional[int] = None
        self._first_chunk_fired = False

    async def poll(self) -> PollOutcome:
        """Fetch the dynamic playlist once and update state and watermark."""
        try:
            text = await self._source.fetch_text(self.playlist_url)
        except StreamUnavailable:
            self._log.info("Dynamic playlist status: 404")
            self.state = MonitorState.UNAVAILABLE
            return PollOutcome.UNAVAILABLE
        except FetchError as exc:
            self._log.error("Dynamic playlist check failed: %s", exc)
            return PollOutcome.ERROR

        indexes = get_chunk_indexes(text)
        if not indexes:
            return PollOutcome.NO_CHUNKS

        highest = max(indexes)
        if self.watermark is None or highest > self.watermark:
            self.watermark = highest
        self.state = MonitorState.CHUNKS_SEEN

        if not self._first_chunk_fired and self.watermark >= 1:
            self._first_chunk_fired = True
            if self._on_first_chunk is not None:
                self._on_first_chunk(self.watermark)
        return PollOutcome.CHUNKS

    async def watch(self) -> Optional[int]:
        """Poll every poll_interval seconds until the playlist is gone.

        Returns:
            The final watermark (None if no chunk was ever seen).
        """
        while True:
            outcome = await self.poll()
            if outcome is PollOutcome.UNAVAILABLE:
                return self.watermark
            await asyncio.sleep(self._poll_interval)

    def resume(self) -> None:
        """Go back to polling after a premature UNAVAILABLE (host reconnect)."""
        self.state = (
            MonitorState.CHUNKS_SEEN if self.watermark is not None else MonitorState.WATCHING
        )


class FinalizationVerifier:
    """Waits for the final playlist to catch up with the chunk watermark.

    WHY: The final playlist is built from CDN replicas that can lag behind
    the live edge; finalizing against an incomplete playlist truncates
    the capture.

    HOW: check() compares the final playlist's chunk count to the
    watermark. verify() repeats check() every poll_interval seconds. The
    retry budget bounds the wait: once used up, finalization is authorized
    even if the counts never converge, trading a small truncation risk for
    a bounded wait.

    RULES:
    - No watermark → authorize immediately
    - retries >= max_retries → authorize (logged as forced)
    - chunk count >= watermark → authorize
    - Otherwise retries += 1 and check again later
    - A failed fetch consumes a retry like an under-reporting playlist
    """

    def __init__(
        self,
        source: PlaylistSource,
        dynamic_url: str,
        watermark: Optional[int],
        max_retries: int,
        poll_interval: float,
        log: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self._source = source
        self._dynamic_url = dynamic_url
        self.watermark = watermark
        self.max_retries = max_retries
        self._poll_interval = poll_interval
        self._log = log or logger
        self.retries = 0
        self.checks = 0
        self.forced = False

    async def check(self) -> bool:
        """Run one verification pass; True means finalization may proceed."""
        self.checks += 1
        if not self.watermark:
            return True

        chunk_count: Optional[int] = None
        try:
            _, text = await self._source.fetch_final_playlist(self._dynamic_url)
            chunk_count = len(get_chunk_indexes(text))
            self._log.debug(
                "Master playlist has %d chunks, last chunk index %d",
                chunk_count,
                self.watermark,
            )
        except FetchError as exc:
            self._log.error("Master playlist check failed: %s", exc)

        if chunk_count is not None and chunk_count >= self.watermark:
            return True

        if self.retries >= self.max_retries:
            self.forced = True
            self._log.warning(
                "Finalizing after %d retries: master chunk size %s below last chunk index %d",
                self.retries,
                chunk_count,
                self.watermark,
            )
            return True

        if chunk_count is not None:
            self._log.warning(
                "Master chunk size (%d) lower than last chunk index (%d)",
                chunk_count,
                self.watermark,
            )
        self.retries += 1
        return False

    async def verify(self) -> None:
        """Block until check() authorizes finalization."""
        while not await self.check():
            self._log.info("Recheck master playlist in %.1fs", self._poll_interval)
            await asyncio.sleep(self._poll_interval)
