"""Tests for StreamAvailabilityMonitor and FinalizationVerifier.

WHY: These two decide when a broadcast is over and when the final
playlist is complete enough to capture. A watermark that moves backwards
or a verifier that never gives up would truncate or stall captures.

HOW: FakeBroadcastApi replays scripted playlist responses; poll intervals
are 0 so watch()/verify() loops finish immediately. Async calls run via
asyncio.run().

RULES:
- The watermark never decreases across polls
- The verifier always authorizes within max_retries + 1 checks
"""

from __future__ import annotations

import asyncio

import pytest

from space_capture.api.client import StreamUnavailable, TransientFetchError
from space_capture.core.monitor import (
    FinalizationVerifier,
    MonitorState,
    PollOutcome,
    StreamAvailabilityMonitor,
)

from conftest import DYNAMIC_URL, FakeBroadcastApi, playlist_text


def _gone() -> StreamUnavailable:
    return StreamUnavailable("Playlist not found", 404)


class TestStreamAvailabilityMonitor:
    def test_scenario_watermark_then_404(self):
        api = FakeBroadcastApi(
            metadata=[None],
            dynamic=[playlist_text(1, 2, 3), playlist_text(1, 2, 3, 4), _gone()],
        )
        monitor = StreamAvailabilityMonitor(api, DYNAMIC_URL, poll_interval=0)

        watermark = asyncio.run(monitor.watch())

        assert watermark == 4
        assert monitor.state is MonitorState.UNAVAILABLE
        assert api.count("fetch_text") == 3

    def test_watermark_never_decreases(self):
        api = FakeBroadcastApi(
            metadata=[None],
            dynamic=[playlist_text(5, 6), playlist_text(2, 3), playlist_text(), playlist_text(7)],
        )
        monitor = StreamAvailabilityMonitor(api, DYNAMIC_URL, poll_interval=0)

        seen = []
        for _ in range(4):
            asyncio.run(monitor.poll())
            seen.append(monitor.watermark)

        assert seen == [6, 6, 6, 7]

    def test_fetch_error_keeps_polling(self):
        api = FakeBroadcastApi(
            metadata=[None],
            dynamic=[TransientFetchError("timeout"), playlist_text(1), _gone()],
        )
        monitor = StreamAvailabilityMonitor(api, DYNAMIC_URL, poll_interval=0)

        assert asyncio.run(monitor.poll()) is PollOutcome.ERROR
        assert monitor.state is MonitorState.WATCHING
        assert asyncio.run(monitor.watch()) == 1

    def test_no_chunks_yet(self):
        api = FakeBroadcastApi(metadata=[None], dynamic=[playlist_text()])
        monitor = StreamAvailabilityMonitor(api, DYNAMIC_URL, poll_interval=0)

        assert asyncio.run(monitor.poll()) is PollOutcome.NO_CHUNKS
        assert monitor.watermark is None

    def test_first_chunk_hook_fires_once(self):
        fired = []
        api = FakeBroadcastApi(
            metadata=[None],
            dynamic=[playlist_text(1), playlist_text(1, 2), playlist_text(1, 2, 3), _gone()],
        )
        monitor = StreamAvailabilityMonitor(
            api, DYNAMIC_URL, poll_interval=0, on_first_chunk=fired.append
        )

        asyncio.run(monitor.watch())

        assert fired == [1]

    def test_first_chunk_hook_waits_for_index_one(self):
        fired = []
        api = FakeBroadcastApi(metadata=[None], dynamic=[playlist_text(0), playlist_text(0, 1)])
        monitor = StreamAvailabilityMonitor(
            api, DYNAMIC_URL, poll_interval=0, on_first_chunk=fired.append
        )

        asyncio.run(monitor.poll())
        assert fired == []
        asyncio.run(monitor.poll())
        assert fired == [1]

    def test_resume_after_unavailable(self):
        api = FakeBroadcastApi(metadata=[None], dynamic=[playlist_text(3), _gone()])
        monitor = StreamAvailabilityMonitor(api, DYNAMIC_URL, poll_interval=0)
        asyncio.run(monitor.watch())

        monitor.resume()

        assert monitor.state is MonitorState.CHUNKS_SEEN
        assert monitor.watermark == 3


class TestFinalizationVerifier:
    def _verifier(self, final, watermark, max_retries):
        api = FakeBroadcastApi(metadata=[None], final=final)
        return api, FinalizationVerifier(
            api, DYNAMIC_URL, watermark, max_retries=max_retries, poll_interval=0
        )

    def test_no_watermark_authorizes_immediately(self):
        api, verifier = self._verifier([playlist_text()], None, 3)
        assert asyncio.run(verifier.check()) is True
        assert api.count("fetch_final_playlist") == 0

    def test_complete_playlist_authorizes(self):
        _, verifier = self._verifier([playlist_text(1, 2, 3, 4)], 4, 3)
        assert asyncio.run(verifier.check()) is True
        assert verifier.forced is False

    def test_scenario_retry_once_then_forced(self):
        _, verifier = self._verifier([playlist_text(1, 2, 3)], 4, 1)

        assert asyncio.run(verifier.check()) is False
        assert verifier.retries == 1
        assert asyncio.run(verifier.check()) is True
        assert verifier.forced is True
        assert verifier.checks == 2

    def test_catches_up_before_budget_runs_out(self):
        _, verifier = self._verifier(
            [playlist_text(1, 2), playlist_text(1, 2, 3), playlist_text(1, 2, 3, 4)], 4, 5
        )
        asyncio.run(verifier.verify())
        assert verifier.checks == 3
        assert verifier.forced is False

    def test_fetch_failure_consumes_retry(self):
        _, verifier = self._verifier([TransientFetchError("502")], 4, 2)
        asyncio.run(verifier.verify())
        assert verifier.checks == 3
        assert verifier.forced is True

    @pytest.mark.parametrize("max_retries", [0, 1, 3, 7])
    def test_bounded_termination(self, max_retries):
        _, verifier = self._verifier([playlist_text(1)], 10, max_retries)
        asyncio.run(verifier.verify())
        assert verifier.checks == max_retries + 1
