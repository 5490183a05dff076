"""Tests for WatchSupervisor (watch registry and event dispatch)."""

from __future__ import annotations

import asyncio
import threading
import time

import pytest

from space_capture.api.models import BroadcastState
from space_capture.core.events import CaptureCompleted, PlaylistResolved
from space_capture.core.pipeline import CapturePipeline
from space_capture.core.supervisor import WatchSupervisor, WatchStatus

from conftest import FakeBroadcastApi, FakeRunner, make_metadata, playlist_text


def _supervisor(api, config, **kwargs) -> WatchSupervisor:
    pipeline = CapturePipeline.from_config(config, runner=FakeRunner())
    return WatchSupervisor(api, pipeline, config, **kwargs)


def _ended_api() -> FakeBroadcastApi:
    return FakeBroadcastApi(metadata=[make_metadata(BroadcastState.ENDED)])


def _endless_api() -> FakeBroadcastApi:
    # live broadcast whose playlist never disappears
    return FakeBroadcastApi(
        metadata=[make_metadata(BroadcastState.RUNNING)],
        dynamic=[playlist_text()],
    )


class TestStartAndWait:
    def test_watch_runs_to_done(self, watch_config):
        async def main():
            supervisor = _supervisor(_ended_api(), watch_config)
            supervisor.start("1YqKDqWqdPLJV")
            record = await supervisor.wait("1YqKDqWqdPLJV")
            events = []
            while not supervisor.events.empty():
                events.append(supervisor.events.get_nowait())
            return record, events

        record, events = asyncio.run(main())

        assert record.status is WatchStatus.DONE
        assert record.finished_at is not None
        assert not record.active
        assert [type(e) for e in events] == [PlaylistResolved, CaptureCompleted]

    def test_duplicate_start_rejected_while_active(self, watch_config):
        async def main():
            supervisor = _supervisor(_ended_api(), watch_config)
            supervisor.start("abc")
            with pytest.raises(ValueError):
                supervisor.start("abc")
            await supervisor.wait("abc")
            # allowed again once the first watch finished
            record = supervisor.start("abc")
            await supervisor.wait("abc")
            return record

        assert asyncio.run(main()).status is WatchStatus.DONE

    def test_max_watches(self, watch_config):
        async def main():
            supervisor = _supervisor(_ended_api(), watch_config, max_watches=1)
            supervisor.start("one")
            with pytest.raises(ValueError):
                supervisor.start("two")
            await supervisor.shutdown()

        asyncio.run(main())

    def test_list_oldest_first(self, watch_config):
        async def main():
            supervisor = _supervisor(_ended_api(), watch_config)
            supervisor.start("first")
            supervisor.start("second")
            ids = [r.broadcast_id for r in supervisor.list()]
            await supervisor.shutdown()
            return ids

        assert asyncio.run(main()) == ["first", "second"]

    def test_unknown_id(self, watch_config):
        async def main():
            supervisor = _supervisor(_ended_api(), watch_config)
            return supervisor.get("nope"), await supervisor.wait("nope")

        assert asyncio.run(main()) == (None, None)

    def test_failing_watch_marked_failed(self, watch_config):
        api = FakeBroadcastApi(metadata=[RuntimeError("boom")])

        async def main():
            supervisor = _supervisor(api, watch_config)
            supervisor.start("abc")
            return await supervisor.wait("abc")

        record = asyncio.run(main())

        assert record.status is WatchStatus.FAILED
        assert record.error == "boom"


class TestCancel:
    def test_cancel_active_watch(self, watch_config):
        async def main():
            supervisor = _supervisor(_endless_api(), watch_config)
            supervisor.start("abc")
            await asyncio.sleep(0)
            cancelled = supervisor.cancel("abc")
            record = await supervisor.wait("abc")
            return cancelled, record, supervisor.cancel("abc"), supervisor.cancel("nope")

        cancelled, record, again, unknown = asyncio.run(main())

        assert cancelled is True
        assert record.status is WatchStatus.CANCELLED
        assert again is False
        assert unknown is False

    def test_shutdown_cancels_everything(self, watch_config):
        async def main():
            supervisor = _supervisor(_endless_api(), watch_config)
            supervisor.start("a")
            supervisor.start("b")
            await asyncio.sleep(0)
            await supervisor.shutdown()
            return supervisor.list()

        records = asyncio.run(main())

        assert [r.status for r in records] == [WatchStatus.CANCELLED, WatchStatus.CANCELLED]
        assert not any(r.active for r in records)


class TestCleanup:
    def test_expired_finished_watches_removed(self, watch_config):
        async def main():
            supervisor = _supervisor(_ended_api(), watch_config, ttl_seconds=5)
            supervisor.start("old")
            record = await supervisor.wait("old")
            record.finished_at = time.time() - 10
            supervisor.start("fresh")
            await supervisor.wait("fresh")
            removed = supervisor.cleanup_expired()
            return removed, [r.broadcast_id for r in supervisor.list()]

        removed, remaining = asyncio.run(main())

        assert removed == 1
        assert remaining == ["fresh"]

    def test_active_watches_kept(self, watch_config):
        async def main():
            supervisor = _supervisor(_endless_api(), watch_config, ttl_seconds=0)
            supervisor.start("live")
            removed = supervisor.cleanup_expired()
            await supervisor.shutdown()
            return removed

        assert asyncio.run(main()) == 0


class TestDispatchEvents:
    def test_failing_handler_does_not_stop_dispatch(self, watch_config):
        seen = []

        def handler(event):
            seen.append(event)
            if event == "first":
                raise RuntimeError("slack down")

        async def main():
            supervisor = _supervisor(_ended_api(), watch_config)
            dispatcher = asyncio.ensure_future(supervisor.dispatch_events(handler))
            supervisor.events.put_nowait("first")
            supervisor.events.put_nowait("second")
            await supervisor.events.join()
            dispatcher.cancel()
            await asyncio.wait([dispatcher])

        asyncio.run(main())

        assert sorted(seen) == ["first", "second"]

    def test_concurrency_limit(self, watch_config):
        lock = threading.Lock()
        state = {"running": 0, "peak": 0}

        def handler(event):
            with lock:
                state["running"] += 1
                state["peak"] = max(state["peak"], state["running"])
            time.sleep(0.02)
            with lock:
                state["running"] -= 1

        async def main():
            supervisor = _supervisor(_ended_api(), watch_config)
            dispatcher = asyncio.ensure_future(supervisor.dispatch_events(handler, concurrency=1))
            for index in range(4):
                supervisor.events.put_nowait(index)
            await supervisor.events.join()
            dispatcher.cancel()
            await asyncio.wait([dispatcher])

        asyncio.run(main())

        assert state["peak"] == 1
