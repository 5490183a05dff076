"""Shared test fixtures for the space_capture test suite.

WHY: The monitor, tracker, pipeline and server tests all need the same
fakes: an upstream client that replays scripted responses, a process
runner that writes artifacts instead of running ffmpeg/whisper, sample
metadata and a caption file with known keyword hits.

HOW: Fixtures return small fake objects or factories. Scripted responses
are lists consumed front to back; the last entry repeats forever so loops
never run dry. An entry that is an Exception instance is raised instead
of returned.

RULES:
- No test touches the network or spawns a real process
- All waiting intervals in configs built here are 0
- The sample caption file has exactly one keyword cue (AFPAK → AFPAC)
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

import pytest

from space_capture.api.models import BroadcastMetadata, BroadcastState
from space_capture.config import WatchConfig, load_keyword_rules
from space_capture.core.captions import build_rule_table


# ---------------------------------------------------------------------------
# Sample data
# ---------------------------------------------------------------------------

DYNAMIC_URL = (
    "https://prod-fastly-us-east-1.video.pscp.tv/Transcoding/v1/hls/abc/"
    "non_transcode/us-east-1/audio-space/dynamic_playlist.m3u8?type=live"
)
MASTER_URL = (
    "https://prod-fastly-us-east-1.video.pscp.tv/Transcoding/v1/hls/abc/"
    "non_transcode/us-east-1/audio-space/master_playlist.m3u8"
)
FINAL_URL = (
    "https://prod-fastly-us-east-1.video.pscp.tv/Transcoding/v1/hls/abc/"
    "non_transcode/us-east-1/audio-space/playlist_16798.m3u8"
)

SAMPLE_VTT = """WEBVTT

00:00:01.000 --> 00:00:04.000
Welcome back everyone.

00:00:05.000 --> 00:00:08.500
We were at AFPAK last week!

00:00:09.000 --> 00:00:12.000
Thanks for listening.
"""

PLAIN_VTT = """WEBVTT

00:00:01.000 --> 00:00:04.000
Nothing to see here.
"""


def playlist_text(*indexes: int) -> str:
    """Build a small live playlist listing the given chunk indexes."""
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:3"]
    for index in indexes:
        lines.append("#EXTINF:3.0,")
        lines.append("chunk_1680000000_{}_a.aac".format(index))
    return "\n".join(lines) + "\n"


def make_metadata(
    state: BroadcastState = BroadcastState.RUNNING,
    broadcast_id: str = "1YqKDqWqdPLJV",
    **overrides: Any,
) -> BroadcastMetadata:
    values = dict(
        broadcast_id=broadcast_id,
        state=state,
        title="Weekly community call",
        host_screen_name="example_host",
        host_display_name="Example Host",
        host_avatar_url="https://pbs.twimg.com/profile_images/1/avatar.jpg",
        media_key="28_1680000000",
        created_at=1680000000000,
        started_at=1680000060000,
        ended_at=1680003600000 if state is BroadcastState.ENDED else None,
    )
    values.update(overrides)
    return BroadcastMetadata(**values)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


def _next(script: List[Any]) -> Any:
    item = script[0] if len(script) == 1 else script.pop(0)
    if isinstance(item, BaseException):
        raise item
    return item


class FakeBroadcastApi:
    """Scripted stand-in for BroadcastApiClient.

    RULES:
    - metadata / dynamic / final are scripts (last entry repeats)
    - calls records (method name, argument) in call order
    """

    def __init__(
        self,
        metadata: Sequence[Any],
        dynamic: Sequence[Any] = (),
        final: Sequence[Any] = (),
        final_url: Any = FINAL_URL,
        location: str = DYNAMIC_URL,
    ) -> None:
        self.metadata = list(metadata)
        self.dynamic = list(dynamic) or [playlist_text()]
        self.final = list(final) or [playlist_text()]
        self.final_url = [final_url]
        self.location = location
        self.calls: List[Tuple[str, Any]] = []

    async def fetch_metadata(self, broadcast_id: str) -> BroadcastMetadata:
        self.calls.append(("fetch_metadata", broadcast_id))
        return _next(self.metadata)

    async def fetch_live_stream_source(self, media_key: str):
        from space_capture.api.models import LiveStreamSource

        self.calls.append(("fetch_live_stream_source", media_key))
        return LiveStreamSource(location=self.location, chat_token="token")

    async def fetch_text(self, url: str) -> str:
        self.calls.append(("fetch_text", url))
        return _next(self.dynamic)

    async def fetch_final_playlist(self, dynamic_url: str) -> Tuple[str, str]:
        self.calls.append(("fetch_final_playlist", dynamic_url))
        return _next(self.final_url), _next(self.final)

    async def fetch_final_playlist_url(self, dynamic_url: str) -> str:
        self.calls.append(("fetch_final_playlist_url", dynamic_url))
        return _next(self.final_url)

    def count(self, name: str) -> int:
        return sum(1 for call, _ in self.calls if call == name)


class FakeRunner:
    """Process runner that writes the artifacts ffmpeg/whisper would write.

    RULES:
    - Commands whose program is "ffmpeg" write the last argument
    - Commands whose program is "whisper" write <audio stem>.vtt
    - returncodes maps program name → exit code (default 0)
    - skip_output lists programs that "succeed" without writing a file
    """

    def __init__(
        self,
        vtt: str = SAMPLE_VTT,
        returncodes: Optional[dict] = None,
        skip_output: Sequence[str] = (),
    ) -> None:
        self.vtt = vtt
        self.returncodes = returncodes or {}
        self.skip_output = set(skip_output)
        self.calls: List[List[str]] = []

    async def __call__(self, args: Sequence[str], cwd: Optional[Path]) -> Tuple[int, str]:
        args = list(args)
        self.calls.append(args)
        program = args[0]
        code = self.returncodes.get(program, 0)
        if code != 0:
            return code, "{}: simulated failure\n".format(program)
        if program in self.skip_output:
            return 0, ""
        if program == "ffmpeg":
            Path(args[-1]).write_bytes(b"ID3fake-mp3")
        elif program == "whisper":
            Path(args[1]).with_suffix(".vtt").write_text(self.vtt, encoding="utf-8")
        return 0, ""

    def programs(self) -> List[str]:
        return [call[0] for call in self.calls]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def keyword_rules():
    """The built-in keyword dictionary, compiled."""
    return load_keyword_rules()


@pytest.fixture
def afpac_rules():
    return build_rule_table([("AFPAC", ["AFPAC", "AFPAK"])])


@pytest.fixture
def watch_config(tmp_path, keyword_rules):
    """WatchConfig with zero wait intervals and media under tmp_path."""
    return WatchConfig(
        poll_interval=0,
        error_retry_interval=0,
        finalize_max_retries=2,
        preview_seconds=30,
        media_dir=tmp_path / "media",
        keyword_rules=keyword_rules,
    )


@pytest.fixture
def sample_vtt(tmp_path) -> Path:
    path = tmp_path / "sample.vtt"
    path.write_text(SAMPLE_VTT, encoding="utf-8")
    return path


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def make_api():
    """Factory for FakeBroadcastApi instances."""
    return FakeBroadcastApi
