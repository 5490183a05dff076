"""Tests for the capture pipeline (extraction → transcription → scan).

WHY: The pipeline is where external tools fail in practice: ffmpeg exits
non-zero on a vanished playlist, whisper is not installed, a caption file
never appears. Each of those must end as a clean failed result with the
right stage marked, never as an exception in the watch loop.

HOW: A FakeRunner stands in for the process runner and writes the files
the real tools would write. Async calls are driven with asyncio.run().

RULES:
- No real process is ever spawned
- A failed result always carries an empty phrase list
"""

from __future__ import annotations

import asyncio

from space_capture.core.job import CaptureMode, Stage, StageStatus
from space_capture.core.pipeline import (
    CapturePipeline,
    build_extraction_command,
    build_transcription_command,
    caption_path_for,
    summarize_stages,
)

from conftest import PLAIN_VTT, FakeRunner


def _pipeline(rules, runner, clock=None) -> CapturePipeline:
    return CapturePipeline(
        keyword_rules=rules,
        preview_seconds=30,
        preview_model="base.en",
        final_model="small.en",
        runner=runner,
        clock=clock,
    )


class TestCommands:
    def test_extraction_command_final(self, tmp_path):
        audio = tmp_path / "show.mp3"
        args = build_extraction_command(
            "ffmpeg", "https://x/p.m3u8", audio, None, {"title": "Show", "author": ""}
        )
        assert args == [
            "ffmpeg", "-y", "-protocol_whitelist", "file,https,tls,tcp",
            "-i", "https://x/p.m3u8", "-metadata", "title=Show", str(audio),
        ]

    def test_extraction_command_preview_duration_first(self, tmp_path):
        args = build_extraction_command("ffmpeg", "u", tmp_path / "a.mp3", 30)
        assert args[1:3] == ["-t", "30"]

    def test_transcription_command(self, tmp_path):
        audio = tmp_path / "show.mp3"
        args = build_transcription_command("whisper", audio, "small.en")
        assert args == [
            "whisper", str(audio), "--model", "small.en",
            "--output_format", "vtt", "--output_dir", str(tmp_path),
        ]

    def test_caption_path(self, tmp_path):
        assert caption_path_for(tmp_path / "show-live.mp3") == tmp_path / "show-live.vtt"


class TestPipelineRun:
    def test_final_capture_success(self, tmp_path, afpac_rules):
        runner = FakeRunner()
        pipeline = _pipeline(afpac_rules, runner)
        job = pipeline.new_job(CaptureMode.FINAL, "https://x/p.m3u8", tmp_path / "out" / "show.mp3")

        result = asyncio.run(pipeline.run(job, metadata_tags={"title": "Show"}))

        assert result.success is True
        assert len(result.phrases) == 3
        assert result.phrases[1].tag == "AFPAC"
        assert result.job.completed
        assert runner.programs() == ["ffmpeg", "whisper"]
        assert "-t" not in runner.calls[0]
        assert runner.calls[1][3] == "small.en"

    def test_preview_uses_cap_model_and_offset(self, tmp_path, afpac_rules):
        runner = FakeRunner()
        pipeline = _pipeline(afpac_rules, runner, clock=lambda: 1_000_000 + 120_000)
        job = pipeline.new_job(CaptureMode.PREVIEW, "https://x/d.m3u8", tmp_path / "show-live.mp3")

        result = asyncio.run(pipeline.run(job, broadcast_started_at=1_000_000))

        assert result.success
        assert runner.calls[0][1:3] == ["-t", "30"]
        assert runner.calls[1][3] == "base.en"
        # cue at 5s + 120s since broadcast start
        assert result.phrases[1].timestamp_ms == 125_000

    def test_extraction_failure(self, tmp_path, afpac_rules):
        runner = FakeRunner(returncodes={"ffmpeg": 1})
        pipeline = _pipeline(afpac_rules, runner)
        job = pipeline.new_job(CaptureMode.FINAL, "https://x/p.m3u8", tmp_path / "show.mp3")

        result = asyncio.run(pipeline.run(job))

        assert result.success is False
        assert result.phrases == []
        assert result.job.status(Stage.EXTRACTION) is StageStatus.ERROR
        assert result.job.status(Stage.TRANSCRIPTION) is StageStatus.PENDING
        assert runner.programs() == ["ffmpeg"]
        assert "simulated failure" in result.job.error

    def test_extraction_without_output_file(self, tmp_path, afpac_rules):
        runner = FakeRunner(skip_output=["ffmpeg"])
        pipeline = _pipeline(afpac_rules, runner)
        job = pipeline.new_job(CaptureMode.FINAL, "u", tmp_path / "show.mp3")

        result = asyncio.run(pipeline.run(job))

        assert result.success is False
        assert result.job.status(Stage.EXTRACTION) is StageStatus.ERROR
        assert runner.programs() == ["ffmpeg"]

    def test_tool_not_installed(self, tmp_path, afpac_rules):
        async def missing_runner(args, cwd):
            raise FileNotFoundError(2, "No such file or directory", args[0])

        pipeline = _pipeline(afpac_rules, missing_runner)
        job = pipeline.new_job(CaptureMode.FINAL, "u", tmp_path / "show.mp3")

        result = asyncio.run(pipeline.run(job))

        assert result.success is False
        assert result.job.status(Stage.EXTRACTION) is StageStatus.ERROR

    def test_unwritable_media_dir(self, tmp_path, afpac_rules):
        blocker = tmp_path / "media"
        blocker.write_text("not a directory")
        runner = FakeRunner()
        pipeline = _pipeline(afpac_rules, runner)
        job = pipeline.new_job(CaptureMode.FINAL, "u", blocker / "host" / "show.mp3")

        result = asyncio.run(pipeline.run(job))

        assert result.success is False
        assert result.job.status(Stage.EXTRACTION) is StageStatus.ERROR
        assert runner.programs() == []

    def test_transcription_failure(self, tmp_path, afpac_rules):
        runner = FakeRunner(returncodes={"whisper": 2})
        pipeline = _pipeline(afpac_rules, runner)
        job = pipeline.new_job(CaptureMode.FINAL, "u", tmp_path / "show.mp3")

        result = asyncio.run(pipeline.run(job))

        assert result.success is False
        assert summarize_stages(result.job) == {
            "extraction": "complete",
            "transcription": "error",
            "caption_scan": "pending",
        }

    def test_missing_caption_file(self, tmp_path, afpac_rules):
        runner = FakeRunner(skip_output=["whisper"])
        pipeline = _pipeline(afpac_rules, runner)
        job = pipeline.new_job(CaptureMode.FINAL, "u", tmp_path / "show.mp3")

        result = asyncio.run(pipeline.run(job))

        assert result.success is False
        assert result.phrases == []
        assert result.job.status(Stage.CAPTION_SCAN) is StageStatus.ERROR

    def test_no_keywords_is_success_with_empty_list(self, tmp_path, afpac_rules):
        runner = FakeRunner(vtt=PLAIN_VTT)
        pipeline = _pipeline(afpac_rules, runner)
        job = pipeline.new_job(CaptureMode.FINAL, "u", tmp_path / "show.mp3")

        result = asyncio.run(pipeline.run(job))

        assert result.success is True
        assert result.phrases == []
        assert result.job.completed


class TestFromConfig:
    def test_models_from_config(self, watch_config):
        pipeline = CapturePipeline.from_config(watch_config, runner=FakeRunner())
        assert pipeline.model_for(CaptureMode.PREVIEW) == watch_config.preview_model
        assert pipeline.model_for(CaptureMode.FINAL) == watch_config.final_model
