"""Capture pipeline: ffmpeg extraction → whisper transcription → caption scan.

WHY: A capture turns a playlist URL into an audio file, a caption file and a
keyword phrase list. Each step is an external program that can fail in its
own way. The watch loop needs one awaitable that always answers with a clear
(success, phrases) result and never raises for stage failures.

HOW: CapturePipeline.run() walks the CaptureJob through its stages with the
transition functions from core.job. Extraction and transcription spawn
processes through an injectable runner (default: asyncio subprocesses).
The caption scan delegates to core.captions. Stage failures become
StageExecutionError / ArtifactMissing internally and are converted into a
failed CaptureResult at the run() boundary.

RULES:
- Stages are strictly sequential; a failed stage stops the job
- A failed job returns CaptureResult(success=False, phrases=[])
- Preview extraction is capped at preview_seconds; final is unbounded
- Preview uses the preview_model tier, final uses final_model
- Success requires the caption scan to complete; [] phrases is a success
- Processes are not pooled; each capture spawns its own
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from space_capture.core.captions import CaptionPhrase, KeywordRule, scan_caption_file
from space_capture.core.job import (
    CaptureJob,
    CaptureMode,
    Stage,
    complete_stage,
    fail_stage,
    start_stage,
    with_phrases,
)

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 2000

ProcessRunner = Callable[[Sequence[str], Optional[Path]], Awaitable[Tuple[int, str]]]


class StageExecutionError(Exception):
    """Raised when an external stage process exits abnormally.

    RULES:
    - returncode is None when the process could not be spawned
    - detail carries the tail of stderr or the spawn error
    """

    def __init__(self, stage: Stage, returncode: Optional[int], detail: str = "") -> None:
        self.stage = stage
        self.returncode = returncode
        self.detail = detail
        super().__init__(
            "{} failed (exit {}): {}".format(stage.value, returncode, detail.strip() or "no output")
        )


class ArtifactMissing(Exception):
    """Raised when a stage's expected input or output file does not exist."""

    def __init__(self, stage: Stage, path: Path) -> None:
        self.stage = stage
        self.path = path
        super().__init__("{}: file '{}' not found".format(stage.value, path))


@dataclass
class CaptureResult:
    """Outcome of one pipeline run; phrases is [] whenever success is False."""

    success: bool
    phrases: List[CaptionPhrase] = field(default_factory=list)
    job: Optional[CaptureJob] = None


async def run_process(args: Sequence[str], cwd: Optional[Path] = None) -> Tuple[int, str]:
    """Run an external program to completion.

    Returns:
        (exit code, decoded stderr).

    Raises:
        OSError: If the program cannot be started (e.g. not installed).
    """
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=str(cwd) if cwd else None,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        _, stderr = await process.communicate()
    except asyncio.CancelledError:
        if process.returncode is None:
            process.kill()
            await process.wait()
        raise
    return process.returncode, stderr.decode("utf-8", errors="replace")


def build_extraction_command(
    ffmpeg_bin: str,
    playlist_url: str,
    audio_path: Path,
    duration_s: Optional[int] = None,
    metadata: Optional[Mapping[str, object]] = None,
) -> List[str]:
    """Build the ffmpeg command that copies a playlist into one audio file.

    RULES:
    - "-t <duration>" comes first when a duration cap is given
    - Empty metadata values are skipped
    """
    args: List[str] = [ffmpeg_bin]
    if duration_s:
        args += ["-t", str(duration_s)]
    args += ["-y", "-protocol_whitelist", "file,https,tls,tcp", "-i", playlist_url]
    for key, value in (metadata or {}).items():
        if value in (None, ""):
            continue
        args += ["-metadata", "{}={}".format(key, value)]
    args.append(str(audio_path))
    return args


def build_transcription_command(whisper_bin: str, audio_path: Path, model: str) -> List[str]:
    """Build the whisper command producing a WebVTT file beside the audio."""
    return [
        whisper_bin,
        str(audio_path),
        "--model",
        model,
        "--output_format",
        "vtt",
        "--output_dir",
        str(audio_path.parent),
    ]


def caption_path_for(audio_path: Path) -> Path:
    """whisper names its output after the audio stem: show.mp3 → show.vtt."""
    return audio_path.with_suffix(".vtt")


class CapturePipeline:
    """Runs capture jobs through extraction, transcription and caption scan.

    WHY: Keeps all external-process handling in one place so the lifecycle
    tracker only deals with "capture this URL" and a typed result.

    HOW: Holds the tool locations, model tiers and keyword rules. run()
    threads an immutable CaptureJob through the three stage methods, each
    of which either returns the advanced job or raises a stage error.

    RULES:
    - runner defaults to run_process; tests inject a fake
    - clock returns epoch milliseconds; used for preview timestamp offsets
    """

    def __init__(
        self,
        keyword_rules: Sequence[KeywordRule],
        ffmpeg_bin: str = "ffmpeg",
        whisper_bin: str = "whisper",
        preview_seconds: int = 30,
        preview_model: str = "base.en",
        final_model: str = "small.en",
        runner: Optional[ProcessRunner] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._rules = tuple(keyword_rules)
        self._ffmpeg_bin = ffmpeg_bin
        self._whisper_bin = whisper_bin
        self._preview_seconds = preview_seconds
        self._preview_model = preview_model
        self._final_model = final_model
        self._runner = runner or run_process
        self._clock = clock or (lambda: time.time() * 1000)

    @classmethod
    def from_config(cls, config, runner: Optional[ProcessRunner] = None) -> "CapturePipeline":
        return cls(
            keyword_rules=config.keyword_rules,
            ffmpeg_bin=config.ffmpeg_bin,
            whisper_bin=config.whisper_bin,
            preview_seconds=config.preview_seconds,
            preview_model=config.preview_model,
            final_model=config.final_model,
            runner=runner,
        )

    def model_for(self, mode: CaptureMode) -> str:
        return self._preview_model if mode is CaptureMode.PREVIEW else self._final_model

    def new_job(self, mode: CaptureMode, playlist_url: str, audio_path: Path) -> CaptureJob:
        return CaptureJob(
            mode=mode,
            playlist_url=playlist_url,
            audio_path=audio_path,
            transcript_path=caption_path_for(audio_path),
        )

    async def run(
        self,
        job: CaptureJob,
        metadata_tags: Optional[Mapping[str, object]] = None,
        broadcast_started_at: Optional[int] = None,
    ) -> CaptureResult:
        """Run every stage of a capture job.

        WHY: Callers need one call that either yields phrases or a clean
        failure; stage errors must never escape into the watch loop.

        HOW: Computes the broadcast-time offset at extraction start (preview
        only), then runs extract → transcribe → scan. The first stage error
        marks that stage ERROR and returns a failed result.

        Args:
            job: A fresh CaptureJob (all stages PENDING).
            metadata_tags: Key/value tags embedded in the audio file.
            broadcast_started_at: Broadcast start in epoch ms, if known.

        Returns:
            CaptureResult with the final job record attached.
        """
        elapsed_ms = 0
        if job.mode is CaptureMode.PREVIEW and broadcast_started_at:
            elapsed_ms = max(0, int(self._clock() - broadcast_started_at))

        stages = (
            (Stage.EXTRACTION, lambda j: self._extract(j, metadata_tags)),
            (Stage.TRANSCRIPTION, self._transcribe),
            (Stage.CAPTION_SCAN, lambda j: self._scan(j, elapsed_ms)),
        )
        for stage, handler in stages:
            job = start_stage(job, stage)
            try:
                job = await handler(job)
            except (StageExecutionError, ArtifactMissing) as exc:
                logger.error("Capture %s failed: %s", job.job_id, exc)
                job = fail_stage(job, stage, str(exc))
                return CaptureResult(success=False, phrases=[], job=job)

        return CaptureResult(success=True, phrases=list(job.phrases), job=job)

    async def _extract(self, job: CaptureJob, metadata_tags) -> CaptureJob:
        try:
            job.audio_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StageExecutionError(Stage.EXTRACTION, None, str(exc)) from exc
        duration = self._preview_seconds if job.mode is CaptureMode.PREVIEW else None
        args = build_extraction_command(
            self._ffmpeg_bin, job.playlist_url, job.audio_path, duration, metadata_tags
        )

        started = time.monotonic()
        await self._execute(Stage.EXTRACTION, args, None)
        if not job.audio_path.is_file():
            raise ArtifactMissing(Stage.EXTRACTION, job.audio_path)

        try:
            size_mb = job.audio_path.stat().st_size / 1_000_000
        except OSError as exc:
            raise StageExecutionError(Stage.EXTRACTION, None, str(exc)) from exc
        logger.info(
            "Audio downloaded after %.1fs [%.2fMB] (%s)",
            time.monotonic() - started,
            size_mb,
            job.mode.value,
        )
        return complete_stage(job, Stage.EXTRACTION)

    async def _transcribe(self, job: CaptureJob) -> CaptureJob:
        if not job.audio_path.is_file():
            raise ArtifactMissing(Stage.TRANSCRIPTION, job.audio_path)

        model = self.model_for(job.mode)
        args = build_transcription_command(self._whisper_bin, job.audio_path, model)

        started = time.monotonic()
        await self._execute(Stage.TRANSCRIPTION, args, job.audio_path.parent)
        logger.info("Audio transcribed after %.1fs (model %s)", time.monotonic() - started, model)
        return complete_stage(job, Stage.TRANSCRIPTION)

    async def _scan(self, job: CaptureJob, elapsed_ms: int) -> CaptureJob:
        phrases = scan_caption_file(job.transcript_path, self._rules, elapsed_ms)
        if phrases is None:
            raise ArtifactMissing(Stage.CAPTION_SCAN, job.transcript_path)
        job = with_phrases(job, phrases)
        return complete_stage(job, Stage.CAPTION_SCAN)

    async def _execute(self, stage: Stage, args: Sequence[str], cwd: Optional[Path]) -> None:
        logger.debug("--> %s: %s", stage.value, " ".join(args))
        try:
            returncode, stderr = await self._runner(args, cwd)
        except OSError as exc:
            raise StageExecutionError(stage, None, str(exc))
        logger.debug("<-- %s: exit %s", stage.value, returncode)
        if returncode != 0:
            raise StageExecutionError(stage, returncode, stderr[-_STDERR_TAIL_CHARS:])


def summarize_stages(job: CaptureJob) -> Dict[str, str]:
    """Stage → status value mapping for logs and API responses."""
    return {stage.value: status.value for stage, status in job.stages.items()}
