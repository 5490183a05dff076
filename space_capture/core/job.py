"""Capture job record and its stage state machine.

WHY: A capture runs three external stages in a fixed order (extraction →
transcription → caption scan). Invalid orderings (transcribing audio that
was never extracted) must be impossible, and a job that failed once must
never be quietly resumed. Modelling the job as an immutable value with
explicit transition functions makes both rules checkable in isolation.

HOW: CaptureJob is a frozen dataclass. start_stage(), complete_stage(),
fail_stage() and with_phrases() each validate the transition and return a
new CaptureJob via dataclasses.replace(). The pipeline threads the latest
value through its stages and hands the final record back to its caller.

RULES:
- Stages run in STAGE_ORDER; a stage may start only when its predecessor
  is COMPLETE
- Only PENDING stages may start; only IN_PROGRESS stages may complete
- Once any stage is ERROR the job is terminal: no stage may start again
- Illegal transitions raise StageOrderError
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional, Tuple

from space_capture.core.captions import CaptionPhrase


class CaptureMode(str, enum.Enum):
    """Preview captures are short and cheap; final captures are complete."""

    PREVIEW = "preview"
    FINAL = "final"


class Stage(str, enum.Enum):
    EXTRACTION = "extraction"
    TRANSCRIPTION = "transcription"
    CAPTION_SCAN = "caption_scan"


class StageStatus(str, enum.Enum):
    """Valid states for a single capture stage.

    RULES:
    - pending: not started
    - in_progress: external work running
    - complete: finished and its artifact exists
    - error: failed; the whole job is discarded
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    ERROR = "error"


STAGE_ORDER: Tuple[Stage, ...] = (Stage.EXTRACTION, Stage.TRANSCRIPTION, Stage.CAPTION_SCAN)


class StageOrderError(RuntimeError):
    """Raised when a stage transition would break the stage ordering."""


def _initial_stages() -> Mapping[Stage, StageStatus]:
    return {stage: StageStatus.PENDING for stage in STAGE_ORDER}


@dataclass(frozen=True)
class CaptureJob:
    """One extraction → transcription → caption-scan attempt.

    RULES:
    - job_id: uuid4 hex, unique per attempt
    - mode: PREVIEW (duration-capped, cheap model) or FINAL
    - playlist_url: source the extraction reads
    - audio_path / transcript_path: artifact locations
    - stages: Stage → StageStatus; treat as read-only
    - phrases: result of the caption scan (empty until it completes)
    - error: message of the failing stage, if any
    """

    mode: CaptureMode
    playlist_url: str
    audio_path: Path
    transcript_path: Path
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    stages: Mapping[Stage, StageStatus] = field(default_factory=_initial_stages)
    phrases: Tuple[CaptionPhrase, ...] = ()
    error: Optional[str] = None

    def status(self, stage: Stage) -> StageStatus:
        return self.stages[stage]

    @property
    def failed(self) -> bool:
        return any(s is StageStatus.ERROR for s in self.stages.values())

    @property
    def completed(self) -> bool:
        return all(s is StageStatus.COMPLETE for s in self.stages.values())


def _with_status(job: CaptureJob, stage: Stage, status: StageStatus, **changes) -> CaptureJob:
    stages = dict(job.stages)
    stages[stage] = status
    return replace(job, stages=stages, **changes)


def start_stage(job: CaptureJob, stage: Stage) -> CaptureJob:
    """Move a stage to IN_PROGRESS, enforcing stage order."""
    if job.failed:
        raise StageOrderError(
            "Job {} has a failed stage; {} cannot start".format(job.job_id, stage.value)
        )
    if job.status(stage) is not StageStatus.PENDING:
        raise StageOrderError(
            "Stage {} is {}, expected pending".format(stage.value, job.status(stage).value)
        )
    index = STAGE_ORDER.index(stage)
    if index > 0:
        previous = STAGE_ORDER[index - 1]
        if job.status(previous) is not StageStatus.COMPLETE:
            raise StageOrderError(
                "Stage {} cannot start before {} is complete (is {})".format(
                    stage.value, previous.value, job.status(previous).value
                )
            )
    return _with_status(job, stage, StageStatus.IN_PROGRESS)


def complete_stage(job: CaptureJob, stage: Stage) -> CaptureJob:
    if job.status(stage) is not StageStatus.IN_PROGRESS:
        raise StageOrderError(
            "Stage {} is {}, expected in_progress".format(stage.value, job.status(stage).value)
        )
    return _with_status(job, stage, StageStatus.COMPLETE)


def fail_stage(job: CaptureJob, stage: Stage, error: str) -> CaptureJob:
    """Mark a running stage as ERROR and drop any phrases."""
    if job.status(stage) is not StageStatus.IN_PROGRESS:
        raise StageOrderError(
            "Stage {} is {}, expected in_progress".format(stage.value, job.status(stage).value)
        )
    return _with_status(job, stage, StageStatus.ERROR, error=error, phrases=())


def with_phrases(job: CaptureJob, phrases) -> CaptureJob:
    """Attach caption-scan results; only valid while the scan is running."""
    if job.status(Stage.CAPTION_SCAN) is not StageStatus.IN_PROGRESS:
        raise StageOrderError("Phrases can only be attached during the caption scan")
    return replace(job, phrases=tuple(phrases))
