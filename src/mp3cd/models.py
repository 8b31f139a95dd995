"""Shared data model: file records, jobs, session and burn state, events."""
from __future__ import annotations

import dataclasses
import enum
import itertools
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from mp3cd.errors import Mp3cdError


class Strategy(str, enum.Enum):
    COPY = "copy"
    TRANSCODE_AT_SOURCE_BITRATE = "transcode_at_source_bitrate"
    CONVERT_AT_TARGET_BITRATE = "convert_at_target_bitrate"


class Phase(str, enum.Enum):
    LOSSY = "lossy"
    LOSSLESS = "lossless"


class PriorityClass(enum.IntEnum):
    """Dispatch class within a phase; lower values are dequeued first."""

    HIGH = 0
    NORMAL = 1


class JobState(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED)


class FolderState(str, enum.Enum):
    NOT_STARTED = "not_started"
    SCANNING = "scanning"
    QUEUED = "queued"
    CONVERTING = "converting"
    CONVERTED = "converted"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SessionState(str, enum.Enum):
    IDLE = "idle"
    PHASE1_RUNNING = "phase1_running"
    PHASE1_DONE = "phase1_done"
    PHASE2_RUNNING = "phase2_running"
    ALL_DONE = "all_done"


class DiscStatus(str, enum.Enum):
    NO_DISC = "no_disc"
    BLANK = "blank"
    ERASABLE_WITH_DATA = "erasable_with_data"
    NON_ERASABLE = "non_erasable"


class BurnPhase(str, enum.Enum):
    IDLE = "idle"
    CHECKING_DISC = "checking_disc"
    ERASING = "erasing"
    WRITING = "writing"
    FINALIZING = "finalizing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BurnPhase.SUCCEEDED, BurnPhase.FAILED)


@dataclass(frozen=True)
class AudioFileRecord:
    path: Path
    codec: str
    is_lossless: bool
    duration_s: float
    size_bytes: int
    bitrate_kbps: Optional[int] = None  # lossy sources only
    has_embedded_art: Optional[bool] = None  # None = unknown


_job_ids = itertools.count(1)


@dataclass(eq=False)
class EncodingJob:
    record: AudioFileRecord
    folder_id: str
    strategy: Optional[Strategy]
    phase: Phase
    output_path: Path
    priority: PriorityClass = PriorityClass.NORMAL
    target_bitrate: Optional[int] = None  # lossless: assigned when Phase 1 ends
    state: JobState = JobState.QUEUED
    generation: int = 1
    progress: float = 0.0
    output_bytes: Optional[int] = None
    error: Optional[Mp3cdError] = None
    embed_art: bool = False
    strip_art: bool = False
    artwork_path: Optional[Path] = None
    job_id: int = field(default_factory=lambda: next(_job_ids))

    @property
    def key(self) -> str:
        """Stable identity of the source file across generations."""
        return str(self.record.path)

    @property
    def weight(self) -> float:
        return self.record.duration_s if self.record.duration_s > 0 else 1.0

    @property
    def label(self) -> str:
        return f"{self.folder_id}/{self.record.path.name}#g{self.generation}"

    def next_generation(self, **changes) -> "EncodingJob":
        """Fresh queued copy of this job, superseding it."""
        return dataclasses.replace(
            self,
            generation=self.generation + 1,
            state=JobState.QUEUED,
            progress=0.0,
            output_bytes=None,
            error=None,
            job_id=next(_job_ids),
            **changes,
        )


@dataclass(frozen=True)
class ResolvedBitrate:
    kbps: int
    manual: bool = False
    over_capacity: bool = False
    remaining_bytes: int = 0

    def __str__(self) -> str:
        return f"{self.kbps}{'*' if self.manual else ''} kbps"


@dataclass
class BurnSession:
    disc_status: Optional[DiscStatus] = None
    phase: BurnPhase = BurnPhase.IDLE
    last_raw_progress: Optional[int] = None
    erase_required: bool = False
    error: Optional[Mp3cdError] = None


@dataclass(frozen=True)
class FolderProgress:
    folder_id: str
    fraction_done: float
    state: FolderState


@dataclass(frozen=True)
class AggregateProgress:
    state: SessionState
    overall_fraction_done: float
    resolved_bitrate: Optional[ResolvedBitrate]


@dataclass(frozen=True)
class BurnProgress:
    phase: BurnPhase
    raw_progress: Optional[int]
    overall_fraction_done: float
    error: Optional[Mp3cdError] = None
