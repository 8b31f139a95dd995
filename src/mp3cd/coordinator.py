"""Two-phase conversion orchestration.

Phase 1 encodes every lossy file (copies and same-bitrate transcodes); their
real output sizes are then measured. Phase 2 encodes every lossless file at the
single bitrate that fills what is left of the disc. Folders can come and go at
any time; whenever the inputs to the plan change, lossless work done at a
stale bitrate is thrown away and re-queued as a new job generation.

The coordinator is the only writer of folder and session state. Workers report
back through `_on_job_finished`; completions of superseded generations are
ignored.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from mp3cd.artwork import mp3_bitrate_kbps
from mp3cd.config import CD_CAPACITY_BYTES, Mp3cdSettings
from mp3cd.encoder import FFmpegEncoder
from mp3cd.errors import CapacityExceeded, UnsupportedCodec
from mp3cd.events import EventBus
from mp3cd.job_queue import JobQueue
from mp3cd.logging import log_event
from mp3cd.models import (
    AggregateProgress,
    AudioFileRecord,
    EncodingJob,
    FolderProgress,
    FolderState,
    JobState,
    Phase,
    PriorityClass,
    ResolvedBitrate,
    SessionState,
    Strategy,
)
from mp3cd.output import OutputLocationResolver
from mp3cd.paths import unique_output_names
from mp3cd.planner import DEFAULT_MAX_KBPS, DEFAULT_MIN_KBPS, CapacityBudget
from mp3cd.process import ProcessSupervisor
from mp3cd.scheduler import Encoder, WorkerPool
from mp3cd.strategy import phase_for, select_for, source_transcode_bitrate


BitrateProbe = Callable[[Path], Optional[int]]


@dataclass
class _Folder:
    folder_id: str
    name: str
    out_dir: Path
    artwork: Optional[Path] = None
    priority: PriorityClass = PriorityClass.NORMAL
    state: FolderState = FolderState.NOT_STARTED
    jobs: Dict[str, EncodingJob] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.state is not FolderState.CANCELLED


def _weighted_fraction(jobs: Iterable[EncodingJob]) -> float:
    total = 0.0
    done = 0.0
    for job in jobs:
        w = job.weight
        total += w
        done += w * (1.0 if job.state.is_terminal else job.progress)
    return done / total if total else 1.0


class ConversionCoordinator:
    def __init__(
        self,
        encoder: Encoder,
        resolver: OutputLocationResolver,
        *,
        target_capacity_bytes: int = CD_CAPACITY_BYTES,
        min_kbps: int = DEFAULT_MIN_KBPS,
        max_kbps: int = DEFAULT_MAX_KBPS,
        manual_bitrate_kbps: Optional[int] = None,
        embed_album_art: bool = False,
        workers: Optional[int] = None,
        bitrate_probe: BitrateProbe = mp3_bitrate_kbps,
        autostart: bool = True,
    ) -> None:
        self.resolver = resolver
        self.embed_album_art = embed_album_art
        self._bitrate_probe = bitrate_probe
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self.budget = CapacityBudget(
            target_capacity_bytes,
            min_kbps=min_kbps,
            max_kbps=max_kbps,
            manual_override_kbps=manual_bitrate_kbps,
        )
        self.queue = JobQueue()
        self.queue.set_drain_callback(self._on_lossy_drained)
        self.pool = WorkerPool(
            self.queue,
            encoder,
            max_workers=workers,
            on_progress=self._on_job_progress,
            on_finished=self._on_job_finished,
        )
        self._folders: Dict[str, _Folder] = {}
        self._state = SessionState.IDLE
        self._resolved: Optional[ResolvedBitrate] = None
        self._capacity_warning: Optional[CapacityExceeded] = None
        self._cancelling = False
        self._halted = False
        self._progress_bus: EventBus[FolderProgress] = EventBus("folder-progress")
        self._aggregate_bus: EventBus[AggregateProgress] = EventBus("aggregate-progress")
        if autostart:
            self.pool.start()

    @classmethod
    def from_settings(
        cls,
        settings: Mp3cdSettings,
        *,
        encoder: Optional[Encoder] = None,
        resolver: Optional[OutputLocationResolver] = None,
    ) -> "ConversionCoordinator":
        if encoder is None:
            supervisor = ProcessSupervisor(grace_s=settings.cancel_grace_s)
            encoder = FFmpegEncoder(supervisor, ffmpeg=settings.ffmpeg_path)
        if resolver is None:
            resolver = OutputLocationResolver(
                Path(settings.output_root).expanduser() if settings.output_root else None,
                bundle_path=Path(settings.bundle_path).expanduser() if settings.bundle_path else None,
            )
        return cls(
            encoder,
            resolver,
            target_capacity_bytes=settings.target_capacity_bytes,
            min_kbps=settings.min_lossless_kbps,
            max_kbps=settings.max_lossless_kbps,
            manual_bitrate_kbps=settings.manual_bitrate_kbps,
            embed_album_art=settings.embed_album_art,
            workers=settings.workers,
        )

    # ------------------------------------------------------------------ caller API

    def add_folder(
        self,
        folder_id: str,
        records: Iterable[AudioFileRecord],
        *,
        name: Optional[str] = None,
        artwork: Optional[Path] = None,
        priority: Optional[PriorityClass] = None,
    ) -> FolderState:
        """Classify and enqueue a folder's files. Re-adding a folder replaces it."""
        records = list(records)
        with self._lock:
            if folder_id in self._folders:
                self._drop_folder(self._folders.pop(folder_id))
            self._halted = False
            folder = _Folder(folder_id, name or folder_id, self.resolver.resolve(folder_id), artwork)
            folder.state = FolderState.SCANNING
            self._folders[folder_id] = folder
            self.resolver.purge_partials(folder_id)

            names = unique_output_names(r.path for r in records)
            jobs = [self._make_job(folder, r, folder.out_dir / n) for r, n in zip(records, names)]
            lossy_only = not any(j.phase is Phase.LOSSLESS for j in jobs if j.strategy is not None)
            folder.priority = priority if priority is not None else (
                PriorityClass.HIGH if lossy_only else PriorityClass.NORMAL
            )
            pending: List[EncodingJob] = []
            for job in jobs:
                job.priority = folder.priority
                folder.jobs[job.key] = job
                if job.state is JobState.FAILED or self._adopt_existing(job):
                    continue
                pending.append(job)
            self._enqueue(pending)
            log_event(
                "folder_added",
                folder_id=folder_id,
                files=len(jobs),
                queued=len(pending),
                lossless=sum(1 for j in jobs if j.phase is Phase.LOSSLESS),
                failed=sum(1 for j in jobs if j.state is JobState.FAILED),
                priority=folder.priority.name.lower(),
            )
            self._refresh_folder(folder)
            self._after_change()
            return folder.state

    def remove_folder(self, folder_id: str, *, delete_output: bool = True) -> bool:
        with self._lock:
            folder = self._folders.pop(folder_id, None)
            if folder is None:
                return False
            self._drop_folder(folder)
            if delete_output:
                self.resolver.delete_folder_output(folder_id)
            log_event("folder_removed", folder_id=folder_id, deleted_output=delete_output)
            self._after_change()
            return True

    def set_manual_bitrate(self, kbps: Optional[int]) -> None:
        """Pin the lossless bitrate (None returns to automatic planning)."""
        self.budget.set_manual_override(kbps)
        with self._lock:
            log_event("manual_bitrate", kbps=kbps, msg=f"manual bitrate {kbps or 'auto'}")
            self._after_change()

    def source_changed(self, folder_id: str, record: AudioFileRecord) -> Optional[EncodingJob]:
        """Re-encode one file whose source changed (or appeared) in a known folder."""
        with self._lock:
            folder = self._folders.get(folder_id)
            if folder is None:
                raise KeyError(folder_id)
            key = str(record.path)
            old = folder.jobs.get(key)
            if old is not None:
                self._cancel_job(old)
                old.output_path.unlink(missing_ok=True)
                output_path = old.output_path
                generation = old.generation + 1
            else:
                taken = {j.output_path.name for j in folder.jobs.values()}
                output_path = folder.out_dir / unique_output_names([record.path], taken=taken)[0]
                generation = 1
            self.budget.forget(key)
            job = self._make_job(folder, record, output_path, generation=generation)
            job.priority = folder.priority
            folder.jobs[key] = job
            if job.state is not JobState.FAILED:
                self._halted = False
                folder.state = FolderState.QUEUED
                self._enqueue([job])
            log_event("source_changed", folder_id=folder_id, path=key, generation=generation)
            self._refresh_folder(folder)
            self._after_change()
            return job

    def cancel_all(self, *, wait: bool = True, timeout: Optional[float] = None) -> bool:
        """Cancel queued and running jobs; completed output is kept.

        With `wait`, blocks until every running job has acknowledged
        cancellation. Returns False if that wait timed out.
        """
        with self._lock:
            self._cancelling = True
            self.queue.hold_lossless()
            dropped = self.queue.remove_where(lambda job: True)
            signalled = 0
            for folder in self._folders.values():
                for job in folder.jobs.values():
                    if job.state is JobState.RUNNING and self.pool.cancel(job):
                        signalled += 1
            signalled += len(self.pool.cancel_running())
        idle = self.pool.wait_idle(timeout) if wait else False
        with self._lock:
            affected = 0
            for folder in self._folders.values():
                hit = any(job.state is JobState.CANCELLED for job in folder.jobs.values())
                if hit and folder.active:
                    affected += 1
                    folder.state = FolderState.CANCELLED
                    for key in folder.jobs:
                        self.budget.forget(key)
                    self.resolver.purge_partials(folder.folder_id)
            self._cancelling = False
            self._halted = True
            log_event(
                "cancelled",
                queued=len(dropped),
                running=signalled,
                folders=affected,
                acknowledged=idle if wait else None,
            )
            self._refresh_session()
            for folder in self._folders.values():
                self._publish_folder(folder)
        return idle if wait else True

    def subscribe_progress(self, callback: Optional[Callable[[FolderProgress], None]] = None):
        """Folder progress events. Without a callback returns an iterable Subscription."""
        return self._progress_bus.subscribe(callback)

    def subscribe_aggregate(self, callback: Optional[Callable[[AggregateProgress], None]] = None):
        return self._aggregate_bus.subscribe(callback)

    def wait_until_done(self, timeout: Optional[float] = None) -> bool:
        """Block until nothing is left to encode (ALL_DONE or IDLE)."""
        with self._changed:
            return self._changed.wait_for(
                lambda: self._state in (SessionState.ALL_DONE, SessionState.IDLE), timeout
            )

    def close(self) -> None:
        self.cancel_all(wait=True)
        self.pool.shutdown(wait=True)
        self._progress_bus.close()
        self._aggregate_bus.close()

    # ------------------------------------------------------------------ queries

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    @property
    def resolved_bitrate(self) -> Optional[ResolvedBitrate]:
        with self._lock:
            return self._resolved

    @property
    def capacity_warning(self) -> Optional[CapacityExceeded]:
        with self._lock:
            return self._capacity_warning

    @property
    def over_capacity(self) -> bool:
        with self._lock:
            return self._capacity_warning is not None

    def folder_state(self, folder_id: str) -> FolderState:
        with self._lock:
            folder = self._folders.get(folder_id)
            return folder.state if folder is not None else FolderState.NOT_STARTED

    def folder_progress(self, folder_id: str) -> float:
        with self._lock:
            return _weighted_fraction(self._folders[folder_id].jobs.values())

    def overall_progress(self) -> float:
        with self._lock:
            return _weighted_fraction(self._active_jobs())

    def jobs(self, folder_id: Optional[str] = None) -> List[EncodingJob]:
        with self._lock:
            if folder_id is not None:
                return list(self._folders[folder_id].jobs.values())
            return [j for f in self._folders.values() for j in f.jobs.values()]

    def failed_jobs(self) -> List[EncodingJob]:
        return [j for j in self.jobs() if j.state is JobState.FAILED]

    def completed_folders(self) -> List[Tuple[str, str]]:
        """(folder_id, name) of converted folders, in the order they were added."""
        with self._lock:
            return [(f.folder_id, f.name) for f in self._folders.values() if f.state is FolderState.CONVERTED]

    def folder_output_size(self, folder_id: str) -> int:
        return self.resolver.folder_output_size(folder_id)

    def measured_output_bytes(self) -> int:
        with self._lock:
            return sum(j.output_bytes or 0 for j in self._active_jobs() if j.state is JobState.COMPLETED)

    # ------------------------------------------------------------------ job plumbing

    def _make_job(
        self,
        folder: _Folder,
        record: AudioFileRecord,
        output_path: Path,
        *,
        generation: int = 1,
    ) -> EncodingJob:
        try:
            strategy = select_for(record, embed_missing_art=self.embed_album_art)
        except UnsupportedCodec as e:
            log_event("unsupported_codec", level="WARNING", folder_id=folder.folder_id, path=record.path, codec=record.codec)
            return EncodingJob(
                record=record,
                folder_id=folder.folder_id,
                strategy=None,
                phase=Phase.LOSSY,
                output_path=output_path,
                state=JobState.FAILED,
                generation=generation,
                error=e,
            )
        target = None
        if strategy is Strategy.TRANSCODE_AT_SOURCE_BITRATE:
            target = source_transcode_bitrate(record.bitrate_kbps)
        embed = self.embed_album_art and strategy is not Strategy.COPY
        return EncodingJob(
            record=record,
            folder_id=folder.folder_id,
            strategy=strategy,
            phase=phase_for(strategy),
            output_path=output_path,
            target_bitrate=target,
            generation=generation,
            embed_art=embed,
            strip_art=strategy is Strategy.COPY and not self.embed_album_art,
            artwork_path=folder.artwork if embed else None,
        )

    def _adopt_existing(self, job: EncodingJob) -> bool:
        """Treat an output left by an earlier session as done."""
        if not job.output_path.is_file():
            return False
        size = job.output_path.stat().st_size
        job.state = JobState.COMPLETED
        job.progress = 1.0
        job.output_bytes = size
        if job.phase is Phase.LOSSY:
            self.budget.record_lossy(job.key, size)
        else:
            # checked against the plan when Phase 1 ends
            job.target_bitrate = self._bitrate_probe(job.output_path)
        logger.debug("resuming {} from existing output", job.label)
        return True

    def _enqueue(self, jobs: List[EncodingJob]) -> None:
        if not jobs:
            return
        # lossless jobs need a fresh plan before they may run
        self.queue.hold_lossless()
        if any(j.phase is Phase.LOSSY for j in jobs):
            self._preempt_lossless()
        for job in sorted(jobs, key=lambda j: j.phase is Phase.LOSSLESS):
            self.queue.put(job)

    def _preempt_lossless(self) -> None:
        """Send running lossless jobs back to the queue so Phase 1 can run first."""
        for folder in self._folders.values():
            for job in list(folder.jobs.values()):
                if job.phase is Phase.LOSSLESS and job.state is JobState.RUNNING and self.pool.cancel(job):
                    self._requeue(folder, job, reason="preempted")

    def _requeue(self, folder: _Folder, job: EncodingJob, *, reason: str, **changes) -> EncodingJob:
        new = job.next_generation(**changes)
        folder.jobs[job.key] = new
        self.queue.put(new)
        log_event(
            "job_requeued",
            level="DEBUG",
            folder_id=folder.folder_id,
            path=job.record.path,
            generation=new.generation,
            reason=reason,
        )
        return new

    def _cancel_job(self, job: EncodingJob) -> None:
        if job.state.is_terminal:
            return
        if not self.queue.remove(job):
            self.pool.cancel(job)

    def _drop_folder(self, folder: _Folder) -> None:
        for job in folder.jobs.values():
            self._cancel_job(job)
            self.budget.forget(job.key)

    def _active_jobs(self) -> List[EncodingJob]:
        return [j for f in self._folders.values() if f.active for j in f.jobs.values()]

    # ------------------------------------------------------------------ planning

    def _after_change(self) -> None:
        self._replan_if_ready()
        self._refresh_session()

    def _replan_if_ready(self) -> None:
        if self._cancelling or self._halted:
            return
        if self.queue.lossy_outstanding == 0 and self._folders:
            self._replan()

    def _on_lossy_drained(self) -> None:
        with self._lock:
            self._replan_if_ready()
            self._refresh_session()

    def _replan(self) -> None:
        lossless: List[Tuple[_Folder, EncodingJob]] = [
            (f, j)
            for f in self._folders.values()
            if f.active
            for j in list(f.jobs.values())
            if j.phase is Phase.LOSSLESS and j.state is not JobState.FAILED
        ]
        duration = sum(j.record.duration_s for _, j in lossless)
        resolved = self.budget.resolve(duration)
        previous = self._resolved
        self._resolved = resolved
        if resolved is None:
            self._capacity_warning = None
            self.queue.release_lossless()
            return

        kbps = resolved.kbps
        retargeted = self.queue.retarget_lossless(kbps)
        invalidated = 0
        for folder, job in lossless:
            if job.target_bitrate == kbps:
                continue
            was_running = job.state is JobState.RUNNING
            if was_running and not self.pool.cancel(job) and job.state is not JobState.COMPLETED:
                continue
            # a running job may have committed at the old bitrate in the meantime
            if job.state is JobState.COMPLETED:
                job.output_path.unlink(missing_ok=True)
            elif not was_running:
                continue
            self._requeue(folder, job, reason="bitrate_changed", target_bitrate=kbps)
            invalidated += 1
        self._capacity_warning = (
            CapacityExceeded(
                int(resolved.remaining_bytes * 8 // duration // 1000) if duration else 0,
                kbps,
                resolved.remaining_bytes,
            )
            if resolved.over_capacity
            else None
        )
        if previous != resolved or invalidated:
            log_event(
                "bitrate_resolved",
                msg=f"lossless bitrate {resolved}",
                kbps=kbps,
                manual=resolved.manual,
                over_capacity=resolved.over_capacity,
                measured_lossy_bytes=self.budget.measured_lossy_bytes(),
                remaining_bytes=resolved.remaining_bytes,
                lossless_duration_s=round(duration, 3),
                retargeted=retargeted,
                invalidated=invalidated,
            )
        for folder in {f.folder_id: f for f, _ in lossless}.values():
            self._refresh_folder(folder)
        self.queue.release_lossless()

    # ------------------------------------------------------------------ worker callbacks

    def _is_current(self, job: EncodingJob) -> Optional[_Folder]:
        folder = self._folders.get(job.folder_id)
        if folder is not None and folder.jobs.get(job.key) is job:
            return folder
        return None

    def _on_job_progress(self, job: EncodingJob) -> None:
        with self._lock:
            folder = self._is_current(job)
            if folder is None:
                return
            self._publish_folder(folder)
            self._publish_aggregate()

    def _on_job_finished(self, job: EncodingJob) -> None:
        with self._lock:
            folder = self._is_current(job)
            if folder is None:
                logger.debug("ignoring superseded {} ({})", job.label, job.state.value)
                return
            if job.state is JobState.COMPLETED and job.phase is Phase.LOSSY:
                self.budget.record_lossy(job.key, job.output_bytes or 0)
            if job.state is JobState.FAILED and job.error is not None:
                log_event(
                    "job_failed",
                    level="WARNING",
                    msg=str(job.error),
                    folder_id=job.folder_id,
                    path=job.record.path,
                    phase=job.phase,
                    detail=job.error.detail,
                )
            self._refresh_folder(folder)
            self._refresh_session()

    # ------------------------------------------------------------------ state

    def _refresh_folder(self, folder: _Folder) -> None:
        if not folder.active and self._halted:
            return
        states = [j.state for j in folder.jobs.values()]
        if all(s.is_terminal for s in states):
            if JobState.CANCELLED in states:
                new = FolderState.CANCELLED
            elif JobState.FAILED in states:
                new = FolderState.FAILED
            else:
                new = FolderState.CONVERTED
        elif any(s is not JobState.QUEUED for s in states):
            new = FolderState.CONVERTING
        else:
            new = FolderState.QUEUED
        if new is not folder.state:
            folder.state = new
            log_event("folder_state", level="DEBUG", folder_id=folder.folder_id, state=new)
        self._publish_folder(folder)

    def _derive_state(self) -> SessionState:
        jobs = self._active_jobs()
        if self._halted or not jobs:
            return SessionState.IDLE
        if any(j.phase is Phase.LOSSY and not j.state.is_terminal for j in jobs):
            return SessionState.PHASE1_RUNNING
        if any(j.phase is Phase.LOSSLESS and not j.state.is_terminal for j in jobs):
            if self.queue.lossless_released:
                return SessionState.PHASE2_RUNNING
            return SessionState.PHASE1_DONE
        return SessionState.ALL_DONE

    def _refresh_session(self) -> None:
        self._set_state(self._derive_state())

    def _set_state(self, state: SessionState) -> None:
        if state is not self._state:
            logger.debug("session {} -> {}", self._state.value, state.value)
            self._state = state
            self._changed.notify_all()
        self._publish_aggregate()

    def _publish_folder(self, folder: _Folder) -> None:
        self._progress_bus.publish(
            FolderProgress(folder.folder_id, _weighted_fraction(folder.jobs.values()), folder.state)
        )

    def _publish_aggregate(self) -> None:
        self._aggregate_bus.publish(
            AggregateProgress(self._state, _weighted_fraction(self._active_jobs()), self._resolved)
        )
