"""Bounded worker pool that drains the global job queue (standard library threads).

Each worker owns the job it dequeued and that job's encoder process until the
job is terminal. Outputs are finalized atomically: the encoder's temp file is
renamed into place only if the job was not cancelled meanwhile, so cancelled
jobs never leave a file behind.
"""
from __future__ import annotations

import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Protocol

from loguru import logger

from mp3cd.encoder import EncodeRequest, EncodeResult, discard
from mp3cd.errors import EncoderProcessFailure
from mp3cd.job_queue import JobQueue
from mp3cd.logging import truncate
from mp3cd.models import EncodingJob, JobState
from mp3cd.process import ProcessHandle


MIN_WORKERS = 2
MAX_WORKERS = 8

JobCallback = Callable[[EncodingJob], None]


class Encoder(Protocol):
    def encode(
        self,
        request: EncodeRequest,
        *,
        on_progress: Optional[Callable[[float], None]] = ...,
        on_spawn: Optional[Callable[[ProcessHandle], None]] = ...,
    ) -> EncodeResult: ...


def default_worker_count(cpu_count: Optional[int] = None) -> int:
    n = cpu_count if cpu_count is not None else (os.cpu_count() or MIN_WORKERS)
    return max(MIN_WORKERS, min(MAX_WORKERS, n))


class WorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        encoder: Encoder,
        *,
        max_workers: Optional[int] = None,
        on_progress: Optional[JobCallback] = None,
        on_finished: Optional[JobCallback] = None,
    ) -> None:
        self._queue = queue
        self._encoder = encoder
        self._max_workers = default_worker_count(max_workers)
        self._on_progress = on_progress
        self._on_finished = on_finished
        self._exe: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._running: Dict[int, EncodingJob] = {}
        self._handles: Dict[int, ProcessHandle] = {}

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def start(self) -> None:
        if self._exe is not None:
            return
        self._exe = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="mp3cd-worker")
        for slot in range(self._max_workers):
            self._exe.submit(self._worker_loop, slot)
        logger.debug("worker pool started with {} workers", self._max_workers)

    def shutdown(self, wait: bool = True) -> None:
        """Close the queue and stop workers. Running jobs finish unless cancelled first."""
        self._queue.close()
        if self._exe is not None:
            self._exe.shutdown(wait=wait)
            self._exe = None

    def _worker_loop(self, slot: int) -> None:
        while True:
            job = self._queue.get()
            if job is None:
                return
            with self._lock:
                self._running[job.job_id] = job
            try:
                self._execute(job)
            finally:
                with self._lock:
                    self._running.pop(job.job_id, None)
                    self._handles.pop(job.job_id, None)
                self._queue.task_done(job)
                with self._idle:
                    self._idle.notify_all()

    def _execute(self, job: EncodingJob) -> None:
        try:
            result = self._encode(job)
        except Exception as e:
            logger.exception("Encode crashed for {}", job.label)
            result = EncodeResult(1, None, f"{type(e).__name__}: {e}")
        self._commit(job, result)
        if self._on_finished is not None:
            try:
                self._on_finished(job)
            except Exception:
                logger.exception("Completion handler failed for {}", job.label)

    def _encode(self, job: EncodingJob) -> EncodeResult:
        if job.state is JobState.CANCELLED:
            return EncodeResult(1, None, "", cancelled=True)
        request = EncodeRequest.from_job(job)
        return self._encoder.encode(
            request,
            on_progress=lambda pct: self._progress(job, pct),
            on_spawn=lambda handle: self._attach(job, handle),
        )

    def _attach(self, job: EncodingJob, handle: ProcessHandle) -> None:
        with self._lock:
            cancel_now = job.state is JobState.CANCELLED
            if not cancel_now:
                self._handles[job.job_id] = handle
        if cancel_now:
            handle.cancel()

    def _progress(self, job: EncodingJob, pct: float) -> None:
        job.progress = pct / 100.0
        if self._on_progress is not None:
            self._on_progress(job)

    def _commit(self, job: EncodingJob, result: EncodeResult) -> None:
        """Move the job to a terminal state, finalizing or discarding its output."""
        with self._lock:
            if job.state is JobState.CANCELLED or result.cancelled:
                discard(result.output_tmp)
                job.state = JobState.CANCELLED
                return
            if result.ok:
                try:
                    os.replace(result.output_tmp, job.output_path)
                    job.output_bytes = job.output_path.stat().st_size
                except OSError as e:
                    discard(result.output_tmp)
                    job.error = EncoderProcessFailure(
                        job.record.path, 1, f"Rename failed: {e}", phase=job.phase.value
                    )
                    job.state = JobState.FAILED
                    return
                job.progress = 1.0
                job.state = JobState.COMPLETED
                return
            job.error = EncoderProcessFailure(
                job.record.path,
                result.returncode,
                truncate(result.error),
                phase=job.phase.value,
            )
            job.state = JobState.FAILED
        logger.warning("Encode failed for {}: exit {}", job.record.path, result.returncode)

    def cancel(self, job: EncodingJob) -> bool:
        """Cancel a dequeued job. Idempotent; terminal jobs are left alone."""
        with self._lock:
            if job.state.is_terminal or job.state is JobState.QUEUED:
                return False
            job.state = JobState.CANCELLED
            handle = self._handles.get(job.job_id)
        if handle is not None:
            handle.cancel()
        return True

    def cancel_running(self) -> List[EncodingJob]:
        with self._lock:
            jobs = list(self._running.values())
        return [job for job in jobs if self.cancel(job)]

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no job is running. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._running, timeout)

    def __enter__(self) -> "WorkerPool":
        self.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown(wait=True)
