"""Global two-phase job queue shared by every folder.

One FIFO per (phase, priority class), scanned in that order. Lossless jobs
are only handed out once the lossless pass has been released and no lossy
job is outstanding; the gate lives here rather than in the workers so no
worker discipline can break it.
"""
from __future__ import annotations

import threading
from collections import deque
from typing import Callable, Deque, Dict, Iterator, List, Optional, Tuple

from mp3cd.models import EncodingJob, JobState, Phase, PriorityClass


_Level = Tuple[Phase, PriorityClass]
_ORDER: Tuple[_Level, ...] = tuple(
    (phase, prio) for phase in (Phase.LOSSY, Phase.LOSSLESS) for prio in sorted(PriorityClass)
)


class QueueClosed(RuntimeError):
    pass


class JobQueue:
    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._levels: Dict[_Level, Deque[EncodingJob]] = {level: deque() for level in _ORDER}
        # Lossy jobs queued or running; drops on task_done/remove
        self._lossy_outstanding = 0
        self._lossless_running = 0
        self._lossless_released = False
        self._closed = False
        self._on_lossy_drained: Optional[Callable[[], None]] = None

    def set_drain_callback(self, callback: Optional[Callable[[], None]]) -> None:
        """Called (outside the lock) when task_done retires the last outstanding lossy job."""
        self._on_lossy_drained = callback

    def put(self, job: EncodingJob) -> None:
        with self._cond:
            if self._closed:
                raise QueueClosed("job queue is closed")
            job.state = JobState.QUEUED
            self._levels[(job.phase, job.priority)].append(job)
            if job.phase is Phase.LOSSY:
                self._lossy_outstanding += 1
            self._cond.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[EncodingJob]:
        """Block until a dispatchable job exists; mark it RUNNING and return it.

        Returns None once the queue is closed, or when `timeout` expires.
        """
        with self._cond:
            while True:
                if self._closed:
                    return None
                job = self._pop_ready()
                if job is not None:
                    job.state = JobState.RUNNING
                    if job.phase is Phase.LOSSLESS:
                        self._lossless_running += 1
                    return job
                if not self._cond.wait(timeout):
                    return None

    def _pop_ready(self) -> Optional[EncodingJob]:
        for level in _ORDER:
            if level[0] is Phase.LOSSLESS and not self._lossless_dispatchable():
                return None
            dq = self._levels[level]
            if dq:
                return dq.popleft()
        return None

    def _lossless_dispatchable(self) -> bool:
        return self._lossless_released and self._lossy_outstanding == 0

    def task_done(self, job: EncodingJob) -> None:
        """Retire a job previously returned by `get`."""
        drained = False
        with self._cond:
            if job.phase is Phase.LOSSY:
                self._lossy_outstanding -= 1
                drained = self._lossy_outstanding == 0
            else:
                self._lossless_running -= 1
            self._cond.notify_all()
        if drained and self._on_lossy_drained is not None:
            self._on_lossy_drained()

    def remove(self, job: EncodingJob) -> bool:
        """Cancel a job that is still queued. Returns False if it was already handed out."""
        with self._cond:
            dq = self._levels[(job.phase, job.priority)]
            try:
                dq.remove(job)
            except ValueError:
                return False
            job.state = JobState.CANCELLED
            if job.phase is Phase.LOSSY:
                self._lossy_outstanding -= 1
            self._cond.notify_all()
            return True

    def remove_where(self, predicate: Callable[[EncodingJob], bool]) -> List[EncodingJob]:
        removed: List[EncodingJob] = []
        with self._cond:
            for level, dq in self._levels.items():
                keep: Deque[EncodingJob] = deque()
                for job in dq:
                    if predicate(job):
                        job.state = JobState.CANCELLED
                        removed.append(job)
                        if level[0] is Phase.LOSSY:
                            self._lossy_outstanding -= 1
                    else:
                        keep.append(job)
                self._levels[level] = keep
            self._cond.notify_all()
        return removed

    def hold_lossless(self) -> None:
        with self._cond:
            self._lossless_released = False

    def release_lossless(self) -> None:
        with self._cond:
            self._lossless_released = True
            self._cond.notify_all()

    def retarget_lossless(self, kbps: int) -> int:
        """Assign `kbps` to every queued lossless job; return how many changed."""
        changed = 0
        with self._cond:
            for prio in PriorityClass:
                for job in self._levels[(Phase.LOSSLESS, prio)]:
                    if job.target_bitrate != kbps:
                        job.target_bitrate = kbps
                        changed += 1
        return changed

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    @property
    def lossless_released(self) -> bool:
        with self._cond:
            return self._lossless_released

    @property
    def lossy_outstanding(self) -> int:
        with self._cond:
            return self._lossy_outstanding

    @property
    def lossless_running(self) -> int:
        with self._cond:
            return self._lossless_running

    def snapshot(self) -> List[EncodingJob]:
        """Queued jobs in dispatch order."""
        with self._cond:
            return [job for level in _ORDER for job in self._levels[level]]

    def __len__(self) -> int:
        with self._cond:
            return sum(len(dq) for dq in self._levels.values())

    def __iter__(self) -> Iterator[EncodingJob]:
        return iter(self.snapshot())
