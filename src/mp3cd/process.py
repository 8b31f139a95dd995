"""External process supervision for encoder and burner invocations.

Processes are spawned through an injectable callable so tests can feed
scripted output without real binaries. Output is read line by line from a
merged stdout/stderr pipe; the last lines are kept as diagnostic detail.

Cancellation is cooperative: terminate first, kill after a grace period.
"""
from __future__ import annotations

import shlex
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Sequence

from loguru import logger


SpawnFn = Callable[[Sequence[str]], Any]

DEFAULT_GRACE_S = 3.0
TAIL_LINES = 40


def cmd_to_string(cmd: Sequence[str]) -> str:
    return " ".join(shlex.quote(str(p)) for p in cmd)


def popen_merged(cmd: Sequence[str]) -> subprocess.Popen:
    """Default spawner: text mode, stderr folded into stdout, no stdin."""
    return subprocess.Popen(
        list(cmd),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
        bufsize=1,
    )


@dataclass
class ProcessResult:
    returncode: int
    cancelled: bool
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.cancelled


class ProcessHandle:
    """A running external process owned by exactly one caller."""

    def __init__(
        self,
        proc: Any,
        *,
        label: str = "",
        grace_s: float = DEFAULT_GRACE_S,
        on_exit: Optional[Callable[["ProcessHandle"], None]] = None,
    ) -> None:
        self._proc = proc
        self.label = label
        self._grace_s = grace_s
        self._on_exit = on_exit
        self._lock = threading.Lock()
        self._cancelled = False
        self._finished = False
        self._kill_timer: Optional[threading.Timer] = None
        self._tail: Deque[str] = deque(maxlen=TAIL_LINES)

    @property
    def pid(self) -> Optional[int]:
        return getattr(self._proc, "pid", None)

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    @property
    def finished(self) -> bool:
        with self._lock:
            return self._finished

    def lines(self) -> Iterator[str]:
        """Yield output lines until the process closes its pipe."""
        stream = self._proc.stdout
        if stream is None:
            return
        for raw in stream:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8", errors="replace")
            line = raw.rstrip("\r\n")
            if line:
                self._tail.append(line)
            yield line

    def tail(self) -> str:
        return "\n".join(self._tail)

    def wait(self) -> int:
        rc = self._proc.wait()
        with self._lock:
            self._finished = True
            timer, self._kill_timer = self._kill_timer, None
        if timer is not None:
            timer.cancel()
        if self._on_exit is not None:
            self._on_exit(self)
        return rc

    def cancel(self) -> bool:
        """Request termination. Idempotent: returns False if already cancelled or finished."""
        with self._lock:
            if self._cancelled or self._finished:
                return False
            self._cancelled = True
        logger.debug("Cancelling {} (pid {})", self.label or "process", self.pid)
        try:
            self._proc.terminate()
        except ProcessLookupError:
            # exited between the check and the signal
            return True
        timer = threading.Timer(self._grace_s, self._kill_if_alive)
        timer.daemon = True
        with self._lock:
            if self._finished:
                return True
            self._kill_timer = timer
        timer.start()
        return True

    def _kill_if_alive(self) -> None:
        if self._proc.poll() is None:
            logger.warning("{} ignored terminate; killing pid {}", self.label or "process", self.pid)
            try:
                self._proc.kill()
            except ProcessLookupError:
                pass


class ProcessSupervisor:
    """Spawns and tracks external processes; can cancel everything it started."""

    def __init__(self, spawn: Optional[SpawnFn] = None, *, grace_s: float = DEFAULT_GRACE_S) -> None:
        self._spawn = spawn or popen_merged
        self._grace_s = grace_s
        self._lock = threading.Lock()
        self._running: Dict[int, ProcessHandle] = {}

    def spawn(self, cmd: Sequence[str], *, label: str = "") -> ProcessHandle:
        """Start `cmd`. OSError from the spawner (e.g. missing binary) propagates."""
        logger.debug("Running: {}", cmd_to_string(cmd))
        proc = self._spawn(cmd)
        handle = ProcessHandle(proc, label=label, grace_s=self._grace_s, on_exit=self._forget)
        with self._lock:
            self._running[id(handle)] = handle
        return handle

    def run(
        self,
        cmd: Sequence[str],
        *,
        label: str = "",
        on_line: Optional[Callable[[str], None]] = None,
        on_spawn: Optional[Callable[[ProcessHandle], None]] = None,
    ) -> ProcessResult:
        handle = self.spawn(cmd, label=label)
        if on_spawn is not None:
            on_spawn(handle)
        for line in handle.lines():
            if on_line is not None:
                on_line(line)
        rc = handle.wait()
        return ProcessResult(returncode=rc, cancelled=handle.cancelled, output=handle.tail())

    def _forget(self, handle: ProcessHandle) -> None:
        with self._lock:
            self._running.pop(id(handle), None)

    def running(self) -> List[ProcessHandle]:
        with self._lock:
            return list(self._running.values())

    def cancel_all(self) -> int:
        """Cancel every tracked process; returns how many were signalled."""
        return sum(1 for handle in self.running() if handle.cancel())
