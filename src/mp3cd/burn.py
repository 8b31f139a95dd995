"""Burn flow: disc check, erase, write, finalize.

`hdiutil burn -puppetstrings` reports a single 0-100 number (and -1 for
steps it cannot measure). When a rewritable disc is erased first, the same
number runs from 0 to 100 twice, once for the erase and once for the write.
Nothing in the output names the phase, so `BurnPhaseTracker` infers it from
the shape of the stream:

- erasing, and the value drops from at least ERASE_HIGH_WATERMARK to below
  ERASE_RESTART_CEILING: writing has started
- writing, the last value was at least FINALIZE_THRESHOLD, and an
  indeterminate value arrives: the drive is closing the session
- once finalizing, later values never move the phase back

These thresholds are tuned against observed hdiutil output, not a documented
protocol, and should be treated as best-effort. The tracker itself is a
synchronous reducer so it can be tested without a drive.
"""
from __future__ import annotations

import re
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, List, Optional

from loguru import logger

from mp3cd.errors import BurnProcessFailure, DiscAbsent, DiscUnusable, Mp3cdError
from mp3cd.image import ImageBuilder
from mp3cd.logging import log_event, truncate
from mp3cd.models import BurnPhase, BurnProgress, BurnSession, DiscStatus, SessionState
from mp3cd.output import OutputLocationResolver
from mp3cd.paths import sanitize_segment
from mp3cd.process import ProcessHandle, ProcessSupervisor

if TYPE_CHECKING:
    from mp3cd.coordinator import ConversionCoordinator


ERASE_HIGH_WATERMARK = 50
ERASE_RESTART_CEILING = 20
FINALIZE_THRESHOLD = 95

# Share of the overall bar given to erasing, and where finalizing starts
ERASE_SHARE = 0.3
FINALIZE_START = 0.95

_ERASABLE_RE = re.compile(r"erasable\s*:\s*yes|\b(?:cd|dvd)[-+]rw\b")


def parse_disc_status(text: str) -> DiscStatus:
    """Map `drutil status` output to a disc state."""
    lower = (text or "").lower()
    if "no media" in lower:
        return DiscStatus.NO_DISC
    if "blank" in lower:
        return DiscStatus.BLANK
    if _ERASABLE_RE.search(lower):
        return DiscStatus.ERASABLE_WITH_DATA
    return DiscStatus.NON_ERASABLE


def parse_progress_line(line: str) -> Optional[int]:
    """`PERCENT:12.5` -> 13, `PERCENT:-1.000000` -> -1, anything else -> None."""
    line = line.strip()
    if not line.startswith("PERCENT:"):
        return None
    try:
        return round(float(line[len("PERCENT:"):]))
    except ValueError:
        return None


@dataclass(frozen=True)
class PhaseThresholds:
    erase_high_watermark: int = ERASE_HIGH_WATERMARK
    erase_restart_ceiling: int = ERASE_RESTART_CEILING
    finalize_threshold: int = FINALIZE_THRESHOLD


class BurnPhaseTracker:
    """State machine for one burn attempt (one disc insertion)."""

    def __init__(self, thresholds: Optional[PhaseThresholds] = None) -> None:
        self.thresholds = thresholds or PhaseThresholds()
        self.session = BurnSession()
        self.cancelled = False
        self._erase = False
        self._peak = 0
        self._last: Optional[int] = None
        self._fraction = 0.0

    @property
    def phase(self) -> BurnPhase:
        return self.session.phase

    @property
    def overall_fraction(self) -> float:
        return self._fraction

    def check_disc(self) -> BurnPhase:
        if self.phase is not BurnPhase.IDLE:
            raise RuntimeError(f"cannot check disc while {self.phase.value}")
        self.session.phase = BurnPhase.CHECKING_DISC
        return self.phase

    def disc_status(self, status: DiscStatus, detail: str = "") -> BurnPhase:
        self.session.disc_status = status
        if status is DiscStatus.NO_DISC:
            return self.fail(DiscAbsent(detail))
        if status is DiscStatus.NON_ERASABLE:
            return self.fail(DiscUnusable(detail))
        self.session.erase_required = status is DiscStatus.ERASABLE_WITH_DATA
        return self.phase

    def start(self, *, erase: Optional[bool] = None) -> BurnPhase:
        """Enter the first burn phase. `erase` defaults to what the disc check found."""
        if self.phase is not BurnPhase.CHECKING_DISC:
            raise RuntimeError(f"cannot start burning while {self.phase.value}")
        self._erase = self.session.erase_required if erase is None else erase
        self.session.phase = BurnPhase.ERASING if self._erase else BurnPhase.WRITING
        self._peak = 0
        self._last = None
        return self.phase

    def observe(self, raw: int) -> BurnPhase:
        s = self.session
        if s.phase not in (BurnPhase.ERASING, BurnPhase.WRITING, BurnPhase.FINALIZING):
            return s.phase
        s.last_raw_progress = raw
        t = self.thresholds
        if raw < 0:
            if s.phase is BurnPhase.WRITING and self._last is not None and self._last >= t.finalize_threshold:
                s.phase = BurnPhase.FINALIZING
                self._advance(FINALIZE_START)
            return s.phase
        if (
            s.phase is BurnPhase.ERASING
            and self._peak >= t.erase_high_watermark
            and raw < t.erase_restart_ceiling
        ):
            s.phase = BurnPhase.WRITING
            self._peak = 0
        self._peak = max(self._peak, raw)
        self._last = raw
        self._advance(self._fraction_for(s.phase, raw))
        return s.phase

    def exited(self, returncode: int, output: str = "") -> BurnPhase:
        s = self.session
        if s.phase.is_terminal:
            return s.phase
        if returncode != 0:
            return self.fail(BurnProcessFailure(returncode, truncate(output), phase=s.phase.value))
        if s.phase is BurnPhase.ERASING:
            # the tool is authoritative about success; the stream just never showed the boundary
            logger.warning("Burn finished without a visible erase/write boundary")
        s.phase = BurnPhase.SUCCEEDED
        self._fraction = 1.0
        return s.phase

    def cancel(self) -> BurnPhase:
        """Record a user cancellation. Not an error: the session just ends."""
        if not self.phase.is_terminal:
            self.cancelled = True
            self.session.phase = BurnPhase.FAILED
        return self.phase

    def fail(self, error: Mp3cdError) -> BurnPhase:
        self.session.error = error
        self.session.phase = BurnPhase.FAILED
        return self.phase

    def event(self) -> BurnProgress:
        return BurnProgress(
            phase=self.phase,
            raw_progress=self.session.last_raw_progress,
            overall_fraction_done=self._fraction,
            error=self.session.error,
        )

    def _fraction_for(self, phase: BurnPhase, raw: int) -> float:
        pct = max(0, min(100, raw)) / 100.0
        if phase is BurnPhase.ERASING:
            return ERASE_SHARE * pct
        if phase is BurnPhase.WRITING:
            start = ERASE_SHARE if self._erase else 0.0
            return start + (FINALIZE_START - start) * pct
        return FINALIZE_START + (1.0 - FINALIZE_START) * pct

    def _advance(self, fraction: float) -> None:
        self._fraction = max(self._fraction, min(1.0, fraction))


class HdiutilBurner:
    """Burn-tool adapter for macOS (`drutil` probe, `hdiutil burn`)."""

    def __init__(
        self,
        supervisor: Optional[ProcessSupervisor] = None,
        *,
        hdiutil: str = "hdiutil",
        drutil: str = "drutil",
    ) -> None:
        self.supervisor = supervisor or ProcessSupervisor()
        self.hdiutil = hdiutil
        self.drutil = drutil

    def probe_disc(self) -> str:
        result = self.supervisor.run([self.drutil, "status"], label="drutil status")
        if result.returncode != 0:
            raise Mp3cdError(
                "Disc status probe failed",
                tool=self.drutil,
                phase=BurnPhase.CHECKING_DISC.value,
                detail=truncate(result.output),
            )
        return result.output

    def burn_command(self, image: Path, volume_label: str, erase: bool, simulate: bool) -> List[str]:
        # the label is already baked into the image by makehybrid
        cmd = [self.hdiutil, "burn", "-noverifyburn", "-puppetstrings"]
        if erase:
            cmd.append("-erase")
        if simulate:
            cmd.append("-testburn")
        cmd.append(str(image))
        return cmd

    def spawn_burn(self, image: Path, volume_label: str, erase: bool, simulate: bool) -> ProcessHandle:
        cmd = self.burn_command(image, volume_label, erase, simulate)
        return self.supervisor.spawn(cmd, label=f"burn {volume_label}")


class BurnOrchestrator:
    """Image creation plus one burn attempt at a time.

    `start_burn` and `burn_another` are generators of `BurnProgress` that end
    with a SUCCEEDED or FAILED event. Converted audio is never touched, so a
    failed attempt can be retried with `burn_another`.
    """

    def __init__(
        self,
        burner: HdiutilBurner,
        image_builder: ImageBuilder,
        resolver: OutputLocationResolver,
        coordinator: Optional["ConversionCoordinator"] = None,
        *,
        thresholds: Optional[PhaseThresholds] = None,
    ) -> None:
        self.burner = burner
        self.image_builder = image_builder
        self.resolver = resolver
        self.coordinator = coordinator
        self.thresholds = thresholds or PhaseThresholds()
        self.last_image: Optional[Path] = None
        self.last_label: Optional[str] = None
        self._lock = threading.Lock()
        self._handle: Optional[ProcessHandle] = None
        self._cancel_requested = False

    def start_burn(self, volume_label: str, simulate: bool = False) -> Iterator[BurnProgress]:
        if self.coordinator is None:
            raise Mp3cdError("No conversion session to burn from", phase="image")
        if self.coordinator.state is not SessionState.ALL_DONE:
            raise Mp3cdError(
                "Conversion is not finished",
                phase="image",
                detail=self.coordinator.state.value,
            )
        folders = self.coordinator.completed_folders()
        if not folders:
            raise Mp3cdError("No converted folders to burn", phase="image")
        staging = self.resolver.create_staging(folders)
        image = self.resolver.session_dir / f"{sanitize_segment(volume_label)}.iso"
        self.image_builder.build(staging, image, volume_label)
        self.last_image = image
        self.last_label = volume_label
        log_event("image_created", image=image, folders=len(folders), volume_label=volume_label)
        return self._burn(image, volume_label, simulate)

    def burn_another(self, simulate: bool = False) -> Iterator[BurnProgress]:
        """Burn the previous image again without touching the conversion session."""
        if self.last_image is None or not self.last_image.is_file():
            raise Mp3cdError("No disc image from a previous burn", phase="image", path=self.last_image)
        return self._burn(self.last_image, self.last_label or self.last_image.stem, simulate)

    def cancel(self) -> bool:
        """Best effort: hdiutil may not stop safely mid-write, and the disc may be unusable afterwards."""
        with self._lock:
            self._cancel_requested = True
            handle = self._handle
        if handle is None:
            return False
        logger.warning("Cancelling burn; the disc may be left unusable")
        return handle.cancel()

    def _burn(self, image: Path, volume_label: str, simulate: bool) -> Iterator[BurnProgress]:
        with self._lock:
            self._cancel_requested = False
        tracker = BurnPhaseTracker(self.thresholds)
        tracker.check_disc()
        yield tracker.event()

        try:
            text = self.burner.probe_disc()
        except Mp3cdError as e:
            tracker.fail(e)
            yield self._finish(tracker, image)
            return
        except OSError as e:
            tracker.fail(Mp3cdError("Disc status probe failed", tool=self.burner.drutil, phase="checking_disc", detail=str(e)))
            yield self._finish(tracker, image)
            return
        tracker.disc_status(parse_disc_status(text), truncate(text))
        if tracker.phase.is_terminal:
            yield self._finish(tracker, image)
            return

        # a simulated burn never erases
        erase = tracker.session.erase_required and not simulate
        tracker.start(erase=erase)
        log_event(
            "burn_started",
            image=image,
            volume_label=volume_label,
            disc=tracker.session.disc_status,
            erase=erase,
            simulate=simulate,
        )
        yield tracker.event()

        try:
            handle = self.burner.spawn_burn(image, volume_label, erase, simulate)
        except OSError as e:
            tracker.fail(BurnProcessFailure(127, str(e), phase=tracker.phase.value, tool=self.burner.hdiutil))
            yield self._finish(tracker, image)
            return
        with self._lock:
            self._handle = handle
            cancel_now = self._cancel_requested
        if cancel_now:
            handle.cancel()

        try:
            for line in handle.lines():
                raw = parse_progress_line(line)
                if raw is None:
                    continue
                before = tracker.phase
                tracker.observe(raw)
                if tracker.phase is not before:
                    log_event("burn_phase", level="DEBUG", phase=tracker.phase, raw=raw)
                yield tracker.event()
            rc = handle.wait()
        finally:
            with self._lock:
                self._handle = None
        if handle.cancelled:
            tracker.cancel()
        else:
            tracker.exited(rc, handle.tail())
        yield self._finish(tracker, image)

    def _finish(self, tracker: BurnPhaseTracker, image: Path) -> BurnProgress:
        err = tracker.session.error
        if tracker.phase is BurnPhase.SUCCEEDED:
            log_event("burn_succeeded", image=image)
        elif tracker.cancelled:
            log_event("burn_cancelled", level="WARNING", image=image)
        else:
            log_event(
                "burn_failed",
                level="ERROR",
                msg=str(err) if err else "burn failed",
                image=image,
                error=type(err).__name__ if err else None,
                phase=err.phase if err else None,
                detail=err.detail if err else None,
            )
        return tracker.event()
