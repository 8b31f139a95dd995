"""Capacity planning for the lossless pass.

Lossy material is encoded first and measured. Whatever space it leaves on the
disc is shared by all lossless material at one bitrate: the highest MP3
bitrate whose output for the total lossless duration still fits.

    kbps = floor(remaining_bytes * 8 / duration_s / 1000)

rounded down to the nearest bitrate libmp3lame accepts, within the configured
[min, max] window.
"""
from __future__ import annotations

import threading
from typing import Dict, Optional

from loguru import logger

from mp3cd.errors import CapacityExceeded
from mp3cd.logging import log_event
from mp3cd.models import ResolvedBitrate


# MPEG-1 Layer III bitrates (kbps)
SUPPORTED_BITRATES = (32, 40, 48, 56, 64, 80, 96, 112, 128, 160, 192, 224, 256, 320)

DEFAULT_MIN_KBPS = 64
DEFAULT_MAX_KBPS = 320


def raw_bitrate(remaining_bytes: int, duration_s: float) -> int:
    return int(remaining_bytes * 8 // duration_s // 1000)


def floor_to_supported(kbps: int, *, min_kbps: int = DEFAULT_MIN_KBPS, max_kbps: int = DEFAULT_MAX_KBPS) -> Optional[int]:
    """Largest supported bitrate in [min_kbps, max_kbps] that is <= kbps, or None."""
    candidates = [b for b in SUPPORTED_BITRATES if min_kbps <= b <= max_kbps and b <= kbps]
    return candidates[-1] if candidates else None


def lowest_supported(min_kbps: int = DEFAULT_MIN_KBPS) -> int:
    for b in SUPPORTED_BITRATES:
        if b >= min_kbps:
            return b
    return SUPPORTED_BITRATES[-1]


def plan(
    target_capacity_bytes: int,
    measured_lossy_bytes: int,
    total_lossless_duration_s: float,
    manual_override_kbps: Optional[int] = None,
    *,
    min_kbps: int = DEFAULT_MIN_KBPS,
    max_kbps: int = DEFAULT_MAX_KBPS,
) -> Optional[ResolvedBitrate]:
    """Resolve the shared lossless bitrate.

    Returns None when there is no lossless material (nothing to plan). A manual
    override always wins and is flagged as such. When even the floor bitrate
    overshoots the remaining space the floor is returned with
    ``over_capacity=True``; callers proceed and surface the warning.
    """
    remaining = max(0, target_capacity_bytes - measured_lossy_bytes)
    if manual_override_kbps is not None:
        return ResolvedBitrate(kbps=manual_override_kbps, manual=True, remaining_bytes=remaining)
    if total_lossless_duration_s <= 0:
        return None
    raw = raw_bitrate(remaining, total_lossless_duration_s)
    kbps = floor_to_supported(raw, min_kbps=min_kbps, max_kbps=max_kbps)
    if kbps is None:
        floor = lowest_supported(min_kbps)
        warning = CapacityExceeded(raw, floor, remaining)
        log_event(
            "capacity_exceeded",
            level="WARNING",
            msg=str(warning),
            required_kbps=raw,
            floor_kbps=floor,
            remaining_bytes=remaining,
            lossless_duration_s=round(total_lossless_duration_s, 3),
        )
        return ResolvedBitrate(kbps=floor, over_capacity=True, remaining_bytes=remaining)
    return ResolvedBitrate(kbps=kbps, remaining_bytes=remaining)


def estimated_output_bytes(kbps: int, duration_s: float) -> int:
    return int(kbps * 1000 * duration_s // 8)


class CapacityBudget:
    """Realized lossy output sizes plus the inputs to `plan`.

    Shared between worker threads (which record sizes) and the coordinator
    (which resolves). Nothing derived is stored: `resolve` recomputes from the
    current measurements every call.
    """

    def __init__(
        self,
        target_capacity_bytes: int,
        *,
        min_kbps: int = DEFAULT_MIN_KBPS,
        max_kbps: int = DEFAULT_MAX_KBPS,
        manual_override_kbps: Optional[int] = None,
    ) -> None:
        self.target_capacity_bytes = target_capacity_bytes
        self.min_kbps = min_kbps
        self.max_kbps = max_kbps
        self._manual = manual_override_kbps
        self._lock = threading.Lock()
        self._lossy_bytes: Dict[str, int] = {}

    @property
    def manual_override_kbps(self) -> Optional[int]:
        with self._lock:
            return self._manual

    def set_manual_override(self, kbps: Optional[int]) -> None:
        if kbps is not None and kbps <= 0:
            raise ValueError("manual bitrate must be positive")
        with self._lock:
            self._manual = kbps

    def record_lossy(self, key: str, size_bytes: int) -> None:
        with self._lock:
            self._lossy_bytes[key] = size_bytes

    def forget(self, key: str) -> None:
        with self._lock:
            self._lossy_bytes.pop(key, None)

    def measured_lossy_bytes(self) -> int:
        with self._lock:
            return sum(self._lossy_bytes.values())

    def remaining_bytes(self) -> int:
        return max(0, self.target_capacity_bytes - self.measured_lossy_bytes())

    def resolve(self, total_lossless_duration_s: float) -> Optional[ResolvedBitrate]:
        with self._lock:
            measured = sum(self._lossy_bytes.values())
            manual = self._manual
        resolved = plan(
            self.target_capacity_bytes,
            measured,
            total_lossless_duration_s,
            manual,
            min_kbps=self.min_kbps,
            max_kbps=self.max_kbps,
        )
        logger.debug(
            "capacity: target={} lossy={} lossless_s={:.1f} -> {}",
            self.target_capacity_bytes,
            measured,
            total_lossless_duration_s,
            resolved,
        )
        return resolved
