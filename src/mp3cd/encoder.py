"""Encoder command construction and execution.

- COPY: plain file copy, the MP3 stream is kept bit-exact.
- Everything else: FFmpeg with libmp3lame at a constant bitrate, tags carried
  over as ID3v2.3, optional front cover as an attached picture.

The encoder writes to a temporary file next to the final output and returns
that path. Renaming it into place is left to the worker pool, which is the
only place that knows whether the job is still wanted.
"""
from __future__ import annotations

import os
import re
import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from loguru import logger
from mutagen import MutagenError

from mp3cd.artwork import strip_mp3_art
from mp3cd.models import EncodingJob, Strategy
from mp3cd.process import ProcessHandle, ProcessSupervisor


ProgressFn = Callable[[float], None]
SpawnHook = Callable[[ProcessHandle], None]

_TIME_RE = re.compile(r"time=(\d+):(\d+):(\d+(?:\.\d+)?)")


@dataclass(frozen=True)
class EncodeRequest:
    input_path: Path
    strategy: Strategy
    output_path: Path
    target_bitrate: Optional[int] = None
    duration_s: float = 0.0
    embed_art: bool = False
    strip_art: bool = False
    artwork_path: Optional[Path] = None
    label: str = ""

    @classmethod
    def from_job(cls, job: EncodingJob) -> "EncodeRequest":
        if job.strategy is None:
            raise ValueError(f"job {job.label} has no strategy")
        return cls(
            input_path=job.record.path,
            strategy=job.strategy,
            output_path=job.output_path,
            target_bitrate=job.target_bitrate,
            duration_s=job.record.duration_s,
            embed_art=job.embed_art,
            strip_art=job.strip_art,
            artwork_path=job.artwork_path,
            label=job.label,
        )


@dataclass
class EncodeResult:
    returncode: int
    output_tmp: Optional[Path] = None
    error: str = ""
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.cancelled and self.output_tmp is not None


def _temp_out_path(final_path: Path) -> Path:
    """Return a unique temp file path in the same directory as final_path."""
    suffix = f".part-{os.getpid()}-{uuid.uuid4().hex[:8]}"
    return final_path.with_name(final_path.name + suffix)


def is_temp_output(path: Path) -> bool:
    return ".part-" in path.name


def discard(path: Optional[Path]) -> None:
    if path is not None:
        path.unlink(missing_ok=True)


def build_mp3_cmd(
    src: Path,
    out_tmp: Path,
    *,
    bitrate_kbps: int,
    ffmpeg: str = "ffmpeg",
    embed_art: bool = False,
    artwork_path: Optional[Path] = None,
) -> List[str]:
    cmd = [
        ffmpeg,
        "-nostdin",
        "-hide_banner",
        "-loglevel",
        "error",
        "-y",
        "-i",
        str(src),
    ]
    if embed_art and artwork_path is not None:
        cmd += ["-i", str(artwork_path)]
    cmd += ["-map", "0:a:0"]  # explicit first audio stream only
    if embed_art and artwork_path is not None:
        cmd += [
            "-map",
            "1:v:0",
            "-c:v",
            "copy",
            "-metadata:s:v",
            "title=Album cover",
            "-metadata:s:v",
            "comment=Cover (front)",
        ]
    elif embed_art:
        # keep the source's own picture when it has one
        cmd += ["-map", "0:v:0?", "-c:v", "copy"]
    else:
        cmd += ["-vn"]
    cmd += [
        "-map_metadata",
        "0",
        "-c:a",
        "libmp3lame",
        "-b:a",
        f"{bitrate_kbps}k",
        "-id3v2_version",
        "3",
        "-threads",
        "1",
        "-progress",
        "pipe:1",
        "-nostats",
        "-f",
        "mp3",
        str(out_tmp),
    ]
    return cmd


class FFmpegProgressDecoder:
    """Turn FFmpeg `-progress` (or classic `time=`) lines into a 0-100 percentage.

    `feed` returns None for lines without timing information and whenever the
    duration is unknown (indeterminate progress).
    """

    def __init__(self, duration_s: float) -> None:
        self.duration_s = duration_s
        self.percent: Optional[float] = None

    def feed(self, line: str) -> Optional[float]:
        line = line.strip()
        seconds: Optional[float] = None
        if line.startswith(("out_time_us=", "out_time_ms=")):
            value = line.split("=", 1)[1]
            if not value.lstrip("-").isdigit():
                return None
            # both keys carry microseconds
            seconds = int(value) / 1_000_000
        elif line == "progress=end":
            if self.duration_s <= 0:
                return None
            self.percent = 100.0
            return self.percent
        else:
            m = _TIME_RE.search(line)
            if m:
                h, mnt, s = m.groups()
                seconds = int(h) * 3600 + int(mnt) * 60 + float(s)
        if seconds is None or seconds < 0 or self.duration_s <= 0:
            return None
        pct = max(0.0, min(100.0, seconds / self.duration_s * 100.0))
        # ffmpeg can report a slightly earlier time after a seek; keep it monotonic
        if self.percent is not None and pct < self.percent:
            pct = self.percent
        self.percent = pct
        return pct


class FFmpegEncoder:
    """Encoder adapter: (input, strategy, bitrate, output, embed-art) -> progress + exit status."""

    def __init__(self, supervisor: Optional[ProcessSupervisor] = None, *, ffmpeg: str = "ffmpeg") -> None:
        self.supervisor = supervisor or ProcessSupervisor()
        self.ffmpeg = ffmpeg

    def command_for(self, request: EncodeRequest, out_tmp: Path) -> List[str]:
        if request.strategy is Strategy.COPY:
            raise ValueError("copy jobs do not run ffmpeg")
        if request.target_bitrate is None:
            raise ValueError(f"no target bitrate for {request.input_path}")
        return build_mp3_cmd(
            request.input_path,
            out_tmp,
            bitrate_kbps=request.target_bitrate,
            ffmpeg=self.ffmpeg,
            embed_art=request.embed_art,
            artwork_path=request.artwork_path,
        )

    def encode(
        self,
        request: EncodeRequest,
        *,
        on_progress: Optional[ProgressFn] = None,
        on_spawn: Optional[SpawnHook] = None,
    ) -> EncodeResult:
        out_tmp = _temp_out_path(request.output_path)
        out_tmp.parent.mkdir(parents=True, exist_ok=True)

        if request.strategy is Strategy.COPY:
            try:
                shutil.copyfile(request.input_path, out_tmp)
            except OSError as e:
                discard(out_tmp)
                return EncodeResult(1, None, f"Copy failed: {e}")
            if request.strip_art:
                try:
                    removed = strip_mp3_art(out_tmp)
                except MutagenError as e:
                    logger.warning("Keeping artwork in {}: {}", request.input_path.name, e)
                else:
                    if removed:
                        logger.debug("stripped {} picture(s) from {}", removed, request.input_path.name)
            if on_progress is not None:
                on_progress(100.0)
            return EncodeResult(0, out_tmp)

        cmd = self.command_for(request, out_tmp)
        decoder = FFmpegProgressDecoder(request.duration_s)
        try:
            handle = self.supervisor.spawn(cmd, label=request.label or request.input_path.name)
        except OSError as e:
            return EncodeResult(127, None, f"Failed to start {self.ffmpeg}: {e}")
        if on_spawn is not None:
            on_spawn(handle)
        for line in handle.lines():
            pct = decoder.feed(line)
            if pct is not None and on_progress is not None:
                on_progress(pct)
        rc = handle.wait()
        if handle.cancelled or rc != 0:
            discard(out_tmp)
            if not handle.cancelled:
                logger.debug("ffmpeg exited {} for {}", rc, request.input_path)
            return EncodeResult(rc if rc != 0 else 1, None, handle.tail(), cancelled=handle.cancelled)
        return EncodeResult(0, out_tmp)
