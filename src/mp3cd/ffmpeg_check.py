"""Preflight checks for the external tools.

Uses only the Python standard library.
"""
from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional


@dataclass
class FFmpegStatus:
    available: bool
    ffmpeg_path: Optional[str] = None
    ffmpeg_version: Optional[str] = None
    has_libmp3lame: Optional[bool] = None
    error: Optional[str] = None


@dataclass
class BurnToolStatus:
    available: bool
    hdiutil_path: Optional[str] = None
    drutil_path: Optional[str] = None
    error: Optional[str] = None


def _run(cmd: list[str]) -> tuple[int, str, str]:
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            check=False,
            text=True,
        )
        return proc.returncode, proc.stdout, proc.stderr
    except OSError as exc:
        return 1, "", str(exc)


def probe_ffmpeg(ffmpeg: str = "ffmpeg") -> FFmpegStatus:
    path = shutil.which(ffmpeg)
    if not path:
        return FFmpegStatus(available=False, error=f"{ffmpeg} not found in PATH")

    rc_v, out_v, err_v = _run([path, "-version"])
    version = out_v.splitlines()[0].strip() if out_v else None

    rc_e, out_e, _ = _run([path, "-hide_banner", "-encoders"])
    has_lame = "libmp3lame" in (out_e or "").lower()

    return FFmpegStatus(
        available=(rc_v == 0),
        ffmpeg_path=path,
        ffmpeg_version=version,
        has_libmp3lame=(has_lame if rc_e == 0 else False),
        error=None if rc_v == 0 else (err_v or "ffmpeg -version failed"),
    )


def probe_burn_tools(hdiutil: str = "hdiutil", drutil: str = "drutil") -> BurnToolStatus:
    h = shutil.which(hdiutil)
    d = shutil.which(drutil)
    missing = [name for name, p in ((hdiutil, h), (drutil, d)) if not p]
    return BurnToolStatus(
        available=not missing,
        hdiutil_path=h,
        drutil_path=d,
        error=f"not found in PATH: {', '.join(missing)}" if missing else None,
    )
