"""Error taxonomy for the encoding scheduler and the burn flow.

Every error carries enough structure for a caller to render a message:
the failing path or tool, the phase it happened in, and raw diagnostic text.
Job-local errors are stored on the job instead of being raised through the
worker pool; burn errors end a burn attempt but never touch converted output.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Union


class Mp3cdError(Exception):
    """Base class for all mp3cd errors."""

    def __init__(
        self,
        message: str,
        *,
        path: Optional[Union[str, Path]] = None,
        tool: Optional[str] = None,
        phase: Optional[str] = None,
        detail: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.path = Path(path) if path is not None else None
        self.tool = tool
        self.phase = phase
        self.detail = detail

    def as_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "path": str(self.path) if self.path is not None else None,
            "tool": self.tool,
            "phase": self.phase,
            "detail": self.detail,
        }

    def __str__(self) -> str:
        where = self.path or self.tool
        if where:
            return f"{self.message} ({where})"
        return self.message


class UnsupportedCodec(Mp3cdError):
    """The file's codec has no encoding strategy. Fails one job, no retry."""

    def __init__(self, codec: str, *, path: Optional[Union[str, Path]] = None) -> None:
        super().__init__(
            f"Unsupported codec: {codec or 'unknown'}",
            path=path,
            phase="classify",
            detail=codec or "",
        )
        self.codec = codec


class EncoderProcessFailure(Mp3cdError):
    """The encoder exited non-zero or its output could not be finalized."""

    def __init__(
        self,
        path: Union[str, Path],
        returncode: int,
        detail: str = "",
        *,
        phase: Optional[str] = None,
        tool: str = "ffmpeg",
    ) -> None:
        super().__init__(
            f"Encoder failed with exit code {returncode}",
            path=path,
            tool=tool,
            phase=phase,
            detail=detail,
        )
        self.returncode = returncode


class CapacityExceeded(Mp3cdError):
    """Planning warning: lossless material does not fit even at the floor bitrate.

    Never raised to callers; the coordinator proceeds at the floor bitrate and
    exposes this object so the session can be flagged as over capacity.
    """

    def __init__(self, required_kbps: int, floor_kbps: int, remaining_bytes: int) -> None:
        super().__init__(
            f"Lossless material needs {required_kbps} kbps, below the {floor_kbps} kbps floor",
            phase="plan",
            detail=f"remaining_bytes={remaining_bytes}",
        )
        self.required_kbps = required_kbps
        self.floor_kbps = floor_kbps
        self.remaining_bytes = remaining_bytes


class DiscAbsent(Mp3cdError):
    def __init__(self, detail: str = "", *, tool: str = "drutil") -> None:
        super().__init__("No disc in the drive", tool=tool, phase="checking_disc", detail=detail)


class DiscUnusable(Mp3cdError):
    def __init__(self, detail: str = "", *, tool: str = "drutil") -> None:
        super().__init__(
            "Disc already holds data and cannot be erased",
            tool=tool,
            phase="checking_disc",
            detail=detail,
        )


class BurnProcessFailure(Mp3cdError):
    def __init__(
        self,
        returncode: int,
        detail: str = "",
        *,
        phase: Optional[str] = None,
        tool: str = "hdiutil",
    ) -> None:
        super().__init__(
            f"Burn failed with exit code {returncode}",
            tool=tool,
            phase=phase,
            detail=detail,
        )
        self.returncode = returncode


class ImageCreationFailure(Mp3cdError):
    def __init__(self, returncode: int, detail: str = "", *, tool: str = "hdiutil") -> None:
        super().__init__(
            f"Disc image creation failed with exit code {returncode}",
            tool=tool,
            phase="image",
            detail=detail,
        )
        self.returncode = returncode
