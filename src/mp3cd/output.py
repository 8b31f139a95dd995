"""Where converted files live.

Two modes:
- Session mode (default): `<base>/mp3cd_output/<session_id>/<folder_id>/`,
  a throwaway working area under the system temp dir.
- Bundle mode: `<bundle>/converted/<folder_id>/` once a persistent bundle has
  been designated, so a later session can resume without re-encoding.

The directory for a folder is stable for the lifetime of a job and created on
demand. The resolver is shared across threads.
"""
from __future__ import annotations

import os
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from loguru import logger

from mp3cd.encoder import is_temp_output
from mp3cd.paths import OUTPUT_SUFFIX, sanitize_segment


STAGING_DIR_NAME = "_iso_staging"


def new_session_id() -> str:
    return f"session_{time.time_ns()}_{os.getpid()}"


def dir_size(path: Path) -> int:
    total = 0
    if not path.exists():
        return 0
    for dirpath, _, filenames in os.walk(path):
        for fn in filenames:
            total += (Path(dirpath) / fn).stat().st_size
    return total


class OutputLocationResolver:
    def __init__(
        self,
        base_dir: Optional[Path] = None,
        *,
        session_id: Optional[str] = None,
        bundle_path: Optional[Path] = None,
    ) -> None:
        root = Path(base_dir) if base_dir is not None else Path(tempfile.gettempdir())
        self.base_dir = root / "mp3cd_output"
        self.session_id = session_id or new_session_id()
        self.session_dir = self.base_dir / self.session_id
        self._lock = threading.Lock()
        self._bundle_path: Optional[Path] = Path(bundle_path) if bundle_path is not None else None

    @property
    def bundle_path(self) -> Optional[Path]:
        with self._lock:
            return self._bundle_path

    def set_bundle_path(self, path: Optional[Path]) -> None:
        with self._lock:
            self._bundle_path = Path(path) if path is not None else None
        logger.debug("output bundle path {}", path if path is not None else "cleared")

    def folder_dir(self, folder_id: str) -> Path:
        """Directory for a folder's outputs, without creating it."""
        bundle = self.bundle_path
        if bundle is not None:
            return bundle / "converted" / folder_id
        return self.session_dir / folder_id

    def resolve(self, folder_id: str) -> Path:
        d = self.folder_dir(folder_id)
        d.mkdir(parents=True, exist_ok=True)
        return d

    def folder_output_size(self, folder_id: str) -> int:
        return dir_size(self.folder_dir(folder_id))

    def existing_outputs(self, folder_id: str) -> List[Path]:
        d = self.folder_dir(folder_id)
        if not d.is_dir():
            return []
        return sorted(p for p in d.iterdir() if p.is_file() and p.suffix.lower() == OUTPUT_SUFFIX)

    def delete_folder_output(self, folder_id: str) -> None:
        d = self.folder_dir(folder_id)
        if d.exists():
            shutil.rmtree(d)
            logger.debug("deleted output for folder {}", folder_id)

    def purge_partials(self, folder_id: str) -> int:
        """Remove leftover temp files from interrupted encodes."""
        d = self.folder_dir(folder_id)
        if not d.is_dir():
            return 0
        removed = 0
        for p in d.iterdir():
            if p.is_file() and is_temp_output(p):
                p.unlink(missing_ok=True)
                removed += 1
        return removed

    def staging_dir(self) -> Path:
        return self.session_dir / STAGING_DIR_NAME

    def create_staging(self, folders: Sequence[Tuple[str, str]]) -> Path:
        """Lay out converted folders for the disc image.

        `folders` is an ordered list of (folder_id, display_name). Each becomes
        `NN-<name>/` holding links (copies where symlinks are unavailable) to
        that folder's MP3s. Any previous staging tree is replaced.
        """
        staging = self.staging_dir()
        if staging.exists():
            shutil.rmtree(staging)
        staging.mkdir(parents=True)
        for index, (folder_id, name) in enumerate(folders, start=1):
            target = staging / sanitize_segment(f"{index:02d}-{name}")
            target.mkdir()
            for src in self.existing_outputs(folder_id):
                dest = target / src.name
                try:
                    dest.symlink_to(src)
                except OSError:
                    shutil.copy2(src, dest)
            logger.debug("staged {} as {}", folder_id, target.name)
        return staging

    def cleanup(self) -> None:
        """Delete this session's working area. Bundle contents are never touched."""
        if self.session_dir.exists():
            shutil.rmtree(self.session_dir)
            logger.debug("cleaned up session {}", self.session_id)

    def cleanup_old_sessions(self) -> int:
        if not self.base_dir.is_dir():
            return 0
        removed = 0
        for p in self.base_dir.iterdir():
            if p.is_dir() and p.name != self.session_id:
                try:
                    shutil.rmtree(p)
                    removed += 1
                except OSError as e:
                    logger.warning("Failed to clean old session {}: {}", p, e)
        return removed
