"""Disc image creation with `hdiutil makehybrid` (ISO 9660 + Joliet)."""
from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from mp3cd.errors import ImageCreationFailure
from mp3cd.logging import truncate
from mp3cd.process import ProcessSupervisor


class ImageBuilder:
    def __init__(self, supervisor: Optional[ProcessSupervisor] = None, *, hdiutil: str = "hdiutil") -> None:
        self.supervisor = supervisor or ProcessSupervisor()
        self.hdiutil = hdiutil

    def command(self, source_dir: Path, image_path: Path, volume_label: str) -> List[str]:
        return [
            self.hdiutil,
            "makehybrid",
            "-iso",
            "-joliet",
            "-joliet-volume-name",
            volume_label,
            "-o",
            str(image_path),
            str(source_dir),
        ]

    def build(self, source_dir: Path, image_path: Path, volume_label: str) -> Path:
        """Create `image_path` from `source_dir`, replacing any previous image."""
        image_path.unlink(missing_ok=True)
        image_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            result = self.supervisor.run(self.command(source_dir, image_path, volume_label), label="makehybrid")
        except OSError as e:
            raise ImageCreationFailure(127, str(e), tool=self.hdiutil) from e
        if result.returncode != 0:
            image_path.unlink(missing_ok=True)
            raise ImageCreationFailure(result.returncode, truncate(result.output), tool=self.hdiutil)
        return image_path
