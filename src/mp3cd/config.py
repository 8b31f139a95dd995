from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from tomlkit import dumps as toml_dumps


DEFAULT_CONFIG_PATH = Path("~/.config/mp3cd/config.toml").expanduser()
ENV_PREFIX = "MP3CD_"

# 700 MB CD-R, decimal megabytes as printed on the media
CD_CAPACITY_BYTES = 700 * 1000 * 1000


class Mp3cdSettings(BaseSettings):
    """Global settings for mp3cd.

    Priority (lowest -> highest):
    - Class defaults below
    - TOML file at `config_path` (default: ~/.config/mp3cd/config.toml)
    - Environment variables with prefix MP3CD_
    - CLI overrides passed to `load(overrides=...)`
    """

    # Logging
    log_level: str = Field(default="INFO", description="Console log level")
    log_json: Optional[str] = Field(default=None, description="Path for structured JSON log file")

    # Scheduling
    workers: Optional[int] = Field(default=None, description="Parallel encoders, clamped to 2..8; None=CPU cores")

    # Capacity planning
    target_capacity_bytes: int = Field(default=CD_CAPACITY_BYTES, description="Disc capacity in bytes")
    min_lossless_kbps: int = Field(default=64, description="Quality floor for lossless conversions")
    max_lossless_kbps: int = Field(default=320, description="Highest bitrate used for lossless conversions")
    manual_bitrate_kbps: Optional[int] = Field(default=None, description="Fixed lossless bitrate; None=auto")

    # Encoding
    embed_album_art: bool = Field(
        default=False,
        description="Embed folder artwork; MP3s without art are re-encoded to carry it",
    )
    ffmpeg_path: str = Field(default="ffmpeg", description="ffmpeg executable")
    cancel_grace_s: float = Field(default=3.0, description="Seconds between terminate and kill on cancel")

    # Output
    output_root: Optional[str] = Field(
        default=None,
        description="Working area for converted files; None=system temp dir",
    )
    bundle_path: Optional[str] = Field(
        default=None,
        description="Persistent bundle directory; converted files go to <bundle>/converted",
    )

    # Burning
    volume_label: str = Field(default="MP3CD", description="Disc volume label")
    simulate_burn: bool = Field(default=False, description="Run the burner in test mode (laser off)")
    hdiutil_path: str = Field(default="hdiutil", description="Image builder and burner executable")
    drutil_path: str = Field(default="drutil", description="Disc status probe executable")
    erase_high_watermark: int = Field(default=50, description="Erase progress that must be reached before a drop means writing started")
    erase_restart_ceiling: int = Field(default=20, description="Progress below this after the watermark marks the start of writing")
    finalize_threshold: int = Field(default=95, description="Write progress after which an indeterminate step means finalizing")

    # Config source/path (not persisted as part of effective config when writing)
    config_path: Path = Field(default=DEFAULT_CONFIG_PATH, exclude=True)

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, extra="ignore")

    @field_validator("workers")
    @classmethod
    def _workers_positive(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("workers must be >= 1")
        return v

    @field_validator("volume_label")
    @classmethod
    def _label_not_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("volume_label must not be empty")
        return v

    @staticmethod
    def default_config_path() -> Path:
        return DEFAULT_CONFIG_PATH

    @classmethod
    def _toml_file_source(cls, config_path: Path) -> Dict[str, Any]:
        """Read settings from a TOML file if it exists; return dict values.

        Unknown keys are ignored by pydantic via extra="ignore".
        """
        if not config_path or not config_path.exists():
            return {}
        with config_path.open("rb") as f:
            data = tomllib.load(f)
        if not isinstance(data, dict):
            return {}
        return data

    @classmethod
    def load(
        cls,
        *,
        config_path: Optional[Path] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "Mp3cdSettings":
        """Load settings from defaults + TOML + env + CLI overrides.

        - config_path: path to TOML config; defaults to ~/.config/mp3cd/config.toml
        - overrides: dict of CLI values (None values are ignored)
        """
        cp = config_path or DEFAULT_CONFIG_PATH
        file_values = cls._toml_file_source(cp)
        # Init kwargs outrank env in pydantic-settings, so drop file keys that env sets
        env_keys = {k[len(ENV_PREFIX):].lower() for k in os.environ if k.upper().startswith(ENV_PREFIX)}
        file_values = {k: v for k, v in file_values.items() if k not in env_keys}
        base = cls(**file_values)
        if overrides:
            non_none = {k: v for k, v in overrides.items() if v is not None}
        else:
            non_none = {}
        merged = base.model_dump()
        merged.update(non_none)
        settings = cls(**merged)
        settings.config_path = cp
        return settings

    def to_toml(self) -> str:
        """Serialize effective settings (excluding ephemeral fields) to TOML string.

        TOML has no null; unset optional values are left out.
        """
        data = {k: v for k, v in self.model_dump(exclude={"config_path"}).items() if v is not None}
        return toml_dumps(data)

    def write(self, path: Optional[Path] = None) -> Path:
        """Write effective config to TOML at `path` (or default path). Creates parent dirs.

        Returns the path written.
        """
        target = path or self.config_path or DEFAULT_CONFIG_PATH
        target.parent.mkdir(parents=True, exist_ok=True)
        content = self.to_toml()
        target.write_text(content, encoding="utf-8")
        return target


def cli_overrides_from_args(args: Any) -> Dict[str, Any]:
    """Extract known settings keys from argparse Namespace into an overrides dict.

    Unknown keys are ignored; None values are preserved for filtering by `load()`.
    """
    keys = {
        "log_level",
        "log_json",
        "workers",
        "target_capacity_bytes",
        "manual_bitrate_kbps",
        "embed_album_art",
        "ffmpeg_path",
        "output_root",
        "bundle_path",
        "volume_label",
        "simulate_burn",
    }
    result: Dict[str, Any] = {}
    for k in keys:
        if hasattr(args, k):
            result[k] = getattr(args, k)
    return result
