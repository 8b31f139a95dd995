"""Folder scanner: audio files -> AudioFileRecord (mutagen for stream info)."""
from __future__ import annotations

import hashlib
import os
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional, Tuple

import mutagen
from mutagen import MutagenError
from mutagen.aac import AAC
from mutagen.aiff import AIFF
from mutagen.asf import ASF
from mutagen.flac import FLAC
from mutagen.mp3 import MP3
from mutagen.mp4 import MP4
from mutagen.oggopus import OggOpus
from mutagen.oggvorbis import OggVorbis
from mutagen.wave import WAVE

from loguru import logger

from mp3cd.artwork import has_embedded_art
from mp3cd.models import AudioFileRecord


AUDIO_EXTS = {".mp3", ".flac", ".wav", ".ogg", ".m4a", ".aac", ".aiff", ".aif", ".opus", ".alac", ".wma"}

UNKNOWN_CODEC = "unknown"


def is_audio_file(path: Path) -> bool:
    return path.suffix.lower() in AUDIO_EXTS


def folder_id_for(folder: Path) -> str:
    """Stable id from the folder's absolute path and mtime."""
    folder = folder.resolve()
    st = folder.stat()
    digest = hashlib.sha1(f"{folder}|{st.st_mtime_ns}".encode("utf-8")).hexdigest()
    return digest[:16]


def _codec_of(audio) -> Tuple[str, bool]:
    if isinstance(audio, MP3):
        return "mp3", False
    if isinstance(audio, FLAC):
        return "flac", True
    if isinstance(audio, WAVE):
        return "wav", True
    if isinstance(audio, AIFF):
        return "aiff", True
    if isinstance(audio, OggOpus):
        return "opus", False
    if isinstance(audio, OggVorbis):
        return "ogg", False
    if isinstance(audio, MP4):
        codec = str(getattr(audio.info, "codec", "") or "").lower()
        if codec.startswith("alac"):
            return "alac", True
        return "aac", False
    if isinstance(audio, AAC):
        return "aac", False
    if isinstance(audio, ASF):
        name = str(getattr(audio.info, "codec_name", "") or "").lower()
        if "lossless" in name:
            return "wmalossless", True
        return "wma", False
    return UNKNOWN_CODEC, False


def read_record(path: Path) -> AudioFileRecord:
    """Build a record for one file. Unreadable files get codec "unknown"."""
    size = path.stat().st_size
    try:
        audio = mutagen.File(str(path))
    except MutagenError as e:
        logger.debug("mutagen could not read {}: {}", path, e)
        audio = None
    if audio is None:
        return AudioFileRecord(path=path, codec=UNKNOWN_CODEC, is_lossless=False, duration_s=0.0, size_bytes=size)
    codec, lossless = _codec_of(audio)
    info = audio.info
    bitrate = getattr(info, "bitrate", 0) or 0
    art = has_embedded_art(path) if codec == "mp3" else None
    return AudioFileRecord(
        path=path,
        codec=codec,
        is_lossless=lossless,
        duration_s=float(getattr(info, "length", 0.0) or 0.0),
        size_bytes=size,
        bitrate_kbps=None if lossless or not bitrate else int(bitrate // 1000),
        has_embedded_art=art,
    )


def scan_folder(folder: Path, max_workers: Optional[int] = None) -> List[AudioFileRecord]:
    """Scan a folder recursively; records come back sorted by path."""
    folder = folder.resolve()
    paths: List[Path] = []
    for dirpath, _, filenames in os.walk(folder):
        for name in filenames:
            p = Path(dirpath) / name
            if is_audio_file(p) and not name.startswith("._"):
                paths.append(p)
    paths.sort()
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="mp3cd-scan") as executor:
        return list(executor.map(read_record, paths))
