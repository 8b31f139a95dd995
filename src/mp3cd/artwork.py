"""Artwork and MP3 stream helpers using mutagen."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import mutagen
from mutagen import MutagenError
from mutagen.id3 import ID3, ID3NoHeaderError
from mutagen.mp3 import MP3


COVER_STEMS = ("cover", "folder", "front", "album", "albumart")
IMAGE_EXTS = (".jpg", ".jpeg", ".png")


def find_cover_image(folder: Path) -> Optional[Path]:
    """Return the folder's cover image file, preferring conventional names."""
    if not folder.is_dir():
        return None
    images = sorted(p for p in folder.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_EXTS)
    for stem in COVER_STEMS:
        for p in images:
            if p.stem.lower() == stem:
                return p
    return images[0] if images else None


def mp3_has_art(path: Path) -> bool:
    try:
        tags = ID3(str(path))
    except ID3NoHeaderError:
        return False
    return bool(tags.getall("APIC"))


def has_embedded_art(path: Path) -> Optional[bool]:
    """True/False when the container could be read, None when it could not."""
    try:
        audio = mutagen.File(str(path))
    except MutagenError:
        return None
    if audio is None:
        return None
    # FLAC picture blocks
    if getattr(audio, "pictures", None):
        return True
    tags = getattr(audio, "tags", None)
    if not tags:
        return False
    if hasattr(tags, "getall"):
        return bool(tags.getall("APIC"))
    keys = {str(k).lower() for k in tags.keys()}
    return bool(keys & {"covr", "metadata_block_picture", "coverart"})


def mp3_bitrate_kbps(path: Path) -> Optional[int]:
    """Bitrate of an existing MP3, used to decide whether a resumed output is current."""
    try:
        info = MP3(str(path)).info
    except MutagenError:
        return None
    if not info.bitrate:
        return None
    return int(info.bitrate // 1000)


def strip_mp3_art(path: Path) -> int:
    """Remove embedded pictures from an MP3 in place; the audio frames are untouched.

    Returns the number of pictures removed.
    """
    try:
        tags = ID3(str(path))
    except ID3NoHeaderError:
        return 0
    pictures = tags.getall("APIC")
    if not pictures:
        return 0
    tags.delall("APIC")
    # no padding: the freed bytes are what we are after
    tags.save(str(path), v2_version=3 if tags.version[1] == 3 else 4, padding=lambda info: 0)
    return len(pictures)
