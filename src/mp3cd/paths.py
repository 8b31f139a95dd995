"""Output file naming inside a folder's output directory.

Every folder's MP3s land flat in one directory, named after the source stem.
Names are made safe for ISO 9660/Joliet and FAT readers (car stereos mostly)
and de-duplicated case-insensitively so `Track.flac` and `track.wav` do not
overwrite each other.
"""
from __future__ import annotations

import re
import unicodedata
from pathlib import Path
from typing import Iterable, List, Optional, Set


_ILLEGAL_CHARS_RE = re.compile(r'[\x00-\x1F\x7F<>:\/\\\|\?\*"]+')
_MULTIPLE_UNDERSCORES_RE = re.compile(r"_+")

# Joliet allows 64 UCS-2 characters per name
MAX_NAME_LEN = 64

OUTPUT_SUFFIX = ".mp3"


def sanitize_segment(name: str, *, keep_suffix: str = "", max_len: int = MAX_NAME_LEN) -> str:
    """Make one path segment safe.

    - Normalize Unicode to NFC
    - Replace illegal characters with '_'
    - Trim trailing spaces/dots
    - Collapse multiple underscores
    - Enforce max length, keeping `keep_suffix` intact
    """
    s = unicodedata.normalize("NFC", name)
    s = _ILLEGAL_CHARS_RE.sub("_", s)
    s = s.rstrip(" .")
    if not s:
        s = "_"
    s = _MULTIPLE_UNDERSCORES_RE.sub("_", s)
    if len(s) > max_len:
        if keep_suffix and s.lower().endswith(keep_suffix.lower()) and len(keep_suffix) < max_len:
            s = s[: max_len - len(keep_suffix)] + keep_suffix
        else:
            s = s[:max_len]
    return s


def output_name(source: Path) -> str:
    """`<stem>.mp3` for a source file, sanitized."""
    stem = sanitize_segment(source.stem, max_len=MAX_NAME_LEN - len(OUTPUT_SUFFIX))
    return stem + OUTPUT_SUFFIX


def unique_output_names(sources: Iterable[Path], *, taken: Optional[Set[str]] = None) -> List[str]:
    """Output names for `sources`, in input order, unique under casefold.

    Duplicates get " (n)" before the suffix, assigned in sorted source order so
    the same folder always maps to the same names.
    """
    src_list = list(sources)
    taken_keys = {t.casefold() for t in (taken or set())}
    names: List[str] = [""] * len(src_list)
    for idx in sorted(range(len(src_list)), key=lambda i: str(src_list[i])):
        name = output_name(src_list[idx])
        if name.casefold() in taken_keys:
            stem = name[: -len(OUTPUT_SUFFIX)]
            n = 1
            while True:
                marker = f" ({n})"
                base = stem[: MAX_NAME_LEN - len(OUTPUT_SUFFIX) - len(marker)]
                candidate = base + marker + OUTPUT_SUFFIX
                if candidate.casefold() not in taken_keys:
                    name = candidate
                    break
                n += 1
        taken_keys.add(name.casefold())
        names[idx] = name
    return names
