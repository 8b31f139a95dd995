"""Per-file encoding strategy.

Pure classification of a source file into one of three actions:

- MP3 is copied untouched (unless artwork has to be injected).
- Other lossy formats are transcoded once at their own bitrate.
- Lossless formats wait for the shared bitrate the capacity planner derives.
"""
from __future__ import annotations

from typing import Optional

from mp3cd.errors import UnsupportedCodec
from mp3cd.models import AudioFileRecord, Phase, Strategy
from mp3cd.planner import SUPPORTED_BITRATES


MP3_CODECS = frozenset({"mp3"})
LOSSY_CODECS = frozenset({"aac", "m4a", "ogg", "vorbis", "opus", "wma"})
LOSSLESS_CODECS = frozenset({"flac", "wav", "aiff", "aif", "alac", "ape", "wavpack", "wv", "wmalossless"})

# Used when a lossy source does not report its bitrate.
DEFAULT_LOSSY_KBPS = 192
MAX_MP3_KBPS = 320


def normalize_codec(codec: Optional[str]) -> str:
    return (codec or "").strip().lower().lstrip(".")


def is_supported(codec: Optional[str]) -> bool:
    c = normalize_codec(codec)
    return c in MP3_CODECS or c in LOSSY_CODECS or c in LOSSLESS_CODECS


def select(
    codec: Optional[str],
    is_lossless: bool,
    source_bitrate: Optional[int],
    *,
    embed_missing_art: bool = False,
    has_embedded_art: Optional[bool] = None,
) -> Strategy:
    """Return the encoding strategy for one file.

    Raises UnsupportedCodec when the codec is unknown. The lossless flag is
    trusted for known codecs only; an unknown codec is never guessed from it.
    """
    c = normalize_codec(codec)
    if c in MP3_CODECS:
        if embed_missing_art and has_embedded_art is False:
            return Strategy.TRANSCODE_AT_SOURCE_BITRATE
        return Strategy.COPY
    if c in LOSSLESS_CODECS:
        return Strategy.CONVERT_AT_TARGET_BITRATE
    if c in LOSSY_CODECS:
        # ALAC inside an .m4a container is reported as lossless by the scanner
        if is_lossless:
            return Strategy.CONVERT_AT_TARGET_BITRATE
        return Strategy.TRANSCODE_AT_SOURCE_BITRATE
    raise UnsupportedCodec(c)


def select_for(record: AudioFileRecord, *, embed_missing_art: bool = False) -> Strategy:
    try:
        return select(
            record.codec,
            record.is_lossless,
            record.bitrate_kbps,
            embed_missing_art=embed_missing_art,
            has_embedded_art=record.has_embedded_art,
        )
    except UnsupportedCodec as e:
        raise UnsupportedCodec(e.codec, path=record.path) from None


def phase_for(strategy: Strategy) -> Phase:
    if strategy is Strategy.CONVERT_AT_TARGET_BITRATE:
        return Phase.LOSSLESS
    return Phase.LOSSY


def source_transcode_bitrate(source_kbps: Optional[int]) -> int:
    """Largest supported MP3 bitrate not above min(source, 320)."""
    if not source_kbps or source_kbps <= 0:
        return DEFAULT_LOSSY_KBPS
    ceiling = min(source_kbps, MAX_MP3_KBPS)
    fitting = [b for b in SUPPORTED_BITRATES if b <= ceiling]
    return fitting[-1] if fitting else SUPPORTED_BITRATES[0]
