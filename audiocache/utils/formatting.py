from __future__ import annotations

import re
import unicodedata
from typing import Optional

AUDIO_EXTENSIONS = ("m4a", "aac", "mp3", "opus", "flac", "wav", "webm")
MEDIA_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

AUDIO_MEDIA_TYPES = {
    "m4a": "audio/mp4",
    "aac": "audio/aac",
    "mp3": "audio/mpeg",
    "opus": "audio/ogg",
    "flac": "audio/flac",
    "wav": "audio/wav",
    "webm": "audio/webm",
}


def normalize_ext(ext: Optional[str]) -> Optional[str]:
    """Return the canonical lowercase extension, or None if it is not supported."""
    if ext is None:
        return None
    key = str(ext).strip().lower().lstrip(".")
    if key in AUDIO_EXTENSIONS:
        return key
    return None


def is_valid_media_id(media_id: Optional[str]) -> bool:
    return bool(media_id) and MEDIA_ID_PATTERN.match(media_id) is not None


def safe_filename(name: str) -> str:
    """Convert to a safe filename while preserving spaces and dashes."""
    # normalize
    name = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    # remove bad chars
    name = re.sub(r'[\\/:*?"<>|]', "", name)
    # collapse whitespace
    name = re.sub(r"\s+", " ", name).strip()
    return name.strip(".")


def format_bytes(value: Optional[float]) -> str:
    if value is None:
        return "?"
    size = float(value)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if size < 1024 or unit == "GiB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GiB"
