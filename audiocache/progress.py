"""Decode progress information out of download/transcode tool output.

Tool output is not a stable contract. Each parser looks at a single line and
returns an update object, or None when the line carries nothing it understands.
Nothing in here raises on malformed input.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Union

from audiocache.models import JobKind

BYTE_UNITS = {
    "B": 1,
    "KiB": 1024,
    "MiB": 1024 ** 2,
    "GiB": 1024 ** 3,
    "TiB": 1024 ** 4,
    "kB": 1000,
    "KB": 1000,
    "MB": 1000 ** 2,
    "GB": 1000 ** 3,
    "TB": 1000 ** 4,
}

BIT_UNITS = {
    "bits": 1,
    "kbits": 1000,
    "Mbits": 1000 ** 2,
    "Gbits": 1000 ** 3,
    "b": 1,
    "kb": 1000,
    "Mb": 1000 ** 2,
    "Gb": 1000 ** 3,
}

_NUM = r"\d+(?:\.\d+)?"
_TIME = r"-?(?:\d+:)*\d+(?:\.\d+)?"

# [download]  42.5% of ~  3.45MiB at  1.20MiB/s ETA 00:02 (frag 3/10)
# [download] 100% of    3.45MiB in 00:00:02 at 1.52MiB/s
_DL_PERCENT = re.compile(r"^\[download\]\s+(?P<pct>" + _NUM + r")%")
_DL_TOTAL = re.compile(r"\bof\s+~?\s*(?P<value>" + _NUM + r")\s*(?P<unit>[KMGT]?i?B)\b")
_DL_SPEED = re.compile(r"\bat\s+(?P<value>" + _NUM + r")\s*(?P<unit>[KMGT]?i?B)/s")
_DL_ETA = re.compile(r"\bETA\s+(?P<eta>[\d:]+)")
_DL_INFOJSON = re.compile(r"^\[info\]\s+Writing video metadata as JSON to:\s+(?P<path>.+?)\s*$")

# size=     512KiB time=00:00:30.00 bitrate= 139.8kbits/s speed=60.1x
_TC_TIME = re.compile(r"\btime=\s*(?P<time>" + _TIME + r")")
_TC_SIZE = re.compile(r"\b(?:L?size)=\s*(?P<value>\d+)\s*(?P<unit>[kKMGT]?i?B)")
_TC_BITRATE = re.compile(r"\bbitrate=\s*(?P<value>" + _NUM + r")\s*(?P<unit>[kMG]?bits)/s")
_TC_SPEED = re.compile(r"\bspeed=\s*(?P<value>" + _NUM + r")\s*x")
# Duration: 00:03:21.45, start: 0.000000, bitrate: 129 kb/s
_TC_SOURCE = re.compile(
    r"^Duration:\s*(?P<duration>" + _TIME + r"|N/A)"
    r"(?:,\s*start:\s*" + _TIME + r")?"
    r"(?:,\s*bitrate:\s*(?:(?P<value>" + _NUM + r")\s*(?P<unit>[kMG]?b)/s|N/A))?"
)


@dataclass
class DownloadUpdate:
    percentage: Optional[float] = None
    total_bytes: Optional[int] = None
    speed_bytes: Optional[int] = None
    eta_seconds: Optional[int] = None


@dataclass
class InfoJsonUpdate:
    path: str


@dataclass
class TranscodeUpdate:
    duration_ms: Optional[int] = None
    size_bytes: Optional[int] = None
    speed_bits: Optional[int] = None
    speed_factor: Optional[float] = None


@dataclass
class SourceInfoUpdate:
    duration_ms: Optional[int] = None
    speed_bits: Optional[int] = None


ProgressUpdate = Union[DownloadUpdate, InfoJsonUpdate, TranscodeUpdate, SourceInfoUpdate]


def _scaled(value: Optional[str], unit: Optional[str], table: dict) -> Optional[int]:
    if value is None or unit not in table:
        return None
    try:
        return int(float(value) * table[unit])
    except ValueError:
        return None


def parse_clock(text: Optional[str]) -> Optional[int]:
    """Convert [[[d:]h:]m:]s[.frac] into milliseconds. Negative/garbled → None."""
    if not text or text.startswith("-"):
        return None
    parts = text.split(":")
    if len(parts) > 4:
        return None
    try:
        seconds = float(parts[-1])
        multipliers = (60, 60 * 60, 24 * 60 * 60)
        total = seconds
        for mult, part in zip(multipliers, reversed(parts[:-1])):
            total += int(part) * mult
    except ValueError:
        return None
    return int(round(total * 1000))


def parse_download_line(line: str) -> Optional[ProgressUpdate]:
    """Recognise yt-dlp progress and info-json lines."""
    line = line.strip()
    m = _DL_PERCENT.match(line)
    if m:
        update = DownloadUpdate()
        try:
            update.percentage = float(m.group("pct"))
        except ValueError:
            return None
        total = _DL_TOTAL.search(line)
        if total:
            update.total_bytes = _scaled(total.group("value"), total.group("unit"), BYTE_UNITS)
        speed = _DL_SPEED.search(line)
        if speed:
            update.speed_bytes = _scaled(speed.group("value"), speed.group("unit"), BYTE_UNITS)
        eta = _DL_ETA.search(line)
        if eta:
            ms = parse_clock(eta.group("eta"))
            update.eta_seconds = ms // 1000 if ms is not None else None
        return update
    m = _DL_INFOJSON.match(line)
    if m:
        return InfoJsonUpdate(path=m.group("path"))
    return None


def parse_transcode_line(line: str) -> Optional[ProgressUpdate]:
    """Recognise ffmpeg stats lines and the input Duration banner."""
    line = line.strip()
    m = _TC_SOURCE.match(line)
    if m:
        return SourceInfoUpdate(
            duration_ms=parse_clock(m.group("duration")),
            speed_bits=_scaled(m.group("value"), m.group("unit"), BIT_UNITS),
        )
    time_match = _TC_TIME.search(line)
    if not time_match or ("speed=" not in line and "size=" not in line):
        return None
    update = TranscodeUpdate(duration_ms=parse_clock(time_match.group("time")))
    size = _TC_SIZE.search(line)
    if size:
        update.size_bytes = _scaled(size.group("value"), size.group("unit"), BYTE_UNITS)
    bitrate = _TC_BITRATE.search(line)
    if bitrate:
        update.speed_bits = _scaled(bitrate.group("value"), bitrate.group("unit"), BIT_UNITS)
    speed = _TC_SPEED.search(line)
    if speed:
        try:
            update.speed_factor = float(speed.group("value"))
        except ValueError:
            update.speed_factor = None
    return update


def parse_line(kind: JobKind, line: str) -> Optional[ProgressUpdate]:
    try:
        if kind is JobKind.DOWNLOAD:
            return parse_download_line(line)
        return parse_transcode_line(line)
    except Exception:  # pragma: no cover - grammar bugs must never reach the runner
        return None
