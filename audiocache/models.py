from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union


class JobKind(str, Enum):
    DOWNLOAD = "download"
    TRANSCODE = "transcode"


class WorkerStatus(str, Enum):
    NONE = "none"
    QUEUED = "queued"
    RUNNING = "running"
    FINISHED = "finished"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        # finished and failed share a rank: both are terminal for one attempt
        return {"none": 0, "queued": 1, "running": 2, "finished": 3, "failed": 3}[self.value]

    def is_busy(self) -> bool:
        return self in (WorkerStatus.QUEUED, WorkerStatus.RUNNING)

    def is_terminal(self) -> bool:
        return self in (WorkerStatus.FINISHED, WorkerStatus.FAILED)


SOURCE_FAILED_REASON = "source download failed"


class JobNotFound(LookupError):
    """No record (or no usable artifact) exists for the requested key."""

    def __init__(self, kind: JobKind, key: "JobKey") -> None:
        super().__init__(f"{kind.value} {key.as_str()} not found")
        self.kind = kind
        self.key = key


class InvalidRequest(ValueError):
    pass


class SourceUnavailable(RuntimeError):
    pass


class InvalidTransition(RuntimeError):
    pass


@dataclass(frozen=True)
class JobKey:
    media_id: str
    ext: str

    def as_str(self) -> str:
        return f"{self.media_id}.{self.ext}"

    def to_dict(self) -> Dict[str, str]:
        return {"media_id": self.media_id, "ext": self.ext}


def _path_str(path: Optional[Path]) -> Optional[str]:
    return str(path) if path is not None else None


class _RecordOps:
    """Behaviour shared by DownloadRecord and TranscodeRecord."""

    kind: JobKind
    path_fields = ("audio_path", "stdout_log_path", "stderr_log_path", "system_log_path")

    @property
    def key(self) -> JobKey:
        return JobKey(self.media_id, self.ext)

    def advance(self, status: WorkerStatus) -> None:
        """Move the record forward through queued -> running -> finished|failed."""
        if status.rank <= self.status.rank:
            raise InvalidTransition(
                f"{self.kind.value} {self.key.as_str()}: {self.status.value} -> {status.value}"
            )
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "kind": self.kind.value,
            "media_id": self.media_id,
            "ext": self.ext,
            "status": self.status.value,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }
        for name in self.path_fields:
            data[name] = _path_str(getattr(self, name))
        data["fail_reason"] = self.fail_reason
        return data


@dataclass
class DownloadRecord(_RecordOps):
    media_id: str
    ext: str
    status: WorkerStatus = WorkerStatus.QUEUED
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    audio_path: Optional[Path] = None
    info_json_path: Optional[Path] = None
    stdout_log_path: Optional[Path] = None
    stderr_log_path: Optional[Path] = None
    system_log_path: Optional[Path] = None
    fail_reason: Optional[str] = None

    kind = JobKind.DOWNLOAD
    path_fields = _RecordOps.path_fields + ("info_json_path",)


@dataclass
class TranscodeRecord(_RecordOps):
    media_id: str
    ext: str
    source: JobKey
    status: WorkerStatus = WorkerStatus.QUEUED
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    audio_path: Optional[Path] = None
    stdout_log_path: Optional[Path] = None
    stderr_log_path: Optional[Path] = None
    system_log_path: Optional[Path] = None
    fail_reason: Optional[str] = None

    kind = JobKind.TRANSCODE

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["source"] = self.source.to_dict()
        return data


JobRecord = Union[DownloadRecord, TranscodeRecord]


def _new_attempt_id() -> str:
    return uuid.uuid4().hex


@dataclass
class DownloadProgress:
    """Live state of one download attempt. Unknown values stay None, never 0."""

    worker_status: WorkerStatus = WorkerStatus.QUEUED
    percentage: Optional[float] = None
    downloaded_bytes: Optional[int] = None
    total_bytes: Optional[int] = None
    speed_bytes: Optional[int] = None
    eta_seconds: Optional[int] = None
    start_time_unix: Optional[float] = None
    end_time_unix: Optional[float] = None
    file_cached: bool = False
    fail_reason: Optional[str] = None
    attempt_id: str = field(default_factory=_new_attempt_id)

    kind = JobKind.DOWNLOAD

    def apply(self, update: Any) -> None:
        from audiocache.progress import DownloadUpdate

        if not isinstance(update, DownloadUpdate):
            return
        self.end_time_unix = time.time()
        if update.percentage is not None:
            self.percentage = max(0.0, min(100.0, update.percentage))
        if update.total_bytes is not None:
            self.total_bytes = update.total_bytes
        if self.total_bytes is not None and self.percentage is not None:
            self.downloaded_bytes = int(self.total_bytes * self.percentage / 100.0)
        if update.speed_bytes is not None:
            self.speed_bytes = update.speed_bytes
        if update.eta_seconds is not None:
            self.eta_seconds = update.eta_seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "worker_status": self.worker_status.value,
            "percentage": self.percentage,
            "downloaded_bytes": self.downloaded_bytes,
            "total_bytes": self.total_bytes,
            "speed_bytes": self.speed_bytes,
            "eta_seconds": self.eta_seconds,
            "start_time_unix": self.start_time_unix,
            "end_time_unix": self.end_time_unix,
            "file_cached": self.file_cached,
            "fail_reason": self.fail_reason,
        }


@dataclass
class TranscodeProgress:
    """Live state of one transcode attempt; percentage is derived from durations."""

    worker_status: WorkerStatus = WorkerStatus.QUEUED
    source_duration_ms: Optional[int] = None
    transcode_duration_ms: Optional[int] = None
    transcode_size_bytes: Optional[int] = None
    source_speed_bits: Optional[int] = None
    transcode_speed_bits: Optional[int] = None
    transcode_speed_factor: Optional[float] = None
    percentage: Optional[float] = None
    start_time_unix: Optional[float] = None
    end_time_unix: Optional[float] = None
    file_cached: bool = False
    fail_reason: Optional[str] = None
    attempt_id: str = field(default_factory=_new_attempt_id)

    kind = JobKind.TRANSCODE

    def apply(self, update: Any) -> None:
        from audiocache.progress import SourceInfoUpdate, TranscodeUpdate

        if isinstance(update, SourceInfoUpdate):
            if update.duration_ms is not None:
                self.source_duration_ms = update.duration_ms
            if update.speed_bits is not None:
                self.source_speed_bits = update.speed_bits
        elif isinstance(update, TranscodeUpdate):
            self.end_time_unix = time.time()
            if update.duration_ms is not None:
                self.transcode_duration_ms = update.duration_ms
            if update.size_bytes is not None:
                self.transcode_size_bytes = update.size_bytes
            if update.speed_bits is not None:
                self.transcode_speed_bits = update.speed_bits
            if update.speed_factor is not None:
                self.transcode_speed_factor = update.speed_factor
        else:
            return
        if self.source_duration_ms and self.transcode_duration_ms is not None:
            ratio = self.transcode_duration_ms / self.source_duration_ms
            self.percentage = max(0.0, min(100.0, ratio * 100.0))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "worker_status": self.worker_status.value,
            "source_duration_ms": self.source_duration_ms,
            "transcode_duration_ms": self.transcode_duration_ms,
            "transcode_size_bytes": self.transcode_size_bytes,
            "source_speed_bits": self.source_speed_bits,
            "transcode_speed_bits": self.transcode_speed_bits,
            "transcode_speed_factor": self.transcode_speed_factor,
            "percentage": self.percentage,
            "start_time_unix": self.start_time_unix,
            "end_time_unix": self.end_time_unix,
            "file_cached": self.file_cached,
            "fail_reason": self.fail_reason,
        }


ProgressSnapshot = Union[DownloadProgress, TranscodeProgress]


def new_progress(kind: JobKind) -> ProgressSnapshot:
    if kind is JobKind.DOWNLOAD:
        return DownloadProgress()
    return TranscodeProgress()
