from __future__ import annotations

import copy
import logging
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from audiocache.models import (
    DownloadProgress,
    DownloadRecord,
    JobKey,
    JobKind,
    JobRecord,
    ProgressSnapshot,
    TranscodeProgress,
    TranscodeRecord,
    WorkerStatus,
)
from audiocache.utils.formatting import is_valid_media_id, normalize_ext

logger = logging.getLogger(__name__)


class JobStore:
    """In-memory index of download/transcode records mirrored by the cache directory.

    Layout per kind: ``<root>/<media_id>/<media_id>.<ext>`` plus
    ``<media_id>.<ext>.{info.json,stdout.log,stderr.log,system.log}``.
    Records handed out are copies; callers write changes back with upsert().
    """

    def __init__(self, download_dir: Path, transcode_dir: Path, source_ext: str = "m4a") -> None:
        self.roots: Dict[JobKind, Path] = {
            JobKind.DOWNLOAD: Path(download_dir),
            JobKind.TRANSCODE: Path(transcode_dir),
        }
        self.source_ext = source_ext
        self._records: Dict[JobKind, Dict[JobKey, JobRecord]] = {kind: {} for kind in JobKind}
        self._progress: Dict[JobKind, Dict[JobKey, ProgressSnapshot]] = {kind: {} for kind in JobKind}
        self._lock = threading.RLock()
        self._key_locks: Dict[Tuple[JobKind, JobKey], threading.RLock] = {}

    @classmethod
    def from_config(cls, config) -> "JobStore":
        return cls(config.download_dir, config.transcode_dir, config.source_ext)

    # paths

    def media_dir(self, kind: JobKind, media_id: str) -> Path:
        return self.roots[kind] / media_id

    def audio_path(self, kind: JobKind, key: JobKey) -> Path:
        return self.media_dir(kind, key.media_id) / f"{key.media_id}.{key.ext}"

    def staging_path(self, kind: JobKind, key: JobKey) -> Path:
        """Where a tool writes its output; renamed to audio_path only on success."""
        return self.media_dir(kind, key.media_id) / f"{key.media_id}.{key.ext}.dl.{key.ext}"

    def discard_staged(self, kind: JobKind, key: JobKey) -> None:
        """Remove staged output and tool intermediates (``<id>.<ext>.dl.*``) of one variant."""
        media_dir = self.media_dir(kind, key.media_id)
        if not media_dir.is_dir():
            return
        prefix = f"{key.media_id}.{key.ext}.dl."
        for path in media_dir.iterdir():
            if not path.name.startswith(prefix):
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Could not remove partial output %s: %s", path, exc)

    def info_json_path(self, key: JobKey) -> Path:
        return self.media_dir(JobKind.DOWNLOAD, key.media_id) / f"{key.media_id}.{key.ext}.info.json"

    def log_paths(self, kind: JobKind, key: JobKey) -> Tuple[Path, Path, Path]:
        base = self.media_dir(kind, key.media_id) / f"{key.media_id}.{key.ext}"
        return (
            base.with_name(base.name + ".stdout.log"),
            base.with_name(base.name + ".stderr.log"),
            base.with_name(base.name + ".system.log"),
        )

    def key_lock(self, kind: JobKind, key: JobKey) -> threading.RLock:
        with self._lock:
            lock = self._key_locks.get((kind, key))
            if lock is None:
                lock = threading.RLock()
                self._key_locks[(kind, key)] = lock
            return lock

    # startup reconciliation

    def rebuild(self) -> Dict[JobKind, int]:
        """Re-derive finished records from the files on disk. Returns counts per kind."""
        counts = {kind: 0 for kind in JobKind}
        with self._lock:
            for kind in JobKind:
                self._records[kind].clear()
                self._progress[kind].clear()
                root = self.roots[kind]
                if not root.is_dir():
                    continue
                for media_dir in sorted(root.iterdir()):
                    if not media_dir.is_dir() or not is_valid_media_id(media_dir.name):
                        continue
                    for path in sorted(media_dir.iterdir()):
                        record = self._record_from_file(kind, media_dir.name, path)
                        if record is None:
                            continue
                        self._records[kind][record.key] = record
                        self._progress[kind][record.key] = self._cached_progress(kind, record)
                        counts[kind] += 1
        logger.info(
            "Cache scan: %d downloads, %d transcodes",
            counts[JobKind.DOWNLOAD],
            counts[JobKind.TRANSCODE],
        )
        return counts

    def _record_from_file(self, kind: JobKind, media_id: str, path: Path) -> Optional[JobRecord]:
        if not path.is_file():
            return None
        stem, _, raw_ext = path.name.rpartition(".")
        ext = normalize_ext(raw_ext)
        if stem != media_id or ext is None or ext != raw_ext:
            return None
        key = JobKey(media_id, ext)
        mtime = path.stat().st_mtime
        stdout_log, stderr_log, system_log = self.log_paths(kind, key)
        common = dict(
            media_id=media_id,
            ext=ext,
            status=WorkerStatus.FINISHED,
            created_at=mtime,
            finished_at=mtime,
            audio_path=path,
            stdout_log_path=stdout_log if stdout_log.exists() else None,
            stderr_log_path=stderr_log if stderr_log.exists() else None,
            system_log_path=system_log if system_log.exists() else None,
        )
        if kind is JobKind.DOWNLOAD:
            info = self.info_json_path(key)
            return DownloadRecord(info_json_path=info if info.exists() else None, **common)
        return TranscodeRecord(source=JobKey(media_id, self.source_ext), **common)

    @staticmethod
    def _cached_progress(kind: JobKind, record: JobRecord) -> ProgressSnapshot:
        cls = DownloadProgress if kind is JobKind.DOWNLOAD else TranscodeProgress
        return cls(
            worker_status=WorkerStatus.FINISHED,
            percentage=100.0,
            start_time_unix=record.finished_at,
            end_time_unix=record.finished_at,
            file_cached=True,
        )

    # records

    def _is_tampered(self, record: JobRecord) -> bool:
        if record.status is not WorkerStatus.FINISHED:
            return False
        return record.audio_path is None or not Path(record.audio_path).exists()

    def _drop_tampered(self, kind: JobKind, record: JobRecord) -> None:
        logger.warning(
            "%s %s is finished but %s is gone; treating as not found",
            kind.value,
            record.key.as_str(),
            record.audio_path,
        )
        self._records[kind].pop(record.key, None)
        self._progress[kind].pop(record.key, None)

    def get(self, kind: JobKind, key: JobKey, verify: bool = True) -> Optional[JobRecord]:
        with self._lock:
            record = self._records[kind].get(key)
            if record is None:
                return None
            if verify and self._is_tampered(record):
                self._drop_tampered(kind, record)
                return None
            return copy.copy(record)

    def list(self, kind: JobKind) -> List[JobRecord]:
        with self._lock:
            records = []
            for record in list(self._records[kind].values()):
                if self._is_tampered(record):
                    self._drop_tampered(kind, record)
                    continue
                records.append(copy.copy(record))
            return records

    def upsert(self, record: JobRecord) -> None:
        with self._lock:
            self._records[record.kind][record.key] = copy.copy(record)

    def remove(self, kind: JobKind, key: JobKey) -> bool:
        """Drop the record, its snapshot and every file it owns. Returns False if unknown."""
        with self.key_lock(kind, key):
            with self._lock:
                record = self._records[kind].pop(key, None)
                self._progress[kind].pop(key, None)
            media_dir = self.media_dir(kind, key.media_id)
            targets = set()
            if record is not None:
                for attr in ("audio_path", "info_json_path", "stdout_log_path", "stderr_log_path", "system_log_path"):
                    path = getattr(record, attr, None)
                    if path is not None:
                        targets.add(Path(path))
            try:
                if media_dir.is_dir():
                    prefix = f"{key.media_id}.{key.ext}"
                    for path in media_dir.iterdir():
                        if path.name == prefix or path.name.startswith(prefix + "."):
                            targets.add(path)
                for path in sorted(targets):
                    try:
                        path.unlink()
                    except FileNotFoundError:
                        pass
                    except OSError as exc:
                        logger.warning("Could not delete %s: %s", path, exc)
            finally:
                try:
                    if media_dir.is_dir() and not any(media_dir.iterdir()):
                        media_dir.rmdir()
                except OSError:
                    pass
            return record is not None

    # progress snapshots

    def get_progress(self, kind: JobKind, key: JobKey) -> Optional[ProgressSnapshot]:
        with self._lock:
            snapshot = self._progress[kind].get(key)
            return copy.copy(snapshot) if snapshot is not None else None

    def set_progress(self, kind: JobKind, key: JobKey, snapshot: ProgressSnapshot) -> None:
        with self._lock:
            self._progress[kind][key] = snapshot

    def update_progress(
        self,
        kind: JobKind,
        key: JobKey,
        attempt_id: str,
        mutate: Callable[[ProgressSnapshot], None],
    ) -> bool:
        """Apply ``mutate`` to the live snapshot if it still belongs to ``attempt_id``."""
        with self._lock:
            snapshot = self._progress[kind].get(key)
            if snapshot is None or snapshot.attempt_id != attempt_id:
                return False
            mutate(snapshot)
            return True
