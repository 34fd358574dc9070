from __future__ import annotations

import functools
import logging
import os
import threading
import time
from collections import deque
from pathlib import Path
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from audiocache.config import AppConfig
from audiocache.models import (
    SOURCE_FAILED_REASON,
    DownloadRecord,
    InvalidRequest,
    JobKey,
    JobKind,
    JobNotFound,
    JobRecord,
    ProgressSnapshot,
    SourceUnavailable,
    TranscodeRecord,
    WorkerStatus,
    new_progress,
)
from audiocache.progress import InfoJsonUpdate, parse_line
from audiocache.runner import RunResult, SubprocessRunner
from audiocache.store import JobStore
from audiocache.utils.formatting import format_bytes, is_valid_media_id, normalize_ext

logger = logging.getLogger(__name__)

RunnerFactory = Callable[..., Any]

SHUTDOWN_REASON = "interrupted by shutdown"


class WorkerPool:
    """FIFO queue plus the set of live runners for one job kind."""

    def __init__(self, kind: JobKind, concurrency: int) -> None:
        self.kind = kind
        self.concurrency = max(1, int(concurrency))
        self.queue: Deque[JobKey] = deque()
        self.running: Dict[JobKey, Any] = {}
        self.lock = threading.Lock()

    def active_count(self) -> int:
        return len(self.running)


class Scheduler:
    """Drive download and transcode jobs from queued to finished/failed.

    Record creation is single-flight per key (store key lock). Dispatch is
    serialized per pool (pool lock). Neither lock is held while waiting on a
    process, except that delete holds the key lock until its runner is gone.
    """

    def __init__(
        self,
        config: AppConfig,
        store: JobStore,
        runner_factory: RunnerFactory = SubprocessRunner,
    ) -> None:
        self.config = config
        self.store = store
        self.runner_factory = runner_factory
        self.pools: Dict[JobKind, WorkerPool] = {
            JobKind.DOWNLOAD: WorkerPool(JobKind.DOWNLOAD, config.download_concurrency),
            JobKind.TRANSCODE: WorkerPool(JobKind.TRANSCODE, config.transcode_concurrency),
        }
        self._changed = threading.Condition()
        self._closed = False

    # validation

    def make_key(self, media_id: str, ext: str) -> JobKey:
        if not is_valid_media_id(media_id):
            raise InvalidRequest(f"invalid media id: {media_id!r}")
        norm = normalize_ext(ext)
        if norm is None:
            raise InvalidRequest(f"invalid audio extension: {ext!r}")
        return JobKey(media_id, norm)

    def make_transcode_key(self, media_id: str, ext: str) -> JobKey:
        key = self.make_key(media_id, ext)
        if key.ext == self.config.source_ext:
            raise InvalidRequest(f"transcodes cannot have the '{self.config.source_ext}' extension")
        return key

    # submission

    def request_download(self, media_id: str, ext: str) -> DownloadRecord:
        key = self.make_key(media_id, ext)
        return self._request(JobKind.DOWNLOAD, key)

    def request_transcode(self, media_id: str, ext: str) -> TranscodeRecord:
        key = self.make_transcode_key(media_id, ext)
        source = JobKey(key.media_id, self.config.source_ext)
        self._request(JobKind.DOWNLOAD, source)
        return self._request(JobKind.TRANSCODE, key, source=source)

    def _request(self, kind: JobKind, key: JobKey, source: Optional[JobKey] = None) -> JobRecord:
        with self.store.key_lock(kind, key):
            existing = self.store.get(kind, key)
            if existing is not None:
                if existing.status is WorkerStatus.FINISHED:
                    self._mark_cached(kind, existing)
                    logger.info("%s %s: cache hit", kind.value, key.as_str())
                return existing
            if self._closed:
                raise RuntimeError("scheduler is shut down")
            if kind is JobKind.DOWNLOAD:
                record: JobRecord = DownloadRecord(media_id=key.media_id, ext=key.ext)
            else:
                record = TranscodeRecord(media_id=key.media_id, ext=key.ext, source=source)
            self.store.upsert(record)
            self.store.set_progress(kind, key, new_progress(kind))
            pool = self.pools[kind]
            with pool.lock:
                pool.queue.append(key)
            logger.info("%s %s: queued", kind.value, key.as_str())
        self._notify()
        self._dispatch(kind)
        return record

    def _mark_cached(self, kind: JobKind, record: JobRecord) -> None:
        snapshot = self.store.get_progress(kind, record.key)
        if snapshot is None:
            snapshot = new_progress(kind)
            snapshot.start_time_unix = record.started_at or record.finished_at
            snapshot.end_time_unix = record.finished_at
            self.store.set_progress(kind, record.key, snapshot)
        self.store.update_progress(kind, record.key, snapshot.attempt_id, _cached_mutation)

    # dispatch

    def _dispatch(self, kind: JobKind) -> None:
        pool = self.pools[kind]
        changed = False
        with pool.lock:
            if self._closed:
                return
            while True:
                key = self._next_ready(pool)
                if key is None:
                    break
                changed = True
                self._launch(pool, key)
                if pool.active_count() >= pool.concurrency:
                    break
            # queued transcodes whose source failed are settled even when the pool is full
            if kind is JobKind.TRANSCODE:
                changed = self._settle_orphans(pool) or changed
        if changed:
            self._notify()

    def _next_ready(self, pool: WorkerPool) -> Optional[JobKey]:
        """Pop the oldest key that can start now; a transcode waits for its source."""
        if pool.active_count() >= pool.concurrency:
            return None
        for key in list(pool.queue):
            record = self.store.get(pool.kind, key, verify=False)
            if record is None:
                pool.queue.remove(key)
                continue
            if pool.kind is JobKind.TRANSCODE:
                try:
                    if not self._source_ready(record):
                        continue
                except SourceUnavailable as exc:
                    pool.queue.remove(key)
                    self._fail_queued(record, str(exc))
                    continue
            pool.queue.remove(key)
            return key
        return None

    def _settle_orphans(self, pool: WorkerPool) -> bool:
        settled = False
        for key in list(pool.queue):
            record = self.store.get(pool.kind, key, verify=False)
            if record is None:
                pool.queue.remove(key)
                continue
            try:
                self._source_ready(record)
            except SourceUnavailable as exc:
                pool.queue.remove(key)
                self._fail_queued(record, str(exc))
                settled = True
        return settled

    def _source_ready(self, record: TranscodeRecord) -> bool:
        source = self.store.get(JobKind.DOWNLOAD, record.source)
        if source is None or source.status is WorkerStatus.FAILED:
            raise SourceUnavailable(SOURCE_FAILED_REASON)
        return source.status is WorkerStatus.FINISHED

    def _fail_queued(self, record: JobRecord, reason: str) -> None:
        now = time.time()
        record.advance(WorkerStatus.FAILED)
        record.fail_reason = reason
        record.finished_at = now
        self.store.upsert(record)
        snapshot = self.store.get_progress(record.kind, record.key)
        if snapshot is not None:
            self.store.update_progress(
                record.kind,
                record.key,
                snapshot.attempt_id,
                functools.partial(_terminal_mutation, WorkerStatus.FAILED, reason, now),
            )
        logger.warning("%s %s: failed before completing (%s)", record.kind.value, record.key.as_str(), reason)

    def _launch(self, pool: WorkerPool, key: JobKey) -> None:
        kind = pool.kind
        record = self.store.get(kind, key, verify=False)
        audio_path = self.store.audio_path(kind, key)
        now = time.time()
        record.advance(WorkerStatus.RUNNING)
        record.started_at = now
        snapshot = new_progress(kind)
        snapshot.worker_status = WorkerStatus.RUNNING
        snapshot.start_time_unix = now
        snapshot.end_time_unix = now

        if audio_path.exists():
            record.advance(WorkerStatus.FINISHED)
            record.audio_path = audio_path
            record.finished_at = now
            if isinstance(record, DownloadRecord) and self.store.info_json_path(key).exists():
                record.info_json_path = self.store.info_json_path(key)
            _cached_mutation(snapshot)
            self.store.upsert(record)
            self.store.set_progress(kind, key, snapshot)
            logger.info("%s %s: already on disk, skipping", kind.value, key.as_str())
            return

        stdout_log, stderr_log, system_log = self.store.log_paths(kind, key)
        record.stdout_log_path = stdout_log
        record.stderr_log_path = stderr_log
        record.system_log_path = system_log
        self.store.upsert(record)
        self.store.set_progress(kind, key, snapshot)
        self.store.media_dir(kind, key.media_id).mkdir(parents=True, exist_ok=True)
        staged = self.store.staging_path(kind, key)
        self.store.discard_staged(kind, key)

        runner = self.runner_factory(
            name=f"{kind.value}-{key.as_str()}",
            command=self._command(record, staged),
            stdout_log_path=stdout_log,
            stderr_log_path=stderr_log,
            system_log_path=system_log,
            expected_outputs=[staged],
            grace_seconds=self.config.cancel_grace_seconds,
        )
        runner.on_line = functools.partial(self._on_line, kind, key, runner, snapshot.attempt_id)
        runner.on_complete = functools.partial(self._on_complete, kind, key, runner, snapshot.attempt_id)
        pool.running[key] = runner
        logger.info("%s %s: running (%d/%d)", kind.value, key.as_str(), pool.active_count(), pool.concurrency)
        try:
            runner.start()
        except OSError as exc:
            del pool.running[key]
            self._fail_queued(self.store.get(kind, key, verify=False), f"failed to start: {exc}")

    def _command(self, record: JobRecord, staged: Path) -> List[str]:
        media_dir = staged.parent
        if isinstance(record, DownloadRecord):
            # every intermediate of this variant shares the <id>.<ext>.dl. prefix
            return [
                self.config.ytdlp_binary,
                "--newline",
                "--no-playlist",
                "-x",
                "--audio-format",
                record.ext,
                "--write-info-json",
                "-o",
                str(media_dir / f"{record.media_id}.{record.ext}.dl.%(ext)s"),
                "-o",
                "infojson:" + str(media_dir / f"{record.media_id}.{record.ext}.%(ext)s"),
                self.config.media_url(record.media_id),
            ]
        source_path = self.store.audio_path(JobKind.DOWNLOAD, record.source)
        return [
            self.config.ffmpeg_binary,
            "-hide_banner",
            "-nostdin",
            "-y",
            "-i",
            str(source_path),
            "-vn",
            str(staged),
        ]

    # runner callbacks

    def _on_line(self, kind: JobKind, key: JobKey, runner: Any, attempt_id: str, stream: str, text: str) -> None:
        update = parse_line(kind, text)
        if update is None:
            return
        if isinstance(update, InfoJsonUpdate):
            pool = self.pools[kind]
            with pool.lock:
                if pool.running.get(key) is not runner:
                    return
                record = self.store.get(kind, key, verify=False)
                if isinstance(record, DownloadRecord):
                    record.info_json_path = Path(update.path)
                    self.store.upsert(record)
            return
        logger.debug("%s %s: %s", kind.value, key.as_str(), update)
        self.store.update_progress(kind, key, attempt_id, lambda s: s.apply(update))

    def _on_complete(self, kind: JobKind, key: JobKey, runner: Any, attempt_id: str, result: RunResult) -> None:
        pool = self.pools[kind]
        with pool.lock:
            if pool.running.get(key) is not runner:
                logger.info("%s %s: attempt was cancelled, result discarded", kind.value, key.as_str())
                return
            del pool.running[key]
            record = self.store.get(kind, key, verify=False)
            if record is None:
                return
            now = time.time()
            audio_path = self.store.audio_path(kind, key)
            record.finished_at = now
            if result.success:
                try:
                    os.replace(self.store.staging_path(kind, key), audio_path)
                except OSError as exc:
                    result = RunResult(result.returncode, False, f"could not store output: {exc}")
            if result.success:
                record.advance(WorkerStatus.FINISHED)
                record.audio_path = audio_path
                if isinstance(record, DownloadRecord):
                    info = self.store.info_json_path(key)
                    if info.exists():
                        record.info_json_path = info
                status, reason = WorkerStatus.FINISHED, None
            else:
                record.advance(WorkerStatus.FAILED)
                record.fail_reason = result.fail_reason
                status, reason = WorkerStatus.FAILED, result.fail_reason
            self.store.discard_staged(kind, key)
            self.store.upsert(record)
            self.store.update_progress(
                kind, key, attempt_id, functools.partial(_terminal_mutation, status, reason, now)
            )
        if result.success:
            size = audio_path.stat().st_size if audio_path.exists() else None
            logger.info("%s %s: finished (%s)", kind.value, key.as_str(), format_bytes(size))
        else:
            logger.error("%s %s: failed (%s)", kind.value, key.as_str(), result.fail_reason)
        self._notify()
        self._dispatch(kind)
        if kind is JobKind.DOWNLOAD:
            self._dispatch(JobKind.TRANSCODE)

    # queries

    def get_record(self, kind: JobKind, key: JobKey) -> JobRecord:
        record = self.store.get(kind, key)
        if record is None:
            raise JobNotFound(kind, key)
        return record

    def find_record(self, kind: JobKind, key: JobKey) -> Optional[JobRecord]:
        """Like get_record, but None instead of JobNotFound."""
        return self.store.get(kind, key)

    def list_records(self, kind: JobKind) -> List[JobRecord]:
        return self.store.list(kind)

    def get_progress(self, kind: JobKind, key: JobKey) -> ProgressSnapshot:
        snapshot = self.store.get_progress(kind, key)
        if snapshot is None:
            raise JobNotFound(kind, key)
        return snapshot

    def artifact_path(self, kind: JobKind, key: JobKey) -> Path:
        record = self.get_record(kind, key)
        if record.status is not WorkerStatus.FINISHED or record.audio_path is None:
            raise JobNotFound(kind, key)
        return Path(record.audio_path)

    def wait_for(
        self,
        kind: JobKind,
        key: JobKey,
        statuses: Iterable[WorkerStatus],
        timeout: Optional[float] = None,
    ) -> Optional[JobRecord]:
        """Block until the key reaches one of ``statuses`` (or timeout). Returns the last record seen."""
        wanted = set(statuses)
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._changed:
            while True:
                record = self.store.get(kind, key, verify=False)
                current = record.status if record is not None else WorkerStatus.NONE
                if current in wanted:
                    return record
                if deadline is None:
                    self._changed.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return record
                self._changed.wait(remaining)

    # deletion and shutdown

    def delete(self, kind: JobKind, key: JobKey) -> None:
        pool = self.pools[kind]
        with self.store.key_lock(kind, key):
            record = self.store.get(kind, key, verify=False)
            if record is None:
                raise JobNotFound(kind, key)
            with pool.lock:
                runner = pool.running.pop(key, None)
                try:
                    pool.queue.remove(key)
                except ValueError:
                    pass
            if runner is not None:
                logger.info("%s %s: cancelling running job", kind.value, key.as_str())
                runner.cancel()
            self.store.remove(kind, key)
        logger.info("%s %s: deleted", kind.value, key.as_str())
        self._notify()
        self._dispatch(kind)
        if kind is JobKind.DOWNLOAD:
            self._dispatch(JobKind.TRANSCODE)

    def shutdown(self) -> None:
        self._closed = True
        running = []
        for kind, pool in self.pools.items():
            with pool.lock:
                running.extend((kind, key, runner) for key, runner in pool.running.items())
                pool.running.clear()
                pool.queue.clear()
        for kind, key, runner in running:
            runner.cancel()
            self.store.discard_staged(kind, key)
            record = self.store.get(kind, key, verify=False)
            if record is not None and not record.status.is_terminal():
                self._fail_queued(record, SHUTDOWN_REASON)
        if running:
            logger.info("Stopped %d running job(s)", len(running))
        self._notify()

    def _notify(self) -> None:
        with self._changed:
            self._changed.notify_all()


def _cached_mutation(snapshot: ProgressSnapshot) -> None:
    snapshot.worker_status = WorkerStatus.FINISHED
    snapshot.file_cached = True
    snapshot.percentage = 100.0
    snapshot.fail_reason = None


def _terminal_mutation(status: WorkerStatus, reason: Optional[str], when: float, snapshot: ProgressSnapshot) -> None:
    snapshot.worker_status = status
    snapshot.end_time_unix = when
    snapshot.fail_reason = reason
    if status is WorkerStatus.FINISHED:
        snapshot.percentage = 100.0
