from __future__ import annotations

import logging
import os
import re
import shlex
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, List, Optional, Sequence

from audiocache.utils.logging import close_job_log, open_job_log

logger = logging.getLogger(__name__)

_LINE_END = re.compile(rb"\r\n|\r|\n")

LineCallback = Callable[[str, str], None]


@dataclass
class RunResult:
    returncode: Optional[int]
    success: bool
    fail_reason: Optional[str] = None
    cancelled: bool = False


CompleteCallback = Callable[[RunResult], None]


def iter_lines(stream: BinaryIO, chunk_size: int = 4096) -> Iterator[bytes]:
    """Yield raw lines (terminator included), treating a bare CR as a line break.

    Progress bars redraw in place with CR, so without this a whole download
    would arrive as one line at exit.
    """
    pending = b""
    while True:
        chunk = stream.read(chunk_size)
        if not chunk:
            break
        pending += chunk
        while True:
            m = _LINE_END.search(pending)
            if not m:
                break
            yield pending[: m.end()]
            pending = pending[m.end():]
    if pending:
        yield pending


class SubprocessRunner:
    """Own one external tool invocation: spawn, tee output to logs, stop on demand.

    ``on_line(stream_name, text)`` sees every decoded line from stdout/stderr;
    ``on_complete(result)`` fires once, from the supervisor thread, after all
    log files are closed.
    """

    def __init__(
        self,
        name: str,
        command: Sequence[str],
        stdout_log_path: Path,
        stderr_log_path: Path,
        system_log_path: Path,
        expected_outputs: Sequence[Path] = (),
        on_line: Optional[LineCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
        grace_seconds: float = 5.0,
    ) -> None:
        self.name = name
        self.command = [str(c) for c in command]
        self.stdout_log_path = Path(stdout_log_path)
        self.stderr_log_path = Path(stderr_log_path)
        self.system_log_path = Path(system_log_path)
        self.expected_outputs = [Path(p) for p in expected_outputs]
        self.on_line = on_line
        self.on_complete = on_complete
        self.grace_seconds = grace_seconds
        self.result: Optional[RunResult] = None
        self._process: Optional[subprocess.Popen] = None
        self._readers: List[threading.Thread] = []
        self._supervisor: Optional[threading.Thread] = None
        self._syslog: Optional[logging.Logger] = None
        self._cancelled = threading.Event()
        self._done = threading.Event()
        self._last_stderr: Optional[str] = None

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    def is_running(self) -> bool:
        return self._supervisor is not None and not self._done.is_set()

    def start(self) -> "SubprocessRunner":
        if self._supervisor is not None:
            raise RuntimeError(f"runner {self.name} already started")
        self.system_log_path.parent.mkdir(parents=True, exist_ok=True)
        self._syslog = open_job_log(self.name, self.system_log_path)
        self._syslog.info("command: %s", " ".join(shlex.quote(c) for c in self.command))
        spawn_error: Optional[str] = None
        try:
            self._process = subprocess.Popen(
                self.command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
                start_new_session=(os.name == "posix"),
            )
        except OSError as exc:
            spawn_error = f"failed to start {self.command[0]}: {exc}"
            self._syslog.error(spawn_error)
        if self._process is not None:
            self._syslog.info("started pid=%s", self._process.pid)
            self._readers = [
                threading.Thread(
                    target=self._pump,
                    args=(self._process.stdout, self.stdout_log_path, "stdout"),
                    name=f"{self.name}-stdout",
                    daemon=True,
                ),
                threading.Thread(
                    target=self._pump,
                    args=(self._process.stderr, self.stderr_log_path, "stderr"),
                    name=f"{self.name}-stderr",
                    daemon=True,
                ),
            ]
            for t in self._readers:
                t.start()
        self._supervisor = threading.Thread(
            target=self._supervise, args=(spawn_error,), name=f"{self.name}-supervisor", daemon=True
        )
        self._supervisor.start()
        return self

    def cancel(self) -> None:
        """Stop the process (TERM, then KILL after the grace period) and wait for cleanup."""
        self._cancelled.set()
        proc = self._process
        if proc is not None and proc.poll() is None:
            self._signal(graceful=True)
            try:
                proc.wait(timeout=self.grace_seconds)
            except subprocess.TimeoutExpired:
                if self._syslog is not None:
                    self._syslog.warning("no exit after %.1fs, killing pid=%s", self.grace_seconds, proc.pid)
                self._signal(graceful=False)
                proc.wait()
        if self._supervisor is not None and self._supervisor is not threading.current_thread():
            self._supervisor.join()

    def wait(self, timeout: Optional[float] = None) -> Optional[RunResult]:
        self._done.wait(timeout)
        return self.result

    def _signal(self, graceful: bool) -> None:
        proc = self._process
        if proc is None:
            return
        try:
            if os.name == "posix":
                # the tool may have children of its own (yt-dlp runs ffmpeg)
                os.killpg(proc.pid, signal.SIGTERM if graceful else signal.SIGKILL)
            elif graceful:
                proc.terminate()
            else:
                proc.kill()
        except (ProcessLookupError, PermissionError):
            pass

    def _pump(self, stream: BinaryIO, log_path: Path, stream_name: str) -> None:
        log_file = None
        try:
            log_file = open(log_path, "wb")
        except OSError as exc:
            if self._syslog is not None:
                self._syslog.error("cannot open %s log %s: %s", stream_name, log_path, exc)
        try:
            for raw in iter_lines(stream):
                if log_file is not None:
                    log_file.write(raw)
                    log_file.flush()
                text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if stream_name == "stderr" and text.strip():
                    self._last_stderr = text.strip()
                if self.on_line is not None:
                    try:
                        self.on_line(stream_name, text)
                    except Exception:
                        logger.exception("line handler failed for %s", self.name)
        except (OSError, ValueError) as exc:
            if self._syslog is not None:
                self._syslog.warning("%s reader stopped: %s", stream_name, exc)
        finally:
            if log_file is not None:
                log_file.close()
            stream.close()

    def _supervise(self, spawn_error: Optional[str]) -> None:
        syslog = self._syslog
        try:
            if spawn_error is not None:
                result = RunResult(returncode=None, success=False, fail_reason=spawn_error)
            else:
                for t in self._readers:
                    t.join()
                returncode = self._process.wait()
                result = self._evaluate(returncode)
        except Exception as exc:
            logger.exception("supervisor for %s crashed", self.name)
            result = RunResult(returncode=None, success=False, fail_reason=f"internal error: {exc}")
        finally:
            if syslog is not None:
                close_job_log(syslog)
        self.result = result
        self._done.set()
        if self.on_complete is not None:
            try:
                self.on_complete(result)
            except Exception:
                logger.exception("completion handler failed for %s", self.name)

    def _evaluate(self, returncode: int) -> RunResult:
        syslog = self._syslog
        if self._cancelled.is_set():
            syslog.warning("cancelled, exit code %s", returncode)
            return RunResult(returncode=returncode, success=False, fail_reason="cancelled", cancelled=True)
        if returncode != 0:
            reason = self._last_stderr or f"process exited with code {returncode}"
            syslog.error("exited with code %s: %s", returncode, reason)
            return RunResult(returncode=returncode, success=False, fail_reason=reason)
        missing = [p for p in self.expected_outputs if not p.exists()]
        if missing:
            reason = self._last_stderr or f"missing output file: {missing[0]}"
            syslog.error("exited cleanly but output is missing: %s", ", ".join(str(p) for p in missing))
            return RunResult(returncode=returncode, success=False, fail_reason=reason)
        syslog.info("finished, exit code 0")
        return RunResult(returncode=returncode, success=True)
