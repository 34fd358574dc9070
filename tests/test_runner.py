import io
import sys
import threading
import time

from audiocache.runner import SubprocessRunner, iter_lines


def _runner(tmp_path, script, *extra, expected=(), **kw):
    return SubprocessRunner(
        name="test-job",
        command=[sys.executable, "-c", script, *extra],
        stdout_log_path=tmp_path / "job.stdout.log",
        stderr_log_path=tmp_path / "job.stderr.log",
        system_log_path=tmp_path / "job.system.log",
        expected_outputs=expected,
        **kw,
    )


def test_iter_lines_treats_carriage_return_as_break():
    stream = io.BytesIO(b"10%\r20%\r\nfinal\nno newline")
    assert list(iter_lines(stream, chunk_size=3)) == [b"10%\r", b"20%\r\n", b"final\n", b"no newline"]


def test_success_writes_logs_and_reports_lines(tmp_path):
    out = tmp_path / "out.m4a"
    lines = []
    done = threading.Event()
    runner = _runner(
        tmp_path,
        "import sys; open(sys.argv[1], 'w').write('x'); print('hello'); sys.stderr.write('progress 1\\r progress 2\\n')",
        str(out),
        expected=[out],
        on_line=lambda stream, text: lines.append((stream, text)),
        on_complete=lambda result: done.set(),
    )
    runner.start()
    result = runner.wait(timeout=30)
    assert done.wait(5)
    assert result.success
    assert result.returncode == 0
    assert ("stdout", "hello") in lines
    assert ("stderr", "progress 1") in lines
    assert (tmp_path / "job.stdout.log").read_text().strip() == "hello"
    system_log = (tmp_path / "job.system.log").read_text()
    assert "command:" in system_log
    assert "exit code 0" in system_log


def test_nonzero_exit_uses_last_stderr_line(tmp_path):
    runner = _runner(
        tmp_path,
        "import sys; sys.stderr.write('WARNING: meh\\nERROR: Video unavailable\\n'); sys.exit(3)",
    )
    runner.start()
    result = runner.wait(timeout=30)
    assert not result.success
    assert result.returncode == 3
    assert result.fail_reason == "ERROR: Video unavailable"


def test_nonzero_exit_without_stderr(tmp_path):
    runner = _runner(tmp_path, "import sys; sys.exit(2)")
    runner.start()
    result = runner.wait(timeout=30)
    assert result.fail_reason == "process exited with code 2"


def test_clean_exit_with_missing_output_fails(tmp_path):
    out = tmp_path / "never.mp3"
    runner = _runner(tmp_path, "pass", expected=[out])
    runner.start()
    result = runner.wait(timeout=30)
    assert not result.success
    assert result.returncode == 0
    assert result.fail_reason == f"missing output file: {out}"


def test_missing_binary_fails_without_raising(tmp_path):
    done = threading.Event()
    runner = SubprocessRunner(
        name="missing",
        command=[str(tmp_path / "no-such-tool"), "--version"],
        stdout_log_path=tmp_path / "m.stdout.log",
        stderr_log_path=tmp_path / "m.stderr.log",
        system_log_path=tmp_path / "m.system.log",
        on_complete=lambda result: done.set(),
    )
    runner.start()
    result = runner.wait(timeout=10)
    assert done.wait(5)
    assert not result.success
    assert result.fail_reason.startswith("failed to start")
    assert "failed to start" in (tmp_path / "m.system.log").read_text()


def test_cancel_stops_process_before_returning(tmp_path):
    results = []
    runner = _runner(
        tmp_path,
        "import time\nprint('started', flush=True)\ntime.sleep(60)",
        grace_seconds=2.0,
        on_complete=results.append,
    )
    runner.start()
    deadline = time.time() + 10
    while not (tmp_path / "job.stdout.log").exists() or "started" not in (tmp_path / "job.stdout.log").read_text():
        assert time.time() < deadline
        time.sleep(0.05)
    began = time.time()
    runner.cancel()
    assert time.time() - began < 10
    assert not runner.is_running()
    assert len(results) == 1
    assert results[0].cancelled
    assert results[0].fail_reason == "cancelled"
    assert "cancelled" in (tmp_path / "job.system.log").read_text()


def test_cancel_escalates_to_kill(tmp_path):
    script = (
        "import signal, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "print('ready', flush=True)\n"
        "time.sleep(60)\n"
    )
    runner = _runner(tmp_path, script, grace_seconds=0.5)
    runner.start()
    deadline = time.time() + 10
    while "ready" not in ((tmp_path / "job.stdout.log").read_text() if (tmp_path / "job.stdout.log").exists() else ""):
        assert time.time() < deadline
        time.sleep(0.05)
    runner.cancel()
    assert runner.result.cancelled
    assert "killing" in (tmp_path / "job.system.log").read_text()
