import sys
from pathlib import Path
from typing import List, Optional

import pytest

# Ensure the project root is on the path for imports in tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from audiocache.config import AppConfig  # noqa: E402
from audiocache.runner import RunResult  # noqa: E402


class FakeRunner:
    """Stands in for SubprocessRunner; the test decides when and how it ends."""

    def __init__(
        self,
        name,
        command,
        stdout_log_path,
        stderr_log_path,
        system_log_path,
        expected_outputs=(),
        on_line=None,
        on_complete=None,
        grace_seconds=5.0,
    ):
        self.name = name
        self.command = list(command)
        self.stdout_log_path = Path(stdout_log_path)
        self.stderr_log_path = Path(stderr_log_path)
        self.system_log_path = Path(system_log_path)
        self.expected_outputs = [Path(p) for p in expected_outputs]
        self.on_line = on_line
        self.on_complete = on_complete
        self.grace_seconds = grace_seconds
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True
        return self

    def emit(self, text: str, stream: str = "stdout") -> None:
        self.on_line(stream, text)

    def finish(self, success: bool = True, reason: Optional[str] = None) -> None:
        if success:
            for path in self.expected_outputs:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(b"audio")
            result = RunResult(returncode=0, success=True)
        else:
            result = RunResult(returncode=1, success=False, fail_reason=reason or "process exited with code 1")
        self.on_complete(result)

    def cancel(self) -> None:
        self.cancelled = True
        self.on_complete(RunResult(returncode=-15, success=False, fail_reason="cancelled", cancelled=True))


class FakeRunnerFactory:
    def __init__(self) -> None:
        self.runners: List[FakeRunner] = []

    def __call__(self, **kwargs) -> FakeRunner:
        runner = FakeRunner(**kwargs)
        self.runners.append(runner)
        return runner

    def named(self, name: str) -> FakeRunner:
        matches = [r for r in self.runners if r.name == name]
        assert matches, f"no runner named {name}; have {[r.name for r in self.runners]}"
        return matches[-1]

    def names(self) -> List[str]:
        return [r.name for r in self.runners]


@pytest.fixture
def fake_runners():
    return FakeRunnerFactory()


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        data_dir=tmp_path / "data",
        download_concurrency=1,
        transcode_concurrency=1,
        cancel_grace_seconds=1.0,
    )
