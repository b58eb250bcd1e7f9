from pathlib import Path
from typing import Any, Dict, Generator, List, Tuple
from unittest.mock import MagicMock, patch

import pytest

from lib_publish_watcher.config import DEFAULT_REGISTRY_URL, Config
from lib_publish_watcher.context import DaemonContext
from lib_publish_watcher.patterns import DEFAULT_IGNORE_PATTERNS
from lib_publish_watcher.pipeline import PipelineRunner


class FakeCommands:
    """Stand-in for subprocess.Popen that records which pipeline step ran."""

    def __init__(self) -> None:
        self.calls: List[str] = []
        self.args: List[List[str]] = []
        self.kwargs: List[Dict[str, Any]] = []
        self.results: Dict[str, Tuple[int, str]] = {}
        self.processes: List[MagicMock] = []

    @staticmethod
    def step_for(args: List[str]) -> str:
        joined = " ".join(args)
        if "unpublish" in joined:
            return "unpublish"
        if "publish" in joined:
            return "publish"
        if "build" in joined:
            return "build"
        return "other"

    def __call__(self, args: List[str], **kwargs: Any) -> MagicMock:
        step = self.step_for(args)
        self.calls.append(step)
        self.args.append(list(args))
        self.kwargs.append(kwargs)
        code, output = self.results.get(step, (0, ""))
        proc = MagicMock()
        proc.pid = 4321
        proc.returncode = code
        proc.communicate.return_value = (output, None)
        proc.poll.return_value = code
        self.processes.append(proc)
        return proc


@pytest.fixture
def fake_commands() -> Generator[FakeCommands, None, None]:
    """Patch Popen in the pipeline module with a recording fake."""
    fake = FakeCommands()
    with patch("lib_publish_watcher.pipeline.subprocess.Popen", side_effect=fake):
        yield fake


@pytest.fixture
def context() -> DaemonContext:
    return DaemonContext()


@pytest.fixture
def runner(context: DaemonContext, fake_commands: FakeCommands, tmp_path: Path) -> PipelineRunner:
    return PipelineRunner(
        context,
        build_command="npm run build --",
        unpublish_command="npm run unpublish:local",
        publish_command="npm run publish:local",
        build_configuration="production",
        cwd=str(tmp_path),
    )


@pytest.fixture
def lib_tree(tmp_path: Path) -> Path:
    """A small library workspace; returns the ``libs`` root."""
    libs = tmp_path / "workspace" / "libs"
    (libs / "foo" / "src" / "lib").mkdir(parents=True)
    (libs / "foo" / "dist").mkdir()
    (libs / "foo" / "node_modules" / "pkg").mkdir(parents=True)
    (libs / "bar" / "src").mkdir(parents=True)
    (libs / "foo" / "src" / "index.ts").write_text("export const a = 1;\n", encoding="utf-8")
    (libs / "foo" / "dist" / "bundle.js").write_text("var a = 1;\n", encoding="utf-8")
    return libs


@pytest.fixture
def mock_sleep(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    """Mock time.sleep to skip delays."""
    mock = MagicMock()
    monkeypatch.setattr("time.sleep", mock)
    return mock


@pytest.fixture
def mock_observer() -> MagicMock:
    """A watchdog Observer stand-in; pass ``lambda: mock_observer`` as factory."""
    observer = MagicMock()
    observer.is_alive.return_value = True
    return observer


@pytest.fixture
def mock_signal() -> Generator[MagicMock, None, None]:
    """Fixture for mocking signal.signal."""
    with patch("signal.signal") as mock:
        yield mock


@pytest.fixture
def make_config(tmp_path: Path) -> Any:
    def _make(**overrides: Any) -> Config:
        values: Dict[str, Any] = {
            "workspace": str(tmp_path),
            "watch_roots": [str(tmp_path / "libs")],
            "ignore_patterns": list(DEFAULT_IGNORE_PATTERNS),
            "debounce_seconds": 0.1,
            "native_recursive": True,
            "registry_command": "npm run verdaccio",
            "registry_url": DEFAULT_REGISTRY_URL,
            "registry_max_attempts": 3,
            "build_command": "npm run build --",
            "build_configuration": "production",
            "unpublish_command": "npm run unpublish:local",
            "publish_command": "npm run publish:local",
            "build_timeout": 300.0,
            "unpublish_timeout": 60.0,
            "publish_timeout": 120.0,
            "log_file": None,
            "log_level": "INFO",
        }
        values.update(overrides)
        return Config(**values)
    return _make
