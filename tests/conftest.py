"""Shared fixtures: isolated settings, a fake gateway process and supervisor factories."""

import asyncio
import sys
from pathlib import Path

import pytest

CONTROLLER = Path(__file__).resolve().parents[1] / "controller"
if str(CONTROLLER) not in sys.path:
    sys.path.insert(0, str(CONTROLLER))

import settings  # noqa: E402
from dirs import StateDirs  # noqa: E402
from gateway import GatewaySupervisor  # noqa: E402

PASSWORD = "correct-horse-battery"


class FakeProc:
    """Stand-in for asyncio.subprocess.Process that exits when signalled."""

    def __init__(self, pid: int):
        self.pid = pid
        self.returncode = None
        self.signals = []
        self._exited = asyncio.Event()

    def send_signal(self, sig):
        self.signals.append(sig)
        self.exit(-int(sig))

    def exit(self, code: int):
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    async def wait(self):
        await self._exited.wait()
        return self.returncode


class FakeSpawner:
    def __init__(self, delay: float = 0.0, error: Exception | None = None):
        self.delay = delay
        self.error = error
        self.calls = []
        self.procs = []

    async def __call__(self, *argv, env=None):
        self.calls.append(argv)
        await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        proc = FakeProc(4000 + len(self.procs))
        self.procs.append(proc)
        return proc


async def always_ready() -> bool:
    return True


async def never_ready() -> bool:
    return False


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    data_root = tmp_path / "data"
    data_root.mkdir()
    monkeypatch.setattr(settings, "DATA_ROOT", data_root)
    monkeypatch.setattr(settings, "SETUP_PASSWORD", PASSWORD)
    monkeypatch.setattr(settings, "AUDIT_LOG", None)
    monkeypatch.setattr(settings, "SCRUB_RULES_PATH", None)
    monkeypatch.setattr(settings, "CONFIG_PATH_OVERRIDE", "")
    monkeypatch.setattr(settings, "GATEWAY_TOKEN_OVERRIDE", "")
    monkeypatch.setattr(settings, "STATE_DIR_OVERRIDE", "")
    monkeypatch.setattr(settings, "WORKSPACE_DIR_OVERRIDE", "")
    return data_root


@pytest.fixture
def state_dirs(isolated_settings) -> StateDirs:
    state = isolated_settings / ".openclaw"
    workspace = state / "workspace"
    workspace.mkdir(parents=True)
    return StateDirs(state, workspace)


@pytest.fixture
def make_supervisor(state_dirs):
    def factory(spawner=None, probe=always_ready, configured=True, ready_timeout=0.2):
        if configured:
            (state_dirs.state_dir / "openclaw.json").write_text("{}")
        return GatewaySupervisor(
            state_dirs,
            "test-token",
            spawn=spawner or FakeSpawner(),
            probe=probe,
            ready_timeout=ready_timeout,
            poll_interval=0.01,
            stop_grace=0.01,
        )
    return factory
