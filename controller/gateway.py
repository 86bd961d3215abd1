"""
Gateway process supervisor.

Owns the single OpenClaw gateway child process. The gateway is started
lazily by the first request that needs it; concurrent callers share one
in-flight start so there is never more than one spawn.

Failures are not retried here. The next request that needs the gateway
triggers a fresh ensure_running().
"""

import asyncio
import os
import secrets
import signal
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional

import httpx

import dirs
import settings
from dirs import StateDirs

READY_PATHS = ("/openclaw", "/clawdbot", "/")


class GatewayError(Exception):
    """Base class for supervisor failures surfaced to callers."""


class NotConfigured(GatewayError):
    def __init__(self):
        super().__init__("not configured")


class SpawnError(GatewayError):
    pass


class StartTimeout(GatewayError):
    def __init__(self):
        super().__init__("Gateway did not become ready in time")


def resolve_gateway_token(state_dir: Path, override: Optional[str] = None) -> str:
    """
    Gateway admin token. Must be stable across restarts, so when it is not
    supplied via the environment it is persisted in the state dir.
    """
    if override is None:
        override = settings.GATEWAY_TOKEN_OVERRIDE
    if override:
        return override

    token_path = state_dir / "gateway.token"
    try:
        existing = token_path.read_text().strip()
        if existing:
            return existing
    except OSError:
        pass

    generated = secrets.token_hex(32)
    try:
        state_dir.mkdir(parents=True, exist_ok=True)
        token_path.write_text(generated)
        token_path.chmod(0o600)
    except OSError as e:
        print(f"[wrapper] could not persist gateway token: {e}", flush=True)
    return generated


class GatewaySupervisor:
    def __init__(
        self,
        state_dirs: StateDirs,
        token: str,
        target: str = settings.GATEWAY_TARGET,
        port: int = settings.INTERNAL_GATEWAY_PORT,
        spawn: Optional[Callable[..., Awaitable]] = None,
        probe: Optional[Callable[[], Awaitable[bool]]] = None,
        ready_timeout: float = settings.GATEWAY_READY_TIMEOUT,
        poll_interval: float = settings.GATEWAY_POLL_INTERVAL,
        stop_grace: float = settings.GATEWAY_STOP_GRACE,
    ):
        self.dirs = state_dirs
        self.token = token
        self.target = target
        self.port = port
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._probe = probe or self._probe_http
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self.stop_grace = stop_grace

        self.proc = None
        self._starting: Optional[asyncio.Task] = None
        self._stopping: set[int] = set()
        self._watchers: set[asyncio.Task] = set()
        self._dirs_reresolved = False

        self.starts_count = 0
        self.restart_count = 0
        self.crash_count = 0
        self.last_started_at: Optional[float] = None

    # ------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------

    def config_path(self) -> Path:
        if settings.CONFIG_PATH_OVERRIDE:
            return Path(settings.CONFIG_PATH_OVERRIDE)
        return self.dirs.state_dir / "openclaw.json"

    def is_configured(self) -> bool:
        try:
            return self.config_path().exists()
        except OSError:
            return False

    @property
    def running(self) -> bool:
        return self.proc is not None

    def child_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["OPENCLAW_STATE_DIR"] = str(self.dirs.state_dir)
        env["OPENCLAW_WORKSPACE_DIR"] = str(self.dirs.workspace_dir)
        env["OPENCLAW_GATEWAY_TOKEN"] = self.token
        env.setdefault("CLAWDBOT_STATE_DIR", str(self.dirs.state_dir))
        env.setdefault("CLAWDBOT_WORKSPACE_DIR", str(self.dirs.workspace_dir))
        env.setdefault("CLAWDBOT_GATEWAY_TOKEN", self.token)
        return env

    def gateway_argv(self) -> list[str]:
        return [
            settings.OPENCLAW_NODE, settings.OPENCLAW_ENTRY,
            "gateway", "run",
            "--bind", "loopback",
            "--port", str(self.port),
            "--auth", "token",
            "--token", self.token,
        ]

    def ensure_dirs(self):
        """Create the working dirs, re-resolving them once on a permission failure."""
        try:
            self.dirs.state_dir.mkdir(parents=True, exist_ok=True)
            self.dirs.workspace_dir.mkdir(parents=True, exist_ok=True)
        except PermissionError as e:
            if self._dirs_reresolved:
                raise
            self._dirs_reresolved = True
            print(f"[gateway] permission denied creating working dirs ({e}), re-resolving", flush=True)
            self.dirs = dirs.resolve_state_dirs()
            self.dirs.state_dir.mkdir(parents=True, exist_ok=True)
            self.dirs.workspace_dir.mkdir(parents=True, exist_ok=True)
            print(f"[gateway] now using state={self.dirs.state_dir} workspace={self.dirs.workspace_dir}", flush=True)

    # ------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------

    async def start(self):
        """Spawn the gateway. Does not wait for readiness."""
        if self.proc is not None:
            return
        if not self.is_configured():
            raise NotConfigured()

        try:
            self.ensure_dirs()
            proc = await self._spawn(*self.gateway_argv(), env=self.child_env())
        except OSError as e:
            self.proc = None
            print(f"[gateway] spawn error: {e}", flush=True)
            raise SpawnError(f"spawn error: {e}") from e

        self.proc = proc
        self.starts_count += 1
        self.last_started_at = time.time()
        print(f"[gateway] started pid={getattr(proc, 'pid', None)} starts={self.starts_count} restarts={self.restart_count}", flush=True)

        watcher = asyncio.create_task(self._watch(proc))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)

    async def _watch(self, proc):
        code = await proc.wait()
        intentional = id(proc) in self._stopping
        self._stopping.discard(id(proc))
        if self.proc is proc:
            self.proc = None

        if code != 0 and not intentional:
            self.crash_count += 1
            uptime = time.time() - self.last_started_at if self.last_started_at else 0
            if code is not None and code < 0:
                detail = f"code=None signal={-code}"
            else:
                detail = f"code={code} signal=None"
            print(f"[gateway] crashed {detail} crashes={self.crash_count} uptime={uptime:.1f}s", flush=True)
        else:
            print(f"[gateway] exited code={code}", flush=True)

    async def _probe_http(self) -> bool:
        async with httpx.AsyncClient(timeout=httpx.Timeout(2.0)) as client:
            for path in READY_PATHS:
                try:
                    # Any HTTP response means the port is open.
                    await client.get(f"{self.target}{path}")
                    return True
                except httpx.HTTPError:
                    continue
        return False

    async def wait_ready(self) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ready_timeout
        while loop.time() < deadline:
            if await self._probe():
                return True
            await asyncio.sleep(self.poll_interval)
        return False

    async def _start_and_wait(self):
        try:
            await self.start()
            if not await self.wait_ready():
                raise StartTimeout()
        finally:
            self._starting = None

    async def ensure_running(self) -> tuple[bool, str]:
        """Start the gateway if needed. Returns (ok, reason)."""
        if not self.is_configured():
            return False, "not configured"

        if self._starting is None:
            if self.proc is not None:
                return True, ""
            self._starting = asyncio.create_task(self._start_and_wait())

        try:
            await asyncio.shield(self._starting)
        except GatewayError as e:
            return False, str(e)
        except Exception as e:
            print(f"[gateway] unexpected start failure: {e!r}", flush=True)
            return False, str(e)
        return True, ""

    async def _terminate(self):
        proc = self.proc
        self._stopping.add(id(proc))
        try:
            proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            pass
        # Give it a moment to exit and release the port.
        await asyncio.sleep(self.stop_grace)
        # Clear even if it has not exited yet so the supervisor never gets stuck.
        if self.proc is proc:
            self.proc = None

    async def stop(self) -> bool:
        """Terminate the gateway without restarting. Returns True if one was running."""
        if self.proc is None:
            return False
        await self._terminate()
        print("[gateway] stopped", flush=True)
        return True

    async def restart(self) -> tuple[bool, str]:
        if self._starting is not None:
            await self.ensure_running()
        if self.proc is not None:
            await self._terminate()
            self.restart_count += 1
            print(f"[gateway] restarting restarts={self.restart_count}", flush=True)
        return await self.ensure_running()

    def shutdown(self):
        """Best-effort SIGTERM on wrapper exit."""
        if self.proc is None:
            return
        try:
            self.proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            pass

    def snapshot(self) -> dict:
        return {
            "status": "running" if self.running else "stopped",
            "pid": getattr(self.proc, "pid", None),
            "starts": self.starts_count,
            "restarts": self.restart_count,
            "crashes": self.crash_count,
            "lastStart": self.last_started_at,
        }
