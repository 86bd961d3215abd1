"""
OpenClaw CLI invocations for the /setup surface.

Only a closed set of console commands exists (ConsoleCommand); arbitrary
shell strings are never accepted. Every CLI output returned over HTTP goes
through scrub() first.
"""

import asyncio
import json
import os
import re
import signal
from enum import Enum
from typing import Optional

import settings
from gateway import GatewaySupervisor
from scrub import scrub, scrub_dict

KILL_GRACE = 5.0
PAIRING_CHANNELS = ["telegram", "discord", "slack"]
STATE_SUBDIRS = ["credentials", "identity", "logs", "sessions"]

_SAFE_ARG_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")


def claw_args(*args: str) -> list[str]:
    return [settings.OPENCLAW_NODE, settings.OPENCLAW_ENTRY, *args]


async def run_cmd(argv: list[str], env: Optional[dict] = None, timeout: Optional[float] = None) -> tuple[int, str]:
    """
    Run a command with stdout+stderr combined. Returns (exit_code, output).

    On timeout the process gets SIGTERM, then SIGKILL 5s later.
    """
    timeout = settings.COMMAND_TIMEOUT if timeout is None else timeout
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=env,
        )
    except OSError as e:
        return 127, f"\n[spawn error] {e}\n"

    try:
        out, _ = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        try:
            proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(proc.wait(), KILL_GRACE)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
        return 124, f"\n[timeout] command exceeded {timeout:g}s and was terminated\n"

    return proc.returncode or 0, (out or b"").decode("utf-8", errors="replace")


async def run_claw(supervisor: GatewaySupervisor, *args: str, timeout: Optional[float] = None) -> tuple[int, str]:
    return await run_cmd(claw_args(*args), env=supervisor.child_env(), timeout=timeout)


def safe_cli_arg(value: str) -> bool:
    """Channel names, pairing codes and config paths: no flags, no whitespace."""
    return bool(_SAFE_ARG_RE.match(value or ""))


# ============================================================
# Console commands
# ============================================================

class ConsoleCommand(str, Enum):
    GATEWAY_RESTART = "gateway.restart"
    GATEWAY_STOP = "gateway.stop"
    GATEWAY_START = "gateway.start"
    VERSION = "openclaw.version"
    STATUS = "openclaw.status"
    HEALTH = "openclaw.health"
    DOCTOR = "openclaw.doctor"
    DOCTOR_FIX = "openclaw.doctor.fix"
    SECURITY_AUDIT = "openclaw.security.audit"
    LOGS_TAIL = "openclaw.logs.tail"
    CONFIG_GET = "openclaw.config.get"
    FIX_DIRS = "wrapper.fix.dirs"
    FIX_PERMISSIONS = "wrapper.fix.permissions"
    ENV_CHECK = "wrapper.env.check"

    @classmethod
    def parse(cls, raw: str) -> Optional["ConsoleCommand"]:
        try:
            return cls(raw)
        except ValueError:
            return None


def _cli_args(cmd: ConsoleCommand, arg: str) -> Optional[list[str]]:
    if cmd is ConsoleCommand.VERSION:
        return ["--version"]
    if cmd is ConsoleCommand.STATUS:
        return ["status"]
    if cmd is ConsoleCommand.HEALTH:
        return ["health"]
    if cmd is ConsoleCommand.DOCTOR:
        return ["doctor"]
    if cmd is ConsoleCommand.DOCTOR_FIX:
        return ["doctor", "--fix"]
    if cmd is ConsoleCommand.SECURITY_AUDIT:
        return ["security", "audit", "--deep"] if arg == "deep" else ["security", "audit"]
    if cmd is ConsoleCommand.LOGS_TAIL:
        try:
            lines = int(arg or "200")
        except ValueError:
            lines = 200
        lines = max(50, min(1000, lines or 200))
        return ["logs", "--tail", str(lines)]
    if cmd is ConsoleCommand.CONFIG_GET:
        return ["config", "get", arg]
    return None


async def run_console_command(supervisor: GatewaySupervisor, cmd: ConsoleCommand, arg: str = "") -> tuple[int, dict]:
    """Dispatch one allowlisted command. Returns (http_status, body)."""
    if cmd is ConsoleCommand.GATEWAY_RESTART:
        ok, reason = await supervisor.restart()
        output = "Gateway restarted (wrapper-managed).\n" if ok else scrub(f"Gateway restart failed: {reason}\n")
        return 200, {"ok": ok, "output": output}

    if cmd is ConsoleCommand.GATEWAY_STOP:
        await supervisor.stop()
        return 200, {"ok": True, "output": "Gateway stopped (wrapper-managed).\n"}

    if cmd is ConsoleCommand.GATEWAY_START:
        ok, reason = await supervisor.ensure_running()
        return 200, {"ok": ok, "output": "Gateway started.\n" if ok else scrub(f"Gateway not started: {reason}\n")}

    if cmd is ConsoleCommand.FIX_DIRS:
        return 200, {"ok": True, "output": scrub(fix_dirs(supervisor)[1])}

    if cmd is ConsoleCommand.FIX_PERMISSIONS:
        return 200, {"ok": True, "output": scrub(fix_permissions(supervisor)[1])}

    if cmd is ConsoleCommand.ENV_CHECK:
        return 200, {"ok": True, "output": scrub(env_check(supervisor))}

    if cmd is ConsoleCommand.CONFIG_GET and not safe_cli_arg(arg):
        return 400, {"ok": False, "error": "Missing or invalid config path"}

    args = _cli_args(cmd, arg)
    if args is None:
        return 400, {"ok": False, "error": "Unhandled command"}

    code, output = await run_claw(supervisor, *args)
    return (200 if code == 0 else 500), {"ok": code == 0, "output": scrub(output)}


# ============================================================
# Wrapper repair utilities
# ============================================================

def _dirs_to_create(supervisor: GatewaySupervisor) -> list:
    state_dir = supervisor.dirs.state_dir
    return [state_dir / sub for sub in STATE_SUBDIRS] + [supervisor.dirs.workspace_dir]


def fix_dirs(supervisor: GatewaySupervisor) -> tuple[bool, str]:
    output = "=== Fixing directory structure ===\n\n"
    ok = True
    for d in _dirs_to_create(supervisor):
        try:
            d.mkdir(parents=True, exist_ok=True, mode=0o700)
            output += f"✓ Created/verified: {d}\n"
        except OSError as e:
            output += f"✗ Failed to create {d}: {e}\n"
            ok = False
    output += "\n=== Directory fix complete ===\n"
    return ok, output


def fix_permissions(supervisor: GatewaySupervisor) -> tuple[bool, str]:
    output = "=== Fixing directory permissions ===\n\n"
    ok = True
    state_dir = supervisor.dirs.state_dir
    targets = [state_dir, supervisor.dirs.workspace_dir] + [state_dir / sub for sub in STATE_SUBDIRS]
    for d in targets:
        try:
            if d.exists():
                d.chmod(0o700)
                output += f"✓ Set {d} to 700\n"
            elif d in (state_dir, supervisor.dirs.workspace_dir):
                output += f"⚠ Directory does not exist: {d}\n"
        except OSError as e:
            output += f"✗ Failed to chmod {d}: {e}\n"
            ok = False
    output += "\n=== Permission fix complete ===\n"
    return ok, output


def env_check(supervisor: GatewaySupervisor) -> str:
    output = "=== Environment Check ===\n\n"
    output += f"STATE_DIR: {supervisor.dirs.state_dir}\n"
    output += f"WORKSPACE_DIR: {supervisor.dirs.workspace_dir}\n"
    output += f"OPENCLAW_ENTRY: {settings.OPENCLAW_ENTRY}\n"
    output += f"OPENCLAW_NODE: {settings.OPENCLAW_NODE}\n"
    output += f"INTERNAL_GATEWAY_PORT: {settings.INTERNAL_GATEWAY_PORT}\n\n"

    deprecated = [k for k in ("CLAWDBOT_WORKSPACE_DIR", "CLAWDBOT_STATE_DIR", "CLAWDBOT_GATEWAY_TOKEN") if os.environ.get(k)]
    if deprecated:
        output += "⚠ Deprecated environment variables detected:\n"
        for k in deprecated:
            output += f"  - {k} (use OPENCLAW_{k.replace('CLAWDBOT_', '')} instead)\n"
        output += "\n"
    else:
        output += "✓ No deprecated environment variables detected.\n\n"

    output += "Directory status:\n"
    for d in (supervisor.dirs.state_dir, supervisor.dirs.workspace_dir):
        try:
            mode = oct(d.stat().st_mode & 0o777)[2:]
            output += f"  {d}: exists (mode: {mode})\n"
        except OSError:
            output += f"  {d}: DOES NOT EXIST\n"

    output += "\n=== Environment check complete ===\n"
    return output


# ============================================================
# Health
# ============================================================

ISSUE_MARKERS = ("CRITICAL", "permission", "missing", "Error")


async def health_check(supervisor: GatewaySupervisor) -> dict:
    """Run `doctor` and pull out the lines that look like problems."""
    code, output = await run_claw(supervisor, "doctor")
    output = scrub(output)
    issues = [line.strip() for line in output.splitlines() if any(m in line for m in ISSUE_MARKERS)]
    return {
        "ok": code == 0,
        "healthy": code == 0 and not issues,
        "issues": issues,
        "output": output,
    }


async def fix_all(supervisor: GatewaySupervisor) -> dict:
    """Ordered repair: dirs, permissions, doctor --fix, restart. Then a final doctor."""
    steps = []
    output = "=== Automatic issue repair ===\n\n"

    output += "--- Step 1/4: Creating missing directories ---\n"
    ok, text = fix_dirs(supervisor)
    steps.append({"name": "Create directories", "ok": ok})
    output += text + "\n"

    output += "--- Step 2/4: Fixing directory permissions ---\n"
    ok, text = fix_permissions(supervisor)
    steps.append({"name": "Fix permissions", "ok": ok})
    output += text + "\n"

    output += "--- Step 3/4: Running openclaw doctor --fix ---\n"
    code, text = await run_claw(supervisor, "doctor", "--fix")
    steps.append({"name": "OpenClaw doctor --fix", "ok": code == 0})
    output += scrub(text) + "\n"

    output += "--- Step 4/4: Restarting gateway ---\n"
    ok, reason = await supervisor.restart()
    if ok:
        output += "  ✓ Gateway restarted successfully\n\n"
    else:
        output += f"  ✗ Gateway restart failed: {reason}\n\n"
    steps.append({"name": "Restart gateway", "ok": ok})

    output += "--- Final health check ---\n"
    code, text = await run_claw(supervisor, "doctor")
    healthy = code == 0
    output += scrub(text) + "\n"

    all_ok = all(s["ok"] for s in steps)
    output += "ALL REPAIRS COMPLETE\n" if all_ok else "SOME REPAIRS MAY HAVE FAILED\n"
    output += "\nSummary:\n"
    for step in steps:
        output += f"  {'✓' if step['ok'] else '✗'} {step['name']}\n"

    return {"ok": all_ok, "healthy": healthy, "steps": steps, "output": output}


# ============================================================
# Pairing
# ============================================================

def _parse_pending(output: str) -> list:
    try:
        data = json.loads(output)
    except json.JSONDecodeError:
        return []
    if isinstance(data, dict):
        data = data.get("pending", [])
    return data if isinstance(data, list) else []


def _pairing_key(item: dict) -> tuple:
    return (item.get("channel") or item.get("type"), item.get("code") or item.get("pairingCode"))


async def _collect_pending(supervisor: GatewaySupervisor) -> tuple[list, str]:
    pending: list[dict] = []
    last_output = ""

    for channel in PAIRING_CHANNELS:
        # Newer CLIs take --channel, older ones a positional channel.
        code, output = await run_claw(supervisor, "pairing", "list", "--channel", channel, "--json")
        if code != 0:
            code, output = await run_claw(supervisor, "pairing", "list", channel, "--json")
        last_output = output
        for item in _parse_pending(output):
            if isinstance(item, dict):
                pending.append({**item, "channel": item.get("channel") or channel})

    _, output = await run_claw(supervisor, "pairing", "list", "--json")
    seen = {_pairing_key(p) for p in pending}
    for item in _parse_pending(output):
        if isinstance(item, dict) and _pairing_key(item) not in seen:
            pending.append(item)
            seen.add(_pairing_key(item))

    return pending, last_output


async def list_pending(supervisor: GatewaySupervisor) -> tuple[list, str]:
    """Collect pending pairing requests across channels. Returns (pending, last_output), both scrubbed."""
    pending, last_output = await _collect_pending(supervisor)
    return scrub_dict(pending), scrub(last_output)


async def approve_pairing(supervisor: GatewaySupervisor, channel: str, code: str) -> tuple[bool, str]:
    rc, output = await run_claw(supervisor, "pairing", "approve", "--channel", channel, code)
    if rc != 0:
        rc, output = await run_claw(supervisor, "pairing", "approve", channel, code)
    return rc == 0, scrub(output)


async def approve_all(supervisor: GatewaySupervisor) -> list[dict]:
    pending, _ = await _collect_pending(supervisor)
    results = []
    for item in pending:
        channel, code = _pairing_key(item)
        if not channel or not code:
            continue
        shown = {"channel": scrub(str(channel)), "code": scrub(str(code))}
        if not (safe_cli_arg(str(channel)) and safe_cli_arg(str(code))):
            results.append({**shown, "ok": False, "output": "invalid channel or code"})
            continue
        ok, output = await approve_pairing(supervisor, str(channel), str(code))
        results.append({**shown, "ok": ok, "output": output})
    return results


# ============================================================
# Onboarding
# ============================================================

AUTH_SECRET_FLAGS = {
    "openai-api-key": "--openai-api-key",
    "apiKey": "--anthropic-api-key",
    "openrouter-api-key": "--openrouter-api-key",
    "ai-gateway-api-key": "--ai-gateway-api-key",
    "moonshot-api-key": "--moonshot-api-key",
    "kimi-code-api-key": "--kimi-code-api-key",
    "gemini-api-key": "--gemini-api-key",
    "zai-api-key": "--zai-api-key",
    "minimax-api": "--minimax-api-key",
    "minimax-api-lightning": "--minimax-api-key",
    "synthetic-api-key": "--synthetic-api-key",
    "opencode-zen": "--opencode-zen-api-key",
}
FLOWS = ("quickstart", "advanced", "manual")


def build_onboard_args(supervisor: GatewaySupervisor, flow: str = "quickstart", auth_choice: str = "", auth_secret: str = "") -> list[str]:
    args = [
        "onboard",
        "--non-interactive",
        "--accept-risk",
        "--json",
        "--no-install-daemon",
        "--skip-health",
        "--workspace", str(supervisor.dirs.workspace_dir),
        # The wrapper owns public networking; keep the gateway internal.
        "--gateway-bind", "loopback",
        "--gateway-port", str(supervisor.port),
        "--gateway-auth", "token",
        "--gateway-token", supervisor.token,
        "--flow", flow if flow in FLOWS else "quickstart",
    ]
    if auth_choice:
        args += ["--auth-choice", auth_choice]
        secret = auth_secret.strip()
        flag = AUTH_SECRET_FLAGS.get(auth_choice)
        if flag and secret:
            args += [flag, secret]
        if auth_choice == "token" and secret:
            # Anthropic setup-token flow.
            args += ["--token-provider", "anthropic", "--token", secret]
    return args


async def onboard(supervisor: GatewaySupervisor, flow: str, auth_choice: str, auth_secret: str) -> tuple[bool, str]:
    supervisor.ensure_dirs()
    code, output = await run_claw(supervisor, *build_onboard_args(supervisor, flow, auth_choice, auth_secret))
    ok = code == 0 and supervisor.is_configured()
    if ok:
        # Pin gateway auth/bind/port so the browser UI can authenticate reliably.
        for key, value in (
            ("gateway.auth.mode", "token"),
            ("gateway.auth.token", supervisor.token),
            ("gateway.bind", "loopback"),
            ("gateway.port", str(supervisor.port)),
        ):
            await run_claw(supervisor, "config", "set", key, value)
        restarted, reason = await supervisor.restart()
        output += "\n[gateway] restarted\n" if restarted else f"\n[gateway] not started: {reason}\n"
    return ok, scrub(output)
