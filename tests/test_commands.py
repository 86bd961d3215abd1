"""Subprocess runner, console dispatch, repair and pairing tests."""

import json
import stat

import pytest

import commands
from conftest import FakeSpawner
from commands import ConsoleCommand, build_onboard_args, run_cmd, run_console_command


class FakeCli:
    """Replaces run_cmd; answers by the CLI args after `<node> <entry>`."""

    def __init__(self, respond=None):
        self.calls = []
        self.respond = respond or (lambda args: (0, ""))

    async def __call__(self, argv, env=None, timeout=None):
        args = tuple(argv[2:])
        self.calls.append(args)
        return self.respond(args)


@pytest.fixture
def fake_cli(monkeypatch):
    def install(respond=None):
        cli = FakeCli(respond)
        monkeypatch.setattr(commands, "run_cmd", cli)
        return cli
    return install


class TestRunCmd:
    @pytest.mark.asyncio
    async def test_combines_stdout_and_stderr(self):
        code, output = await run_cmd(["/bin/sh", "-c", "echo out; echo err 1>&2; exit 3"])
        assert code == 3
        assert "out" in output and "err" in output

    @pytest.mark.asyncio
    async def test_spawn_error_is_127(self):
        code, output = await run_cmd(["/nonexistent/binary-for-test"])
        assert code == 127
        assert "[spawn error]" in output

    @pytest.mark.asyncio
    async def test_timeout_terminates(self):
        """A hung command is killed and reported instead of blocking forever."""
        code, output = await run_cmd(["/bin/sh", "-c", "exec sleep 30"], timeout=0.2)
        assert code == 124
        assert "[timeout]" in output


class TestConsoleDispatch:
    def test_unknown_command_rejected(self):
        """Anything outside the enum does not parse."""
        assert ConsoleCommand.parse("rm -rf /") is None
        assert ConsoleCommand.parse("openclaw.status; id") is None
        assert ConsoleCommand.parse("openclaw.status") is ConsoleCommand.STATUS

    @pytest.mark.asyncio
    @pytest.mark.parametrize("arg,expected", [("", "200"), ("10", "50"), ("5000", "1000"), ("300", "300"), ("abc", "200")])
    async def test_logs_tail_clamped(self, make_supervisor, fake_cli, arg, expected):
        cli = fake_cli()
        await run_console_command(make_supervisor(), ConsoleCommand.LOGS_TAIL, arg)
        assert cli.calls == [("logs", "--tail", expected)]

    @pytest.mark.asyncio
    async def test_security_audit_deep(self, make_supervisor, fake_cli):
        cli = fake_cli()
        sup = make_supervisor()
        await run_console_command(sup, ConsoleCommand.SECURITY_AUDIT, "deep")
        await run_console_command(sup, ConsoleCommand.SECURITY_AUDIT, "")
        assert cli.calls == [("security", "audit", "--deep"), ("security", "audit")]

    @pytest.mark.asyncio
    async def test_config_get_requires_arg(self, make_supervisor, fake_cli):
        cli = fake_cli()
        status, body = await run_console_command(make_supervisor(), ConsoleCommand.CONFIG_GET, "")
        assert status == 400
        assert body["ok"] is False
        assert cli.calls == []

    @pytest.mark.asyncio
    async def test_config_get_rejects_flags(self, make_supervisor, fake_cli):
        cli = fake_cli()
        status, _ = await run_console_command(make_supervisor(), ConsoleCommand.CONFIG_GET, "--help")
        assert status == 400
        assert cli.calls == []

    @pytest.mark.asyncio
    async def test_output_is_scrubbed(self, make_supervisor, fake_cli):
        fake_cli(lambda args: (0, "models.openai.apiKey: sk-abcdefghijklmnopqrstuvwx\n"))
        status, body = await run_console_command(make_supervisor(), ConsoleCommand.CONFIG_GET, "models.openai.apiKey")
        assert status == 200
        assert "sk-abcdefghijklmnop" not in body["output"]
        assert "[REDACTED]" in body["output"]

    @pytest.mark.asyncio
    async def test_failure_is_500(self, make_supervisor, fake_cli):
        fake_cli(lambda args: (1, "boom"))
        status, body = await run_console_command(make_supervisor(), ConsoleCommand.STATUS)
        assert status == 500
        assert body == {"ok": False, "output": "boom"}

    @pytest.mark.asyncio
    async def test_gateway_stop_really_stops(self, make_supervisor):
        sup = make_supervisor()
        await sup.ensure_running()
        status, body = await run_console_command(sup, ConsoleCommand.GATEWAY_STOP)
        assert status == 200 and body["ok"]
        assert not sup.running

    @pytest.mark.asyncio
    async def test_gateway_start_failure_is_scrubbed(self, make_supervisor):
        secret = "sk-ant-" + "C" * 40
        sup = make_supervisor(spawner=FakeSpawner(error=OSError(f"bad env {secret}")))
        status, body = await run_console_command(sup, ConsoleCommand.GATEWAY_START)
        assert status == 200
        assert body["ok"] is False
        assert secret not in body["output"]
        assert "[REDACTED]" in body["output"]


class TestRepair:
    def test_fix_dirs_creates_private_dirs(self, make_supervisor, state_dirs):
        ok, output = commands.fix_dirs(make_supervisor())
        assert ok
        for sub in ("credentials", "identity", "logs", "sessions"):
            assert (state_dirs.state_dir / sub).is_dir()
        assert "Created/verified" in output

    def test_fix_permissions(self, make_supervisor, state_dirs):
        state_dirs.state_dir.chmod(0o755)
        ok, _ = commands.fix_permissions(make_supervisor())
        assert ok
        assert stat.S_IMODE(state_dirs.state_dir.stat().st_mode) == 0o700

    def test_env_check_flags_legacy_vars(self, make_supervisor, monkeypatch):
        monkeypatch.setenv("CLAWDBOT_STATE_DIR", "/old")
        output = commands.env_check(make_supervisor())
        assert "CLAWDBOT_STATE_DIR (use OPENCLAW_STATE_DIR instead)" in output

    @pytest.mark.asyncio
    async def test_health_check_collects_issues(self, make_supervisor, fake_cli):
        fake_cli(lambda args: (0, "Gateway ok\nCRITICAL: state dir permission too open\nconfig: missing channel\n"))
        result = await commands.health_check(make_supervisor())
        assert result["ok"] is True
        assert result["healthy"] is False
        assert len(result["issues"]) == 2

    @pytest.mark.asyncio
    async def test_fix_all_runs_steps_in_order(self, make_supervisor, fake_cli):
        cli = fake_cli()
        sup = make_supervisor()
        result = await commands.fix_all(sup)

        assert [s["name"] for s in result["steps"]] == [
            "Create directories", "Fix permissions", "OpenClaw doctor --fix", "Restart gateway",
        ]
        assert result["ok"] and result["healthy"]
        assert cli.calls == [("doctor", "--fix"), ("doctor",)]
        assert sup.running


class TestPairing:
    @pytest.mark.asyncio
    async def test_channel_flag_falls_back_to_positional(self, make_supervisor, fake_cli):
        def respond(args):
            if "--channel" in args:
                return 1, "unknown option --channel"
            if args == ("pairing", "list", "telegram", "--json"):
                return 0, json.dumps([{"code": "ABC123"}])
            return 0, "[]"

        cli = fake_cli(respond)
        pending, _ = await commands.list_pending(make_supervisor())

        assert pending == [{"code": "ABC123", "channel": "telegram"}]
        assert ("pairing", "list", "--channel", "telegram", "--json") in cli.calls
        assert ("pairing", "list", "telegram", "--json") in cli.calls

    @pytest.mark.asyncio
    async def test_legacy_list_deduplicated(self, make_supervisor, fake_cli):
        def respond(args):
            if args == ("pairing", "list", "--channel", "discord", "--json"):
                return 0, json.dumps([{"code": "X1"}])
            if args == ("pairing", "list", "--json"):
                return 0, json.dumps([{"type": "discord", "pairingCode": "X1"}, {"channel": "slack", "code": "S9"}])
            return 0, "[]"

        fake_cli(respond)
        pending, _ = await commands.list_pending(make_supervisor())

        assert len(pending) == 2
        assert {"channel": "slack", "code": "S9"} in pending

    @pytest.mark.asyncio
    async def test_approve_all(self, make_supervisor, fake_cli):
        def respond(args):
            if args == ("pairing", "list", "--channel", "telegram", "--json"):
                return 0, json.dumps([{"code": "T1"}])
            if args[:2] == ("pairing", "list"):
                return 0, "[]"
            return 0, "approved"

        cli = fake_cli(respond)
        results = await commands.approve_all(make_supervisor())

        assert results == [{"channel": "telegram", "code": "T1", "ok": True, "output": "approved"}]
        assert ("pairing", "approve", "--channel", "telegram", "T1") in cli.calls

    @pytest.mark.asyncio
    async def test_pending_items_are_scrubbed(self, make_supervisor, fake_cli):
        """Secrets inside parsed pairing entries never reach the caller."""
        secret = "sk-ant-" + "A" * 40

        def respond(args):
            if args == ("pairing", "list", "--channel", "telegram", "--json"):
                return 0, json.dumps([{"code": "T1", "note": f"key {secret}"}])
            return 0, "[]"

        fake_cli(respond)
        pending, _ = await commands.list_pending(make_supervisor())

        assert pending == [{"code": "T1", "note": "key [REDACTED]", "channel": "telegram"}]
        assert secret not in json.dumps(pending)

    @pytest.mark.asyncio
    async def test_approve_all_reports_scrubbed_fields(self, make_supervisor, fake_cli):
        secret = "sk-ant-" + "B" * 40

        def respond(args):
            if args == ("pairing", "list", "--json"):
                return 0, json.dumps([{"channel": "slack", "code": secret}])
            if args[:2] == ("pairing", "list"):
                return 0, "[]"
            return 0, "approved"

        cli = fake_cli(respond)
        results = await commands.approve_all(make_supervisor())

        assert secret not in json.dumps(results)
        assert results[0]["code"] == "[REDACTED]"
        assert ("pairing", "approve", "--channel", "slack", secret) in cli.calls


class TestOnboardArgs:
    def test_secret_mapped_to_provider_flag(self, make_supervisor):
        sup = make_supervisor(configured=False)
        args = build_onboard_args(sup, "quickstart", "openai-api-key", " sk-test ")
        assert args[:2] == ["onboard", "--non-interactive"]
        assert args[args.index("--gateway-bind") + 1] == "loopback"
        assert args[args.index("--gateway-token") + 1] == "test-token"
        assert args[-2:] == ["--openai-api-key", "sk-test"]

    def test_unknown_flow_defaults(self, make_supervisor):
        args = build_onboard_args(make_supervisor(configured=False), "weird")
        assert args[args.index("--flow") + 1] == "quickstart"
        assert "--auth-choice" not in args
