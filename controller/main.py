"""
OpenClaw Wrapper - public entrypoint of the container.

Serves the password-protected /setup admin surface and reverse-proxies every
other HTTP request and WebSocket upgrade to the OpenClaw gateway, which only
listens on loopback. The gateway is started lazily on the first proxied
request once a config file exists.

Usage:
    python3 -m uvicorn main:create_app --factory --host 0.0.0.0 --port 8080
"""

import asyncio
import base64
import binascii
import html
import os
import secrets
import tarfile
from datetime import datetime, timezone
from typing import Optional

import httpx
import uvicorn
import websockets
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import (
    HTMLResponse,
    JSONResponse,
    PlainTextResponse,
    RedirectResponse,
    StreamingResponse,
)
from pydantic import BaseModel
from starlette.types import ASGIApp, Receive, Scope, Send
from websockets.exceptions import ConnectionClosed, WebSocketException

import backup
import commands
import settings
from audit import audit_log, client_ip
from commands import ConsoleCommand
from dirs import resolve_state_dirs
from gateway import GatewaySupervisor, resolve_gateway_token
from ratelimit import RateLimiter, retry_after_header
from scrub import scrub

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}
SETUP_CSP = (
    "default-src 'self'; "
    "script-src 'self'; "
    "style-src 'self' 'unsafe-inline'; "
    "img-src 'self' data:; "
    "connect-src 'self'; "
    "frame-ancestors 'none'; "
    "form-action 'self'"
)

HOP_BY_HOP = {
    "connection", "keep-alive", "proxy-authenticate", "proxy-authorization",
    "te", "trailer", "trailers", "transfer-encoding", "upgrade",
}
PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]
SETUP_HEALTHZ = "/setup/healthz"


class RunRequest(BaseModel):
    flow: str = "quickstart"
    authChoice: str = ""
    authSecret: str = ""


class ConsoleRequest(BaseModel):
    cmd: str = ""
    arg: str = ""


class ConfigRawRequest(BaseModel):
    content: str = ""


class PairingApproveRequest(BaseModel):
    channel: str = ""
    code: str = ""


def is_setup_path(path: str) -> bool:
    return path == settings.SETUP_PREFIX or path.startswith(settings.SETUP_PREFIX + "/")


def request_ip(request) -> str:
    return client_ip(request.headers, request.client.host if request.client else None)


def _unauthorized(message: str) -> PlainTextResponse:
    return PlainTextResponse(
        message,
        status_code=401,
        headers={"WWW-Authenticate": f'Basic realm="{settings.AUTH_REALM}"'},
    )


def _basic_password(header: str) -> Optional[str]:
    """Password part of a Basic auth header, or None if the header is not Basic."""
    scheme, _, encoded = header.partition(" ")
    if scheme != "Basic" or not encoded.strip():
        return None
    try:
        decoded = base64.b64decode(encoded.strip()).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""
    _, sep, password = decoded.partition(":")
    return password if sep else ""


def check_setup_auth(request: Request, limiter: RateLimiter) -> Optional[PlainTextResponse]:
    """Gate one /setup request. Returns a response to short-circuit, or None to continue."""
    ip = request_ip(request)
    path = request.url.path

    allowed, retry = limiter.check_auth_lockout(ip)
    if not allowed:
        audit_log("AUTH_RATE_LIMITED", {"ip": ip, "path": path})
        return PlainTextResponse(
            "Too many authentication attempts. Please try again later.",
            status_code=429,
            headers={"Retry-After": retry_after_header(retry)},
        )

    allowed, retry = limiter.check_request_rate(ip)
    if not allowed:
        audit_log("REQUEST_RATE_LIMITED", {"ip": ip, "path": path})
        return PlainTextResponse(
            "Too many requests. Please try again later.",
            status_code=429,
            headers={"Retry-After": retry_after_header(retry)},
        )

    if not settings.SETUP_PASSWORD:
        return PlainTextResponse(
            "SETUP_PASSWORD is not set. Set it in the service variables before using /setup.",
            status_code=500,
        )

    password = _basic_password(request.headers.get("authorization", ""))
    if password is None:
        return _unauthorized("Auth required")

    if not secrets.compare_digest(password.encode(), settings.SETUP_PASSWORD.encode()):
        limiter.record_auth_failure(ip)
        audit_log("AUTH_FAILURE", {"ip": ip, "path": path})
        return _unauthorized("Invalid password")

    limiter.record_auth_success(ip)
    audit_log("AUTH_SUCCESS", {"ip": ip, "path": path})
    return None


class SetupBodyLimitMiddleware:
    """Caps JSON request bodies on the admin surface. Proxied traffic and /setup/import are exempt."""

    def __init__(self, app: ASGIApp, max_bytes: int = settings.MAX_JSON_BODY_BYTES):
        self.app = app
        self.max_bytes = max_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        path = scope.get("path", "")
        if scope["type"] != "http" or not is_setup_path(path) or path == "/setup/import":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        try:
            declared = int(headers.get(b"content-length", b"0"))
        except ValueError:
            declared = 0
        if declared > self.max_bytes:
            await self._reject(scope, receive, send)
            return

        received = 0
        limit = self.max_bytes

        async def limited_receive():
            nonlocal received
            message = await receive()
            if message.get("type") == "http.request":
                received += len(message.get("body", b""))
                if received > limit:
                    raise _BodyTooLarge(limit)
            return message

        await self.app(scope, limited_receive, send)

    async def _reject(self, scope, receive, send):
        response = JSONResponse(
            {"ok": False, "error": f"Request body exceeds {self.max_bytes} bytes"},
            status_code=413,
        )
        await response(scope, receive, send)


class _BodyTooLarge(HTTPException):
    """Raised from receive() mid-body; FastAPI answers it as a 413."""

    def __init__(self, limit: int):
        super().__init__(status_code=413, detail=f"Request body exceeds {limit} bytes")


def forward_headers(request: Request) -> dict:
    headers = {k: v for k, v in request.headers.items() if k.lower() not in HOP_BY_HOP}
    peer = request.client.host if request.client else ""
    prior = request.headers.get("x-forwarded-for")
    headers["x-forwarded-for"] = f"{prior}, {peer}" if prior and peer else (prior or peer)
    headers["x-forwarded-proto"] = request.url.scheme
    headers["x-forwarded-host"] = request.headers.get("host", "")
    return headers


def _write_private(path, content: str):
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(content)
    os.chmod(path, 0o600)


def _setup_page(supervisor: GatewaySupervisor) -> str:
    snap = supervisor.snapshot()
    configured = supervisor.is_configured()
    rows = "".join(
        f"<tr><th>{html.escape(str(k))}</th><td>{html.escape(str(v))}</td></tr>"
        for k, v in snap.items()
    )
    return f"""<!doctype html>
<html>
<head><meta charset="utf-8"><title>OpenClaw Setup</title></head>
<body>
<h1>OpenClaw Setup</h1>
<p>Configured: <strong>{'yes' if configured else 'no'}</strong></p>
<p>State dir: <code>{html.escape(str(supervisor.dirs.state_dir))}</code></p>
<p>Workspace dir: <code>{html.escape(str(supervisor.dirs.workspace_dir))}</code></p>
<h2>Gateway</h2>
<table>{rows}</table>
<p><a href="/setup/export">Download backup</a></p>
</body>
</html>
"""


def create_app(
    supervisor: Optional[GatewaySupervisor] = None,
    limiter: Optional[RateLimiter] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    if supervisor is None:
        state_dirs = resolve_state_dirs()
        supervisor = GatewaySupervisor(state_dirs, resolve_gateway_token(state_dirs.state_dir))
    limiter = limiter or RateLimiter()

    app = FastAPI(title="OpenClaw Wrapper", version="1.0.0", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.supervisor = supervisor
    app.state.limiter = limiter

    client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(300.0, connect=10.0))
    background: set[asyncio.Task] = set()

    app.add_middleware(SetupBodyLimitMiddleware)

    @app.middleware("http")
    async def setup_gate(request: Request, call_next):
        if is_setup_path(request.url.path) and request.url.path != SETUP_HEALTHZ:
            denied = check_setup_auth(request, limiter)
            if denied is not None:
                return denied
        return await call_next(request)

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        if is_setup_path(request.url.path):
            response.headers["Content-Security-Policy"] = SETUP_CSP
        return response

    @app.on_event("startup")
    async def startup():
        print(f"[wrapper] listening on :{settings.PORT}", flush=True)
        print(f"[wrapper] state dir: {supervisor.dirs.state_dir}", flush=True)
        print(f"[wrapper] workspace dir: {supervisor.dirs.workspace_dir}", flush=True)
        print(f"[wrapper] gateway target: {supervisor.target}", flush=True)
        if not settings.SETUP_PASSWORD:
            print("[wrapper] WARNING: SETUP_PASSWORD is not set; /setup will error.", flush=True)
        task = asyncio.create_task(limiter.run_sweeper())
        background.add(task)

    @app.on_event("shutdown")
    async def shutdown():
        for task in background:
            task.cancel()
        supervisor.shutdown()
        await client.aclose()

    # ============================================================
    # Unauthenticated
    # ============================================================

    @app.get("/health")
    async def health():
        return {
            "ok": True,
            "configured": supervisor.is_configured(),
            "gateway": "running" if supervisor.running else "stopped",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get(SETUP_HEALTHZ)
    async def setup_healthz():
        return {"ok": True}

    # ============================================================
    # Admin surface (gated by setup_gate)
    # ============================================================

    @app.get("/setup")
    async def setup_page():
        return HTMLResponse(_setup_page(supervisor))

    @app.get("/setup/api/status")
    async def setup_status():
        _, version = await commands.run_claw(supervisor, "--version")
        return {
            "configured": supervisor.is_configured(),
            "gatewayTarget": supervisor.target,
            "openclawVersion": scrub(version.strip()),
            "gateway": supervisor.snapshot(),
        }

    @app.get("/setup/api/debug")
    async def setup_debug():
        _, version = await commands.run_claw(supervisor, "--version")
        return {
            "wrapper": {
                "port": settings.PORT,
                "stateDir": str(supervisor.dirs.state_dir),
                "workspaceDir": str(supervisor.dirs.workspace_dir),
                "dataRoot": str(settings.DATA_ROOT),
                "configPath": str(supervisor.config_path()),
                "gatewayTokenFromEnv": bool(settings.GATEWAY_TOKEN_OVERRIDE),
                "gatewayTokenPersisted": (supervisor.dirs.state_dir / "gateway.token").exists(),
            },
            "openclaw": {
                "entry": settings.OPENCLAW_ENTRY,
                "node": settings.OPENCLAW_NODE,
                "version": scrub(version.strip()),
            },
            "gateway": supervisor.snapshot(),
        }

    @app.post("/setup/api/run")
    async def setup_run(body: RunRequest):
        if supervisor.is_configured():
            await supervisor.ensure_running()
            return {"ok": True, "output": "Already configured.\nUse Reset setup if you want to rerun onboarding.\n"}
        try:
            ok, output = await commands.onboard(supervisor, body.flow, body.authChoice, body.authSecret)
        except OSError as e:
            print(f"[/setup/api/run] error: {e}", flush=True)
            return JSONResponse({"ok": False, "output": scrub(f"Internal error: {e}")}, status_code=500)
        return JSONResponse({"ok": ok, "output": output}, status_code=200 if ok else 500)

    @app.post("/setup/api/console/run")
    async def console_run(body: ConsoleRequest, request: Request):
        ip = request_ip(request)
        cmd = ConsoleCommand.parse(body.cmd.strip())
        if cmd is None:
            audit_log("CONSOLE_CMD_BLOCKED", {"ip": ip, "cmd": body.cmd, "reason": "not in allowlist"})
            return JSONResponse({"ok": False, "error": "Command not allowed"}, status_code=400)

        arg = body.arg.strip()
        audit_log("CONSOLE_CMD_EXECUTE", {"ip": ip, "cmd": cmd.value, "arg": arg or None})
        status, payload = await commands.run_console_command(supervisor, cmd, arg)
        return JSONResponse(payload, status_code=status)

    @app.get("/setup/api/health")
    async def setup_health():
        return await commands.health_check(supervisor)

    @app.post("/setup/api/health/fix-all")
    async def setup_fix_all(request: Request):
        ip = request_ip(request)
        audit_log("HEALTH_FIX_ALL", {"ip": ip})
        result = await commands.fix_all(supervisor)
        audit_log("HEALTH_FIX_ALL_COMPLETE", {
            "ip": ip,
            "allOk": result["ok"],
            "finalHealthy": result["healthy"],
            "steps": result["steps"],
        })
        return result

    @app.get("/setup/api/config/raw")
    async def config_raw_get():
        p = supervisor.config_path()
        try:
            exists = p.exists()
            content = p.read_text(encoding="utf-8") if exists else ""
        except OSError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=500)
        return {"ok": True, "path": str(p), "exists": exists, "content": content}

    @app.post("/setup/api/config/raw")
    async def config_raw_save(body: ConfigRawRequest, request: Request):
        ip = request_ip(request)
        content = body.content
        if len(content) > settings.MAX_CONFIG_CHARS:
            audit_log("CONFIG_SAVE_BLOCKED", {"ip": ip, "reason": "content too large", "size": len(content)})
            return JSONResponse({"ok": False, "error": "Config too large"}, status_code=413)

        audit_log("CONFIG_SAVE", {"ip": ip, "size": len(content)})
        p = supervisor.config_path()
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            if p.exists():
                stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
                backup_path = p.with_name(f"{p.name}.bak-{stamp.replace(':', '-').replace('.', '-')}")
                backup_path.write_bytes(p.read_bytes())
            _write_private(p, content)
        except OSError as e:
            return JSONResponse({"ok": False, "error": str(e)}, status_code=500)

        if supervisor.is_configured():
            await supervisor.restart()
        return {"ok": True, "path": str(p)}

    @app.get("/setup/api/pairing/pending")
    async def pairing_pending():
        pending, last_output = await commands.list_pending(supervisor)
        result = {"ok": True, "pending": pending}
        if not pending:
            result["output"] = last_output
        return result

    @app.post("/setup/api/pairing/approve")
    async def pairing_approve(body: PairingApproveRequest, request: Request):
        ip = request_ip(request)
        channel, code = body.channel.strip(), body.code.strip()
        if not channel or not code:
            return JSONResponse({"ok": False, "error": "Missing channel or code"}, status_code=400)
        if not (commands.safe_cli_arg(channel) and commands.safe_cli_arg(code)):
            return JSONResponse({"ok": False, "error": "Invalid channel or code"}, status_code=400)

        audit_log("PAIRING_APPROVE", {"ip": ip, "channel": channel, "code": code})
        ok, output = await commands.approve_pairing(supervisor, channel, code)
        audit_log("PAIRING_APPROVED" if ok else "PAIRING_APPROVE_FAILED", {"ip": ip, "channel": channel, "code": code})
        return JSONResponse({"ok": ok, "output": output}, status_code=200 if ok else 500)

    @app.post("/setup/api/pairing/approve-all")
    async def pairing_approve_all(request: Request):
        audit_log("PAIRING_APPROVE_ALL", {"ip": request_ip(request)})
        results = await commands.approve_all(supervisor)
        if not results:
            return {"ok": True, "approved": 0, "results": [], "message": "No pending pairing requests found"}
        return {"ok": True, "approved": len(results), "results": results}

    @app.post("/setup/api/reset")
    async def setup_reset(request: Request):
        ip = request_ip(request)
        audit_log("CONFIG_RESET", {"ip": ip})
        try:
            supervisor.config_path().unlink(missing_ok=True)
        except OSError as e:
            audit_log("CONFIG_RESET_FAILED", {"ip": ip, "error": str(e)})
            return PlainTextResponse(str(e), status_code=500)
        audit_log("CONFIG_RESET_SUCCESS", {"ip": ip})
        return PlainTextResponse("OK - deleted config file. You can rerun setup now.")

    @app.get("/setup/export")
    async def setup_export(request: Request):
        audit_log("BACKUP_EXPORT", {"ip": request_ip(request)})
        filename = backup.backup_filename()
        return StreamingResponse(
            backup.stream_archive(supervisor.dirs),
            media_type="application/gzip",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.post("/setup/import")
    async def setup_import(request: Request):
        ip = request_ip(request)
        audit_log("BACKUP_IMPORT", {"ip": ip})

        if not backup.both_under_data_root(supervisor.dirs):
            audit_log("BACKUP_IMPORT_BLOCKED", {"ip": ip, "reason": f"directories not under {settings.DATA_ROOT}"})
            return PlainTextResponse(
                "Import is only supported when OPENCLAW_STATE_DIR and OPENCLAW_WORKSPACE_DIR "
                f"are under {settings.DATA_ROOT}.\n",
                status_code=400,
            )

        try:
            # Stop first so live files are not overwritten under the gateway.
            await supervisor.stop()
            data = await backup.read_body_limited(request, settings.MAX_IMPORT_BYTES)
            if not data:
                return PlainTextResponse("Empty body\n", status_code=400)

            result = await asyncio.to_thread(backup.import_archive, data, settings.DATA_ROOT)
            if supervisor.is_configured():
                await supervisor.restart()
        except backup.PayloadTooLarge as e:
            audit_log("BACKUP_IMPORT_FAILED", {"ip": ip, "error": str(e)})
            return PlainTextResponse(f"{e}\n", status_code=413)
        except (OSError, EOFError, tarfile.TarError) as e:
            print(f"[import] {e!r}", flush=True)
            audit_log("BACKUP_IMPORT_FAILED", {"ip": ip, "error": str(e)})
            return PlainTextResponse(str(e), status_code=500)

        audit_log("BACKUP_IMPORT_SUCCESS", {"ip": ip, "extracted": result["extracted"], "skipped": len(result["skipped"])})
        return PlainTextResponse(f"OK - imported backup into {settings.DATA_ROOT} and restarted gateway.\n")

    # ============================================================
    # Reverse proxy (registered last; catches everything else)
    # ============================================================

    @app.api_route("/{path:path}", methods=PROXY_METHODS)
    async def proxy(path: str, request: Request):
        if is_setup_path(request.url.path):
            return JSONResponse({"detail": "Not Found"}, status_code=404)

        if not supervisor.is_configured():
            return RedirectResponse("/setup", status_code=302)

        ok, reason = await supervisor.ensure_running()
        if not ok:
            return PlainTextResponse(f"Gateway not ready: {reason}", status_code=503)

        url = f"{supervisor.target}{request.url.path}"
        if request.url.query:
            url += f"?{request.url.query}"

        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
        upstream_request = client.build_request(
            request.method,
            url,
            headers=forward_headers(request),
            content=request.stream() if has_body else None,
        )
        try:
            resp = await client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            print(f"[proxy] {request.method} {request.url.path} failed: {e!r}", flush=True)
            return PlainTextResponse("Bad gateway: upstream unavailable", status_code=502)

        async def stream_body():
            try:
                async for chunk in resp.aiter_raw():
                    yield chunk
            finally:
                await resp.aclose()

        response = StreamingResponse(stream_body(), status_code=resp.status_code)
        # Raw pairs keep repeated headers such as Set-Cookie intact.
        response.raw_headers = [
            (k, v) for k, v in resp.headers.raw
            if k.decode("latin-1").lower() not in HOP_BY_HOP and k.lower() != b"content-length"
        ]
        return response

    @app.websocket("/{path:path}")
    async def proxy_websocket(websocket: WebSocket, path: str):
        if is_setup_path(websocket.url.path) or not supervisor.is_configured():
            await websocket.close()
            return
        ok, reason = await supervisor.ensure_running()
        if not ok:
            print(f"[ws-proxy] gateway not ready: {reason}", flush=True)
            await websocket.close()
            return

        ws_target = supervisor.target.replace("http://", "ws://", 1) + websocket.url.path
        if websocket.url.query:
            ws_target += f"?{websocket.url.query}"
        passthrough = {
            k: v for k, v in websocket.headers.items()
            if k.lower() in ("cookie", "authorization", "user-agent")
        }
        passthrough["X-Forwarded-For"] = request_ip(websocket)

        try:
            upstream_ws = await websockets.connect(
                ws_target,
                additional_headers=passthrough,
                origin=websocket.headers.get("origin"),
                subprotocols=websocket.scope.get("subprotocols") or None,
                max_size=None,
            )
        except (OSError, WebSocketException) as e:
            print(f"[ws-proxy] upstream connect failed: {e!r}", flush=True)
            await websocket.close()
            return

        await websocket.accept(subprotocol=upstream_ws.subprotocol)

        async def client_to_gateway():
            while True:
                msg = await websocket.receive()
                if msg["type"] == "websocket.disconnect":
                    return
                if msg.get("bytes") is not None:
                    await upstream_ws.send(msg["bytes"])
                elif msg.get("text") is not None:
                    await upstream_ws.send(msg["text"])

        async def gateway_to_client():
            async for message in upstream_ws:
                if isinstance(message, bytes):
                    await websocket.send_bytes(message)
                else:
                    await websocket.send_text(message)

        tasks = [asyncio.create_task(client_to_gateway()), asyncio.create_task(gateway_to_client())]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            for task in done:
                exc = task.exception()
                if exc and not isinstance(exc, (WebSocketDisconnect, ConnectionClosed)):
                    print(f"[ws-proxy] bridge ended: {exc!r}", flush=True)
        finally:
            await upstream_ws.close()
            try:
                await websocket.close()
            except RuntimeError:
                # Already closed by the client.
                pass

    return app


if __name__ == "__main__":
    uvicorn.run("main:create_app", factory=True, host="0.0.0.0", port=settings.PORT)
