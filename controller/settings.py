"""
Controller configuration.

Everything is read from the environment once at import. Legacy CLAWDBOT_*
names are still honored for older templates.
"""

import os
from pathlib import Path


def _env(*names: str, default: str = "") -> str:
    """Return the first non-empty environment value among names."""
    for name in names:
        value = os.environ.get(name, "").strip()
        if value:
            return value
    return default


# Railway injects PORT=3000 by default, so the explicit public port wins.
PORT = int(_env("OPENCLAW_PUBLIC_PORT", "CLAWDBOT_PUBLIC_PORT", "PORT", default="8080"))

# Canonical data volume; import only ever writes below it.
DATA_ROOT = Path(_env("OPENCLAW_DATA_ROOT", default="/data"))

STATE_DIR_OVERRIDE = _env("OPENCLAW_STATE_DIR", "CLAWDBOT_STATE_DIR")
WORKSPACE_DIR_OVERRIDE = _env("OPENCLAW_WORKSPACE_DIR", "CLAWDBOT_WORKSPACE_DIR")
CONFIG_PATH_OVERRIDE = _env("OPENCLAW_CONFIG_PATH", "CLAWDBOT_CONFIG_PATH")

SETUP_PASSWORD = _env("SETUP_PASSWORD")
GATEWAY_TOKEN_OVERRIDE = _env("OPENCLAW_GATEWAY_TOKEN", "CLAWDBOT_GATEWAY_TOKEN")

INTERNAL_GATEWAY_HOST = _env("INTERNAL_GATEWAY_HOST", default="127.0.0.1")
INTERNAL_GATEWAY_PORT = int(_env("INTERNAL_GATEWAY_PORT", default="18789"))
GATEWAY_TARGET = f"http://{INTERNAL_GATEWAY_HOST}:{INTERNAL_GATEWAY_PORT}"

# Run the built CLI entry directly to avoid PATH/global-install mismatches.
OPENCLAW_ENTRY = _env("OPENCLAW_ENTRY", default="/openclaw/dist/entry.js")
OPENCLAW_NODE = _env("OPENCLAW_NODE", default="node")

AUDIT_LOG = Path(_env("AUDIT_LOG")) if _env("AUDIT_LOG") else None
SCRUB_RULES_PATH = Path(_env("SCRUB_RULES_PATH")) if _env("SCRUB_RULES_PATH") else None

COMMAND_TIMEOUT = float(_env("COMMAND_TIMEOUT", default="120"))

GATEWAY_READY_TIMEOUT = 20.0
GATEWAY_POLL_INTERVAL = 0.25
GATEWAY_STOP_GRACE = 0.75

MAX_IMPORT_BYTES = 250 * 1024 * 1024
MAX_CONFIG_CHARS = 500_000
MAX_JSON_BODY_BYTES = 1 * 1024 * 1024

SETUP_PREFIX = "/setup"
AUTH_REALM = "OpenClaw Setup"
