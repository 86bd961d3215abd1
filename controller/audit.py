"""
Audit logging.

Security events go to stdout as `[AUDIT] {json}` lines for the platform log
aggregator and, when AUDIT_LOG is set, are appended to a JSONL file too.
"""

import json
from datetime import datetime, timezone

import settings


def audit_log(event: str, details: dict | None = None) -> dict:
    """Emit one audit event. Returns the entry that was written."""
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event": event,
        **{k: v for k, v in (details or {}).items() if v is not None},
    }
    line = json.dumps(entry, default=str)
    print(f"[AUDIT] {line}", flush=True)

    if settings.AUDIT_LOG:
        try:
            settings.AUDIT_LOG.parent.mkdir(parents=True, exist_ok=True)
            with open(settings.AUDIT_LOG, "a") as f:
                f.write(line + "\n")
        except OSError as e:
            print(f"[audit] failed to write {settings.AUDIT_LOG}: {e}", flush=True)
    return entry


def client_ip(headers, fallback: str | None) -> str:
    """First X-Forwarded-For hop, else the socket peer."""
    forwarded = headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return fallback or "unknown"
