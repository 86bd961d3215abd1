"""
Brute-force and request-volume limiting for the /setup surface.

Two independent in-memory maps keyed by client address:

- auth attempts: failed Basic-auth attempts inside a window. Reaching the
  threshold locks the client out, even for the correct password, until the
  lockout expires. A successful login deletes the entry.
- request counts: sliding window of request timestamps.

Both maps are swept periodically so unique-client churn cannot grow them
without bound. All access happens on the event loop, so no locking.
"""

import asyncio
import math
import time
from dataclasses import dataclass, field
from typing import Callable

from audit import audit_log


@dataclass
class RateLimitConfig:
    max_auth_attempts: int = 5
    auth_window: float = 5 * 60
    auth_lockout: float = 15 * 60
    max_requests_per_window: int = 30
    request_window: float = 60
    sweep_interval: float = 5 * 60


@dataclass
class AuthState:
    attempts: int = 0
    last_attempt: float = 0.0
    locked_until: float | None = None


@dataclass
class RequestWindow:
    last_seen: float
    requests: list[float] = field(default_factory=list)


class RateLimiter:
    def __init__(self, config: RateLimitConfig | None = None, clock: Callable[[], float] = time.time):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self.auth_attempts: dict[str, AuthState] = {}
        self.request_counts: dict[str, RequestWindow] = {}

    def check_auth_lockout(self, ip: str) -> tuple[bool, float]:
        """Return (allowed, seconds until the lockout lifts)."""
        now = self._clock()
        state = self.auth_attempts.get(ip)
        if state and state.locked_until and now < state.locked_until:
            return False, state.locked_until - now
        return True, 0.0

    def record_auth_failure(self, ip: str) -> AuthState:
        now = self._clock()
        state = self.auth_attempts.get(ip) or AuthState()

        if now - state.last_attempt > self.config.auth_window:
            state.attempts = 0

        state.attempts += 1
        state.last_attempt = now

        if state.attempts >= self.config.max_auth_attempts:
            was_locked = bool(state.locked_until and now < state.locked_until)
            state.locked_until = now + self.config.auth_lockout
            if not was_locked:
                audit_log("AUTH_LOCKOUT", {"ip": ip, "attempts": state.attempts})

        self.auth_attempts[ip] = state
        return state

    def record_auth_success(self, ip: str):
        self.auth_attempts.pop(ip, None)

    def check_request_rate(self, ip: str) -> tuple[bool, float]:
        """Admit and record one request, or return (False, seconds to wait)."""
        now = self._clock()
        window = self.config.request_window
        state = self.request_counts.get(ip) or RequestWindow(last_seen=now)
        state.last_seen = now
        state.requests = [t for t in state.requests if now - t < window]

        if len(state.requests) >= self.config.max_requests_per_window:
            self.request_counts[ip] = state
            return False, window - (now - state.requests[0])

        state.requests.append(now)
        self.request_counts[ip] = state
        return True, 0.0

    def sweep(self) -> int:
        """Drop stale entries. Returns how many were removed."""
        now = self._clock()
        removed = 0
        for ip, state in list(self.auth_attempts.items()):
            if state.locked_until:
                stale = now > state.locked_until + self.config.auth_window
            else:
                stale = now - state.last_attempt > self.config.auth_window
            if stale:
                del self.auth_attempts[ip]
                removed += 1
        for ip, state in list(self.request_counts.items()):
            if now - state.last_seen > self.config.request_window * 2:
                del self.request_counts[ip]
                removed += 1
        return removed

    async def run_sweeper(self):
        """Background task: sweep forever on a fixed interval."""
        while True:
            await asyncio.sleep(self.config.sweep_interval)
            self.sweep()


def retry_after_header(seconds: float) -> str:
    return str(max(1, math.ceil(seconds)))
