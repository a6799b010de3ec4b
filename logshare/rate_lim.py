"""Rate limiting for logshare.

Two layers:
- Flask-Limiter applies a coarse app-wide default (RATE_LIMIT_DEFAULT).
- FixedWindowRateLimiter enforces the per-call-site presets (uploads,
  searches, generic API reads) and reports remaining/reset values.

Counters live in process memory. Each instance behind a load balancer
counts on its own, so the effective limit scales with the instance count.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from functools import wraps

from flask import current_app, g, request
from flask_limiter import Limiter

from logshare.audit_logging import security_alert
from logshare.errors import RateLimited

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RateLimitPreset:
    window_ms: int
    max_requests: int


RATE_LIMITS: dict[str, RateLimitPreset] = {
    # Anonymous log uploads: 10 per hour per IP
    "logs_upload": RateLimitPreset(window_ms=60 * 60 * 1000, max_requests=10),
    "authenticated_upload": RateLimitPreset(window_ms=60 * 60 * 1000, max_requests=50),
    "api": RateLimitPreset(window_ms=60 * 1000, max_requests=100),
    "search": RateLimitPreset(window_ms=60 * 1000, max_requests=30),
}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int


@dataclass
class _Entry:
    count: int
    reset_at: int


class FixedWindowRateLimiter:
    """Fixed-window counter per key with a background expiry sweep."""

    def __init__(self, clock: Callable[[], int] = _now_ms, sweep_interval: float = 60.0) -> None:
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._sweep_interval = sweep_interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def now(self) -> int:
        return self._clock()

    def check(self, key: str, window_ms: int, max_requests: int) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.reset_at <= now:
                entry = _Entry(count=1, reset_at=now + window_ms)
                self._entries[key] = entry
                return RateLimitResult(True, max_requests - 1, entry.reset_at)

            if entry.count >= max_requests:
                return RateLimitResult(False, 0, entry.reset_at)

            entry.count += 1
            return RateLimitResult(True, max_requests - entry.count, entry.reset_at)

    def check_preset(self, key: str, preset: RateLimitPreset) -> RateLimitResult:
        return self.check(key, preset.window_ms, preset.max_requests)

    def reset(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def sweep(self) -> int:
        """Drop entries whose window has elapsed. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.reset_at <= now]
            for k in expired:
                del self._entries[k]
        if expired:
            logger.debug("Rate limiter sweep removed %d entries", len(expired))
        return len(expired)

    def _run(self) -> None:
        while not self._stop.wait(self._sweep_interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Rate limiter sweep failed")

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="rate-limit-sweeper", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=1.0)
        self._thread = None


def get_client_ip() -> str:
    """First hop of X-Forwarded-For, then X-Real-IP, then the socket peer.

    Trusts the proxy chain: a client talking to us without a proxy in front
    can pick its own key.
    """
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("X-Real-IP", "").strip()
    if real_ip:
        return real_ip
    return request.remote_addr or "unknown"


def rate_limited(preset_name: str | Callable[[], str]):
    """Apply a FixedWindowRateLimiter preset to a route.

    preset_name may be a callable evaluated per request, for routes whose
    preset depends on the query (e.g. searches).
    """

    def decorator(f):
        @wraps(f)
        def _w(*args, **kwargs):
            name = preset_name() if callable(preset_name) else preset_name
            preset = RATE_LIMITS[name]
            limiter: FixedWindowRateLimiter = current_app.extensions["logshare"].limiter
            key = f"{name}:{get_client_ip()}"
            result = limiter.check_preset(key, preset)
            if not result.allowed:
                retry_after = max(1, math.ceil((result.reset_at - limiter.now()) / 1000))
                security_alert("rate_limited", preset=name, client_ip=get_client_ip())
                raise RateLimited(
                    "Too many requests. Please try again later.",
                    headers={"Retry-After": str(retry_after), "X-RateLimit-Remaining": "0"},
                )
            g._rate_limit_remaining = result.remaining
            return f(*args, **kwargs)

        return _w

    return decorator


def init_rate_limiter(app) -> None:
    """Initialize Flask-Limiter and the remaining-count response header.

    Config keys consumed (optional):
      - RATE_LIMIT_DEFAULT: app-wide limits string (default "500 per minute")
    """
    app.config.setdefault("RATE_LIMIT_DEFAULT", "500 per minute")

    # Attach limiter to app. Using app=app is fine for small single-process apps.
    Limiter(
        key_func=get_client_ip,
        app=app,
        default_limits=[app.config["RATE_LIMIT_DEFAULT"]],
        storage_uri="memory://",
    )

    @app.after_request
    def _rate_limit_headers(response):
        remaining = getattr(g, "_rate_limit_remaining", None)
        if remaining is not None:
            response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response
