import os
import math
import time
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import Request
from limits import RateLimitItem, RateLimitItemPerHour, RateLimitItemPerMinute
from limits.storage import MemoryStorage, Storage, storage_from_string
from limits.strategies import FixedWindowRateLimiter
from slowapi import Limiter

logger = logging.getLogger("backend.rate_limit")

REDIS_URL = os.environ.get("REDIS_URL")


def forwarded_for_ip(request: Request) -> str:
    """Resolve the client IP from proxy headers, then the socket peer.

    Priority: CF-Connecting-IP, X-Forwarded-For (first hop), X-Real-IP,
    X-Client-IP. Returns "unknown" when nothing is available.
    """
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.split(",")[0].strip()
    xff = request.headers.get("x-forwarded-for")
    if xff:
        ip = xff.split(",")[0].strip()
        if ip:
            return ip
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    client_ip = request.headers.get("x-client-ip")
    if client_ip:
        return client_ip.strip()
    return request.client.host if request.client and request.client.host else "unknown"


def _get_storage() -> Storage:
    """Redis storage when REDIS_URL is configured, otherwise in-process memory."""
    if REDIS_URL:
        try:
            storage = storage_from_string(REDIS_URL)
            logger.info("Using Redis for rate limiting")
            return storage
        except Exception as e:
            logger.error("Failed to initialize Redis storage, falling back to memory: %s", e)
    return MemoryStorage()


# Per-endpoint fixed windows; keys are path prefixes
RATE_LIMITS: Dict[str, RateLimitItem] = {
    "/api/submissions": RateLimitItemPerMinute(5),
    "/api/auth/login": RateLimitItemPerMinute(3, 15),
    "/api/auth/register": RateLimitItemPerHour(2),
    "/api/forms": RateLimitItemPerMinute(10),
}
DEFAULT_RATE_LIMIT = RateLimitItemPerMinute(100)


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    limit: int
    reset_time: Optional[float] = None  # epoch seconds
    message: Optional[str] = None

    @property
    def retry_after(self) -> int:
        if self.reset_time is None:
            return 0
        return max(0, math.ceil(self.reset_time - time.time()))


class RateLimiter:
    """Fixed-window request counter keyed by client IP and endpoint."""

    def __init__(self, storage: Optional[Storage] = None, limits: Optional[Dict[str, RateLimitItem]] = None,
                 default: RateLimitItem = DEFAULT_RATE_LIMIT):
        self.storage = storage or MemoryStorage()
        self.strategy = FixedWindowRateLimiter(self.storage)
        self.limits = dict(limits if limits is not None else RATE_LIMITS)
        self.default = default
        # key -> window reset time, used for stats and cleanup
        self._windows: Dict[str, float] = {}
        # ip -> blocked until
        self._blocked: Dict[str, float] = {}

    def resolve_endpoint(self, path: str) -> str:
        """Longest configured prefix of the path, else the path itself."""
        best = ""
        for prefix in self.limits:
            if (path == prefix or path.startswith(prefix.rstrip("/") + "/")) and len(prefix) > len(best):
                best = prefix
        return best or path

    def limit_for(self, endpoint: str) -> RateLimitItem:
        return self.limits.get(endpoint, self.default)

    def check_limit(self, ip: str, endpoint: str) -> RateLimitResult:
        endpoint = self.resolve_endpoint(endpoint)
        item = self.limit_for(endpoint)
        now = time.time()

        blocked_until = self._blocked.get(ip)
        if blocked_until and now < blocked_until:
            seconds = math.ceil(blocked_until - now)
            return RateLimitResult(
                allowed=False,
                remaining=0,
                limit=item.amount,
                reset_time=blocked_until,
                message=f"Rate limit exceeded. Try again in {seconds} seconds.",
            )

        key = f"{ip}:{endpoint}"
        allowed = self.strategy.hit(item, key)
        stats = self.strategy.get_window_stats(item, key)
        reset_time = float(stats.reset_time)
        self._windows[key] = reset_time

        if not allowed:
            seconds = max(1, math.ceil(reset_time - now))
            logger.info("Limit exceeded for %s on %s (%s/%s)", ip, endpoint, item.amount, item.get_expiry())
            return RateLimitResult(
                allowed=False,
                remaining=0,
                limit=item.amount,
                reset_time=reset_time,
                message=f"Rate limit exceeded. Try again in {seconds} seconds.",
            )

        return RateLimitResult(
            allowed=True,
            remaining=max(0, int(stats.remaining)),
            limit=item.amount,
            reset_time=reset_time,
        )

    def block_ip(self, ip: str, duration: int = 3600) -> None:
        """Refuse every endpoint for this IP for `duration` seconds."""
        self._blocked[ip] = time.time() + duration
        logger.warning("IP %s blocked for %s seconds", ip, duration)

    def unblock_ip(self, ip: str) -> None:
        self._blocked.pop(ip, None)

    def is_blocked(self, ip: str) -> bool:
        until = self._blocked.get(ip)
        return bool(until and time.time() < until)

    def cleanup(self) -> int:
        """Forget expired windows and blocks. Returns the number of entries removed."""
        now = time.time()
        expired_windows = [k for k, reset in self._windows.items() if now >= reset]
        for key in expired_windows:
            del self._windows[key]
        expired_blocks = [ip for ip, until in self._blocked.items() if now >= until]
        for ip in expired_blocks:
            del self._blocked[ip]
        cleaned = len(expired_windows) + len(expired_blocks)
        if cleaned:
            logger.info("Cleanup: %s entries removed", cleaned)
        return cleaned

    def get_stats(self) -> Dict[str, int]:
        now = time.time()
        return {
            "totalEntries": len(self._windows) + len(self._blocked),
            "blockedIPs": sum(1 for until in self._blocked.values() if now < until),
            "activeRequests": sum(1 for reset in self._windows.values() if now < reset),
        }

    def reset(self) -> None:
        self.storage.reset()
        self._windows.clear()
        self._blocked.clear()


# Global instances shared across the app and routers
rate_limiter = RateLimiter(storage=_get_storage())

# Decorator-style limits for individual routes (token issuance, exports, lookups)
limiter = Limiter(key_func=forwarded_for_ip, storage_uri=REDIS_URL or "memory://")
