import json
import logging
import os
import sys
import time
import uuid
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from utils.limiter import forwarded_for_ip


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv(
    "LOG_FORMAT",
    "%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
LOG_JSON = (os.getenv("LOG_JSON") or "").lower() in ("1", "true", "yes")


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line, for log shippers"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging() -> None:
    """Configure root logging once and align uvicorn's loggers.

    LOG_LEVEL sets the level (default INFO). LOG_JSON=true switches to
    JSON lines, otherwise LOG_FORMAT is used. Handlers installed earlier
    (e.g. by uvicorn) are kept.
    """
    level = getattr(logging, LOG_LEVEL, logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonLogFormatter() if LOG_JSON else logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(level)


class RequestContextLogMiddleware(BaseHTTPMiddleware):
    """Access log with a per-request id.

    The id comes from X-Request-ID or is generated, and is returned in
    x-request-id. The closing line carries the resolved client IP, the
    authenticated user id when a route resolved one, and the remaining
    rate-limit budget when the security layer reported it.
    """

    def __init__(self, app):
        super().__init__(app)
        self.logger = logging.getLogger("backend.http")

    async def dispatch(self, request: Request, call_next: Callable):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()
        ip = forwarded_for_ip(request)

        try:
            response = await call_next(request)
        except Exception:
            self.logger.exception(
                "%s %s failed ip=%s ms=%s rid=%s",
                request.method, request.url.path, ip, _elapsed_ms(started), request_id,
            )
            raise

        response.headers["x-request-id"] = request_id
        user = getattr(request.state, "user", None) or {}
        level = logging.WARNING if response.status_code in (403, 429) else logging.INFO
        self.logger.log(
            level,
            "%s %s %s ip=%s user=%s remaining=%s ms=%s rid=%s",
            request.method,
            request.url.path,
            response.status_code,
            ip,
            user.get("id", "-"),
            response.headers.get("x-ratelimit-remaining", "-"),
            _elapsed_ms(started),
            request_id,
        )
        return response


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
