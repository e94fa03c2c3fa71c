import logging
from typing import Callable, Optional, Sequence

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from auth.auth_utils import csrf_session_id
from utils.csrf import CSRFProtection, csrf_protection
from utils.limiter import RateLimiter, rate_limiter
from utils.security import (
    detect_suspicious_activity,
    get_client_ip,
    is_ip_blocked,
    log_security_event,
    security_headers,
    validate_origin,
)

CSRF_PROTECTED_ROUTES = ("/api/forms", "/api/submissions", "/api/auth/login", "/api/auth/register")
RATE_LIMITED_ROUTES = ("/api/submissions", "/api/forms", "/api/auth/login", "/api/auth/register")
MUTATING_METHODS = ("POST", "PUT", "PATCH", "DELETE")


def _matches(path: str, routes: Sequence[str]) -> bool:
    return any(path == r or path.startswith(r + "/") for r in routes)


class SecurityMiddleware(BaseHTTPMiddleware):
    """Screens every request before it reaches a router:
    - rejects blocked IPs and suspicious clients (403)
    - enforces fixed-window rate limits on sensitive routes (429)
    - requires a valid single-use CSRF token on mutating requests (403)
    - adds security headers to every response
    """

    def __init__(self, app, limiter: Optional[RateLimiter] = None, csrf: Optional[CSRFProtection] = None):
        super().__init__(app)
        self.limiter = limiter or rate_limiter
        self.csrf = csrf or csrf_protection
        self.logger = logging.getLogger("backend.security")

    def _reject(self, status_code: int, error: str, headers: Optional[dict] = None, **extra) -> JSONResponse:
        response = JSONResponse(status_code=status_code, content={"error": error, **extra}, headers=headers)
        response.headers.update(security_headers())
        return response

    async def dispatch(self, request: Request, call_next: Callable):
        path = request.url.path
        method = request.method
        try:
            ip = get_client_ip(request)

            if is_ip_blocked(ip):
                log_security_event("blocked_ip", ip, path=path)
                return self._reject(403, "Access denied")

            if detect_suspicious_activity(request):
                log_security_event("suspicious_activity", ip, path=path)
                return self._reject(403, "Suspicious activity detected")

            rate_headers = {}
            if _matches(path, RATE_LIMITED_ROUTES):
                check = self.limiter.check_limit(ip, path)
                if not check.allowed:
                    return self._reject(
                        429,
                        check.message,
                        headers={"Retry-After": str(check.retry_after)},
                        resetTime=int((check.reset_time or 0) * 1000),
                    )
                rate_headers = {
                    "X-RateLimit-Limit": str(check.limit),
                    "X-RateLimit-Remaining": str(check.remaining),
                }

            if method in MUTATING_METHODS and _matches(path, CSRF_PROTECTED_ROUTES):
                token = request.headers.get("x-csrf-token")
                if not token:
                    self.logger.info("CSRF token missing for %s", path)
                    return self._reject(403, "CSRF token required")
                if (request.headers.get("origin") or request.headers.get("referer")) and not validate_origin(request):
                    log_security_event("invalid_origin", ip, path=path, origin=request.headers.get("origin"))
                    return self._reject(403, "Invalid origin")
                if not self.csrf.validate_token(token, csrf_session_id(request, ip)):
                    self.logger.info("Invalid CSRF token for %s", path)
                    return self._reject(403, "Invalid CSRF token")
        except Exception:
            self.logger.exception("Security middleware error %s %s", method, path)
            return self._reject(500, "Internal server error")

        response = await call_next(request)
        response.headers.update(security_headers())
        response.headers.update(rate_headers)
        return response
