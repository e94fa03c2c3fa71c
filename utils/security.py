"""
Request screening helpers: client IP resolution, IP blocklist, suspicious
request detection, origin checks, input sanitization and security headers.
"""
import os
import re
import html
import json
import logging
from typing import Any, Dict, Iterable, List
from urllib.parse import unquote_plus, urlsplit

import bleach
from fastapi import Request

from db.database import _is_production
from utils.limiter import forwarded_for_ip as get_client_ip, rate_limiter

logger = logging.getLogger("backend.security")

__all__ = [
    "get_client_ip",
    "is_ip_blocked",
    "detect_suspicious_activity",
    "validate_origin",
    "sanitize_input",
    "log_security_event",
    "security_headers",
]


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name) or ""
    return [item.strip() for item in raw.split(",") if item.strip()]


BLOCKED_IPS = {"0.0.0.0", *_env_list("BLOCKED_IPS")}
ALLOWED_ORIGINS = _env_list("ALLOWED_ORIGINS")

_PRIVATE_IP_RE = re.compile(r"^(10\.|172\.(1[6-9]|2[0-9]|3[01])\.|192\.168\.)")

SUSPICIOUS_USER_AGENTS = [
    re.compile(p, re.IGNORECASE)
    for p in (r"bot", r"crawler", r"spider", r"scraper", r"curl", r"wget")
]

INJECTION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"union\s+select",
        r"drop\s+table",
        r"insert\s+into",
        r"delete\s+from",
        r"update\s+set",
        r"script\s*>",
        r"<\s*script",
        r"javascript:",
        r"vbscript:",
        r"onload\s*=",
        r"onerror\s*=",
    )
]

SPOOFING_HEADERS = ("x-forwarded-host", "x-originating-ip", "x-remote-ip", "x-cluster-client-ip")

CONTENT_SECURITY_POLICY = "; ".join([
    "default-src 'self'",
    "script-src 'self' 'unsafe-inline' 'unsafe-eval'",
    "style-src 'self' 'unsafe-inline'",
    "img-src 'self' data: https:",
    "font-src 'self'",
    "connect-src 'self' https://viacep.com.br https://www.receitaws.com.br",
    "frame-ancestors 'none'",
])


def is_ip_blocked(ip: str) -> bool:
    if not ip or ip == "unknown":
        return True
    if ip in BLOCKED_IPS:
        return True
    if rate_limiter.is_blocked(ip):
        return True
    if _is_production() and _PRIVATE_IP_RE.match(ip):
        # Logged only; a private address usually means a misconfigured proxy
        logger.info("Private IP seen in production: %s", ip)
    return False


def _decoded_url(request: Request) -> str:
    return unquote_plus(str(request.url))


def detect_suspicious_activity(request: Request) -> bool:
    """True when the request looks automated or carries an injection attempt."""
    user_agent = request.headers.get("user-agent") or ""
    ip = get_client_ip(request)

    if len(user_agent) < 10:
        logger.info("Suspicious User-Agent %r ip=%s", user_agent, ip)
        return True

    for pattern in SUSPICIOUS_USER_AGENTS:
        if pattern.search(user_agent):
            logger.info("Blocked User-Agent %r ip=%s", user_agent, ip)
            return True

    for header in SPOOFING_HEADERS:
        if request.headers.get(header):
            logger.info("Suspicious header %s ip=%s", header, ip)

    url = _decoded_url(request)
    for pattern in INJECTION_PATTERNS:
        if pattern.search(url):
            logger.warning("Injection attempt %s ip=%s", url, ip)
            return True

    stats = rate_limiter.get_stats()
    if stats["blockedIPs"] > 10:
        logger.warning("Possible coordinated attack: %s IPs blocked", stats["blockedIPs"])

    return False


def _allowed_origins(host: str) -> Iterable[str]:
    origins = [
        "http://localhost:3000",
        "https://localhost:3000",
        *ALLOWED_ORIGINS,
    ]
    if host:
        origins[:0] = [f"https://{host}", f"http://{host}"]
    return origins


def validate_origin(request: Request) -> bool:
    origin = request.headers.get("origin")
    referer = request.headers.get("referer")
    allowed = list(_allowed_origins(request.headers.get("host") or ""))

    if not origin:
        if referer:
            parts = urlsplit(referer)
            if not parts.scheme or not parts.netloc:
                return False
            return f"{parts.scheme}://{parts.netloc}" in allowed
        # Direct requests (no Origin, no Referer) only outside production
        return not _is_production()

    return origin in allowed


_SCRIPT_BLOCK_RE = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
_PROTOCOL_RE = re.compile(r"(javascript|vbscript):", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"on\w+\s*=", re.IGNORECASE)


def sanitize_input(value: Any) -> Any:
    """Recursively strip scripts, dangerous protocols, event handlers and tags."""
    if isinstance(value, str):
        cleaned = _SCRIPT_BLOCK_RE.sub("", value)
        cleaned = _PROTOCOL_RE.sub("", cleaned)
        cleaned = _EVENT_HANDLER_RE.sub("", cleaned)
        return html.unescape(bleach.clean(cleaned, tags=[], strip=True)).strip()
    if isinstance(value, list):
        return [sanitize_input(v) for v in value]
    if isinstance(value, dict):
        return {sanitize_input(k): sanitize_input(v) for k, v in value.items()}
    return value


def log_security_event(event_type: str, ip: str, **details: Any) -> None:
    logger.warning("%s ip=%s %s", event_type, ip, json.dumps(details, default=str))


def security_headers() -> Dict[str, str]:
    headers = {
        "X-Content-Type-Options": "nosniff",
        "X-Frame-Options": "DENY",
        "X-XSS-Protection": "1; mode=block",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
        "Content-Security-Policy": CONTENT_SECURITY_POLICY,
    }
    if _is_production():
        headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return headers
