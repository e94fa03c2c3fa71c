"""
Session-cookie authentication helpers
Passwords are hashed with bcrypt; sessions are JWTs stored in the sessions table
"""

import os
import hashlib
import logging
import secrets
import datetime
from typing import Any, Dict, Optional

import bcrypt
import jwt
from fastapi import Depends, HTTPException, Request, Response
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import get_session, _is_production
from utils.security import get_client_ip

logger = logging.getLogger("backend.auth")

# JWT configuration
JWT_SECRET = os.getenv("JWT_SECRET", "your-secret-key-change-in-production")
JWT_ALGORITHM = "HS256"
JWT_EXPIRATION_DAYS = int(os.getenv("JWT_EXPIRATION_DAYS", "7"))
BCRYPT_ROUNDS = 12

AUTH_COOKIE = "auth-token"

if _is_production() and JWT_SECRET == "your-secret-key-change-in-production":
    logger.warning("JWT_SECRET is not set; using the insecure default secret")


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


def _sql_timestamp(value: datetime.datetime) -> str:
    """Format matching SQLite CURRENT_TIMESTAMP (UTC, no 'T')."""
    return value.astimezone(datetime.timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def generate_jwt(user: Dict[str, Any]) -> tuple[str, datetime.datetime]:
    """Sign a session token for a user row. Returns (token, expires_at)."""
    expires_at = _utcnow() + datetime.timedelta(days=JWT_EXPIRATION_DAYS)
    payload = {
        "userId": user["id"],
        "email": user["email"],
        "role": user.get("role") or "user",
        "jti": secrets.token_hex(8),
        "exp": expires_at,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM), expires_at


def decode_jwt(token: str) -> Dict[str, Any]:
    return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])


async def create_session(session: AsyncSession, user: Dict[str, Any]) -> tuple[str, datetime.datetime]:
    token, expires_at = generate_jwt(user)
    await session.execute(
        text("INSERT INTO sessions (user_id, token, expires_at) VALUES (:user_id, :token, :expires_at)"),
        {"user_id": user["id"], "token": token, "expires_at": _sql_timestamp(expires_at)},
    )
    return token, expires_at


async def delete_session(session: AsyncSession, token: str) -> None:
    await session.execute(text("DELETE FROM sessions WHERE token = :token"), {"token": token})


async def purge_expired_sessions(session: AsyncSession) -> int:
    result = await session.execute(text("DELETE FROM sessions WHERE expires_at <= datetime('now')"))
    return result.rowcount or 0


def set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        AUTH_COOKIE,
        token,
        httponly=True,
        secure=_is_production(),
        samesite="strict",
        max_age=JWT_EXPIRATION_DAYS * 24 * 60 * 60,
    )


def clear_auth_cookie(response: Response) -> None:
    response.set_cookie(
        AUTH_COOKIE,
        "",
        httponly=True,
        secure=_is_production(),
        samesite="strict",
        max_age=0,
    )


def csrf_session_id(request: Request, client_ip: str) -> str:
    """Key CSRF tokens are bound to: the auth session when logged in, else the client IP."""
    token = request.cookies.get(AUTH_COOKIE)
    if token:
        return "auth:" + hashlib.sha256(token.encode("utf-8")).hexdigest()[:32]
    return f"ip:{client_ip}"


async def get_current_user(request: Request, session: AsyncSession = Depends(get_session)) -> Dict[str, Any]:
    """Resolve the logged-in user from the auth cookie or raise 401."""
    token = request.cookies.get(AUTH_COOKIE)
    if not token:
        raise HTTPException(status_code=401, detail="Authentication required")

    try:
        payload = decode_jwt(token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        logger.info("Invalid JWT for %s", request.url.path)
        raise HTTPException(status_code=401, detail="Invalid token")

    result = await session.execute(
        text("""
            SELECT u.id, u.email, u.name, u.role
            FROM sessions s
            JOIN users u ON s.user_id = u.id
            WHERE s.token = :token AND s.expires_at > datetime('now')
        """),
        {"token": token},
    )
    user = result.mappings().first()
    if not user:
        raise HTTPException(status_code=401, detail="Session expired or revoked")

    if user["id"] != payload.get("userId"):
        raise HTTPException(status_code=401, detail="Invalid token")

    request.state.user = dict(user)
    return dict(user)


async def require_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def get_request_metadata(request: Request) -> Dict[str, Optional[str]]:
    """Client metadata stored alongside submissions"""
    return {
        "ipAddress": get_client_ip(request),
        "userAgent": request.headers.get("user-agent") or "unknown",
    }
