"""
Auth router: registration, cookie sessions and the current user
"""

import logging
from typing import Dict, Any

import jwt
from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from auth.auth_utils import (
    AUTH_COOKIE,
    clear_auth_cookie,
    create_session,
    csrf_session_id,
    decode_jwt,
    delete_session,
    hash_password,
    set_auth_cookie,
    verify_password,
)
from db.database import get_session
from models.base import LoginRequest, RegisterRequest
from models.validators import validate_data
from utils.csrf import csrf_protection
from utils.security import get_client_ip

logger = logging.getLogger("backend.auth")

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _validation_error(errors) -> HTTPException:
    return HTTPException(status_code=400, detail={"error": "Validation failed", "details": errors})


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(payload: Dict[str, Any] = Body(...), session: AsyncSession = Depends(get_session)):
    ok, result = validate_data(payload, RegisterRequest)
    if not ok:
        raise _validation_error(result)

    email = result.email.lower()
    existing = await session.execute(text("SELECT id FROM users WHERE email = :email"), {"email": email})
    if existing.first():
        raise HTTPException(status_code=400, detail="User already exists")

    inserted = await session.execute(
        text("INSERT INTO users (email, password_hash, name) VALUES (:email, :password_hash, :name)"),
        {"email": email, "password_hash": hash_password(result.password), "name": result.name},
    )
    user = (await session.execute(
        text("SELECT id, email, name, role FROM users WHERE id = :id"), {"id": inserted.lastrowid}
    )).mappings().first()
    logger.info("User registered id=%s", user["id"])
    return {"user": dict(user)}


@router.post("/login")
async def login(response: Response, payload: Dict[str, Any] = Body(...), session: AsyncSession = Depends(get_session)):
    ok, result = validate_data(payload, LoginRequest)
    if not ok:
        raise HTTPException(status_code=401, detail="Invalid credentials")

    row = (await session.execute(
        text("SELECT id, email, name, role, password_hash FROM users WHERE email = :email"),
        {"email": result.email.lower()},
    )).mappings().first()
    if not row or not verify_password(result.password, row["password_hash"]):
        logger.info("Failed login for %s", result.email)
        raise HTTPException(status_code=401, detail="Invalid credentials")

    user = {k: row[k] for k in ("id", "email", "name", "role")}
    token, _expires_at = await create_session(session, user)
    set_auth_cookie(response, token)
    logger.info("User logged in id=%s", user["id"])
    return {"user": user}


@router.post("/logout")
async def logout(request: Request, response: Response, session: AsyncSession = Depends(get_session)):
    token = request.cookies.get(AUTH_COOKIE)
    if token:
        await delete_session(session, token)
        csrf_protection.revoke_session_tokens(csrf_session_id(request, get_client_ip(request)))
    clear_auth_cookie(response)
    return {"success": True}


@router.get("/me")
async def me(request: Request, session: AsyncSession = Depends(get_session)):
    token = request.cookies.get(AUTH_COOKIE)
    if not token:
        raise HTTPException(status_code=401, detail="No token provided")
    try:
        payload = decode_jwt(token)
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user = (await session.execute(
        text("SELECT id, email, name, role FROM users WHERE id = :id"), {"id": payload.get("userId")}
    )).mappings().first()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")

    live = (await session.execute(
        text("SELECT 1 FROM sessions WHERE token = :token AND expires_at > datetime('now')"), {"token": token}
    )).first()
    if not live:
        raise HTTPException(status_code=401, detail="Session expired or revoked")
    return {"user": dict(user)}
