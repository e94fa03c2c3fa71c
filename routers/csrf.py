from fastapi import APIRouter, Request

from auth.auth_utils import csrf_session_id
from utils.csrf import csrf_protection, TOKEN_EXPIRY
from utils.limiter import limiter
from utils.security import get_client_ip

router = APIRouter(prefix="/api", tags=["csrf"])


@router.get("/csrf")
@limiter.limit("60/minute")
async def get_csrf_token(request: Request):
    """Issue a single-use CSRF token bound to the caller's session (or IP when anonymous)"""
    session_id = csrf_session_id(request, get_client_ip(request))
    token = csrf_protection.generate_token(session_id)
    return {"token": token, "expiresIn": TOKEN_EXPIRY}
