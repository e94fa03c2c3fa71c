import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

# Load environment variables from a .env file at repo root (shell env wins)
load_dotenv()

# Rate limiting (slowapi)
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

# Centralized logging setup
from utils.logger import setup_logging, RequestContextLogMiddleware

setup_logging()

from auth.auth_utils import purge_expired_sessions
from db.database import engine, session_scope, _is_production
from db.setup_db import init_db
from utils.csrf import csrf_protection
from utils.limiter import limiter, rate_limiter
from utils.security import ALLOWED_ORIGINS
from utils.security_middleware import SecurityMiddleware

from routers.auth import router as auth_router
from routers.autofill import router as autofill_router
from routers.csrf import router as csrf_router
from routers.dashboard import router as dashboard_router
from routers.export import router as export_router
from routers.forms import router as forms_router, public_router as public_forms_router
from routers.health import router as health_router
from routers.integrations import router as integrations_router
from routers.submissions import router as submissions_router

logger = logging.getLogger("backend")

SECURITY_CLEANUP_INTERVAL = int(os.getenv("SECURITY_CLEANUP_INTERVAL", "300"))


async def _security_cleanup_loop(interval: int) -> None:
    """Purge expired rate-limit windows, CSRF tokens and login sessions until cancelled"""
    while True:
        await asyncio.sleep(interval)
        try:
            windows = rate_limiter.cleanup()
            tokens = csrf_protection.cleanup()
            async with session_scope() as session:
                sessions = await purge_expired_sessions(session)
            logger.debug("Security cleanup: %s windows, %s tokens, %s sessions", windows, tokens, sessions)
        except Exception:
            logger.exception("Security cleanup failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    logger.info("Database ready")
    cleanup_task = asyncio.create_task(_security_cleanup_loop(SECURITY_CLEANUP_INTERVAL))
    try:
        yield
    finally:
        cleanup_task.cancel()
        try:
            await cleanup_task
        except asyncio.CancelledError:
            pass
        await engine.dispose()


app = FastAPI(title="FormForge API", lifespan=lifespan)


# Production-safe error responses
def _safe_message(status_code: int) -> str:
    mapping = {
        400: "Invalid request.",
        401: "Unauthorized.",
        403: "Action not allowed.",
        404: "Not found.",
        405: "Method not allowed.",
        409: "Conflict.",
        413: "Request too large.",
        415: "Unsupported request.",
        422: "Invalid request.",
        429: "Too many requests.",
        500: "Something went wrong. Please try again.",
        502: "Temporary service issue. Please try again.",
        503: "Service unavailable. Please try again.",
        504: "Timeout. Please try again.",
    }
    return mapping.get(int(status_code or 500), "Something went wrong. Please try again.")


@app.exception_handler(StarletteHTTPException)
async def http_exception_sanitizer(request: Request, exc: StarletteHTTPException):
    headers = getattr(exc, "headers", None)
    if _is_production():
        # Preserve status code; sanitize message
        return JSONResponse(status_code=exc.status_code, content={"error": _safe_message(exc.status_code)}, headers=headers)
    if isinstance(exc.detail, dict):
        content = exc.detail
    else:
        content = {"error": str(exc.detail) if exc.detail else _safe_message(exc.status_code)}
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    status = 422
    if _is_production():
        return JSONResponse(status_code=status, content={"error": _safe_message(status)})
    details = [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in exc.errors()]
    return JSONResponse(status_code=status, content={"error": _safe_message(status), "details": details})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error")
    return JSONResponse(status_code=500, content={"error": _safe_message(500)})


app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"error": "Rate limit exceeded"}
    )


app.add_middleware(SlowAPIMiddleware)

# IP screening, fixed-window limits, CSRF and security headers
app.add_middleware(SecurityMiddleware)

# CORS: cookie auth needs explicit origins
_default_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(dict.fromkeys(_default_origins + ALLOWED_ORIGINS)),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request/response logging middleware
app.add_middleware(RequestContextLogMiddleware)

# Include routers
app.include_router(health_router)
app.include_router(csrf_router)
app.include_router(auth_router)
app.include_router(forms_router)
app.include_router(public_forms_router)
app.include_router(submissions_router)
app.include_router(dashboard_router)
app.include_router(export_router)
app.include_router(integrations_router)
app.include_router(autofill_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=not _is_production())
