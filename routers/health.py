import logging

from fastapi import APIRouter

from db.database import ping

logger = logging.getLogger("backend.db")

router = APIRouter()


@router.get("/health/db")
async def health_db():
    """Lightweight DB health check: runs SELECT 1 against the embedded database."""
    try:
        await ping()
        return {"status": "ok", "db": True}
    except Exception as e:
        logger.error("DB health check failed: %s", e)
        return {"status": "fail", "db": False}
