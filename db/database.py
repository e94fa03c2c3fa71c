"""
Embedded SQLite database module for FormForge using SQLAlchemy async engine
"""

import os
import json
from typing import AsyncGenerator, Any
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.sql import text
from dotenv import load_dotenv

# Load environment variables (do not override shell env)
load_dotenv()
_backend_env = Path(__file__).resolve().parents[1] / ".env"
if _backend_env.exists():
    load_dotenv(dotenv_path=str(_backend_env), override=False)


def _is_production() -> bool:
    return (os.getenv("ENV") or os.getenv("APP_ENV") or os.getenv("NODE_ENV") or "").lower() == "production"


def _default_database_url() -> str:
    if _is_production():
        return "sqlite+aiosqlite:////tmp/form-builder.db"
    return "sqlite+aiosqlite:///" + os.path.join(os.getcwd(), "form-builder.db")


def _normalize_aiosqlite_url(dsn: str) -> str:
    # Ensure SQLAlchemy uses the aiosqlite driver
    if dsn.startswith("sqlite+aiosqlite://"):
        return dsn
    if dsn.startswith("sqlite://"):
        return "sqlite+aiosqlite://" + dsn[len("sqlite://"):]
    return dsn


DATABASE_URL = _normalize_aiosqlite_url(os.getenv("DATABASE_URL") or _default_database_url())

engine = create_async_engine(
    DATABASE_URL,
    echo=False,
    pool_pre_ping=True,
)


@event.listens_for(engine.sync_engine, "connect")
def _set_sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute("PRAGMA synchronous = NORMAL")
    cursor.close()


# Create session factory
async_session_maker = async_sessionmaker(
    engine, expire_on_commit=False, class_=AsyncSession
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an AsyncSession and manages commit/rollback/close."""
    session = async_session_maker()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


@asynccontextmanager
async def session_scope() -> AsyncGenerator[AsyncSession, None]:
    """Context manager for code running outside a request (startup, background tasks)."""
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def decode_json_column(value: Any, default: Any = None) -> Any:
    """Decode a TEXT column holding JSON; tolerate already-decoded values."""
    if value is None or value == "":
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


async def ping() -> bool:
    async with async_session_maker() as session:
        await session.execute(text("SELECT 1"))
    return True
