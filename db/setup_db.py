#!/usr/bin/env python
"""
SQLite database setup for FormForge
Creates the tables defined in schema.sql and seeds the default admin account
"""

import os
import sys
import asyncio
import logging
from pathlib import Path

from sqlalchemy import text

from db.database import engine, session_scope, DATABASE_URL
from auth.auth_utils import hash_password

logger = logging.getLogger("backend.db")

SCHEMA_PATH = Path(__file__).resolve().parent / "schema.sql"

DEFAULT_ADMIN_EMAIL = os.getenv("DEFAULT_ADMIN_EMAIL", "admin@formbuilder.com")
DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "admin123")
DEFAULT_ADMIN_NAME = os.getenv("DEFAULT_ADMIN_NAME", "Administrator")


def _schema_statements() -> list[str]:
    with open(SCHEMA_PATH, "r", encoding="utf-8") as f:
        raw = f.read()
    lines = [line for line in raw.splitlines() if not line.strip().startswith("--")]
    return [stmt.strip() for stmt in "\n".join(lines).split(";") if stmt.strip()]


async def setup_tables() -> None:
    """Create tables from schema.sql (idempotent)"""
    async with engine.begin() as conn:
        for statement in _schema_statements():
            await conn.execute(text(statement))
    logger.info("Tables ready at %s", DATABASE_URL)


async def seed_default_admin() -> bool:
    """Create the default admin when no users exist. Returns True if one was created."""
    async with session_scope() as session:
        result = await session.execute(text("SELECT COUNT(*) AS count FROM users"))
        if (result.mappings().first() or {}).get("count", 0):
            return False

        await session.execute(
            text("""
                INSERT INTO users (email, password_hash, name, role)
                VALUES (:email, :password_hash, :name, 'admin')
            """),
            {
                "email": DEFAULT_ADMIN_EMAIL.lower(),
                "password_hash": hash_password(DEFAULT_ADMIN_PASSWORD),
                "name": DEFAULT_ADMIN_NAME,
            },
        )
    logger.warning("Default admin created: %s (change the password)", DEFAULT_ADMIN_EMAIL)
    return True


async def init_db() -> None:
    await setup_tables()
    await seed_default_admin()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    print("Setting up FormForge SQLite database...")
    try:
        asyncio.run(init_db())
    except Exception as e:
        print(f"Error setting up tables: {e}")
        sys.exit(1)
    print("Database setup completed successfully")
