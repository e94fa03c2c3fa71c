"""
Async forms service over the embedded SQLite database
"""

import json
import logging
from typing import Dict, Any, List, Optional

from sqlalchemy import text, Integer, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import decode_json_column
from models.base import FormCreate, FormUpdate

logger = logging.getLogger("backend.forms")


def serialize_form(row: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a forms row (snake_case, JSON text columns) to the API shape"""
    form = {
        "id": row.get("id"),
        "title": row.get("title"),
        "description": row.get("description"),
        "fields": decode_json_column(row.get("fields"), []),
        "status": row.get("status") or "draft",
        "createdAt": row.get("created_at"),
        "updatedAt": row.get("updated_at"),
    }
    if "submissions" in row:
        form["submissions"] = row.get("submissions") or 0
    return form


class AsyncFormsService:
    """Async service for form CRUD"""

    @staticmethod
    async def list_forms(session: AsyncSession) -> List[Dict[str, Any]]:
        """All forms with their submission counts, newest first"""
        result = await session.execute(text("""
            SELECT
                f.*,
                COUNT(s.id) AS submissions
            FROM forms f
            LEFT JOIN submissions s ON f.id = s.form_id
            GROUP BY f.id
            ORDER BY f.created_at DESC, f.id DESC
        """))
        return [serialize_form(dict(row)) for row in result.mappings().all()]

    @staticmethod
    async def get_form(session: AsyncSession, form_id: int) -> Optional[Dict[str, Any]]:
        query = text("SELECT * FROM forms WHERE id = :form_id").bindparams(
            bindparam("form_id", type_=Integer)
        )
        result = await session.execute(query, {"form_id": form_id})
        row = result.mappings().first()
        return serialize_form(dict(row)) if row else None

    @staticmethod
    async def get_active_form(session: AsyncSession, form_id: int) -> Optional[Dict[str, Any]]:
        """Form by id only when it is published (status active)"""
        form = await AsyncFormsService.get_form(session, form_id)
        if form and form["status"] == "active":
            return form
        return None

    @staticmethod
    async def create_form(session: AsyncSession, form: FormCreate) -> Dict[str, Any]:
        fields = [f.model_dump() for f in form.fields]
        result = await session.execute(
            text("""
                INSERT INTO forms (title, description, fields, status)
                VALUES (:title, :description, :fields, :status)
            """),
            {
                "title": form.title,
                "description": form.description,
                "fields": json.dumps(fields),
                "status": form.status,
            },
        )
        form_id = result.lastrowid
        logger.info("Form created id=%s fields=%s", form_id, len(fields))
        return await AsyncFormsService.get_form(session, form_id)

    @staticmethod
    async def update_form(session: AsyncSession, form_id: int, changes: FormUpdate) -> Optional[Dict[str, Any]]:
        """Apply the provided fields only; returns None when the form does not exist"""
        existing = await AsyncFormsService.get_form(session, form_id)
        if not existing:
            return None

        values = changes.model_dump(exclude_unset=True)
        # Explicit nulls for non-nullable columns leave the stored value alone
        for column in ("title", "fields", "status"):
            if values.get(column) is None:
                values.pop(column, None)
        if "fields" in values:
            values["fields"] = json.dumps(values["fields"])

        assignments = [f"{column} = :{column}" for column in values]
        assignments.append("updated_at = CURRENT_TIMESTAMP")
        values["form_id"] = form_id

        await session.execute(
            text(f"UPDATE forms SET {', '.join(assignments)} WHERE id = :form_id"),
            values,
        )
        logger.info("Form updated id=%s columns=%s", form_id, [c for c in values if c != "form_id"])
        return await AsyncFormsService.get_form(session, form_id)

    @staticmethod
    async def delete_form(session: AsyncSession, form_id: int) -> bool:
        """Delete a form and its submissions. Returns False when it does not exist."""
        existing = await AsyncFormsService.get_form(session, form_id)
        if not existing:
            return False

        await session.execute(text("DELETE FROM submissions WHERE form_id = :form_id"), {"form_id": form_id})
        await session.execute(text("DELETE FROM forms WHERE id = :form_id"), {"form_id": form_id})
        logger.info("Form deleted id=%s", form_id)
        return True
