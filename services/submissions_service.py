"""
Submissions service: intake of public form submissions, listing for the
dashboard and the aggregate queries behind stats and exports
"""

import json
import math
import logging
import datetime
from typing import Dict, Any, List, Optional

from sqlalchemy import text, Integer, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from db.database import decode_json_column
from models.validators import validate_field, is_empty
from services.forms_service import AsyncFormsService
from services.integrations_service import IntegrationService
from utils.security import sanitize_input

logger = logging.getLogger("backend.submissions")

MAX_SUBMISSIONS_PER_IP_PER_HOUR = 10
MAX_PAGE_SIZE = 100

RANGE_DAYS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}


def range_threshold(range_key: Optional[str]) -> str:
    """Start of a dashboard range as a SQLite timestamp; unknown ranges mean 7 days."""
    days = RANGE_DAYS.get(range_key or "7d", 7)
    start = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(days=days)
    return start.strftime("%Y-%m-%d %H:%M:%S")


def serialize_submission(row: Dict[str, Any]) -> Dict[str, Any]:
    submission = dict(row)
    submission["data"] = decode_json_column(submission.get("data"), {})
    submission["integration_results"] = decode_json_column(submission.get("integration_results"), None)
    return submission


def _now_iso() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat().replace("+00:00", "Z")


class SubmissionsService:
    """Async service for form submissions"""

    @staticmethod
    async def count_recent_by_ip(session: AsyncSession, ip_address: str) -> int:
        result = await session.execute(
            text("""
                SELECT COUNT(*) AS count FROM submissions
                WHERE ip_address = :ip AND created_at > datetime('now', '-1 hour')
            """),
            {"ip": ip_address},
        )
        return result.scalar() or 0

    @staticmethod
    async def create_submission(
        session: AsyncSession,
        form_id: Any,
        data: Dict[str, Any],
        metadata: Dict[str, Any],
        integrations: Optional[IntegrationService] = None,
    ) -> Dict[str, Any]:
        """Validate and store a submission.

        Returns {"success": True, ...} or {"success": False, "status": <http status>, "error": ...}
        with missingFields / fieldErrors when the data does not fit the form.
        """
        try:
            form_id = int(form_id)
        except (TypeError, ValueError):
            return {"success": False, "status": 404, "error": "Form not found or inactive"}

        form = await AsyncFormsService.get_active_form(session, form_id)
        if not form:
            logger.info("Submission for missing or inactive form %s", form_id)
            return {"success": False, "status": 404, "error": "Form not found or inactive"}

        fields = form["fields"]
        missing = [f.get("label") for f in fields if f.get("required") and is_empty(data.get(f.get("id")))]
        if missing:
            logger.info("Submission for form %s missing required fields %s", form_id, missing)
            return {
                "success": False,
                "status": 400,
                "error": "Required fields missing",
                "missingFields": missing,
            }

        field_errors = {}
        for field in fields:
            ok, error = validate_field(field.get("type"), data.get(field.get("id")), bool(field.get("required")))
            if not ok:
                field_errors[field.get("id")] = error
        if field_errors:
            return {"success": False, "status": 400, "error": "Validation failed", "fieldErrors": field_errors}

        ip_address = metadata.get("ipAddress") or "unknown"
        if await SubmissionsService.count_recent_by_ip(session, ip_address) >= MAX_SUBMISSIONS_PER_IP_PER_HOUR:
            logger.warning("Hourly submission limit reached for %s", ip_address)
            return {"success": False, "status": 429, "error": "Too many submissions. Try again in 1 hour."}

        clean_data = sanitize_input(data)
        result = await session.execute(
            text("""
                INSERT INTO submissions (form_id, data, ip_address, user_agent)
                VALUES (:form_id, :data, :ip_address, :user_agent)
            """),
            {
                "form_id": form_id,
                "data": json.dumps(clean_data),
                "ip_address": ip_address,
                "user_agent": metadata.get("userAgent") or "unknown",
            },
        )
        submission_id = result.lastrowid
        logger.info("Submission stored id=%s form=%s", submission_id, form_id)

        if integrations is not None:
            try:
                outcome = await integrations.process_form_submission(clean_data, form["title"])
                await session.execute(
                    text("UPDATE submissions SET integration_results = :results WHERE id = :id"),
                    {"results": json.dumps(outcome), "id": submission_id},
                )
            except Exception:
                # Integrations never fail a stored submission
                logger.exception("Integrations failed for submission %s", submission_id)

        return {
            "success": True,
            "id": submission_id,
            "message": "Form submitted successfully!",
            "timestamp": _now_iso(),
        }

    @staticmethod
    async def list_submissions(
        session: AsyncSession, form_id: Optional[int] = None, page: int = 1, limit: int = 10
    ) -> Dict[str, Any]:
        page = max(1, int(page))
        limit = max(1, min(int(limit), MAX_PAGE_SIZE))
        offset = (page - 1) * limit

        where = ""
        params: Dict[str, Any] = {"limit_val": limit, "offset_val": offset}
        if form_id is not None:
            where = "WHERE s.form_id = :form_id"
            params["form_id"] = form_id

        query = text(f"""
            SELECT
                s.*,
                f.title AS form_title,
                f.description AS form_description
            FROM submissions s
            JOIN forms f ON s.form_id = f.id
            {where}
            ORDER BY s.created_at DESC, s.id DESC
            LIMIT :limit_val OFFSET :offset_val
        """).bindparams(
            bindparam("limit_val", type_=Integer),
            bindparam("offset_val", type_=Integer),
        )
        result = await session.execute(query, params)
        submissions = [serialize_submission(row) for row in result.mappings().all()]

        count_params = {k: v for k, v in params.items() if k == "form_id"}
        total_result = await session.execute(
            text(f"SELECT COUNT(*) FROM submissions s JOIN forms f ON s.form_id = f.id {where}"),
            count_params,
        )
        total = total_result.scalar() or 0

        return {
            "success": True,
            "submissions": submissions,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit),
                "hasNext": page * limit < total,
                "hasPrev": page > 1,
            },
            "timestamp": _now_iso(),
        }

    @staticmethod
    async def get_submission(session: AsyncSession, submission_id: int) -> Optional[Dict[str, Any]]:
        result = await session.execute(
            text("""
                SELECT s.*, f.title AS form_title
                FROM submissions s
                JOIN forms f ON s.form_id = f.id
                WHERE s.id = :id
            """),
            {"id": submission_id},
        )
        row = result.mappings().first()
        return serialize_submission(row) if row else None

    @staticmethod
    async def delete_submission(session: AsyncSession, submission_id: int) -> bool:
        result = await session.execute(text("DELETE FROM submissions WHERE id = :id"), {"id": submission_id})
        deleted = (result.rowcount or 0) > 0
        if deleted:
            logger.info("Submission deleted id=%s", submission_id)
        return deleted

    @staticmethod
    async def get_dashboard_stats(session: AsyncSession, range_key: Optional[str] = "7d") -> Dict[str, int]:
        since = range_threshold(range_key)
        total_forms = (await session.execute(text("SELECT COUNT(*) FROM forms"))).scalar() or 0
        total_submissions = (await session.execute(text("SELECT COUNT(*) FROM submissions"))).scalar() or 0
        recent = (await session.execute(
            text("SELECT COUNT(*) FROM submissions WHERE created_at >= :since"), {"since": since}
        )).scalar() or 0
        active_users = (await session.execute(
            text("SELECT COUNT(DISTINCT ip_address) FROM submissions WHERE created_at >= :since"), {"since": since}
        )).scalar() or 0

        conversion_rate = round(recent / total_submissions * 100) if total_submissions > 0 else 0
        return {
            "totalForms": total_forms,
            "totalSubmissions": total_submissions,
            "activeUsers": active_users,
            "conversionRate": conversion_rate,
        }

    @staticmethod
    async def get_recent_submissions(session: AsyncSession, limit: int = 10) -> List[Dict[str, Any]]:
        result = await session.execute(
            text("""
                SELECT
                    s.id,
                    s.created_at AS submittedAt,
                    f.title AS formTitle,
                    'new' AS status
                FROM submissions s
                JOIN forms f ON s.form_id = f.id
                ORDER BY s.created_at DESC, s.id DESC
                LIMIT :limit_val
            """).bindparams(bindparam("limit_val", type_=Integer)),
            {"limit_val": limit},
        )
        return [dict(row) for row in result.mappings().all()]

    @staticmethod
    async def get_export_rows(
        session: AsyncSession, range_key: Optional[str] = "7d", form_id: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Submissions in a dashboard range, optionally for one form, newest first"""
        params: Dict[str, Any] = {"since": range_threshold(range_key)}
        query = """
            SELECT s.*, f.title AS form_title
            FROM submissions s
            JOIN forms f ON s.form_id = f.id
            WHERE s.created_at >= :since
        """
        if form_id is not None:
            query += " AND s.form_id = :form_id"
            params["form_id"] = form_id
        query += " ORDER BY s.created_at DESC, s.id DESC"

        result = await session.execute(text(query), params)
        return [serialize_submission(row) for row in result.mappings().all()]
