"""
Submission data export (CSV or JSON) for the dashboard
"""

import io
import csv
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from auth.auth_utils import get_current_user
from db.database import get_session
from services.submissions_service import RANGE_DAYS, SubmissionsService
from utils.limiter import limiter

logger = logging.getLogger("backend.export")

router = APIRouter(prefix="/api/export", tags=["export"])


def _cell(value: Any) -> str:
    if value is None or value == "":
        return ""
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return str(value)


def submissions_to_csv(rows: List[Dict[str, Any]]) -> str:
    """CSV with fixed columns followed by every data key in first-seen order"""
    keys: List[str] = []
    for row in rows:
        for key in (row.get("data") or {}):
            if key not in keys:
                keys.append(key)

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(["ID", "Form", "Submitted At", *keys])
    for row in rows:
        data = row.get("data") or {}
        writer.writerow([row.get("id"), row.get("form_title"), row.get("created_at"), *(_cell(data.get(k)) for k in keys)])
    return buffer.getvalue()


@router.get("/submissions")
@limiter.limit("30/minute")
async def export_submissions(
    request: Request,
    format: str = "csv",
    range: str = "7d",
    formId: Optional[int] = None,
    user=Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    if range not in RANGE_DAYS:
        range = "7d"
    rows = await SubmissionsService.get_export_rows(session, range, formId)

    if format == "json":
        return rows

    if not rows:
        raise HTTPException(status_code=404, detail="No data to export")

    logger.info("Exporting %s submissions as CSV (range=%s)", len(rows), range)
    return Response(
        content=submissions_to_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="submissions-{range}.csv"'},
    )
