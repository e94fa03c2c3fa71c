"""
Submissions API router
"""

from typing import Dict, Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from auth.auth_utils import get_current_user, get_request_metadata
from db.database import get_session
from models.base import SubmissionCreate
from models.validators import validate_data
from services.integrations_service import IntegrationService, get_integration_service
from services.submissions_service import SubmissionsService

router = APIRouter(prefix="/api/submissions", tags=["submissions"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_submission(
    request: Request,
    payload: Dict[str, Any] = Body(...),
    session: AsyncSession = Depends(get_session),
    integrations: IntegrationService = Depends(get_integration_service),
):
    """Public endpoint used by published forms"""
    ok, result = validate_data(payload, SubmissionCreate)
    if not ok:
        raise HTTPException(status_code=400, detail={"error": "Invalid data", "details": result})

    outcome = await SubmissionsService.create_submission(
        session,
        result.form_id,
        result.data,
        get_request_metadata(request),
        integrations=integrations,
    )
    if not outcome.get("success"):
        code = outcome.pop("status")
        outcome.pop("success")
        raise HTTPException(status_code=code, detail=outcome)
    return outcome


@router.get("")
async def list_submissions(
    formId: Optional[int] = None,
    page: int = 1,
    limit: int = 10,
    user=Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    return await SubmissionsService.list_submissions(session, form_id=formId, page=page, limit=limit)


@router.get("/{submission_id}")
async def get_submission(
    submission_id: int, user=Depends(get_current_user), session: AsyncSession = Depends(get_session)
):
    submission = await SubmissionsService.get_submission(session, submission_id)
    if not submission:
        raise HTTPException(status_code=404, detail="Submission not found")
    return submission


@router.delete("/{submission_id}")
async def delete_submission(
    submission_id: int, user=Depends(get_current_user), session: AsyncSession = Depends(get_session)
):
    if not await SubmissionsService.delete_submission(session, submission_id):
        raise HTTPException(status_code=404, detail="Submission not found")
    return {"success": True}
