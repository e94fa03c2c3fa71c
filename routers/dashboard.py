from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from auth.auth_utils import get_current_user
from db.database import get_session
from services.submissions_service import SubmissionsService

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])


@router.get("/stats")
async def dashboard_stats(
    range: str = "7d",
    user=Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    """Totals plus activity inside the selected range (7d, 30d, 90d, 1y)"""
    return await SubmissionsService.get_dashboard_stats(session, range)


@router.get("/recent-submissions")
async def recent_submissions(user=Depends(get_current_user), session: AsyncSession = Depends(get_session)):
    return await SubmissionsService.get_recent_submissions(session)
