import datetime

from fastapi import APIRouter, Depends

from auth.auth_utils import require_admin
from services.integrations_service import IntegrationService, get_integration_service

router = APIRouter(prefix="/api/integrations", tags=["integrations"])


@router.get("/test")
async def test_integrations(
    user=Depends(require_admin),
    integrations: IntegrationService = Depends(get_integration_service),
):
    """Ping the CRM and Mailchimp with the configured credentials (admins only)"""
    connections = await integrations.test_connections()
    return {
        "success": True,
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "connections": connections,
    }
