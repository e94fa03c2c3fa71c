"""
Auto-fill proxy router - CEP and CNPJ lookups for the hosted fill-in page.
"""
from fastapi import APIRouter, Depends, HTTPException, Request

from services.autofill_service import AutoFillService, get_autofill_service
from utils.limiter import limiter

router = APIRouter(prefix="/api/autofill", tags=["autofill"])


def _unwrap(result: dict) -> dict:
    if not result.get("success"):
        raise HTTPException(status_code=result.get("status", 502), detail=result.get("error"))
    return {"success": True, "data": result["data"]}


@router.get("/cep/{cep}")
@limiter.limit("60/minute")
async def lookup_cep(request: Request, cep: str, service: AutoFillService = Depends(get_autofill_service)):
    """Address for a Brazilian postal code"""
    return _unwrap(await service.fetch_cep_data(cep))


@router.get("/cnpj/{cnpj}")
@limiter.limit("30/minute")
async def lookup_cnpj(request: Request, cnpj: str, service: AutoFillService = Depends(get_autofill_service)):
    """Company registry data for a CNPJ"""
    return _unwrap(await service.fetch_cnpj_data(cnpj))
