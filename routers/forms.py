"""
Forms API router: CRUD for authenticated users, downloads and the public
read endpoint used by the hosted fill-in page
"""

import re
import logging
import unicodedata
from typing import Dict, Any, Optional
from urllib.parse import quote

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from auth.auth_utils import get_current_user
from db.database import get_session
from models.base import FormCreate, FormUpdate
from models.validators import validate_data
from services.form_exporter import get_form_exporter
from services.forms_service import AsyncFormsService

logger = logging.getLogger("backend.forms")

router = APIRouter(prefix="/api/forms", tags=["forms"])
public_router = APIRouter(prefix="/api/public", tags=["forms"])

_FILENAME_UNSAFE = re.compile(r"[^a-z0-9]")


def export_filename(title: Optional[str], requested: Optional[str], extension: str) -> str:
    if requested:
        return re.sub(r'["\\\r\n]', "", requested)
    return _FILENAME_UNSAFE.sub("_", (title or "form").lower()) + "." + extension


def content_disposition(name: str, extension: str) -> str:
    """Attachment header; non-ASCII names also go in an RFC 5987 filename*"""
    if name.isascii():
        return f'attachment; filename="{name}"'
    fallback = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    fallback = fallback.strip() or f"form.{extension}"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(name, safe='')}"


def _flag(value: Optional[str], default: bool) -> bool:
    """Query flags: defaults-on are disabled only by "false", defaults-off enabled only by "true"."""
    if value is None:
        return default
    if default:
        return value.lower() != "false"
    return value.lower() == "true"


def _validation_error(errors) -> HTTPException:
    return HTTPException(status_code=400, detail={"error": "Validation failed", "details": errors})


@router.get("")
async def list_forms(user=Depends(get_current_user), session: AsyncSession = Depends(get_session)):
    """All forms with submission counts, newest first"""
    return await AsyncFormsService.list_forms(session)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_form(
    payload: Dict[str, Any] = Body(...),
    user=Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    ok, result = validate_data(payload, FormCreate)
    if not ok:
        raise _validation_error(result)
    return await AsyncFormsService.create_form(session, result)


@router.get("/{form_id}")
async def get_form(form_id: int, user=Depends(get_current_user), session: AsyncSession = Depends(get_session)):
    form = await AsyncFormsService.get_form(session, form_id)
    if not form:
        raise HTTPException(status_code=404, detail="Form not found")
    return form


@router.put("/{form_id}")
async def update_form(
    form_id: int,
    payload: Dict[str, Any] = Body(...),
    user=Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    ok, result = validate_data(payload, FormUpdate)
    if not ok:
        raise _validation_error(result)
    form = await AsyncFormsService.update_form(session, form_id, result)
    if not form:
        raise HTTPException(status_code=404, detail="Form not found")
    return form


@router.delete("/{form_id}")
async def delete_form(form_id: int, user=Depends(get_current_user), session: AsyncSession = Depends(get_session)):
    if not await AsyncFormsService.delete_form(session, form_id):
        raise HTTPException(status_code=404, detail="Form not found")
    return {"success": True}


@router.get("/{form_id}/export")
async def export_form(
    form_id: int,
    format: str = Query("json"),
    filename: Optional[str] = None,
    includeValidation: Optional[str] = None,
    includeAutoFill: Optional[str] = None,
    includeCSS: Optional[str] = None,
    includeBootstrap: Optional[str] = None,
    includeMetadata: Optional[str] = None,
    minify: Optional[str] = None,
    submitUrl: str = "",
    theme: str = "default",
    version: str = "1.0",
    user=Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    """Download a form as a standalone HTML page or a JSON definition"""
    if format not in ("json", "html"):
        raise HTTPException(status_code=400, detail="Invalid format. Use 'json' or 'html'")

    form = await AsyncFormsService.get_form(session, form_id)
    if not form:
        raise HTTPException(status_code=404, detail="Form not found")

    exporter = get_form_exporter()
    if format == "html":
        content = exporter.export_as_html(
            form,
            include_validation=_flag(includeValidation, True),
            include_auto_fill=_flag(includeAutoFill, True),
            include_css=_flag(includeCSS, True),
            include_bootstrap=_flag(includeBootstrap, False),
            submit_url=submitUrl,
            theme=theme,
        )
        media_type = "text/html; charset=utf-8"
    else:
        content = exporter.export_as_json(
            form,
            include_metadata=_flag(includeMetadata, True),
            include_validation=_flag(includeValidation, True),
            minify=_flag(minify, False),
            version=version,
        )
        media_type = "application/json"

    name = export_filename(form.get("title"), filename, format)
    logger.info("Form %s exported as %s", form_id, format)
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": content_disposition(name, format)},
    )


@public_router.get("/forms/{form_id}")
async def get_public_form(form_id: int, session: AsyncSession = Depends(get_session)):
    """Published form definition for the fill-in page"""
    form = await AsyncFormsService.get_active_form(session, form_id)
    if not form:
        raise HTTPException(status_code=404, detail="Form not found")
    return form
