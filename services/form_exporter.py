"""
Form exporter: standalone HTML documents and portable JSON definitions
"""

import os
import json
import logging
import datetime
from pathlib import Path
from typing import Dict, Any, Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape, TemplateNotFound

logger = logging.getLogger("backend.export")

BOOTSTRAP_CSS_URL = "https://cdn.jsdelivr.net/npm/bootstrap@5.3.0/dist/css/bootstrap.min.css"
THEMES = ("default", "dark")

FIELD_RULES = {
    "email": {
        "pattern": r"^[^\s@]+@[^\s@]+\.[^\s@]+$",
        "message": "Please enter a valid email address",
    },
    "phone": {
        "pattern": r"^(\+55\s?)?(\(?\d{2}\)?\s?)?\d{4,5}-?\d{4}$",
        "message": "Please enter a valid phone number",
    },
    "cep": {
        "pattern": r"^\d{5}-?\d{3}$",
        "message": "Please enter a valid CEP",
        "autoFill": True,
    },
    "cnpj": {
        "pattern": r"^\d{2}\.?\d{3}\.?\d{3}\/?\d{4}-?\d{2}$",
        "message": "Please enter a valid CNPJ",
        "autoFill": True,
    },
}

# Template search paths (package-relative, then env override)
template_search_paths = [str(Path(__file__).resolve().parents[1] / "templates" / "export")]
_env_dir = os.getenv("EXPORT_TEMPLATE_DIR")
if _env_dir:
    template_search_paths.insert(0, _env_dir)


def get_field_validation(field: Dict[str, Any]) -> Dict[str, Any]:
    """Client-side validation rules for one field"""
    validation = {"required": bool(field.get("required"))}
    validation.update(FIELD_RULES.get(field.get("type"), {}))
    return validation


class FormExporter:
    """Renders a stored form (API shape, fields decoded) for download"""

    def __init__(self, template_paths=None):
        self.env = Environment(
            loader=FileSystemLoader(template_paths or template_search_paths),
            autoescape=select_autoescape(["html", "xml"]),
        )

    def export_as_json(
        self,
        form: Dict[str, Any],
        include_metadata: bool = True,
        include_validation: bool = True,
        minify: bool = False,
        version: str = "1.0",
    ) -> str:
        fields = form.get("fields") or []
        exported_fields = []
        for field in fields:
            item = {
                "id": field.get("id"),
                "type": field.get("type"),
                "label": field.get("label"),
                "placeholder": field.get("placeholder") or "",
                "required": bool(field.get("required")),
                "options": field.get("options") or [],
            }
            if include_validation:
                item["validation"] = get_field_validation(field)
            exported_fields.append(item)

        data: Dict[str, Any] = {
            "version": version,
            "exportedAt": datetime.datetime.now(datetime.timezone.utc).isoformat().replace("+00:00", "Z"),
            "form": {
                "id": form.get("id"),
                "title": form.get("title"),
                "description": form.get("description"),
                "fields": exported_fields,
            },
        }
        if include_metadata:
            data["metadata"] = {
                "status": form.get("status"),
                "createdAt": form.get("createdAt"),
                "updatedAt": form.get("updatedAt"),
                "fieldCount": len(fields),
                "requiredFields": sum(1 for f in fields if f.get("required")),
            }

        if minify:
            return json.dumps(data, separators=(",", ":"), ensure_ascii=False)
        return json.dumps(data, indent=2, ensure_ascii=False)

    def export_as_html(
        self,
        form: Dict[str, Any],
        include_validation: bool = True,
        include_auto_fill: bool = True,
        include_css: bool = True,
        include_bootstrap: bool = False,
        submit_url: str = "",
        theme: str = "default",
    ) -> str:
        if theme not in THEMES:
            theme = "default"
        try:
            template = self.env.get_template("form.html")
        except TemplateNotFound:
            logger.error("Export template not found. Paths searched: %s", template_search_paths)
            raise
        return template.render(
            form={
                "title": form.get("title") or "",
                "description": form.get("description") or "",
                "fields": form.get("fields") or [],
            },
            include_validation=include_validation,
            include_auto_fill=include_auto_fill,
            include_css=include_css,
            include_bootstrap=include_bootstrap,
            bootstrap_url=BOOTSTRAP_CSS_URL,
            submit_url=submit_url or "",
            theme=theme,
        )


_exporter: Optional[FormExporter] = None


def get_form_exporter() -> FormExporter:
    global _exporter
    if _exporter is None:
        _exporter = FormExporter()
    return _exporter
