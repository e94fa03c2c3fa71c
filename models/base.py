"""
Pydantic models for request validation and sanitization
"""
import html
from typing import Any, Dict, List, Literal, Optional, Union

import bleach
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

FieldType = Literal["text", "email", "phone", "textarea", "select", "checkbox", "radio", "date", "cep", "cnpj"]
FormStatus = Literal["draft", "active", "archived"]

MAX_FIELDS = 50

# Credentials are compared byte-for-byte, never rewritten
RAW_FIELDS = ("password",)


def _clean(value: str) -> str:
    # bleach entity-escapes &, < and >; store plain text and escape on output
    return html.unescape(bleach.clean(value.strip(), strip=True))


class BaseDBModel(BaseModel):
    """Base model that sanitizes every incoming string to prevent XSS"""

    @field_validator('*', mode='before')
    @classmethod
    def sanitize_strings(cls, v, info):
        if isinstance(v, str) and info.field_name not in RAW_FIELDS:
            return _clean(v)
        return v


class FormField(BaseDBModel):
    id: str = Field(min_length=1)
    type: FieldType
    label: str = Field(min_length=1, max_length=100)
    placeholder: Optional[str] = Field(default=None, max_length=200)
    required: bool = False
    options: Optional[List[str]] = None

    @field_validator('options')
    @classmethod
    def sanitize_options(cls, v):
        if v is None:
            return v
        return [_clean(option) for option in v]


def _check_fields(fields: Optional[List[FormField]]) -> None:
    if fields is None:
        return
    if len(fields) > MAX_FIELDS:
        raise ValueError(f"Too many fields (max {MAX_FIELDS})")
    ids = [f.id for f in fields]
    if len(ids) != len(set(ids)):
        raise ValueError("Duplicate field IDs found")


class FormCreate(BaseDBModel):
    title: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    fields: List[FormField] = Field(min_length=1)
    status: FormStatus = "draft"

    @model_validator(mode='after')
    def validate_fields(self):
        _check_fields(self.fields)
        return self


class FormUpdate(BaseDBModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    fields: Optional[List[FormField]] = Field(default=None, min_length=1)
    status: Optional[FormStatus] = None

    @model_validator(mode='after')
    def validate_fields(self):
        _check_fields(self.fields)
        return self


class SubmissionCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    form_id: Union[int, str] = Field(alias="formId")
    data: Dict[str, Any]

    @field_validator('form_id')
    @classmethod
    def validate_form_id(cls, v):
        if isinstance(v, str) and not v.strip():
            raise ValueError("Form ID is required")
        return v


class RegisterRequest(BaseDBModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    name: Optional[str] = Field(default=None, max_length=100)


class LoginRequest(BaseDBModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
