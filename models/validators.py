"""
Utility functions for data validation: Pydantic model validation and
per-field checks applied to submitted form data
"""
import re
import datetime
from typing import Dict, Any, Type, TypeVar, Optional, Union, List

from email_validator import EmailNotValidError, validate_email
from pydantic import BaseModel, ValidationError

T = TypeVar('T', bound=BaseModel)

MAX_TEXT_LENGTH = 1000

_NON_DIGITS = re.compile(r"\D")
_CNPJ_WEIGHTS_1 = [5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2]
_CNPJ_WEIGHTS_2 = [6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2]


def validate_data(data: Dict[str, Any], model_class: Type[T]) -> tuple[bool, Union[T, List[Dict[str, Any]]]]:
    """
    Validate and sanitize input data using a Pydantic model

    Args:
        data: The input data to validate
        model_class: The Pydantic model class to use for validation

    Returns:
        Tuple of (is_valid, result) where:
        - is_valid: Boolean indicating if validation passed
        - result: Either the validated model instance or a list of validation errors
    """
    try:
        return True, model_class.model_validate(data)
    except ValidationError as e:
        return False, e.errors(include_url=False, include_context=False, include_input=False)


def only_digits(value: Any) -> str:
    return _NON_DIGITS.sub("", str(value or ""))


def is_empty(value: Any) -> bool:
    if value is None or value is False:
        return True
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return str(value).strip() == ""


def _check_digit(digits: str, weights: List[int]) -> int:
    total = sum(int(d) * w for d, w in zip(digits, weights))
    rest = total % 11
    return 0 if rest < 2 else 11 - rest


def validate_cnpj(cnpj: str) -> bool:
    """Check length and both check digits of a CNPJ (punctuation ignored)."""
    digits = only_digits(cnpj)
    if len(digits) != 14:
        return False
    # 00000000000000, 11111111111111, ... pass the checksum but are not issued
    if digits == digits[0] * 14:
        return False
    if _check_digit(digits[:12], _CNPJ_WEIGHTS_1) != int(digits[12]):
        return False
    return _check_digit(digits[:13], _CNPJ_WEIGHTS_2) == int(digits[13])


def validate_cep(cep: str) -> bool:
    return len(only_digits(cep)) == 8


def _is_iso_date(value: str) -> bool:
    try:
        datetime.date.fromisoformat(value)
        return True
    except ValueError:
        pass
    try:
        datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
        return True
    except ValueError:
        return False


def validate_field(field_type: str, value: Any, required: bool = False) -> tuple[bool, Optional[str]]:
    """Validate one submitted value against its field type.

    Returns (is_valid, error_message). Empty optional values are valid.
    """
    if is_empty(value):
        if required:
            return False, "This field is required"
        return True, None

    if field_type == "email":
        try:
            validate_email(str(value), check_deliverability=False)
        except EmailNotValidError:
            return False, "Invalid email format"
    elif field_type in ("text", "textarea"):
        if len(str(value)) > MAX_TEXT_LENGTH:
            return False, f"Text too long (max {MAX_TEXT_LENGTH} characters)"
    elif field_type == "date":
        if not _is_iso_date(str(value)):
            return False, "Invalid date format"
    elif field_type == "cep":
        if not validate_cep(value):
            return False, "CEP must have 8 digits"
    elif field_type == "cnpj":
        if not validate_cnpj(value):
            return False, "Invalid CNPJ"

    return True, None
