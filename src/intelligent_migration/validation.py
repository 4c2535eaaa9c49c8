#!/usr/bin/env python3
"""
Per-value validation rules for migrated fields.

``validate_value`` returns an error message or None. Rules are chosen by
target column name, so they apply to every table with that column.
"""

import re
from typing import Optional

from .patterns import validate_npi
from .transforms import STATE_COLUMNS, is_date_column

REQUIRED_COLUMNS = frozenset({"first_name", "last_name", "name_given", "name_family"})
NPI_COLUMNS = frozenset({"npi"})
EMAIL_COLUMNS = frozenset({"email", "telecom_email"})

NPI_CHECKSUM_ERROR = "Invalid NPI (failed checksum)"

_EMAIL = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_STATE_CODE = re.compile(r"^[A-Z]{2}$")
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ISO_DATETIME = re.compile(
    r"^\d{4}-\d{2}-\d{2}(T\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$"
)


def validate_value(value, target_column: str) -> Optional[str]:
    """
    Check a transformed value against the rules for its target column.

    Args:
        value: Value after transformation (None for blank)
        target_column: Target column name

    Returns:
        Error message, or None when the value is acceptable
    """
    if value is None or value == "":
        if target_column in REQUIRED_COLUMNS:
            return f"{target_column} is required"
        return None

    text = str(value)
    if target_column in NPI_COLUMNS and not validate_npi(text):
        return NPI_CHECKSUM_ERROR
    if target_column in EMAIL_COLUMNS and not _EMAIL.match(text):
        return "Invalid email format"
    if target_column in STATE_COLUMNS and not _STATE_CODE.match(text):
        return "Invalid state code (must be 2 letters)"
    if "datetime" in target_column:
        if not _ISO_DATETIME.match(text):
            return "Invalid datetime format (expected ISO 8601)"
    elif is_date_column(target_column) and not _ISO_DATE.match(text):
        return "Invalid date format (expected YYYY-MM-DD)"
    return None
