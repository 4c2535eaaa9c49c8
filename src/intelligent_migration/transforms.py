#!/usr/bin/env python3
"""
Value transformations applied while migrating a mapped column.

``infer_transformation`` picks a rule from the source column's dominant
pattern and the target column name; ``apply_transformation`` runs it on
one value.
"""

import re
from datetime import datetime
from typing import Optional

import pandas as pd

from .errors import TransformationError

NORMALIZE_PHONE = "NORMALIZE_PHONE"
CONVERT_DATE_TO_ISO = "CONVERT_DATE_TO_ISO"
PARSE_NAME_FIRST = "PARSE_NAME_FIRST"
PARSE_NAME_LAST = "PARSE_NAME_LAST"
CONVERT_STATE_TO_CODE = "CONVERT_STATE_TO_CODE"

TRANSFORMATIONS = frozenset(
    {NORMALIZE_PHONE, CONVERT_DATE_TO_ISO, PARSE_NAME_FIRST, PARSE_NAME_LAST, CONVERT_STATE_TO_CODE}
)

FIRST_NAME_COLUMNS = frozenset({"first_name", "name_given"})
LAST_NAME_COLUMNS = frozenset({"last_name", "name_family"})
STATE_COLUMNS = frozenset({"state", "address_state"})

US_STATE_CODES = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR",
    "california": "CA", "colorado": "CO", "connecticut": "CT", "delaware": "DE",
    "florida": "FL", "georgia": "GA", "hawaii": "HI", "idaho": "ID",
    "illinois": "IL", "indiana": "IN", "iowa": "IA", "kansas": "KS",
    "kentucky": "KY", "louisiana": "LA", "maine": "ME", "maryland": "MD",
    "massachusetts": "MA", "michigan": "MI", "minnesota": "MN", "mississippi": "MS",
    "missouri": "MO", "montana": "MT", "nebraska": "NE", "nevada": "NV",
    "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM", "new york": "NY",
    "north carolina": "NC", "north dakota": "ND", "ohio": "OH", "oklahoma": "OK",
    "oregon": "OR", "pennsylvania": "PA", "rhode island": "RI", "south carolina": "SC",
    "south dakota": "SD", "tennessee": "TN", "texas": "TX", "utah": "UT",
    "vermont": "VT", "virginia": "VA", "washington": "WA", "west virginia": "WV",
    "wisconsin": "WI", "wyoming": "WY", "district of columbia": "DC",
}

_SLASH_OR_DASH_DATE = re.compile(r"^(\d{1,2})[/-](\d{1,2})[/-](\d{2}|\d{4})$")
_ISO_DATE = re.compile(r"^(\d{4}-\d{2}-\d{2})(T.*)?$")


def is_date_column(column: str) -> bool:
    return "date" in column or column.endswith("_dt")


def infer_transformation(dominant_pattern: str, target_column: Optional[str]) -> Optional[str]:
    """Transformation required to move a column with this pattern into the target."""
    if not target_column:
        return None
    if "phone" in target_column or target_column == "fax":
        return NORMALIZE_PHONE if dominant_pattern == "PHONE" else None
    if dominant_pattern == "DATE" and is_date_column(target_column):
        return CONVERT_DATE_TO_ISO
    if dominant_pattern == "NAME_FULL":
        if target_column in FIRST_NAME_COLUMNS:
            return PARSE_NAME_FIRST
        if target_column in LAST_NAME_COLUMNS:
            return PARSE_NAME_LAST
    if target_column in STATE_COLUMNS and dominant_pattern != "STATE_CODE":
        return CONVERT_STATE_TO_CODE
    return None


def _to_iso_date(text: str) -> str:
    iso = _ISO_DATE.match(text)
    if iso:
        return iso.group(1)

    match = _SLASH_OR_DASH_DATE.match(text)
    if match:
        month, day, year = (int(part) for part in match.groups())
        if year < 100:
            # Two-digit years pivot like strptime's %y.
            year += 2000 if year < 69 else 1900
        try:
            return datetime(year, month, day).strftime("%Y-%m-%d")
        except ValueError as e:
            raise TransformationError(f"Invalid date: {text}") from e

    parsed = pd.to_datetime(text, errors="coerce")
    if pd.isna(parsed):
        raise TransformationError(f"Unrecognized date format: {text}")
    return parsed.strftime("%Y-%m-%d")


def _split_name(text: str):
    """Split 'Last, First' or 'First Last' into (first, last)."""
    if "," in text:
        last, _, first = text.partition(",")
        return first.strip().split(" ")[0] or None, last.strip() or None
    parts = text.split()
    if len(parts) == 1:
        return parts[0], None
    return parts[0], parts[-1]


def apply_transformation(value, transformation: Optional[str]):
    """
    Apply ``transformation`` to one value. Blank values become None.

    Raises:
        TransformationError: if the value cannot be converted
    """
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return None
    text = str(value).strip()
    if not text:
        return None
    if transformation is None:
        return text

    if transformation == NORMALIZE_PHONE:
        digits = re.sub(r"\D", "", text)
        if len(digits) < 10:
            raise TransformationError(f"Phone number has fewer than 10 digits: {text}")
        return digits[-10:]

    if transformation == CONVERT_DATE_TO_ISO:
        return _to_iso_date(text)

    if transformation == PARSE_NAME_FIRST:
        return _split_name(text)[0]

    if transformation == PARSE_NAME_LAST:
        return _split_name(text)[1]

    if transformation == CONVERT_STATE_TO_CODE:
        if re.fullmatch(r"[A-Za-z]{2}", text):
            return text.upper()
        code = US_STATE_CODES.get(text.lower())
        if code is None:
            raise TransformationError(f"Unknown state name: {text}")
        return code

    raise TransformationError(f"Unknown transformation: {transformation}")
