#!/usr/bin/env python3
"""
Parsers for legacy source files.

Contains readers for:
- CSV exports
- XLSX/XLS spreadsheets
- FHIR-like JSON exports (single resources, resource arrays and Bundles)

Every reader returns row records with string values and None for blanks,
so pattern detection sees values exactly as they were exported.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import pandas as pd

from .errors import AnalysisError
from .logging_config import get_logger
from .models import SourceKind

logger = get_logger(__name__)

Records = List[Dict[str, Optional[str]]]


def _frame_to_records(df: pd.DataFrame) -> Records:
    df = df.dropna(how="all")
    df.columns = [str(c).strip() for c in df.columns]
    df = df.astype(object).where(pd.notna(df), None)
    return df.to_dict("records")


def read_csv_records(path: Path, delimiter: str = ",", encoding: str = "utf-8") -> Records:
    """Read a CSV export without type inference."""
    df = pd.read_csv(path, sep=delimiter, dtype=str, keep_default_na=True, encoding=encoding)
    return _frame_to_records(df)


def read_excel_records(path: Path, sheet: Union[str, int] = 0, header_row: int = 1) -> Records:
    """
    Read a spreadsheet without type inference.

    Args:
        path: Path to XLSX/XLS file
        sheet: Sheet name or 0-based index
        header_row: Row number containing headers (1-based)
    """
    df = pd.read_excel(path, sheet_name=sheet, header=header_row - 1, dtype=str)
    return _frame_to_records(df)


def _unwrap_resources(data: Any) -> List[Dict[str, Any]]:
    if isinstance(data, dict) and data.get("resourceType") == "Bundle":
        return [entry["resource"] for entry in data.get("entry", []) if "resource" in entry]
    if isinstance(data, dict):
        return [data]
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    raise AnalysisError("JSON source must be an object or an array of objects")


def read_fhir_records(path: Path) -> Records:
    """
    Read a FHIR-like JSON export, flattening nested fields with ``_``.

    Lists of scalars are joined with ``|``; lists of objects keep their
    first element (e.g. ``name_0_family`` becomes ``name_family``).
    """
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    resources = [_first_of_lists(resource) for resource in _unwrap_resources(data)]
    if not resources:
        return []
    df = pd.json_normalize(resources, sep="_")
    return [
        {key: None if value is None else str(value) for key, value in record.items()}
        for record in _frame_to_records(df)
    ]


def _first_of_lists(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _first_of_lists(item) for key, item in value.items()}
    if isinstance(value, list):
        if value and all(isinstance(item, dict) for item in value):
            return _first_of_lists(value[0])
        return "|".join(str(item) for item in value) if value else None
    return value


def read_tabular_source(path: Path, **kwargs) -> Tuple[SourceKind, Records]:
    """
    Read any supported source file, choosing the reader by extension.

    Returns:
        Tuple of (source kind, row records)

    Raises:
        FileNotFoundError: if the file does not exist
        AnalysisError: if the extension is not supported
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Source file not found: {path}")

    suffix = path.suffix.lower()
    if suffix in (".csv", ".txt"):
        kind, records = SourceKind.CSV, read_csv_records(path, **kwargs)
    elif suffix in (".xlsx", ".xls"):
        kind, records = SourceKind.EXCEL, read_excel_records(path, **kwargs)
    elif suffix == ".json":
        kind, records = SourceKind.FHIR, read_fhir_records(path)
    else:
        raise AnalysisError(f"Unsupported source file type: {suffix}")

    logger.info(f"Read {len(records)} rows from {path.name} ({kind.value})")
    return kind, records
