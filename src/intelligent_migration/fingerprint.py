#!/usr/bin/env python3
"""
Source fingerprinting.

A fingerprint captures the structure of a whole dataset: the ordered
column profiles, a deterministic structural hash and a unit-length
signature vector over the pattern universe. Two sources whose vectors
have cosine similarity above the configured threshold are treated as
"seen before" and can reuse learned mappings.
"""

import hashlib
from typing import Dict, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from .column_analyzer import DEFAULT_SAMPLE_SIZE, analyze_columns
from .concurrency import CancellationToken
from .errors import AnalysisError
from .logging_config import get_logger
from .models import ColumnProfile, SourceFingerprint, SourceKind
from .patterns import SIGNATURE_TAGS

logger = get_logger(__name__)

# Keyword scan over lowercased column names, first system with a hit wins.
ORIGIN_SYSTEM_KEYWORDS: Dict[str, List[str]] = {
    "EPIC": ["epic", "myc", "ser_"],
    "CERNER": ["cerner", "millennium", "prsnl_"],
    "MEDITECH": ["meditech", "mt_", "mtweb"],
    "ATHENAHEALTH": ["athena", "ath_"],
    "ALLSCRIPTS": ["allscripts", "touchworks"],
}

_SLOT = {tag: index for index, tag in enumerate(SIGNATURE_TAGS)}


def structure_hash(columns: Sequence[ColumnProfile]) -> str:
    """SHA-256 over sorted ``normalized_name:dominant_pattern`` pairs."""
    parts = sorted(f"{c.normalized_name}:{c.dominant_pattern}" for c in columns)
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def fingerprint_id(source_kind: SourceKind, struct_hash: str) -> str:
    """Identifier stable for identical structure and source kind."""
    kind = SourceKind(source_kind).value
    return hashlib.sha256(f"{kind}-{struct_hash}".encode("utf-8")).hexdigest()[:16]


def signature_vector(columns: Sequence[ColumnProfile]) -> np.ndarray:
    """
    Accumulate each column's dominant-pattern confidence into its tag slot and
    scale to unit length. An all-zero vector is returned unscaled.
    """
    vector = np.zeros(len(SIGNATURE_TAGS), dtype=float)
    for column in columns:
        slot = _SLOT.get(column.dominant_pattern)
        if slot is not None:
            vector[slot] += column.confidence

    magnitude = np.linalg.norm(vector)
    if magnitude == 0:
        return vector
    return vector / magnitude


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for mismatched lengths or zero vectors."""
    left = np.asarray(a, dtype=float)
    right = np.asarray(b, dtype=float)
    if left.shape != right.shape or left.size == 0:
        return 0.0
    magnitude = np.linalg.norm(left) * np.linalg.norm(right)
    if magnitude == 0:
        return 0.0
    return float(np.dot(left, right) / magnitude)


def fingerprint_similarity(first: SourceFingerprint, second: SourceFingerprint) -> float:
    return cosine_similarity(first.signature_vector, second.signature_vector)


def detect_origin_system(column_names: Sequence[str]) -> Optional[str]:
    """Guess the legacy EHR vendor from column naming; None when nothing matches."""
    lowered = [str(name).lower() for name in column_names]
    for system, keywords in ORIGIN_SYSTEM_KEYWORDS.items():
        if any(keyword in name for name in lowered for keyword in keywords):
            return system
    return None


def build_fingerprint(
    source_kind,
    columns: Sequence[ColumnProfile],
    row_count: int,
    origin_system: Optional[str] = None,
    tenant_id: Optional[str] = None,
) -> SourceFingerprint:
    """
    Assemble a fingerprint from already-profiled columns.

    ``origin_system`` defaults to keyword detection over the column names.
    """
    kind = SourceKind(source_kind)
    columns = tuple(columns)
    struct_hash = structure_hash(columns)
    if origin_system is None:
        origin_system = detect_origin_system([c.original_name for c in columns])

    return SourceFingerprint(
        fingerprint_id=fingerprint_id(kind, struct_hash),
        source_kind=kind,
        origin_system=origin_system,
        columns=columns,
        structure_hash=struct_hash,
        signature_vector=tuple(float(x) for x in signature_vector(columns)),
        row_count=row_count,
        tenant_id=tenant_id,
    )


def records_to_columns(records: Sequence[Mapping]) -> Dict[str, list]:
    """Pivot row records into column lists; keys seen in any row become columns."""
    names: List[str] = []
    for record in records:
        for key in record:
            if key not in names:
                names.append(key)
    return {str(name): [record.get(name) for record in records] for name in names}


def fingerprint_from_records(
    source_kind,
    records: Sequence[Mapping],
    origin_system: Optional[str] = None,
    tenant_id: Optional[str] = None,
    sample_size: int = DEFAULT_SAMPLE_SIZE,
    max_workers: Optional[int] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> SourceFingerprint:
    """
    Profile row records and fingerprint them.

    Raises:
        AnalysisError: if there are no records or no columns
    """
    if not records:
        raise AnalysisError("No data provided for analysis")
    columns = records_to_columns(records)
    if not columns:
        raise AnalysisError("Source data has no columns")

    profiles = analyze_columns(columns, sample_size, max_workers, cancel_token)
    fingerprint = build_fingerprint(
        source_kind, profiles, len(records), origin_system, tenant_id
    )
    logger.info(
        f"Fingerprinted {fingerprint.source_kind.value} source: "
        f"{fingerprint.column_count} columns, {fingerprint.row_count} rows, "
        f"origin={fingerprint.origin_system or 'unknown'}"
    )
    return fingerprint


def fingerprint_from_dataframe(
    source_kind, frame: pd.DataFrame, **kwargs
) -> SourceFingerprint:
    """DataFrame variant of :func:`fingerprint_from_records`."""
    if frame.empty:
        raise AnalysisError("No data provided for analysis")
    frame = frame.astype(object).where(pd.notna(frame), None)
    return fingerprint_from_records(source_kind, frame.to_dict("records"), **kwargs)
