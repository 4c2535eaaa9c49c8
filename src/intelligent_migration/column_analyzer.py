#!/usr/bin/env python3
"""
Column profiling for legacy source data.

Turns the raw values of one column into a ColumnProfile: detected
patterns, the dominant pattern with its confidence, null and uniqueness
fractions, sample values and a coarse inferred type. Profiling many
columns fans out over a thread pool.
"""

from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from .concurrency import CancellationToken, default_worker_count
from .logging_config import get_logger
from .models import ColumnProfile
from .patterns import (
    DETECTION_PRIORITY,
    GENERIC_TEXT_TAGS,
    SPECIFICITY_ORDER,
    TEXT_LONG,
    TEXT_SHORT,
    UNKNOWN,
    detect_value_patterns,
    normalize_column_name,
)

logger = get_logger(__name__)

DEFAULT_SAMPLE_SIZE = 100
SAMPLE_VALUES_KEPT = 5
LONG_TEXT_THRESHOLD = 50

_TYPE_BY_PATTERN = {
    "ID_NUMERIC": "number",
    "CURRENCY": "number",
    "PERCENTAGE": "number",
    "BOOLEAN": "boolean",
    "DATE": "date",
    "DATE_ISO": "date",
}

_SPECIFICITY_RANK = {tag: rank for rank, tag in enumerate(SPECIFICITY_ORDER)}


def _present_values(series: pd.Series) -> pd.Series:
    """Non-null, non-blank values as stripped strings."""
    present = series[pd.notna(series)].astype(str).str.strip()
    return present[present != ""]


def _dominant_pattern(tally: Counter, sampled: Sequence[str]) -> str:
    specific = {tag: count for tag, count in tally.items() if tag not in GENERIC_TEXT_TAGS}
    if specific:
        return min(
            specific,
            key=lambda tag: (-specific[tag], _SPECIFICITY_RANK.get(tag, len(_SPECIFICITY_RANK))),
        )
    if not sampled:
        return UNKNOWN
    average = sum(len(value) for value in sampled) / len(sampled)
    return TEXT_LONG if average > LONG_TEXT_THRESHOLD else TEXT_SHORT


def analyze_column(
    name: str, values: Iterable, sample_size: int = DEFAULT_SAMPLE_SIZE
) -> ColumnProfile:
    """
    Profile one source column.

    Args:
        name: Column header as found in the source
        values: All values of the column (None / NaN / blank count as null)
        sample_size: Number of leading non-null values run through pattern detection

    Returns:
        Immutable ColumnProfile
    """
    series = pd.Series(list(values), dtype=object)
    total = len(series)
    present = _present_values(series)
    sampled: List[str] = present.head(sample_size).tolist()

    tally: Counter = Counter()
    for value in sampled:
        tally.update(tag for tag in detect_value_patterns(value) if tag != UNKNOWN)

    dominant = _dominant_pattern(tally, sampled)
    confidence = tally[dominant] / len(sampled) if sampled and dominant in tally else 0.0
    detected = tuple(tag for tag in tally if tally[tag] > 0)

    null_fraction = (total - len(present)) / total if total else 1.0
    unique_fraction = present.nunique() / len(present) if len(present) else 0.0
    average_length = float(present.str.len().mean()) if len(present) else 0.0

    return ColumnProfile(
        original_name=str(name),
        normalized_name=normalize_column_name(name),
        detected_patterns=_ordered(detected),
        dominant_pattern=dominant,
        confidence=min(1.0, confidence),
        sample_values=tuple(sampled[:SAMPLE_VALUES_KEPT]),
        null_fraction=null_fraction,
        unique_fraction=unique_fraction,
        average_length=average_length,
        inferred_type=_TYPE_BY_PATTERN.get(dominant, "string"),
        sampled_count=len(sampled),
    )


def _ordered(tags: Sequence[str]) -> tuple:
    return tuple(tag for tag in DETECTION_PRIORITY if tag in tags)


def analyze_columns(
    columns: Mapping[str, Sequence],
    sample_size: int = DEFAULT_SAMPLE_SIZE,
    max_workers: Optional[int] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> List[ColumnProfile]:
    """
    Profile every column, in parallel, preserving column order.

    Raises:
        OperationCancelled: if ``cancel_token`` fires before all columns finish
    """
    names = list(columns)
    if not names:
        return []

    def run(name: str) -> ColumnProfile:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled("column analysis")
        return analyze_column(name, columns[name], sample_size)

    workers = min(default_worker_count(max_workers), len(names))
    logger.debug(f"Profiling {len(names)} columns with {workers} workers")
    with ThreadPoolExecutor(max_workers=workers) as pool:
        profiles = list(pool.map(run, names))
    return profiles
