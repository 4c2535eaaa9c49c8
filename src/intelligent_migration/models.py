#!/usr/bin/env python3
"""
Data types shared across the migration engine.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

UNMAPPED = "UNMAPPED"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SourceKind(str, Enum):
    """Kind of legacy source a dataset was read from."""

    EXCEL = "EXCEL"
    CSV = "CSV"
    HL7 = "HL7"
    FHIR = "FHIR"
    DATABASE = "DATABASE"


class ExecutionMode(str, Enum):
    """How far a migration run goes: preview, validate, or write."""

    DRY_RUN = "DRY_RUN"
    VALIDATE_ONLY = "VALIDATE_ONLY"
    COMMIT = "COMMIT"


class TargetRef(NamedTuple):
    table: str
    column: str

    def __str__(self) -> str:
        return f"{self.table}.{self.column}"


@dataclass(frozen=True)
class ColumnProfile:
    """Statistical and pattern summary of one source column."""

    original_name: str
    normalized_name: str
    detected_patterns: Tuple[str, ...]
    dominant_pattern: str
    confidence: float
    sample_values: Tuple[str, ...]
    null_fraction: float
    unique_fraction: float
    average_length: float
    inferred_type: str
    sampled_count: int = 0


@dataclass(frozen=True)
class SourceFingerprint:
    """Structural identity of a whole source dataset."""

    fingerprint_id: str
    source_kind: SourceKind
    origin_system: Optional[str]
    columns: Tuple[ColumnProfile, ...]
    structure_hash: str
    signature_vector: Tuple[float, ...]
    row_count: int
    created_at: datetime = field(default_factory=utc_now)
    tenant_id: Optional[str] = None

    @property
    def column_count(self) -> int:
        return len(self.columns)

    def column(self, name: str) -> Optional[ColumnProfile]:
        """Look up a profile by original or normalized column name."""
        for profile in self.columns:
            if name in (profile.original_name, profile.normalized_name):
                return profile
        return None


@dataclass
class LearnedMapping:
    """Institutional memory for one source-column to target-field pairing."""

    source_column: str
    target_table: str
    target_column: str
    origin_system: Optional[str] = None
    tenant_id: Optional[str] = None
    transformation: Optional[str] = None
    source_patterns: List[str] = field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    confidence: float = 0.5
    last_used: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> Tuple[str, Optional[str], Optional[str], str, str]:
        return (
            self.source_column,
            self.origin_system,
            self.tenant_id,
            self.target_table,
            self.target_column,
        )

    @property
    def target(self) -> TargetRef:
        return TargetRef(self.target_table, self.target_column)


@dataclass(frozen=True)
class AlternativeMapping:
    target_table: str
    target_column: str
    confidence: float


@dataclass
class MappingSuggestion:
    """Ranked mapping decision for one source column."""

    source_column: str
    target_table: str
    target_column: str
    confidence: float
    reasons: List[str] = field(default_factory=list)
    transformation: Optional[str] = None
    alternatives: List[AlternativeMapping] = field(default_factory=list)
    method: str = "pattern"

    @property
    def is_mapped(self) -> bool:
        return self.target_table != UNMAPPED

    @property
    def target(self) -> TargetRef:
        return TargetRef(self.target_table, self.target_column)

    @classmethod
    def unmapped(cls, source_column: str, reasons: Optional[List[str]] = None):
        return cls(
            source_column=source_column,
            target_table=UNMAPPED,
            target_column=UNMAPPED,
            confidence=0.0,
            reasons=reasons or ["No candidate above threshold"],
            method="unmapped",
        )


@dataclass
class MigrationResult:
    """Field-level outcome of one mapping within one table during a run."""

    source_column: str
    target_table: str
    target_column: str
    transformation: Optional[str] = None
    records_attempted: int = 0
    records_succeeded: int = 0
    records_failed: int = 0
    error_types: List[str] = field(default_factory=list)
    user_accepted: bool = True
    corrected_to: Optional[TargetRef] = None

    @property
    def final_target(self) -> TargetRef:
        return self.corrected_to or TargetRef(self.target_table, self.target_column)

    def record_error(self, message: str) -> None:
        if message not in self.error_types:
            self.error_types.append(message)


@dataclass(frozen=True)
class RowError:
    row_number: int
    table: str
    source_column: str
    target_column: str
    message: str


@dataclass(frozen=True)
class BatchError:
    table: str
    first_row: int
    last_row: int
    message: str


@dataclass
class TableOutcome:
    table: str
    rows_attempted: int = 0
    rows_valid: int = 0
    rows_written: int = 0
    rows_rejected: int = 0
    batches_written: int = 0
    batches_failed: int = 0
    preview: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class MigrationReport:
    """Structured result of a migration run, returned even on partial failure."""

    batch_id: str
    mode: ExecutionMode
    total_rows: int
    tables: Dict[str, TableOutcome] = field(default_factory=dict)
    results: List[MigrationResult] = field(default_factory=list)
    row_errors: List[RowError] = field(default_factory=list)
    batch_errors: List[BatchError] = field(default_factory=list)
    cancelled: bool = False
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    @property
    def status(self) -> str:
        if self.cancelled:
            return "CANCELLED"
        if self.row_errors or self.batch_errors:
            return "COMPLETED_WITH_ERRORS"
        return "COMPLETED"

    @property
    def rows_written(self) -> int:
        return sum(outcome.rows_written for outcome in self.tables.values())

    def result_for(self, source_column: str, table: Optional[str] = None):
        for result in self.results:
            if result.source_column == source_column and (
                table is None or result.target_table == table
            ):
                return result
        return None
