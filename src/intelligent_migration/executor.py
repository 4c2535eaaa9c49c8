#!/usr/bin/env python3
"""
Migration execution.

Applies accepted mapping suggestions to source rows: groups mappings by
target table, transforms and validates every value, writes valid rows in
fixed-size batches and reports field-level outcomes per mapping. Tables
are processed concurrently; rows within a table keep source order.

Only COMMIT runs write to the target store and feed learning back into
the mapping repository.
"""

import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from .concurrency import CancellationToken
from .errors import OperationCancelled, TransformationError
from .logging_config import get_logger
from .models import (
    BatchError,
    ExecutionMode,
    MappingSuggestion,
    MigrationReport,
    MigrationResult,
    RowError,
    SourceFingerprint,
    TableOutcome,
    TargetRef,
    utc_now,
)
from .stores import TargetStore
from .transforms import apply_transformation, infer_transformation
from .validation import validate_value

logger = get_logger(__name__)

MIGRATION_STATUS_IMPORTED = "IMPORTED"


@dataclass
class _FieldPlan:
    source_column: str
    target: TargetRef
    transformation: Optional[str]
    result: MigrationResult


@dataclass
class _TableRun:
    outcome: TableOutcome
    row_errors: List[RowError] = field(default_factory=list)
    batch_errors: List[BatchError] = field(default_factory=list)
    cancelled: bool = False


def source_row_id(row: Mapping, row_number: int) -> str:
    """Stable identifier of a source row: its own id column, else its position."""
    for key in ("id", "ID", "employee_id", "source_id"):
        value = row.get(key)
        if value not in (None, ""):
            return str(value)
    return str(row_number)


class MigrationExecutor:
    """Runs a migration for one analysed source."""

    def __init__(
        self,
        target_store: TargetStore,
        intelligence=None,
        batch_size: int = 100,
        max_table_workers: int = 4,
        preview_rows: int = 5,
        background_learning: bool = False,
        tenant_id: Optional[str] = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.target_store = target_store
        self.intelligence = intelligence
        self.batch_size = batch_size
        self.max_table_workers = max(1, max_table_workers)
        self.preview_rows = preview_rows
        self.background_learning = background_learning
        self.tenant_id = tenant_id
        self._learning_pool: Optional[ThreadPoolExecutor] = None
        self.pending_learning: List[Future] = []
        self._pending_lock = threading.Lock()

    @classmethod
    def from_config(cls, config, target_store, intelligence=None):
        return cls(
            target_store,
            intelligence=intelligence,
            batch_size=config.executor.batch_size,
            max_table_workers=config.executor.max_table_workers,
            preview_rows=config.executor.preview_rows,
            background_learning=config.learning.background,
            tenant_id=config.tenant_id,
        )

    def execute(
        self,
        fingerprint: SourceFingerprint,
        rows: Sequence[Mapping],
        suggestions: Sequence[MappingSuggestion],
        mode=ExecutionMode.VALIDATE_ONLY,
        corrections: Optional[Mapping[str, TargetRef]] = None,
        batch_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> MigrationReport:
        """
        Migrate ``rows`` using ``suggestions``.

        Args:
            fingerprint: Fingerprint of the source the rows came from
            rows: Source row records keyed by original column name
            suggestions: One suggestion per source column; unmapped ones are skipped
            mode: DRY_RUN, VALIDATE_ONLY or COMMIT
            corrections: Source column -> target chosen by a person instead of the suggestion
            batch_id: Identifier tagged onto every written row (generated when omitted)
            cancel_token: Checked before every batch

        Returns:
            MigrationReport, also when some rows or batches failed

        Raises:
            ValueError: if a correction names a column with no suggestion
            OperationCancelled: when cancelled; ``partial`` holds the report so far
        """
        mode = ExecutionMode(mode)
        batch_id = batch_id or uuid.uuid4().hex
        plans = self._plan(fingerprint, suggestions, corrections or {})

        report = MigrationReport(batch_id=batch_id, mode=mode, total_rows=len(rows))
        logger.info(
            f"Starting {mode.value} migration {batch_id}: {len(rows)} rows, "
            f"{sum(len(p) for p in plans.values())} mapped columns, {len(plans)} tables"
        )

        runs: Dict[str, _TableRun] = {}
        if plans:
            workers = min(self.max_table_workers, len(plans))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="table") as pool:
                futures = {
                    table: pool.submit(
                        self._run_table, table, fields, rows, mode, batch_id, fingerprint, cancel_token
                    )
                    for table, fields in plans.items()
                }
                runs = {table: future.result() for table, future in futures.items()}

        for table, fields in plans.items():
            run = runs[table]
            report.tables[table] = run.outcome
            report.row_errors.extend(run.row_errors)
            report.batch_errors.extend(run.batch_errors)
            report.cancelled = report.cancelled or run.cancelled
            for plan in fields:
                plan.result.records_succeeded = (
                    plan.result.records_attempted - plan.result.records_failed
                )
                report.results.append(plan.result)
        report.finished_at = utc_now()

        logger.info(
            f"Migration {batch_id} {report.status}: {report.rows_written} rows written, "
            f"{len(report.row_errors)} row errors, {len(report.batch_errors)} batch errors"
        )

        if report.cancelled:
            raise OperationCancelled(f"Migration {batch_id} cancelled", partial=report)

        if mode is ExecutionMode.COMMIT and self.intelligence is not None:
            self._learn(fingerprint, report.results)
        return report

    def _plan(
        self,
        fingerprint: SourceFingerprint,
        suggestions: Sequence[MappingSuggestion],
        corrections: Mapping[str, TargetRef],
    ) -> Dict[str, List[_FieldPlan]]:
        known = {s.source_column for s in suggestions}
        unknown = [column for column in corrections if column not in known]
        if unknown:
            raise ValueError(f"Corrections for unknown source columns: {', '.join(unknown)}")

        plans: Dict[str, List[_FieldPlan]] = {}
        for suggestion in suggestions:
            correction = corrections.get(suggestion.source_column)
            if correction is not None:
                correction = TargetRef(*correction)
            if not suggestion.is_mapped and correction is None:
                continue

            target = correction or suggestion.target
            corrected = correction is not None and correction != suggestion.target
            transformation = suggestion.transformation
            if corrected:
                profile = fingerprint.column(suggestion.source_column)
                pattern = profile.dominant_pattern if profile else ""
                transformation = infer_transformation(pattern, target.column)

            if suggestion.is_mapped:
                result = MigrationResult(
                    source_column=suggestion.source_column,
                    target_table=suggestion.target_table,
                    target_column=suggestion.target_column,
                    transformation=transformation,
                    user_accepted=not corrected,
                    corrected_to=target if corrected else None,
                )
            else:
                # A person mapped a column the engine left unmapped.
                result = MigrationResult(
                    source_column=suggestion.source_column,
                    target_table=target.table,
                    target_column=target.column,
                    transformation=transformation,
                )
            plans.setdefault(target.table, []).append(
                _FieldPlan(suggestion.source_column, target, transformation, result)
            )
        return plans

    def _run_table(
        self,
        table: str,
        fields: List[_FieldPlan],
        rows: Sequence[Mapping],
        mode: ExecutionMode,
        batch_id: str,
        fingerprint: SourceFingerprint,
        cancel_token: Optional[CancellationToken],
    ) -> _TableRun:
        run = _TableRun(outcome=TableOutcome(table=table, rows_attempted=len(rows)))
        valid: List[Tuple[int, Dict]] = []

        for index, row in enumerate(rows):
            row_number = index + 1
            record: Dict = {}
            row_ok = True
            for plan in fields:
                plan.result.records_attempted += 1
                try:
                    value = apply_transformation(row.get(plan.source_column), plan.transformation)
                    error = validate_value(value, plan.target.column)
                except TransformationError as e:
                    error = str(e)
                if error:
                    plan.result.records_failed += 1
                    plan.result.record_error(error)
                    run.row_errors.append(
                        RowError(row_number, table, plan.source_column, plan.target.column, error)
                    )
                    row_ok = False
                else:
                    record[plan.target.column] = value
            if row_ok:
                valid.append((row_number, self._tag(record, row, row_number, batch_id, fingerprint)))

        run.outcome.rows_valid = len(valid)
        run.outcome.rows_rejected = len(rows) - len(valid)

        if mode is ExecutionMode.DRY_RUN:
            run.outcome.preview = [record for _, record in valid[: self.preview_rows]]
        if mode is not ExecutionMode.COMMIT:
            return run

        for start in range(0, len(valid), self.batch_size):
            if cancel_token is not None and cancel_token.cancelled:
                logger.warning(f"{table}: cancelled after {run.outcome.rows_written} rows")
                run.cancelled = True
                break
            batch = valid[start : start + self.batch_size]
            first_row, last_row = batch[0][0], batch[-1][0]
            try:
                self.target_store.insert_rows(table, [record for _, record in batch])
            except Exception as e:
                message = f"Batch write failed: {e}"
                logger.error(f"{table}: rows {first_row}-{last_row}: {message}")
                run.batch_errors.append(BatchError(table, first_row, last_row, message))
                run.outcome.batches_failed += 1
                for plan in fields:
                    plan.result.records_failed += len(batch)
                    plan.result.record_error(message)
                continue
            run.outcome.rows_written += len(batch)
            run.outcome.batches_written += 1
            logger.debug(f"{table}: wrote rows {first_row}-{last_row}")
        return run

    def _tag(
        self,
        record: Dict,
        row: Mapping,
        row_number: int,
        batch_id: str,
        fingerprint: SourceFingerprint,
    ) -> Dict:
        record.setdefault("source_system", fingerprint.origin_system or fingerprint.source_kind.value)
        record.setdefault("source_id", source_row_id(row, row_number))
        record["migration_batch_id"] = batch_id
        record["migration_status"] = MIGRATION_STATUS_IMPORTED
        if self.tenant_id is not None:
            record["organization_id"] = self.tenant_id
        return record

    def _learn(self, fingerprint: SourceFingerprint, results: List[MigrationResult]) -> None:
        if not self.background_learning:
            self.intelligence.learn_from_results(fingerprint, results)
            return
        if self._learning_pool is None:
            self._learning_pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="learning")
        future = self._learning_pool.submit(self.intelligence.learn_from_results, fingerprint, results)
        # Registered before the callback, which may run immediately.
        with self._pending_lock:
            self.pending_learning.append(future)
        future.add_done_callback(self._learning_done)

    def _learning_done(self, future: Future) -> None:
        with self._pending_lock:
            if future in self.pending_learning:
                self.pending_learning.remove(future)
        error = future.exception()
        if error is not None:
            logger.warning(f"Background learning failed: {error}")

    def wait_for_learning(self, timeout: Optional[float] = None) -> None:
        """Block until background learning submitted so far has finished."""
        with self._pending_lock:
            pending = list(self.pending_learning)
        for future in pending:
            future.result(timeout=timeout)
        with self._pending_lock:
            self.pending_learning = [f for f in self.pending_learning if f not in pending]

    def close(self) -> None:
        """Finish queued learning and release the learning worker."""
        if self._learning_pool is not None:
            self._learning_pool.shutdown(wait=True)
            self._learning_pool = None
