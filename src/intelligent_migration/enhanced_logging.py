#!/usr/bin/env python3
"""
Run-event logging for source analysis and migration runs.

Provides Rich-based summaries with TTY detection, JSONL file output and
configurable stdout formats (human, jsonl, none).
"""

import json
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from .models import MappingSuggestion, MigrationReport


class MigrationEventLogger:
    """Event logger with Rich output, TTY detection, and JSONL file support."""

    def __init__(
        self,
        stdout_format: Optional[str] = None,
        log_file: Optional[Path] = None,
        log_dir: Optional[Path] = None,
        console: Optional[Console] = None,
        max_preview: int = 10,
    ):
        """Initialize the event logger.

        Args:
            stdout_format: "human", "jsonl" or "none"; detected from the TTY when None
            log_file: Explicit JSONL file to append events to
            log_dir: Directory for a timestamped JSONL file when ``log_file`` is not given
            console: Rich console for human output
            max_preview: Rows shown in human preview tables
        """
        self.start_time = time.time()
        self.console = console or Console()
        self.max_preview = max_preview

        if stdout_format is None:
            stdout_format = "human" if sys.stdout.isatty() else "jsonl"
        if stdout_format not in ("human", "jsonl", "none"):
            raise ValueError(f"Unknown stdout format: {stdout_format}")
        self.stdout_format = stdout_format

        self.log_file_path: Optional[Path] = None
        if log_file is not None:
            self.log_file_path = Path(log_file)
        elif log_dir is not None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M")
            self.log_file_path = Path(log_dir) / f"migration_{timestamp}.jsonl"

    def get_duration_ms(self) -> int:
        """Get elapsed time in milliseconds since logger creation."""
        return int((time.time() - self.start_time) * 1000)

    def write_jsonl_to_file(self, event: Dict[str, Any]) -> None:
        """Write JSONL event to log file."""
        if self.log_file_path is None:
            return
        self.log_file_path.parent.mkdir(parents=True, exist_ok=True)
        jsonl_line = json.dumps(event, ensure_ascii=False, separators=(",", ":"), default=str)
        with open(self.log_file_path, "a", encoding="utf-8") as f:
            f.write(jsonl_line + "\n")

    def emit(self, event: Dict[str, Any], human_renderer=None) -> None:
        event.setdefault("timestamp", datetime.now().isoformat())
        event.setdefault("duration_ms", self.get_duration_ms())
        self.write_jsonl_to_file(event)

        if self.stdout_format == "jsonl":
            print(json.dumps(event, ensure_ascii=False, separators=(",", ":"), default=str))
        elif self.stdout_format == "human" and human_renderer is not None:
            human_renderer(event)

    # Analysis

    def log_analysis(self, analysis) -> Dict[str, Any]:
        """Log a SourceAnalysis; returns the emitted event."""
        fingerprint = analysis.fingerprint
        suggestions = analysis.suggestions
        event = {
            "step": "analyze",
            "fingerprint_id": fingerprint.fingerprint_id,
            "source_kind": fingerprint.source_kind.value,
            "origin_system": fingerprint.origin_system,
            "rows": fingerprint.row_count,
            "columns": fingerprint.column_count,
            "mapped": sum(1 for s in suggestions if s.is_mapped),
            "unmapped": sum(1 for s in suggestions if not s.is_mapped),
            "estimated_accuracy": round(analysis.estimated_accuracy, 4),
            "similar_sources": [
                {"fingerprint_id": s.fingerprint.fingerprint_id, "similarity": round(s.similarity, 4)}
                for s in analysis.similar_sources
            ],
            "mappings": [self._suggestion_row(s) for s in suggestions],
        }
        self.emit(event, lambda e: self._render_analysis(e, suggestions))
        return event

    @staticmethod
    def _suggestion_row(suggestion: MappingSuggestion) -> Dict[str, Any]:
        return {
            "source_column": suggestion.source_column,
            "target": f"{suggestion.target_table}.{suggestion.target_column}"
            if suggestion.is_mapped
            else None,
            "confidence": round(suggestion.confidence, 4),
            "method": suggestion.method,
            "transformation": suggestion.transformation,
        }

    def _render_analysis(self, event: Dict[str, Any], suggestions: List[MappingSuggestion]) -> None:
        check_color = "yellow" if event["unmapped"] else "green"
        check_mark = "⚠" if event["unmapped"] else "✓"
        self.console.print(
            f"[{check_color}]{check_mark}[/{check_color}] analyze  {event['source_kind']}"
            f"  origin={event['origin_system'] or 'unknown'}  rows={event['rows']}"
            f"  mapped={event['mapped']}  unmapped={event['unmapped']}"
        )
        self.console.print(f"  accuracy: {event['estimated_accuracy']:.0%}")
        self.console.print(f"  time: {event['duration_ms']}ms")

        table = Table(title="Mappings (sample)")
        table.add_column("source")
        table.add_column("target")
        table.add_column("confidence", justify="right")
        table.add_column("method", style="dim")
        table.add_column("transform")
        for suggestion in suggestions[: self.max_preview]:
            table.add_row(
                suggestion.source_column,
                f"{suggestion.target_table}.{suggestion.target_column}"
                if suggestion.is_mapped
                else "[red]UNMAPPED[/red]",
                f"{suggestion.confidence:.2f}",
                suggestion.method,
                suggestion.transformation or "",
            )
        self.console.print(table)

    # Migration

    def log_migration(self, report: MigrationReport) -> Dict[str, Any]:
        """Log a MigrationReport; returns the emitted event."""
        event = {
            "step": "migrate",
            "batch_id": report.batch_id,
            "mode": report.mode.value,
            "status": report.status,
            "rows_in": report.total_rows,
            "rows_out": report.rows_written,
            "tables": {
                name: {
                    "valid": outcome.rows_valid,
                    "written": outcome.rows_written,
                    "rejected": outcome.rows_rejected,
                    "batches_failed": outcome.batches_failed,
                }
                for name, outcome in report.tables.items()
            },
            "results": [
                {
                    "source_column": r.source_column,
                    "target": f"{r.final_target.table}.{r.final_target.column}",
                    "attempted": r.records_attempted,
                    "succeeded": r.records_succeeded,
                    "failed": r.records_failed,
                    "errors": list(r.error_types),
                }
                for r in report.results
            ],
            "row_errors": len(report.row_errors),
            "batch_errors": [
                {"table": b.table, "rows": f"{b.first_row}-{b.last_row}", "message": b.message}
                for b in report.batch_errors
            ],
        }
        self.emit(event, lambda e: self._render_migration(e, report))
        return event

    def _render_migration(self, event: Dict[str, Any], report: MigrationReport) -> None:
        has_errors = event["row_errors"] or event["batch_errors"]
        check_color = "yellow" if has_errors else "green"
        check_mark = "⚠" if has_errors else "✓"
        self.console.print(
            f"[{check_color}]{check_mark}[/{check_color}] migrate  {event['mode']}"
            f"  in={event['rows_in']}  out={event['rows_out']}  status={event['status']}"
        )
        self.console.print(f"  batch: {event['batch_id']}")
        self.console.print(f"  time: {event['duration_ms']}ms")

        table = Table(title="Results")
        table.add_column("source")
        table.add_column("target")
        table.add_column("ok", justify="right")
        table.add_column("failed", justify="right")
        table.add_column("errors")
        for result in report.results[: self.max_preview]:
            table.add_row(
                result.source_column,
                str(result.final_target),
                str(result.records_succeeded),
                str(result.records_failed),
                "; ".join(result.error_types[:2]),
            )
        self.console.print(table)
