#!/usr/bin/env python3
"""
Storage seams: learned-mapping memory and migration target.

``MappingRepository`` is the only state shared between migration runs.
Implementations must make each method atomic; the in-memory version
holds a lock for the whole read-modify-write. ``YamlMappingRepository``
persists the same data to a YAML file after every change.

``TargetStore`` receives batches of finished rows for one table.
"""

import os
import threading
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

import pandas as pd
import yaml

from . import learning
from .errors import StoreError
from .logging_config import get_logger
from .models import LearnedMapping, SourceFingerprint, SourceKind
from .schema import ValidationError, validate_learned_memory

logger = get_logger(__name__)


class MappingRepository(Protocol):
    def get_best_mapping(
        self,
        source_column: str,
        origin_system: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> Optional[LearnedMapping]: ...

    def upsert_mapping(
        self,
        source_column: str,
        target_table: str,
        target_column: str,
        successes: int,
        failures: int,
        accepted: bool,
        origin_system: Optional[str] = None,
        tenant_id: Optional[str] = None,
        transformation: Optional[str] = None,
        source_patterns: Sequence[str] = (),
    ) -> LearnedMapping: ...

    def decrease_confidence(
        self,
        source_column: str,
        target_table: str,
        target_column: str,
        tenant_id: Optional[str] = None,
    ) -> int: ...

    def reinforce_mapping(
        self,
        source_column: str,
        target_table: str,
        target_column: str,
        origin_system: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> LearnedMapping: ...

    def store_fingerprint(self, fingerprint: SourceFingerprint) -> None: ...

    def recent_fingerprints(
        self,
        limit: int,
        tenant_id: Optional[str] = None,
        exclude_id: Optional[str] = None,
    ) -> List[SourceFingerprint]: ...


class TargetStore(Protocol):
    def insert_rows(self, table: str, rows: List[Dict]) -> None: ...


class InMemoryMappingRepository:
    """Thread-safe in-process repository."""

    def __init__(
        self,
        acceptance_boost: float = learning.ACCEPTANCE_BOOST,
        correction_penalty: float = learning.CORRECTION_PENALTY,
    ):
        self.acceptance_boost = acceptance_boost
        self.correction_penalty = correction_penalty
        self._lock = threading.RLock()
        self._mappings: Dict[Tuple, LearnedMapping] = {}
        self._fingerprints: Dict[Tuple[Optional[str], str], SourceFingerprint] = {}

    def get_best_mapping(self, source_column, origin_system=None, tenant_id=None):
        """
        Highest-confidence mapping for a normalized column, preferring
        entries scoped to the same tenant, then to the same origin system.

        Entries of other tenants are never returned; without a tenant only
        global entries are considered.
        """
        with self._lock:
            candidates = [
                m
                for m in self._mappings.values()
                if m.source_column == source_column
                and m.tenant_id in (tenant_id, None)
                and (origin_system is None or m.origin_system in (origin_system, None))
            ]
            if not candidates:
                return None
            best = max(
                candidates,
                key=lambda m: (
                    tenant_id is not None and m.tenant_id == tenant_id,
                    origin_system is not None and m.origin_system == origin_system,
                    m.confidence,
                ),
            )
            return replace(best)

    def upsert_mapping(
        self,
        source_column,
        target_table,
        target_column,
        successes,
        failures,
        accepted,
        origin_system=None,
        tenant_id=None,
        transformation=None,
        source_patterns=(),
    ):
        key = (source_column, origin_system, tenant_id, target_table, target_column)
        with self._lock:
            existing = self._mappings.get(key)
            if existing is None:
                mapping = LearnedMapping(
                    source_column=source_column,
                    target_table=target_table,
                    target_column=target_column,
                    origin_system=origin_system,
                    tenant_id=tenant_id,
                    transformation=transformation,
                    source_patterns=list(source_patterns),
                    success_count=successes,
                    failure_count=failures,
                    confidence=learning.initial_confidence(
                        successes, failures, accepted, self.acceptance_boost
                    ),
                )
            else:
                mapping = replace(
                    existing,
                    confidence=learning.updated_confidence(
                        existing.confidence,
                        existing.success_count,
                        existing.failure_count,
                        successes,
                        failures,
                        accepted,
                        self.acceptance_boost,
                    ),
                    success_count=existing.success_count + successes,
                    failure_count=existing.failure_count + failures,
                    transformation=transformation or existing.transformation,
                    source_patterns=list(source_patterns) or existing.source_patterns,
                    last_used=datetime.now(timezone.utc),
                )
            self._save_mappings({key: mapping})
            return replace(mapping)

    def decrease_confidence(self, source_column, target_table, target_column, tenant_id=None):
        """Penalize every origin variant of the mapping within the tenant scope."""
        with self._lock:
            updates = {}
            for key, mapping in self._mappings.items():
                if (
                    mapping.source_column == source_column
                    and mapping.target_table == target_table
                    and mapping.target_column == target_column
                    and mapping.tenant_id == tenant_id
                ):
                    updates[key] = replace(
                        mapping,
                        confidence=learning.penalized_confidence(
                            mapping.confidence, self.correction_penalty
                        ),
                        failure_count=mapping.failure_count + 1,
                        last_used=datetime.now(timezone.utc),
                    )
            if updates:
                self._save_mappings(updates)
            return len(updates)

    def reinforce_mapping(
        self, source_column, target_table, target_column, origin_system=None, tenant_id=None
    ):
        key = (source_column, origin_system, tenant_id, target_table, target_column)
        with self._lock:
            existing = self._mappings.get(key)
            if existing is None:
                mapping = LearnedMapping(
                    source_column=source_column,
                    target_table=target_table,
                    target_column=target_column,
                    origin_system=origin_system,
                    tenant_id=tenant_id,
                    success_count=1,
                    confidence=learning.corrected_target_confidence(),
                )
            else:
                mapping = replace(
                    existing,
                    confidence=learning.corrected_target_confidence(
                        existing.confidence, self.correction_penalty
                    ),
                    success_count=existing.success_count + 1,
                    last_used=datetime.now(timezone.utc),
                )
            self._save_mappings({key: mapping})
            return replace(mapping)

    def store_fingerprint(self, fingerprint):
        with self._lock:
            key = (fingerprint.tenant_id, fingerprint.fingerprint_id)
            previous = self._fingerprints.get(key)
            self._fingerprints[key] = fingerprint
            try:
                self._changed()
            except Exception:
                _restore(self._fingerprints, {key: previous})
                raise

    def recent_fingerprints(self, limit, tenant_id=None, exclude_id=None):
        """Most recent fingerprints visible to the tenant, newest first."""
        with self._lock:
            visible = [
                fp
                for (owner, fp_id), fp in self._fingerprints.items()
                if owner in (tenant_id, None) and fp_id != exclude_id
            ]
        visible.sort(key=lambda fp: fp.created_at, reverse=True)
        return visible[:limit]

    def all_mappings(self) -> List[LearnedMapping]:
        with self._lock:
            return [replace(m) for m in self._mappings.values()]

    def _save_mappings(self, updates: Dict[Tuple, LearnedMapping]) -> None:
        """Apply updates and persist them; memory is rolled back if persisting fails."""
        previous = {key: self._mappings.get(key) for key in updates}
        self._mappings.update(updates)
        try:
            self._changed()
        except Exception:
            _restore(self._mappings, previous)
            raise

    def _changed(self) -> None:
        """Hook for persistent subclasses; called with the lock held."""
        pass


def _restore(entries: Dict, previous: Dict) -> None:
    for key, value in previous.items():
        if value is None:
            entries.pop(key, None)
        else:
            entries[key] = value


class YamlMappingRepository(InMemoryMappingRepository):
    """
    Repository persisted to a YAML file (learned_mappings.yaml).

    Fingerprints are stored as summaries: identity, vector and column
    names. Column profiles are not persisted.
    """

    def __init__(self, path: Path, **kwargs):
        super().__init__(**kwargs)
        self.path = Path(path)
        if self.path.exists():
            self._load()

    def _load(self) -> None:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            memory = validate_learned_memory(data)
        except (OSError, yaml.YAMLError, ValidationError) as e:
            raise StoreError(f"Could not load learned mappings from {self.path}: {e}") from e

        for record in memory.mappings:
            fields = record.model_dump()
            if fields["last_used"] is None:
                fields.pop("last_used")
            mapping = LearnedMapping(**fields)
            self._mappings[mapping.key] = mapping

        for record in memory.fingerprints:
            fingerprint = SourceFingerprint(
                fingerprint_id=record.fingerprint_id,
                source_kind=SourceKind(record.source_kind),
                origin_system=record.origin_system,
                columns=(),
                structure_hash=record.structure_hash,
                signature_vector=tuple(record.signature_vector),
                row_count=record.row_count,
                created_at=record.created_at or datetime.now(timezone.utc),
                tenant_id=record.tenant_id,
            )
            self._fingerprints[(fingerprint.tenant_id, fingerprint.fingerprint_id)] = fingerprint

        logger.info(
            f"Loaded {len(self._mappings)} learned mappings and "
            f"{len(self._fingerprints)} fingerprints from {self.path}"
        )

    def _changed(self) -> None:
        data = {
            "mappings": [
                {
                    "source_column": m.source_column,
                    "target_table": m.target_table,
                    "target_column": m.target_column,
                    "origin_system": m.origin_system,
                    "tenant_id": m.tenant_id,
                    "transformation": m.transformation,
                    "source_patterns": list(m.source_patterns),
                    "success_count": m.success_count,
                    "failure_count": m.failure_count,
                    "confidence": round(m.confidence, 6),
                    "last_used": m.last_used.isoformat(),
                }
                for m in self._mappings.values()
            ],
            "fingerprints": [
                {
                    "fingerprint_id": fp.fingerprint_id,
                    "source_kind": fp.source_kind.value,
                    "origin_system": fp.origin_system,
                    "tenant_id": fp.tenant_id,
                    "structure_hash": fp.structure_hash,
                    "signature_vector": [float(x) for x in fp.signature_vector],
                    "column_names": [c.original_name for c in fp.columns],
                    "row_count": fp.row_count,
                    "created_at": fp.created_at.isoformat(),
                }
                for fp in self._fingerprints.values()
            ],
        }
        # A failed write leaves the previous file in place.
        staging = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(staging, "w", encoding="utf-8") as f:
                yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
            os.replace(staging, self.path)
        except OSError as e:
            raise StoreError(f"Could not write learned mappings to {self.path}: {e}") from e


class InMemoryTargetStore:
    """Collects written rows per table; useful for previews and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self.tables: Dict[str, List[Dict]] = {}

    def insert_rows(self, table: str, rows: List[Dict]) -> None:
        with self._lock:
            self.tables.setdefault(table, []).extend(dict(row) for row in rows)

    def rows(self, table: str) -> List[Dict]:
        with self._lock:
            return list(self.tables.get(table, []))


class CsvTargetStore:
    """Appends each batch to ``<output_dir>/<table>.csv``."""

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, table: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(table, threading.Lock())

    def insert_rows(self, table: str, rows: List[Dict]) -> None:
        if not rows:
            return
        path = self.output_dir / f"{table}.csv"
        with self._lock_for(table):
            self.output_dir.mkdir(parents=True, exist_ok=True)
            frame = pd.DataFrame(rows)
            write_header = not path.exists()
            if not write_header:
                existing_columns = pd.read_csv(path, nrows=0).columns.tolist()
                frame = frame.reindex(columns=existing_columns)
            frame.to_csv(path, mode="a", header=write_header, index=False, encoding="utf-8")
