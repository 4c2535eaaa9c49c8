#!/usr/bin/env python3
"""
End-to-end migration service.

Wires configuration, catalog, repository, assist, executor and event
logging together:

    analyze_source  -> fingerprint + suggestions + similar past sources
    execute_migration -> MigrationReport (and learning on COMMIT)
    record_correction -> immediate learning from a person's fix
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

import pandas as pd

from .concurrency import CancellationToken
from .config_loader import Config, load_config
from .enhanced_logging import MigrationEventLogger
from .errors import AnalysisError
from .executor import MigrationExecutor
from .fingerprint import fingerprint_from_records
from .intelligence import MappingIntelligence, SimilarSource
from .logging_config import get_logger
from .models import (
    ExecutionMode,
    MappingSuggestion,
    MigrationReport,
    SourceFingerprint,
    TargetRef,
)
from .parsers import read_tabular_source
from .stores import InMemoryMappingRepository, InMemoryTargetStore, MappingRepository, TargetStore

logger = get_logger(__name__)

MAX_ESTIMATED_ACCURACY = 0.99
SIMILARITY_ACCURACY_WEIGHT = 0.1

SourceData = Union[Sequence[Mapping], pd.DataFrame]


@dataclass
class SourceAnalysis:
    fingerprint: SourceFingerprint
    records: List[Dict]
    suggestions: List[MappingSuggestion]
    similar_sources: List[SimilarSource] = field(default_factory=list)
    estimated_accuracy: float = 0.0

    def suggestion_for(self, source_column: str) -> Optional[MappingSuggestion]:
        for suggestion in self.suggestions:
            if suggestion.source_column == source_column:
                return suggestion
        return None


def estimate_accuracy(
    suggestions: Sequence[MappingSuggestion], similar_sources: Sequence[SimilarSource]
) -> float:
    """Mean suggestion confidence, nudged up by the closest known source."""
    if not suggestions:
        return 0.0
    average = sum(s.confidence for s in suggestions) / len(suggestions)
    top_similarity = similar_sources[0].similarity if similar_sources else 0.0
    return min(average + top_similarity * SIMILARITY_ACCURACY_WEIGHT, MAX_ESTIMATED_ACCURACY)


class IntelligentMigrationService:
    """Facade over analysis, execution and learning for one tenant."""

    def __init__(
        self,
        config: Optional[Config] = None,
        repository: Optional[MappingRepository] = None,
        target_store: Optional[TargetStore] = None,
        assist_scorer=None,
        event_logger: Optional[MigrationEventLogger] = None,
        intelligence: Optional[MappingIntelligence] = None,
    ):
        self.config = config or load_config()
        self.repository = repository or InMemoryMappingRepository(
            acceptance_boost=self.config.learning.acceptance_boost,
            correction_penalty=self.config.learning.correction_penalty,
        )
        self.target_store = target_store or InMemoryTargetStore()
        self.intelligence = intelligence or MappingIntelligence.from_config(
            self.config, self.repository, assist_scorer
        )
        self.executor = MigrationExecutor.from_config(self.config, self.target_store, self.intelligence)
        self.event_logger = event_logger

    def analyze_source(
        self,
        source_kind,
        data: SourceData,
        origin_system: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> SourceAnalysis:
        """
        Profile, fingerprint and suggest mappings for a dataset.

        Raises:
            AnalysisError: if the dataset is empty
        """
        if isinstance(data, pd.DataFrame):
            records = data.astype(object).where(pd.notna(data), None).to_dict("records")
        else:
            records = [dict(row) for row in data]
        if not records:
            raise AnalysisError("No data provided for analysis")

        fingerprint = fingerprint_from_records(
            source_kind,
            records,
            origin_system=origin_system,
            tenant_id=self.config.tenant_id,
            sample_size=self.config.sample_size,
            max_workers=self.config.max_workers,
            cancel_token=cancel_token,
        )
        suggestions = self.intelligence.suggest_mappings(fingerprint)
        similar = self.intelligence.find_similar_sources(fingerprint)
        analysis = SourceAnalysis(
            fingerprint=fingerprint,
            records=records,
            suggestions=suggestions,
            similar_sources=similar,
            estimated_accuracy=estimate_accuracy(suggestions, similar),
        )
        if similar:
            logger.info(
                f"Source resembles {len(similar)} earlier source(s); "
                f"closest similarity {similar[0].similarity:.2f}"
            )
        if self.event_logger is not None:
            self.event_logger.log_analysis(analysis)
        return analysis

    def analyze_file(self, path: Path, origin_system: Optional[str] = None, **kwargs) -> SourceAnalysis:
        """Read a CSV/XLSX/JSON file and analyze it."""
        kind, records = read_tabular_source(path, **kwargs)
        return self.analyze_source(kind, records, origin_system=origin_system)

    def execute_migration(
        self,
        analysis: SourceAnalysis,
        mode=ExecutionMode.VALIDATE_ONLY,
        corrections: Optional[Mapping[str, TargetRef]] = None,
        suggestions: Optional[Sequence[MappingSuggestion]] = None,
        batch_id: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> MigrationReport:
        """Run the analysed source through the executor."""
        report = self.executor.execute(
            analysis.fingerprint,
            analysis.records,
            suggestions if suggestions is not None else analysis.suggestions,
            mode=mode,
            corrections=corrections,
            batch_id=batch_id,
            cancel_token=cancel_token,
        )
        if self.event_logger is not None:
            self.event_logger.log_migration(report)
        return report

    def record_correction(
        self,
        source_column: str,
        wrong: TargetRef,
        correct: TargetRef,
        origin_system: Optional[str] = None,
    ) -> None:
        self.intelligence.record_correction(source_column, TargetRef(*wrong), TargetRef(*correct), origin_system)

    def close(self) -> None:
        """Finish background learning and release worker threads."""
        self.executor.close()
        if self.intelligence.assist is not None:
            self.intelligence.assist.close()
