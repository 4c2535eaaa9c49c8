#!/usr/bin/env python3
"""
Intelligent Migration - Learning Source-to-Target Mapping for Healthcare Data

Profiles legacy healthcare datasets (spreadsheets, CSV, HL7 extracts,
FHIR-like exports), suggests explainable mappings onto a canonical target
schema, migrates the data and learns from every run.

Version: 1.0.0
"""

__version__ = "1.0.0"
__description__ = "Learning source-to-target mapping for healthcare data migrations"

from .catalog import SynonymDictionary, TargetSchemaCatalog
from .column_analyzer import analyze_column, analyze_columns
from .concurrency import CancellationToken
from .config_loader import Config, load_config
from .errors import (
    AnalysisError,
    AssistServiceError,
    ConfigError,
    MigrationEngineError,
    OperationCancelled,
    StoreError,
    TransformationError,
)
from .executor import MigrationExecutor
from .fingerprint import build_fingerprint, fingerprint_from_records
from .intelligence import MappingIntelligence
from .models import (
    UNMAPPED,
    ColumnProfile,
    ExecutionMode,
    MappingSuggestion,
    MigrationReport,
    MigrationResult,
    SourceFingerprint,
    SourceKind,
    TargetRef,
)
from .patterns import detect_value_patterns, normalize_column_name, validate_npi
from .pipeline import IntelligentMigrationService, SourceAnalysis
