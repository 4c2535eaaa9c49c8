#!/usr/bin/env python3
"""
Schema validation for YAML configuration, catalog data and assist responses.

This module provides Pydantic models for validating:
- config.yaml: Main configuration file
- target_schema.yaml: Canonical target catalog
- synonyms.yaml: Column-name synonym dictionary
- learned_mappings.yaml: File-backed learned mapping memory
- assist responses: JSON returned by the external mapping assistant
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .patterns import SIGNATURE_TAGS


class ValidationError(Exception):
    """Custom validation error for clearer error messages."""

    pass


# Config.yaml schemas
class AssistConfigSchema(BaseModel):
    """Configuration for the external mapping assistant."""

    enabled: bool = False
    confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    endpoint: str | None = None
    model: str | None = None
    max_tokens: int = Field(default=2000, ge=1)
    timeout_seconds: float = Field(default=10.0, gt=0.0)
    cache_responses: bool = True
    cache_ttl_seconds: int = Field(default=3600, ge=1)
    cache_maxsize: int = Field(default=1024, ge=1)


class ExecutorConfigSchema(BaseModel):
    """Configuration for migration execution."""

    batch_size: int = Field(default=100, ge=1)
    max_table_workers: int = Field(default=4, ge=1)
    preview_rows: int = Field(default=5, ge=0)


class LearningConfigSchema(BaseModel):
    """Configuration for learning feedback."""

    background: bool = False
    acceptance_boost: float = Field(default=0.05, ge=0.0, le=1.0)
    correction_penalty: float = Field(default=0.1, gt=0.0, le=1.0)


class ConfigSchema(BaseModel):
    """Schema for config.yaml."""

    sample_size: int = Field(default=100, ge=1)
    candidate_threshold: float = Field(default=0.2, ge=0.0, le=1.0)
    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    similar_sources_limit: int = Field(default=5, ge=1)
    fingerprint_history_limit: int = Field(default=100, ge=1)
    max_workers: int | None = Field(default=None, ge=1)
    tenant_id: str | None = None
    catalog_path: str | None = None
    synonyms_path: str | None = None
    assist: AssistConfigSchema = Field(default_factory=AssistConfigSchema)
    executor: ExecutorConfigSchema = Field(default_factory=ExecutorConfigSchema)
    learning: LearningConfigSchema = Field(default_factory=LearningConfigSchema)


# Catalog schemas
def _check_tags(tags: list[str]) -> list[str]:
    unknown = [tag for tag in tags if tag not in SIGNATURE_TAGS]
    if unknown:
        raise ValueError(f"unknown pattern tags: {', '.join(unknown)}")
    return tags


class TargetSchemaCatalogSchema(BaseModel):
    """Schema for target_schema.yaml."""

    tables: dict[str, dict[str, list[str]]]

    @field_validator("tables")
    @classmethod
    def validate_tables(cls, v: dict[str, dict[str, list[str]]]) -> dict[str, dict[str, list[str]]]:
        """Validate that tables are non-empty and only use known pattern tags."""
        if not v:
            raise ValueError("tables cannot be empty")
        for table, columns in v.items():
            if not columns:
                raise ValueError(f"table {table} has no columns")
            for tags in columns.values():
                _check_tags(tags)
        return v


class SynonymsSchema(BaseModel):
    """Schema for synonyms.yaml."""

    synonyms: dict[str, list[str]] = Field(default_factory=dict)


# Learned mapping memory schemas
class LearnedMappingRecordSchema(BaseModel):
    """Schema for one entry in learned_mappings.yaml."""

    source_column: str
    target_table: str
    target_column: str
    origin_system: str | None = None
    tenant_id: str | None = None
    transformation: str | None = None
    source_patterns: list[str] = Field(default_factory=list)
    success_count: int = Field(default=0, ge=0)
    failure_count: int = Field(default=0, ge=0)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    last_used: datetime | None = None


class FingerprintRecordSchema(BaseModel):
    """Schema for one stored fingerprint summary in learned_mappings.yaml."""

    fingerprint_id: str
    source_kind: str
    origin_system: str | None = None
    tenant_id: str | None = None
    structure_hash: str
    signature_vector: list[float]
    column_names: list[str] = Field(default_factory=list)
    row_count: int = Field(default=0, ge=0)
    created_at: datetime | None = None


class LearnedMemorySchema(BaseModel):
    """Schema for learned_mappings.yaml."""

    mappings: list[LearnedMappingRecordSchema] = Field(default_factory=list)
    fingerprints: list[FingerprintRecordSchema] = Field(default_factory=list)


# Assist response schemas
class AssistAlternativeSchema(BaseModel):
    """Alternative target proposed by the assistant."""

    table: str
    column: str
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class AssistResponseSchema(BaseModel):
    """Schema for the JSON object returned by the mapping assistant."""

    model_config = ConfigDict(populate_by_name=True)

    suggested_table: str = Field(alias="suggestedTable", min_length=1)
    suggested_column: str = Field(alias="suggestedColumn", min_length=1)
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    reasoning: str = "Assistant-suggested mapping"
    transformation: str | None = None
    fhir_resource: str | None = Field(default=None, alias="fhirResource")
    fhir_path: str | None = Field(default=None, alias="fhirPath")
    alternative_mappings: list[AssistAlternativeSchema] = Field(
        default_factory=list, alias="alternativeMappings"
    )

    @field_validator("confidence", mode="before")
    @classmethod
    def default_missing_confidence(cls, v: Any) -> Any:
        """Treat an explicit null confidence as the default."""
        return 0.7 if v is None else v

    @field_validator("reasoning", mode="before")
    @classmethod
    def default_missing_reasoning(cls, v: Any) -> Any:
        """Treat an empty or null reasoning as the default."""
        return v or "Assistant-suggested mapping"


def validate_config(data: dict[str, Any]) -> ConfigSchema:
    """
    Validate config.yaml data.

    Raises:
        ValidationError: If validation fails
    """
    try:
        return ConfigSchema(**data)
    except Exception as e:
        raise ValidationError(f"Config validation failed: {e}") from e


def validate_target_catalog(data: dict[str, Any]) -> TargetSchemaCatalogSchema:
    """
    Validate target_schema.yaml data.

    Raises:
        ValidationError: If validation fails
    """
    try:
        return TargetSchemaCatalogSchema(**data)
    except Exception as e:
        raise ValidationError(f"Target catalog validation failed: {e}") from e


def validate_synonyms(data: dict[str, Any]) -> SynonymsSchema:
    """
    Validate synonyms.yaml data.

    Raises:
        ValidationError: If validation fails
    """
    try:
        return SynonymsSchema(**data)
    except Exception as e:
        raise ValidationError(f"Synonym dictionary validation failed: {e}") from e


def validate_learned_memory(data: dict[str, Any]) -> LearnedMemorySchema:
    """
    Validate learned_mappings.yaml data.

    Raises:
        ValidationError: If validation fails
    """
    try:
        return LearnedMemorySchema(**data)
    except Exception as e:
        raise ValidationError(f"Learned memory validation failed: {e}") from e


def validate_assist_response(data: Any) -> AssistResponseSchema:
    """
    Validate a decoded assist response. Anything that is not a JSON object
    with the required fields is rejected.

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(data, dict):
        raise ValidationError("Assist response must be a JSON object")
    try:
        return AssistResponseSchema.model_validate(data)
    except Exception as e:
        raise ValidationError(f"Assist response validation failed: {e}") from e
