#!/usr/bin/env python3
"""
Configuration loading and management for intelligent-migration.

Handles loading configuration from config.yaml and validating it with the
pydantic schemas in ``schema.py``. Values passed as keyword overrides take
precedence over config.yaml values.
"""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .catalog import SynonymDictionary, TargetSchemaCatalog
from .logging_config import get_logger
from .schema import ConfigSchema, validate_config

logger = get_logger(__name__)


class Config:
    """Configuration management class for intelligent-migration."""

    def __init__(self, config_path: Optional[Path] = None, **overrides: Any):
        """Initialize configuration with defaults, then config.yaml, then overrides."""
        self._apply(ConfigSchema())
        self.source_path: Optional[Path] = None

        if config_path is None:
            # Look in config directory first, fallback to working directory
            config_path = Path.cwd() / "config" / "config.yaml"
            if not config_path.exists():
                config_path = Path.cwd() / "config.yaml"

        config_path = Path(config_path)
        if config_path.exists():
            self._load_from_file(config_path)

        if overrides:
            self.merge(overrides)

    def _apply(self, settings: ConfigSchema) -> None:
        self.settings = settings
        self.sample_size = settings.sample_size
        self.candidate_threshold = settings.candidate_threshold
        self.similarity_threshold = settings.similarity_threshold
        self.similar_sources_limit = settings.similar_sources_limit
        self.fingerprint_history_limit = settings.fingerprint_history_limit
        self.max_workers = settings.max_workers
        self.tenant_id = settings.tenant_id
        self.catalog_path = settings.catalog_path
        self.synonyms_path = settings.synonyms_path
        self.assist = settings.assist
        self.executor = settings.executor
        self.learning = settings.learning

    def _load_from_file(self, config_path: Path) -> None:
        """Load configuration from YAML file."""
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                config_data = yaml.safe_load(f)

            if config_data:
                self._apply(validate_config(config_data))
                self.source_path = config_path
                logger.debug(f"Loaded configuration from {config_path}")

        except Exception as e:
            logger.warning(f"Could not load config.yaml: {e}")
            logger.info("Using default values")

    def merge(self, overrides: Dict[str, Any]) -> None:
        """
        Merge overrides into the current settings. Nested sections
        (assist, executor, learning) are merged key by key.
        """
        data = self.settings.model_dump()
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(data.get(key), dict):
                data[key].update(value)
            else:
                data[key] = value
        self._apply(validate_config(data))

    def _resolve(self, path: Optional[str]) -> Optional[Path]:
        if path is None:
            return None
        resolved = Path(path)
        if not resolved.is_absolute() and self.source_path is not None:
            resolved = self.source_path.parent / resolved
        return resolved

    def load_catalog(self) -> TargetSchemaCatalog:
        return TargetSchemaCatalog.from_yaml(self._resolve(self.catalog_path))

    def load_synonyms(self) -> SynonymDictionary:
        return SynonymDictionary.from_yaml(self._resolve(self.synonyms_path))


def load_config(config_path: Optional[Path] = None, **overrides: Any) -> Config:
    """Load configuration from file or use defaults."""
    return Config(config_path, **overrides)
