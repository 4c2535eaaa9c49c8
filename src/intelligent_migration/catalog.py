#!/usr/bin/env python3
"""
Target schema catalog and synonym dictionary.

Both are immutable configuration objects loaded from YAML (the packaged
defaults under ``data/`` or files named in config.yaml). Changing the
healthcare target model means editing those files, not code.
"""

from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

import yaml

from .errors import ConfigError
from .logging_config import get_logger
from .models import TargetRef
from .schema import ValidationError, validate_synonyms, validate_target_catalog

logger = get_logger(__name__)

DATA_DIR = Path(__file__).parent / "data"
DEFAULT_CATALOG_PATH = DATA_DIR / "target_schema.yaml"
DEFAULT_SYNONYMS_PATH = DATA_DIR / "synonyms.yaml"


def _read_yaml(path: Path) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read {path}: {e}") from e
    return data or {}


class TargetSchemaCatalog:
    """Read-only map of table -> column -> accepted pattern tags."""

    def __init__(self, tables: Mapping[str, Mapping[str, List[str]]]):
        self._tables = MappingProxyType(
            {
                table: MappingProxyType(
                    {column: frozenset(tags) for column, tags in columns.items()}
                )
                for table, columns in tables.items()
            }
        )
        self._column_names = frozenset(
            column for columns in self._tables.values() for column in columns
        )

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "TargetSchemaCatalog":
        """
        Load and validate a catalog file.

        Raises:
            ConfigError: if the file cannot be read or fails validation
        """
        path = Path(path) if path else DEFAULT_CATALOG_PATH
        try:
            validated = validate_target_catalog(_read_yaml(path))
        except ValidationError as e:
            raise ConfigError(str(e)) from e
        logger.debug(f"Loaded target catalog with {len(validated.tables)} tables from {path}")
        return cls(validated.tables)

    @property
    def tables(self) -> List[str]:
        return list(self._tables)

    def columns(self, table: str) -> List[str]:
        return list(self._tables.get(table, {}))

    def accepted_patterns(self, table: str, column: str) -> frozenset:
        return self._tables.get(table, {}).get(column, frozenset())

    def has_table(self, table: str) -> bool:
        return table in self._tables

    def has_column(self, table: str, column: str) -> bool:
        return column in self._tables.get(table, {})

    def is_column_name(self, name: str) -> bool:
        """True when any table has a column with exactly this name."""
        return name in self._column_names

    def iter_columns(self) -> Iterator[Tuple[str, str, frozenset]]:
        """Yield (table, column, accepted patterns) in catalog order."""
        for table, columns in self._tables.items():
            for column, tags in columns.items():
                yield table, column, tags

    def resolve(self, table: str, column: str) -> Optional[TargetRef]:
        """
        Coerce a possibly near-miss table/column pair onto the catalog.

        Exact names win; otherwise the first catalog name that contains, or
        is contained in, the given name (case-insensitive). Returns None when
        either part cannot be resolved.
        """
        resolved_table = self._closest(table, self.tables)
        if resolved_table is None:
            return None
        resolved_column = self._closest(column, self.columns(resolved_table))
        if resolved_column is None:
            return None
        return TargetRef(resolved_table, resolved_column)

    @staticmethod
    def _closest(name: str, candidates: List[str]) -> Optional[str]:
        if not name:
            return None
        if name in candidates:
            return name
        lowered = name.lower()
        for candidate in candidates:
            if candidate.lower() == lowered:
                return candidate
        for candidate in candidates:
            other = candidate.lower()
            if lowered in other or other in lowered:
                return candidate
        return None

    def describe(self) -> str:
        """One line per table listing its columns, used in assist prompts."""
        return "\n".join(
            f"{table}: {', '.join(columns)}" for table, columns in self._tables.items()
        )

    def __len__(self) -> int:
        return len(self._tables)


class SynonymDictionary:
    """Read-only map of canonical target column -> alternate spellings."""

    def __init__(self, synonyms: Mapping[str, List[str]]):
        self._synonyms = MappingProxyType(
            {column: frozenset(values) for column, values in synonyms.items()}
        )

    @classmethod
    def from_yaml(cls, path: Optional[Path] = None) -> "SynonymDictionary":
        """
        Load and validate a synonym file.

        Raises:
            ConfigError: if the file cannot be read or fails validation
        """
        path = Path(path) if path else DEFAULT_SYNONYMS_PATH
        try:
            validated = validate_synonyms(_read_yaml(path))
        except ValidationError as e:
            raise ConfigError(str(e)) from e
        return cls(validated.synonyms)

    def is_synonym(self, target_column: str, normalized_source: str) -> bool:
        return normalized_source in self._synonyms.get(target_column, frozenset())

    def synonyms_for(self, target_column: str) -> List[str]:
        return sorted(self._synonyms.get(target_column, frozenset()))

    def as_dict(self) -> Dict[str, List[str]]:
        return {column: sorted(values) for column, values in self._synonyms.items()}
