#!/usr/bin/env python3
"""
Exception types raised by the migration engine.

Only ``AnalysisError`` and ``ConfigError`` are expected to reach callers
directly; the other types are recorded in reports or logged and degraded.
"""

from typing import Any, Optional


class MigrationEngineError(Exception):
    """Base class for all engine errors."""

    pass


class AnalysisError(MigrationEngineError):
    """Source analysis cannot proceed (e.g. the dataset is empty)."""

    pass


class ConfigError(MigrationEngineError):
    """Configuration, catalog or synonym data could not be loaded."""

    pass


class TransformationError(MigrationEngineError):
    """A single value could not be converted to its target representation."""

    pass


class AssistServiceError(MigrationEngineError):
    """The external assist scorer failed or returned an unusable answer."""

    pass


class StoreError(MigrationEngineError):
    """A repository or target store operation failed."""

    pass


class OperationCancelled(MigrationEngineError):
    """Raised when a cancellation token fires mid-operation.

    ``partial`` carries whatever was completed before the token fired
    (a partial MigrationReport for executions, None for analysis).
    """

    def __init__(self, message: str, partial: Optional[Any] = None):
        super().__init__(message)
        self.partial = partial
