#!/usr/bin/env python3
"""
External mapping assistant.

``AssistScorer`` is the seam for any service that proposes a target for a
hard-to-map column. ``HttpAssistScorer`` talks to a chat-style HTTP
endpoint; ``AssistEscalation`` wraps any scorer with the escalation
threshold, a TTL cache and a hard timeout, and turns every failure into
"no suggestion".
"""

import json
import re
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Tuple

import requests
from cachetools import TTLCache

from .catalog import TargetSchemaCatalog
from .errors import AssistServiceError
from .logging_config import get_logger
from .models import AlternativeMapping, ColumnProfile, SourceFingerprint, TargetRef
from .schema import ValidationError, validate_assist_response
from .transforms import TRANSFORMATIONS

logger = get_logger(__name__)

# Assistant answers never outrank a well-established learned mapping.
MAX_ASSIST_CONFIDENCE = 0.95

_CODE_FENCE = re.compile(r"```(?:json)?\s*")


@dataclass
class AssistSuggestion:
    target: TargetRef
    confidence: float
    reasoning: str
    transformation: Optional[str] = None
    fhir_resource: Optional[str] = None
    fhir_path: Optional[str] = None
    alternatives: List[AlternativeMapping] = field(default_factory=list)


class AssistScorer(Protocol):
    def suggest(
        self,
        profile: ColumnProfile,
        fingerprint: SourceFingerprint,
        catalog: TargetSchemaCatalog,
    ) -> Optional[AssistSuggestion]: ...


def build_system_prompt(catalog: TargetSchemaCatalog) -> str:
    return f"""You are an expert healthcare data migration specialist with deep knowledge of FHIR R4, HL7, and clinical data standards.

Your task is to analyze a source column and suggest the best target table and column mapping.

AVAILABLE TARGET TABLES AND COLUMNS:
{catalog.describe()}

CLINICAL CODE SYSTEMS TO RECOGNIZE:
- LOINC: Lab/observation codes (format: 12345-6)
- SNOMED CT: Clinical codes (6-18 digit numbers)
- ICD-10: Diagnosis codes (format: A00.1)
- CPT: Procedure codes (5 digits)
- RxNorm: Medication codes (5-7 digits)
- NDC: Drug codes (4-4-2, 5-3-2, or 5-4-1 format)
- NPI: Provider identifiers (10 digits with Luhn check)

RESPOND WITH JSON ONLY - NO MARKDOWN:
{{
  "suggestedTable": "table_name",
  "suggestedColumn": "column_name",
  "fhirResource": "FHIR resource if applicable (Patient, Observation, etc.)",
  "fhirPath": "FHIR path if applicable",
  "confidence": 0.85,
  "reasoning": "Brief explanation of why this mapping is suggested",
  "transformation": "Transformation needed, if any (e.g., NORMALIZE_PHONE, CONVERT_DATE_TO_ISO)",
  "alternativeMappings": [
    {{"table": "alt_table", "column": "alt_column", "confidence": 0.6}}
  ]
}}"""


def build_column_prompt(profile: ColumnProfile, fingerprint: SourceFingerprint) -> str:
    samples = ", ".join(f'"{v}"' for v in profile.sample_values[:3])
    return f"""Analyze this source column and suggest the best mapping:

SOURCE COLUMN:
- Name: {profile.original_name}
- Normalized Name: {profile.normalized_name}
- Detected Pattern: {profile.dominant_pattern}
- All Detected Patterns: {', '.join(profile.detected_patterns)}
- Inferred Data Type: {profile.inferred_type}
- Average Length: {round(profile.average_length)}
- Sample Values: {samples}
- Unique %: {round(profile.unique_fraction * 100)}%
- Null %: {round(profile.null_fraction * 100)}%

SOURCE CONTEXT:
- Source System: {fingerprint.origin_system or 'Unknown'}
- Source Type: {fingerprint.source_kind.value}
- Total Columns: {fingerprint.column_count}

Provide your mapping suggestion as JSON."""


def known_transformation(name: Optional[str]) -> Optional[str]:
    """Upper-cased rule name when it is a known transformation, else None."""
    if not name:
        return None
    candidate = name.strip().upper()
    return candidate if candidate in TRANSFORMATIONS else None


def parse_assist_response(text: str, catalog: TargetSchemaCatalog) -> AssistSuggestion:
    """
    Parse and check an assistant reply against the catalog.

    Markdown code fences are stripped before decoding. The suggested
    target is coerced onto the catalog; alternatives outside the catalog
    are dropped. A transformation that is not a known rule name is
    discarded so the caller infers one instead.

    Raises:
        AssistServiceError: if the reply is not valid JSON, fails the
            response schema, or names a target the catalog cannot resolve
    """
    cleaned = _CODE_FENCE.sub("", text or "").strip()
    try:
        decoded = json.loads(cleaned)
        response = validate_assist_response(decoded)
    except (ValueError, ValidationError) as e:
        raise AssistServiceError(f"Unusable assist response: {e}") from e

    target = catalog.resolve(response.suggested_table, response.suggested_column)
    if target is None:
        raise AssistServiceError(
            f"Assist suggested unknown target "
            f"{response.suggested_table}.{response.suggested_column}"
        )

    alternatives = []
    for alt in response.alternative_mappings:
        if catalog.has_column(alt.table, alt.column) and (alt.table, alt.column) != target:
            alternatives.append(
                AlternativeMapping(alt.table, alt.column, min(alt.confidence, MAX_ASSIST_CONFIDENCE))
            )

    return AssistSuggestion(
        target=target,
        confidence=min(response.confidence, MAX_ASSIST_CONFIDENCE),
        reasoning=response.reasoning,
        transformation=known_transformation(response.transformation),
        fhir_resource=response.fhir_resource,
        fhir_path=response.fhir_path,
        alternatives=alternatives[:3],
    )


class HttpAssistScorer:
    """
    Assist scorer backed by a chat-completion style HTTP endpoint.

    The endpoint receives ``{"messages": [...], "max_tokens": N}`` and must
    answer ``{"content": [{"text": "<json>"}]}``.
    """

    def __init__(
        self,
        endpoint: str,
        model: Optional[str] = None,
        max_tokens: int = 2000,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.endpoint = endpoint
        self.model = model
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.session = session or requests.Session()

    def suggest(self, profile, fingerprint, catalog):
        payload = {
            "messages": [
                {"role": "system", "content": build_system_prompt(catalog)},
                {"role": "user", "content": build_column_prompt(profile, fingerprint)},
            ],
            "max_tokens": self.max_tokens,
        }
        if self.model:
            payload["model"] = self.model

        try:
            response = self.session.post(self.endpoint, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise AssistServiceError(f"Assist request failed: {e}") from e

        if not response.ok:
            raise AssistServiceError(
                f"Assist service returned {response.status_code}: {response.reason}"
            )

        try:
            content = response.json().get("content") or []
            text = content[0].get("text") if content else None
        except (ValueError, AttributeError, TypeError) as e:
            raise AssistServiceError(f"Malformed assist envelope: {e}") from e
        if not text:
            return None
        return parse_assist_response(text, catalog)


class AssistEscalation:
    """
    Consults the scorer only for low-confidence columns, caches its answers
    and bounds every call with a timeout. Never raises.
    """

    def __init__(
        self,
        scorer: AssistScorer,
        threshold: float = 0.6,
        timeout: float = 10.0,
        cache_responses: bool = True,
        cache_ttl: int = 3600,
        cache_maxsize: int = 1024,
    ):
        self.scorer = scorer
        self.threshold = threshold
        self.timeout = timeout
        self._cache: Optional[TTLCache] = (
            TTLCache(maxsize=cache_maxsize, ttl=cache_ttl) if cache_responses else None
        )
        self._cache_lock = threading.Lock()
        self._pool = ThreadPoolExecutor(max_workers=4, thread_name_prefix="assist")

    @classmethod
    def from_config(cls, assist_config, scorer: Optional[AssistScorer] = None):
        """Build from an ``AssistConfigSchema``; None when assist is off or unconfigured."""
        if not assist_config.enabled:
            return None
        if scorer is None:
            if not assist_config.endpoint:
                logger.warning("Assist enabled but no endpoint configured; skipping")
                return None
            scorer = HttpAssistScorer(
                assist_config.endpoint,
                model=assist_config.model,
                max_tokens=assist_config.max_tokens,
                timeout=assist_config.timeout_seconds,
            )
        return cls(
            scorer,
            threshold=assist_config.confidence_threshold,
            timeout=assist_config.timeout_seconds,
            cache_responses=assist_config.cache_responses,
            cache_ttl=assist_config.cache_ttl_seconds,
            cache_maxsize=assist_config.cache_maxsize,
        )

    @staticmethod
    def cache_key(profile: ColumnProfile, fingerprint: SourceFingerprint) -> Tuple[str, str, str]:
        return (
            fingerprint.origin_system or "unknown",
            profile.normalized_name,
            profile.dominant_pattern,
        )

    def should_escalate(self, best_score: float) -> bool:
        return best_score < self.threshold

    def suggest(
        self,
        profile: ColumnProfile,
        fingerprint: SourceFingerprint,
        catalog: TargetSchemaCatalog,
    ) -> Optional[AssistSuggestion]:
        key = self.cache_key(profile, fingerprint)
        if self._cache is not None:
            with self._cache_lock:
                cached = self._cache.get(key)
            if cached is not None:
                logger.debug(f"Assist cache hit for {profile.original_name}")
                return cached

        future = self._pool.submit(self.scorer.suggest, profile, fingerprint, catalog)
        try:
            suggestion = future.result(timeout=self.timeout)
        except FutureTimeout:
            future.cancel()
            logger.warning(
                f"Assist timed out after {self.timeout}s for column {profile.original_name}"
            )
            return None
        except Exception as e:
            logger.warning(f"Assist unavailable for column {profile.original_name}: {e}")
            return None

        if suggestion is not None:
            logger.info(
                f"Assist suggested {suggestion.target} for {profile.original_name} "
                f"({suggestion.confidence:.0%})"
            )
            if self._cache is not None:
                with self._cache_lock:
                    self._cache[key] = suggestion
        return suggestion

    def clear_cache(self) -> None:
        if self._cache is not None:
            with self._cache_lock:
                self._cache.clear()

    def close(self) -> None:
        self._pool.shutdown(wait=False)
