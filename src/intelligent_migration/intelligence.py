#!/usr/bin/env python3
"""
Mapping intelligence: scoring, escalation and learning.

For every profiled source column, evidence from five channels is combined
into a bounded score per catalog target:

1. learned mapping from earlier migrations (0.5 + 0.5 x stored confidence)
2. specific dominant pattern accepted by the target column (+0.3);
   generic text tags carry no pattern evidence
3. name similarity above 0.5 (+ similarity x 0.4)
4. exact synonym membership (+0.25)
5. raw column name containing the target name (+0.1)

Channels 2-5 keep a target only above the candidate threshold; the learned
target is always kept. Scores are clamped to [0, 1]. Low-confidence columns
may be escalated to an external assistant.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .assist import AssistEscalation, known_transformation
from .catalog import SynonymDictionary, TargetSchemaCatalog
from .fingerprint import fingerprint_similarity
from .fuzzy import name_similarity
from .learning import clamp
from .logging_config import get_logger
from .models import (
    AlternativeMapping,
    ColumnProfile,
    MappingSuggestion,
    MigrationResult,
    SourceFingerprint,
    TargetRef,
)
from .patterns import GENERIC_TEXT_TAGS, normalize_column_name
from .stores import MappingRepository
from .transforms import infer_transformation

logger = get_logger(__name__)

LEARNED_BASE_SCORE = 0.5
LEARNED_CONFIDENCE_WEIGHT = 0.5
PATTERN_MATCH_SCORE = 0.3
NAME_SIMILARITY_FLOOR = 0.5
NAME_SIMILARITY_WEIGHT = 0.4
SYNONYM_SCORE = 0.25
RAW_NAME_CONTAINS_SCORE = 0.1
MAX_ALTERNATIVES = 3


@dataclass
class _Candidate:
    table: str
    column: str
    score: float = 0.0
    reasons: List[str] = field(default_factory=list)
    learned: bool = False


@dataclass(frozen=True)
class SimilarSource:
    fingerprint: SourceFingerprint
    similarity: float


class MappingIntelligence:
    """Suggests, explains and learns source-to-target column mappings."""

    def __init__(
        self,
        catalog: TargetSchemaCatalog,
        synonyms: SynonymDictionary,
        repository: MappingRepository,
        assist: Optional[AssistEscalation] = None,
        tenant_id: Optional[str] = None,
        candidate_threshold: float = 0.2,
        similarity_threshold: float = 0.7,
        similar_sources_limit: int = 5,
        fingerprint_history_limit: int = 100,
    ):
        self.catalog = catalog
        self.synonyms = synonyms
        self.repository = repository
        self.assist = assist
        self.tenant_id = tenant_id
        self.candidate_threshold = candidate_threshold
        self.similarity_threshold = similarity_threshold
        self.similar_sources_limit = similar_sources_limit
        self.fingerprint_history_limit = fingerprint_history_limit

    @classmethod
    def from_config(cls, config, repository, assist_scorer=None):
        """Wire an instance from a ``Config``."""
        return cls(
            catalog=config.load_catalog(),
            synonyms=config.load_synonyms(),
            repository=repository,
            assist=AssistEscalation.from_config(config.assist, assist_scorer),
            tenant_id=config.tenant_id,
            candidate_threshold=config.candidate_threshold,
            similarity_threshold=config.similarity_threshold,
            similar_sources_limit=config.similar_sources_limit,
            fingerprint_history_limit=config.fingerprint_history_limit,
        )

    # Suggestion

    def suggest_mappings(self, fingerprint: SourceFingerprint) -> List[MappingSuggestion]:
        """One suggestion per source column, in column order."""
        suggestions = [self.suggest_for_column(column, fingerprint) for column in fingerprint.columns]
        mapped = sum(1 for s in suggestions if s.is_mapped)
        logger.info(f"Suggested mappings for {mapped}/{len(suggestions)} columns")
        return suggestions

    def suggest_for_column(
        self, profile: ColumnProfile, fingerprint: SourceFingerprint
    ) -> MappingSuggestion:
        candidates = self.score_candidates(profile, fingerprint.origin_system)
        best = candidates[0] if candidates else None
        best_score = best.score if best else 0.0

        if self.assist is not None and self.assist.should_escalate(best_score):
            assisted = self.assist.suggest(profile, fingerprint, self.catalog)
            if assisted is not None and assisted.confidence > best_score:
                alternatives = assisted.alternatives or self._alternatives(candidates[:MAX_ALTERNATIVES])
                return MappingSuggestion(
                    source_column=profile.original_name,
                    target_table=assisted.target.table,
                    target_column=assisted.target.column,
                    confidence=clamp(assisted.confidence),
                    reasons=[f"Assisted mapping: {assisted.reasoning}"],
                    transformation=known_transformation(assisted.transformation)
                    or infer_transformation(profile.dominant_pattern, assisted.target.column),
                    alternatives=alternatives[:MAX_ALTERNATIVES],
                    method="assist",
                )

        if best is None:
            return MappingSuggestion.unmapped(
                profile.original_name, [f"No candidate above {self.candidate_threshold:.2f}"]
            )

        return MappingSuggestion(
            source_column=profile.original_name,
            target_table=best.table,
            target_column=best.column,
            confidence=best.score,
            reasons=best.reasons,
            transformation=infer_transformation(profile.dominant_pattern, best.column),
            alternatives=self._alternatives(candidates[1 : 1 + MAX_ALTERNATIVES]),
            method="learned" if best.learned else "pattern",
        )

    def score_candidates(
        self, profile: ColumnProfile, origin_system: Optional[str] = None
    ) -> List[_Candidate]:
        """Ranked candidates for one column, best first."""
        scored: Dict[TargetRef, _Candidate] = {}

        for table, column, accepted in self.catalog.iter_columns():
            candidate = _Candidate(table, column)

            # Generic text only means no specific pattern matched.
            pattern = profile.dominant_pattern
            if pattern in accepted and pattern not in GENERIC_TEXT_TAGS:
                candidate.score += PATTERN_MATCH_SCORE
                candidate.reasons.append(f"Pattern match: {pattern}")

            similarity = name_similarity(profile.normalized_name, column)
            if similarity > NAME_SIMILARITY_FLOOR:
                candidate.score += similarity * NAME_SIMILARITY_WEIGHT
                candidate.reasons.append(f"Name similarity: {similarity:.0%}")

            # A catalog column name is never a synonym of another column.
            if self.synonyms.is_synonym(column, profile.normalized_name) and not (
                self.catalog.is_column_name(profile.normalized_name)
            ):
                candidate.score += SYNONYM_SCORE
                candidate.reasons.append("Synonym match")

            if column.replace("_", "") in profile.original_name.lower():
                candidate.score += RAW_NAME_CONTAINS_SCORE
                candidate.reasons.append("Name contains target")

            if candidate.score > self.candidate_threshold:
                scored[TargetRef(table, column)] = candidate

        learned = self._learned_mapping(profile, origin_system)
        if learned is not None:
            target = TargetRef(learned.target_table, learned.target_column)
            learned_score = LEARNED_BASE_SCORE + learned.confidence * LEARNED_CONFIDENCE_WEIGHT
            reason = f"Previously learned mapping ({learned.confidence:.0%} confidence)"
            existing = scored.get(target)
            if existing is None:
                scored[target] = _Candidate(
                    target.table, target.column, learned_score, [reason], learned=True
                )
            else:
                existing.score += learned_score
                existing.reasons.insert(0, reason)
                existing.learned = True

        ranked = list(scored.values())
        for candidate in ranked:
            candidate.score = clamp(candidate.score)
        # Ties: learned target first, then catalog order.
        ranked.sort(key=lambda c: (-c.score, not c.learned))
        return ranked

    def _learned_mapping(self, profile: ColumnProfile, origin_system: Optional[str]):
        try:
            return self.repository.get_best_mapping(
                profile.normalized_name, origin_system, self.tenant_id
            )
        except Exception as e:
            logger.warning(f"Learned mapping lookup failed for {profile.normalized_name}: {e}")
            return None

    @staticmethod
    def _alternatives(candidates: Sequence[_Candidate]) -> List[AlternativeMapping]:
        return [AlternativeMapping(c.table, c.column, c.score) for c in candidates]

    # Similar sources

    def find_similar_sources(self, fingerprint: SourceFingerprint) -> List[SimilarSource]:
        """Earlier fingerprints above the similarity threshold, most similar first."""
        try:
            history = self.repository.recent_fingerprints(
                self.fingerprint_history_limit,
                tenant_id=self.tenant_id,
                exclude_id=fingerprint.fingerprint_id,
            )
        except Exception as e:
            logger.warning(f"Fingerprint history unavailable: {e}")
            return []

        similar = []
        for past in history:
            similarity = fingerprint_similarity(fingerprint, past)
            if similarity > self.similarity_threshold:
                similar.append(SimilarSource(past, similarity))
        similar.sort(key=lambda s: s.similarity, reverse=True)
        return similar[: self.similar_sources_limit]

    # Learning

    def learn_from_results(
        self, fingerprint: SourceFingerprint, results: Sequence[MigrationResult]
    ) -> int:
        """
        Feed migration outcomes back into the repository.

        The final target (the correction when there is one) is upserted with
        the observed counts; a corrected-away target is penalized. Failures
        are logged and skipped. Returns the number of results learned.
        """
        learned = 0
        for result in results:
            profile = fingerprint.column(result.source_column)
            if profile is None:
                continue
            final = result.final_target
            try:
                self.repository.upsert_mapping(
                    profile.normalized_name,
                    final.table,
                    final.column,
                    successes=result.records_succeeded,
                    failures=result.records_failed,
                    accepted=result.user_accepted,
                    origin_system=fingerprint.origin_system,
                    tenant_id=self.tenant_id,
                    transformation=result.transformation,
                    source_patterns=profile.detected_patterns,
                )
                if result.corrected_to is not None and not result.user_accepted:
                    self.repository.decrease_confidence(
                        profile.normalized_name,
                        result.target_table,
                        result.target_column,
                        tenant_id=self.tenant_id,
                    )
                learned += 1
            except Exception as e:
                logger.warning(f"Could not learn mapping for {result.source_column}: {e}")

        try:
            self.repository.store_fingerprint(fingerprint)
        except Exception as e:
            logger.warning(f"Could not store fingerprint {fingerprint.fingerprint_id}: {e}")

        logger.info(f"Learned from {learned}/{len(results)} mapping results")
        return learned

    def record_correction(
        self,
        source_column: str,
        wrong: TargetRef,
        correct: TargetRef,
        origin_system: Optional[str] = None,
    ) -> None:
        """
        Learn immediately from a person correcting one mapping.

        ``source_column`` may be raw or normalized; it is normalized here.
        """
        normalized = normalize_column_name(source_column)
        try:
            self.repository.decrease_confidence(
                normalized, wrong.table, wrong.column, tenant_id=self.tenant_id
            )
            self.repository.reinforce_mapping(
                normalized,
                correct.table,
                correct.column,
                origin_system=origin_system,
                tenant_id=self.tenant_id,
            )
            logger.info(f"Recorded correction for {normalized}: {wrong} -> {correct}")
        except Exception as e:
            logger.warning(f"Could not record correction for {normalized}: {e}")
