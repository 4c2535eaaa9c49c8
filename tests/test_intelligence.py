#!/usr/bin/env python3
"""
Tests for mapping suggestion, similar-source lookup and learning.
"""

import pytest

from intelligent_migration.assist import AssistEscalation, AssistSuggestion
from intelligent_migration.executor import MigrationExecutor
from intelligent_migration.fingerprint import fingerprint_from_records
from intelligent_migration.intelligence import MappingIntelligence
from intelligent_migration.models import (
    UNMAPPED,
    ExecutionMode,
    MigrationResult,
    SourceKind,
    TargetRef,
)
from intelligent_migration.stores import InMemoryTargetStore
from intelligent_migration.transforms import CONVERT_DATE_TO_ISO, NORMALIZE_PHONE, apply_transformation

from conftest import make_npi


class FixedScorer:
    """Assist scorer that always proposes the same target."""

    def __init__(self, target, confidence, transformation=None):
        self.suggestion = AssistSuggestion(
            TargetRef(*target), confidence, "fixed answer", transformation=transformation
        )
        self.calls = 0

    def suggest(self, profile, fingerprint, catalog):
        self.calls += 1
        return self.suggestion


class BrokenRepository:
    """Repository whose every call fails."""

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise RuntimeError("store offline")

        return fail


def _fingerprint(records, kind=SourceKind.CSV, origin_system=None):
    return fingerprint_from_records(kind, records, origin_system=origin_system)


def _suggestion(intelligence, fingerprint, column):
    return intelligence.suggest_for_column(fingerprint.column(column), fingerprint)


class TestScenarios:
    """End-to-end suggestion scenarios."""

    def test_date_of_birth(self, intelligence):
        """A DOB column of US dates maps to a birth date with ISO conversion."""
        fingerprint = _fingerprint([{"DOB": "03/14/1955"}, {"DOB": "11/02/1970"}])
        suggestion = _suggestion(intelligence, fingerprint, "DOB")

        assert fingerprint.column("DOB").dominant_pattern == "DATE"
        assert suggestion.target == TargetRef("hc_staff", "date_of_birth")
        assert suggestion.confidence == pytest.approx(0.55)
        assert suggestion.transformation == CONVERT_DATE_TO_ISO
        assert "Synonym match" in suggestion.reasons
        assert apply_transformation("03/14/1955", suggestion.transformation) == "1955-03-14"

    def test_npi(self, intelligence):
        """An NPI_NUM column maps to the provider identifier from pattern and name."""
        fingerprint = _fingerprint([{"NPI_NUM": make_npi(i)} for i in range(10)])
        suggestion = _suggestion(intelligence, fingerprint, "NPI_NUM")

        assert suggestion.target == TargetRef("hc_staff", "npi")
        assert suggestion.confidence == pytest.approx(0.72)
        assert suggestion.reasons[0] == "Pattern match: NPI"
        assert "Name contains target" in suggestion.reasons
        assert suggestion.method == "pattern"
        assert TargetRef("hc_organization", "npi") in [
            TargetRef(a.target_table, a.target_column) for a in suggestion.alternatives
        ]

    def test_no_signal_is_unmapped(self, intelligence):
        """A column with no name or pattern signal is reported, not guessed."""
        fingerprint = _fingerprint([{"zzqx": None}, {"zzqx": None}])
        suggestion = _suggestion(intelligence, fingerprint, "zzqx")

        assert not suggestion.is_mapped
        assert suggestion.target_table == UNMAPPED
        assert suggestion.confidence == 0.0
        assert suggestion.method == "unmapped"

    def test_generic_text_without_name_signal_is_unmapped(self, intelligence):
        """Free text under a meaningless header is not matched on its values alone."""
        records = [{"zzqx": "misc free text here"}, {"zzqx": "see attached chart"}]
        fingerprint = _fingerprint(records)
        profile = fingerprint.column("zzqx")
        suggestion = _suggestion(intelligence, fingerprint, "zzqx")

        assert profile.dominant_pattern == "TEXT_SHORT"
        assert intelligence.score_candidates(profile) == []
        assert not suggestion.is_mapped
        assert suggestion.confidence == 0.0
        assert suggestion.reasons == ["No candidate above 0.20"]

    def test_generic_text_with_name_signal_is_mapped(self, intelligence):
        """The header alone still carries a generic text column past the threshold."""
        records = [{"Email": "ask front desk"}, {"Email": "see attached chart"}]
        fingerprint = _fingerprint(records)
        suggestion = _suggestion(intelligence, fingerprint, "Email")

        assert suggestion.target_column == "email"
        assert suggestion.confidence > intelligence.candidate_threshold
        assert not any(r.startswith("Pattern match") for r in suggestion.reasons)

    def test_synonym_outranks_unrelated_target(self, intelligence):
        """fname maps to first_name through similarity and synonyms."""
        fingerprint = _fingerprint([{"fname": "John"}, {"fname": "Mary"}])
        suggestion = _suggestion(intelligence, fingerprint, "fname")

        assert suggestion.target == TargetRef("hc_staff", "first_name")
        assert suggestion.confidence > max(a.confidence for a in suggestion.alternatives)

    @pytest.mark.parametrize(
        "column,value,expected",
        [
            ("Email", "a@b.org", TargetRef("hc_staff", "email")),
            ("STATE", "CA", TargetRef("hc_staff", "state")),
        ],
    )
    def test_exact_catalog_name_wins(self, intelligence, column, value, expected):
        """A column named exactly like a catalog column is not pulled to a synonym target."""
        fingerprint = _fingerprint([{column: value}, {column: value}])
        suggestion = _suggestion(intelligence, fingerprint, column)

        assert suggestion.target == expected
        assert "Synonym match" not in suggestion.reasons
        assert all(a.confidence <= suggestion.confidence for a in suggestion.alternatives)


def test_suggest_mappings_covers_every_column(intelligence):
    """Test one suggestion per column in column order."""
    fingerprint = _fingerprint([{"DOB": "03/14/1955", "zzqx": None, "NPI_NUM": make_npi(1)}])
    suggestions = intelligence.suggest_mappings(fingerprint)

    assert [s.source_column for s in suggestions] == ["DOB", "zzqx", "NPI_NUM"]
    assert [s.is_mapped for s in suggestions] == [True, False, True]


def test_alternatives_are_limited(intelligence):
    """Test that at most three alternatives are kept, best first."""
    fingerprint = _fingerprint([{"Phone": "(555) 123-4567"}])
    suggestion = _suggestion(intelligence, fingerprint, "Phone")

    assert len(suggestion.alternatives) <= 3
    scores = [a.confidence for a in suggestion.alternatives]
    assert scores == sorted(scores, reverse=True)
    assert all(score <= suggestion.confidence for score in scores)


def test_scores_are_bounded(intelligence, repository):
    """Test that scores stay within [0, 1] even with every channel firing."""
    repository.upsert_mapping("npi_num", "hc_staff", "npi", 50, 0, accepted=True)
    fingerprint = _fingerprint([{"NPI_NUM": make_npi(i)} for i in range(5)])

    candidates = intelligence.score_candidates(fingerprint.column("NPI_NUM"))
    assert all(0.0 <= c.score <= 1.0 for c in candidates)
    assert candidates[0].score == 1.0


class TestLearnedChannel:
    """Tests for suggestions driven by learned mappings."""

    def test_learned_mapping_wins(self, intelligence, repository):
        """Test that a confident learned mapping is used for an unrecognisable column."""
        repository.upsert_mapping("zzqx", "hc_staff", "employee_id", 10, 0, accepted=True)
        fingerprint = _fingerprint([{"zzqx": None}])
        suggestion = _suggestion(intelligence, fingerprint, "zzqx")

        assert suggestion.target == TargetRef("hc_staff", "employee_id")
        assert suggestion.method == "learned"
        assert suggestion.confidence == pytest.approx(1.0)
        assert suggestion.reasons[0].startswith("Previously learned mapping")

    def test_learned_adds_to_channel_score(self, intelligence, repository):
        """Test that learned evidence merges with the same target's other evidence."""
        repository.upsert_mapping("dob", "hc_staff", "date_of_birth", 0, 10, accepted=False)
        fingerprint = _fingerprint([{"DOB": "03/14/1955"}])
        suggestion = _suggestion(intelligence, fingerprint, "DOB")

        # 0.55 from pattern and synonym, 0.5 + 0.5 x 0.0 from the learned mapping
        assert suggestion.target == TargetRef("hc_staff", "date_of_birth")
        assert suggestion.confidence == 1.0
        assert suggestion.method == "learned"

    def test_other_tenant_is_ignored(self, catalog, synonyms, repository):
        """Test that a tenant never uses another tenant's mappings."""
        repository.upsert_mapping(
            "zzqx", "hc_staff", "employee_id", 10, 0, accepted=True, tenant_id="org-a"
        )
        fingerprint = _fingerprint([{"zzqx": None}])

        own = MappingIntelligence(catalog, synonyms, repository, tenant_id="org-a")
        other = MappingIntelligence(catalog, synonyms, repository, tenant_id="org-b")

        assert _suggestion(own, fingerprint, "zzqx").is_mapped
        assert not _suggestion(other, fingerprint, "zzqx").is_mapped

    def test_repository_failure_degrades(self, catalog, synonyms):
        """Test that a failing repository does not stop suggestions."""
        intelligence = MappingIntelligence(catalog, synonyms, BrokenRepository())
        fingerprint = _fingerprint([{"NPI_NUM": make_npi(1)}])

        assert _suggestion(intelligence, fingerprint, "NPI_NUM").target == TargetRef("hc_staff", "npi")
        assert intelligence.find_similar_sources(fingerprint) == []


class TestEscalation:
    """Tests for assist escalation of weak columns."""

    def _intelligence(self, catalog, synonyms, repository, scorer, threshold=0.6):
        return MappingIntelligence(
            catalog, synonyms, repository, assist=AssistEscalation(scorer, threshold=threshold)
        )

    def test_assist_replaces_weak_suggestion(self, catalog, synonyms, repository):
        """Test that a better assisted answer wins for a low-confidence column."""
        scorer = FixedScorer(("hc_staff", "gender"), 0.9)
        intelligence = self._intelligence(catalog, synonyms, repository, scorer)
        fingerprint = _fingerprint([{"zzqx": None}])

        suggestion = _suggestion(intelligence, fingerprint, "zzqx")
        assert suggestion.target == TargetRef("hc_staff", "gender")
        assert suggestion.method == "assist"
        assert suggestion.confidence == 0.9
        assert suggestion.reasons == ["Assisted mapping: fixed answer"]

    def test_strong_columns_are_not_escalated(self, catalog, synonyms, repository):
        """Test that confident columns never reach the scorer."""
        scorer = FixedScorer(("hc_staff", "gender"), 0.9)
        intelligence = self._intelligence(catalog, synonyms, repository, scorer)
        fingerprint = _fingerprint([{"NPI_NUM": make_npi(i)} for i in range(3)])

        assert _suggestion(intelligence, fingerprint, "NPI_NUM").target == TargetRef("hc_staff", "npi")
        assert scorer.calls == 0

    def test_weaker_assist_answer_is_ignored(self, catalog, synonyms, repository):
        """Test that an assisted answer below the pattern score is discarded."""
        scorer = FixedScorer(("hc_staff", "gender"), 0.3)
        intelligence = self._intelligence(catalog, synonyms, repository, scorer, threshold=0.8)
        fingerprint = _fingerprint([{"NPI_NUM": make_npi(i)} for i in range(3)])

        suggestion = _suggestion(intelligence, fingerprint, "NPI_NUM")
        assert scorer.calls == 1
        assert suggestion.target == TargetRef("hc_staff", "npi")
        assert suggestion.method == "pattern"

    @pytest.mark.parametrize("reply", ["None", "convert to ISO", "NORMALIZE-PHONE"])
    def test_free_text_transformation_is_replaced(self, catalog, synonyms, repository, reply):
        """Test that an unknown assisted transformation falls back to the inferred rule."""
        scorer = FixedScorer(("hc_staff", "phone_work"), 0.9, transformation=reply)
        intelligence = self._intelligence(catalog, synonyms, repository, scorer)
        records = [{"zzqx": "(555) 123-4567"}, {"zzqx": "555.987.6543"}]
        fingerprint = _fingerprint(records)

        suggestion = _suggestion(intelligence, fingerprint, "zzqx")
        assert suggestion.method == "assist"
        assert suggestion.transformation == NORMALIZE_PHONE

        store = InMemoryTargetStore()
        report = MigrationExecutor(store).execute(
            fingerprint, records, [suggestion], mode=ExecutionMode.COMMIT
        )
        assert report.result_for("zzqx").error_types == []
        assert [row["phone_work"] for row in store.rows("hc_staff")] == ["5551234567", "5559876543"]

    def test_known_transformation_is_kept(self, catalog, synonyms, repository):
        """Test that a recognised rule name from the assistant is used."""
        scorer = FixedScorer(("hc_staff", "date_of_birth"), 0.9, transformation="convert_date_to_iso")
        intelligence = self._intelligence(catalog, synonyms, repository, scorer)
        fingerprint = _fingerprint([{"zzqx": None}])

        suggestion = _suggestion(intelligence, fingerprint, "zzqx")
        assert suggestion.transformation == CONVERT_DATE_TO_ISO


class TestSimilarSources:
    """Tests for find_similar_sources."""

    def test_finds_same_structure(self, intelligence, repository):
        """Test that an earlier source with the same shape is found."""
        earlier = _fingerprint([{"NPI_NUM": make_npi(1), "DOB": "03/14/1955"}], SourceKind.EXCEL)
        unrelated = _fingerprint([{"state": "CA"}], SourceKind.EXCEL)
        repository.store_fingerprint(earlier)
        repository.store_fingerprint(unrelated)

        current = _fingerprint([{"NPI_NUM": make_npi(2), "DOB": "07/04/1960"}], SourceKind.CSV)
        similar = intelligence.find_similar_sources(current)

        assert [s.fingerprint.fingerprint_id for s in similar] == [earlier.fingerprint_id]
        assert similar[0].similarity == pytest.approx(1.0)

    def test_excludes_itself(self, intelligence, repository):
        """Test that a source is not reported as similar to itself."""
        fingerprint = _fingerprint([{"NPI_NUM": make_npi(1)}])
        repository.store_fingerprint(fingerprint)
        assert intelligence.find_similar_sources(fingerprint) == []


class TestLearning:
    """Tests for learn_from_results and record_correction."""

    def test_learn_from_results(self, intelligence, repository):
        """Test that outcomes become learned mappings and the fingerprint is stored."""
        fingerprint = _fingerprint([{"NPI_NUM": make_npi(1)}], origin_system="EPIC")
        result = MigrationResult(
            "NPI_NUM", "hc_staff", "npi", records_attempted=100, records_succeeded=80, records_failed=20
        )

        assert intelligence.learn_from_results(fingerprint, [result]) == 1

        mapping = repository.get_best_mapping("npi_num", "EPIC")
        assert mapping.target == TargetRef("hc_staff", "npi")
        assert mapping.confidence == pytest.approx(0.85)
        assert "NPI" in mapping.source_patterns
        assert repository.recent_fingerprints(5)[0].fingerprint_id == fingerprint.fingerprint_id

    def test_corrected_result(self, intelligence, repository):
        """Test that a correction learns the new target and penalizes the old one."""
        repository.upsert_mapping("npi_num", "hc_staff", "npi", 10, 0, accepted=False)
        fingerprint = _fingerprint([{"NPI_NUM": make_npi(1)}])
        result = MigrationResult(
            "NPI_NUM",
            "hc_staff",
            "npi",
            records_attempted=5,
            records_succeeded=5,
            user_accepted=False,
            corrected_to=TargetRef("hc_organization", "npi"),
        )

        intelligence.learn_from_results(fingerprint, [result])

        by_target = {m.target: m for m in repository.all_mappings()}
        assert by_target[TargetRef("hc_staff", "npi")].confidence == pytest.approx(0.9)
        assert by_target[TargetRef("hc_organization", "npi")].success_count == 5

    def test_unknown_columns_are_skipped(self, intelligence):
        """Test that results for columns outside the fingerprint are ignored."""
        fingerprint = _fingerprint([{"NPI_NUM": make_npi(1)}])
        result = MigrationResult("other", "hc_staff", "npi", records_succeeded=1)
        assert intelligence.learn_from_results(fingerprint, [result]) == 0

    def test_record_correction(self, intelligence, repository):
        """Test that a correction lowers the wrong target and raises the right one."""
        repository.upsert_mapping("dob", "hc_staff", "hire_date", 8, 2, accepted=True)

        intelligence.record_correction(
            "DOB", TargetRef("hc_staff", "hire_date"), TargetRef("hc_staff", "date_of_birth")
        )

        by_target = {m.target: m for m in repository.all_mappings()}
        assert by_target[TargetRef("hc_staff", "hire_date")].confidence == pytest.approx(0.75)
        assert by_target[TargetRef("hc_staff", "date_of_birth")].confidence == pytest.approx(0.8)
        assert repository.get_best_mapping("dob").target_column == "date_of_birth"

    def test_correction_changes_next_suggestion(self, intelligence):
        """Test that the next suggestion for the column follows the correction."""
        fingerprint = _fingerprint([{"DOB": "03/14/1955"}])
        intelligence.record_correction(
            "DOB", TargetRef("hc_staff", "date_of_birth"), TargetRef("fhir_patient", "birth_date")
        )

        suggestion = _suggestion(intelligence, fingerprint, "DOB")
        assert suggestion.target == TargetRef("fhir_patient", "birth_date")
        assert suggestion.method == "learned"
