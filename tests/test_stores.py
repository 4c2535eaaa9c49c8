#!/usr/bin/env python3
"""
Tests for learned-mapping repositories and target stores.
"""

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pandas as pd
import pytest

from intelligent_migration.column_analyzer import analyze_column
from intelligent_migration.errors import StoreError
from intelligent_migration.fingerprint import build_fingerprint
from intelligent_migration.models import SourceKind
from intelligent_migration.stores import (
    CsvTargetStore,
    InMemoryMappingRepository,
    InMemoryTargetStore,
    YamlMappingRepository,
)


def _fingerprint(kind=SourceKind.CSV, tenant_id=None, minutes_ago=0):
    fingerprint = build_fingerprint(
        kind,
        [analyze_column("NPI", ["1234567893"]), analyze_column("DOB", ["03/14/1955"])],
        row_count=1,
        tenant_id=tenant_id,
    )
    created = datetime(2026, 1, 1, tzinfo=timezone.utc) - timedelta(minutes=minutes_ago)
    return replace(fingerprint, created_at=created)


class TestUpsertMapping:
    """Tests for InMemoryMappingRepository.upsert_mapping."""

    def test_new_mapping(self, repository):
        """Test that a first observation starts at its success rate plus boost."""
        mapping = repository.upsert_mapping("npi_num", "hc_staff", "npi", 80, 20, accepted=True)

        assert mapping.success_count == 80
        assert mapping.failure_count == 20
        assert mapping.confidence == pytest.approx(0.85)

    def test_existing_mapping_accumulates(self, repository):
        """Test that later observations add to the counts."""
        repository.upsert_mapping("npi_num", "hc_staff", "npi", 8, 2, accepted=False)
        mapping = repository.upsert_mapping("npi_num", "hc_staff", "npi", 10, 0, accepted=False)

        assert mapping.success_count == 18
        assert mapping.failure_count == 2
        assert mapping.confidence > 0.8
        assert len(repository.all_mappings()) == 1

    def test_returns_copies(self, repository):
        """Test that callers cannot mutate stored state."""
        mapping = repository.upsert_mapping("a", "t", "c", 1, 0, accepted=False)
        mapping.confidence = 0.0

        assert repository.get_best_mapping("a").confidence == 1.0

    def test_concurrent_upserts(self, repository):
        """Test that concurrent updates are not lost."""

        def work():
            for _ in range(50):
                repository.upsert_mapping("a", "t", "c", 1, 0, accepted=False)

        threads = [threading.Thread(target=work) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert repository.get_best_mapping("a").success_count == 200


class TestGetBestMapping:
    """Tests for scoped lookups."""

    def test_highest_confidence_wins(self, repository):
        """Test that the most confident target is returned."""
        repository.upsert_mapping("dob", "hc_staff", "hire_date", 1, 9, accepted=False)
        repository.upsert_mapping("dob", "hc_staff", "date_of_birth", 9, 1, accepted=False)

        assert repository.get_best_mapping("dob").target_column == "date_of_birth"

    def test_unknown_column(self, repository):
        """Test that a column never seen has no mapping."""
        assert repository.get_best_mapping("nothing") is None

    def test_tenant_scoping(self, repository):
        """Test that one tenant never sees another tenant's mappings."""
        repository.upsert_mapping("dob", "hc_staff", "date_of_birth", 5, 0, accepted=False, tenant_id="a")

        assert repository.get_best_mapping("dob", tenant_id="a") is not None
        assert repository.get_best_mapping("dob", tenant_id="b") is None
        assert repository.get_best_mapping("dob") is None

    def test_tenant_entry_preferred_over_global(self, repository):
        """Test that a tenant's own mapping beats a more confident global one."""
        repository.upsert_mapping("dob", "fhir_patient", "birth_date", 10, 0, accepted=True)
        repository.upsert_mapping(
            "dob", "hc_staff", "date_of_birth", 6, 4, accepted=False, tenant_id="a"
        )

        assert repository.get_best_mapping("dob", tenant_id="a").target_table == "hc_staff"
        assert repository.get_best_mapping("dob", tenant_id="b").target_table == "fhir_patient"

    def test_origin_preference(self, repository):
        """Test that a same-origin mapping beats a generic one."""
        repository.upsert_mapping("dob", "fhir_patient", "birth_date", 10, 0, accepted=False)
        repository.upsert_mapping(
            "dob", "hc_staff", "date_of_birth", 6, 4, accepted=False, origin_system="EPIC"
        )

        assert repository.get_best_mapping("dob", "EPIC").target_table == "hc_staff"
        assert repository.get_best_mapping("dob", "CERNER").target_table == "fhir_patient"


class TestCorrections:
    """Tests for decrease_confidence and reinforce_mapping."""

    def test_decrease_confidence(self, repository):
        """Test that a correction lowers every origin variant in the tenant."""
        repository.upsert_mapping("dob", "hc_staff", "hire_date", 9, 1, accepted=False)
        repository.upsert_mapping(
            "dob", "hc_staff", "hire_date", 9, 1, accepted=False, origin_system="EPIC"
        )
        repository.upsert_mapping(
            "dob", "hc_staff", "hire_date", 9, 1, accepted=False, tenant_id="other"
        )

        assert repository.decrease_confidence("dob", "hc_staff", "hire_date") == 2
        by_tenant = {(m.origin_system, m.tenant_id): m for m in repository.all_mappings()}
        assert by_tenant[(None, None)].confidence == pytest.approx(0.8)
        assert by_tenant[("EPIC", None)].confidence == pytest.approx(0.8)
        assert by_tenant[(None, "other")].confidence == pytest.approx(0.9)
        assert by_tenant[(None, None)].failure_count == 2

    def test_decrease_unknown_mapping(self, repository):
        """Test that correcting an unknown mapping changes nothing."""
        assert repository.decrease_confidence("dob", "hc_staff", "hire_date") == 0

    def test_reinforce_new_and_existing(self, repository):
        """Test the corrected-to target's confidence."""
        first = repository.reinforce_mapping("dob", "hc_staff", "date_of_birth")
        assert first.confidence == pytest.approx(0.8)
        assert first.success_count == 1

        second = repository.reinforce_mapping("dob", "hc_staff", "date_of_birth")
        assert second.confidence == pytest.approx(0.9)
        assert second.success_count == 2


class TestFingerprints:
    """Tests for fingerprint history."""

    def test_recent_fingerprints_newest_first(self, repository):
        """Test ordering, limit and exclusion."""
        old = _fingerprint(SourceKind.CSV, minutes_ago=10)
        new = _fingerprint(SourceKind.EXCEL, minutes_ago=1)
        repository.store_fingerprint(old)
        repository.store_fingerprint(new)

        assert [fp.fingerprint_id for fp in repository.recent_fingerprints(10)] == [
            new.fingerprint_id,
            old.fingerprint_id,
        ]
        assert len(repository.recent_fingerprints(1)) == 1
        assert repository.recent_fingerprints(10, exclude_id=new.fingerprint_id) == [old]

    def test_tenant_visibility(self, repository):
        """Test that tenants see their own and global fingerprints only."""
        repository.store_fingerprint(_fingerprint(SourceKind.CSV))
        repository.store_fingerprint(_fingerprint(SourceKind.EXCEL, tenant_id="a"))
        repository.store_fingerprint(_fingerprint(SourceKind.FHIR, tenant_id="b"))

        kinds = {fp.source_kind for fp in repository.recent_fingerprints(10, tenant_id="a")}
        assert kinds == {SourceKind.CSV, SourceKind.EXCEL}
        assert len(repository.recent_fingerprints(10)) == 1


class TestYamlMappingRepository:
    """Tests for the file-backed repository."""

    def test_persists_and_reloads(self, tmp_path):
        """Test that mappings and fingerprints survive a restart."""
        path = tmp_path / "memory" / "learned_mappings.yaml"
        repository = YamlMappingRepository(path)
        repository.upsert_mapping(
            "npi_num",
            "hc_staff",
            "npi",
            80,
            20,
            accepted=True,
            origin_system="EPIC",
            transformation=None,
            source_patterns=["NPI", "ID_NUMERIC"],
        )
        fingerprint = _fingerprint()
        repository.store_fingerprint(fingerprint)
        assert path.exists()

        reloaded = YamlMappingRepository(path)
        mapping = reloaded.get_best_mapping("npi_num", "EPIC")
        assert mapping.target_column == "npi"
        assert mapping.confidence == pytest.approx(0.85)
        assert mapping.source_patterns == ["NPI", "ID_NUMERIC"]

        [stored] = reloaded.recent_fingerprints(5)
        assert stored.fingerprint_id == fingerprint.fingerprint_id
        assert stored.signature_vector == pytest.approx(fingerprint.signature_vector)
        assert stored.columns == ()

    def test_invalid_file_raises_store_error(self, tmp_path):
        """Test that an invalid memory file is reported, not ignored."""
        path = tmp_path / "learned_mappings.yaml"
        path.write_text(
            "mappings:\n  - source_column: a\n    target_table: t\n    target_column: c\n"
            "    confidence: 3\n"
        )
        with pytest.raises(StoreError):
            YamlMappingRepository(path)

    def test_broken_yaml_raises_store_error(self, tmp_path):
        """Test that unparseable YAML is a store error."""
        path = tmp_path / "learned_mappings.yaml"
        path.write_text("mappings: [unclosed\n")
        with pytest.raises(StoreError):
            YamlMappingRepository(path)

    def test_failed_write_leaves_memory_unchanged(self, tmp_path):
        """Test that memory matches the file after a write fails, so a retry counts once."""
        path = tmp_path / "learned_mappings.yaml"
        repository = YamlMappingRepository(path)
        repository.upsert_mapping("dob", "hc_staff", "date_of_birth", 5, 0, accepted=True)
        before = repository.all_mappings()

        blocker = tmp_path / "blocker"
        blocker.write_text("")
        repository.path = blocker / "learned_mappings.yaml"

        with pytest.raises(StoreError):
            repository.upsert_mapping("dob", "hc_staff", "date_of_birth", 5, 0, accepted=True)
        with pytest.raises(StoreError):
            repository.upsert_mapping("npi_num", "hc_staff", "npi", 1, 0, accepted=True)
        with pytest.raises(StoreError):
            repository.decrease_confidence("dob", "hc_staff", "date_of_birth")
        with pytest.raises(StoreError):
            repository.reinforce_mapping("dob", "fhir_patient", "birth_date")
        with pytest.raises(StoreError):
            repository.store_fingerprint(_fingerprint())

        assert repository.all_mappings() == before
        assert repository.get_best_mapping("npi_num") is None
        assert repository.recent_fingerprints(5) == []

        repository.path = path
        repository.upsert_mapping("dob", "hc_staff", "date_of_birth", 5, 0, accepted=True)
        [mapping] = YamlMappingRepository(path).all_mappings()
        assert mapping.success_count == 10
        assert not path.with_name(path.name + ".tmp").exists()


class TestTargetStores:
    """Tests for target stores."""

    def test_in_memory_store(self):
        """Test that rows are collected per table and copied."""
        store = InMemoryTargetStore()
        row = {"npi": "1234567893"}
        store.insert_rows("hc_staff", [row])
        row["npi"] = "changed"

        assert store.rows("hc_staff") == [{"npi": "1234567893"}]
        assert store.rows("missing") == []

    def test_csv_store_appends(self, tmp_path):
        """Test that batches append to one CSV per table with a single header."""
        store = CsvTargetStore(tmp_path / "out")
        store.insert_rows("hc_staff", [{"npi": "1234567893", "email": "a@b.org"}])
        store.insert_rows("hc_staff", [{"email": "c@d.org", "npi": "1234567893"}])
        store.insert_rows("hc_staff", [])

        frame = pd.read_csv(tmp_path / "out" / "hc_staff.csv", dtype=str)
        assert list(frame.columns) == ["npi", "email"]
        assert frame["email"].tolist() == ["a@b.org", "c@d.org"]
