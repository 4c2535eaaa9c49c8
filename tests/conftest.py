#!/usr/bin/env python3
"""
Shared fixtures for intelligent-migration tests.
"""

import pytest

from intelligent_migration.catalog import SynonymDictionary, TargetSchemaCatalog
from intelligent_migration.intelligence import MappingIntelligence
from intelligent_migration.stores import InMemoryMappingRepository, InMemoryTargetStore


def npi_check_digit(base: str) -> str:
    """Luhn check digit for a 9-digit NPI base, computed over the 80840 prefix."""
    total = 0
    for position, char in enumerate(reversed("80840" + base)):
        digit = int(char)
        if position % 2 == 0:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return str((10 - total % 10) % 10)


def make_npi(seed: int) -> str:
    base = f"{100000000 + seed * 7919:09d}"[-9:]
    return base + npi_check_digit(base)


def corrupt_npi(npi: str) -> str:
    return npi[:-1] + str((int(npi[-1]) + 1) % 10)


@pytest.fixture
def catalog():
    return TargetSchemaCatalog.from_yaml()


@pytest.fixture
def synonyms():
    return SynonymDictionary.from_yaml()


@pytest.fixture
def repository():
    return InMemoryMappingRepository()


@pytest.fixture
def target_store():
    return InMemoryTargetStore()


@pytest.fixture
def intelligence(catalog, synonyms, repository):
    return MappingIntelligence(catalog, synonyms, repository)


@pytest.fixture
def provider_records():
    """100 provider rows: 80 valid NPIs followed by 20 with a corrupted check digit."""
    records = []
    for i in range(100):
        npi = make_npi(i)
        records.append(
            {
                "id": f"P{i:03d}",
                "NPI_NUM": npi if i < 80 else corrupt_npi(npi),
                "DOB": f"{(i % 12) + 1:02d}/{(i % 28) + 1:02d}/19{50 + i % 40}",
                "zzqx": None,
            }
        )
    return records
