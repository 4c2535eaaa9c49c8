#!/usr/bin/env python3
"""
Pattern detection for single source values.

Classifies a raw string into zero or more semantic pattern tags
(clinical code systems, healthcare identifiers, contact fields, dates,
names, generic text) and validates NPI check digits.

All functions here are pure and safe to call from any thread.
"""

import re
from typing import Dict, List, Pattern

# Bump when tags are added, removed or reordered: stored signature
# vectors are only comparable within the same version.
PATTERN_UNIVERSE_VERSION = 1

UNKNOWN = "UNKNOWN"
TEXT_SHORT = "TEXT_SHORT"
TEXT_LONG = "TEXT_LONG"
GENERIC_TEXT_TAGS = frozenset({TEXT_SHORT, TEXT_LONG})

# NPI check digits are computed over the NPI prefixed with this issuer code.
NPI_PREFIX = "80840"

_MONTHS = "Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec"
_UUID = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"

PATTERN_REGEXES: Dict[str, List[Pattern]] = {
    "LOINC": [
        re.compile(r"^\d{1,5}-\d$"),
        re.compile(r"^LP\d{5,7}-\d$"),
        re.compile(r"^http://loinc\.org\|\d+-\d$"),
    ],
    "ICD10": [
        re.compile(r"^[A-TV-Z]\d{2}(\.\d{1,4})?$"),
        re.compile(r"^[A-Z]\d{2}\.\d{1,2}$"),
        re.compile(r"^http://hl7\.org/fhir/sid/icd-10(-cm)?\|[A-Z]\d{2}"),
    ],
    "CPT": [
        re.compile(r"^\d{5}$"),
        re.compile(r"^99\d{3}$"),
        re.compile(r"^http://www\.ama-assn\.org/go/cpt\|\d{5}$"),
    ],
    "NDC": [
        re.compile(r"^\d{4}-\d{4}-\d{2}$"),
        re.compile(r"^\d{5}-\d{3}-\d{2}$"),
        re.compile(r"^\d{5}-\d{4}-\d$"),
        re.compile(r"^\d{11}$"),
    ],
    "SNOMED_CT": [
        re.compile(r"^\d{6,18}$"),
        re.compile(r"^http://snomed\.info/sct\|\d+$"),
    ],
    "RXNORM": [
        re.compile(r"^\d{5,7}$"),
        re.compile(r"^http://www\.nlm\.nih\.gov/research/umls/rxnorm\|\d+$"),
    ],
    "FHIR_REFERENCE": [
        re.compile(
            r"^(Patient|Practitioner|Organization|Location|Encounter|"
            r"Observation|Condition|Procedure)/[a-zA-Z0-9-]+$"
        ),
        re.compile(rf"^urn:uuid:{_UUID}$", re.IGNORECASE),
    ],
    "FHIR_RESOURCE_TYPE": [
        re.compile(
            r"^(Patient|Observation|Condition|MedicationRequest|Procedure|"
            r"AllergyIntolerance|Immunization|DiagnosticReport|Encounter|"
            r"CarePlan|Practitioner|Organization|Location|Device|Specimen|"
            r"ServiceRequest|ClinicalImpression|Goal|RiskAssessment|"
            r"FamilyMemberHistory)$"
        ),
    ],
    "NPI": [re.compile(r"^\d{10}$")],
    "SSN": [re.compile(r"^\d{3}-?\d{2}-?\d{4}$"), re.compile(r"^XXX-XX-\d{4}$")],
    "EMAIL": [re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")],
    "PHONE": [
        re.compile(r"^\(?(\d{3})\)?[-.\s]?(\d{3})[-.\s]?(\d{4})$"),
        re.compile(r"^\+?1?[-.\s]?\(?(\d{3})\)?[-.\s]?(\d{3})[-.\s]?(\d{4})$"),
    ],
    "DATE_ISO": [re.compile(r"^\d{4}-\d{2}-\d{2}(T\d{2}:\d{2}:\d{2})?")],
    "DATE": [
        re.compile(r"^\d{1,2}/\d{1,2}/\d{2,4}$"),
        re.compile(r"^\d{1,2}-\d{1,2}-\d{2,4}$"),
        re.compile(rf"^({_MONTHS})\s+\d{{1,2}},?\s+\d{{4}}$", re.IGNORECASE),
    ],
    "STATE_CODE": [re.compile(r"^[A-Z]{2}$")],
    "ZIP": [re.compile(r"^\d{5}(-\d{4})?$")],
    "ID_UUID": [re.compile(rf"^{_UUID}$", re.IGNORECASE)],
    "CURRENCY": [
        re.compile(r"^\$?\d{1,3}(,\d{3})*(\.\d{2})?$"),
        re.compile(r"^\d+\.\d{2}$"),
    ],
    "PERCENTAGE": [re.compile(r"^\d{1,3}(\.\d+)?%?$")],
    "BOOLEAN": [re.compile(r"^(yes|no|true|false|1|0|y|n|t|f)$", re.IGNORECASE)],
    "NAME_FULL": [
        re.compile(r"^[A-Z][a-z]+,\s*[A-Z][a-z]+"),
        re.compile(r"^[A-Z][a-z]+\s+[A-Z][a-z]+$"),
    ],
    "ID_NUMERIC": [re.compile(r"^\d+$")],
    "ID_ALPHANUMERIC": [re.compile(r"^[A-Z0-9]{4,20}$", re.IGNORECASE)],
    "CODE": [re.compile(r"^[A-Z_]{2,20}$")],
    "NAME_FIRST": [re.compile(r"^[A-Z][a-z]{1,20}$")],
    "NAME_LAST": [re.compile(r"^[A-Z][a-zA-Z'-]{1,30}$")],
    TEXT_SHORT: [re.compile(r"^.{1,50}$", re.DOTALL)],
    TEXT_LONG: [re.compile(r"^.{51,}$", re.DOTALL)],
}

# Detection order: clinical code systems, then identifiers and contact
# fields, then generic text.
DETECTION_PRIORITY: List[str] = list(PATTERN_REGEXES)

# Slot order of the fingerprint signature vector.
SIGNATURE_TAGS: List[str] = [
    "SNOMED_CT", "LOINC", "RXNORM", "ICD10", "CPT", "NDC",
    "FHIR_RESOURCE_TYPE", "FHIR_REFERENCE", "NPI", "SSN", "PHONE", "EMAIL",
    "DATE", "DATE_ISO", "NAME_FULL", "NAME_FIRST", "NAME_LAST", "STATE_CODE",
    "ZIP", "CURRENCY", "PERCENTAGE", "BOOLEAN", "ID_NUMERIC", "ID_UUID",
    "ID_ALPHANUMERIC", "CODE", TEXT_SHORT, TEXT_LONG, UNKNOWN,
]

# Tie-break for dominant pattern selection: narrower shapes first.
# A column of ten-digit NPIs also matches SNOMED_CT, PHONE and ID_NUMERIC
# on every value; this order makes NPI win that tie.
SPECIFICITY_ORDER: List[str] = [
    "NPI", "SSN", "ID_UUID", "FHIR_REFERENCE", "FHIR_RESOURCE_TYPE", "EMAIL",
    "NDC", "LOINC", "ICD10", "DATE_ISO", "DATE", "PHONE", "CPT", "ZIP",
    "RXNORM", "SNOMED_CT", "STATE_CODE", "BOOLEAN", "CURRENCY", "PERCENTAGE",
    "NAME_FULL", "ID_NUMERIC", "CODE", "NAME_FIRST", "NAME_LAST",
    "ID_ALPHANUMERIC", TEXT_SHORT, TEXT_LONG, UNKNOWN,
]

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def detect_value_patterns(value) -> List[str]:
    """
    Return every pattern tag matching ``value``, in detection priority order.

    Args:
        value: Raw source value (converted with ``str``; None is treated as empty)

    Returns:
        Non-empty list of tags; ``["UNKNOWN"]`` for empty or blank input
    """
    if value is None:
        return [UNKNOWN]
    text = str(value).strip()
    if not text:
        return [UNKNOWN]

    detected = [
        tag
        for tag, regexes in PATTERN_REGEXES.items()
        if any(regex.search(text) for regex in regexes)
    ]
    return detected or [UNKNOWN]


def validate_npi(value) -> bool:
    """
    Validate an NPI with the Luhn check digit over the ``80840`` prefix.

    Starting with the digit left of the check digit and moving left, every
    second digit is doubled (9 subtracted when the result exceeds 9); the
    NPI is valid when the total including the check digit is divisible by 10.
    """
    if value is None:
        return False
    text = str(value).strip()
    if not re.fullmatch(r"\d{10}", text):
        return False

    total = 0
    for position, char in enumerate(reversed(NPI_PREFIX + text)):
        digit = int(char)
        if position % 2 == 1:
            digit *= 2
            if digit > 9:
                digit -= 9
        total += digit
    return total % 10 == 0


def normalize_column_name(name) -> str:
    """
    Normalize a column header: lowercase, runs of non-alphanumerics become a
    single underscore, leading and trailing underscores removed.

    >>> normalize_column_name("  Patient--DOB ")
    'patient_dob'
    """
    if name is None:
        return ""
    return _NON_ALNUM.sub("_", str(name).lower()).strip("_")
