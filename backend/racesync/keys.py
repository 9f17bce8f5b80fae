"""Shared-store key layout.

Race ids are case-insensitive; every helper here takes an already
normalized id. Use :func:`normalize_race_id` at the edge.
"""

from __future__ import annotations

import re

from .errors import ValidationError

MAX_RACE_ID_LENGTH = 50

RACE_PREFIX = "race:"
CLIENT_PIN_KEY = "admin:clientPin"
CHIEF_JUDGE_PIN_KEY = "admin:chiefJudgePin"

# Suffixes of keys derived from a race document
DERIVED_SUFFIXES = (
    ":devices",
    ":highestBib",
    ":deleted",
    ":deleted_entries",
    ":deleted_faults",
    ":faults",
    ":gate_assignments",
)

_RACE_ID_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


def is_valid_race_id(race_id: object) -> bool:
    if not race_id or not isinstance(race_id, str):
        return False
    if len(race_id) > MAX_RACE_ID_LENGTH:
        return False
    return bool(_RACE_ID_RE.match(race_id))


def normalize_race_id(race_id: object) -> str:
    if not is_valid_race_id(race_id):
        raise ValidationError(
            "Invalid raceId format. Use alphanumeric characters, hyphens, and underscores only (max 50 chars)."
        )
    return str(race_id).lower()


def race_key(race_id: str) -> str:
    return f"{RACE_PREFIX}{race_id}"

def devices_key(race_id: str) -> str:
    return f"{RACE_PREFIX}{race_id}:devices"

def highest_bib_key(race_id: str) -> str:
    return f"{RACE_PREFIX}{race_id}:highestBib"

def tombstone_key(race_id: str) -> str:
    return f"{RACE_PREFIX}{race_id}:deleted"

def deleted_entries_key(race_id: str) -> str:
    return f"{RACE_PREFIX}{race_id}:deleted_entries"

def faults_key(race_id: str) -> str:
    return f"{RACE_PREFIX}{race_id}:faults"

def deleted_faults_key(race_id: str) -> str:
    return f"{RACE_PREFIX}{race_id}:deleted_faults"

def gate_assignments_key(race_id: str) -> str:
    return f"{RACE_PREFIX}{race_id}:gate_assignments"


def derived_keys(race_id: str) -> list[str]:
    """Every key belonging to a race except its tombstone."""
    return [
        race_key(race_id),
        devices_key(race_id),
        highest_bib_key(race_id),
        faults_key(race_id),
        deleted_entries_key(race_id),
        deleted_faults_key(race_id),
        gate_assignments_key(race_id),
    ]


def is_derived_key(key: str) -> bool:
    return key.endswith(DERIVED_SUFFIXES)


def delete_key(item_id: str, device_id: str = "") -> str:
    """Identifier recorded in the deleted_* sets."""
    return f"{item_id}:{device_id}" if device_id else item_id
