"""Validation and deduplication of raw allotment records.

Raw records are plain dicts with snake_case keys as produced by the result
sources (``pan_number``, ``application_number``, ``category``,
``applied_quantity``, ``allotted_quantity``, ``allotment_status``, ...).
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from allotrack.domain.models import VALID_RESULT_STATUSES


PAN_PATTERN = re.compile(r"^[A-Z]{5}[0-9]{4}[A-Z]$")


@dataclass
class RecordValidation:
    """Result of validating one raw record."""

    valid: bool
    errors: list[str] = field(default_factory=list)


@dataclass
class ValidationReport:
    """Outcome of validating and deduplicating a fetched batch."""

    records: list[dict[str, Any]]
    received: int
    rejected: int
    duplicates: int


def _as_quantity(value: Any) -> int | None:
    """Coerce a quantity; missing counts as zero, garbage returns None."""
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not number.is_integer():
        return None
    return int(number)


def validate_record(record: Mapping[str, Any]) -> RecordValidation:
    """Validate a raw allotment record.

    Fails when the PAN or application number is missing, the PAN does not
    match ``^[A-Z]{5}[0-9]{4}[A-Z]$``, a quantity is negative or not a whole
    number, more shares were allotted than applied for, or the status is
    present but not one of the known result statuses.
    """
    errors: list[str] = []

    pan = record.get("pan_number")
    application_number = record.get("application_number")
    if not pan:
        errors.append("missing pan_number")
    elif not isinstance(pan, str) or not PAN_PATTERN.match(pan):
        errors.append("pan_number does not match PAN format")
    if application_number is None or application_number == "":
        errors.append("missing application_number")
    elif isinstance(application_number, bool) or not isinstance(application_number, (str, int)):
        errors.append("application_number is not a string")

    applied = _as_quantity(record.get("applied_quantity"))
    allotted = _as_quantity(record.get("allotted_quantity"))
    if applied is None:
        errors.append("applied_quantity is not a whole number")
    elif applied < 0:
        errors.append("applied_quantity is negative")
    if allotted is None:
        errors.append("allotted_quantity is not a whole number")
    elif allotted < 0:
        errors.append("allotted_quantity is negative")
    if applied is not None and allotted is not None and allotted > applied:
        errors.append("allotted_quantity exceeds applied_quantity")

    status = record.get("allotment_status")
    if status and (not isinstance(status, str) or status not in VALID_RESULT_STATUSES):
        errors.append(f"unknown allotment_status {status!r}")

    return RecordValidation(valid=not errors, errors=errors)


def record_key(record: Mapping[str, Any]) -> tuple[str, str] | None:
    pan = record.get("pan_number")
    application_number = record.get("application_number")
    if not pan or not application_number:
        return None
    return (str(pan), str(application_number))


def _populated_fields(record: Mapping[str, Any]) -> int:
    return sum(1 for value in record.values() if value is not None and value != "")


def completeness_rank(record: Mapping[str, Any]) -> tuple[int, int, str]:
    """Strict total order used to pick a survivor among duplicates.

    More populated fields win, then presence of a status, then the canonical
    JSON form so that ties between different records are still decided the
    same way on every run.
    """
    return (
        _populated_fields(record),
        1 if record.get("allotment_status") else 0,
        json.dumps(record, sort_keys=True, default=str),
    )


def dedupe(records: Iterable[Mapping[str, Any]]) -> list[dict[str, Any]]:
    """Keep the most complete record per (PAN, application number).

    The survivor is the maximum under :func:`completeness_rank`, so the result
    does not depend on input order, and the output is sorted by key, so
    ``dedupe(dedupe(x)) == dedupe(x)``. Records without a key are dropped.
    """
    survivors: dict[tuple[str, str], dict[str, Any]] = {}
    for record in records:
        key = record_key(record)
        if key is None:
            continue
        current = survivors.get(key)
        if current is None or completeness_rank(record) > completeness_rank(current):
            survivors[key] = dict(record)
    return [survivors[key] for key in sorted(survivors)]


def validate_and_dedupe(records: Iterable[Mapping[str, Any]]) -> ValidationReport:
    """Drop invalid records, then merge duplicates among the valid ones."""
    received = 0
    valid: list[Mapping[str, Any]] = []
    for record in records:
        received += 1
        if validate_record(record).valid:
            valid.append(record)
    survivors = dedupe(valid)
    return ValidationReport(
        records=survivors,
        received=received,
        rejected=received - len(valid),
        duplicates=len(valid) - len(survivors),
    )
