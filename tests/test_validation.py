"""Tests for allotment record validation and deduplication."""

from __future__ import annotations

import random

import pytest

from allotrack.services.allotment.validation import (
    completeness_rank,
    dedupe,
    validate_and_dedupe,
    validate_record,
)
from conftest import build_record


class TestValidateRecord:
    """Rejection rules for raw records."""

    def test_valid_record(self):
        result = validate_record(build_record(applied=2, allotted=1, allotment_status="partially_allotted"))
        assert result.valid
        assert result.errors == []

    def test_missing_quantities_count_as_zero(self):
        record = {"pan_number": "ABCDE1234F", "application_number": "A1"}
        assert validate_record(record).valid

    @pytest.mark.parametrize("pan", ["abcde1234f", "ABCD1234F", "ABCDE12345", "1BCDE1234F", ""])
    def test_bad_pan_rejected(self, pan):
        assert not validate_record(build_record(pan=pan)).valid

    def test_missing_application_number_rejected(self):
        result = validate_record(build_record(app=""))
        assert not result.valid
        assert "missing application_number" in result.errors

    def test_allotted_exceeding_applied_rejected(self):
        result = validate_record(build_record(applied=1, allotted=2))
        assert "allotted_quantity exceeds applied_quantity" in result.errors

    @pytest.mark.parametrize("value", [-1, "-3", 1.5, "two", True])
    def test_bad_quantity_rejected(self, value):
        assert not validate_record(build_record(applied=value)).valid

    def test_numeric_strings_accepted(self):
        assert validate_record(build_record(applied="3", allotted="1.0")).valid

    def test_unknown_status_rejected(self):
        result = validate_record(build_record(allotment_status="maybe"))
        assert not result.valid

    def test_empty_status_accepted(self):
        assert validate_record(build_record(allotment_status="")).valid

    @pytest.mark.parametrize(
        "fields",
        [
            {"allotment_status": ["allotted"]},
            {"allotment_status": {"value": "allotted"}},
            {"pan_number": ["ABCDE1234F"]},
            {"application_number": ["APP0001"]},
            {"application_number": {"number": 1}},
            {"applied_quantity": {"lots": 1}},
        ],
    )
    def test_malformed_field_types_rejected(self, fields):
        """Unhashable or nested values are rejected, not raised on."""
        assert not validate_record(build_record(**fields)).valid

    def test_numeric_application_number_accepted(self):
        assert validate_record(build_record(app=1042)).valid


class TestDedupe:
    """One survivor per (PAN, application number)."""

    def test_three_duplicates_keep_most_complete(self):
        """Three copies of one application collapse to the fullest one."""
        sparse = {"pan_number": "ABCDE1234F", "application_number": "APP1"}
        partial = build_record(app="APP1", allotted=0)
        full = build_record(app="APP1", allotted=1, allotment_status="allotted", source="registrar")

        result = dedupe([sparse, full, partial])

        assert result == [full]

    def test_result_is_independent_of_input_order(self):
        records = [
            build_record(pan="ABCDE1234F", app="A1"),
            build_record(pan="ABCDE1234F", app="A1", allotment_status="not_allotted"),
            build_record(pan="ZZZZZ9999Z", app="B7", applied=2, allotted=2),
            build_record(pan="ZZZZZ9999Z", app="B7", applied=2, allotted=1),
            build_record(pan="MNOPQ5555R", app="C3"),
        ]
        expected = dedupe(records)
        rng = random.Random(7)
        for _ in range(10):
            shuffled = records[:]
            rng.shuffle(shuffled)
            assert dedupe(shuffled) == expected

    def test_idempotent(self):
        records = [build_record(app=f"A{i % 3}", allotted=i % 2) for i in range(9)]
        once = dedupe(records)
        assert dedupe(once) == once

    def test_output_sorted_by_key(self):
        records = [build_record(pan="ZZZZZ9999Z", app="1"), build_record(pan="AAAAA0000A", app="2")]
        assert [r["pan_number"] for r in dedupe(records)] == ["AAAAA0000A", "ZZZZZ9999Z"]

    def test_keyless_records_dropped(self):
        assert dedupe([{"pan_number": "ABCDE1234F"}]) == []

    def test_rank_prefers_status(self):
        with_status = build_record(allotment_status="allotted", allotted=1)
        without = build_record(allotted=1, source="x")
        assert completeness_rank(with_status) > completeness_rank(without)


class TestValidateAndDedupe:
    def test_counts(self):
        records = [
            build_record(app="A1"),
            build_record(app="A1", allotment_status="not_allotted"),
            build_record(app="A2", applied=1, allotted=3),
            build_record(pan="bad", app="A3"),
        ]
        report = validate_and_dedupe(records)
        assert report.received == 4
        assert report.rejected == 2
        assert report.duplicates == 1
        assert len(report.records) == 1
        assert report.records[0]["allotment_status"] == "not_allotted"

    def test_invalid_duplicate_cannot_shadow_valid_one(self):
        valid = build_record(app="A1", allotted=1, applied=1)
        invalid_but_fuller = build_record(app="A1", applied=1, allotted=5, allotment_status="allotted", source="x")
        report = validate_and_dedupe([valid, invalid_but_fuller])
        assert report.records == [valid]
        assert report.rejected == 1
