"""
Unit tests for typed entity shapes and timestamp canonicalisation.

Tests cover:
- to_canonical_timestamp for every accepted input kind
- Rejection of values that are not points in time
- EntityModel coercion and pass-through of unknown fields
"""

from datetime import UTC, date, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from consolidator.entities import (
    CaseRecord,
    ClientRecord,
    EntityModel,
    HearingRecord,
    to_canonical_timestamp,
)

CANONICAL = "2024-01-15T09:30:00.000Z"


class TestToCanonicalTimestamp:
    """Tests for to_canonical_timestamp."""

    @pytest.mark.parametrize(
        "value",
        [
            "2024-01-15T09:30:00Z",
            "2024-01-15T09:30:00.000Z",
            "2024-01-15T09:30:00+00:00",
            "2024-01-15T15:00:00+05:30",
            "2024-01-15 09:30:00",
            1705311000000,
            1705311000,
            1705311000.0,
            datetime(2024, 1, 15, 9, 30),
            datetime(2024, 1, 15, 9, 30, tzinfo=UTC),
            datetime(2024, 1, 15, 4, 30, tzinfo=timezone(timedelta(hours=-5))),
        ],
    )
    def test_equivalent_inputs_share_one_representation(self, value: object) -> None:
        """Test that equivalent moments map to the same string."""
        assert to_canonical_timestamp(value) == CANONICAL

    @pytest.mark.parametrize(
        "value",
        ["2024-01-15", "15/01/2024", "15-01-2024", "2024/01/15", date(2024, 1, 15)],
    )
    def test_date_only_values_are_midnight_utc(self, value: object) -> None:
        """Test that dates become midnight UTC."""
        assert to_canonical_timestamp(value) == "2024-01-15T00:00:00.000Z"

    def test_day_first_with_time(self) -> None:
        """Test the day-first layout with a time component."""
        assert to_canonical_timestamp("15/01/2024 09:30") == CANONICAL

    @pytest.mark.parametrize("value", [None, ""])
    def test_empty_values_become_none(self, value: object) -> None:
        """Test that empty input is returned as None."""
        assert to_canonical_timestamp(value) is None

    @pytest.mark.parametrize("value", ["soon", "2024-13-45", True, [2024], {"y": 2024}])
    def test_rejects_non_timestamps(self, value: object) -> None:
        """Test that unrecognised values raise ValueError."""
        with pytest.raises(ValueError):
            to_canonical_timestamp(value)

    def test_out_of_range_epoch_raises_value_error(self) -> None:
        """Test that absurd epoch values raise ValueError rather than OverflowError."""
        with pytest.raises(ValueError):
            to_canonical_timestamp(10**20)

    def test_applying_twice_is_stable(self) -> None:
        """Test that canonical output is a fixed point."""
        once = to_canonical_timestamp("2024-01-15T15:00:00+05:30")
        assert to_canonical_timestamp(once) == once


class TestEntityModel:
    """Tests for the typed entity shapes."""

    def test_numeric_ids_are_coerced_to_strings(self) -> None:
        """Test that numeric ids and references become strings."""
        case = CaseRecord.model_validate({"id": 7, "client_id": 3})

        assert case.id == "7"
        assert case.client_id == "3"

    def test_unknown_fields_are_kept(self) -> None:
        """Test that fields without a declaration pass through."""
        client = ClientRecord.model_validate({"id": "c1", "vip": True, "tags": ["a"]})

        dumped = client.model_dump(mode="json")
        assert dumped["vip"] is True
        assert dumped["tags"] == ["a"]

    def test_timestamp_fields_are_canonicalised(self) -> None:
        """Test that declared timestamp fields are normalised."""
        hearing = HearingRecord.model_validate(
            {"id": "h1", "hearing_date": "2024-01-15", "created_at": 1705311000}
        )

        assert hearing.hearing_date == "2024-01-15T00:00:00.000Z"
        assert hearing.created_at == CANONICAL

    def test_undeclared_date_fields_are_left_alone(self) -> None:
        """Test that only declared timestamp fields are converted."""
        client = ClientRecord.model_validate({"id": "c1", "birthday": "15/01/2024"})

        assert client.model_dump()["birthday"] == "15/01/2024"

    def test_invalid_timestamp_raises_validation_error(self) -> None:
        """Test that a bad timestamp surfaces as a pydantic ValidationError."""
        with pytest.raises(ValidationError):
            HearingRecord.model_validate({"id": "h1", "hearing_date": "next tuesday"})

    def test_id_is_required(self) -> None:
        """Test that records without an id are rejected."""
        with pytest.raises(ValidationError):
            EntityModel.model_validate({"name": "x"})
