"""Unit tests for remap_users.normalize."""

import uuid
from datetime import date, datetime, time, timezone
from decimal import Decimal

import pytest
from psycopg.types.json import Json, Jsonb

from remap_users.normalize import (
    SnapshotValueError,
    coerce_snapshot_value,
    parse_identity,
    parse_timestamp,
    trim,
)


# ---------------------------------------------------------------------------
# trim
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  hello  ") == "hello"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None


# ---------------------------------------------------------------------------
# parse_identity
# ---------------------------------------------------------------------------

class TestParseIdentity:
    def test_int(self):
        assert parse_identity(101) == 101

    def test_string(self):
        assert parse_identity(" 42 ") == 42

    def test_bigint_range(self):
        assert parse_identity("9007199254740993") == 9007199254740993

    def test_blank_is_none(self):
        assert parse_identity("  ") is None
        assert parse_identity(None) is None

    def test_rejects_fraction(self):
        with pytest.raises(ValueError):
            parse_identity("1.5")

    def test_rejects_bool(self):
        with pytest.raises(ValueError):
            parse_identity(True)


# ---------------------------------------------------------------------------
# parse_timestamp
# ---------------------------------------------------------------------------

class TestParseTimestamp:
    def test_z_suffix(self):
        assert parse_timestamp("2024-05-01T10:00:00Z") == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)

    def test_seven_digit_fraction_truncated(self):
        assert parse_timestamp("2024-05-01T10:00:00.1234567Z") == datetime(
            2024, 5, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)

    def test_short_fraction_padded(self):
        assert parse_timestamp("2024-05-01 10:00:00.5") == datetime(2024, 5, 1, 10, 0, 0, 500000)

    def test_fraction_with_offset(self):
        parsed = parse_timestamp("2024-05-01T10:00:00.1234567+02:00")
        assert parsed.microsecond == 123456
        assert parsed.utcoffset().total_seconds() == 7200

    def test_naive(self):
        assert parse_timestamp("2024-05-01T10:00:00").tzinfo is None


# ---------------------------------------------------------------------------
# coerce_snapshot_value
# ---------------------------------------------------------------------------

class TestCoerceSnapshotValue:
    def test_null(self):
        assert coerce_snapshot_value(None, "bigint") is None

    def test_integer_from_float(self):
        assert coerce_snapshot_value(10.0, "integer") == 10

    def test_integer_from_string(self):
        assert coerce_snapshot_value("10", "bigint") == 10

    def test_integer_rejects_fraction(self):
        with pytest.raises(SnapshotValueError):
            coerce_snapshot_value(1.5, "bigint")

    def test_integer_rejects_bool(self):
        with pytest.raises(SnapshotValueError):
            coerce_snapshot_value(True, "integer")

    def test_numeric_keeps_precision(self):
        assert coerce_snapshot_value(0.1, "numeric") == Decimal("0.1")
        assert coerce_snapshot_value("12.50", "numeric") == Decimal("12.50")

    def test_float(self):
        assert coerce_snapshot_value(2, "double precision") == 2.0

    @pytest.mark.parametrize("raw,expected", [
        (True, True), ("false", False), ("1", True), (0, False),
    ])
    def test_boolean(self, raw, expected):
        assert coerce_snapshot_value(raw, "boolean") is expected

    def test_boolean_rejects_other(self):
        with pytest.raises(SnapshotValueError):
            coerce_snapshot_value("maybe", "boolean")

    def test_timestamptz(self):
        value = coerce_snapshot_value("2024-05-01T10:00:00Z", "timestamp with time zone")
        assert value == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)

    def test_date_from_datetime_string(self):
        assert coerce_snapshot_value("2024-05-01T00:00:00", "date") == date(2024, 5, 1)

    def test_time(self):
        assert coerce_snapshot_value("08:30:00", "time without time zone") == time(8, 30)

    def test_uuid(self):
        raw = "12345678-1234-5678-1234-567812345678"
        assert coerce_snapshot_value(raw, "uuid") == uuid.UUID(raw)

    def test_bytea_base64(self):
        assert coerce_snapshot_value("aGk=", "bytea") == b"hi"

    def test_bytea_rejects_garbage(self):
        with pytest.raises(SnapshotValueError):
            coerce_snapshot_value("not base64!", "bytea")

    def test_jsonb(self):
        assert isinstance(coerce_snapshot_value({"a": 1}, "jsonb"), Jsonb)

    def test_json(self):
        assert isinstance(coerce_snapshot_value([1, 2], "json"), Json)

    def test_text_from_number(self):
        assert coerce_snapshot_value(42, "text") == "42"

    def test_array_passthrough(self):
        assert coerce_snapshot_value([1, 2], "ARRAY") == [1, 2]

    def test_unknown_type_falls_back_to_string(self):
        assert coerce_snapshot_value(5, "USER-DEFINED") == "5"
