"""remap_users.normalize

Value parsing for snapshot files, manual user maps and run configuration.

``coerce_snapshot_value`` converts one JSON scalar from a snapshot file into
the Python value psycopg adapts for the column's PostgreSQL data type.
"""

from __future__ import annotations

import base64
import binascii
import re
import uuid
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any

from psycopg.types.json import Json, Jsonb

_INTEGER_TYPES = frozenset({"smallint", "integer", "bigint"})
_FLOAT_TYPES = frozenset({"real", "double precision"})
_TEXT_TYPES = frozenset({"text", "character varying", "character", "citext", "name"})
# Fraction after HH:MM:SS
_FRACTION = re.compile(r"(?<=\d\d:\d\d:\d\d)\.(\d+)")


class SnapshotValueError(ValueError):
    """Raised when a snapshot value cannot be converted to its column type."""


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: parse_identity
# ---------------------------------------------------------------------------

def parse_identity(value: Any) -> int | None:
    """Parse a user identity (bigint) from CSV/YAML/JSON input.

    Accepts ints and integral strings; blank → None. Booleans and
    fractional numbers are rejected.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"not an identity value: {value!r}")
    if isinstance(value, int):
        return value
    v = trim(str(value))
    if v is None:
        return None
    if not re.fullmatch(r"[+-]?\d+", v):
        raise ValueError(f"not an identity value: {value!r}")
    return int(v)


# ---------------------------------------------------------------------------
# Rule 3: parse_timestamp
# ---------------------------------------------------------------------------

def parse_timestamp(value: str) -> datetime:
    """Parse ISO-8601, accepting a trailing 'Z' for UTC.

    Fractional seconds of any length are accepted: padded or cut to
    microseconds (exporters commonly write 7 digits, 100ns ticks).
    """
    v = value.strip()
    if v.endswith(("Z", "z")):
        v = v[:-1] + "+00:00"
    v = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), v, count=1)
    return datetime.fromisoformat(v)


# ---------------------------------------------------------------------------
# Rule 4: coerce_snapshot_value
# ---------------------------------------------------------------------------

def coerce_snapshot_value(value: Any, data_type: str) -> Any:
    """Convert a JSON scalar to the Python value for PostgreSQL ``data_type``.

    ``data_type`` is ``information_schema.columns.data_type`` (e.g.
    'bigint', 'timestamp with time zone', 'ARRAY', 'USER-DEFINED').
    JSON null → None. Unknown types fall back to the string form and let
    the server cast it.

    Raises:
        SnapshotValueError: The value cannot be represented as ``data_type``.
    """
    if value is None:
        return None
    dt = data_type.lower()
    try:
        if dt in _INTEGER_TYPES:
            if isinstance(value, bool):
                raise ValueError("boolean given for integer column")
            if isinstance(value, float):
                if not value.is_integer():
                    raise ValueError("fractional value for integer column")
                return int(value)
            return int(value)
        if dt == "numeric":
            if isinstance(value, float):
                return Decimal(repr(value))
            return Decimal(str(value))
        if dt in _FLOAT_TYPES:
            return float(value)
        if dt == "boolean":
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.strip().lower() in ("true", "false", "1", "0"):
                return value.strip().lower() in ("true", "1")
            if isinstance(value, int) and value in (0, 1):
                return bool(value)
            raise ValueError("not a boolean")
        if dt in ("timestamp with time zone", "timestamp without time zone"):
            return parse_timestamp(str(value))
        if dt == "date":
            return date.fromisoformat(str(value).strip()[:10])
        if dt in ("time without time zone", "time with time zone"):
            return time.fromisoformat(str(value).strip())
        if dt == "uuid":
            return uuid.UUID(str(value))
        if dt == "bytea":
            return base64.b64decode(str(value), validate=True)
        if dt == "jsonb":
            return Jsonb(value)
        if dt == "json":
            return Json(value)
        if dt in _TEXT_TYPES:
            return value if isinstance(value, str) else str(value)
        if dt == "array" and isinstance(value, list):
            return value
    except (ValueError, TypeError, InvalidOperation, binascii.Error) as exc:
        raise SnapshotValueError(
            f"cannot convert {value!r} to {data_type}: {exc}"
        ) from exc
    if isinstance(value, (dict, list)):
        return Json(value)
    return str(value)
