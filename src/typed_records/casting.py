"""Coercion of raw values to field kinds.

``cast_value`` turns external input (form params, JSON) into the Python
value for a field kind. ``load_value`` turns what a store hands back
(e.g. SQLite text timestamps, 0/1 booleans) into the same Python values.
Both raise ``CastFailure`` when a value cannot be represented; the
changeset engine records that as a field error instead of propagating.
"""

from __future__ import annotations

import json
import re
import uuid
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

from typed_records.types import FieldKind


class CastFailure(ValueError):
    """A value cannot be coerced to the requested field kind."""


_INTEGER_RE = re.compile(r"^[+-]?\d+$")
_TRUE_STRINGS = frozenset({"true", "1"})
_FALSE_STRINGS = frozenset({"false", "0"})


def _cast_integer(value: Any) -> int:
    if isinstance(value, bool):
        raise CastFailure(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str) and _INTEGER_RE.match(value.strip()):
        return int(value.strip())
    raise CastFailure(value)


def _cast_float(value: Any) -> float:
    if isinstance(value, bool):
        raise CastFailure(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            raise CastFailure(value) from None
    raise CastFailure(value)


def _cast_decimal(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise CastFailure(value)
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        try:
            result = Decimal(value.strip())
        except InvalidOperation:
            raise CastFailure(value) from None
    else:
        raise CastFailure(value)
    if not result.is_finite():
        raise CastFailure(value)
    return result


def _cast_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise CastFailure(value)


def _cast_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    raise CastFailure(value)


def _cast_date(value: Any) -> date:
    if isinstance(value, datetime):
        raise CastFailure(value)
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            raise CastFailure(value) from None
    if isinstance(value, dict):
        try:
            return date(int(value["year"]), int(value["month"]), int(value["day"]))
        except (KeyError, TypeError, ValueError):
            raise CastFailure(value) from None
    raise CastFailure(value)


def _cast_time(value: Any) -> time:
    if isinstance(value, time):
        return value
    if isinstance(value, str):
        try:
            return time.fromisoformat(value.strip())
        except ValueError:
            raise CastFailure(value) from None
    raise CastFailure(value)


def _cast_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            raise CastFailure(value) from None
    raise CastFailure(value)


def _cast_binary(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    raise CastFailure(value)


def _cast_uuid(value: Any) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, str):
        try:
            return uuid.UUID(value.strip())
        except ValueError:
            raise CastFailure(value) from None
    raise CastFailure(value)


def _cast_map(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return dict(value)
    raise CastFailure(value)


_CASTERS: dict[FieldKind, Callable[[Any], Any]] = {
    FieldKind.ID: _cast_integer,
    FieldKind.STRING: _cast_string,
    FieldKind.INTEGER: _cast_integer,
    FieldKind.FLOAT: _cast_float,
    FieldKind.DECIMAL: _cast_decimal,
    FieldKind.BOOLEAN: _cast_boolean,
    FieldKind.DATE: _cast_date,
    FieldKind.TIME: _cast_time,
    FieldKind.TIMESTAMP: _cast_timestamp,
    FieldKind.BINARY: _cast_binary,
    FieldKind.UUID: _cast_uuid,
    FieldKind.MAP: _cast_map,
}


def cast_value(kind: FieldKind, value: Any) -> Any:
    """Coerce an external value to the Python value for ``kind``.

    Args:
        kind: Target field kind.
        value: Raw input value. None always casts to None.

    Returns:
        The coerced value.

    Raises:
        CastFailure: If the value cannot be coerced.
    """
    if value is None:
        return None
    return _CASTERS[kind](value)


def load_value(kind: FieldKind, value: Any) -> Any:
    """Decode a value read back from a store into its Python value.

    Stores without native types for every kind return text or integers;
    those representations are accepted here in addition to everything
    ``cast_value`` accepts.
    """
    if value is None:
        return None
    if kind is FieldKind.BOOLEAN and isinstance(value, int) and not isinstance(value, bool):
        return value != 0
    if kind is FieldKind.FLOAT and isinstance(value, int):
        return float(value)
    if kind is FieldKind.MAP and isinstance(value, (str, bytes)):
        return json.loads(value)
    if kind is FieldKind.UUID and isinstance(value, (bytes, bytearray)) and len(value) == 16:
        return uuid.UUID(bytes=bytes(value))
    return cast_value(kind, value)


def dump_value(value: Any) -> Any:
    """Encode a Python value for a store that only knows text and numbers."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    return value
