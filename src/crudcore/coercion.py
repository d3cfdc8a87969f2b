"""Casting of dynamically typed patch values to declared field types."""

from __future__ import annotations

import base64
import json
import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Callable

from crudcore.schema import FieldType


class StrictnessLevel(str, Enum):
    """How aggressively values are cast."""

    PERMISSIVE = "permissive"  # Cast everything possible
    MODERATE = "moderate"  # Cast obvious cases, reject lossy or ambiguous ones
    STRICT = "strict"  # Only accept exact types


class CoercionError(ValueError):
    """Raised when a value cannot be cast to the target type."""

    def __init__(self, value: Any, target_type: FieldType, reason: str) -> None:
        self.value = value
        self.target_type = target_type
        self.reason = reason
        super().__init__(f"Cannot coerce {value!r} to {target_type.value}: {reason}")


_TRUTHY = {"true", "1", "yes", "on", "t", "y"}
_FALSY = {"false", "0", "no", "off", "f", "n"}

_DATETIME_FORMATS = [
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M:%S%z",
    "%m/%d/%Y",
]

# Python types a stored value of each field type may have without casting.
PYTHON_TYPES: dict[FieldType, tuple[type, ...]] = {
    FieldType.STRING: (str,),
    FieldType.TEXT: (str,),
    FieldType.INTEGER: (int,),
    FieldType.FLOAT: (float, int),
    FieldType.BOOLEAN: (bool,),
    FieldType.DATETIME: (datetime,),
    FieldType.DATE: (date,),
    FieldType.UUID: (str,),
    FieldType.JSON: (dict, list),
    FieldType.ARRAY: (list,),
    FieldType.BINARY: (bytes,),
    FieldType.ENUM: (str,),
}


def _reject_in(strictness: StrictnessLevel, *levels: StrictnessLevel, reason: str) -> None:
    if strictness in levels:
        raise ValueError(reason)


def _to_string(value: Any, strictness: StrictnessLevel) -> str:
    if isinstance(value, str):
        return value
    _reject_in(strictness, StrictnessLevel.STRICT, reason=f"expected str, got {type(value).__name__}")
    if isinstance(value, (dict, list, bytes)):
        raise ValueError(f"refusing to stringify {type(value).__name__}")
    return str(value)


def _to_integer(value: Any, strictness: StrictnessLevel) -> int:
    if isinstance(value, bool):
        _reject_in(strictness, StrictnessLevel.STRICT, StrictnessLevel.MODERATE, reason="bool is not an integer")
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        _reject_in(strictness, StrictnessLevel.STRICT, reason="float is not int in strict mode")
        if value != int(value):
            _reject_in(strictness, StrictnessLevel.MODERATE, reason=f"lossy float-to-int: {value}")
        return int(value)
    if isinstance(value, str):
        _reject_in(strictness, StrictnessLevel.STRICT, reason=f"expected int, got str '{value}'")
        stripped = value.strip()
        if "." in stripped:
            number = float(stripped)
            if number != int(number):
                _reject_in(strictness, StrictnessLevel.MODERATE, reason=f"lossy str-float-to-int: {stripped}")
            return int(number)
        return int(stripped)
    raise ValueError(f"cannot coerce {type(value).__name__} to int")


def _to_float(value: Any, strictness: StrictnessLevel) -> float:
    if isinstance(value, bool):
        raise ValueError("bool is not a number")
    if isinstance(value, float):
        return value
    if isinstance(value, int):
        return float(value)
    if isinstance(value, str):
        _reject_in(strictness, StrictnessLevel.STRICT, reason=f"expected float, got str '{value}'")
        return float(value.strip())
    raise ValueError(f"cannot coerce {type(value).__name__} to float")


def _to_boolean(value: Any, strictness: StrictnessLevel) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        _reject_in(strictness, StrictnessLevel.STRICT, reason=f"expected bool, got int {value}")
        if strictness == StrictnessLevel.MODERATE and value not in (0, 1):
            raise ValueError(f"ambiguous boolean int: {value}")
        return bool(value)
    if isinstance(value, str):
        _reject_in(strictness, StrictnessLevel.STRICT, reason=f"expected bool, got str '{value}'")
        lower = value.strip().lower()
        if lower in _TRUTHY:
            return True
        if lower in _FALSY:
            return False
        raise ValueError(f"ambiguous boolean string: '{value}'")
    raise ValueError(f"cannot coerce {type(value).__name__} to bool")


def _parse_datetime(text: str) -> datetime:
    stripped = text.strip()
    try:
        parsed = datetime.fromisoformat(stripped.replace("Z", "+00:00"))
    except ValueError:
        for fmt in _DATETIME_FORMATS:
            try:
                parsed = datetime.strptime(stripped, fmt)
                break
            except ValueError:
                continue
        else:
            raise ValueError(f"cannot parse datetime from '{text}'") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _to_datetime(value: Any, strictness: StrictnessLevel) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        _reject_in(strictness, StrictnessLevel.STRICT, reason="date is not datetime in strict mode")
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        _reject_in(strictness, StrictnessLevel.STRICT, reason=f"expected datetime, got {type(value).__name__}")
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        _reject_in(strictness, StrictnessLevel.STRICT, reason=f"expected datetime, got str '{value}'")
        return _parse_datetime(value)
    raise ValueError(f"cannot coerce {type(value).__name__} to datetime")


def _to_date(value: Any, strictness: StrictnessLevel) -> date:
    if isinstance(value, datetime):
        _reject_in(strictness, StrictnessLevel.STRICT, reason="datetime is not date in strict mode")
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        _reject_in(strictness, StrictnessLevel.STRICT, reason=f"expected date, got str '{value}'")
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            return _parse_datetime(value).date()
    raise ValueError(f"cannot coerce {type(value).__name__} to date")


def _to_uuid(value: Any, strictness: StrictnessLevel) -> str:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, str):
        return str(uuid.UUID(value.strip()))
    raise ValueError(f"cannot coerce {type(value).__name__} to uuid")


def _to_json(value: Any, strictness: StrictnessLevel) -> Any:
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, str):
        _reject_in(strictness, StrictnessLevel.STRICT, reason="expected dict or list, got str")
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid JSON string: {exc}") from exc
        if not isinstance(parsed, (dict, list)):
            raise ValueError(f"JSON must parse to dict or list, got {type(parsed).__name__}")
        return parsed
    raise ValueError(f"cannot coerce {type(value).__name__} to json")


def _to_array(value: Any, strictness: StrictnessLevel) -> list:
    if isinstance(value, list):
        return value
    if isinstance(value, (tuple, set, frozenset)):
        _reject_in(strictness, StrictnessLevel.STRICT, reason=f"expected list, got {type(value).__name__}")
        return list(value) if isinstance(value, tuple) else sorted(value, key=str)
    if isinstance(value, str):
        _reject_in(strictness, StrictnessLevel.STRICT, StrictnessLevel.MODERATE, reason="expected list, got str")
        parsed = _to_json(value, strictness)
        if not isinstance(parsed, list):
            raise ValueError(f"expected JSON array, got {type(parsed).__name__}")
        return parsed
    raise ValueError(f"cannot coerce {type(value).__name__} to array")


def _to_binary(value: Any, strictness: StrictnessLevel) -> bytes:
    if isinstance(value, bytes):
        return value
    if isinstance(value, bytearray):
        return bytes(value)
    if isinstance(value, str):
        _reject_in(strictness, StrictnessLevel.STRICT, reason="expected bytes, got str")
        try:
            return base64.b64decode(value, validate=True)
        except ValueError:
            raise ValueError("cannot decode str to bytes (expected base64)") from None
    raise ValueError(f"cannot coerce {type(value).__name__} to binary")


def _to_enum(value: Any, strictness: StrictnessLevel) -> str:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, str):
        return value.strip()
    raise ValueError(f"cannot coerce {type(value).__name__} to enum")


_CASTS: dict[FieldType, Callable[[Any, StrictnessLevel], Any]] = {
    FieldType.STRING: _to_string,
    FieldType.TEXT: _to_string,
    FieldType.INTEGER: _to_integer,
    FieldType.FLOAT: _to_float,
    FieldType.BOOLEAN: _to_boolean,
    FieldType.DATETIME: _to_datetime,
    FieldType.DATE: _to_date,
    FieldType.UUID: _to_uuid,
    FieldType.JSON: _to_json,
    FieldType.ARRAY: _to_array,
    FieldType.BINARY: _to_binary,
    FieldType.ENUM: _to_enum,
}


class CoercionEngine:
    """Type-aware casting with configurable strictness."""

    def __init__(self, strictness: StrictnessLevel = StrictnessLevel.MODERATE) -> None:
        self.strictness = strictness

    def coerce(self, value: Any, target_type: FieldType) -> Any:
        """Cast ``value`` to ``target_type``; ``None`` passes through unchanged.

        Raises :class:`CoercionError` when no cast is possible at the configured strictness.
        """
        if value is None:
            return None
        cast = _CASTS[target_type]
        try:
            return cast(value, self.strictness)
        except (ValueError, TypeError, OverflowError) as exc:
            raise CoercionError(value, target_type, str(exc)) from exc
