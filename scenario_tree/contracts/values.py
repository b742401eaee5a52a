"""
Answer Values
=============

Closed tagged union of answer value types:

    TextValue | NumberValue | BoolValue | DateValue | JsonValue

Every question data type maps onto exactly one ValueKind, so operator
dispatch in the condition engine can be checked against the full set.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Union


class ValueKind(Enum):
    TEXT = "text"
    NUMBER = "number"
    BOOL = "bool"
    DATE = "date"
    JSON = "json"


class DataType(Enum):
    """Question data types as authored in the catalog."""
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    MONEY = "money"
    PERCENTAGE = "percentage"
    ENUM = "enum"
    MULTI_ENUM = "multi_enum"
    JSON = "json"


DATA_TYPE_KINDS: Dict[DataType, ValueKind] = {
    DataType.TEXT: ValueKind.TEXT,
    DataType.NUMBER: ValueKind.NUMBER,
    DataType.BOOLEAN: ValueKind.BOOL,
    DataType.DATE: ValueKind.DATE,
    DataType.MONEY: ValueKind.NUMBER,
    DataType.PERCENTAGE: ValueKind.NUMBER,
    DataType.ENUM: ValueKind.TEXT,
    DataType.MULTI_ENUM: ValueKind.JSON,
    DataType.JSON: ValueKind.JSON,
}


@dataclass(frozen=True)
class TextValue:
    value: str
    kind: ClassVar[ValueKind] = ValueKind.TEXT


@dataclass(frozen=True)
class NumberValue:
    value: Decimal
    kind: ClassVar[ValueKind] = ValueKind.NUMBER


@dataclass(frozen=True)
class BoolValue:
    value: bool
    kind: ClassVar[ValueKind] = ValueKind.BOOL


@dataclass(frozen=True)
class DateValue:
    value: date
    kind: ClassVar[ValueKind] = ValueKind.DATE


@dataclass(frozen=True)
class JsonValue:
    # list or dict; never hashed
    value: Any
    kind: ClassVar[ValueKind] = ValueKind.JSON


AnswerValue = Union[TextValue, NumberValue, BoolValue, DateValue, JsonValue]


# =============================================================================
# CONVERSION
# =============================================================================

def _to_decimal(raw: Any) -> Decimal:
    if isinstance(raw, bool):
        raise ValueError("boolean is not a number")
    if isinstance(raw, float):
        raw = repr(raw)
    try:
        number = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"not a number: {raw!r}") from exc
    if not number.is_finite():
        raise ValueError(f"not a finite number: {raw!r}")
    return number


def _to_date(raw: Any) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    if isinstance(raw, str):
        try:
            return date.fromisoformat(raw.strip()[:10])
        except ValueError as exc:
            raise ValueError(f"not an ISO date: {raw!r}") from exc
    raise ValueError(f"not a date: {raw!r}")


def _to_bool(raw: Any) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str) and raw.strip().lower() in ("true", "yes", "1"):
        return True
    if isinstance(raw, str) and raw.strip().lower() in ("false", "no", "0"):
        return False
    raise ValueError(f"not a boolean: {raw!r}")


def coerce(data_type: DataType, raw: Any) -> AnswerValue:
    """
    Convert a raw (JSON-ish) input to the value kind of a question data type.

    Raises ValueError when the input cannot represent that type.
    """
    if isinstance(raw, (TextValue, NumberValue, BoolValue, DateValue, JsonValue)):
        raw = raw.value
    kind = DATA_TYPE_KINDS[data_type]
    if kind is ValueKind.TEXT:
        if not isinstance(raw, str):
            raise ValueError(f"expected text, got {type(raw).__name__}")
        return TextValue(raw)
    if kind is ValueKind.NUMBER:
        return NumberValue(_to_decimal(raw))
    if kind is ValueKind.BOOL:
        return BoolValue(_to_bool(raw))
    if kind is ValueKind.DATE:
        return DateValue(_to_date(raw))
    if data_type is DataType.MULTI_ENUM and not isinstance(raw, (list, tuple)):
        raise ValueError("multi_enum expects a list")
    if not isinstance(raw, (list, tuple, dict)):
        raise ValueError(f"expected JSON object or array, got {type(raw).__name__}")
    return JsonValue(list(raw) if isinstance(raw, tuple) else raw)


def from_plain(raw: Any) -> Optional[AnswerValue]:
    """Infer a value kind from a plain Python/JSON literal."""
    if raw is None:
        return None
    if isinstance(raw, (TextValue, NumberValue, BoolValue, DateValue, JsonValue)):
        return raw
    if isinstance(raw, bool):
        return BoolValue(raw)
    if isinstance(raw, (int, float, Decimal)):
        return NumberValue(_to_decimal(raw))
    if isinstance(raw, (date, datetime)):
        return DateValue(_to_date(raw))
    if isinstance(raw, str):
        return TextValue(raw)
    if isinstance(raw, (list, tuple, dict)):
        return JsonValue(list(raw) if isinstance(raw, tuple) else raw)
    raise ValueError(f"unsupported literal type: {type(raw).__name__}")


def to_plain(value: Optional[AnswerValue]) -> Any:
    """JSON-compatible plain value (numbers as strings to keep precision)."""
    if value is None:
        return None
    if value.kind is ValueKind.NUMBER:
        return format(value.value.normalize(), "f")
    if value.kind is ValueKind.DATE:
        return value.value.isoformat()
    return value.value


def to_record(value: AnswerValue) -> Dict[str, Any]:
    """Serialized form stored in event payloads."""
    return {"kind": value.kind.value, "value": to_plain(value)}


def from_record(record: Dict[str, Any]) -> AnswerValue:
    kind = ValueKind(record["kind"])
    raw = record["value"]
    if kind is ValueKind.TEXT:
        return TextValue(str(raw))
    if kind is ValueKind.NUMBER:
        return NumberValue(_to_decimal(raw))
    if kind is ValueKind.BOOL:
        return BoolValue(bool(raw))
    if kind is ValueKind.DATE:
        return DateValue(_to_date(raw))
    return JsonValue(raw)
