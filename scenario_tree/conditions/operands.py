"""
Operand resolution.

Turns an Operand into an AnswerValue (or None when the value is missing)
given the current answers keyed by question code.

Expression functions:
    add, sub, mul, div      numeric, missing if any argument is missing
    min, max, sum           numeric, missing arguments are skipped
    len                     length of text or of a JSON list/object
    coalesce                first argument that is present
"""

from __future__ import annotations
from decimal import Decimal
from typing import Callable, Dict, List, Mapping, Optional

from ..contracts.conditions import Operand, OperandKind
from ..contracts.values import AnswerValue, JsonValue, NumberValue, ValueKind, from_plain


class OperandError(ValueError):
    """An expression could not be computed (type mismatch, division by zero)."""
    pass


Answers = Mapping[str, AnswerValue]


def _number(value: Optional[AnswerValue], function: str) -> Optional[Decimal]:
    if value is None:
        return None
    if value.kind is ValueKind.NUMBER:
        return value.value
    raise OperandError(f"{function}() expects numbers, got {value.kind.value}")


def _strict(values: List[Optional[AnswerValue]], function: str) -> Optional[List[Decimal]]:
    numbers = [_number(v, function) for v in values]
    if any(n is None for n in numbers):
        return None
    return numbers


def _add(values):
    numbers = _strict(values, "add")
    return None if numbers is None else NumberValue(sum(numbers, Decimal(0)))


def _sub(values):
    numbers = _strict(values, "sub")
    if numbers is None or not numbers:
        return None
    result = numbers[0]
    for n in numbers[1:]:
        result -= n
    return NumberValue(result)


def _mul(values):
    numbers = _strict(values, "mul")
    if numbers is None:
        return None
    result = Decimal(1)
    for n in numbers:
        result *= n
    return NumberValue(result)


def _div(values):
    numbers = _strict(values, "div")
    if numbers is None or len(numbers) != 2:
        return None
    if numbers[1] == 0:
        raise OperandError("div() by zero")
    return NumberValue(numbers[0] / numbers[1])


def _present_numbers(values, function):
    numbers = []
    for value in values:
        if value is None:
            continue
        if value.kind is ValueKind.JSON and isinstance(value.value, list):
            numbers.extend(_number(from_plain(item), function) for item in value.value)
        else:
            numbers.append(_number(value, function))
    return [n for n in numbers if n is not None]


def _min(values):
    numbers = _present_numbers(values, "min")
    return NumberValue(min(numbers)) if numbers else None


def _max(values):
    numbers = _present_numbers(values, "max")
    return NumberValue(max(numbers)) if numbers else None


def _sum(values):
    return NumberValue(sum(_present_numbers(values, "sum"), Decimal(0)))


def _len(values):
    if len(values) != 1 or values[0] is None:
        return None
    value = values[0]
    if value.kind is ValueKind.TEXT or value.kind is ValueKind.JSON:
        return NumberValue(Decimal(len(value.value)))
    raise OperandError(f"len() expects text or JSON, got {value.kind.value}")


def _coalesce(values):
    for value in values:
        if value is not None:
            return value
    return None


FUNCTIONS: Dict[str, Callable[[List[Optional[AnswerValue]]], Optional[AnswerValue]]] = {
    "add": _add,
    "sub": _sub,
    "mul": _mul,
    "div": _div,
    "min": _min,
    "max": _max,
    "sum": _sum,
    "len": _len,
    "coalesce": _coalesce,
}


def resolve(operand: Operand, answers: Answers, depth: int = 0) -> Optional[AnswerValue]:
    if depth > 32:
        raise OperandError("Expression nested too deeply")
    if operand.kind is OperandKind.LITERAL:
        return operand.literal
    if operand.kind is OperandKind.QUESTION:
        return answers.get(operand.ref)
    function = FUNCTIONS.get(operand.function)
    if function is None:
        raise OperandError(f"Unknown expression function {operand.function!r}")
    return function([resolve(arg, answers, depth + 1) for arg in operand.args])


def as_values(value: AnswerValue) -> List[AnswerValue]:
    """Elements of a JSON list as tagged values; any other value as itself."""
    if isinstance(value, JsonValue) and isinstance(value.value, list):
        return [v for v in (from_plain(item) for item in value.value) if v is not None]
    return [value]

