"""
Answer validation against a question's data type and JSON Schema.

A raw answer is first coerced to the question's value kind, then the
plain form of the coerced value is checked against the question's
`validation_schema` (JSON Schema 2020-12, with format checking).
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Iterable, List

import jsonschema
from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from ..contracts.catalog import Question
from ..contracts.values import AnswerValue, ValueKind, coerce
from ..errors import ValidationError


def _format_path(path: Iterable[object]) -> str:
    formatted = "$"
    for part in path:
        if isinstance(part, int):
            formatted += f"[{part}]"
        else:
            formatted += f".{part}"
    return formatted


def check_schema(schema: Dict[str, Any]) -> None:
    """Reject a malformed validation schema at definition time."""
    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as exc:
        raise ValidationError(
            f"Invalid validation schema: {exc.message}",
            errors=[exc.message],
        ) from exc


def _schema_instance(value: AnswerValue) -> Any:
    # JSON Schema numeric keywords need a JSON number, not a string
    if value.kind is ValueKind.NUMBER:
        number: Decimal = value.value
        if number == number.to_integral_value():
            return int(number)
        return float(number)
    if value.kind is ValueKind.DATE:
        return value.value.isoformat()
    return value.value


def schema_errors(value: AnswerValue, schema: Dict[str, Any]) -> List[str]:
    validator = Draft202012Validator(schema, format_checker=jsonschema.FormatChecker())
    errors = sorted(
        validator.iter_errors(_schema_instance(value)),
        key=lambda error: _format_path(error.absolute_path),
    )
    return [f"{_format_path(e.absolute_path)}: {e.message}" for e in errors]


def validate_answer(question: Question, raw: Any) -> AnswerValue:
    """
    Coerce and validate a raw answer for `question`.

    Raises ValidationError listing every problem found.
    """
    context = {"question_id": question.question_id, "question_code": question.code}
    try:
        value = coerce(question.data_type, raw)
    except ValueError as exc:
        raise ValidationError(
            f"Answer for {question.code} is not a valid {question.data_type.value}",
            errors=[str(exc)],
            context=context,
        ) from exc

    if question.validation_schema:
        errors = schema_errors(value, question.validation_schema)
        if errors:
            raise ValidationError(
                f"Answer for {question.code} failed validation",
                errors=errors,
                context=context,
            )
    return value
