"""
JSON Schema validation service.

Demonstrates:
- Schema-driven data validation (a core pattern for healthcare interop)
- Collecting all errors rather than failing on the first one
- Extending Draft 7 with a ``date`` type that accepts date objects as
  well as ISO-8601 strings
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Any

from jsonschema import Draft7Validator, validators


def _is_date(checker, instance: Any) -> bool:
    if isinstance(instance, date):
        return True
    if isinstance(instance, str):
        try:
            datetime.fromisoformat(instance)
        except ValueError:
            return False
        return True
    return False


RecordValidator = validators.extend(
    Draft7Validator,
    type_checker=Draft7Validator.TYPE_CHECKER.redefine("date", _is_date),
)


def validate_against_schema(data: Any, schema: dict[str, Any]) -> list[str]:
    """
    Validate ``data`` against a JSON schema.
    Returns a list of error messages (empty list = valid), each prefixed
    with the offending field path when there is one.
    """
    validator = RecordValidator(schema)
    messages = []
    for error in validator.iter_errors(data):
        location = ".".join(str(part) for part in error.absolute_path)
        messages.append(f"{location}: {error.message}" if location else error.message)
    return messages
