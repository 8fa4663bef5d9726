"""
Entity schemas and the registry that holds one schema per entity type.

A schema declares, per section (identity / sensitive / metadata), which
fields exist, their primitive kind, whether they are required, and an
optional default. The section a field is declared in is what routes it to
the identity or clinical store.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, field_validator

from dualvault.errors import SchemaNotFoundError, SchemaRegistrationError
from dualvault.services.validation import validate_against_schema

logger = logging.getLogger(__name__)


class FieldKind(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    STRING_ARRAY = "string_array"
    # Opaque: accepted as-is, never type-checked
    UNKNOWN = "unknown"


_PYTHON_TYPE_KINDS: dict[type, FieldKind] = {
    str: FieldKind.STRING,
    int: FieldKind.NUMBER,
    float: FieldKind.NUMBER,
    bool: FieldKind.BOOLEAN,
    datetime: FieldKind.DATE,
    date: FieldKind.DATE,
    list: FieldKind.STRING_ARRAY,
}

_KIND_JSON_SCHEMA: dict[FieldKind, dict[str, Any]] = {
    FieldKind.STRING: {"type": "string"},
    FieldKind.NUMBER: {"type": "number"},
    FieldKind.BOOLEAN: {"type": "boolean"},
    FieldKind.DATE: {"type": "date"},
    FieldKind.STRING_ARRAY: {"type": "array", "items": {"type": "string"}},
}


class FieldSpec(BaseModel):
    type: FieldKind = FieldKind.UNKNOWN
    required: bool = False
    default: Any = None

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, value: Any) -> Any:
        if isinstance(value, type):
            if value not in _PYTHON_TYPE_KINDS:
                raise ValueError(f"unsupported field type: {value.__name__}")
            return _PYTHON_TYPE_KINDS[value]
        if isinstance(value, str):
            return value.lower()
        return value

    def to_json_schema(self, nullable: bool) -> dict[str, Any]:
        if self.type is FieldKind.UNKNOWN:
            return {}
        schema = dict(_KIND_JSON_SCHEMA[self.type])
        if nullable:
            schema["type"] = [schema["type"], "null"]
        return schema


class SchemaDefinition(BaseModel):
    """Wire/config form of a schema: three sections of field specs."""

    identity: dict[str, FieldSpec] = Field(default_factory=dict)
    sensitive: dict[str, FieldSpec] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("sensitive", "clinical"),
    )
    metadata: dict[str, FieldSpec] = Field(default_factory=dict)


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


class EntitySchema:
    """A registered schema bound to its entity type name."""

    def __init__(self, name: str, definition: SchemaDefinition):
        self.name = name
        self.definition = definition

    @property
    def identity_fields(self) -> frozenset[str]:
        return frozenset(self.definition.identity)

    @property
    def sensitive_fields(self) -> frozenset[str]:
        return frozenset(self.definition.sensitive)

    @property
    def metadata_fields(self) -> frozenset[str]:
        return frozenset(self.definition.metadata)

    def fields(self) -> dict[str, FieldSpec]:
        # Identity wins, then sensitive, if a name is declared twice
        merged: dict[str, FieldSpec] = {}
        for section in (
            self.definition.metadata,
            self.definition.sensitive,
            self.definition.identity,
        ):
            merged.update(section)
        return merged

    def required_fields(self) -> list[str]:
        return sorted(name for name, spec in self.fields().items() if spec.required)

    def to_json_schema(self, partial: bool = False) -> dict[str, Any]:
        properties = {
            name: spec.to_json_schema(nullable=not spec.required)
            for name, spec in self.fields().items()
        }
        schema: dict[str, Any] = {
            "$schema": "http://json-schema.org/draft-07/schema#",
            "title": self.name,
            "type": "object",
            "properties": properties,
        }
        if not partial:
            schema["required"] = self.required_fields()
        return schema

    def validate(self, data: Mapping[str, Any], partial: bool = False) -> ValidationResult:
        """
        Check required presence and declared kinds, collecting every problem.

        ``partial`` validates an update payload: absent required fields are
        fine, but a required field may not be set to null.
        """
        errors = validate_against_schema(dict(data), self.to_json_schema(partial))
        return ValidationResult(valid=not errors, errors=errors)

    def apply_defaults(self, data: Mapping[str, Any]) -> dict[str, Any]:
        filled = dict(data)
        for name, spec in self.fields().items():
            if name not in filled and spec.default is not None:
                filled[name] = copy.deepcopy(spec.default)
        return filled

    def __repr__(self) -> str:
        return f"EntitySchema({self.name!r})"


class SchemaRegistry:
    """Holds one :class:`EntitySchema` per entity type name."""

    def __init__(self) -> None:
        self._schemas: dict[str, EntitySchema] = {}

    def register(
        self, name: str, schema: SchemaDefinition | Mapping[str, Any]
    ) -> EntitySchema:
        if name in self._schemas:
            raise SchemaRegistrationError(f'Schema "{name}" is already registered')

        definition = (
            schema
            if isinstance(schema, SchemaDefinition)
            else SchemaDefinition.model_validate(schema)
        )
        if not definition.identity and not definition.sensitive:
            raise SchemaRegistrationError(
                "Schema must define at least identity or sensitive fields"
            )

        entity_schema = EntitySchema(name, definition)
        self._schemas[name] = entity_schema
        logger.info(
            "Registered schema %s (%d identity, %d sensitive, %d metadata fields)",
            name,
            len(definition.identity),
            len(definition.sensitive),
            len(definition.metadata),
        )
        return entity_schema

    def get(self, name: str) -> EntitySchema:
        try:
            return self._schemas[name]
        except KeyError:
            raise SchemaNotFoundError(f'Schema "{name}" not found') from None

    def has(self, name: str) -> bool:
        return name in self._schemas

    def names(self) -> list[str]:
        return list(self._schemas)

    def all(self) -> list[EntitySchema]:
        return list(self._schemas.values())
