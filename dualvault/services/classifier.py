"""
Field classification: split a flat record into identity, sensitive and
metadata groups.

Demonstrates:
- Explicit-schema classification taking strict precedence over heuristics
- Pattern rules kept as ordered data, evaluated first-match-wins
- Pseudonym threading so re-classification of an existing entity never
  mints a second pseudonym
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from dualvault.services.pseudonym import PseudonymGenerator

logger = logging.getLogger(__name__)


class FieldCategory(str, Enum):
    IDENTITY = "identity"
    SENSITIVE = "sensitive"
    METADATA = "metadata"


@dataclass(frozen=True)
class FieldRule:
    """
    Assigns ``category`` to any field whose name contains one of
    ``fragments``, or equals one of ``names``.

    ``names`` holds short words that would over-match as substrings
    (``state`` in ``statement``).
    """

    category: FieldCategory
    fragments: tuple[str, ...]
    names: frozenset[str] = frozenset()

    def matches(self, field_name: str) -> bool:
        lowered = field_name.lower()
        if lowered in self.names:
            return True
        return any(fragment in lowered for fragment in self.fragments)


# Identity is listed first: a name matching both families is identity.
DEFAULT_RULES: tuple[FieldRule, ...] = (
    FieldRule(
        FieldCategory.IDENTITY,
        (
            "name", "email", "phone", "address", "ssn", "passport", "license",
            "birth", "gender", "nationality", "zip", "postal", "street",
            "apartment", "country",
        ),
        names=frozenset({"city", "state"}),
    ),
    FieldRule(
        FieldCategory.SENSITIVE,
        (
            "diagnosis", "treatment", "medication", "allerg", "medical",
            "health", "patient", "symptom", "vital", "lab", "imaging",
            "prescription", "record", "insurance", "device",
        ),
    ),
)


class SeparationSchema(Protocol):
    """Anything exposing the three explicit field-name sets."""

    @property
    def identity_fields(self) -> frozenset[str]: ...

    @property
    def sensitive_fields(self) -> frozenset[str]: ...

    @property
    def metadata_fields(self) -> frozenset[str]: ...


@dataclass(frozen=True)
class ClassificationSchema:
    identity_fields: frozenset[str] = field(default_factory=frozenset)
    sensitive_fields: frozenset[str] = field(default_factory=frozenset)
    metadata_fields: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def of(
        cls,
        identity: Iterable[str] = (),
        sensitive: Iterable[str] = (),
        metadata: Iterable[str] = (),
    ) -> "ClassificationSchema":
        return cls(frozenset(identity), frozenset(sensitive), frozenset(metadata))


@dataclass(frozen=True)
class SeparatedRecord:
    identity_fields: dict[str, Any]
    sensitive_fields: dict[str, Any]
    metadata_fields: dict[str, Any]
    pseudonym: str

    @property
    def has_sensitive(self) -> bool:
        return bool(self.sensitive_fields)


class FieldClassifier:
    """Splits records into identity / sensitive / metadata groups."""

    def __init__(
        self,
        generator: PseudonymGenerator,
        rules: tuple[FieldRule, ...] = DEFAULT_RULES,
    ):
        self.generator = generator
        self.rules = rules

    def classify_field(
        self, field_name: str, schema: SeparationSchema | None = None
    ) -> FieldCategory:
        if schema is not None:
            if field_name in schema.identity_fields:
                return FieldCategory.IDENTITY
            if field_name in schema.sensitive_fields:
                return FieldCategory.SENSITIVE
            return FieldCategory.METADATA

        for rule in self.rules:
            if rule.matches(field_name):
                return rule.category
        return FieldCategory.METADATA

    def separate(
        self,
        record: Mapping[str, Any] | None,
        schema: SeparationSchema | None = None,
        pseudonym: str | None = None,
    ) -> SeparatedRecord:
        """
        Classify every top-level key of ``record``.

        Pass the entity's existing ``pseudonym`` when re-classifying an
        update; a new one is minted only when none is given. Nested values
        travel with their top-level key.
        """
        if pseudonym is None:
            pseudonym = self.generator.generate()

        groups: dict[FieldCategory, dict[str, Any]] = {
            category: {} for category in FieldCategory
        }
        if isinstance(record, Mapping):
            for key, value in record.items():
                groups[self.classify_field(key, schema)][key] = value

        logger.debug(
            "Separated record: %d identity, %d sensitive, %d metadata fields",
            len(groups[FieldCategory.IDENTITY]),
            len(groups[FieldCategory.SENSITIVE]),
            len(groups[FieldCategory.METADATA]),
        )
        return SeparatedRecord(
            identity_fields=groups[FieldCategory.IDENTITY],
            sensitive_fields=groups[FieldCategory.SENSITIVE],
            metadata_fields=groups[FieldCategory.METADATA],
            pseudonym=pseudonym,
        )
