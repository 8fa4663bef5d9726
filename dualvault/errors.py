"""Exception hierarchy shared by the classifier, registry, stores and orchestrator."""

from __future__ import annotations


class DualVaultError(Exception):
    """Base class for every error raised by dualvault."""


class ValidationError(DualVaultError):
    """Raised before any I/O when a record (or query) breaks its schema.

    Carries every violation found, not just the first one.
    """

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Validation failed: " + "; ".join(self.errors))


class NotFoundError(DualVaultError):
    """The target of an update/delete does not exist."""


class SchemaNotFoundError(NotFoundError):
    pass


class SchemaRegistrationError(DualVaultError):
    """Duplicate schema name, or a schema with nothing to protect."""


class StoreError(DualVaultError):
    """Base for failures reported by a backing store adapter."""


class RecordNotFoundError(StoreError):
    pass


class DuplicateRecordError(StoreError):
    pass


class ConsistencyGapError(DualVaultError):
    """A cross-store write failed and so did the compensating write.

    The identity and clinical stores may now disagree for this entity;
    the attributes identify what an operator needs to repair.
    """

    def __init__(self, operation: str, entity_id: str, pseudonym: str | None):
        self.operation = operation
        self.entity_id = entity_id
        self.pseudonym = pseudonym
        super().__init__(
            f"{operation} left identity and clinical stores inconsistent "
            f"for entity {entity_id}"
        )
