"""
EntityStore: one logical entity, two physical stores, one cache.

Demonstrates:
- Splitting each write between an identity store and a clinical store
- Pseudonym linkage minted once at create and reused on every update
- Cache-aside reads with unconditional invalidation on writes
- Compensating writes when the second store fails after the first succeeded

Callers never see a partially merged entity: an operation either returns
the merged record, returns ``None`` (not found on read), or raises.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from typing import Any

from pydantic import TypeAdapter

from dualvault.errors import ConsistencyGapError, NotFoundError, ValidationError
from dualvault.services.cache import CacheBackend
from dualvault.services.classifier import FieldCategory, FieldClassifier, SeparatedRecord
from dualvault.services.schema_registry import EntitySchema
from dualvault.stores.base import Record, RecordStore

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 300

# Managed by the store itself; callers may read but never change them
IMMUTABLE_FIELDS = frozenset({"id", "pseudonym", "createdAt"})

_json_values = TypeAdapter(Any)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _jsonable(data: Mapping[str, Any]) -> dict[str, Any]:
    return _json_values.dump_python(dict(data), mode="json")


class EntityStore:
    """
    Create/read/update/delete for a single entity type.

    Usage:
        store = EntityStore(
            "Patient", identity_store, clinical_store, cache,
            FieldClassifier(SecretsPseudonymGenerator()),
        )
        patient = await store.create({"firstName": "John", "diagnosis": "Hypertension"})
        same = await store.find_by_id(patient["id"])
    """

    def __init__(
        self,
        entity_type: str,
        identity_store: RecordStore,
        clinical_store: RecordStore,
        cache: CacheBackend,
        classifier: FieldClassifier,
        schema: EntitySchema | None = None,
        cache_ttl: int = DEFAULT_CACHE_TTL,
    ):
        self.entity_type = entity_type
        self.identity_store = identity_store
        self.clinical_store = clinical_store
        self.cache = cache
        self.classifier = classifier
        self.schema = schema
        self.cache_ttl = cache_ttl

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def create(self, data: Mapping[str, Any] | None) -> Record:
        payload = dict(data or {})
        errors = []
        if "pseudonym" in payload:
            errors.append('Field "pseudonym" is assigned by the store')
        if self.schema is not None:
            payload = self.schema.apply_defaults(payload)
            errors.extend(self.schema.validate(payload).errors)
        if errors:
            raise ValidationError(errors)

        now = _utcnow()
        payload["createdAt"] = now
        payload["updatedAt"] = now
        entity_id = payload.pop("id", None) or self._new_id()

        separated = self.classifier.separate(_jsonable(payload), self.schema)
        identity_record = await self.identity_store.create(
            {
                "id": entity_id,
                "pseudonym": separated.pseudonym,
                **separated.identity_fields,
                **separated.metadata_fields,
            }
        )

        clinical_record = None
        if separated.has_sensitive:
            try:
                clinical_record = await self.clinical_store.create(
                    {"pseudonym": separated.pseudonym, **separated.sensitive_fields}
                )
            except Exception as exc:
                await self._compensate(
                    "create", entity_id, separated.pseudonym, exc,
                    lambda: self.identity_store.delete(entity_id),
                )
                raise

        entity = self._merge(identity_record, clinical_record)
        await self._cache_put(entity_id, entity)
        logger.info(
            "Created %s %s (clinical record: %s)",
            self.entity_type, entity_id, clinical_record is not None,
        )
        return entity

    async def find_by_id(self, entity_id: str) -> Record | None:
        cached = await self.cache.get(self.cache_key(entity_id))
        if cached is not None:
            logger.debug("Cache hit for %s %s", self.entity_type, entity_id)
            return json.loads(cached)

        identity_record = await self.identity_store.find_by_id(entity_id)
        if identity_record is None:
            return None

        clinical_record = await self._load_clinical(identity_record)
        entity = self._merge(identity_record, clinical_record)
        await self._cache_put(entity_id, entity)
        return entity

    async def find(self, query: Mapping[str, Any] | None = None) -> list[Record]:
        """
        Exact-match search over identity and metadata fields.

        Only the identity store is queried; filtering on a field that lives
        in the clinical store raises :class:`ValidationError`.
        """
        query = dict(query or {})
        clinical_fields = sorted(
            name
            for name in query
            if name not in IMMUTABLE_FIELDS
            and self.classifier.classify_field(name, self.schema) is FieldCategory.SENSITIVE
        )
        if clinical_fields:
            raise ValidationError(
                [f'Field "{name}" is stored in the clinical store and cannot be filtered on'
                 for name in clinical_fields]
            )

        results = []
        for identity_record in await self.identity_store.find_many(query):
            clinical_record = await self._load_clinical(identity_record)
            results.append(self._merge(identity_record, clinical_record))
        logger.debug("Query on %s matched %d entities", self.entity_type, len(results))
        return results

    async def update(self, entity_id: str, updates: Mapping[str, Any] | None) -> Record:
        changes = dict(updates or {})
        errors = [f'Field "{name}" cannot be changed' for name in sorted(IMMUTABLE_FIELDS & changes.keys())]
        if self.schema is not None:
            errors.extend(self.schema.validate(changes, partial=True).errors)
        if errors:
            raise ValidationError(errors)

        existing = await self.identity_store.find_by_id(entity_id)
        if existing is None:
            raise NotFoundError(f"{self.entity_type} {entity_id} not found")

        changes["updatedAt"] = _utcnow()
        pseudonym = existing.get("pseudonym")
        separated = self.classifier.separate(_jsonable(changes), self.schema, pseudonym=pseudonym)

        identity_delta = {**separated.identity_fields, **separated.metadata_fields}
        if pseudonym is None:
            # Record predates linkage; attach the pseudonym just minted
            identity_delta["pseudonym"] = separated.pseudonym

        try:
            identity_record = await self.identity_store.update(entity_id, identity_delta)
            if separated.has_sensitive:
                try:
                    clinical_record = await self._write_clinical(separated)
                except Exception as exc:
                    await self._compensate(
                        "update", entity_id, separated.pseudonym, exc,
                        lambda: self._restore_identity(entity_id, existing),
                    )
                    raise
            else:
                clinical_record = await self._load_clinical(identity_record)
        finally:
            await self.cache.invalidate(self.cache_key(entity_id))

        logger.info(
            "Updated %s %s (%d identity/metadata, %d sensitive fields)",
            self.entity_type, entity_id, len(identity_delta), len(separated.sensitive_fields),
        )
        return self._merge(identity_record, clinical_record)

    async def delete(self, entity_id: str, retain_sensitive: bool = False) -> None:
        """
        Remove an entity.

        With ``retain_sensitive`` the clinical record is kept while the
        identity record (the only link to it) is removed.
        """
        existing = await self.identity_store.find_by_id(entity_id)
        if existing is None:
            raise NotFoundError(f"{self.entity_type} {entity_id} not found")

        pseudonym = existing.get("pseudonym")
        try:
            await self.identity_store.delete(entity_id)
            if pseudonym and not retain_sensitive:
                try:
                    await self.clinical_store.delete(pseudonym)
                except Exception as exc:
                    await self._compensate(
                        "delete", entity_id, pseudonym, exc,
                        lambda: self.identity_store.create(existing),
                    )
                    raise
        finally:
            await self.cache.invalidate(self.cache_key(entity_id))

        logger.info(
            "Deleted %s %s (sensitive data retained: %s)",
            self.entity_type, entity_id, retain_sensitive,
        )

    async def find_clinical(self, pseudonym: str) -> Record | None:
        """Read a clinical record directly by pseudonym, e.g. one retained after erasure."""
        if not self.classifier.generator.validate(pseudonym):
            raise ValidationError([f"Malformed pseudonym: {pseudonym!r}"])
        return await self.clinical_store.find_by_id(pseudonym)

    def cache_key(self, entity_id: str) -> str:
        return f"{self.entity_type}:{entity_id}"

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _new_id(self) -> str:
        return f"{self.entity_type.lower()}-{uuid.uuid4().hex}"

    @staticmethod
    def _merge(identity_record: Record, clinical_record: Record | None) -> Record:
        # Identity wins on a name collision
        return _jsonable({**(clinical_record or {}), **identity_record})

    async def _cache_put(self, entity_id: str, entity: Record) -> None:
        await self.cache.set(self.cache_key(entity_id), json.dumps(entity), self.cache_ttl)

    async def _load_clinical(self, identity_record: Record) -> Record | None:
        pseudonym = identity_record.get("pseudonym")
        if not pseudonym:
            return None
        return await self.clinical_store.find_by_id(pseudonym)

    async def _write_clinical(self, separated: SeparatedRecord) -> Record:
        if await self.clinical_store.exists(separated.pseudonym):
            return await self.clinical_store.update(separated.pseudonym, separated.sensitive_fields)
        return await self.clinical_store.create(
            {"pseudonym": separated.pseudonym, **separated.sensitive_fields}
        )

    async def _restore_identity(self, entity_id: str, snapshot: Record) -> None:
        # update() only merges; fields the failed write introduced must go too
        await self.identity_store.delete(entity_id)
        await self.identity_store.create(snapshot)

    async def _compensate(
        self,
        operation: str,
        entity_id: str,
        pseudonym: str | None,
        failure: Exception,
        undo: Callable[[], Awaitable[Any]],
    ) -> None:
        """Undo the identity-side write after the clinical side failed."""
        logger.warning(
            "%s of %s %s failed on the clinical store (%s); compensating",
            operation, self.entity_type, entity_id, type(failure).__name__,
        )
        try:
            await undo()
        except Exception:
            logger.exception(
                "Compensation for %s of %s %s failed; stores are inconsistent",
                operation, self.entity_type, entity_id,
            )
            raise ConsistencyGapError(operation, entity_id, pseudonym) from failure
