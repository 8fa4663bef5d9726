"""Wiring of registry, stores, cache and classifier into per-type EntityStores."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import Any

from dualvault.entity_store import DEFAULT_CACHE_TTL, EntityStore
from dualvault.services.cache import CacheBackend
from dualvault.services.classifier import FieldClassifier
from dualvault.services.pseudonym import SecretsPseudonymGenerator
from dualvault.services.schema_registry import EntitySchema, SchemaDefinition, SchemaRegistry
from dualvault.stores.base import RecordStore

logger = logging.getLogger(__name__)

StoreFactory = Callable[[str], RecordStore]


class Vault:
    """
    Entry point for application code.

    Store factories are called once per entity type, so each type gets its
    own identity and clinical store instance (or table scope).
    """

    def __init__(
        self,
        identity_store_factory: StoreFactory,
        clinical_store_factory: StoreFactory,
        cache: CacheBackend,
        classifier: FieldClassifier | None = None,
        registry: SchemaRegistry | None = None,
        cache_ttl: int = DEFAULT_CACHE_TTL,
    ):
        self.identity_store_factory = identity_store_factory
        self.clinical_store_factory = clinical_store_factory
        self.cache = cache
        self.classifier = classifier or FieldClassifier(SecretsPseudonymGenerator())
        self.registry = registry or SchemaRegistry()
        self.cache_ttl = cache_ttl
        self._entity_stores: dict[str, EntityStore] = {}

    def register(self, name: str, schema: SchemaDefinition | Mapping[str, Any]) -> EntitySchema:
        entity_schema = self.registry.register(name, schema)
        # A schema-less store may already be open for this name
        if name in self._entity_stores:
            self._entity_stores[name].schema = entity_schema
        return entity_schema

    def entity_store(self, name: str) -> EntityStore:
        """Return the EntityStore for ``name``, creating it on first use.

        Unregistered names get a schema-less store that classifies fields
        by name pattern and skips validation.
        """
        store = self._entity_stores.get(name)
        if store is None:
            schema = self.registry.get(name) if self.registry.has(name) else None
            store = EntityStore(
                name,
                self.identity_store_factory(name),
                self.clinical_store_factory(name),
                self.cache,
                self.classifier,
                schema=schema,
                cache_ttl=self.cache_ttl,
            )
            self._entity_stores[name] = store
            logger.debug("Opened entity store for %s (schema: %s)", name, schema is not None)
        return store
