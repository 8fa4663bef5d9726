"""Contract every identity/clinical backing store implements."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

Record = dict[str, Any]


class RecordStore(Protocol):
    """
    Async key/value record store.

    Each store is keyed by a single field (``id`` for identity records,
    ``pseudonym`` for clinical records). ``update`` merges the given fields
    into the existing record; ``delete`` of a missing key is a no-op.
    """

    key_field: str

    async def find_by_id(self, record_id: str) -> Record | None: ...

    async def find_many(self, query: Mapping[str, Any] | None = None) -> list[Record]: ...

    async def exists(self, record_id: str) -> bool: ...

    async def create(self, data: Mapping[str, Any]) -> Record: ...

    async def update(self, record_id: str, data: Mapping[str, Any]) -> Record: ...

    async def delete(self, record_id: str) -> None: ...


_MISSING = object()


def matches_query(record: Mapping[str, Any], query: Mapping[str, Any] | None) -> bool:
    """Exact-match filter: every query field must be present and equal."""
    if not query:
        return True
    return all(record.get(name, _MISSING) == value for name, value in query.items())
