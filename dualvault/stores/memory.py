"""Dict-backed record store for tests, demos and single-process use."""

from __future__ import annotations

import copy
import uuid
from collections.abc import Mapping
from typing import Any

from dualvault.errors import DuplicateRecordError, RecordNotFoundError
from dualvault.stores.base import Record, matches_query


class InMemoryRecordStore:
    def __init__(self, key_field: str = "id"):
        self.key_field = key_field
        self._records: dict[str, Record] = {}

    async def find_by_id(self, record_id: str) -> Record | None:
        record = self._records.get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def find_many(self, query: Mapping[str, Any] | None = None) -> list[Record]:
        return [
            copy.deepcopy(record)
            for record in self._records.values()
            if matches_query(record, query)
        ]

    async def exists(self, record_id: str) -> bool:
        return record_id in self._records

    async def create(self, data: Mapping[str, Any]) -> Record:
        record = copy.deepcopy(dict(data))
        key = record.get(self.key_field) or uuid.uuid4().hex
        if key in self._records:
            raise DuplicateRecordError(f"{self.key_field}={key} already exists")
        record[self.key_field] = key
        self._records[key] = record
        return copy.deepcopy(record)

    async def update(self, record_id: str, data: Mapping[str, Any]) -> Record:
        record = self._records.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"{self.key_field}={record_id} does not exist")
        changes = {k: v for k, v in copy.deepcopy(dict(data)).items() if k != self.key_field}
        record.update(changes)
        return copy.deepcopy(record)

    async def delete(self, record_id: str) -> None:
        self._records.pop(record_id, None)

    def __len__(self) -> int:
        return len(self._records)
