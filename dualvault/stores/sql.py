"""
SQLAlchemy-backed record store.

One instance serves one entity type against one table (identity or
clinical). Field payloads live in a JSON column; the primary key and any
``indexed_fields`` are mirrored into real columns so lookups on them are
pushed down to SQL, while other exact-match filters run in Python.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from typing import Any

from pydantic import TypeAdapter
from sqlalchemy import inspect, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from dualvault.errors import DuplicateRecordError, RecordNotFoundError
from dualvault.stores.base import Record, matches_query

logger = logging.getLogger(__name__)

_json_values = TypeAdapter(Any)


class SqlRecordStore:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        row_model: type,
        entity_type: str,
        indexed_fields: tuple[str, ...] = (),
    ):
        self._sessions = session_factory
        self._row_model = row_model
        self.entity_type = entity_type
        self.key_field = inspect(row_model).primary_key[0].key
        self.indexed_fields = indexed_fields

    # -- helpers ------------------------------------------------------------

    def _key_column(self):
        return getattr(self._row_model, self.key_field)

    def _to_record(self, row) -> Record:
        record = dict(row.data or {})
        record[self.key_field] = getattr(row, self.key_field)
        return record

    def _mirror(self, row, data: Mapping[str, Any]) -> None:
        for name in self.indexed_fields:
            if name in data:
                setattr(row, name, data[name])

    async def _get_row(self, session, record_id: str):
        stmt = select(self._row_model).where(
            self._key_column() == record_id,
            self._row_model.entity_type == self.entity_type,
        )
        return (await session.execute(stmt)).scalar_one_or_none()

    # -- RecordStore ------------------------------------------------------

    async def find_by_id(self, record_id: str) -> Record | None:
        async with self._sessions() as session:
            row = await self._get_row(session, record_id)
            return self._to_record(row) if row is not None else None

    async def find_many(self, query: Mapping[str, Any] | None = None) -> list[Record]:
        query = dict(query or {})
        stmt = select(self._row_model).where(self._row_model.entity_type == self.entity_type)
        for name in (self.key_field, *self.indexed_fields):
            if name in query:
                stmt = stmt.where(getattr(self._row_model, name) == query.pop(name))

        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        records = [self._to_record(row) for row in rows]
        return [record for record in records if matches_query(record, query)]

    async def exists(self, record_id: str) -> bool:
        return await self.find_by_id(record_id) is not None

    async def create(self, data: Mapping[str, Any]) -> Record:
        payload = _json_values.dump_python(dict(data), mode="json")
        key = payload.pop(self.key_field, None) or uuid.uuid4().hex

        row = self._row_model(entity_type=self.entity_type, data=payload)
        setattr(row, self.key_field, key)
        self._mirror(row, payload)

        async with self._sessions() as session:
            try:
                async with session.begin():
                    session.add(row)
            except IntegrityError as exc:
                raise DuplicateRecordError(f"{self.key_field}={key} already exists") from exc
        logger.debug("Inserted %s row %s", self._row_model.__tablename__, key)
        return self._to_record(row)

    async def update(self, record_id: str, data: Mapping[str, Any]) -> Record:
        changes = _json_values.dump_python(dict(data), mode="json")
        changes.pop(self.key_field, None)

        async with self._sessions() as session:
            async with session.begin():
                row = await self._get_row(session, record_id)
                if row is None:
                    raise RecordNotFoundError(f"{self.key_field}={record_id} does not exist")
                # Reassign so the JSON column is flagged dirty
                row.data = {**(row.data or {}), **changes}
                self._mirror(row, changes)
            return self._to_record(row)

    async def delete(self, record_id: str) -> None:
        async with self._sessions() as session:
            async with session.begin():
                row = await self._get_row(session, record_id)
                if row is not None:
                    await session.delete(row)
