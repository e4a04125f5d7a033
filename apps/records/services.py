import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncIterator, Dict, List, Protocol, Type
from uuid import UUID

from tortoise import models
from tortoise.exceptions import BaseORMException, IntegrityError
from tortoise.transactions import in_transaction

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


class RecordStoreError(Exception):
    """Record backend failure other than absence or collision."""


class RecordNotFound(RecordStoreError):
    def __init__(self, table: str, record_id: UUID):
        super().__init__(f'{table} {record_id} not found')
        self.record_id = record_id


class RecordConflict(RecordStoreError):
    def __init__(self, table: str, record_id: UUID):
        super().__init__(f'{table} {record_id} already exists')
        self.record_id = record_id


class RecordStore(Protocol):
    async def insert(self, row: Row) -> Row:
        ...

    async def get(self, record_id: UUID) -> Row:
        ...

    async def list(self) -> List[Row]:
        ...

    async def update(self, record_id: UUID, patch: Row) -> Row:
        ...

    def transaction(self) -> AsyncContextManager[None]:
        """Writes made inside the block are rolled back if it raises."""
        ...


class TortoiseRecordStore:
    """Record store for one resource kind, backed by a Tortoise model."""

    def __init__(self, model: Type[models.Model]):
        self.model = model
        self.table = model._meta.db_table

    async def insert(self, row: Row) -> Row:
        try:
            await self.model.create(**row)
        except IntegrityError as e:
            # primary key collision: a concurrent creator won the id
            raise RecordConflict(self.table, row['id']) from e
        except BaseORMException as e:
            raise RecordStoreError(f'Error inserting into {self.table}: {e}') from e
        return await self.get(row['id'])

    async def get(self, record_id: UUID) -> Row:
        try:
            rows = await self.model.filter(id=record_id).limit(1).values()
        except BaseORMException as e:
            raise RecordStoreError(f'Error retrieving {self.table} {record_id}: {e}') from e
        if not rows:
            raise RecordNotFound(self.table, record_id)
        return rows[0]

    async def list(self) -> List[Row]:
        try:
            return await self.model.all().order_by('created_at').values()
        except BaseORMException as e:
            raise RecordStoreError(f'Error listing {self.table}: {e}') from e

    async def update(self, record_id: UUID, patch: Row) -> Row:
        try:
            updated = await self.model.filter(id=record_id).update(**patch)
        except BaseORMException as e:
            raise RecordStoreError(f'Error updating {self.table} {record_id}: {e}') from e
        if not updated:
            raise RecordNotFound(self.table, record_id)
        logger.info('Updated %s %s: %s', self.table, record_id, sorted(patch))
        return await self.get(record_id)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        try:
            async with in_transaction(self.model._meta.default_connection):
                yield
        except BaseORMException as e:
            raise RecordStoreError(f'Transaction on {self.table} failed: {e}') from e
