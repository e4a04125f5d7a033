import asyncio
import uuid

import pytest

from apps.records.models import Algo, Data, Model, Problem
from apps.records.services import RecordConflict, RecordNotFound, TortoiseRecordStore
from config.db import close_db, init_db
from config.settings import StorageConfig


def run_with_db(scenario):
    async def wrapped():
        await init_db(StorageConfig(database_url='sqlite://:memory:'))
        try:
            return await scenario()
        finally:
            await close_db()

    return asyncio.run(wrapped())


def test_insert_get_list():
    store = TortoiseRecordStore(Problem)
    first = {'id': uuid.uuid4(), 'owner': uuid.uuid4(), 'name': 'digits', 'size': 10}
    second = {'id': uuid.uuid4(), 'owner': uuid.uuid4(), 'name': 'letters', 'size': 0}

    async def scenario():
        created = await store.insert(first)
        await store.insert(second)
        return created, await store.get(first['id']), await store.list()

    created, fetched, listed = run_with_db(scenario)

    assert str(created['id']) == str(first['id'])
    assert created['name'] == 'digits'
    assert created['size'] == 10
    assert created['created_at'] is not None
    assert fetched == created
    assert [row['name'] for row in listed] == ['digits', 'letters']


def test_duplicate_id_is_a_conflict():
    store = TortoiseRecordStore(Algo)
    row = {'id': uuid.uuid4(), 'owner': uuid.uuid4(), 'name': 'svm', 'size': 1}

    async def scenario():
        await store.insert(row)
        with pytest.raises(RecordConflict) as excinfo:
            await store.insert(dict(row, name='other'))
        assert excinfo.value.record_id == row['id']
        return await store.get(row['id'])

    assert run_with_db(scenario)['name'] == 'svm'


def test_missing_record():
    store = TortoiseRecordStore(Model)
    missing = uuid.uuid4()

    async def scenario():
        with pytest.raises(RecordNotFound):
            await store.get(missing)
        with pytest.raises(RecordNotFound):
            await store.update(missing, {'owner': uuid.uuid4()})
        return await store.list()

    assert run_with_db(scenario) == []


def test_update():
    store = TortoiseRecordStore(Problem)
    row = {'id': uuid.uuid4(), 'owner': uuid.uuid4(), 'name': 'digits', 'size': 10}
    new_owner = uuid.uuid4()

    async def scenario():
        await store.insert(row)
        return await store.update(row['id'], {'owner': new_owner, 'name': 'renamed'})

    updated = run_with_db(scenario)
    assert str(updated['owner']) == str(new_owner)
    assert updated['name'] == 'renamed'
    assert updated['size'] == 10


def test_transaction_rolls_back_on_error():
    store = TortoiseRecordStore(Data)
    row = {'id': uuid.uuid4(), 'owner': uuid.uuid4(), 'size': 3}

    async def scenario():
        with pytest.raises(RuntimeError):
            async with store.transaction():
                await store.insert(row)
                raise RuntimeError('blob move failed')
        return await store.list()

    assert run_with_db(scenario) == []
