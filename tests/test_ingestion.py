import asyncio
import uuid

import pytest
from starlette.requests import ClientDisconnect

from apps.blobstore.services import StorageError
from apps.records.services import RecordStoreError
from apps.resources.errors import (
    BlobWriteError,
    BufferOverflow,
    ClientDisconnected,
    IdentifierConflict,
    InvalidDescriptionType,
    MisplacedBlobField,
    RequiredFieldMissing,
    SizeParseError,
    StorageBackendError,
    UnknownField,
    UUIDParseError,
)
from apps.resources.ingestion import IngestionPipeline, ResourceSchema, Upload, description_key, parse_size
from helpers import CONTENT_TYPE, MemoryRecordStore, MemoryStorage, chunked, encode_multipart

PROBLEM = ResourceSchema(
    kind='problem',
    fields=('name', 'owner', 'uuid', 'size', 'description'),
    required=('name', 'owner', 'description', 'size'),
    max_length=16,
    description_max_length=64,
)
PROBLEM_PATCH = ResourceSchema(
    kind='problem',
    fields=('name', 'owner', 'uuid', 'description'),
    max_length=16,
    accepts_blob=False,
)


def upload(fields):
    return Upload(stream=chunked(encode_multipart(fields)), content_type=CONTENT_TYPE)


def problem_fields(owner_id=None, blob=b'bundle', **overrides):
    fields = {
        'name': ('name', b'digits', None),
        'owner': ('owner', str(owner_id or uuid.uuid4()).encode(), None),
        'description': ('description', b'# Digits', 'README.md'),
        'size': ('size', str(len(blob)).encode(), None),
    }
    fields.update(overrides)
    return [f for f in fields.values() if f is not None] + [('blob', blob, 'bundle.tgz')]


@pytest.fixture
def records():
    return MemoryRecordStore()


@pytest.fixture
def blobs():
    return MemoryStorage()


def test_create_commits_record_and_blobs(records, blobs):
    owner = uuid.uuid4()
    pipeline = IngestionPipeline(records, blobs)

    record = asyncio.run(pipeline.create_from_multipart(PROBLEM, upload(problem_fields(owner_id=owner))))

    assert record['owner'] == owner
    assert record['name'] == 'digits'
    assert record['size'] == 6
    assert 'description' not in record
    assert blobs.blobs[str(record['id'])] == b'bundle'
    assert blobs.blobs[description_key(record['id'])] == b'# Digits'
    assert list(records.rows) == [record['id']]


def test_name_at_max_length_is_accepted(records, blobs):
    fields = problem_fields(name=('name', b'n' * 16, None))
    record = asyncio.run(IngestionPipeline(records, blobs).create_from_multipart(PROBLEM, upload(fields)))
    assert record['name'] == 'n' * 16


@pytest.mark.parametrize('fields, error, field', [
    (problem_fields(name=('name', b'n' * 17, None)), BufferOverflow, 'name'),
    (problem_fields(owner=('owner', b'not-a-uuid', None)), UUIDParseError, 'owner'),
    (problem_fields(size=None), RequiredFieldMissing, 'size'),
    (problem_fields(name=None), RequiredFieldMissing, 'name'),
    (problem_fields(name=('name', b'', None)), RequiredFieldMissing, 'name'),
    (problem_fields(description=('description', b'# Digits', 'README.txt')), InvalidDescriptionType, 'description'),
    (problem_fields(description=('description', b'x' * 65, 'README.md')), BufferOverflow, 'description'),
    (problem_fields(extra=('algo', b'x', None)), UnknownField, 'algo'),
])
def test_validation_errors_have_no_side_effects(records, blobs, fields, error, field):
    pipeline = IngestionPipeline(records, blobs)
    with pytest.raises(error) as excinfo:
        asyncio.run(pipeline.create_from_multipart(PROBLEM, upload(fields)))
    assert excinfo.value.field == field
    assert records.rows == {}
    assert blobs.blobs == {}


def test_missing_blob(records, blobs):
    fields = problem_fields()[:-1]
    with pytest.raises(RequiredFieldMissing) as excinfo:
        asyncio.run(IngestionPipeline(records, blobs).create_from_multipart(PROBLEM, upload(fields)))
    assert excinfo.value.label == 'Blob'


def test_field_after_blob_removes_written_blob(records, blobs):
    fields = problem_fields() + [('uuid', str(uuid.uuid4()).encode(), None)]
    with pytest.raises(MisplacedBlobField) as excinfo:
        asyncio.run(IngestionPipeline(records, blobs).create_from_multipart(PROBLEM, upload(fields)))
    assert excinfo.value.field == 'uuid'
    assert records.rows == {}
    assert blobs.blobs == {}


def test_blob_first_is_misplaced(records, blobs):
    fields = problem_fields()
    fields = fields[-1:] + fields[:-1]
    with pytest.raises(MisplacedBlobField):
        asyncio.run(IngestionPipeline(records, blobs).create_from_multipart(PROBLEM, upload(fields)))
    assert blobs.blobs == {}


def test_short_blob_is_a_write_error(records, blobs):
    fields = problem_fields(size=('size', b'100', None))
    with pytest.raises(BlobWriteError):
        asyncio.run(IngestionPipeline(records, blobs).create_from_multipart(PROBLEM, upload(fields)))
    assert records.rows == {}


def test_backend_failure_is_a_write_error(records):
    blobs = MemoryStorage(fail_puts=True)
    with pytest.raises(BlobWriteError):
        asyncio.run(IngestionPipeline(records, blobs).create_from_multipart(PROBLEM, upload(problem_fields())))
    assert records.rows == {}


def test_client_chosen_id(records, blobs):
    chosen = uuid.uuid4()
    pipeline = IngestionPipeline(records, blobs)
    fields = problem_fields(uuid=('uuid', str(chosen).encode(), None))

    record = asyncio.run(pipeline.create_from_multipart(PROBLEM, upload(fields)))
    assert record['id'] == chosen

    fields = problem_fields(uuid=('uuid', str(chosen).encode(), None), blob=b'other')
    with pytest.raises(IdentifierConflict):
        asyncio.run(pipeline.create_from_multipart(PROBLEM, upload(fields)))
    assert blobs.blobs[str(chosen)] == b'bundle'


def test_raw_upload(records, blobs):
    row = {'id': uuid.uuid4(), 'owner': uuid.uuid4(), 'algo': uuid.uuid4(), 'size': 15}
    record = asyncio.run(IngestionPipeline(records, blobs).create_from_raw(
        'model', row, Upload(stream=chunked(b'fakefilecontent'))))
    assert record == row
    assert blobs.blobs[str(row['id'])] == b'fakefilecontent'


def test_patch(records, blobs):
    pipeline = IngestionPipeline(records, blobs)
    record = asyncio.run(pipeline.create_from_multipart(PROBLEM, upload(problem_fields())))
    new_owner = uuid.uuid4()

    patched = asyncio.run(pipeline.patch_from_multipart(PROBLEM_PATCH, record, upload([
        ('uuid', str(record['id']).encode(), None),
        ('owner', str(new_owner).encode(), None),
        ('description', b'# Letters', 'README.md'),
    ])))
    assert patched['owner'] == new_owner
    assert patched['name'] == 'digits'
    assert blobs.blobs[description_key(record['id'])] == b'# Letters'


@pytest.mark.parametrize('fields, error', [
    ([('uuid', str(uuid.uuid4()).encode(), None)], IdentifierConflict),
    ([('name', b'', None)], RequiredFieldMissing),
    ([('blob', b'x', 'f')], UnknownField),
    ([('size', b'1', None)], UnknownField),
])
def test_patch_errors_leave_record_unchanged(records, blobs, fields, error):
    pipeline = IngestionPipeline(records, blobs)
    record = asyncio.run(pipeline.create_from_multipart(PROBLEM, upload(problem_fields())))

    with pytest.raises(error):
        asyncio.run(pipeline.patch_from_multipart(PROBLEM_PATCH, record, upload(fields)))
    assert records.rows[record['id']] == record


def test_store_failure_on_discard_is_logged(records, caplog):
    class FlakyStorage(MemoryStorage):
        async def delete(self, blob_id):
            raise StorageError('gone away')

    fields = problem_fields() + [('name', b'late', None)]
    with pytest.raises(MisplacedBlobField):
        asyncio.run(IngestionPipeline(records, FlakyStorage()).create_from_multipart(PROBLEM, upload(fields)))
    assert 'Could not remove blob' in caplog.text


def test_client_disconnect_mid_blob_commits_nothing(records, blobs):
    body = encode_multipart(problem_fields(blob=b'x' * 100))

    async def stream():
        yield body[:-40]
        raise ClientDisconnect()

    with pytest.raises(ClientDisconnected):
        asyncio.run(IngestionPipeline(records, blobs).create_from_multipart(
            PROBLEM, Upload(stream=stream(), content_type=CONTENT_TYPE)))
    assert records.rows == {}
    assert blobs.blobs == {}


def test_concurrent_create_with_same_id_keeps_winner_blob(records, blobs):
    chosen = uuid.uuid4()
    winner = encode_multipart(problem_fields(uuid=('uuid', str(chosen).encode(), None), blob=b'AAAAAA'))
    loser = encode_multipart(problem_fields(uuid=('uuid', str(chosen).encode(), None), blob=b'BBBBBB'))
    pipeline = IngestionPipeline(records, blobs)

    async def scenario():
        loser_streaming = asyncio.Event()
        winner_done = asyncio.Event()

        async def paused_stream():
            # cut inside the blob: the id check has passed, the upload is still running
            yield loser[:-32]
            loser_streaming.set()
            await winner_done.wait()
            yield loser[-32:]

        async def create_winner():
            await loser_streaming.wait()
            try:
                return await pipeline.create_from_multipart(
                    PROBLEM, Upload(stream=chunked(winner), content_type=CONTENT_TYPE))
            finally:
                winner_done.set()

        return await asyncio.gather(
            create_winner(),
            pipeline.create_from_multipart(PROBLEM, Upload(stream=paused_stream(), content_type=CONTENT_TYPE)),
            return_exceptions=True,
        )

    created, conflict = asyncio.run(scenario())

    assert isinstance(conflict, IdentifierConflict)
    assert created['id'] == chosen
    assert records.rows[chosen]['size'] == 6
    assert blobs.blobs[str(chosen)] == b'AAAAAA'
    assert set(blobs.blobs) == {str(chosen), description_key(chosen)}


def test_failed_promotion_rolls_back_the_row(records):
    class NoMoveStorage(MemoryStorage):
        async def move(self, src, dst):
            raise StorageError('rename failed')

    blobs = NoMoveStorage()
    with pytest.raises(BlobWriteError):
        asyncio.run(IngestionPipeline(records, blobs).create_from_multipart(PROBLEM, upload(problem_fields())))
    assert records.rows == {}
    assert blobs.blobs == {}


def test_failed_patch_keeps_previous_description(records, blobs):
    pipeline = IngestionPipeline(records, blobs)
    record = asyncio.run(pipeline.create_from_multipart(PROBLEM, upload(problem_fields())))

    async def failing_update(record_id, patch):
        raise RecordStoreError('connection reset')

    records.update = failing_update
    with pytest.raises(StorageBackendError):
        asyncio.run(pipeline.patch_from_multipart(PROBLEM_PATCH, record, upload([
            ('name', b'letters', None),
            ('description', b'# Letters', 'README.md'),
        ])))
    assert blobs.blobs[description_key(record['id'])] == b'# Digits'
    assert set(blobs.blobs) == {str(record['id']), description_key(record['id'])}


@pytest.mark.parametrize('raw', ['²', '٣', '1.5', '-1', '', ' 1'])
def test_parse_size_rejects_non_ascii_and_non_integer(raw):
    with pytest.raises(SizeParseError):
        parse_size(raw)


def test_parse_size():
    assert parse_size('0') == 0
    assert parse_size('666') == 666
