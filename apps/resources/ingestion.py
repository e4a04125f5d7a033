"""Resource ingestion pipeline.

Turns a request body into a validated record plus its blob(s):

    ReadingField -> StreamingBlob -> Committing -> Committed | Failed

Scalar fields are read in arrival order into memory, bounded by the schema
limits. The `blob` field must come last so it can be streamed straight to
the blob store. Nothing is written before every scalar field has been
validated.

Blobs are streamed under a staging key private to the request. They are
moved to their final keys only inside the transaction that inserts (or
updates) the row, so a request that loses an id race never touches the
winner's blobs, and a failed move rolls the row back.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, Dict, Iterable, List, Mapping, Optional, Tuple

from starlette.requests import ClientDisconnect

from apps.blobstore.services import StorageError, StorageInterface, iter_bytes
from apps.records.services import RecordConflict, RecordNotFound, RecordStore, RecordStoreError
from apps.resources.errors import (
    BlobWriteError,
    ClientDisconnected,
    IdentifierConflict,
    InvalidDescriptionType,
    InvalidFieldEncoding,
    MisplacedBlobField,
    NotFound,
    RequiredFieldMissing,
    ResourceError,
    SizeParseError,
    StorageBackendError,
    UnknownField,
    UUIDParseError,
)
from apps.resources.multipart import MultipartReader, Part, parse_boundary

logger = logging.getLogger(__name__)

NAME = 'name'
OWNER = 'owner'
UUID_FIELD = 'uuid'
SIZE = 'size'
DESCRIPTION = 'description'
BLOB = 'blob'

# fields that are never stored as record columns
NON_COLUMNS = (UUID_FIELD, DESCRIPTION)


@dataclass(frozen=True)
class ResourceSchema:
    """Field rules for one resource kind and one operation."""
    kind: str
    fields: Tuple[str, ...]
    required: Tuple[str, ...] = ()
    max_length: int = 255
    description_max_length: int = 1 << 20
    accepts_blob: bool = True

    @property
    def allows_uuid(self) -> bool:
        return UUID_FIELD in self.fields

    def limit(self, name: str) -> int:
        return self.description_max_length if name == DESCRIPTION else self.max_length


@dataclass
class Upload:
    """Transport-level view of a request body."""
    stream: AsyncIterable[bytes]
    content_type: Optional[str] = None
    content_length: Optional[str] = None
    params: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def from_request(cls, request) -> 'Upload':
        return cls(
            stream=request.stream(),
            content_type=request.headers.get('content-type'),
            content_length=request.headers.get('content-length'),
            params=request.query_params,
        )


def description_key(record_id) -> str:
    return f'{record_id}description'


def staging_key() -> str:
    return f'staging-{uuid.uuid4().hex}'


def parse_uuid(name: str, raw: str) -> uuid.UUID:
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise UUIDParseError(name, raw)


def parse_size(raw: str) -> int:
    # isdigit alone accepts non-ASCII digits such as '²' that int() rejects
    if not (raw.isascii() and raw.isdigit()):
        raise SizeParseError(raw)
    return int(raw)


def _text(name: str, raw: bytes) -> str:
    try:
        return raw.decode('utf-8')
    except UnicodeDecodeError:
        if name in (OWNER, UUID_FIELD):
            raise UUIDParseError(name, raw.decode('latin-1'))
        if name == SIZE:
            raise SizeParseError(raw.decode('latin-1'))
        raise InvalidFieldEncoding(name)


def _missing(schema: ResourceSchema, values: Dict[str, Any]) -> Optional[str]:
    for name in schema.required:
        if name not in values or (name == NAME and not values[name]):
            return name
    return None


class IngestionPipeline:
    def __init__(self, records: RecordStore, blobs: StorageInterface):
        self.records = records
        self.blobs = blobs

    # Field decoding

    async def _read_field(self, part: Part, schema: ResourceSchema) -> Any:
        name = part.name
        if name == DESCRIPTION:
            # checked before reading: a non-markdown upload is never buffered
            if not part.filename or not part.filename.lower().endswith('.md'):
                raise InvalidDescriptionType()
            return await part.read(schema.limit(name))

        text = _text(name, await part.read(schema.limit(name)))
        if name in (OWNER, UUID_FIELD):
            return parse_uuid(name, text)
        if name == SIZE:
            return parse_size(text)
        return text

    async def _read_fields(self, reader: MultipartReader, schema: ResourceSchema) -> Tuple[Dict[str, Any], Optional[Part]]:
        """Read scalar fields until the blob part or the end of the body."""
        values: Dict[str, Any] = {}
        while True:
            part = await reader.next_part()
            if part is None:
                return values, None
            if part.name == BLOB and schema.accepts_blob:
                return values, part
            if part.name not in schema.fields:
                raise UnknownField(part.name)
            values[part.name] = await self._read_field(part, schema)

    # Identity

    async def resolve_id(self, kind: str, record_id: Optional[uuid.UUID]) -> uuid.UUID:
        """Accept a client-chosen id unless it is taken, or generate one."""
        if record_id is None:
            return uuid.uuid4()
        try:
            await self.records.get(record_id)
        except RecordNotFound:
            return record_id
        except RecordStoreError as e:
            logger.error('Error checking %s id %s: %s', kind, record_id, e)
            raise StorageBackendError(f'Error checking {kind} identifier')
        raise IdentifierConflict(f'Identifier conflict: {kind} {record_id} already exists')

    # Blob writes

    async def _write_blob(self, kind: str, key: str, size: int, chunks: AsyncIterable[bytes]) -> None:
        try:
            await self.blobs.put(key, size, chunks)
        except StorageError as e:
            logger.error('Error writing %s blob %s: %s', kind, key, e)
            raise BlobWriteError(f'Error uploading {kind} blob')
        except ClientDisconnect:
            logger.info('Client disconnected while uploading %s blob %s', kind, key)
            raise ClientDisconnected()

    async def _delete(self, keys: Iterable[str]) -> None:
        for key in keys:
            try:
                await self.blobs.delete(key)
            except StorageError as e:
                logger.warning('Could not remove blob %s after a failed ingestion: %s', key, e)

    async def _discard(self, staged: Iterable[Tuple[str, str]]) -> None:
        """Remove this request's staging blobs. Final keys are never touched here."""
        await self._delete(key for key, _ in staged)

    async def _promote(self, kind: str, staged: Iterable[Tuple[str, str]], promoted: List[str]) -> None:
        for key, final in staged:
            try:
                await self.blobs.move(key, final)
            except StorageError as e:
                logger.error('Error moving %s blob %s to %s: %s', kind, key, final, e)
                raise BlobWriteError(f'Error uploading {kind} blob')
            promoted.append(final)

    async def _commit(self, kind: str, row: Dict[str, Any], staged: List[Tuple[str, str]]) -> Dict[str, Any]:
        promoted: List[str] = []
        try:
            async with self.records.transaction():
                record = await self.records.insert(row)
                try:
                    await self._promote(kind, staged, promoted)
                except BlobWriteError:
                    # the row is held by this transaction, so nobody else owns these keys yet
                    await self._delete(promoted)
                    raise
        except RecordConflict:
            await self._discard(staged)
            raise IdentifierConflict(f"Identifier conflict: {kind} {row['id']} already exists")
        except RecordStoreError as e:
            logger.error('Error inserting %s %s: %s', kind, row['id'], e)
            await self._discard(staged)
            raise StorageBackendError(f'Error saving {kind} record')
        except BlobWriteError:
            await self._discard(staged)
            raise
        logger.info('Created %s %s (%d bytes)', kind, record['id'], record['size'])
        return record

    # Operations

    async def create_from_multipart(self, schema: ResourceSchema, upload: Upload) -> Dict[str, Any]:
        reader = MultipartReader(parse_boundary(upload.content_type), upload.stream)
        values, blob = await self._read_fields(reader, schema)

        missing = _missing(schema, values)
        if blob is None:
            raise RequiredFieldMissing(missing or BLOB)
        if missing:
            # drained so that a field after the blob still reports the misplacement
            await blob.drain()
            trailing = await reader.next_part()
            if trailing is not None:
                raise MisplacedBlobField(trailing.name)
            raise RequiredFieldMissing(missing)

        record_id = await self.resolve_id(schema.kind, values.get(UUID_FIELD))
        staged = [(staging_key(), str(record_id))]
        await self._write_blob(schema.kind, staged[0][0], values[SIZE], blob)

        try:
            trailing = await reader.next_part()
        except ClientDisconnect:
            await self._discard(staged)
            raise ClientDisconnected()
        except ResourceError:
            await self._discard(staged)
            raise
        if trailing is not None:
            await self._discard(staged)
            raise MisplacedBlobField(trailing.name)

        if DESCRIPTION in values:
            description = values[DESCRIPTION]
            key = staging_key()
            try:
                await self._write_blob(schema.kind, key, len(description), iter_bytes(description))
            except BlobWriteError:
                await self._discard(staged)
                raise
            staged.append((key, description_key(record_id)))

        row = {name: value for name, value in values.items() if name not in NON_COLUMNS}
        row['id'] = record_id
        return await self._commit(schema.kind, row, staged)

    async def create_from_raw(self, kind: str, row: Dict[str, Any], upload: Upload) -> Dict[str, Any]:
        """Store a raw request body as the blob of an already validated row."""
        staged = [(staging_key(), str(row['id']))]
        await self._write_blob(kind, staged[0][0], row[SIZE], upload.stream)
        return await self._commit(kind, row, staged)

    async def patch_from_multipart(self, schema: ResourceSchema, record: Dict[str, Any],
                                   upload: Upload) -> Dict[str, Any]:
        """Apply the supplied fields; the row update and the new description land together."""
        reader = MultipartReader(parse_boundary(upload.content_type), upload.stream)
        values, _ = await self._read_fields(reader, schema)

        if UUID_FIELD in values and str(values[UUID_FIELD]) != str(record['id']):
            raise IdentifierConflict(
                f"Identifier conflict: {schema.kind} {record['id']} cannot be renamed to {values[UUID_FIELD]}")
        if NAME in values and not values[NAME]:
            raise RequiredFieldMissing(NAME)

        staged: List[Tuple[str, str]] = []
        if DESCRIPTION in values:
            description = values[DESCRIPTION]
            key = staging_key()
            await self._write_blob(schema.kind, key, len(description), iter_bytes(description))
            staged.append((key, description_key(record['id'])))

        changes = {name: value for name, value in values.items() if name not in NON_COLUMNS}
        if not changes and not staged:
            return record
        try:
            async with self.records.transaction():
                updated = await self.records.update(record['id'], changes) if changes else record
                await self._promote(schema.kind, staged, [])
        except RecordNotFound:
            await self._discard(staged)
            raise NotFound(f"{schema.kind} {record['id']} not found")
        except RecordStoreError as e:
            logger.error('Error updating %s %s: %s', schema.kind, record['id'], e)
            await self._discard(staged)
            raise StorageBackendError(f'Error saving {schema.kind} record')
        except BlobWriteError:
            await self._discard(staged)
            raise
        return updated
