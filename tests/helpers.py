"""Multipart encoding and in-memory store doubles shared by the tests."""
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterable, AsyncIterator, Dict, Iterable, List, Optional, Tuple

from apps.blobstore.services import BlobNotFound, StorageError, exact_size, iter_bytes
from apps.records.services import RecordConflict, RecordNotFound

AUTH = ('u', 'p')
BOUNDARY = 'storage-test-boundary'
CONTENT_TYPE = f'multipart/form-data; boundary={BOUNDARY}'

# (name, value, filename or None)
Field = Tuple[str, bytes, Optional[str]]


def encode_multipart(fields: Iterable[Field]) -> bytes:
    """Encode parts in exactly the given order."""
    body = b''
    for name, value, filename in fields:
        if isinstance(value, str):
            value = value.encode('utf-8')
        disposition = f'form-data; name="{name}"'
        if filename is not None:
            disposition += f'; filename="{filename}"'
        body += f'--{BOUNDARY}\r\nContent-Disposition: {disposition}\r\n'.encode()
        if filename is not None:
            body += b'Content-Type: application/octet-stream\r\n'
        body += b'\r\n' + value + b'\r\n'
    return body + f'--{BOUNDARY}--\r\n'.encode()


async def chunked(body: bytes, size: int = 7) -> AsyncIterator[bytes]:
    for start in range(0, len(body), size):
        yield body[start:start + size]


class MemoryStorage:
    def __init__(self, fail_puts: bool = False):
        self.blobs: Dict[str, bytes] = {}
        self.fail_puts = fail_puts

    async def put(self, blob_id: str, size: int, chunks: AsyncIterable[bytes]) -> None:
        data = b''.join([chunk async for chunk in exact_size(blob_id, size, chunks)])
        if self.fail_puts:
            raise StorageError('disk full')
        self.blobs[blob_id] = data

    async def get(self, blob_id: str) -> AsyncIterator[bytes]:
        if blob_id not in self.blobs:
            raise BlobNotFound(blob_id)
        return iter_bytes(self.blobs[blob_id])

    async def delete(self, blob_id: str) -> None:
        self.blobs.pop(blob_id, None)

    async def move(self, src: str, dst: str) -> None:
        if src not in self.blobs:
            raise BlobNotFound(src)
        self.blobs[dst] = self.blobs.pop(src)


class MemoryRecordStore:
    def __init__(self):
        self.rows: Dict[uuid.UUID, dict] = {}

    async def insert(self, row: dict) -> dict:
        if row['id'] in self.rows:
            raise RecordConflict('memory', row['id'])
        self.rows[row['id']] = dict(row)
        return dict(row)

    async def get(self, record_id: uuid.UUID) -> dict:
        if record_id not in self.rows:
            raise RecordNotFound('memory', record_id)
        return dict(self.rows[record_id])

    async def list(self) -> List[dict]:
        return [dict(row) for row in self.rows.values()]

    async def update(self, record_id: uuid.UUID, patch: dict) -> dict:
        if record_id not in self.rows:
            raise RecordNotFound('memory', record_id)
        self.rows[record_id].update(patch)
        return dict(self.rows[record_id])

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        snapshot = {record_id: dict(row) for record_id, row in self.rows.items()}
        try:
            yield
        except BaseException:
            self.rows = snapshot
            raise
