import hashlib
import hmac
import logging
import os
import re
import uuid
from datetime import datetime, timezone
from typing import AsyncIterable, AsyncIterator, Optional, Protocol
from urllib.parse import urlparse

import httpx
from tortoise.exceptions import BaseORMException
from tortoise.transactions import in_transaction

from apps.blobstore.models import BlobData
from config.settings import StorageConfig

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
UNSIGNED_PAYLOAD = 'UNSIGNED-PAYLOAD'
EMPTY_SHA256 = hashlib.sha256(b'').hexdigest()


class StorageError(Exception):
    """Opaque blob backend failure."""


class BlobNotFound(StorageError):
    def __init__(self, blob_id: str):
        super().__init__(f'Blob {blob_id} not found')
        self.blob_id = blob_id


class BlobSizeMismatch(StorageError):
    def __init__(self, blob_id: str, declared: int, received: int):
        super().__init__(f'Blob {blob_id}: declared {declared} bytes, received {received}')
        self.declared = declared
        self.received = received


class StorageInterface(Protocol):
    async def put(self, blob_id: str, size: int, chunks: AsyncIterable[bytes]) -> None:
        ...

    async def get(self, blob_id: str) -> AsyncIterator[bytes]:
        ...

    async def delete(self, blob_id: str) -> None:
        ...

    async def move(self, src: str, dst: str) -> None:
        """Put the blob stored under `src` in place of `dst`, replacing it."""
        ...


async def exact_size(blob_id: str, size: int, chunks: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
    """Pass chunks through, failing as soon as the stream disagrees with `size`."""
    received = 0
    async for chunk in chunks:
        received += len(chunk)
        if received > size:
            raise BlobSizeMismatch(blob_id, size, received)
        yield chunk
    if received != size:
        raise BlobSizeMismatch(blob_id, size, received)


async def iter_bytes(data: bytes) -> AsyncIterator[bytes]:
    for start in range(0, len(data), CHUNK_SIZE):
        yield data[start:start + CHUNK_SIZE]


class LocalStorage:
    def __init__(self, base_path: str):
        self.base_path = os.path.abspath(base_path)
        os.makedirs(self.base_path, exist_ok=True)

    def _path(self, blob_id: str) -> str:
        path = os.path.abspath(os.path.join(self.base_path, blob_id))
        if os.path.dirname(path) != self.base_path:
            raise StorageError(f'Invalid blob key {blob_id!r}')
        return path

    async def put(self, blob_id: str, size: int, chunks: AsyncIterable[bytes]) -> None:
        path = self._path(blob_id)
        # written aside and renamed into place so readers never see a partial blob
        tmp_path = os.path.join(self.base_path, f'.{blob_id}.{uuid.uuid4().hex}.part')
        try:
            with open(tmp_path, 'wb') as f:
                async for chunk in exact_size(blob_id, size, chunks):
                    f.write(chunk)
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f'Error writing blob {blob_id}: {e}') from e
        finally:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)

    async def get(self, blob_id: str) -> AsyncIterator[bytes]:
        path = self._path(blob_id)
        try:
            f = open(path, 'rb')
        except FileNotFoundError:
            raise BlobNotFound(blob_id)
        except OSError as e:
            raise StorageError(f'Error opening blob {blob_id}: {e}') from e
        return self._read(f)

    @staticmethod
    async def _read(f) -> AsyncIterator[bytes]:
        with f:
            while True:
                chunk = f.read(CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk

    async def delete(self, blob_id: str) -> None:
        try:
            os.remove(self._path(blob_id))
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f'Error deleting blob {blob_id}: {e}') from e

    async def move(self, src: str, dst: str) -> None:
        try:
            os.replace(self._path(src), self._path(dst))
        except FileNotFoundError:
            raise BlobNotFound(src)
        except OSError as e:
            raise StorageError(f'Error moving blob {src} to {dst}: {e}') from e


class DBStorage:
    """Store binary data in a separate DB table (BlobData).

    The whole blob is held in memory for the insert; meant for small
    deployments and tests.
    """

    async def put(self, blob_id: str, size: int, chunks: AsyncIterable[bytes]) -> None:
        data = b''.join([chunk async for chunk in exact_size(blob_id, size, chunks)])
        try:
            # upsert into BlobData
            async with in_transaction():
                existing = await BlobData.filter(id=blob_id).first()
                if existing:
                    existing.data = data
                    existing.size = size
                    await existing.save()
                else:
                    await BlobData.create(id=blob_id, size=size, data=data)
        except BaseORMException as e:
            raise StorageError(f'Error writing blob {blob_id}: {e}') from e

    async def get(self, blob_id: str) -> AsyncIterator[bytes]:
        try:
            row = await BlobData.filter(id=blob_id).first()
        except BaseORMException as e:
            raise StorageError(f'Error reading blob {blob_id}: {e}') from e
        if not row:
            raise BlobNotFound(blob_id)
        return iter_bytes(row.data)

    async def delete(self, blob_id: str) -> None:
        try:
            await BlobData.filter(id=blob_id).delete()
        except BaseORMException as e:
            raise StorageError(f'Error deleting blob {blob_id}: {e}') from e

    async def move(self, src: str, dst: str) -> None:
        try:
            async with in_transaction():
                row = await BlobData.filter(id=src).first()
                if not row:
                    raise BlobNotFound(src)
                await BlobData.filter(id=dst).delete()
                await BlobData.create(id=dst, size=row.size, data=row.data)
                await row.delete()
        except BaseORMException as e:
            raise StorageError(f'Error moving blob {src} to {dst}: {e}') from e


class S3HTTPStorage:

    def __init__(
        self,
        endpoint: str,
        bucket: str,
        access_key: str,
        secret_key: str,
        region: str | None = None,
        virtual_host: bool = False,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.endpoint = endpoint.rstrip('/')
        self.bucket = bucket
        self.access_key = access_key
        self.secret_key = secret_key
        self.service = "s3"
        self.virtual_host = virtual_host
        self.transport = transport

        parsed = urlparse(self.endpoint)
        self.host = parsed.netloc
        self.region = region or self._extract_region(self.endpoint)

    def _extract_region(self, endpoint: str) -> str:
        """Auto-detect region from endpoint URL"""
        patterns = [
            r's3[.-]([a-z0-9-]+)\.amazonaws\.com',
            r'([a-z0-9-]+)\.digitaloceanspaces\.com',
            r'([a-z0-9-]+)\.linodeobjects\.com',
            r's3\.([a-z0-9-]+)\.backblazeb2\.com',
            r's3\.([a-z0-9-]+)\.wasabisys\.com',
        ]
        for p in patterns:
            match = re.search(p, endpoint)
            if match:
                return match.group(1)

        # MinIO and generic S3 services commonly use "us-east-1"
        return "us-east-1"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport)

    def _sign(self, key: bytes, msg: str) -> bytes:
        return hmac.new(key, msg.encode('utf-8'), hashlib.sha256).digest()

    def _get_signature_key(self, date_stamp: str) -> bytes:
        k_date = self._sign(f"AWS4{self.secret_key}".encode('utf-8'), date_stamp)
        k_region = self._sign(k_date, self.region)
        k_service = self._sign(k_region, self.service)
        return self._sign(k_service, 'aws4_request')

    def _make_url_and_path(self, blob_id: str):
        """
        Supports both:
            - path-style:       https://endpoint/bucket/blob
            - virtual-host:     https://bucket.endpoint/blob
        """
        if self.virtual_host:
            url = f"{self.endpoint.replace('//', f'//{self.bucket}.')}/{blob_id}"
            path = f"/{blob_id}"
        else:
            url = f"{self.endpoint}/{self.bucket}/{blob_id}"
            path = f"/{self.bucket}/{blob_id}"

        return url, path

    def _auth_headers(self, method: str, path: str, payload_hash: str, amz_headers: dict | None = None) -> dict:
        amz_headers = dict(amz_headers or {})
        if not self.access_key or not self.secret_key:
            return amz_headers

        now = datetime.now(timezone.utc)
        amz_date = now.strftime('%Y%m%dT%H%M%SZ')
        date_stamp = now.strftime('%Y%m%d')

        # every x-amz-* header sent must be signed, in name order
        signed = {'host': self.host, 'x-amz-content-sha256': payload_hash, 'x-amz-date': amz_date}
        signed.update({name.lower(): value for name, value in amz_headers.items()})
        canonical_headers = ''.join(f'{name}:{signed[name]}\n' for name in sorted(signed))
        signed_headers = ';'.join(sorted(signed))

        canonical_request = (
            f"{method}\n"
            f"{path}\n"
            f""  # no query string
            f"\n{canonical_headers}\n"
            f"{signed_headers}\n"
            f"{payload_hash}"
        )

        string_to_sign = (
            f"AWS4-HMAC-SHA256\n"
            f"{amz_date}\n"
            f"{date_stamp}/{self.region}/s3/aws4_request\n"
            f"{hashlib.sha256(canonical_request.encode()).hexdigest()}"
        )

        signature = hmac.new(
            self._get_signature_key(date_stamp),
            string_to_sign.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

        auth = (
            f"AWS4-HMAC-SHA256 "
            f"Credential={self.access_key}/{date_stamp}/{self.region}/s3/aws4_request, "
            f"SignedHeaders={signed_headers}, "
            f"Signature={signature}"
        )

        return {
            "Authorization": auth,
            "x-amz-date": amz_date,
            "x-amz-content-sha256": payload_hash,
            **amz_headers,
        }

    async def put(self, blob_id: str, size: int, chunks: AsyncIterable[bytes]) -> None:
        url, path = self._make_url_and_path(blob_id)
        # the body is streamed, so the payload is sent unsigned
        headers = self._auth_headers("PUT", path, UNSIGNED_PAYLOAD)
        headers["Content-Type"] = "application/octet-stream"
        headers["Content-Length"] = str(size)

        try:
            async with self._client() as client:
                resp = await client.put(url, content=exact_size(blob_id, size, chunks), headers=headers)
        except httpx.HTTPError as e:
            raise StorageError(f"S3 PUT failed: {e}") from e
        if resp.status_code not in (200, 201):
            raise StorageError(f"S3 PUT failed: {resp.status_code} {resp.text}")

    async def get(self, blob_id: str) -> AsyncIterator[bytes]:
        url, path = self._make_url_and_path(blob_id)
        headers = self._auth_headers("GET", path, EMPTY_SHA256)

        client = self._client()
        try:
            resp = await client.send(client.build_request("GET", url, headers=headers), stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            raise StorageError(f"S3 GET failed: {e}") from e

        if resp.status_code == 200:
            return self._stream(client, resp)

        await resp.aread()
        await resp.aclose()
        await client.aclose()
        if resp.status_code == 404:
            raise BlobNotFound(blob_id)
        raise StorageError(f"S3 GET failed: {resp.status_code} {resp.text}")

    @staticmethod
    async def _stream(client: httpx.AsyncClient, resp: httpx.Response) -> AsyncIterator[bytes]:
        try:
            async for chunk in resp.aiter_bytes():
                yield chunk
        finally:
            await resp.aclose()
            await client.aclose()

    async def delete(self, blob_id: str) -> None:
        url, path = self._make_url_and_path(blob_id)
        headers = self._auth_headers("DELETE", path, EMPTY_SHA256)

        try:
            async with self._client() as client:
                resp = await client.delete(url, headers=headers)
        except httpx.HTTPError as e:
            raise StorageError(f"S3 DELETE failed: {e}") from e
        if resp.status_code not in (200, 204, 404):
            raise StorageError(f"S3 DELETE failed: {resp.status_code} {resp.text}")

    async def move(self, src: str, dst: str) -> None:
        # S3 has no rename: server-side copy, then drop the source
        url, path = self._make_url_and_path(dst)
        headers = self._auth_headers("PUT", path, EMPTY_SHA256,
                                     {"x-amz-copy-source": f"/{self.bucket}/{src}"})

        try:
            async with self._client() as client:
                resp = await client.put(url, headers=headers)
        except httpx.HTTPError as e:
            raise StorageError(f"S3 COPY failed: {e}") from e
        if resp.status_code == 404:
            raise BlobNotFound(src)
        if resp.status_code != 200:
            raise StorageError(f"S3 COPY failed: {resp.status_code} {resp.text}")
        await self.delete(src)


def pick_storage(config: StorageConfig) -> StorageInterface:
    """Pick storage implementation from the configured backend name.

    Anything other than "db" or "s3" selects the local filesystem.
    """
    storage_type = config.storage_backend.lower()
    if storage_type == 'db':
        storage = DBStorage()
    elif storage_type == 's3':
        storage = S3HTTPStorage(endpoint=config.s3_endpoint, bucket=config.s3_bucket, region=config.s3_region,
                                access_key=config.s3_access_key, secret_key=config.s3_secret_key,
                                virtual_host=False)
    else:
        # default local
        storage = LocalStorage(config.local_storage_path)
    logger.info('Blob store backend: %s', type(storage).__name__)
    return storage
