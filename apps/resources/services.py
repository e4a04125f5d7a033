import logging
import uuid
from typing import Any, AsyncIterator, Dict, List, Tuple, Type

from apps.blobstore.services import StorageError, StorageInterface
from apps.records.models import Algo, Data, Model, Problem
from apps.records.services import RecordNotFound, RecordStore, RecordStoreError, TortoiseRecordStore
from apps.resources.errors import (
    MalformedIdentifier,
    NotFound,
    ReferenceNotFound,
    RequiredFieldMissing,
    StorageBackendError,
)
from apps.resources.ingestion import (
    DESCRIPTION,
    NAME,
    OWNER,
    SIZE,
    UUID_FIELD,
    IngestionPipeline,
    ResourceSchema,
    Upload,
    description_key,
    parse_size,
    parse_uuid,
)
from apps.resources.schema import AlgoOut, DataOut, ModelOut, ProblemOut, ResourceKind, ResourceOut
from config.settings import StorageConfig

logger = logging.getLogger(__name__)


def parse_identifier(raw: str) -> uuid.UUID:
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise MalformedIdentifier(raw)


class ResourceService:
    """Create/list/get/patch operations for one resource kind."""

    kind: ResourceKind
    out_schema: Type[ResourceOut] = ResourceOut
    create_fields: Tuple[str, ...] = ()
    required_fields: Tuple[str, ...] = ()
    patch_fields: Tuple[str, ...] = ()

    def __init__(self, records: RecordStore, blobs: StorageInterface,
                 max_length: int = 255, description_max_length: int = 1 << 20):
        self.records = records
        self.blobs = blobs
        self.pipeline = IngestionPipeline(records, blobs)
        self.create_schema = ResourceSchema(
            kind=self.kind.value,
            fields=self.create_fields,
            required=self.required_fields,
            max_length=max_length,
            description_max_length=description_max_length,
        )
        self.patch_schema = ResourceSchema(
            kind=self.kind.value,
            fields=self.patch_fields,
            max_length=max_length,
            description_max_length=description_max_length,
            accepts_blob=False,
        )

    def serialize(self, row: Dict[str, Any]) -> Dict[str, Any]:
        return self.out_schema.model_validate(row).model_dump(mode='json')

    async def _fetch(self, raw_id: str) -> Dict[str, Any]:
        record_id = parse_identifier(raw_id)
        try:
            return await self.records.get(record_id)
        except RecordNotFound:
            raise NotFound(f'{self.kind.value} {record_id} not found')
        except RecordStoreError as e:
            logger.error('Error retrieving %s %s: %s', self.kind.value, record_id, e)
            raise StorageBackendError(f'Error retrieving {self.kind.value} {record_id}')

    async def _open_blob(self, key: str) -> AsyncIterator[bytes]:
        try:
            return await self.blobs.get(key)
        except StorageError as e:
            # the record exists, so a missing blob is a backend failure too
            logger.error('Error retrieving %s blob %s: %s', self.kind.value, key, e)
            raise StorageBackendError(f'Error retrieving {self.kind.value} blob')

    async def create(self, upload: Upload) -> Dict[str, Any]:
        return await self.pipeline.create_from_multipart(self.create_schema, upload)

    async def list(self) -> List[Dict[str, Any]]:
        try:
            return await self.records.list()
        except RecordStoreError as e:
            logger.error('Error listing %s: %s', self.kind.value, e)
            raise StorageBackendError(f'Error listing {self.kind.value}')

    async def get(self, raw_id: str) -> Dict[str, Any]:
        return await self._fetch(raw_id)

    async def get_blob(self, raw_id: str) -> AsyncIterator[bytes]:
        record = await self._fetch(raw_id)
        return await self._open_blob(str(record['id']))

    async def patch(self, raw_id: str, upload: Upload) -> Dict[str, Any]:
        record = await self._fetch(raw_id)
        return await self.pipeline.patch_from_multipart(self.patch_schema, record, upload)


class ProblemService(ResourceService):
    kind = ResourceKind.PROBLEM
    out_schema = ProblemOut
    create_fields = (NAME, OWNER, UUID_FIELD, SIZE, DESCRIPTION)
    required_fields = (NAME, OWNER, DESCRIPTION, SIZE)
    patch_fields = (NAME, OWNER, UUID_FIELD, DESCRIPTION)

    async def get_description(self, raw_id: str) -> AsyncIterator[bytes]:
        record = await self._fetch(raw_id)
        return await self._open_blob(description_key(record['id']))


class AlgoService(ResourceService):
    kind = ResourceKind.ALGO
    out_schema = AlgoOut
    create_fields = (NAME, OWNER, UUID_FIELD, SIZE)
    required_fields = (NAME, OWNER, SIZE)
    patch_fields = (NAME, OWNER, UUID_FIELD)


class DataService(ResourceService):
    kind = ResourceKind.DATA
    out_schema = DataOut
    create_fields = (OWNER, UUID_FIELD, SIZE)
    required_fields = (OWNER, SIZE)
    patch_fields = (OWNER, UUID_FIELD)


class ModelService(ResourceService):
    """Models are uploaded as a raw body, sized by Content-Length."""

    kind = ResourceKind.MODEL
    out_schema = ModelOut
    patch_fields = (OWNER, UUID_FIELD)

    def __init__(self, records: RecordStore, blobs: StorageInterface, algos: RecordStore, **limits):
        super().__init__(records, blobs, **limits)
        self.algos = algos

    async def _fetch_algo(self, algo_id: uuid.UUID) -> Dict[str, Any]:
        try:
            return await self.algos.get(algo_id)
        except RecordNotFound as e:
            raise ReferenceNotFound(f'Error uploading model: algorithm {algo_id} not found: {e}', 'algo')
        except RecordStoreError as e:
            logger.error('Error retrieving algo %s: %s', algo_id, e)
            raise StorageBackendError(f'Error retrieving algo {algo_id}')

    async def create(self, upload: Upload) -> Dict[str, Any]:
        params = upload.params
        if not params.get('algo'):
            raise RequiredFieldMissing('algo')
        algo_id = parse_identifier(params['algo'])
        if upload.content_length is None:
            raise RequiredFieldMissing(SIZE)
        size = parse_size(upload.content_length)
        owner = parse_uuid(OWNER, params[OWNER]) if params.get(OWNER) else None
        client_id = parse_uuid(UUID_FIELD, params[UUID_FIELD]) if params.get(UUID_FIELD) else None

        algo = await self._fetch_algo(algo_id)
        record_id = await self.pipeline.resolve_id(self.kind.value, client_id)
        row = {
            'id': record_id,
            # a model belongs to its algorithm's owner unless told otherwise
            'owner': owner or algo['owner'],
            'algo': algo_id,
            'size': size,
        }
        return await self.pipeline.create_from_raw(self.kind.value, row, upload)


def build_services(config: StorageConfig, blobs: StorageInterface) -> Dict[ResourceKind, ResourceService]:
    limits = {
        'max_length': config.str_field_max_length,
        'description_max_length': config.description_max_length,
    }
    algos = TortoiseRecordStore(Algo)
    return {
        ResourceKind.PROBLEM: ProblemService(TortoiseRecordStore(Problem), blobs, **limits),
        ResourceKind.ALGO: AlgoService(algos, blobs, **limits),
        ResourceKind.DATA: DataService(TortoiseRecordStore(Data), blobs, **limits),
        ResourceKind.MODEL: ModelService(TortoiseRecordStore(Model), blobs, algos, **limits),
    }
