from fastapi import Request
from fastapi.responses import StreamingResponse

from apps.resources.errors import NotFound
from apps.resources.ingestion import Upload
from apps.resources.schema import ResourceCreated, ResourceKind
from apps.resources.services import ProblemService, ResourceService
from utils.security import require_auth


def _service(request: Request, kind: str) -> ResourceService:
    # resolved after require_auth so an unknown kind never answers an anonymous caller
    try:
        return request.app.state.services[ResourceKind(kind)]
    except ValueError:
        raise NotFound(f"Unknown resource kind '{kind}'")


async def list_resources(request: Request, kind: str):
    await require_auth(request)
    service = _service(request, kind)
    return [service.serialize(row) for row in await service.list()]


async def retrieve_resource(request: Request, kind: str, resource_id: str):
    await require_auth(request)
    service = _service(request, kind)
    return service.serialize(await service.get(resource_id))


async def retrieve_blob(request: Request, kind: str, resource_id: str):
    await require_auth(request)
    chunks = await _service(request, kind).get_blob(resource_id)
    return StreamingResponse(chunks, media_type='application/octet-stream')


async def retrieve_description(request: Request, resource_id: str):
    await require_auth(request)
    service: ProblemService = _service(request, ResourceKind.PROBLEM)
    chunks = await service.get_description(resource_id)
    return StreamingResponse(chunks, media_type='text/markdown')


async def create_resource(request: Request, kind: str):
    await require_auth(request)
    record = await _service(request, kind).create(Upload.from_request(request))
    return ResourceCreated(id=record['id']).model_dump(mode='json')


async def update_resource(request: Request, kind: str, resource_id: str):
    await require_auth(request)
    service = _service(request, kind)
    record = await service.patch(resource_id, Upload.from_request(request))
    return service.serialize(record)
