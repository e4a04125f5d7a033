# middleware.py
import json
import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger('storage.access')


class AccessLogMiddleware(BaseHTTPMiddleware):
    """Request-id propagation and one structured access line per request."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get('x-request-id') or str(uuid.uuid4())
        request.state.request_id = request_id
        start = time.time()
        try:
            response: Response = await call_next(request)
        except Exception:
            logger.exception('Unhandled error', extra={'request_id': request_id})
            response = JSONResponse(status_code=500, content={'error': 'Internal error'})

        response.headers['x-request-id'] = request_id
        logger.info(json.dumps({
            'event': 'access',
            'request_id': request_id,
            'method': request.method,
            'path': request.url.path,
            'status_code': response.status_code,
            'duration_ms': int((time.time() - start) * 1000),
        }))
        return response
