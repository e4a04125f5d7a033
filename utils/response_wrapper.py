import functools
import logging

from fastapi.encoders import jsonable_encoder
from starlette.requests import ClientDisconnect
from starlette.responses import JSONResponse, Response

from apps.resources.errors import ClientDisconnected, ResourceError

logger = logging.getLogger(__name__)


def error_response(error: ResourceError) -> JSONResponse:
    if error.status_code >= 500:
        logger.error('%s: %s', type(error).__name__, error.message)
    else:
        logger.info('%s: %s', type(error).__name__, error.message)
    return JSONResponse(status_code=error.status_code, content={'error': error.message})


def response_wrapper(view, status_code: int = 200, message: str = 'Success'):
    """Wrap a view: payloads become {"message", "data"}, domain errors become {"error"}.

    Views returning a Response (blob streams) are passed through untouched.
    """

    @functools.wraps(view)
    async def wrapper(*args, **kwargs):
        try:
            result = await view(*args, **kwargs)
        except ResourceError as e:
            return error_response(e)
        except ClientDisconnect:
            return error_response(ClientDisconnected())
        if isinstance(result, Response):
            return result
        return JSONResponse(status_code=status_code, content={'message': message, 'data': jsonable_encoder(result)})

    return wrapper
