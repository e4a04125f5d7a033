import secrets

from fastapi import HTTPException, Request
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from config.settings import StorageConfig

_basic = HTTPBasic(auto_error=False)


def credentials_match(credentials: HTTPBasicCredentials, config: StorageConfig) -> bool:
    if not config.api_user or not config.api_password:
        # no configured pair means nobody gets in
        return False
    user_ok = secrets.compare_digest(credentials.username.encode('utf-8'), config.api_user.encode('utf-8'))
    password_ok = secrets.compare_digest(credentials.password.encode('utf-8'), config.api_password.encode('utf-8'))
    return user_ok and password_ok


async def require_auth(request: Request) -> str:
    """HTTP basic check against the configured credential pair."""
    credentials = await _basic(request)
    if credentials is None or not credentials_match(credentials, request.app.state.config):
        raise HTTPException(status_code=401, detail='Invalid or missing credentials',
                            headers={'WWW-Authenticate': 'Basic'})
    return credentials.username
