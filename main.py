"""Storage API: metadata and blob storage for problems, algos, data and models."""
import argparse
import dataclasses
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from apps.blobstore.services import pick_storage
from apps.health.routers import router as health_router
from apps.resources.routers import router as resources_router
from apps.resources.services import build_services
from config.db import close_db, init_db
from config.log import configure_logging
from config.middleware import AccessLogMiddleware
from config.settings import StorageConfig

logger = logging.getLogger(__name__)


def create_app(config: Optional[StorageConfig] = None) -> FastAPI:
    config = config or StorageConfig.from_env()
    if not (config.api_user and config.api_password):
        logger.warning('API_USER/API_PASSWORD unset: every resource route will answer 401')

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(config)
        yield
        await close_db()

    app = FastAPI(title='Storage API', version='1.0.0', lifespan=lifespan)
    app.state.config = config
    app.state.services = build_services(config, pick_storage(config))
    app.add_middleware(AccessLogMiddleware)
    app.include_router(health_router)
    app.include_router(resources_router)
    return app


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Storage API server')
    parser.add_argument('--host', help='The hostname our server will be listening on')
    parser.add_argument('--port', type=int, help='The port our storage API will be listening on')
    parser.add_argument('--cert', help='The TLS certs to serve to clients (leave blank for no TLS)')
    parser.add_argument('--key', help='The TLS key used to encrypt connection (leave blank for no TLS)')
    parser.add_argument('--data-dir', help='The directory to store blob data under (local storage only)')
    parser.add_argument('--log-level', help='Logging level (default: INFO)')
    return parser


def run(argv=None) -> None:
    args = create_parser().parse_args(argv)
    overrides = {
        'hostname': args.host,
        'port': args.port,
        'cert_file': args.cert,
        'key_file': args.key,
        'local_storage_path': args.data_dir,
        'log_level': args.log_level,
    }
    config = dataclasses.replace(StorageConfig.from_env(), **{k: v for k, v in overrides.items() if v is not None})
    configure_logging(config.log_level)

    tls = {'ssl_certfile': config.cert_file, 'ssl_keyfile': config.key_file} if config.tls_on else {}
    logger.info('Starting storage API on %s:%d (TLS: %s)', config.hostname, config.port, config.tls_on)
    uvicorn.run(create_app(config), host=config.hostname, port=config.port, log_level=config.log_level.lower(), **tls)


if __name__ == '__main__':
    run()
