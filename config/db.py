"""Tortoise ORM bootstrap for the record store and the db blob backend."""
import logging

from tortoise import Tortoise, connections

from config.settings import StorageConfig

logger = logging.getLogger(__name__)

MODEL_MODULES = ['apps.records.models', 'apps.blobstore.models']


def tortoise_config(database_url: str) -> dict:
    return {
        'connections': {'default': database_url},
        'apps': {
            'models': {
                'models': MODEL_MODULES,
                'default_connection': 'default',
            },
        },
    }


async def init_db(config: StorageConfig) -> None:
    await Tortoise.init(config=tortoise_config(config.database_url))
    if config.generate_schemas:
        await Tortoise.generate_schemas(safe=True)
    logger.info('Record store ready (schemas generated: %s)', config.generate_schemas)


async def close_db() -> None:
    await connections.close_all()
