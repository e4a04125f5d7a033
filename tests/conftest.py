import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure project root is importable during pytest collection
ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from config.settings import StorageConfig  # noqa: E402
from main import create_app  # noqa: E402

from helpers import AUTH  # noqa: E402


@pytest.fixture
def config(tmp_path) -> StorageConfig:
    """Settings for a self-contained app.

    - sqlite in-memory record store instead of postgres
    - local blob storage under the test's tmp_path
    """
    return StorageConfig(
        database_url='sqlite://:memory:',
        storage_backend='local',
        local_storage_path=str(tmp_path / 'blobs'),
        api_user=AUTH[0],
        api_password=AUTH[1],
        str_field_max_length=255,
        description_max_length=4096,
    )


@pytest.fixture
def client(config):
    app = create_app(config)
    # entering the client runs the lifespan, which initialises the database
    with TestClient(app) as c:
        yield c


@pytest.fixture
def readme() -> bytes:
    return b'# Problem\n\nClassify the digits.\n'
