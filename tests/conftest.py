from collections.abc import AsyncIterator, Iterator
from pathlib import Path
from unittest.mock import patch

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from image_ingest.config import Settings
from image_ingest.main import create_app
from image_ingest.services import image_storage

FIXED_TIMESTAMP = 1700000000


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        images_dir=str(tmp_path / "images"),
        small_images_dir=str(tmp_path / "small_images"),
    )


@pytest.fixture
def app(test_settings: Settings) -> FastAPI:
    application = create_app(test_settings)
    application.state.storage.ensure_dirs()
    return application


@pytest.fixture
def fixed_timestamp() -> Iterator[int]:
    with patch.object(image_storage, "current_timestamp", return_value=FIXED_TIMESTAMP):
        yield FIXED_TIMESTAMP


@pytest.fixture
async def client(app: FastAPI, fixed_timestamp: int) -> AsyncIterator[AsyncClient]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
