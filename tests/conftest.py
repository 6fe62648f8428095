"""Shared pytest fixtures for PromptCanvas tests."""

import itertools
import shutil
import tempfile
from pathlib import Path
from typing import Generator
from unittest.mock import AsyncMock, MagicMock

import pytest

from promptcanvas.canvas.models import GeneratedImage
from promptcanvas.canvas.orchestrator import CanvasOrchestrator
from promptcanvas.core.config import CanvasConfig
from promptcanvas.storage.image_store import ImageStore
from promptcanvas.storage.persistence import SaveResult


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> CanvasConfig:
    """Create a test configuration with temporary directories.

    The ``.env`` file is ignored and the debounce is shortened so tests that
    wait for it stay fast.
    """
    return CanvasConfig(
        _env_file=None,
        static_dir=temp_dir / "static",
        data_dir=temp_dir / "data",
        models_dir=temp_dir / "models",
        container_width=1280.0,
        container_height=800.0,
        debounce_delay_ms=10,
        device="cpu",
        torch_dtype="float32",
    )


@pytest.fixture
def image_store(test_config: CanvasConfig) -> ImageStore:
    return ImageStore(test_config.database_path)


@pytest.fixture
def id_factory():
    """Async id source yielding ``id-1``, ``id-2``, ..."""
    counter = itertools.count(1)

    async def factory() -> str:
        return f"id-{next(counter)}"

    return factory


@pytest.fixture
def fake_generation() -> MagicMock:
    """Generation capability that succeeds with ``gen-1`` and no variations."""
    generation = MagicMock()
    generation.generate_image = AsyncMock(
        return_value=GeneratedImage(
            id="gen-1", image_url="https://img.test/gen-1.png", prompt_used="a red kite"
        )
    )
    generation.generate_variations = AsyncMock(return_value=[])
    generation.aclose = AsyncMock()
    return generation


@pytest.fixture
def fake_persistence() -> MagicMock:
    """Storage capability that saves successfully and lists nothing."""
    persistence = MagicMock()
    persistence.save_image = AsyncMock(return_value=SaveResult(storage_path="x.png"))
    persistence.list_saved_images = AsyncMock(return_value=[])
    persistence.aclose = AsyncMock()
    return persistence


@pytest.fixture
def orchestrator(
    fake_generation: MagicMock,
    fake_persistence: MagicMock,
    id_factory,
    test_config: CanvasConfig,
) -> CanvasOrchestrator:
    return CanvasOrchestrator(
        fake_generation, fake_persistence, id_factory=id_factory, config=test_config
    )


@pytest.fixture
def test_client(orchestrator: CanvasOrchestrator, test_config: CanvasConfig):
    """FastAPI TestClient serving the ``orchestrator`` fixture.

    The lifespan runs for the duration of the test, so background
    regenerations share one event loop across requests.
    """
    from fastapi.testclient import TestClient

    from promptcanvas.api.main import create_app

    app = create_app(test_config, orchestrator_factory=lambda cfg: orchestrator)
    with TestClient(app) as client:
        yield client
