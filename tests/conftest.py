"""Shared pytest fixtures for Spriteworks tests."""

from __future__ import annotations

import hashlib
import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest
from PIL import Image, ImageDraw

from spriteworks.core.cache_store import FileCacheStore
from spriteworks.core.config import SpriteworksConfig
from spriteworks.core.errors import StorageFailed
from spriteworks.core.frames import to_png_bytes
from spriteworks.core.orchestrator import GenerationOrchestrator
from spriteworks.core.queue import JobQueue
from spriteworks.core.records import GenerationStore
from spriteworks.core.synthesis import SynthesisProvider

TEST_TOKENS = "test-token:user-1,other-token:user-2"


class FakeProvider(SynthesisProvider):
    """Deterministic provider that draws a coloured grid.

    Every tile gets a colour derived from the prompt, the seed and the tile
    index.  Only the left half of each tile is filled so a horizontal flip
    is observable.
    """

    def __init__(self, grid_size: int = 4) -> None:
        self.grid_size = grid_size
        self.calls: list[tuple[str, int, int]] = []
        self.closed = False

    async def synthesize(self, prompt: str, seed: int, size: int = 1024) -> bytes:
        self.calls.append((prompt, seed, size))
        tile = size // self.grid_size
        digest = hashlib.sha256(f"{prompt}|{seed}".encode("utf-8")).digest()

        image = Image.new("RGBA", (size, size), (0, 0, 0, 0))
        draw = ImageDraw.Draw(image)
        for index in range(self.grid_size**2):
            row, col = divmod(index, self.grid_size)
            colour = (digest[index % len(digest)], (index * 16) % 256, (col * 60) % 256, 255)
            left, top = col * tile, row * tile
            draw.rectangle([left, top, left + tile // 2 - 1, top + tile - 1], fill=colour)
        return to_png_bytes(image)

    async def aclose(self) -> None:
        self.closed = True


class FailingStore(FileCacheStore):
    """File store whose writes start failing after ``fail_after`` puts."""

    def __init__(self, root: Path, fail_after: int = 0) -> None:
        super().__init__(root)
        self.fail_after = fail_after
        self.puts = 0

    def put(self, key, data, asset=None, ext="png"):
        self.puts += 1
        if self.puts > self.fail_after:
            raise StorageFailed("simulated upload failure")
        return super().put(key, data, asset, ext)


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
def test_config(temp_dir: Path) -> SpriteworksConfig:
    """Create a test configuration pointing every path at ``temp_dir``."""
    return SpriteworksConfig(
        data_dir=temp_dir / "data",
        cache_dir=temp_dir / "data" / "sprites",
        public_base_url="/sprites",
        api_tokens=TEST_TOKENS,
        synthesis_backend="openai",
        synthesis_backoff_base=0.0,
        device="cpu",
        torch_dtype="float32",
    )


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def cache_store(test_config: SpriteworksConfig) -> FileCacheStore:
    return FileCacheStore(test_config.cache_dir, test_config.public_base_url)


@pytest.fixture
def generation_store(test_config: SpriteworksConfig) -> GenerationStore:
    return GenerationStore(test_config.database_path)


@pytest.fixture
def job_queue(test_config: SpriteworksConfig) -> JobQueue:
    return JobQueue(test_config.database_path, limit=test_config.queue_limit)


@pytest.fixture
def orchestrator(
    test_config: SpriteworksConfig,
    cache_store: FileCacheStore,
    generation_store: GenerationStore,
    fake_provider: FakeProvider,
    job_queue: JobQueue,
) -> GenerationOrchestrator:
    """Orchestrator wired to temporary storage and the fake provider."""
    return GenerationOrchestrator(test_config, cache_store, generation_store, fake_provider, job_queue)


@pytest.fixture
def test_client(test_config: SpriteworksConfig, fake_provider: FakeProvider):
    """FastAPI TestClient running the full lifespan with the fake provider."""
    from fastapi.testclient import TestClient

    from spriteworks.api.main import create_app

    app = create_app(test_config, provider=fake_provider)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": "Bearer test-token"}


@pytest.fixture
def asset_path(cache_store: FileCacheStore):
    """Map a public asset URL back to its file inside the cache store."""

    def resolve(url: str) -> Path:
        return cache_store.root / url.removeprefix(cache_store.public_base_url + "/")

    return resolve


@pytest.fixture
def make_failing_store(test_config: SpriteworksConfig):
    """Factory for a :class:`FailingStore` sharing the test cache directory."""

    def build(fail_after: int) -> FailingStore:
        return FailingStore(test_config.cache_dir, fail_after=fail_after)

    return build
