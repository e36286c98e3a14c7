"""pytest fixtures for idforge backend tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- engine / session: Function-scoped SQLite (aiosqlite) database built from
  SQLModel metadata, one file per test
- uow_factory: Function-scoped UnitOfWork factory
- Fake collaborators for the model, enhancement, storage and image fetch clients
- orchestrator / generation_service: Real services wired to the fakes
"""

import base64
import os
from typing import AsyncGenerator

# Settings validation is skipped for APP_ENV=test; must be set before importing the app
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel  # noqa: E402

from idforge import models  # noqa: E402,F401
from idforge.services.events import IdentityEventBus  # noqa: E402
from idforge.services.exceptions import (  # noqa: E402
    EnhancementFailed,
    NoImageReturned,
    StorageError,
    UpstreamRequestError,
)
from idforge.services.generation.batches import GenerationService  # noqa: E402
from idforge.services.generation.orchestrator import (  # noqa: E402
    BatchOrchestrator,
    RetryPolicy,
)
from idforge.uow import create_uow_factory  # noqa: E402

# No waiting between attempts in tests
NO_RETRY = RetryPolicy(max_attempts=1, initial_delay=0.0)


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests.

    Autouse fixture ensures TZ=UTC is set before any test runs.
    This prevents timezone-dependent behavior and ensures reproducible tests.
    """
    os.environ["TZ"] = "UTC"
    yield


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Provide a fresh SQLite database with every table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide function-scoped database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def uow_factory(session_factory):
    """Provide function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


# Fake collaborators


def encoded(payload: bytes) -> str:
    return base64.b64encode(payload).decode("ascii")


class FakeImageClient:
    """Stands in for GeminiClient; call ``n`` fails when ``n`` is in ``fail_on``."""

    def __init__(self, fail_on: set[int] | None = None, analysis: str = "[]"):
        self.fail_on = fail_on or set()
        self.analysis = analysis
        self.calls: list[dict] = []
        self.analyze_calls: list[int] = []

    async def generate(self, prompt: str, reference_images: list[str], mutation: str = "") -> str:
        index = len(self.calls)
        self.calls.append(
            {"prompt": prompt, "reference_images": list(reference_images), "mutation": mutation}
        )
        if index in self.fail_on:
            raise NoImageReturned("Gemini API did not return image data")
        return encoded(f"image-{index}".encode())

    async def analyze_images(self, prompt: str, images: list[tuple[bytes, str]]) -> str:
        self.analyze_calls.append(len(images))
        return self.analysis


class FakeSeedream:
    """Stands in for SeedreamClient; inputs listed in ``fail_inputs`` fail enhancement."""

    def __init__(self, fail_inputs: set[bytes] | None = None):
        self.fail_inputs = fail_inputs or set()
        self.enhanced: list[str] = []

    async def enhance_image(self, image_base64: str, prompt: str = "", size: str = "") -> str:
        self.enhanced.append(size)
        raw = base64.b64decode(image_base64)
        if raw in self.fail_inputs:
            raise EnhancementFailed("Image processing failed: {'status': 'failed'}")
        return f"https://wavespeed.test/out/{raw.decode()}.jpg"

    async def download(self, url: str) -> bytes:
        return b"enhanced:" + url.encode()


class FakeStorage:
    """In-memory R2Client replacement with the same URL helpers."""

    public_base = "https://cdn.test"

    def __init__(self):
        self.uploads: dict[str, tuple[bytes, str]] = {}
        self.deleted: list[str] = []

    def public_url(self, key: str) -> str:
        return f"{self.public_base}/{key}"

    def is_public_url(self, url: str) -> bool:
        return url.startswith(self.public_base + "/")

    def is_private_url(self, url: str) -> bool:
        return False

    async def upload_bytes(self, key: str, data: bytes, content_type: str = "image/jpeg") -> str:
        self.uploads[key] = (data, content_type)
        return self.public_url(key)

    async def download_by_url(self, url: str) -> tuple[bytes, str]:
        key = url[len(self.public_base) + 1 :]
        if key not in self.uploads:
            raise StorageError(f"Read of {key} failed")
        return self.uploads[key]

    async def delete_by_url(self, url: str) -> bool:
        if not self.is_public_url(url):
            return False
        self.deleted.append(url)
        return True


class FakeImageSource:
    """Resolves any reference to its own bytes; references in ``missing`` fail."""

    def __init__(self, missing: set[str] | None = None):
        self.missing = missing or set()
        self.fetched: list[str] = []

    async def fetch_bytes(self, ref: str, timeout: float | None = None) -> tuple[bytes, str]:
        self.fetched.append(ref)
        if ref in self.missing:
            raise UpstreamRequestError(f"image-fetch: HTTP 404 for {ref}")
        return ref.encode(), "image/jpeg"


@pytest.fixture
def image_client() -> FakeImageClient:
    return FakeImageClient()


@pytest.fixture
def seedream() -> FakeSeedream:
    return FakeSeedream()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def image_source() -> FakeImageSource:
    return FakeImageSource()


@pytest.fixture
def event_bus() -> IdentityEventBus:
    return IdentityEventBus()


@pytest.fixture
def orchestrator(uow_factory, image_client, storage, event_bus, seedream, image_source):
    return BatchOrchestrator(
        uow_factory=uow_factory,
        image_client=image_client,  # type: ignore[arg-type]
        storage=storage,  # type: ignore[arg-type]
        events=event_bus,
        seedream=seedream,  # type: ignore[arg-type]
        image_source=image_source,  # type: ignore[arg-type]
        generation_policy=NO_RETRY,
        base64_policy=NO_RETRY,
        update_policy=NO_RETRY,
    )


@pytest.fixture
def generation_service(uow_factory, orchestrator, event_bus) -> GenerationService:
    return GenerationService(uow_factory, orchestrator, event_bus)


@pytest_asyncio.fixture
async def api_client(
    session_factory, uow_factory, generation_service, event_bus, storage, image_source
) -> AsyncGenerator[AsyncClient, None]:
    """Provide AsyncClient for the API with every lifespan-owned service injected."""
    from idforge.app import app

    app.state.session_factory = session_factory
    app.state.uow_factory = uow_factory
    app.state.generation_service = generation_service
    app.state.event_bus = event_bus
    app.state.storage = storage
    app.state.image_source = image_source

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
