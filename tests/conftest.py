from collections.abc import AsyncIterator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.api.deps import get_db_session, get_registry_dep, get_settings_dep, get_storage
from app.core.config import Settings
from app.db.init_db import init_db
from app.db.session import build_engine, build_session_factory
from app.main import app
from app.providers.prompts import TemplatePromptRewriter
from app.services.notifications import ConnectionRegistry
from app.services.storage import LocalStorage
from tests.fakes import FakeImageProvider, FakeModel3DProvider, RecordingSleep
from worker.image_worker import ImageGenerationWorker
from worker.model_worker import ModelGenerationWorker


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'modelforge.db'}",
        storage_path=tmp_path / "storage",
        image_provider="mock",
        model3d_provider="mock",
        prompt_rewriter="template",
        run_workers_in_api=False,
        image_max_retries=2,
        image_retry_base_delay=1.0,
        image_retry_rate_limit_delay=10.0,
        model_max_retries=2,
        model_retry_base_delay=1.0,
        model_retry_rate_limit_delay=10.0,
        model_status_poll_interval=5.0,
        model_max_poll_seconds=60.0,
    )


@pytest.fixture
async def engine(settings: Settings) -> AsyncIterator[AsyncEngine]:
    engine = build_engine(settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def registry() -> ConnectionRegistry:
    return ConnectionRegistry(max_queue_size=64)


@pytest.fixture
def storage(settings: Settings) -> LocalStorage:
    return LocalStorage(settings.storage_path, url_prefix=settings.storage_url_prefix)


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def image_provider() -> FakeImageProvider:
    return FakeImageProvider()


@pytest.fixture
def model_provider() -> FakeModel3DProvider:
    return FakeModel3DProvider()


@pytest.fixture
def image_worker(
    session_factory, image_provider, storage, registry, settings, sleeper
) -> ImageGenerationWorker:
    return ImageGenerationWorker(
        session_factory=session_factory,
        image_provider=image_provider,
        prompt_rewriter=TemplatePromptRewriter(),
        storage=storage,
        registry=registry,
        settings=settings,
        sleep=sleeper,
    )


@pytest.fixture
def model_worker(
    session_factory, model_provider, storage, registry, settings, sleeper
) -> ModelGenerationWorker:
    return ModelGenerationWorker(
        session_factory=session_factory,
        model_provider=model_provider,
        storage=storage,
        registry=registry,
        settings=settings,
        sleep=sleeper,
        clock=sleeper.clock,
    )


@pytest.fixture
async def client(session_factory, settings, storage, registry) -> AsyncIterator[AsyncClient]:
    async def override_session() -> AsyncIterator[AsyncSession]:
        async with session_factory() as session:
            yield session

    async def override_settings() -> Settings:
        return settings

    async def override_storage() -> LocalStorage:
        return storage

    async def override_registry() -> ConnectionRegistry:
        return registry

    app.dependency_overrides[get_db_session] = override_session
    app.dependency_overrides[get_settings_dep] = override_settings
    app.dependency_overrides[get_storage] = override_storage
    app.dependency_overrides[get_registry_dep] = override_registry
    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://test") as http:
            yield http
    finally:
        app.dependency_overrides.clear()
