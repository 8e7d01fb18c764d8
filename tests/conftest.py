import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from app.main import app
from app.core import models  # noqa: F401  registers tables on Base.metadata
from app.core.database import Base, get_db
from app.core.generation.audit import AuditWriter
from app.core.generation.backends import MockBackend, RetryPolicy
from app.core.generation.knowledge import FileKnowledgeStore, KnowledgeSelector, SnapshotKnowledgeStore
from app.core.generation.pipeline import GenerationPipeline
from app.core.generation.templates import default_template_store
from app.core.schemas import KnowledgePriority

from tests.factories import CORPUS_PATH, VALID_CUSTOMER_LIST, RecordingSink, make_entry, no_sleep


@pytest.fixture
def knowledge_store():
    return SnapshotKnowledgeStore(
        [
            make_entry(1, {"xframe5-ui"}, KnowledgePriority.ESSENTIAL, name="dataset declaration"),
            make_entry(2, {"list"}, KnowledgePriority.HIGH, name="grid binding"),
            make_entry(3, {"spring-backend"}, KnowledgePriority.ESSENTIAL, name="controller layering"),
        ]
    )


@pytest.fixture
def audit_sink():
    return RecordingSink()


@pytest.fixture
def make_pipeline(knowledge_store, audit_sink):
    """Factory: pipeline over in-memory stores and a scripted backend."""

    def factory(backend=None, regeneration_attempts=1, retry_policy=None, primary=None):
        return GenerationPipeline(
            templates=default_template_store(),
            selector=KnowledgeSelector(
                primary=primary or knowledge_store,
                fallback=FileKnowledgeStore(CORPUS_PATH),
                budget=4000,
            ),
            backend=backend or MockBackend(default=VALID_CUSTOMER_LIST),
            audit=AuditWriter(audit_sink),
            retry_policy=retry_policy or RetryPolicy(max_attempts=3, base_delay=0.01, timeout=5.0),
            regeneration_attempts=regeneration_attempts,
            health_timeout=1.0,
            sleep=no_sleep,
        )

    return factory


# Fresh sqlite database per test for the database-backed stores
@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        # Create all tables
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


# Session and rollback once it is done
@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


# Client
@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, make_pipeline):
    async def override_get_db():
        yield db_session

    pipeline = make_pipeline()
    app.dependency_overrides[get_db] = override_get_db
    app.state.pipeline = pipeline

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
