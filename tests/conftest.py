import os

# Point settings at SQLite before anything under app/ is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FILE", "")

import pytest
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from app.core.database import get_db, Base
from app.repositories.deal_repo import DealRepository
from app.repositories.pipeline_repo import PipelineRepository
from app.schemas.pipeline import PipelineCreate, StageCreate
from app.services.analytics_service import PipelineAnalyticsService
from app.services.deal_service import DealService
from app.services.ledger import StageHistoryLedger
from app.services.pipeline_service import PipelineService

# Use an in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
ORG_ID = "org-1"
ACTOR_ID = "user-1"

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# pysqlite/aiosqlite need explicit BEGIN for SAVEPOINT to work
@event.listens_for(engine.sync_engine, "connect")
def _do_connect(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(engine.sync_engine, "begin")
def _do_begin(conn):
    conn.exec_driver_sql("BEGIN")


TestingSessionLocal = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)


@pytest.fixture(autouse=True)
async def setup_db():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with TestingSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


app.dependency_overrides[get_db] = override_get_db


@pytest.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# ──────────────────────────────────────────────
# Service-level fixtures (one session per test)
# ──────────────────────────────────────────────

@pytest.fixture
async def session() -> AsyncGenerator[AsyncSession, None]:
    async with TestingSessionLocal() as s:
        yield s
        await s.rollback()


@pytest.fixture
def pipeline_service(session: AsyncSession) -> PipelineService:
    return PipelineService(PipelineRepository(session))


@pytest.fixture
def deal_service(session: AsyncSession, pipeline_service: PipelineService) -> DealService:
    return DealService(
        DealRepository(session),
        pipeline_service,
        StageHistoryLedger(pipeline_service.repo),
    )


@pytest.fixture
def analytics_service(session: AsyncSession, pipeline_service: PipelineService) -> PipelineAnalyticsService:
    return PipelineAnalyticsService(session, pipeline_service)


def sales_stages() -> list[StageCreate]:
    return [
        StageCreate(name="Lead", probability=10, color="#6B7280"),
        StageCreate(name="Qualified", probability=25, color="#3B82F6"),
        StageCreate(name="Closed Won", probability=100, color="#10B981", is_closed_won=True),
        StageCreate(name="Closed Lost", probability=0, color="#EF4444", is_closed_lost=True),
    ]


@pytest.fixture
async def pipeline(pipeline_service: PipelineService):
    """Default pipeline: Lead(10) -> Qualified(25) -> Closed Won(100) / Closed Lost(0)."""
    return await pipeline_service.create_pipeline(
        ORG_ID,
        PipelineCreate(name="Sales", is_default=True, stages=sales_stages()),
        created_by=ACTOR_ID,
    )
