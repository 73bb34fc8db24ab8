"""pytest fixtures for try-on backend tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- database_url: SQLite file database, or a testcontainer PostgreSQL with TRYON_TEST_POSTGRES=1
- session_factory / session / uow_factory: Function-scoped database access with fresh tables
- FakeAdapter, registry, ledger, lifecycle: Job lifecycle wired to in-memory providers
- api_app / client: FastAPI app over the same fixtures, authenticated via login_as
"""

import os
from typing import AsyncGenerator, Optional
from uuid import UUID, uuid4

# Skip required-key validation before any tryon module builds Settings
os.environ.setdefault("APP_ENV", "test")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool  # noqa: E402
from sqlmodel import SQLModel  # noqa: E402

import tryon.models  # noqa: E402, F401
from tryon.api.dependencies import get_current_user  # noqa: E402
from tryon.app import create_app, init_services  # noqa: E402
from tryon.core.config import Settings  # noqa: E402
from tryon.models.credit import UserCredits  # noqa: E402
from tryon.models.job import JobStatus, JobType, Provider  # noqa: E402
from tryon.services.auth import AuthUser  # noqa: E402
from tryon.services.events import ProviderEvent  # noqa: E402
from tryon.services.exceptions import ProviderResponseError  # noqa: E402
from tryon.services.ledger import CreditLedger  # noqa: E402
from tryon.services.lifecycle import JobLifecycleManager  # noqa: E402
from tryon.services.providers.base import ProviderAdapter, SubmitRequest, TaskRef  # noqa: E402
from tryon.services.providers.registry import ProviderRegistry  # noqa: E402
from tryon.services.storage.materializer import ResultMaterializer  # noqa: E402
from tryon.uow import create_uow_factory  # noqa: E402

MODEL_IMAGE = "https://storage.example.com/u/model.jpg"
GARMENT_IMAGE = "https://storage.example.com/u/garment.jpg"
SERVER_KEY = "SB-Mid-server-test-key"
ADMIN_ID = UUID("00000000-0000-4000-8000-00000000a11e")


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture(scope="session")
def postgres_container():
    """Session-scoped PostgreSQL container, started only when requested."""
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer(
        image="postgres:17",
        username="test",
        password="test",
        dbname="test_tryon",
    ) as container:
        yield container


@pytest.fixture
def database_url(request, tmp_path) -> str:
    """Database for one test.

    Defaults to a throwaway SQLite file; TRYON_TEST_POSTGRES=1 switches to PostgreSQL
    so the conditional UPDATEs also run against the production dialect.
    """
    if os.environ.get("TRYON_TEST_POSTGRES") == "1":
        container = request.getfixturevalue("postgres_container")
        return container.get_connection_url(driver="psycopg")
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest_asyncio.fixture
async def session_factory(database_url: str) -> AsyncGenerator[async_sessionmaker, None]:
    """Session factory over freshly created tables (dropped after the test)."""
    engine = create_async_engine(database_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Single session for repository-level tests."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def uow_factory(session_factory):
    """Function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


class FakeAdapter(ProviderAdapter):
    """In-memory provider: records submissions, hands out sequential task ids."""

    def __init__(self, provider: Provider, job_types, model: str = "fake-model"):
        super().__init__(model=model)
        self.provider = provider
        self.supported_job_types = frozenset(job_types)
        self.submitted: list[SubmitRequest] = []
        self.submit_error: Optional[Exception] = None
        self.poll_events: dict[str, ProviderEvent] = {}
        self.polled: list[str] = []
        self.next_event: Optional[ProviderEvent] = None

    async def submit(self, request: SubmitRequest) -> TaskRef:
        self.validate(request)
        self.submitted.append(request)
        if self.submit_error is not None:
            raise self.submit_error
        task_id = f"{self.provider.value}-task-{len(self.submitted)}"
        event = None
        if self.next_event is not None:
            event = self.next_event
            event.task_id = task_id
            event.job_id = request.job_id
        return TaskRef(provider=self.provider, task_id=task_id, model=self.model, event=event)

    async def poll(self, task_id: str) -> ProviderEvent:
        self.polled.append(task_id)
        if task_id not in self.poll_events:
            raise ProviderResponseError(f"Unknown task {task_id}")
        return self.poll_events[task_id]


@pytest.fixture
def kie_adapter() -> FakeAdapter:
    return FakeAdapter(
        Provider.KIE,
        {JobType.VIRTUAL_TRYON, JobType.MODEL_SWAP, JobType.PHOTO_EDIT},
        model="google/nano-banana",
    )


@pytest.fixture
def fashn_adapter() -> FakeAdapter:
    return FakeAdapter(
        Provider.FASHN, {JobType.VIRTUAL_TRYON, JobType.MODEL_SWAP}, model="tryon-v1.6"
    )


@pytest.fixture
def gemini_adapter() -> FakeAdapter:
    return FakeAdapter(Provider.GEMINI, {JobType.GEMINI_ANALYSIS}, model="gemini-2.0-flash-exp")


@pytest.fixture
def registry(kie_adapter, fashn_adapter, gemini_adapter) -> ProviderRegistry:
    return ProviderRegistry(
        {
            Provider.KIE: kie_adapter,
            Provider.FASHN: fashn_adapter,
            Provider.GEMINI: gemini_adapter,
        }
    )


@pytest.fixture
def ledger() -> CreditLedger:
    return CreditLedger(welcome_credits=5, purchase_expiry_days=365, history_limit=20)


@pytest.fixture
def materializer() -> ResultMaterializer:
    """Storage not configured: results keep their provider URL."""
    return ResultMaterializer("", "")


@pytest.fixture
def lifecycle(uow_factory, registry, materializer, ledger) -> JobLifecycleManager:
    return JobLifecycleManager(
        uow_factory=uow_factory,
        registry=registry,
        materializer=materializer,
        ledger=ledger,
        public_base_url="https://api.example.com",
    )


@pytest.fixture
def user_id() -> UUID:
    return uuid4()


@pytest.fixture
def settings() -> Settings:
    return Settings(  # type: ignore[call-arg]
        APP_ENV="test",
        MIDTRANS_SERVER_KEY=SERVER_KEY,
        ADMIN_USER_IDS=str(ADMIN_ID),
        PUBLIC_BASE_URL="https://api.example.com",
        SWEEP_ENABLED=False,
    )


@pytest.fixture
def api_app(settings, uow_factory, registry, ledger, lifecycle):
    """FastAPI app wired to the test database and in-memory providers (no lifespan)."""
    app = create_app(settings)
    app.state.registry = registry
    app.state.ledger = ledger
    init_services(app, uow_factory)
    app.state.lifecycle = lifecycle
    return app


def login_as(app, user_id: UUID, email: str = "shopper@example.com") -> AuthUser:
    """Bypass token verification: every request is made as this user."""
    user = AuthUser(id=user_id, email=email)
    app.dependency_overrides[get_current_user] = lambda: user
    return user


@pytest_asyncio.fixture
async def client(api_app, user_id) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for api_app, authenticated as user_id."""
    login_as(api_app, user_id)
    async with AsyncClient(transport=ASGITransport(app=api_app), base_url="http://test") as c:
        yield c
    api_app.dependency_overrides.clear()


async def seed_credits(uow_factory, user_id: UUID, balance: int) -> None:
    """Provision a user with an exact balance (no ledger entry)."""
    async with await uow_factory() as uow:
        await uow.credits.add(UserCredits(user_id=user_id, credits_balance=balance))


def completed_event(
    provider: Provider, task_id: str, result_url: Optional[str] = "https://cdn.example.com/r.png"
) -> ProviderEvent:
    return ProviderEvent(
        provider=provider, task_id=task_id, status=JobStatus.COMPLETED, result_url=result_url
    )


def failed_event(provider: Provider, task_id: str, error: str = "Task failed") -> ProviderEvent:
    return ProviderEvent(provider=provider, task_id=task_id, status=JobStatus.FAILED, error=error)
