import asyncio
import sys
from dataclasses import dataclass, field
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from dripline.domain.automations import db_models as automation_db_models  # noqa: F401
from dripline.domain.bookings import db_models as booking_db_models  # noqa: F401
from dripline.domain.contacts import db_models as contact_db_models  # noqa: F401
from dripline.domain.nurture import db_models as nurture_db_models  # noqa: F401
from dripline.domain.ops import db_models as ops_db_models  # noqa: F401
from dripline.domain.tenants import db_models as tenant_db_models  # noqa: F401
from dripline.infra.db import Base, get_db_session
from dripline.infra.messaging import SendResult
from dripline.main import app
from dripline.settings import settings


@dataclass
class SentMessage:
    channel: str
    to: str
    body: str
    subject: str | None = None
    from_name: str | None = None


@dataclass
class RecordingMessageSender:
    """MessageSender double that records every send and can be told to fail."""

    sent: list[SentMessage] = field(default_factory=list)
    fail_with: str | None = None

    async def send_sms(self, to: str, body: str) -> SendResult:
        if self.fail_with:
            return SendResult(ok=False, error=self.fail_with)
        self.sent.append(SentMessage(channel="sms", to=to, body=body))
        return SendResult(ok=True)

    async def send_email(self, to: str, subject: str, text: str, from_name: str | None = None) -> SendResult:
        if self.fail_with:
            return SendResult(ok=False, error=self.fail_with)
        self.sent.append(SentMessage(channel="email", to=to, body=text, subject=subject, from_name=from_name))
        return SendResult(ok=True)


@dataclass
class StaticSubscriptionProvider:
    statuses: dict[str, str] = field(default_factory=dict)
    configured: bool = True
    calls: list[str] = field(default_factory=list)
    error: Exception | None = None

    async def get_status(self, subscription_id: str) -> str:
        self.calls.append(subscription_id)
        if self.error is not None:
            raise self.error
        return self.statuses.get(subscription_id, "")


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def message_sender() -> RecordingMessageSender:
    return RecordingMessageSender()


@pytest.fixture
def subscription_provider() -> StaticSubscriptionProvider:
    return StaticSubscriptionProvider()


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    snapshot = settings.model_dump()
    yield
    for key, value in snapshot.items():
        setattr(settings, key, value)


@pytest.fixture(autouse=True)
def enable_test_mode():
    settings.testing = True
    settings.app_env = "dev"
    settings.cron_secret = None
    settings.metrics_enabled = False
    yield


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture()
def client(async_session_maker):
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    original_services = getattr(app.state, "services", None)
    app.state.db_session_factory = async_session_maker
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
    app.state.services = original_services
