from decimal import Decimal
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from models.user import User
from routers import rate_limit
from services.background import drain_background_tasks
from services.session_token import create_session_token
from services.storage import reset_storage


SESSION_MAKER_TARGETS = (
    "services.transcription.async_session_maker",
    "services.job_queue.async_session_maker",
    "services.summary.async_session_maker",
)


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit.reset_local_rate_limits()
    yield
    rate_limit.reset_local_rate_limits()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """Per-test SQLite database wired into the app and every service that opens sessions."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'podbrief.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def override_get_db():
        async with maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    reset_storage()
    with (
        patch("config.settings.STORAGE_BACKEND", "local"),
        patch("config.settings.STORAGE_LOCAL_DIR", str(tmp_path / "storage")),
        patch("config.settings.STAGING_DIR", str(tmp_path / "staging")),
        patch("config.settings.TRANSCRIPTION_QUEUE_MODE", "inline"),
        patch("config.settings.OPENAI_API_KEY", ""),
        patch("config.settings.LOW_BALANCE_WEBHOOK_URL", ""),
        patch("services.transcription.probe_duration_seconds", return_value=None),
        patch(SESSION_MAKER_TARGETS[0], maker),
        patch(SESSION_MAKER_TARGETS[1], maker),
        patch(SESSION_MAKER_TARGETS[2], maker),
    ):
        yield maker
        await drain_background_tasks(timeout=10)

    reset_storage()
    app.dependency_overrides.pop(get_db, None)
    await engine.dispose()


@pytest_asyncio.fixture
async def client(session_maker):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client


@pytest.fixture
def auth_for():
    def _auth_for(user_id: str) -> dict:
        token = create_session_token(user_id, email=f"{user_id}@example.com")["token"]
        return {"Authorization": f"Bearer {token}"}

    return _auth_for


@pytest.fixture
def make_user(session_maker):
    async def _make_user(user_id: str, credits="0") -> None:
        async with session_maker() as db:
            db.add(User(id=user_id, email=f"{user_id}@example.com", credits=Decimal(str(credits))))
            await db.commit()

    return _make_user


@pytest.fixture
def public_dns():
    """Resolve every media hostname to a public address without touching the network."""
    with patch("multimodal.audio.resolve_host_addresses", return_value=["93.184.216.34"]) as resolver:
        yield resolver
