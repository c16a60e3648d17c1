import os
import tempfile

# Must be set before any modelgate imports that use settings.data_dir
os.environ["DATA_DIR"] = tempfile.mkdtemp()

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import modelgate.models  # noqa: F401  registers tables on Base.metadata
from modelgate.config import ModelConfig, ProviderConfig, Settings
from modelgate.database import Base


class FakeClock:
    """Controllable UTC clock; ``sleep`` advances it instead of waiting."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int = 0, **kwargs):
        self.now = self.now + timedelta(milliseconds=ms, **kwargs)

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.advance(ms=int(seconds * 1000))


def make_settings(**overrides) -> Settings:
    """Settings with two equal-tier test providers unless overridden."""
    values = {
        "modal_api_key": "test-modal",
        "openrouter_api_key": "test-openrouter",
        "gemini_api_key": None,
        "model_catalog": [
            ProviderConfig(
                name="alpha",
                base_url="http://alpha.invalid/v1",
                api_key_setting="modal_api_key",
                models=[ModelConfig(name="alpha-large", tier="standard")],
            ),
            ProviderConfig(
                name="beta",
                base_url="http://beta.invalid/v1",
                api_key_setting="openrouter_api_key",
                models=[ModelConfig(name="beta-large", tier="standard")],
            ),
        ],
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return make_settings()


@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield factory
    await engine.dispose()


@pytest.fixture
def data_dir():
    """Return a temporary data directory."""
    return os.environ["DATA_DIR"]


@pytest.fixture
def settings_factory():
    return make_settings
