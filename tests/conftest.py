import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio

from practice_backend.config import CacheConfig, LLMConfig
from practice_backend.database import RecordStore, init_db, set_db_path
from practice_backend.services.providers.base import PlatformType


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def temp_db_path():
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        path = f.name
    yield path
    Path(path).unlink(missing_ok=True)


@pytest.fixture
def test_settings(temp_db_path):
    from practice_backend.config import Settings
    return Settings(
        llm_platform="echo",
        openai_api_key="sk-test-fake",
        database_url=temp_db_path,
    )


@pytest.fixture
def echo_config():
    return LLMConfig(platform=PlatformType.ECHO, cache=CacheConfig(enabled=True))


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def initialized_db(temp_db_path):
    set_db_path(temp_db_path)
    await init_db()
    yield temp_db_path


@pytest_asyncio.fixture
async def store(initialized_db, clock):
    return RecordStore(clock=clock)
