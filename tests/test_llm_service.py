"""Tests for the LLM service facade."""

import io
from unittest.mock import AsyncMock

import pytest

from practice_backend.config import CACHE_BACKEND_RECORD, CacheConfig, LLMConfig
from practice_backend.exceptions import PlatformAuthError
from practice_backend.models.database_models import TABLE_LLM_RESPONSES, ChatItem
from practice_backend.services.cached_platform import CachedPlatform
from practice_backend.services.llm_service import LLMService, with_cache, with_model
from practice_backend.services.memory_cache import MemoryCacheStorage
from practice_backend.services.providers.base import PlatformType
from practice_backend.services.providers.echo_provider import EchoPlatform
from practice_backend.services.record_cache import RecordCacheStorage


def _echo_config(enabled=True, backend="memory"):
    return LLMConfig(
        platform=PlatformType.ECHO,
        cache=CacheConfig(enabled=enabled, backend=backend),
    )


class TestScenarios:
    @pytest.mark.asyncio
    async def test_echo_without_cache(self):
        service = LLMService.with_memory_cache(_echo_config(enabled=False))
        assert isinstance(service.platform, EchoPlatform)

        text, usage = await service.chat("Say hi", "")
        assert "Say hi" in text
        assert usage.cost == 0
        assert usage.cache_hit is False

    @pytest.mark.asyncio
    async def test_memory_cache_hit_then_model_change_misses(self):
        service = LLMService.with_memory_cache(_echo_config())

        _, first = await service.chat("Say hi", "")
        _, second = await service.chat("Say hi", "")
        _, other_model = await service.chat("Say hi", "", with_model("echo-2"))

        assert first.cache_hit is False
        assert second.cache_hit is True
        assert other_model.cache_hit is False
        assert other_model.model_name == "echo-2"


class TestLLMService:
    @pytest.mark.asyncio
    async def test_cache_options(self):
        service = LLMService.with_memory_cache(_echo_config())
        await service.chat("q", "")

        _, ignored = await service.chat("q", "", with_cache(ignore_cache=True))
        _, disabled = await service.chat("q", "", with_cache(disable_cache=True))
        _, normal = await service.chat("q", "")

        assert ignored.cache_hit is False
        assert disabled.cache_hit is False
        assert normal.cache_hit is True

    @pytest.mark.asyncio
    async def test_chat_with_history(self):
        service = LLMService.with_memory_cache(_echo_config())
        messages = [ChatItem(role="user", content="hello there")]
        text, usage = await service.chat_with_history(messages, "be kind")
        assert "1 total messages" in text
        assert "System prompt: be kind" in text

        _, again = await service.chat_with_history(messages, "be kind")
        assert again.cache_hit is True

    @pytest.mark.asyncio
    async def test_describe_image_from_reader(self):
        service = LLMService.with_memory_cache(_echo_config())
        text, usage = await service.describe_image(
            io.BytesIO(b"\x89PNG1234"), "photo.png", "describe", "sys"
        )
        assert "photo.png" in text
        assert "8 bytes" in text

        _, again = await service.describe_image(b"\x89PNG1234", "photo.png", "describe", "sys")
        assert again.cache_hit is True

    @pytest.mark.asyncio
    async def test_describe_image_from_async_reader(self):
        class Upload:
            async def read(self):
                return b"abc"

        service = LLMService.with_memory_cache(_echo_config(enabled=False))
        text, _ = await service.describe_image(Upload(), "a.jpg")
        assert "3 bytes" in text

    @pytest.mark.asyncio
    async def test_info(self):
        service = LLMService.with_memory_cache(_echo_config())
        info = await service.info()
        assert len(info.platforms) == 1
        platform = info.platforms[0]
        assert platform.name == "echo"
        assert platform.is_default is True
        assert [m.name for m in platform.models] == ["echo"]

    @pytest.mark.asyncio
    async def test_info_survives_listing_failure(self):
        service = LLMService.with_memory_cache(_echo_config(enabled=False))
        service.platform.models = AsyncMock(side_effect=PlatformAuthError("no key"))
        info = await service.info()
        assert info.platforms[0].models == []

    @pytest.mark.asyncio
    async def test_clean_cache_with_memory_storage(self):
        service = LLMService.with_memory_cache(_echo_config())
        await service.chat("q", "")
        assert await service.clean_cache() == 0

    @pytest.mark.asyncio
    async def test_clean_cache_without_storage(self):
        service = LLMService.with_memory_cache(_echo_config(enabled=False))
        assert await service.clean_cache() == 0


class TestRecordStoreConstruction:
    @pytest.mark.asyncio
    async def test_record_backend_persists_responses(self, store):
        service = LLMService.with_record_store(
            _echo_config(backend=CACHE_BACKEND_RECORD), store
        )
        assert isinstance(service.platform, CachedPlatform)
        assert isinstance(service.platform.storage, RecordCacheStorage)

        await service.chat("persist me", "")
        _, usage = await service.chat("persist me", "")
        assert usage.cache_hit is True

        row = await store.find_first(TABLE_LLM_RESPONSES, {"prompt": "persist me"})
        assert row["backend"] == "echo"

    def test_memory_backend_with_store_uses_memory(self):
        service = LLMService.with_record_store(_echo_config(), None)
        assert isinstance(service.platform.storage, MemoryCacheStorage)

    def test_record_backend_without_store_uses_memory(self):
        service = LLMService.with_record_store(
            _echo_config(backend=CACHE_BACKEND_RECORD), None
        )
        assert isinstance(service.platform.storage, MemoryCacheStorage)

    def test_disabled_cache_is_not_wrapped(self):
        service = LLMService.with_record_store(
            _echo_config(enabled=False, backend=CACHE_BACKEND_RECORD), None
        )
        assert isinstance(service.platform, EchoPlatform)
