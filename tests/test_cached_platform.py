"""Tests for the caching platform decorator."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from practice_backend.exceptions import (
    CacheStorageError,
    NoMessagesError,
    TransportError,
)
from practice_backend.models.database_models import ChatItem
from practice_backend.services.cached_platform import CachedPlatform
from practice_backend.services.memory_cache import MemoryCacheStorage
from practice_backend.services.providers.base import (
    CacheParameters,
    ChatParameters,
    DescribeImageParameters,
    ModelInfo,
)
from practice_backend.services.providers.echo_provider import EchoPlatform


class CountingEcho(EchoPlatform):
    def __init__(self):
        self.calls = {"chat": 0, "history": 0, "image": 0, "models": 0}

    async def chat(self, params):
        self.calls["chat"] += 1
        return await super().chat(params)

    async def chat_with_history(self, messages, params):
        self.calls["history"] += 1
        return await super().chat_with_history(messages, params)

    async def describe_image(self, params):
        self.calls["image"] += 1
        return await super().describe_image(params)

    async def models(self):
        self.calls["models"] += 1
        return await super().models()


class BrokenStorage(MemoryCacheStorage):
    async def get_chat(self, key):
        raise CacheStorageError("disk on fire")

    async def set_chat(self, key, params, response):
        raise CacheStorageError("disk on fire")


@pytest.fixture
def delegate():
    return CountingEcho()


@pytest.fixture
def cached(delegate):
    return CachedPlatform(delegate, MemoryCacheStorage())


class TestCachedChat:
    @pytest.mark.asyncio
    async def test_second_call_is_a_hit(self, cached, delegate):
        params = ChatParameters(prompt="hi", system_prompt="s")
        first = await cached.chat(params)
        second = await cached.chat(params)

        assert first.usage.cache_hit is False
        assert second.usage.cache_hit is True
        assert second.text == first.text
        assert second.usage.total_tokens == first.usage.total_tokens
        assert delegate.calls["chat"] == 1

    @pytest.mark.asyncio
    async def test_explicit_default_model_shares_the_entry(self, cached, delegate):
        await cached.chat(ChatParameters(prompt="hi"))
        hit = await cached.chat(ChatParameters(prompt="hi", model="echo"))
        assert hit.usage.cache_hit is True
        assert delegate.calls["chat"] == 1

    @pytest.mark.asyncio
    async def test_disable_cache_skips_read_and_write(self, cached, delegate):
        disabled = ChatParameters(prompt="hi", cache=CacheParameters(disable_cache=True))
        await cached.chat(disabled)
        response = await cached.chat(disabled)
        assert response.usage.cache_hit is False
        assert delegate.calls["chat"] == 2

        # Nothing was written, so a normal call still misses
        normal = await cached.chat(ChatParameters(prompt="hi"))
        assert normal.usage.cache_hit is False
        assert delegate.calls["chat"] == 3

    @pytest.mark.asyncio
    async def test_ignore_cache_refreshes_the_entry(self, cached, delegate):
        await cached.chat(ChatParameters(prompt="hi"))
        ignored = await cached.chat(
            ChatParameters(prompt="hi", cache=CacheParameters(ignore_cache=True))
        )
        assert ignored.usage.cache_hit is False
        assert delegate.calls["chat"] == 2

        hit = await cached.chat(ChatParameters(prompt="hi"))
        assert hit.usage.cache_hit is True
        assert delegate.calls["chat"] == 2

    @pytest.mark.asyncio
    async def test_validation_error_is_not_cached(self, cached):
        from practice_backend.exceptions import EmptyPromptError
        with pytest.raises(EmptyPromptError):
            await cached.chat(ChatParameters(prompt=""))

    @pytest.mark.asyncio
    async def test_delegate_failure_writes_nothing(self):
        storage = MemoryCacheStorage()
        failing = CountingEcho()
        failing.chat = AsyncMock(side_effect=TransportError("down", platform="echo"))
        cached = CachedPlatform(failing, storage)

        with pytest.raises(TransportError):
            await cached.chat(ChatParameters(prompt="hi"))
        assert storage.size() == 0

    @pytest.mark.asyncio
    async def test_cancelled_delegate_writes_nothing(self):
        storage = MemoryCacheStorage()
        slow = CountingEcho()

        async def hang(params):
            await asyncio.sleep(10)

        slow.chat = hang
        cached = CachedPlatform(slow, storage)
        task = asyncio.create_task(cached.chat(ChatParameters(prompt="hi")))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert storage.size() == 0

    @pytest.mark.asyncio
    async def test_storage_failures_do_not_fail_the_call(self, delegate):
        cached = CachedPlatform(delegate, BrokenStorage())
        response = await cached.chat(ChatParameters(prompt="hi"))
        assert response.text.startswith("Echo response to: hi")
        assert response.usage.cache_hit is False
        assert delegate.calls["chat"] == 1


class TestCachedHistoryAndImages:
    @pytest.mark.asyncio
    async def test_history_hit(self, cached, delegate):
        messages = [ChatItem(role="user", content="hello")]
        params = ChatParameters(system_prompt="s")
        await cached.chat_with_history(messages, params)
        hit = await cached.chat_with_history(messages, params)
        assert hit.usage.cache_hit is True
        assert delegate.calls["history"] == 1

    @pytest.mark.asyncio
    async def test_history_differs_by_content(self, cached, delegate):
        params = ChatParameters()
        await cached.chat_with_history([ChatItem(role="user", content="a")], params)
        await cached.chat_with_history([ChatItem(role="user", content="b")], params)
        assert delegate.calls["history"] == 2

    @pytest.mark.asyncio
    async def test_empty_history_raises_before_cache(self, cached, delegate):
        with pytest.raises(NoMessagesError):
            await cached.chat_with_history([], ChatParameters())
        assert delegate.calls["history"] == 0

    @pytest.mark.asyncio
    async def test_image_hit(self, cached, delegate):
        params = DescribeImageParameters(prompt="what", image=b"\x89PNG", file_name="a.png")
        await cached.describe_image(params)
        hit = await cached.describe_image(params)
        assert hit.usage.cache_hit is True
        assert delegate.calls["image"] == 1


class TestCachedModels:
    @pytest.mark.asyncio
    async def test_models_pass_through_by_default(self, cached, delegate):
        await cached.models()
        await cached.models()
        assert delegate.calls["models"] == 2

    @pytest.mark.asyncio
    async def test_models_memoised_until_cleared(self, delegate):
        cached = CachedPlatform(delegate, MemoryCacheStorage(), cache_models=True)
        first = await cached.models()
        await cached.models()
        assert delegate.calls["models"] == 1
        assert first == [ModelInfo(name="echo", size_human="N/A", is_default=True)]

        cached.clear_models_cache()
        await cached.models()
        assert delegate.calls["models"] == 2

    def test_identity_passes_through(self, cached, delegate):
        assert cached.type == delegate.type
        assert cached.default_model == "echo"
