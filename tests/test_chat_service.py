"""Tests for the chat manager: lifecycle, ordering, totals and fallbacks."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from practice_backend.config import CacheConfig, LLMConfig
from practice_backend.exceptions import (
    ChatAccessError,
    ChatNotFoundError,
    RecordStoreError,
    TransportError,
    ValidationError,
)
from practice_backend.services.chat_service import ChatService
from practice_backend.services.llm_service import LLMService, with_model
from practice_backend.services.providers.base import PlatformType, Usage


@pytest.fixture
def llm():
    return LLMService.with_memory_cache(
        LLMConfig(platform=PlatformType.ECHO, cache=CacheConfig(enabled=False))
    )


@pytest.fixture
def service(store, llm):
    return ChatService(store, llm)


class TestChatLifecycle:
    @pytest.mark.asyncio
    async def test_create_chat(self, service):
        chat = await service.create_chat("user-1")
        assert chat.id
        assert chat.user_id == "user-1"
        assert chat.label == "New chat"
        assert chat.total_tokens == 0
        assert chat.total_cost == 0

    @pytest.mark.asyncio
    async def test_create_chat_requires_user(self, service):
        with pytest.raises(ValidationError):
            await service.create_chat("")

    @pytest.mark.asyncio
    async def test_system_prompt_becomes_first_item(self, service):
        chat = await service.create_chat("user-1", system_prompt="You are a tutor")
        loaded = await service.get_chat(chat.id)
        assert len(loaded.items) == 1
        assert loaded.items[0].role == "system"
        assert loaded.items[0].content == "You are a tutor"
        assert loaded.items[0].order == 0

    @pytest.mark.asyncio
    async def test_get_missing_chat(self, service):
        with pytest.raises(ChatNotFoundError):
            await service.get_chat("nope")

    @pytest.mark.asyncio
    async def test_get_chats_newest_first(self, service, clock):
        first = await service.create_chat("user-1")
        clock.advance(seconds=1)
        second = await service.create_chat("user-1")
        await service.create_chat("user-2")

        chats = await service.get_chats("user-1")
        assert [c.id for c in chats] == [second.id, first.id]
        assert len(await service.get_chats("user-1", limit=1)) == 1
        assert [c.id for c in await service.get_chats("user-1", limit=1, offset=1)] == [first.id]

    @pytest.mark.asyncio
    async def test_update_label(self, service):
        chat = await service.create_chat("user-1")
        updated = await service.update_chat_label(chat.id, "Fractions")
        assert updated.label == "Fractions"
        assert (await service.get_chat(chat.id)).label == "Fractions"

    @pytest.mark.asyncio
    async def test_update_label_validation(self, service):
        chat = await service.create_chat("user-1")
        with pytest.raises(ValidationError):
            await service.update_chat_label(chat.id, "")
        with pytest.raises(ValidationError):
            await service.update_chat_label("", "x")
        with pytest.raises(ChatNotFoundError):
            await service.update_chat_label("missing", "x")

    @pytest.mark.asyncio
    async def test_delete_chat(self, service):
        chat = await service.create_chat("user-1", system_prompt="sys")
        await service.delete_chat(chat.id)
        with pytest.raises(ChatNotFoundError):
            await service.get_chat(chat.id)
        with pytest.raises(ChatNotFoundError):
            await service.get_chat_messages(chat.id)

    @pytest.mark.asyncio
    async def test_get_owned_chat(self, service):
        chat = await service.create_chat("user-1")
        owned = await service.get_owned_chat(chat.id, "user-1")
        assert owned.id == chat.id
        with pytest.raises(ChatAccessError):
            await service.get_owned_chat(chat.id, "user-2")
        with pytest.raises(ChatNotFoundError):
            await service.get_owned_chat("missing", "user-1")

    @pytest.mark.asyncio
    async def test_messages_of_missing_chat(self, service):
        with pytest.raises(ChatNotFoundError):
            await service.get_chat_messages("missing")


class TestMessages:
    @pytest.mark.asyncio
    async def test_orders_are_dense_and_increasing(self, service):
        chat = await service.create_chat("user-1")
        for i in range(4):
            await service.add_chat_message(chat.id, "user", f"m{i}")
        items = await service.get_chat_messages(chat.id)
        assert [i.order for i in items] == [0, 1, 2, 3]
        assert [i.content for i in items] == ["m0", "m1", "m2", "m3"]

    @pytest.mark.asyncio
    async def test_concurrent_appends_get_distinct_orders(self, service):
        chat = await service.create_chat("user-1")
        await asyncio.gather(*(
            service.add_chat_message(chat.id, "user", f"m{i}") for i in range(10)
        ))
        items = await service.get_chat_messages(chat.id, limit=100)
        assert sorted(i.order for i in items) == list(range(10))

    @pytest.mark.asyncio
    async def test_order_locks_released_after_appends(self, service):
        chats = [await service.create_chat(f"user-{i}") for i in range(5)]
        for chat in chats:
            await service.add_chat_message(chat.id, "user", "hello")
        assert len(service._order_locks) == 0

    @pytest.mark.asyncio
    async def test_add_message_validation(self, service):
        chat = await service.create_chat("user-1")
        with pytest.raises(ValidationError):
            await service.add_chat_message(chat.id, "robot", "hi")
        with pytest.raises(ValidationError):
            await service.add_chat_message(chat.id, "user", "")
        with pytest.raises(ValidationError):
            await service.add_chat_message("", "user", "hi")
        with pytest.raises(ChatNotFoundError):
            await service.add_chat_message("missing", "user", "hi")

    @pytest.mark.asyncio
    async def test_usage_is_stored_with_item(self, service):
        chat = await service.create_chat("user-1")
        usage = Usage.create("echo", 3, 4, cost=0.01)
        item = await service.add_chat_message(chat.id, "assistant", "answer", usage)
        assert item.usage.total_tokens == 7
        assert item.usage.cost == pytest.approx(0.01)
        assert item.usage.model_name == "echo"

    @pytest.mark.asyncio
    async def test_pagination(self, service):
        chat = await service.create_chat("user-1")
        for i in range(5):
            await service.add_chat_message(chat.id, "user", f"m{i}")
        page = await service.get_chat_messages(chat.id, limit=2, offset=2)
        assert [i.content for i in page] == ["m2", "m3"]


class TestChatCompletion:
    @pytest.mark.asyncio
    async def test_completion_appends_user_and_assistant(self, service):
        chat = await service.create_chat("user-1", system_prompt="Be brief")
        text, usage = await service.chat_completion(chat.id, "What is 2+2?")

        assert "Echo response to message history" in text
        assert "System prompt: Be brief" in text
        items = await service.get_chat_messages(chat.id)
        assert [(i.role, i.order) for i in items] == [
            ("system", 0), ("user", 1), ("assistant", 2),
        ]
        assert items[2].content == text
        assert items[2].usage.total_tokens == usage.total_tokens

    @pytest.mark.asyncio
    async def test_running_totals(self, service):
        chat = await service.create_chat("user-1")
        expected = 0
        for message in ("one", "two", "three"):
            _, usage = await service.chat_completion(chat.id, message)
            expected += usage.total_tokens

        loaded = await service.get_chat(chat.id)
        assert loaded.total_tokens == expected
        assistant_tokens = sum(
            i.usage.total_tokens for i in loaded.items if i.role == "assistant"
        )
        assert assistant_tokens == expected

    @pytest.mark.asyncio
    async def test_history_failure_falls_back_to_single_turn(self, service, llm):
        chat = await service.create_chat("user-1")
        llm.platform.chat_with_history = AsyncMock(
            side_effect=TransportError("down", platform="echo")
        )
        text, _ = await service.chat_completion(chat.id, "hello")
        assert text.startswith("Echo response to: hello")
        llm.platform.chat_with_history.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_history_load_failure_falls_back_to_single_turn(self, service, store):
        chat = await service.create_chat("user-1")
        with patch.object(
            service, "_recent_items", AsyncMock(side_effect=RecordStoreError("locked"))
        ):
            text, _ = await service.chat_completion(chat.id, "hello")
        assert text.startswith("Echo response to: hello")

    @pytest.mark.asyncio
    async def test_model_failure_propagates_after_user_message(self, service, llm):
        chat = await service.create_chat("user-1")
        llm.platform.chat_with_history = AsyncMock(side_effect=TransportError("down"))
        llm.platform.chat = AsyncMock(side_effect=TransportError("down"))
        with pytest.raises(TransportError):
            await service.chat_completion(chat.id, "hello")

        items = await service.get_chat_messages(chat.id)
        assert [i.role for i in items] == ["user"]
        assert (await service.get_chat(chat.id)).total_tokens == 0

    @pytest.mark.asyncio
    async def test_explicit_model_wins(self, service):
        chat = await service.create_chat("user-1", model="chat-model")
        _, usage = await service.chat_completion(chat.id, "hi", with_model("explicit"))
        assert usage.model_name == "explicit"

    @pytest.mark.asyncio
    async def test_chat_model_used_when_no_option(self, service):
        chat = await service.create_chat("user-1", model="chat-model")
        _, usage = await service.chat_completion(chat.id, "hi")
        assert usage.model_name == "chat-model"

    @pytest.mark.asyncio
    async def test_listing_model_used_as_last_resort(self, service):
        chat = await service.create_chat("user-1")
        _, usage = await service.chat_completion(chat.id, "hi")
        assert usage.model_name == "echo"

    @pytest.mark.asyncio
    async def test_validation_never_calls_the_model(self, service, llm):
        llm.platform.chat = AsyncMock()
        with pytest.raises(ValidationError):
            await service.chat_completion("", "hi")
        chat = await service.create_chat("user-1")
        with pytest.raises(ValidationError):
            await service.chat_completion(chat.id, "")
        with pytest.raises(ChatNotFoundError):
            await service.chat_completion("missing", "hi")
        llm.platform.chat.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_assistant_append_failure_still_returns_text(self, service):
        chat = await service.create_chat("user-1")
        original = service.add_chat_message

        async def fail_on_assistant(chat_id, role, content, usage=None):
            if role == "assistant":
                raise RecordStoreError("disk full")
            return await original(chat_id, role, content, usage)

        with patch.object(service, "add_chat_message", side_effect=fail_on_assistant):
            text, _ = await service.chat_completion(chat.id, "hello")
        assert text
        items = await service.get_chat_messages(chat.id)
        assert [i.role for i in items] == ["user"]
