import asyncio
import logging
import weakref
from datetime import datetime
from typing import Callable, Optional

from practice_backend.database import RecordStore, format_timestamp, parse_timestamp
from practice_backend.exceptions import (
    ChatAccessError,
    ChatNotFoundError,
    LLMError,
    RecordNotFoundError,
    RecordStoreError,
    ValidationError,
)
from practice_backend.models.database_models import (
    CHAT_ROLES,
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    ROLE_USER,
    TABLE_CHAT_ITEMS,
    TABLE_CHATS,
    Chat,
    ChatItem,
)
from practice_backend.services.llm_service import LLMService
from practice_backend.services.providers.base import (
    ChatOption,
    ChatParameters,
    Usage,
    apply_options,
    with_model,
)

logger = logging.getLogger(__name__)

DEFAULT_CHAT_LABEL = "New chat"
HISTORY_LIMIT = 100


def _row_to_chat(row: dict) -> Chat:
    return Chat(
        id=row["id"],
        user_id=row["user"],
        label=row["label"],
        system_prompt=row["system_prompt"],
        model=row["model"],
        total_tokens=row["total_tokens"],
        total_cost=row["total_cost"],
        created=parse_timestamp(row["created"]),
        updated=parse_timestamp(row["updated"]),
    )


def _row_to_item(row: dict) -> ChatItem:
    usage = None
    if row.get("total_tokens") is not None:
        usage = Usage(
            model_name=row.get("model") or "",
            cost=row.get("cost") or 0.0,
            prompt_tokens=row.get("prompt_tokens") or 0,
            completion_tokens=row.get("completion_tokens") or 0,
            total_tokens=row["total_tokens"],
        )
    return ChatItem(
        id=row["id"],
        chat_id=row["chat"],
        role=row["role"],
        content=row["content"],
        usage=usage,
        order=row["order"],
        created=parse_timestamp(row["created"]),
        updated=parse_timestamp(row["updated"]),
    )


class ChatService:
    """Conversations persisted in the record store, answered by the LLM service.

    Failures on the main path (loading the chat, storing the user message,
    the model call) propagate. Bookkeeping after the answer is known
    (assistant message, running totals, ``updated`` stamps) is logged and
    skipped on failure so the caller still gets the reply.
    """

    def __init__(
        self,
        store: RecordStore,
        llm: LLMService,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._llm = llm
        self._clock = clock or store.now
        # Entries vanish once no task holds or awaits the lock
        self._order_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    @property
    def llm(self) -> LLMService:
        return self._llm

    def _order_lock(self, chat_id: str) -> asyncio.Lock:
        lock = self._order_locks.get(chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self._order_locks[chat_id] = lock
        return lock

    async def _load_chat(self, chat_id: str) -> Chat:
        try:
            row = await self._store.find_by_id(TABLE_CHATS, chat_id)
        except RecordNotFoundError:
            raise ChatNotFoundError(chat_id) from None
        return _row_to_chat(row)

    async def _touch(self, chat_id: str) -> None:
        try:
            await self._store.execute(
                f"UPDATE {TABLE_CHATS} SET updated = ? WHERE id = ?",
                (format_timestamp(self._clock()), chat_id),
            )
        except RecordStoreError as e:
            logger.error("Failed to update chat timestamp for %s: %s", chat_id, e)

    async def _recent_items(self, chat_id: str, limit: int = HISTORY_LIMIT) -> list[ChatItem]:
        rows = await self._store.find_by_filter(
            TABLE_CHAT_ITEMS, {"chat": chat_id}, sort="-order", limit=limit
        )
        return [_row_to_item(row) for row in reversed(rows)]

    async def create_chat(self, user_id: str, system_prompt: str = "", model: str = "") -> Chat:
        if not user_id:
            raise ValidationError("user id is required")

        row = await self._store.save(TABLE_CHATS, {
            "user": user_id,
            "label": DEFAULT_CHAT_LABEL,
            "system_prompt": system_prompt,
            "model": model,
            "total_tokens": 0,
            "total_cost": 0.0,
        })
        chat = _row_to_chat(row)
        logger.info("Created chat %s for user %s", chat.id, user_id)

        if system_prompt:
            try:
                item = await self.add_chat_message(chat.id, ROLE_SYSTEM, system_prompt)
                chat.items.append(item)
            except (RecordStoreError, LookupError) as e:
                logger.error("Failed to store system prompt for chat %s: %s", chat.id, e)
        return chat

    async def get_owned_chat(self, chat_id: str, user_id: str) -> Chat:
        """Load a chat without items, refusing callers other than its owner."""
        if not chat_id:
            raise ValidationError("chat id is required")
        chat = await self._load_chat(chat_id)
        if chat.user_id != user_id:
            logger.warning("User %s denied access to chat %s", user_id, chat_id)
            raise ChatAccessError(chat_id, user_id)
        return chat

    async def get_chat(self, chat_id: str) -> Chat:
        if not chat_id:
            raise ValidationError("chat id is required")
        chat = await self._load_chat(chat_id)
        try:
            chat.items = await self._recent_items(chat_id)
        except RecordStoreError as e:
            logger.error("Failed to load items for chat %s: %s", chat_id, e)
            chat.items = []
        return chat

    async def get_chats(self, user_id: str, limit: int = 10, offset: int = 0) -> list[Chat]:
        if not user_id:
            raise ValidationError("user id is required")
        rows = await self._store.find_by_filter(
            TABLE_CHATS, {"user": user_id}, sort="-updated", limit=limit, offset=offset
        )
        return [_row_to_chat(row) for row in rows]

    async def update_chat_label(self, chat_id: str, label: str) -> Chat:
        if not chat_id:
            raise ValidationError("chat id is required")
        if not label:
            raise ValidationError("label is required")
        await self._load_chat(chat_id)
        row = await self._store.save(TABLE_CHATS, {"id": chat_id, "label": label})
        return _row_to_chat(row)

    async def delete_chat(self, chat_id: str) -> None:
        if not chat_id:
            raise ValidationError("chat id is required")
        await self._load_chat(chat_id)
        async with self._order_lock(chat_id):
            await self._store.delete_where(TABLE_CHAT_ITEMS, {"chat": chat_id})
            await self._store.delete(TABLE_CHATS, chat_id)
        logger.info("Deleted chat %s", chat_id)

    async def _resolve_model(self, chat: Chat, options: tuple[ChatOption, ...]) -> str:
        explicit = apply_options(ChatParameters(), options).model
        if explicit:
            return explicit
        if chat.model:
            return chat.model
        info = await self._llm.info()
        for platform in info.platforms:
            if platform.models:
                return platform.models[0].name
        return ""

    async def chat_completion(
        self, chat_id: str, user_message: str, *options: ChatOption
    ) -> tuple[str, Usage]:
        """Answer ``user_message`` in the context of the chat's history."""
        if not chat_id:
            raise ValidationError("chat id is required")
        if not user_message:
            raise ValidationError("message is required")

        chat = await self._load_chat(chat_id)
        model = await self._resolve_model(chat, options)
        call_options = list(options)
        if model:
            call_options.append(with_model(model))

        await self.add_chat_message(chat_id, ROLE_USER, user_message)

        history: list[ChatItem] = []
        try:
            history = await self._recent_items(chat_id)
        except RecordStoreError as e:
            logger.error("Failed to load history for chat %s, using single turn: %s", chat_id, e)

        # The system prompt is sent separately, not as a history item
        history = [
            item for item in history
            if not (item.role == ROLE_SYSTEM and item.content == chat.system_prompt)
        ]

        text = ""
        usage: Optional[Usage] = None
        if history:
            try:
                text, usage = await self._llm.chat_with_history(
                    history, chat.system_prompt, *call_options
                )
            except LLMError as e:
                logger.warning(
                    "Chat with history failed for chat %s, falling back to single turn: %s",
                    chat_id, e,
                )
        if usage is None:
            text, usage = await self._llm.chat(user_message, chat.system_prompt, *call_options)

        try:
            await self.add_chat_message(chat_id, ROLE_ASSISTANT, text, usage)
        except (RecordStoreError, LookupError, ValidationError) as e:
            logger.error("Failed to store assistant reply for chat %s: %s", chat_id, e)

        try:
            await self._store.execute(
                f"UPDATE {TABLE_CHATS} SET total_tokens = total_tokens + ?, "
                "total_cost = total_cost + ?, updated = ? WHERE id = ?",
                (usage.total_tokens, usage.cost, format_timestamp(self._clock()), chat_id),
            )
        except RecordStoreError as e:
            logger.error("Failed to update usage totals for chat %s: %s", chat_id, e)

        logger.info(
            "Chat completion for %s: model=%s tokens=%d cost=%.8f cache_hit=%s",
            chat_id, usage.model_name, usage.total_tokens, usage.cost, usage.cache_hit,
        )
        return text, usage

    async def add_chat_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        usage: Optional[Usage] = None,
    ) -> ChatItem:
        if not chat_id:
            raise ValidationError("chat id is required")
        if role not in CHAT_ROLES:
            raise ValidationError(f"invalid role: {role!r}")
        if not content:
            raise ValidationError("content is required")

        async with self._order_lock(chat_id):
            await self._load_chat(chat_id)
            last = await self._store.find_by_filter(
                TABLE_CHAT_ITEMS, {"chat": chat_id}, sort="-order", limit=1
            )
            order = last[0]["order"] + 1 if last else 0
            record = {
                "chat": chat_id,
                "role": role,
                "content": content,
                "order": order,
            }
            if usage is not None:
                record.update({
                    "prompt_tokens": usage.prompt_tokens,
                    "completion_tokens": usage.completion_tokens,
                    "total_tokens": usage.total_tokens,
                    "cost": usage.cost,
                    "model": usage.model_name,
                })
            row = await self._store.save(TABLE_CHAT_ITEMS, record)

        await self._touch(chat_id)
        return _row_to_item(row)

    async def get_chat_messages(
        self, chat_id: str, limit: int = 50, offset: int = 0
    ) -> list[ChatItem]:
        if not chat_id:
            raise ValidationError("chat id is required")
        await self._load_chat(chat_id)
        rows = await self._store.find_by_filter(
            TABLE_CHAT_ITEMS, {"chat": chat_id}, sort="order", limit=limit, offset=offset
        )
        return [_row_to_item(row) for row in rows]
