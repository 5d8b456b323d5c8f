import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from practice_backend.database import RecordStore, format_timestamp, parse_timestamp
from practice_backend.exceptions import CacheMissError, CacheStorageError, RecordStoreError
from practice_backend.models.database_models import (
    ROLE_USER,
    TABLE_LLM_RESPONSES,
    ChatItem,
    LLMResponseRecord,
)
from practice_backend.services.cache_storage import CleanableStorage
from practice_backend.services.memory_cache import DEFAULT_CHAT_TTL, DEFAULT_HISTORY_TTL
from practice_backend.services.providers.base import (
    ChatParameters,
    ChatResponse,
    DescribeImageParameters,
    DescribeImageResponse,
    Usage,
)

logger = logging.getLogger(__name__)

MAX_SYSTEM_PROMPT_LENGTH = 1000

_SWEEP_SQL = (
    f"DELETE FROM {TABLE_LLM_RESPONSES} "
    "WHERE ttl > 0 AND julianday(created) + ttl / 86400.0 < julianday(?)"
)


def _record_to_row(record: LLMResponseRecord) -> dict:
    return {
        "key": record.key,
        "prompt": record.prompt,
        "system_prompt": record.system_prompt,
        "response": record.response,
        "model_name": record.model_name,
        "backend": record.backend,
        "prompt_tokens": record.prompt_tokens,
        "completion_tokens": record.completion_tokens,
        "total_tokens": record.total_tokens,
        "cost": record.cost,
        "ttl": record.ttl,
    }


def _row_to_record(row: dict) -> LLMResponseRecord:
    return LLMResponseRecord(
        id=row["id"],
        key=row["key"],
        prompt=row["prompt"],
        system_prompt=row["system_prompt"],
        response=row["response"],
        model_name=row["model_name"],
        backend=row["backend"],
        prompt_tokens=row["prompt_tokens"],
        completion_tokens=row["completion_tokens"],
        total_tokens=row["total_tokens"],
        cost=row["cost"],
        ttl=row["ttl"],
        created=parse_timestamp(row["created"]),
        updated=parse_timestamp(row["updated"]),
    )


class RecordCacheStorage(CleanableStorage):
    """Cache persisted in the ``llm_responses`` table.

    One row per key, overwritten on conflict. A ``ttl`` of 0 keeps the row
    forever. Image descriptions are never persisted.
    """

    def __init__(
        self,
        store: RecordStore,
        chat_ttl: timedelta = DEFAULT_CHAT_TTL,
        history_ttl: timedelta = DEFAULT_HISTORY_TTL,
        backend: str = "",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._chat_ttl = int(chat_ttl.total_seconds())
        self._history_ttl = int(history_ttl.total_seconds())
        self._backend = backend
        self._clock = clock or store.now

    async def _get(self, key: str) -> LLMResponseRecord:
        try:
            row = await self._store.find_first(TABLE_LLM_RESPONSES, {"key": key})
        except RecordStoreError as e:
            raise CacheStorageError(f"failed to read cache entry {key}: {e}") from e
        if row is None:
            raise CacheMissError(key)

        record = _row_to_record(row)
        if record.ttl > 0 and record.created is not None:
            expires_at = record.created + timedelta(seconds=record.ttl)
            if self._clock() >= expires_at:
                try:
                    await self._store.delete(TABLE_LLM_RESPONSES, record.id)
                except RecordStoreError as e:
                    logger.warning("Failed to delete expired cache entry %s: %s", key, e)
                raise CacheMissError(key, reason="expired")
        return record

    async def _set(self, record: LLMResponseRecord) -> None:
        try:
            await self._store.upsert(TABLE_LLM_RESPONSES, _record_to_row(record), "key")
        except RecordStoreError as e:
            raise CacheStorageError(f"failed to write cache entry {record.key}: {e}") from e

    def _usage(self, record: LLMResponseRecord) -> Usage:
        return Usage(
            model_name=record.model_name,
            cache_hit=False,
            cost=record.cost,
            prompt_tokens=record.prompt_tokens,
            completion_tokens=record.completion_tokens,
            total_tokens=record.total_tokens,
        )

    def _record(
        self,
        key: str,
        prompt: str,
        system_prompt: str,
        response: ChatResponse,
        ttl: int,
    ) -> LLMResponseRecord:
        usage = response.usage
        return LLMResponseRecord(
            key=key,
            prompt=prompt,
            system_prompt=system_prompt,
            response=response.text,
            model_name=usage.model_name,
            backend=self._backend,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            cost=usage.cost,
            ttl=ttl,
        )

    async def get_chat(self, key: str) -> ChatResponse:
        record = await self._get(key)
        return ChatResponse(text=record.response, usage=self._usage(record))

    async def set_chat(
        self, key: str, params: ChatParameters, response: ChatResponse
    ) -> None:
        await self._set(
            self._record(key, params.prompt, params.system_prompt, response, self._chat_ttl)
        )

    async def get_chat_with_history(self, key: str) -> ChatResponse:
        return await self.get_chat(key)

    async def set_chat_with_history(
        self,
        key: str,
        messages: Sequence[ChatItem],
        system_prompt: str,
        model: str,
        response: ChatResponse,
    ) -> None:
        last_user_message = ""
        for message in reversed(messages):
            if message.role == ROLE_USER:
                last_user_message = message.content
                break
        annotated = f"{system_prompt} [history: {len(messages)} messages]"
        await self._set(
            self._record(
                key,
                last_user_message,
                annotated[:MAX_SYSTEM_PROMPT_LENGTH],
                response,
                self._history_ttl,
            )
        )

    async def get_image(self, key: str) -> DescribeImageResponse:
        raise CacheMissError(key, reason="not cached")

    async def set_image(
        self, key: str, params: DescribeImageParameters, response: DescribeImageResponse
    ) -> None:
        return None

    async def clean_expired(self) -> int:
        try:
            removed = await self._store.execute(_SWEEP_SQL, (format_timestamp(self._clock()),))
        except RecordStoreError as e:
            raise CacheStorageError(f"failed to clean expired cache entries: {e}") from e
        if removed:
            logger.info("Cleaned %d expired cached LLM responses", removed)
        return removed
