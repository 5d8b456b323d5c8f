"""
Storage contract for cached model responses.

Keys are SHA-256 digests over a JSON encoding of everything that affects the
answer (prompt, system prompt, effective model and, for history calls, the
ordered role/content pairs). JSON keeps the encoding length-safe, so no two
distinct inputs can collide by concatenation. Ids and timestamps never take
part in a key.
"""

import hashlib
import json
from abc import ABC, abstractmethod
from typing import Any, Sequence

from practice_backend.models.database_models import ChatItem
from practice_backend.services.providers.base import (
    ChatParameters,
    ChatResponse,
    DescribeImageParameters,
    DescribeImageResponse,
)

HISTORY_KEY_PREFIX = "history-"
IMAGE_KEY_PREFIX = "image-"


def hash_key(*parts: Any) -> str:
    payload = json.dumps(list(parts), ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class CacheStorage(ABC):
    """Get/set for the three cacheable call kinds.

    Getters raise ``CacheMissError`` when no live entry exists and
    ``CacheStorageError`` when the backend itself fails. Callers pass
    parameters whose ``model`` is already the effective model.
    """

    def chat_key(self, params: ChatParameters) -> str:
        return hash_key(params.prompt, params.system_prompt, params.model)

    def history_key(
        self, messages: Sequence[ChatItem], system_prompt: str, model: str
    ) -> str:
        pairs = [[m.role, m.content] for m in messages]
        return HISTORY_KEY_PREFIX + hash_key(pairs, system_prompt, model)

    def image_key(self, params: DescribeImageParameters) -> str:
        image_digest = hashlib.sha256(params.image).hexdigest()
        return IMAGE_KEY_PREFIX + hash_key(
            image_digest, params.prompt, params.system_prompt, params.model
        )

    @abstractmethod
    async def get_chat(self, key: str) -> ChatResponse:
        ...

    @abstractmethod
    async def set_chat(
        self, key: str, params: ChatParameters, response: ChatResponse
    ) -> None:
        ...

    @abstractmethod
    async def get_chat_with_history(self, key: str) -> ChatResponse:
        ...

    @abstractmethod
    async def set_chat_with_history(
        self,
        key: str,
        messages: Sequence[ChatItem],
        system_prompt: str,
        model: str,
        response: ChatResponse,
    ) -> None:
        ...

    @abstractmethod
    async def get_image(self, key: str) -> DescribeImageResponse:
        ...

    @abstractmethod
    async def set_image(
        self, key: str, params: DescribeImageParameters, response: DescribeImageResponse
    ) -> None:
        ...


class CleanableStorage(CacheStorage):
    """Storage that can sweep its expired entries."""

    @abstractmethod
    async def clean_expired(self) -> int:
        """Remove expired entries and return how many were removed."""
        ...
