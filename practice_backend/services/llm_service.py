import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from practice_backend.config import CACHE_BACKEND_RECORD, LLMConfig
from practice_backend.database import RecordStore
from practice_backend.models.database_models import ChatItem
from practice_backend.services.cache_storage import CacheStorage, CleanableStorage
from practice_backend.services.memory_cache import MemoryCacheStorage
from practice_backend.services.providers.base import (
    ChatOption,
    ChatParameters,
    DescribeImageParameters,
    ModelInfo,
    Platform,
    Usage,
    apply_options,
    with_cache,
    with_model,
)
from practice_backend.services.providers.factory import create_platform
from practice_backend.services.record_cache import RecordCacheStorage

logger = logging.getLogger(__name__)

__all__ = ["Info", "LLMService", "PlatformInfo", "with_cache", "with_model"]


@dataclass
class PlatformInfo:
    name: str
    is_default: bool
    models: list[ModelInfo] = field(default_factory=list)


@dataclass
class Info:
    platforms: list[PlatformInfo] = field(default_factory=list)


class LLMService:
    """Single entry point for model calls, independent of the backend in use."""

    def __init__(
        self,
        platform: Platform,
        config: LLMConfig,
        storage: Optional[CacheStorage] = None,
    ):
        self._platform = platform
        self._config = config
        self._storage = storage

    @classmethod
    def with_memory_cache(cls, config: LLMConfig) -> "LLMService":
        storage = MemoryCacheStorage() if config.cache.enabled else None
        return cls(create_platform(config, storage), config, storage)

    @classmethod
    def with_record_store(
        cls, config: LLMConfig, store: Optional[RecordStore]
    ) -> "LLMService":
        storage: Optional[CacheStorage] = None
        if config.cache.enabled:
            if config.cache.backend == CACHE_BACKEND_RECORD and store is not None:
                storage = RecordCacheStorage(store, backend=config.platform.value)
            else:
                storage = MemoryCacheStorage()
        logger.info(
            "Creating LLM service: platform=%s cache=%s",
            config.platform.value, type(storage).__name__ if storage else "disabled",
        )
        return cls(create_platform(config, storage), config, storage)

    @property
    def platform(self) -> Platform:
        return self._platform

    @property
    def config(self) -> LLMConfig:
        return self._config

    async def chat(
        self, prompt: str, system_prompt: str = "", *options: ChatOption
    ) -> tuple[str, Usage]:
        params = apply_options(
            ChatParameters(prompt=prompt, system_prompt=system_prompt), options
        )
        response = await self._platform.chat(params)
        return response.text, response.usage

    async def chat_with_history(
        self,
        messages: Sequence[ChatItem],
        system_prompt: str = "",
        *options: ChatOption,
    ) -> tuple[str, Usage]:
        params = apply_options(ChatParameters(system_prompt=system_prompt), options)
        response = await self._platform.chat_with_history(messages, params)
        return response.text, response.usage

    async def describe_image(
        self,
        reader: Any,
        file_name: str,
        prompt: str = "",
        system_prompt: str = "",
        *options: ChatOption,
    ) -> tuple[str, Usage]:
        """Describe an image read from ``reader`` (bytes or a binary file-like object)."""
        if isinstance(reader, (bytes, bytearray)):
            image = bytes(reader)
        else:
            data = reader.read()
            if inspect.isawaitable(data):
                data = await data
            image = bytes(data or b"")

        params = apply_options(
            DescribeImageParameters(
                prompt=prompt,
                system_prompt=system_prompt,
                image=image,
                file_name=file_name,
            ),
            options,
        )
        response = await self._platform.describe_image(params)
        return response.description, response.usage

    async def info(self) -> Info:
        try:
            models = await self._platform.models()
        except Exception as e:
            logger.error("Failed to list models for %s: %s", self._platform.type.value, e)
            models = []
        return Info(
            platforms=[
                PlatformInfo(name=self._platform.type.value, is_default=True, models=models)
            ]
        )

    async def clean_cache(self) -> int:
        if not isinstance(self._storage, CleanableStorage):
            return 0
        return await self._storage.clean_expired()

    async def aclose(self) -> None:
        await self._platform.aclose()
