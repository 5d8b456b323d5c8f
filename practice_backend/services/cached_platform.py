import logging
from dataclasses import replace
from typing import Optional, Sequence

from practice_backend.exceptions import CacheMissError, NoMessagesError
from practice_backend.models.database_models import ChatItem
from practice_backend.services.cache_storage import CacheStorage
from practice_backend.services.providers.base import (
    ChatParameters,
    ChatResponse,
    DescribeImageParameters,
    DescribeImageResponse,
    ModelInfo,
    Platform,
    PlatformType,
)

logger = logging.getLogger(__name__)


class CachedPlatform(Platform):
    """Platform decorator that serves repeated requests from a cache.

    ``disable_cache`` skips both read and write. ``ignore_cache`` skips the
    read but still stores the fresh answer. Storage failures never fail the
    call: a broken read counts as a miss and a broken write is only logged.
    """

    def __init__(self, delegate: Platform, storage: CacheStorage, cache_models: bool = False):
        self._delegate = delegate
        self._storage = storage
        self._cache_models = cache_models
        self._models: Optional[list[ModelInfo]] = None

    @property
    def type(self) -> PlatformType:
        return self._delegate.type

    @property
    def default_model(self) -> str:
        return self._delegate.default_model

    @property
    def delegate(self) -> Platform:
        return self._delegate

    @property
    def storage(self) -> CacheStorage:
        return self._storage

    def _effective(self, params):
        return replace(params, model=params.model or self._delegate.default_model)

    async def _read(self, kind: str, key: str, getter):
        try:
            return await getter(key)
        except CacheMissError:
            logger.debug("Cache miss: kind=%s key=%s", kind, key)
        except Exception as e:
            logger.warning("Cache read failed, treating as miss: kind=%s key=%s error=%s", kind, key, e)
        return None

    async def _write(self, kind: str, key: str, setter, *args) -> None:
        try:
            await setter(key, *args)
        except Exception as e:
            logger.warning("Cache write failed: kind=%s key=%s error=%s", kind, key, e)

    async def chat(self, params: ChatParameters) -> ChatResponse:
        if params.cache.disable_cache:
            response = await self._delegate.chat(params)
            return response.with_cache_hit(False)

        keyed = self._effective(params)
        key = self._storage.chat_key(keyed)
        if not params.cache.ignore_cache:
            cached = await self._read("chat", key, self._storage.get_chat)
            if cached is not None:
                logger.debug("Cache hit: kind=chat key=%s", key)
                return cached.with_cache_hit(True)

        response = (await self._delegate.chat(params)).with_cache_hit(False)
        await self._write("chat", key, self._storage.set_chat, keyed, response)
        return response

    async def chat_with_history(
        self, messages: Sequence[ChatItem], params: ChatParameters
    ) -> ChatResponse:
        if not messages:
            raise NoMessagesError(platform=self.type.value)
        if params.cache.disable_cache:
            response = await self._delegate.chat_with_history(messages, params)
            return response.with_cache_hit(False)

        model = params.model or self._delegate.default_model
        key = self._storage.history_key(messages, params.system_prompt, model)
        if not params.cache.ignore_cache:
            cached = await self._read("history", key, self._storage.get_chat_with_history)
            if cached is not None:
                logger.debug("Cache hit: kind=history key=%s", key)
                return cached.with_cache_hit(True)

        response = (
            await self._delegate.chat_with_history(messages, params)
        ).with_cache_hit(False)
        await self._write(
            "history", key, self._storage.set_chat_with_history,
            messages, params.system_prompt, model, response,
        )
        return response

    async def describe_image(
        self, params: DescribeImageParameters
    ) -> DescribeImageResponse:
        if params.cache.disable_cache:
            response = await self._delegate.describe_image(params)
            return response.with_cache_hit(False)

        keyed = self._effective(params)
        key = self._storage.image_key(keyed)
        if not params.cache.ignore_cache:
            cached = await self._read("image", key, self._storage.get_image)
            if cached is not None:
                logger.debug("Cache hit: kind=image key=%s", key)
                return cached.with_cache_hit(True)

        response = (await self._delegate.describe_image(params)).with_cache_hit(False)
        await self._write("image", key, self._storage.set_image, keyed, response)
        return response

    async def models(self) -> list[ModelInfo]:
        if not self._cache_models:
            return await self._delegate.models()
        if self._models is None:
            self._models = await self._delegate.models()
        return list(self._models)

    def clear_models_cache(self) -> None:
        self._models = None

    async def aclose(self) -> None:
        await self._delegate.aclose()
