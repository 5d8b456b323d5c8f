import logging
from typing import Optional

from practice_backend.config import LLMConfig
from practice_backend.services.cache_storage import CacheStorage
from practice_backend.services.cached_platform import CachedPlatform
from practice_backend.services.providers.base import Platform, PlatformType
from practice_backend.services.providers.echo_provider import EchoPlatform
from practice_backend.services.providers.ollama_provider import OllamaPlatform
from practice_backend.services.providers.openai_provider import OpenAIPlatform

logger = logging.getLogger(__name__)


def create_platform(
    config: LLMConfig, cache_storage: Optional[CacheStorage] = None
) -> Platform:
    """Build the configured platform, wrapped in the cache when enabled."""
    platform_type = config.platform
    if platform_type == PlatformType.OPENAI:
        platform: Platform = OpenAIPlatform(config.openai)
    elif platform_type == PlatformType.OLLAMA:
        platform = OllamaPlatform(config.ollama)
    elif platform_type == PlatformType.ECHO:
        platform = EchoPlatform()
    else:
        raise ValueError(f"Unknown platform type: {platform_type}")

    if config.cache.enabled and cache_storage is not None:
        logger.info(
            "Wrapping %s platform with cache storage %s",
            platform.type.value, type(cache_storage).__name__,
        )
        return CachedPlatform(platform, cache_storage, cache_models=config.cache.cache_models)
    return platform
