import logging
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path

import yaml
from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from practice_backend.services.providers.base import PlatformType

logger = logging.getLogger(__name__)

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_OPENAI_TIMEOUT = 60.0
DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_OLLAMA_MODEL = "gemma3:1b"
# Small local models on constrained hardware can take many minutes per reply
DEFAULT_OLLAMA_TIMEOUT = 30 * 60.0

CACHE_BACKEND_MEMORY = "memory"
CACHE_BACKEND_RECORD = "record"


@dataclass
class OpenAIConfig:
    api_key: str = ""
    model: str = DEFAULT_OPENAI_MODEL
    base_url: str = DEFAULT_OPENAI_BASE_URL
    cost_per_million_tokens: float = 0.15
    allowed_models: list[str] = field(default_factory=list)
    timeout: float = DEFAULT_OPENAI_TIMEOUT


@dataclass
class OllamaConfig:
    url: str = DEFAULT_OLLAMA_URL
    fallback_url: str = ""
    model: str = DEFAULT_OLLAMA_MODEL
    timeout: float = DEFAULT_OLLAMA_TIMEOUT


@dataclass
class CacheConfig:
    enabled: bool = True
    backend: str = CACHE_BACKEND_MEMORY
    cache_models: bool = False


@dataclass
class LLMConfig:
    """Everything the LLM gateway needs, already validated."""
    platform: PlatformType = PlatformType.OLLAMA
    openai: OpenAIConfig = field(default_factory=OpenAIConfig)
    ollama: OllamaConfig = field(default_factory=OllamaConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # LLM platform selection
    llm_platform: str = PlatformType.OLLAMA.value

    # OpenAI-compatible hosted API
    openai_api_key: SecretStr = SecretStr("")
    openai_model: str = DEFAULT_OPENAI_MODEL
    openai_base_url: str = DEFAULT_OPENAI_BASE_URL
    openai_cost_per_million_tokens: float = 0.15

    # Local inference
    ollama_url: str = DEFAULT_OLLAMA_URL
    ollama_fallback_url: str = ""
    ollama_model: str = DEFAULT_OLLAMA_MODEL

    # Response cache
    llm_cache_enabled: bool = True
    llm_cache_backend: str = CACHE_BACKEND_MEMORY
    llm_cache_models: bool = False

    # Database
    database_url: str = "./data/practice.db"

    # Server
    backend_port: int = 8000
    log_level: str = "INFO"

    # Loaded from YAML
    yaml_config: dict = {}

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        yaml_path = Path(__file__).parent.parent / "config" / "settings.yaml"
        if yaml_path.exists():
            with open(yaml_path, "r", encoding="utf-8") as f:
                self.yaml_config = yaml.safe_load(f) or {}

    @property
    def openai_allowed_models(self) -> list[str]:
        return list(
            self.yaml_config.get("llm", {}).get("openai", {}).get("allowed_models", [])
        )

    def llm_config(self) -> LLMConfig:
        """Build the gateway configuration from env values and YAML."""
        try:
            platform = PlatformType(self.llm_platform.strip().lower())
        except ValueError:
            logger.warning(
                "Unknown LLM platform %r, defaulting to %s",
                self.llm_platform, PlatformType.OLLAMA.value,
            )
            platform = PlatformType.OLLAMA

        backend = self.llm_cache_backend.strip().lower()
        if backend not in (CACHE_BACKEND_MEMORY, CACHE_BACKEND_RECORD):
            logger.warning(
                "Unknown cache backend %r, defaulting to %s",
                self.llm_cache_backend, CACHE_BACKEND_MEMORY,
            )
            backend = CACHE_BACKEND_MEMORY

        config = LLMConfig(
            platform=platform,
            openai=OpenAIConfig(
                api_key=self.openai_api_key.get_secret_value(),
                model=self.openai_model,
                base_url=self.openai_base_url,
                cost_per_million_tokens=self.openai_cost_per_million_tokens,
                allowed_models=self.openai_allowed_models,
            ),
            ollama=OllamaConfig(
                url=self.ollama_url,
                fallback_url=self.ollama_fallback_url,
                model=self.ollama_model,
            ),
            cache=CacheConfig(
                enabled=self.llm_cache_enabled,
                backend=backend,
                cache_models=self.llm_cache_models,
            ),
        )
        logger.info(
            "LLM configuration loaded: platform=%s ollama_url=%s ollama_model=%s "
            "openai_model=%s cache_enabled=%s cache_backend=%s",
            config.platform.value, config.ollama.url, config.ollama.model,
            config.openai.model, config.cache.enabled, config.cache.backend,
        )
        return config


@lru_cache
def get_settings() -> Settings:
    return Settings()
