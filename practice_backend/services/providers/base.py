from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Sequence

from practice_backend.exceptions import (
    EmptyPromptError,
    ImageMissingError,
    ModelNotSpecifiedError,
    NoMessagesError,
)
from practice_backend.models.database_models import ChatItem


class PlatformType(str, Enum):
    OPENAI = "openai"
    OLLAMA = "ollama"
    ECHO = "echo"


@dataclass(frozen=True)
class Usage:
    """Token and cost accounting for one model call."""
    model_name: str = ""
    cache_hit: bool = False
    cost: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    @classmethod
    def create(
        cls,
        model_name: str,
        prompt_tokens: int,
        completion_tokens: int,
        cost: float = 0.0,
    ) -> "Usage":
        prompt_tokens = max(int(prompt_tokens or 0), 0)
        completion_tokens = max(int(completion_tokens or 0), 0)
        return cls(
            model_name=model_name,
            cache_hit=False,
            cost=max(float(cost or 0.0), 0.0),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )

    def with_cache_hit(self, cache_hit: bool) -> "Usage":
        return replace(self, cache_hit=cache_hit)


@dataclass(frozen=True)
class CacheParameters:
    ignore_cache: bool = False
    disable_cache: bool = False


@dataclass(frozen=True)
class ChatParameters:
    prompt: str = ""
    system_prompt: str = ""
    model: str = ""  # empty means the platform's configured default
    cache: CacheParameters = field(default_factory=CacheParameters)


@dataclass(frozen=True)
class DescribeImageParameters(ChatParameters):
    image: bytes = b""
    file_name: str = ""


@dataclass(frozen=True)
class ChatResponse:
    text: str
    usage: Usage

    def with_cache_hit(self, cache_hit: bool) -> "ChatResponse":
        return replace(self, usage=self.usage.with_cache_hit(cache_hit))


@dataclass(frozen=True)
class DescribeImageResponse:
    description: str
    usage: Usage

    def with_cache_hit(self, cache_hit: bool) -> "DescribeImageResponse":
        return replace(self, usage=self.usage.with_cache_hit(cache_hit))


@dataclass
class ModelInfo:
    name: str
    size_human: str = "N/A"
    is_default: bool = False


ChatOption = Callable[[ChatParameters], ChatParameters]


def with_model(model: str) -> ChatOption:
    """Use a specific model instead of the platform default."""
    def apply(params: ChatParameters) -> ChatParameters:
        return replace(params, model=model)
    return apply


def with_cache(ignore_cache: bool = False, disable_cache: bool = False) -> ChatOption:
    """Control cache behaviour for a single call."""
    def apply(params: ChatParameters) -> ChatParameters:
        return replace(
            params,
            cache=CacheParameters(ignore_cache=ignore_cache, disable_cache=disable_cache),
        )
    return apply


def apply_options(params: ChatParameters, options: Sequence[ChatOption]) -> ChatParameters:
    for option in options:
        params = option(params)
    return params


def sort_models(models: list[ModelInfo]) -> list[ModelInfo]:
    return sorted(models, key=lambda m: m.name)


def mark_default(models: list[ModelInfo], default_model: str) -> list[ModelInfo]:
    for model in models:
        model.is_default = model.name == default_model
    return models


class Platform(ABC):
    """One language-model backend."""

    @property
    @abstractmethod
    def type(self) -> PlatformType:
        ...

    @property
    @abstractmethod
    def default_model(self) -> str:
        ...

    @abstractmethod
    async def chat(self, params: ChatParameters) -> ChatResponse:
        ...

    @abstractmethod
    async def chat_with_history(
        self, messages: Sequence[ChatItem], params: ChatParameters
    ) -> ChatResponse:
        ...

    @abstractmethod
    async def describe_image(
        self, params: DescribeImageParameters
    ) -> DescribeImageResponse:
        ...

    @abstractmethod
    async def models(self) -> list[ModelInfo]:
        ...

    async def aclose(self) -> None:
        """Release network clients held by the platform."""
        return None

    def resolve_model(self, params: ChatParameters) -> str:
        model = params.model or self.default_model
        if not model:
            raise ModelNotSpecifiedError(platform=self.type.value)
        return model

    def require_prompt(self, params: ChatParameters) -> None:
        if not params.prompt:
            raise EmptyPromptError(platform=self.type.value)

    def require_messages(self, messages: Sequence[ChatItem]) -> None:
        if not messages:
            raise NoMessagesError(platform=self.type.value)

    def require_image(self, params: DescribeImageParameters) -> None:
        if not params.image:
            raise ImageMissingError(platform=self.type.value)
