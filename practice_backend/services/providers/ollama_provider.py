import logging
from typing import Awaitable, Callable, Optional, Sequence, TypeVar

from practice_backend.config import OllamaConfig
from practice_backend.exceptions import PlatformNotImplementedError, TransportError
from practice_backend.models.database_models import ROLE_SYSTEM, ROLE_USER, ChatItem
from practice_backend.services.providers.base import (
    ChatParameters,
    ChatResponse,
    DescribeImageParameters,
    DescribeImageResponse,
    ModelInfo,
    Platform,
    PlatformType,
    Usage,
    mark_default,
    sort_models,
)
from practice_backend.services.providers.ollama_client import OllamaClient
from practice_backend.services.usage import estimate_tokens

logger = logging.getLogger(__name__)

T = TypeVar("T")

ClientFactory = Callable[[str, float], OllamaClient]


class OllamaPlatform(Platform):
    """Local inference server with an optional fallback endpoint.

    A failed call against the primary URL is retried once against
    ``fallback_url`` when one is configured. Local inference is not billed,
    so cost is always zero.
    """

    def __init__(self, config: OllamaConfig, client_factory: ClientFactory = OllamaClient):
        self._config = config
        self._client_factory = client_factory
        self._client: Optional[OllamaClient] = None
        self._fallback_client: Optional[OllamaClient] = None

        logger.debug("Creating Ollama platform: model=%s url=%s", config.model, config.url)
        try:
            self._client = client_factory(config.url, config.timeout)
        except ValueError as e:
            logger.error("Failed to create Ollama client, will retry on first use: %s", e)

    @property
    def type(self) -> PlatformType:
        return PlatformType.OLLAMA

    @property
    def default_model(self) -> str:
        return self._config.model

    def _get_client(self) -> OllamaClient:
        if self._client is None:
            self._client = self._client_factory(self._config.url, self._config.timeout)
        return self._client

    def _get_fallback_client(self) -> OllamaClient:
        if self._fallback_client is None:
            self._fallback_client = self._client_factory(
                self._config.fallback_url, self._config.timeout
            )
        return self._fallback_client

    async def _with_fallback(
        self, model: str, call: Callable[[OllamaClient], Awaitable[T]]
    ) -> T:
        try:
            return await call(self._get_client())
        except (TransportError, ValueError) as e:
            if not self._config.fallback_url:
                if isinstance(e, TransportError):
                    raise
                raise TransportError(
                    f"failed to create Ollama client: {e}",
                    platform=self.type.value, model=model or None,
                ) from e
            logger.warning(
                "Primary Ollama URL failed, attempting fallback: primary=%s fallback=%s error=%s",
                self._config.url, self._config.fallback_url, e,
            )

        try:
            return await call(self._get_fallback_client())
        except ValueError as e:
            raise TransportError(
                f"failed to create fallback client: {e}",
                platform=self.type.value, model=model or None,
            ) from e
        except TransportError as e:
            raise TransportError(
                f"fallback {self._config.fallback_url} also failed: {e.message}",
                platform=self.type.value, model=model or None,
            ) from e

    async def models(self) -> list[ModelInfo]:
        models = await self._with_fallback("", lambda client: client.list_models())
        return sort_models(mark_default(models, self._config.model))

    async def chat(self, params: ChatParameters) -> ChatResponse:
        self.require_prompt(params)
        model = self.resolve_model(params)

        messages = []
        if params.system_prompt:
            messages.append({"role": ROLE_SYSTEM, "content": params.system_prompt})
        messages.append({"role": ROLE_USER, "content": params.prompt})

        result = await self._with_fallback(model, lambda client: client.chat(model, messages))

        # The single-turn path estimates instead of trusting eval counters
        prompt_tokens = estimate_tokens(params.prompt)
        completion_tokens = estimate_tokens(result.content)
        logger.debug(
            "Ollama chat response received: model=%s est_prompt_tokens=%d est_completion_tokens=%d",
            model, prompt_tokens, completion_tokens,
        )
        return ChatResponse(
            text=result.content,
            usage=Usage.create(
                model_name=model,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
            ),
        )

    async def chat_with_history(
        self, messages: Sequence[ChatItem], params: ChatParameters
    ) -> ChatResponse:
        self.require_messages(messages)
        model = self.resolve_model(params)

        api_messages = []
        if params.system_prompt:
            api_messages.append({"role": ROLE_SYSTEM, "content": params.system_prompt})
        api_messages.extend({"role": m.role, "content": m.content} for m in messages)

        logger.debug(
            "Sending historical chat request to Ollama: model=%s messages=%d has_system_prompt=%s",
            model, len(api_messages), bool(params.system_prompt),
        )
        result = await self._with_fallback(
            model, lambda client: client.chat(model, api_messages)
        )
        logger.debug(
            "Ollama chat with history response received: model=%s prompt_tokens=%d completion_tokens=%d",
            model, result.prompt_eval_count, result.eval_count,
        )
        return ChatResponse(
            text=result.content,
            usage=Usage.create(
                model_name=model,
                prompt_tokens=result.prompt_eval_count,
                completion_tokens=result.eval_count,
            ),
        )

    async def describe_image(
        self, params: DescribeImageParameters
    ) -> DescribeImageResponse:
        raise PlatformNotImplementedError("image description", platform=self.type.value)

    async def aclose(self) -> None:
        for client in (self._client, self._fallback_client):
            if client is not None:
                await client.close()
