import asyncio
import base64
import logging
import mimetypes
from typing import Sequence

import openai
from openai import AsyncOpenAI

from practice_backend.config import OpenAIConfig
from practice_backend.exceptions import PlatformAuthError, TransportError
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
from practice_backend.services.usage import calculate_cost

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_PROMPT = "What's in this image?"


class OpenAIPlatform(Platform):
    """Hosted OpenAI-compatible chat completions API.

    Every request runs under its own deadline (``config.timeout``), applied
    both to the SDK client and around the awaited call. Cost is billed at a
    flat ``cost_per_million_tokens`` rate over total tokens.
    """

    def __init__(self, config: OpenAIConfig):
        self._config = config
        self._client = AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout,
        )

    @property
    def type(self) -> PlatformType:
        return PlatformType.OPENAI

    @property
    def default_model(self) -> str:
        return self._config.model

    async def _complete(self, model: str, messages: list[dict]) -> tuple[str, Usage]:
        try:
            response = await asyncio.wait_for(
                self._client.chat.completions.create(model=model, messages=messages),
                timeout=self._config.timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"request timed out after {self._config.timeout:.0f}s",
                platform=self.type.value, model=model,
            ) from e
        except openai.AuthenticationError as e:
            raise PlatformAuthError(
                f"authentication failed: {e}", platform=self.type.value, model=model
            ) from e
        except openai.APIError as e:
            raise TransportError(
                f"API error: {e}", platform=self.type.value, model=model
            ) from e

        if not response.choices:
            raise TransportError("no response from API", platform=self.type.value, model=model)

        prompt_tokens = 0
        completion_tokens = 0
        if response.usage:
            prompt_tokens = response.usage.prompt_tokens or 0
            completion_tokens = response.usage.completion_tokens or 0
        total_tokens = prompt_tokens + completion_tokens
        cost = calculate_cost(total_tokens, self._config.cost_per_million_tokens)

        logger.debug(
            "OpenAI response received: model=%s prompt_tokens=%d completion_tokens=%d cost=%.8f",
            model, prompt_tokens, completion_tokens, cost,
        )
        text = response.choices[0].message.content or ""
        return text, Usage.create(
            model_name=model,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            cost=cost,
        )

    def _system_messages(self, params: ChatParameters) -> list[dict]:
        if params.system_prompt:
            return [{"role": ROLE_SYSTEM, "content": params.system_prompt}]
        return []

    async def chat(self, params: ChatParameters) -> ChatResponse:
        self.require_prompt(params)
        model = self.resolve_model(params)
        messages = self._system_messages(params)
        messages.append({"role": ROLE_USER, "content": params.prompt})
        text, usage = await self._complete(model, messages)
        return ChatResponse(text=text, usage=usage)

    async def chat_with_history(
        self, messages: Sequence[ChatItem], params: ChatParameters
    ) -> ChatResponse:
        self.require_messages(messages)
        model = self.resolve_model(params)
        api_messages = self._system_messages(params)
        api_messages.extend({"role": m.role, "content": m.content} for m in messages)
        text, usage = await self._complete(model, api_messages)
        return ChatResponse(text=text, usage=usage)

    async def describe_image(
        self, params: DescribeImageParameters
    ) -> DescribeImageResponse:
        self.require_image(params)
        model = self.resolve_model(params)

        mime_type = mimetypes.guess_type(params.file_name or "")[0] or "image/png"
        data_url = (
            f"data:{mime_type};base64,{base64.b64encode(params.image).decode('ascii')}"
        )
        messages = self._system_messages(params)
        messages.append({
            "role": ROLE_USER,
            "content": [
                {"type": "text", "text": params.prompt or DEFAULT_IMAGE_PROMPT},
                {"type": "image_url", "image_url": {"url": data_url}},
            ],
        })
        text, usage = await self._complete(model, messages)
        return DescribeImageResponse(description=text, usage=usage)

    async def models(self) -> list[ModelInfo]:
        if not self._config.api_key:
            raise PlatformAuthError("API key is not configured", platform=self.type.value)

        try:
            page = await asyncio.wait_for(
                self._client.models.list(), timeout=self._config.timeout
            )
        except asyncio.TimeoutError as e:
            raise TransportError(
                "model listing timed out", platform=self.type.value
            ) from e
        except openai.AuthenticationError as e:
            raise PlatformAuthError(
                f"authentication failed: {e}", platform=self.type.value
            ) from e
        except openai.APIError as e:
            raise TransportError(
                f"failed to list models: {e}", platform=self.type.value
            ) from e

        allowed = set(self._config.allowed_models)
        models = [
            ModelInfo(name=m.id, size_human="N/A")
            for m in page.data
            if not allowed or m.id in allowed
        ]
        return sort_models(mark_default(models, self._config.model))

    async def aclose(self) -> None:
        await self._client.close()
