from typing import Sequence

from practice_backend.models.database_models import (
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    ROLE_USER,
    ChatItem,
)
from practice_backend.services.providers.base import (
    ChatParameters,
    ChatResponse,
    DescribeImageParameters,
    DescribeImageResponse,
    ModelInfo,
    Platform,
    PlatformType,
    Usage,
)
from practice_backend.services.usage import estimate_tokens

ECHO_MODEL = "echo"
_PREVIEW_LENGTH = 50
# Stand-in prompt cost of an attached image
_IMAGE_TOKENS = 50


class EchoPlatform(Platform):
    """Deterministic backend that reflects its input. No network access."""

    @property
    def type(self) -> PlatformType:
        return PlatformType.ECHO

    @property
    def default_model(self) -> str:
        return ECHO_MODEL

    async def models(self) -> list[ModelInfo]:
        return [ModelInfo(name=ECHO_MODEL, size_human="N/A", is_default=True)]

    async def chat(self, params: ChatParameters) -> ChatResponse:
        self.require_prompt(params)
        model = self.resolve_model(params)
        text = f"Echo response to: {params.prompt}\nSystem context: {params.system_prompt}"
        return ChatResponse(
            text=text,
            usage=Usage.create(
                model_name=model,
                prompt_tokens=estimate_tokens(params.system_prompt + params.prompt),
                completion_tokens=estimate_tokens(text),
            ),
        )

    async def chat_with_history(
        self, messages: Sequence[ChatItem], params: ChatParameters
    ) -> ChatResponse:
        self.require_messages(messages)
        model = self.resolve_model(params)

        counts = {ROLE_USER: 0, ROLE_ASSISTANT: 0, ROLE_SYSTEM: 0}
        last_user_message = ""
        for message in messages:
            if message.role in counts:
                counts[message.role] += 1
            if message.role == ROLE_USER:
                last_user_message = message.content

        lines = [
            f"Echo response to message history with {len(messages)} total messages:",
            f"- {counts[ROLE_USER]} user messages",
            f"- {counts[ROLE_ASSISTANT]} assistant messages",
            f"- {counts[ROLE_SYSTEM]} system messages",
        ]
        if params.system_prompt:
            lines.append(f"\nSystem prompt: {params.system_prompt}")
        if last_user_message:
            if len(last_user_message) > _PREVIEW_LENGTH:
                last_user_message = last_user_message[:_PREVIEW_LENGTH] + "..."
            lines.append(f"\nLast user message: {last_user_message}")
        text = "\n".join(lines)

        prompt_text = params.system_prompt + "".join(m.content for m in messages)
        return ChatResponse(
            text=text,
            usage=Usage.create(
                model_name=model,
                prompt_tokens=estimate_tokens(prompt_text),
                completion_tokens=estimate_tokens(text),
            ),
        )

    async def describe_image(
        self, params: DescribeImageParameters
    ) -> DescribeImageResponse:
        self.require_image(params)
        model = self.resolve_model(params)
        description = (
            f"[ECHO] Image filename: {params.file_name}\n"
            f"Image size: {len(params.image)} bytes\n\n"
            f"System: {params.system_prompt}\n\n"
            f"Prompt: {params.prompt}"
        )
        return DescribeImageResponse(
            description=description,
            usage=Usage.create(
                model_name=model,
                prompt_tokens=estimate_tokens(params.prompt) + _IMAGE_TOKENS,
                completion_tokens=estimate_tokens(description),
            ),
        )
