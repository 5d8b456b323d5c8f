import logging

from fastapi import APIRouter, Depends, Header

from practice_backend.exceptions import (
    ChatAccessError,
    ChatNotFoundError,
    LLMError,
    RecordStoreError,
    ValidationError,
)
from practice_backend.models.schemas import (
    ChatCompletionResponse,
    ChatItemResponse,
    ChatListResponse,
    ChatRequest,
    ChatResponse,
    LabelUpdate,
    UsageResponse,
)
from practice_backend.dependencies import get_chat_service
from practice_backend.routers.errors import to_http_error
from practice_backend.services.chat_service import ChatService
from practice_backend.services.llm_service import with_model

logger = logging.getLogger(__name__)
router = APIRouter(tags=["chat"])

DEFAULT_USER_ID = "anonymous"
DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


@router.post("/chat", response_model=ChatCompletionResponse)
async def chat_completion(
    request: ChatRequest,
    x_user_id: str = Header(default=DEFAULT_USER_ID),
    service: ChatService = Depends(get_chat_service),
):
    """Answer a message, creating the chat first when no id is given."""
    options = [with_model(request.model)] if request.model else []
    try:
        chat_id = request.chat_id
        if chat_id:
            await service.get_owned_chat(chat_id, x_user_id)
        else:
            chat = await service.create_chat(
                x_user_id, request.system_prompt or DEFAULT_SYSTEM_PROMPT, request.model
            )
            chat_id = chat.id
        text, usage = await service.chat_completion(chat_id, request.message, *options)
    except (ValidationError, ChatNotFoundError, ChatAccessError, LLMError) as e:
        raise to_http_error(e) from e
    except RecordStoreError as e:
        logger.error("Chat completion failed to persist: %s", e)
        raise to_http_error(e) from e
    return ChatCompletionResponse(
        chat_id=chat_id, text=text, usage=UsageResponse.model_validate(usage)
    )


@router.get("/chats", response_model=ChatListResponse)
async def list_chats(
    limit: int = 10,
    offset: int = 0,
    x_user_id: str = Header(default=DEFAULT_USER_ID),
    service: ChatService = Depends(get_chat_service),
):
    try:
        chats = await service.get_chats(x_user_id, limit=limit, offset=offset)
    except ValidationError as e:
        raise to_http_error(e) from e
    return ChatListResponse(chats=[ChatResponse.model_validate(c) for c in chats])


@router.get("/chats/{chat_id}", response_model=ChatResponse)
async def get_chat(
    chat_id: str,
    x_user_id: str = Header(default=DEFAULT_USER_ID),
    service: ChatService = Depends(get_chat_service),
):
    try:
        await service.get_owned_chat(chat_id, x_user_id)
        chat = await service.get_chat(chat_id)
    except (ValidationError, ChatNotFoundError, ChatAccessError) as e:
        raise to_http_error(e) from e
    return ChatResponse.model_validate(chat)


@router.get("/chats/{chat_id}/messages", response_model=list[ChatItemResponse])
async def get_messages(
    chat_id: str,
    limit: int = 50,
    offset: int = 0,
    x_user_id: str = Header(default=DEFAULT_USER_ID),
    service: ChatService = Depends(get_chat_service),
):
    try:
        await service.get_owned_chat(chat_id, x_user_id)
        items = await service.get_chat_messages(chat_id, limit=limit, offset=offset)
    except (ValidationError, ChatNotFoundError, ChatAccessError) as e:
        raise to_http_error(e) from e
    return [ChatItemResponse.model_validate(item) for item in items]


@router.put("/chats/{chat_id}/label", response_model=ChatResponse)
async def update_label(
    chat_id: str,
    body: LabelUpdate,
    x_user_id: str = Header(default=DEFAULT_USER_ID),
    service: ChatService = Depends(get_chat_service),
):
    try:
        await service.get_owned_chat(chat_id, x_user_id)
        chat = await service.update_chat_label(chat_id, body.label)
    except (ValidationError, ChatNotFoundError, ChatAccessError) as e:
        raise to_http_error(e) from e
    return ChatResponse.model_validate(chat)


@router.delete("/chats/{chat_id}")
async def delete_chat(
    chat_id: str,
    x_user_id: str = Header(default=DEFAULT_USER_ID),
    service: ChatService = Depends(get_chat_service),
):
    try:
        await service.get_owned_chat(chat_id, x_user_id)
        await service.delete_chat(chat_id)
    except (ValidationError, ChatNotFoundError, ChatAccessError) as e:
        raise to_http_error(e) from e
    return {"status": "deleted"}
