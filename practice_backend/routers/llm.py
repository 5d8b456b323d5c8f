import logging

from fastapi import APIRouter, Depends

from practice_backend.exceptions import LLMError
from practice_backend.models.schemas import (
    LLMChatRequest,
    LLMChatResponse,
    LLMInfoResponse,
    UsageResponse,
)
from practice_backend.dependencies import get_llm_service
from practice_backend.routers.errors import to_http_error
from practice_backend.services.llm_service import LLMService, with_cache, with_model

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/llm", tags=["llm"])


@router.post("/chat", response_model=LLMChatResponse)
async def chat(
    request: LLMChatRequest,
    llm: LLMService = Depends(get_llm_service),
):
    """Single-turn completion without a stored conversation."""
    options = [with_cache(request.ignore_cache, request.disable_cache)]
    if request.model:
        options.append(with_model(request.model))
    try:
        text, usage = await llm.chat(request.prompt, request.system_prompt, *options)
    except LLMError as e:
        logger.error("LLM chat failed: %s", e)
        raise to_http_error(e) from e
    return LLMChatResponse(text=text, usage=UsageResponse.model_validate(usage))


@router.get("/info", response_model=LLMInfoResponse)
async def info(llm: LLMService = Depends(get_llm_service)):
    return LLMInfoResponse.model_validate(await llm.info())
