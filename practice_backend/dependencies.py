import logging
from typing import Optional

from practice_backend.config import Settings, get_settings
from practice_backend.database import RecordStore
from practice_backend.services.chat_service import ChatService
from practice_backend.services.llm_service import LLMService

logger = logging.getLogger(__name__)

_record_store: Optional[RecordStore] = None
_llm_service: Optional[LLMService] = None
_chat_service: Optional[ChatService] = None


def get_record_store() -> RecordStore:
    global _record_store
    if _record_store is None:
        _record_store = RecordStore()
    return _record_store


def init_llm_service(settings: Settings) -> LLMService:
    """Build the process-wide LLM service; the cache lives as long as it does."""
    global _llm_service
    _llm_service = LLMService.with_record_store(settings.llm_config(), get_record_store())
    return _llm_service


def set_llm_service(service: Optional[LLMService]):
    global _llm_service
    _llm_service = service


def get_llm_service() -> LLMService:
    if _llm_service is None:
        return init_llm_service(get_settings())
    return _llm_service


def get_chat_service() -> ChatService:
    """Shared instance so per-chat ordering locks span requests."""
    global _chat_service
    llm = get_llm_service()
    if _chat_service is None or _chat_service.llm is not llm:
        _chat_service = ChatService(get_record_store(), llm)
    return _chat_service


async def close_llm_service():
    global _llm_service
    if _llm_service is not None:
        await _llm_service.aclose()
        _llm_service = None
