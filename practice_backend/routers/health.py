import logging

from fastapi import APIRouter, Depends

from practice_backend.database import RecordStore
from practice_backend.dependencies import get_llm_service, get_record_store
from practice_backend.exceptions import RecordStoreError
from practice_backend.models.database_models import TABLE_CHATS, TABLE_LLM_RESPONSES
from practice_backend.models.schemas import HealthResponse
from practice_backend.services.llm_service import LLMService

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health_check(
    store: RecordStore = Depends(get_record_store),
    llm: LLMService = Depends(get_llm_service),
):
    """Return service health.  If the DB isn't ready yet, return a 200 with
    status="starting" so container healthchecks don't fail."""
    platform = llm.platform.type.value
    try:
        chat_count = await store.count(TABLE_CHATS)
        cached_count = await store.count(TABLE_LLM_RESPONSES)
    except RecordStoreError as exc:
        logger.warning("Health check: DB not ready yet (%s)", exc)
        return HealthResponse(status="starting", platform=platform)
    return HealthResponse(
        status="healthy",
        platform=platform,
        chat_count=chat_count,
        cached_response_count=cached_count,
    )
