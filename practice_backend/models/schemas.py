from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# --- LLM ---
class LLMChatRequest(BaseModel):
    prompt: str = Field(..., min_length=1, max_length=50000)
    system_prompt: str = ""
    model: str = ""
    ignore_cache: bool = False
    disable_cache: bool = False


class UsageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, protected_namespaces=())

    model_name: str = ""
    cache_hit: bool = False
    cost: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class LLMChatResponse(BaseModel):
    text: str
    usage: UsageResponse


class ModelInfoResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    size_human: str = "N/A"
    is_default: bool = False


class PlatformInfoResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    is_default: bool = False
    models: list[ModelInfoResponse] = []


class LLMInfoResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    platforms: list[PlatformInfoResponse] = []


# --- Chats ---
class ChatRequest(BaseModel):
    chat_id: Optional[str] = None
    message: str = Field(..., min_length=1, max_length=50000)
    system_prompt: str = ""
    model: str = ""


class ChatCompletionResponse(BaseModel):
    chat_id: str
    text: str
    usage: UsageResponse


class ChatItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    chat_id: str
    role: str
    content: str
    order: int
    usage: Optional[UsageResponse] = None
    created: Optional[datetime] = None
    updated: Optional[datetime] = None


class ChatResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    label: str
    system_prompt: str = ""
    model: str = ""
    total_tokens: int = 0
    total_cost: float = 0.0
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
    items: list[ChatItemResponse] = []


class ChatListResponse(BaseModel):
    chats: list[ChatResponse]


class LabelUpdate(BaseModel):
    label: str = Field(..., min_length=1, max_length=200)


# --- Health ---
class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str = "0.1.0"
    platform: str = ""
    chat_count: int = 0
    cached_response_count: int = 0
