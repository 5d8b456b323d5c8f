from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from practice_backend.services.providers.base import Usage


ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
CHAT_ROLES = (ROLE_SYSTEM, ROLE_USER, ROLE_ASSISTANT)

TABLE_CHATS = "chats"
TABLE_CHAT_ITEMS = "chat_items"
TABLE_LLM_RESPONSES = "llm_responses"


@dataclass
class ChatItem:
    """A single message in a conversation."""
    role: str
    content: str
    id: str = ""
    chat_id: str = ""
    usage: Optional["Usage"] = None
    order: int = 0
    created: Optional[datetime] = None
    updated: Optional[datetime] = None


@dataclass
class Chat:
    id: str
    user_id: str
    label: str
    system_prompt: str = ""
    model: str = ""
    total_tokens: int = 0
    total_cost: float = 0.0
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
    items: list[ChatItem] = field(default_factory=list)


@dataclass
class LLMResponseRecord:
    """A cached model response row."""
    key: str
    response: str
    model_name: str
    prompt: str = ""
    system_prompt: str = ""
    backend: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost: float = 0.0
    ttl: int = 0  # seconds, 0 means no expiration
    id: str = ""
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
