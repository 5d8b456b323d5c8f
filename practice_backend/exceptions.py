"""
Exception types for the LLM gateway, the cache layer and the chat manager.

Validation errors are raised locally before any network call. Transport
errors carry the platform and model so callers can log and diagnose them.
A cache miss is a signal, not a failure, and has its own type so the cache
decorator can tell "fetch fresh" apart from "storage is broken".
"""

from typing import Optional


class LLMError(Exception):
    """Base class for all gateway errors."""

    def __init__(
        self,
        message: str,
        platform: Optional[str] = None,
        model: Optional[str] = None,
    ):
        self.message = message
        self.platform = platform
        self.model = model
        super().__init__(message)

    def __str__(self) -> str:
        context = []
        if self.platform:
            context.append(f"platform={self.platform}")
        if self.model:
            context.append(f"model={self.model}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


# ========== Validation ==========


class LLMValidationError(LLMError):
    """Request rejected before reaching a backend."""


class EmptyPromptError(LLMValidationError):
    def __init__(self, platform: Optional[str] = None):
        super().__init__("prompt cannot be empty", platform=platform)


class NoMessagesError(LLMValidationError):
    def __init__(self, platform: Optional[str] = None):
        super().__init__("no messages provided", platform=platform)


class ModelNotSpecifiedError(LLMValidationError):
    def __init__(self, platform: Optional[str] = None):
        super().__init__("model not specified", platform=platform)


class ImageMissingError(LLMValidationError):
    def __init__(self, platform: Optional[str] = None):
        super().__init__("image data is required", platform=platform)


# ========== Backend ==========


class TransportError(LLMError):
    """Network, timeout or HTTP status failure talking to a backend."""


class PlatformAuthError(LLMError):
    """Backend rejected (or was never given) credentials."""


class PlatformNotImplementedError(LLMError):
    """Capability not supported by this backend."""

    def __init__(self, capability: str, platform: Optional[str] = None):
        self.capability = capability
        super().__init__(f"{capability} is not implemented", platform=platform)


# ========== Cache ==========


class CacheMissError(Exception):
    """No usable entry for a cache key (absent or expired)."""

    def __init__(self, key: str, reason: str = "not found"):
        self.key = key
        self.reason = reason
        super().__init__(f"cache {reason}: {key}")


class CacheStorageError(Exception):
    """Cache backend failed while reading or writing."""


# ========== Persistence ==========


class RecordStoreError(Exception):
    """Persistence layer failure."""


class RecordNotFoundError(RecordStoreError):
    def __init__(self, table: str, record_id: str):
        self.table = table
        self.record_id = record_id
        super().__init__(f"{table} record not found: {record_id}")


# ========== Chat manager ==========


class ValidationError(ValueError):
    """Missing or malformed argument to a chat manager operation."""


class ChatNotFoundError(LookupError):
    def __init__(self, chat_id: str):
        self.chat_id = chat_id
        super().__init__(f"chat not found: {chat_id}")


class ChatAccessError(PermissionError):
    def __init__(self, chat_id: str, user_id: str):
        self.chat_id = chat_id
        self.user_id = user_id
        super().__init__(f"not authorized to access chat: {chat_id}")
