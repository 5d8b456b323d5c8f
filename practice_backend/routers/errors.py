from fastapi import HTTPException

from practice_backend.exceptions import (
    ChatAccessError,
    ChatNotFoundError,
    LLMError,
    LLMValidationError,
    PlatformAuthError,
    PlatformNotImplementedError,
    ValidationError,
)


def to_http_error(exc: Exception) -> HTTPException:
    """Map a domain error to the HTTP status the API reports for it."""
    if isinstance(exc, (ValidationError, LLMValidationError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ChatAccessError):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, ChatNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PlatformAuthError):
        return HTTPException(status_code=401, detail=str(exc))
    if isinstance(exc, PlatformNotImplementedError):
        return HTTPException(status_code=501, detail=str(exc))
    if isinstance(exc, LLMError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail="Internal server error")
