"""
HTTP client for an Ollama-compatible inference server.

Wraps the two endpoints the platform needs (``/api/chat`` and ``/api/tags``)
and normalizes every network, timeout and status failure into
``TransportError`` so the platform can decide whether to try its fallback.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from practice_backend.config import DEFAULT_OLLAMA_TIMEOUT
from practice_backend.exceptions import TransportError
from practice_backend.services.providers.base import ModelInfo, PlatformType
from practice_backend.services.usage import format_size

logger = logging.getLogger(__name__)

CHAT_ENDPOINT = "/api/chat"
TAGS_ENDPOINT = "/api/tags"

# Bounded idle pool so sockets do not grow without limit under load
POOL_LIMITS = httpx.Limits(max_connections=100, max_keepalive_connections=20)


@dataclass
class OllamaChatResult:
    content: str
    model: str
    prompt_eval_count: int = 0
    eval_count: int = 0


class OllamaClient:
    """Client bound to a single server URL."""

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_OLLAMA_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        try:
            url = httpx.URL(base_url)
        except httpx.InvalidURL as e:
            raise ValueError(f"Invalid Ollama URL: {base_url!r}") from e
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError(f"Invalid Ollama URL: {base_url!r}")
        self.base_url = str(url)
        self.timeout = timeout or DEFAULT_OLLAMA_TIMEOUT
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                limits=POOL_LIMITS,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def _request(self, method: str, endpoint: str, model: str = "", **kwargs) -> dict:
        client = self._get_client()
        try:
            response = await asyncio.wait_for(
                client.request(method, endpoint, **kwargs),
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"request to {self.base_url}{endpoint} timed out after {self.timeout:.0f}s",
                platform=PlatformType.OLLAMA.value,
                model=model or None,
            ) from e
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"{self.base_url}{endpoint} returned HTTP {e.response.status_code}: "
                f"{e.response.text[:200]}",
                platform=PlatformType.OLLAMA.value,
                model=model or None,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise TransportError(
                f"request to {self.base_url}{endpoint} failed: {e}",
                platform=PlatformType.OLLAMA.value,
                model=model or None,
            ) from e

    async def chat(self, model: str, messages: list[dict]) -> OllamaChatResult:
        """Non-streaming chat call."""
        logger.debug(
            "Sending chat request to Ollama: url=%s model=%s messages=%d",
            self.base_url, model, len(messages),
        )
        data = await self._request(
            "POST",
            CHAT_ENDPOINT,
            model=model,
            json={"model": model, "messages": messages, "stream": False},
        )
        message = data.get("message") or {}
        return OllamaChatResult(
            content=message.get("content") or "",
            model=data.get("model") or model,
            prompt_eval_count=int(data.get("prompt_eval_count") or 0),
            eval_count=int(data.get("eval_count") or 0),
        )

    async def list_models(self) -> list[ModelInfo]:
        data = await self._request("GET", TAGS_ENDPOINT)
        return [
            ModelInfo(name=m.get("name", ""), size_human=format_size(m.get("size", 0)))
            for m in data.get("models") or []
        ]
