import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Generic, Sequence, TypeVar

from practice_backend.database import utcnow
from practice_backend.exceptions import CacheMissError
from practice_backend.models.database_models import ChatItem
from practice_backend.services.cache_storage import CleanableStorage
from practice_backend.services.providers.base import (
    ChatParameters,
    ChatResponse,
    DescribeImageParameters,
    DescribeImageResponse,
)

logger = logging.getLogger(__name__)

DEFAULT_CHAT_TTL = timedelta(hours=24)
DEFAULT_HISTORY_TTL = timedelta(hours=6)
DEFAULT_IMAGE_TTL = timedelta(hours=24)

T = TypeVar("T")


class ReadWriteLock:
    """Many concurrent readers or one writer.

    Critical sections must not await; the lock is held across threads, not
    across event loop switches.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self):
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


@dataclass(frozen=True)
class _Entry(Generic[T]):
    value: T
    expires_at: datetime


class _TTLTable(Generic[T]):
    """One keyed table with a fixed time-to-live."""

    def __init__(self, name: str, ttl: timedelta, clock: Callable[[], datetime]):
        self.name = name
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, _Entry[T]] = {}
        self._lock = ReadWriteLock()

    def get(self, key: str) -> T:
        now = self._clock()
        with self._lock.read():
            entry = self._entries.get(key)
        if entry is None:
            raise CacheMissError(key)
        if now < entry.expires_at:
            return entry.value

        with self._lock.write():
            current = self._entries.get(key)
            # Another writer may have refreshed the entry in between
            if current is entry:
                del self._entries[key]
        logger.debug("Removed expired %s cache entry: key=%s", self.name, key)
        raise CacheMissError(key, reason="expired")

    def set(self, key: str, value: T) -> None:
        entry = _Entry(value=value, expires_at=self._clock() + self.ttl)
        with self._lock.write():
            self._entries[key] = entry

    def clean_expired(self) -> int:
        now = self._clock()
        with self._lock.write():
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)


class MemoryCacheStorage(CleanableStorage):
    """In-process cache, one TTL table per call kind.

    Responses are frozen dataclasses, so storing the object itself is the
    same as storing a copy.
    """

    def __init__(
        self,
        chat_ttl: timedelta = DEFAULT_CHAT_TTL,
        history_ttl: timedelta = DEFAULT_HISTORY_TTL,
        image_ttl: timedelta = DEFAULT_IMAGE_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._chat: _TTLTable[ChatResponse] = _TTLTable("chat", chat_ttl, clock)
        self._history: _TTLTable[ChatResponse] = _TTLTable("history", history_ttl, clock)
        self._image: _TTLTable[DescribeImageResponse] = _TTLTable("image", image_ttl, clock)

    async def get_chat(self, key: str) -> ChatResponse:
        return self._chat.get(key)

    async def set_chat(
        self, key: str, params: ChatParameters, response: ChatResponse
    ) -> None:
        self._chat.set(key, response)

    async def get_chat_with_history(self, key: str) -> ChatResponse:
        return self._history.get(key)

    async def set_chat_with_history(
        self,
        key: str,
        messages: Sequence[ChatItem],
        system_prompt: str,
        model: str,
        response: ChatResponse,
    ) -> None:
        self._history.set(key, response)

    async def get_image(self, key: str) -> DescribeImageResponse:
        return self._image.get(key)

    async def set_image(
        self, key: str, params: DescribeImageParameters, response: DescribeImageResponse
    ) -> None:
        self._image.set(key, response)

    async def clean_expired(self) -> int:
        removed = sum(
            table.clean_expired() for table in (self._chat, self._history, self._image)
        )
        if removed:
            logger.info("Cleaned %d expired in-memory cache entries", removed)
        return removed

    def size(self) -> int:
        return len(self._chat) + len(self._history) + len(self._image)
