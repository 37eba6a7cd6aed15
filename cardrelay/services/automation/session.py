"""Single automation session at a time, checked out through an async context manager."""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import uuid4

from cardrelay.common.logging import logger


class SessionFactory(Protocol):
    async def open(self, purpose: str) -> Any: ...

    async def close(self, session: Any) -> None: ...


@dataclass
class DetachedSession:
    """Placeholder handle for scripts that manage their own browser."""

    purpose: str
    id: str = field(default_factory=lambda: str(uuid4()))
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    closed: bool = False


class DetachedSessionFactory:
    async def open(self, purpose: str) -> DetachedSession:
        return DetachedSession(purpose=purpose)

    async def close(self, session: DetachedSession) -> None:
        session.closed = True


class AutomationSessionPool:
    """Owns the automation mutex; purchase, redemption and email drain share it."""

    def __init__(self, factory: SessionFactory) -> None:
        self.factory = factory
        self._lock = asyncio.Lock()
        self.holder: str | None = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def exclusive(self, purpose: str):
        """Hold the mutex without opening a session."""

        async with self._lock:
            self.holder = purpose
            try:
                yield
            finally:
                self.holder = None

    @asynccontextmanager
    async def open_session(self, purpose: str):
        """Open a session for a caller that already holds `exclusive()`."""

        if not self._lock.locked():
            raise RuntimeError("open_session() requires the automation mutex")
        session = await self.factory.open(purpose)
        logger.info("automation_session_opened purpose=%s", purpose)
        try:
            yield session
        finally:
            try:
                await self.factory.close(session)
            finally:
                logger.info("automation_session_closed purpose=%s", purpose)

    @asynccontextmanager
    async def checkout(self, purpose: str):
        """Hold the mutex and an open session; the session is closed on every exit path."""

        async with self.exclusive(purpose):
            async with self.open_session(purpose) as session:
                yield session
