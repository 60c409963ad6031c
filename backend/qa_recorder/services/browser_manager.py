"""
Browser Session Manager - Owns live browser adapter sessions.

A browser session can be claimed by at most one recording or playback at a
time. A second claim is rejected with SESSION_BUSY instead of being queued.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable
from uuid import uuid4

from qa_recorder.errors import SessionBusyError, SessionNotFoundError
from qa_recorder.services.browser_adapter import BrowserAdapter, PlaywrightBrowserAdapter

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[str, bool | None], BrowserAdapter]


def default_adapter_factory(session_id: str, headless: bool | None = None) -> BrowserAdapter:
    return PlaywrightBrowserAdapter(session_id, headless=headless)


@dataclass
class BrowserSessionHandle:
    """A live browser session and its current owner."""

    id: str
    adapter: BrowserAdapter
    status: str = "ready"  # ready | stopped
    owner: str | None = None  # e.g. "recording:<id>" or "playback:<id>"
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_busy(self) -> bool:
        return self.owner is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "owner": self.owner,
            "current_url": self.adapter.current_url,
            "created_at": self.created_at,
        }


class BrowserSessionManager:
    """Creates, hands out and tears down browser sessions."""

    def __init__(self, adapter_factory: AdapterFactory | None = None):
        self._adapter_factory = adapter_factory or default_adapter_factory
        self._sessions: dict[str, BrowserSessionHandle] = {}
        self._lock = asyncio.Lock()

    async def create_session(
        self,
        start_url: str | None = None,
        headless: bool | None = None,
    ) -> BrowserSessionHandle:
        """Open a new browser session, optionally navigating to start_url."""
        session_id = str(uuid4())
        adapter = self._adapter_factory(session_id, headless)
        await adapter.open(start_url)

        handle = BrowserSessionHandle(id=session_id, adapter=adapter)
        self._sessions[session_id] = handle
        logger.info(f"Browser session {session_id} ready")
        return handle

    def get_session(self, session_id: str) -> BrowserSessionHandle | None:
        return self._sessions.get(session_id)

    def require_session(self, session_id: str) -> BrowserSessionHandle:
        handle = self._sessions.get(session_id)
        if handle is None:
            raise SessionNotFoundError(f"Browser session not found: {session_id}")
        return handle

    def list_sessions(self) -> list[BrowserSessionHandle]:
        return list(self._sessions.values())

    async def claim(self, session_id: str, owner: str) -> BrowserSessionHandle:
        """Mark a session as owned by a recording or playback."""
        async with self._lock:
            handle = self.require_session(session_id)
            if handle.owner is not None and handle.owner != owner:
                raise SessionBusyError(
                    f"Browser session {session_id} is already in use by {handle.owner}",
                    {"browser_session_id": session_id, "owner": handle.owner},
                )
            handle.owner = owner
            logger.debug(f"Browser session {session_id} claimed by {owner}")
            return handle

    def release(self, session_id: str, owner: str) -> None:
        handle = self._sessions.get(session_id)
        if handle and handle.owner == owner:
            handle.owner = None
            logger.debug(f"Browser session {session_id} released by {owner}")

    async def stop_session(self, session_id: str) -> bool:
        """Close and forget a browser session."""
        handle = self._sessions.pop(session_id, None)
        if handle is None:
            return False

        logger.info(f"Stopping browser session {session_id}")
        try:
            await handle.adapter.close()
        finally:
            handle.status = "stopped"
            handle.owner = None
        return True

    async def shutdown(self) -> None:
        """Close every open browser session."""
        for session_id in list(self._sessions.keys()):
            try:
                await self.stop_session(session_id)
            except Exception as e:
                logger.error(f"Error stopping browser session {session_id}: {e}")
        logger.info("Browser session manager shutdown complete")
