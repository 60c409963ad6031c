"""
Channel client - Reconnecting WebSocket consumer for the /ws channel endpoint.

Used by Python-side observers (workers, CLIs, tests) that need recording or
playback notifications.

- Exponential backoff with a bounded maximum delay; retry state is an explicit value
- Subscriptions are replayed after every reconnect
- Sends while disconnected are dropped (at-most-once), never queued
- A missing heartbeat within the timeout counts as a disconnect
- Inbound messages are validated into typed variants and go through one dispatcher
"""

import asyncio
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Literal

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from qa_recorder.config import settings
from qa_recorder.errors import TransportError
from qa_recorder.schemas import OutboundMessage, outbound_message_adapter

logger = logging.getLogger(__name__)

ConnectionStatus = Literal["disconnected", "connecting", "connected", "reconnecting", "failed"]
MessageHandler = Callable[[OutboundMessage], Awaitable[None]]
StatusHandler = Callable[[ConnectionStatus], None]


@dataclass(frozen=True)
class RetryState:
    """Reconnect attempt counter and backoff policy."""

    attempt: int = 0
    base_delay: float = 1.0
    max_delay: float = 30.0
    max_attempts: int = 5  # 0 = unlimited

    @classmethod
    def from_settings(cls) -> "RetryState":
        return cls(
            base_delay=settings.RECONNECT_BASE_DELAY_SECONDS,
            max_delay=settings.RECONNECT_MAX_DELAY_SECONDS,
            max_attempts=settings.RECONNECT_MAX_ATTEMPTS,
        )

    @property
    def delay(self) -> float:
        """Delay before the current attempt."""
        if self.attempt <= 0:
            return 0.0
        return min(self.base_delay * (2 ** (self.attempt - 1)), self.max_delay)

    @property
    def exhausted(self) -> bool:
        return self.max_attempts > 0 and self.attempt > self.max_attempts

    def next(self) -> "RetryState":
        return replace(self, attempt=self.attempt + 1)

    def reset(self) -> "RetryState":
        return replace(self, attempt=0)


class ChannelClient:
    """A reconnecting subscription to one server's channel endpoint."""

    def __init__(
        self,
        url: str,
        on_message: MessageHandler,
        on_status: StatusHandler | None = None,
        retry: RetryState | None = None,
        heartbeat_interval: float | None = None,
        heartbeat_timeout: float | None = None,
        connect: Callable[[str], Any] | None = None,
    ):
        self.url = url
        self.on_message = on_message
        self.on_status = on_status
        self.retry = retry or RetryState.from_settings()
        self.heartbeat_interval = heartbeat_interval or settings.HEARTBEAT_INTERVAL_SECONDS
        self.heartbeat_timeout = heartbeat_timeout or settings.HEARTBEAT_TIMEOUT_SECONDS
        self._connect = connect or websockets.connect
        self.status: ConnectionStatus = "disconnected"
        self.subscriptions: set[str] = set()
        self._ws: Any = None
        self._task: asyncio.Task | None = None
        self._stopping = False
        self.connected = asyncio.Event()

    def _set_status(self, status: ConnectionStatus) -> None:
        if status == self.status:
            return
        self.status = status
        if status == "connected":
            self.connected.set()
        else:
            self.connected.clear()
        if self.on_status:
            try:
                self.on_status(status)
            except Exception as e:
                logger.error(f"Connection status handler failed: {e}")

    async def start(self) -> None:
        self._stopping = False
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._stopping = True
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug(f"Error closing channel connection: {e}")
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._set_status("disconnected")

    async def subscribe(self, channel: str) -> bool:
        self.subscriptions.add(channel)
        return await self.send({"type": "subscribe", "channel": channel})

    async def unsubscribe(self, channel: str) -> bool:
        self.subscriptions.discard(channel)
        return await self.send({"type": "unsubscribe", "channel": channel})

    async def send(self, message: dict[str, Any]) -> bool:
        """Send a message if connected. Returns False when the message was dropped."""
        if self._ws is None or self.status != "connected":
            logger.debug(f"Dropping {message.get('type')} while {self.status}")
            return False
        try:
            await self._ws.send(json.dumps(message))
            return True
        except ConnectionClosed:
            logger.debug(f"Dropping {message.get('type')}: connection closed")
            return False

    async def _run(self) -> None:
        while not self._stopping:
            self._set_status("connecting" if self.retry.attempt == 0 else "reconnecting")
            try:
                async with self._connect(self.url) as ws:
                    self._ws = ws
                    self.retry = self.retry.reset()
                    self._set_status("connected")
                    for channel in sorted(self.subscriptions):
                        await ws.send(json.dumps({"type": "subscribe", "channel": channel}))
                    await self._session(ws)
            except asyncio.CancelledError:
                raise
            except (OSError, asyncio.TimeoutError, WebSocketException, TransportError) as e:
                logger.warning(f"Channel connection to {self.url} lost: {e}")
            finally:
                self._ws = None

            if self._stopping:
                break

            self.retry = self.retry.next()
            if self.retry.exhausted:
                logger.error(f"Giving up on {self.url} after {self.retry.attempt - 1} reconnect attempts")
                self._set_status("failed")
                return
            self._set_status("reconnecting")
            await asyncio.sleep(self.retry.delay)

        self._set_status("disconnected")

    async def _session(self, ws: Any) -> None:
        heartbeat = asyncio.create_task(self._heartbeat(ws))
        try:
            while True:
                try:
                    raw = await asyncio.wait_for(ws.recv(), timeout=self.heartbeat_timeout)
                except asyncio.TimeoutError:
                    raise TransportError(f"No heartbeat within {self.heartbeat_timeout}s")
                await self._dispatch(raw)
        finally:
            heartbeat.cancel()

    async def _heartbeat(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await ws.send(json.dumps({"type": "ping"}))
            except ConnectionClosed:
                return

    async def _dispatch(self, raw: str | bytes) -> None:
        try:
            message = outbound_message_adapter.validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding invalid channel message: {e.errors()[:1]}")
            return
        try:
            await self.on_message(message)
        except Exception as e:
            logger.error(f"Channel message handler failed for {message.type}: {e}", exc_info=True)
