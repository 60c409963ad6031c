"""
Channels Router - WebSocket endpoint for channel subscriptions.

One connection can subscribe to any number of channels
(recording:<id>, validation:<id>, conversation:<id>, healing:<id>,
playback:<id>). Inbound messages are validated into a closed set of variants
and dispatched by one handler; everything outbound goes through a single
queue drained by a sender task.
"""

import asyncio
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from qa_recorder.config import settings
from qa_recorder.deps import ServiceContainer, get_services
from qa_recorder.errors import RecorderError
from qa_recorder.schemas import (
	InboundMessage,
	WSBrowserEvent,
	WSError,
	WSHeartbeat,
	WSMessage,
	WSPing,
	WSPong,
	WSSubscribe,
	WSSubscribed,
	WSUnsubscribe,
	WSUnsubscribed,
	inbound_message_adapter,
)
from qa_recorder.services.channel_hub import Subscriber

logger = logging.getLogger(__name__)

router = APIRouter(tags=["channels"])


async def _sender(websocket: WebSocket, subscriber: Subscriber) -> None:
	while True:
		message = await subscriber.queue.get()
		await websocket.send_json(message)


async def _heartbeat(subscriber: Subscriber) -> None:
	while True:
		await asyncio.sleep(settings.HEARTBEAT_INTERVAL_SECONDS)
		subscriber.offer(WSHeartbeat(timestamp=datetime.utcnow().isoformat()).model_dump())


async def _reply(subscriber: Subscriber, message: WSMessage) -> None:
	await subscriber.queue.put(message.model_dump())


async def handle_message(message: InboundMessage, subscriber: Subscriber, services: ServiceContainer) -> None:
	"""Dispatch one validated inbound message."""
	if isinstance(message, WSSubscribe):
		services.hub.subscribe(subscriber, message.channel)
		await _reply(subscriber, WSSubscribed(channel=message.channel))
	elif isinstance(message, WSUnsubscribe):
		services.hub.unsubscribe(subscriber, message.channel)
		await _reply(subscriber, WSUnsubscribed(channel=message.channel))
	elif isinstance(message, WSPing):
		await _reply(subscriber, WSPong())
	elif isinstance(message, WSBrowserEvent):
		await services.recordings.ingest(message.recording_id, [message.event])


@router.websocket("/ws")
async def channel_endpoint(websocket: WebSocket, services: ServiceContainer = Depends(get_services)):
	"""Channel subscriptions and browser event ingestion over one socket."""
	await websocket.accept()
	subscriber = services.hub.create_subscriber()
	sender = asyncio.create_task(_sender(websocket, subscriber))
	heartbeat = asyncio.create_task(_heartbeat(subscriber))
	logger.info("Channel WebSocket connected")

	try:
		while True:
			try:
				raw = await asyncio.wait_for(websocket.receive_text(), timeout=settings.HEARTBEAT_TIMEOUT_SECONDS)
			except asyncio.TimeoutError:
				logger.info("Channel WebSocket timed out waiting for the client")
				await websocket.close(code=1001, reason="Heartbeat timeout")
				break

			try:
				message = inbound_message_adapter.validate_json(raw)
			except ValidationError as e:
				first = e.errors()[0] if e.errors() else {}
				await _reply(subscriber, WSError(error="VALIDATION_ERROR", message=str(first.get("msg", "Invalid message"))))
				continue

			try:
				await handle_message(message, subscriber, services)
			except RecorderError as e:
				await _reply(subscriber, WSError(error=e.code, message=e.message))

	except WebSocketDisconnect:
		logger.info("Channel WebSocket disconnected")
	finally:
		heartbeat.cancel()
		sender.cancel()
		services.hub.remove_subscriber(subscriber)
		if subscriber.dropped:
			logger.warning(f"Channel WebSocket closed after dropping {subscriber.dropped} messages")
