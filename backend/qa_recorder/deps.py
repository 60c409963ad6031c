"""Service container shared by the routers and the WebSocket endpoint."""

import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from qa_recorder.config import settings
from qa_recorder.database import SessionLocal
from qa_recorder.services.browser_manager import AdapterFactory, BrowserSessionManager
from qa_recorder.services.channel_hub import ChannelHub
from qa_recorder.services.classifiers import StepClassifier
from qa_recorder.services.generated_tests import GeneratedTestService
from qa_recorder.services.playback_engine import PlaybackEngine
from qa_recorder.services.recording_manager import RecordingSessionManager
from qa_recorder.services.verification import VerificationService

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
	session_factory: Callable[[], Session]
	browsers: BrowserSessionManager
	hub: ChannelHub
	recordings: RecordingSessionManager
	verification: VerificationService
	playback: PlaybackEngine
	generated_tests: GeneratedTestService

	async def shutdown(self) -> None:
		await self.playback.shutdown()
		await self.recordings.shutdown()
		await self.browsers.shutdown()
		await self.hub.close()


def build_services(
	session_factory: Callable[[], Session] = SessionLocal,
	adapter_factory: AdapterFactory | None = None,
	classifier_factory: Callable[[], StepClassifier] | None = None,
	redis_url: str | None = None,
) -> ServiceContainer:
	"""Wire the services together without starting anything."""
	browsers = BrowserSessionManager(adapter_factory)
	hub = ChannelHub(redis_url=redis_url, queue_size=settings.CHANNEL_QUEUE_SIZE)
	recordings = RecordingSessionManager(session_factory, browsers, hub, classifier_factory=classifier_factory)
	return ServiceContainer(
		session_factory=session_factory,
		browsers=browsers,
		hub=hub,
		recordings=recordings,
		verification=VerificationService(session_factory, hub, recordings.step_lock),
		playback=PlaybackEngine(session_factory, browsers, hub),
		generated_tests=GeneratedTestService(session_factory),
	)


# Global instance
_services: ServiceContainer | None = None


def get_services() -> ServiceContainer:
	"""Get the global service container."""
	global _services
	if _services is None:
		_services = build_services(redis_url=settings.REDIS_URL or None)
	return _services


async def init_services() -> ServiceContainer:
	"""Initialize the global container and connect the channel hub."""
	services = get_services()
	await services.hub.start()
	return services


async def shutdown_services() -> None:
	"""Shutdown the global container."""
	global _services
	if _services:
		await _services.shutdown()
		_services = None
