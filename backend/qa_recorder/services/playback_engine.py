"""
Playback Engine - Replays a recording's steps against a browser session.

Features:
- Copy-on-start: the step list is snapshotted when playback starts
- Selector fallback: alternatives are tried only when an element is not found
- Pause/resume/stop take effect before the next step; the in-flight step completes
- speed scales the inter-step delay only, never primitive timeouts
- Per-step results persisted as PlaybackStepResult rows
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.orm import Session

from qa_recorder.config import settings
from qa_recorder.errors import (
    ElementNotFoundError,
    InvalidInputError,
    InvalidStateError,
    RecorderError,
    SessionNotFoundError,
)
from qa_recorder.models import PlaybackSession, PlaybackStepResult, RecordingSession, TestStep
from qa_recorder.schemas import PlaybackEvent, PlaybackSessionResponse, StartPlaybackRequest
from qa_recorder.services.browser_adapter import BrowserAdapter
from qa_recorder.services.browser_manager import BrowserSessionHandle, BrowserSessionManager
from qa_recorder.services.channel_hub import ChannelHub, healing_channel, playback_channel

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "failed", "cancelled")
NAVIGATION_TIMEOUT_FACTOR = 6


@dataclass(frozen=True)
class StepSnapshot:
    """Immutable copy of a step taken when playback starts."""

    id: str
    order_index: int
    action_type: str
    natural_language: str
    element_selector: str | None
    element_alternatives: tuple[str, ...]
    value: str | None
    page_url: str | None

    @classmethod
    def from_model(cls, step: TestStep) -> "StepSnapshot":
        return cls(
            id=step.id,
            order_index=step.order_index,
            action_type=step.action_type,
            natural_language=step.natural_language,
            element_selector=step.element_selector,
            element_alternatives=tuple(step.element_alternatives or ()),
            value=step.value,
            page_url=step.page_url,
        )

    def candidate_selectors(self) -> list[str]:
        candidates = [self.element_selector] if self.element_selector else []
        for alternative in self.element_alternatives:
            if alternative and alternative not in candidates:
                candidates.append(alternative)
        return candidates


@dataclass
class StepOutcome:
    status: str  # passed | failed | skipped
    selector_used: str | None = None
    healed: bool = False
    heal_attempts: list[dict[str, Any]] = field(default_factory=list)
    duration_ms: int = 0
    screenshot_path: str | None = None
    error_message: str | None = None


def inter_step_delay(speed: float, step_delay_ms: int) -> float:
    """Seconds to wait between two steps."""
    return (settings.PLAYBACK_STEP_DELAY_MS + step_delay_ms) / speed / 1000


async def perform_step(adapter: BrowserAdapter, step: StepSnapshot, selector: str | None, timeout_ms: int) -> None:
    """Run one step's primitive against a single selector."""
    action = step.action_type
    value = step.value or ""

    if action == "navigate":
        await adapter.navigate(step.value or step.page_url or "", timeout_ms * NAVIGATION_TIMEOUT_FACTOR)
    elif action == "click":
        await adapter.click(selector, timeout_ms)
    elif action == "type":
        await adapter.type_text(selector, value, timeout_ms)
    elif action == "select":
        await adapter.select_option(selector, value, timeout_ms)
    elif action == "hover":
        await adapter.hover(selector, timeout_ms)
    elif action == "scroll":
        x, _, y = value.partition(",")
        await adapter.scroll(selector, int(float(x or 0)), int(float(y or 0)), timeout_ms)
    elif action == "wait":
        duration = int(value) if value.isdigit() else None
        await adapter.wait(selector, duration, timeout_ms)
    elif action == "verify":
        await adapter.verify(selector, step.value, timeout_ms)
    else:
        raise InvalidInputError(f"Unknown action type: {action}")


class PlaybackController:
    """Drives one playback session in its own task."""

    def __init__(
        self,
        engine: "PlaybackEngine",
        playback_id: str,
        recording_id: str,
        browser: BrowserSessionHandle,
        owns_browser: bool,
        steps: list[StepSnapshot],
        options: StartPlaybackRequest,
    ):
        self.engine = engine
        self.playback_id = playback_id
        self.recording_id = recording_id
        self.browser = browser
        self.owns_browser = owns_browser
        self.steps = steps
        self.options = options
        self.status = "idle"
        self.breakpoints = set(options.breakpoints)
        self.task: asyncio.Task | None = None
        self._running = asyncio.Event()
        self._running.set()
        self._stopped = asyncio.Event()

    @property
    def owner(self) -> str:
        return f"playback:{self.playback_id}"

    def start(self) -> None:
        self.task = asyncio.create_task(self.run())

    async def pause(self, reason: str = "user") -> None:
        if self.status != "running" or self._stopped.is_set():
            return
        self._running.clear()
        self.status = "paused"
        self.engine.update_row(self.playback_id, status="paused")
        logger.info(f"Playback {self.playback_id} paused ({reason})")
        await self.publish("playback_paused", {"reason": reason})

    async def resume(self) -> None:
        if self.status != "paused":
            return
        self.status = "running"
        self.engine.update_row(self.playback_id, status="running")
        self._running.set()
        logger.info(f"Playback {self.playback_id} resumed")
        await self.publish("playback_resumed", {})

    def stop(self) -> None:
        self._stopped.set()
        self._running.set()

    async def publish(self, event_type: str, data: dict[str, Any]) -> None:
        event = PlaybackEvent(type=event_type, playback_id=self.playback_id, data=data)
        await self.engine.hub.publish(playback_channel(self.playback_id), "playback_event", event.model_dump(mode="json"))

    async def run(self) -> None:
        self.status = "running"
        self.engine.update_row(self.playback_id, status="running", started_at=datetime.utcnow())
        await self.publish("playback_started", {"recording_id": self.recording_id, "total_steps": len(self.steps)})
        logger.info(f"Playback {self.playback_id} started with {len(self.steps)} steps")

        final_status = "completed"
        error_message = None
        try:
            for position, step in enumerate(self.steps):
                if step.order_index in self.breakpoints:
                    self.breakpoints.discard(step.order_index)
                    await self.pause(reason="breakpoint")

                await self._running.wait()
                if self._stopped.is_set():
                    final_status = "cancelled"
                    await self._skip_remaining(position, "Playback stopped")
                    break

                outcome = await self._run_step(step)
                if outcome.status == "failed" and self.options.stop_on_error:
                    final_status = "failed"
                    error_message = f"Step {step.order_index} failed: {outcome.error_message}"
                    await self._skip_remaining(position + 1, "Skipped after an earlier failure")
                    break

                if position < len(self.steps) - 1:
                    await self._delay()
        except asyncio.CancelledError:
            final_status = "cancelled"
            raise
        except Exception as e:
            logger.exception(f"Playback {self.playback_id} crashed: {e}")
            final_status = "failed"
            error_message = str(e)
        finally:
            await self._finish(final_status, error_message)

    async def _delay(self) -> None:
        delay = inter_step_delay(self.options.speed, self.options.step_delay_ms)
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _run_step(self, step: StepSnapshot) -> StepOutcome:
        self.engine.update_row(self.playback_id, current_step_index=step.order_index)
        await self.publish("step_started", {
            "order_index": step.order_index,
            "action_type": step.action_type,
            "natural_language": step.natural_language,
        })

        outcome = await self._execute(step)
        if self.options.capture_screenshots:
            outcome.screenshot_path = await self.browser.adapter.screenshot(
                f"playback/{self.playback_id}_step_{step.order_index:03d}.png"
            )

        self.engine.record_result(self.playback_id, step, outcome)
        payload = {
            "order_index": step.order_index,
            "step_id": step.id,
            "status": outcome.status,
            "selector_used": outcome.selector_used,
            "healed": outcome.healed,
            "duration_ms": outcome.duration_ms,
            "screenshot_url": f"/screenshots/{outcome.screenshot_path}" if outcome.screenshot_path else None,
            "error": outcome.error_message,
        }

        if outcome.healed:
            healed = {
                "playback_id": self.playback_id,
                "step_id": step.id,
                "order_index": step.order_index,
                "original_selector": step.element_selector,
                "healed_selector": outcome.selector_used,
                "attempts": outcome.heal_attempts,
            }
            await self.publish("selector_healed", healed)
            await self.engine.hub.publish(healing_channel(self.recording_id), "playback_event", PlaybackEvent(
                type="selector_healed", playback_id=self.playback_id, data=healed
            ).model_dump(mode="json"))

        await self.publish("step_completed" if outcome.status == "passed" else "step_failed", payload)
        return outcome

    async def _execute(self, step: StepSnapshot) -> StepOutcome:
        adapter = self.browser.adapter
        timeout_ms = settings.PRIMITIVE_TIMEOUT_MS
        started = time.monotonic()
        outcome = StepOutcome(status="passed")

        try:
            if step.action_type == "navigate" or (
                step.action_type in ("scroll", "wait") and not step.element_selector
            ):
                await perform_step(adapter, step, None, timeout_ms)
            else:
                outcome.selector_used = await self._with_fallback(adapter, step, timeout_ms, outcome.heal_attempts)
                outcome.healed = outcome.selector_used != step.element_selector
        except ElementNotFoundError as e:
            outcome.status = "failed"
            outcome.error_message = e.message
        except RecorderError as e:
            outcome.status = "failed"
            outcome.error_message = e.message
        except Exception as e:
            logger.warning(f"Playback {self.playback_id} step {step.order_index} failed: {e}")
            outcome.status = "failed"
            outcome.error_message = str(e)

        outcome.duration_ms = int((time.monotonic() - started) * 1000)
        return outcome

    async def _with_fallback(
        self,
        adapter: BrowserAdapter,
        step: StepSnapshot,
        timeout_ms: int,
        attempts: list[dict[str, Any]],
    ) -> str:
        """Try the primary selector, then each alternative on not-found."""
        candidates = step.candidate_selectors()
        if not candidates:
            raise ElementNotFoundError("", f"Step {step.order_index} has no selector")

        last_error: ElementNotFoundError | None = None
        for selector in candidates:
            try:
                await perform_step(adapter, step, selector, timeout_ms)
            except ElementNotFoundError as e:
                attempts.append({"selector": selector, "success": False, "error": e.message})
                last_error = e
                continue
            attempts.append({"selector": selector, "success": True})
            return selector

        raise ElementNotFoundError(
            candidates[0],
            f"Element not found with {len(candidates)} selector(s): {last_error.message}",
        )

    async def _skip_remaining(self, start: int, reason: str) -> None:
        for step in self.steps[start:]:
            self.engine.record_result(self.playback_id, step, StepOutcome(status="skipped", error_message=reason))
            await self.publish("step_skipped", {"order_index": step.order_index, "step_id": step.id, "reason": reason})

    async def _finish(self, status: str, error_message: str | None) -> None:
        self.status = status
        self._running.set()

        self.engine.browsers.release(self.browser.id, self.owner)
        if self.owns_browser:
            try:
                await self.engine.browsers.stop_session(self.browser.id)
            except Exception as e:
                logger.error(f"Error closing playback browser {self.browser.id}: {e}")

        summary = self.engine.update_row(
            self.playback_id,
            status=status,
            error_message=error_message,
            completed_at=datetime.utcnow(),
        )
        logger.info(f"Playback {self.playback_id} finished: {status}")

        event_type = {
            "completed": "playback_completed",
            "failed": "playback_failed",
            "cancelled": "playback_stopped",
        }[status]
        await self.publish(event_type, {**summary, "error": error_message})
        self.engine.discard_controller(self.playback_id)


class PlaybackEngine:
    """Starts playback sessions and tracks their controllers."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        browsers: BrowserSessionManager,
        hub: ChannelHub,
    ):
        self.session_factory = session_factory
        self.browsers = browsers
        self.hub = hub
        self._controllers: dict[str, PlaybackController] = {}

    async def start(self, request: StartPlaybackRequest) -> PlaybackSessionResponse:
        recording_id = (request.recording_session_id or "").strip()
        if not recording_id:
            raise InvalidInputError("recording_session_id is required")

        steps = self._snapshot_steps(recording_id, request)
        if not steps:
            raise InvalidInputError("Recording has no steps to play back", {"recording_id": recording_id})

        playback_id = str(uuid4())
        owner = f"playback:{playback_id}"
        if request.browser_session_id:
            browser = await self.browsers.claim(request.browser_session_id, owner)
            owns_browser = False
        else:
            try:
                browser = await self.browsers.create_session()
            except Exception as e:
                logger.error(f"Failed to open browser for playback: {e}")
                raise RecorderError(f"Failed to open browser session: {e}")
            await self.browsers.claim(browser.id, owner)
            owns_browser = True

        db = self.session_factory()
        try:
            db.add(PlaybackSession(
                id=playback_id,
                recording_id=recording_id,
                browser_session_id=browser.id,
                status="idle",
                current_step_index=steps[0].order_index,
                total_steps=len(steps),
                speed=request.speed,
                step_delay_ms=request.step_delay_ms,
                capture_screenshots=request.capture_screenshots,
                stop_on_error=request.stop_on_error,
            ))
            db.commit()
        finally:
            db.close()

        controller = PlaybackController(self, playback_id, recording_id, browser, owns_browser, steps, request)
        self._controllers[playback_id] = controller
        controller.start()
        return self.get(playback_id)

    async def pause(self, playback_id: str) -> PlaybackSessionResponse:
        controller = self._require_active(playback_id)
        if controller.status == "running":
            await controller.pause()
        return self.get(playback_id)

    async def resume(self, playback_id: str) -> PlaybackSessionResponse:
        controller = self._require_active(playback_id)
        if controller.status == "paused":
            await controller.resume()
        return self.get(playback_id)

    async def stop(self, playback_id: str) -> PlaybackSessionResponse:
        controller = self._controllers.get(playback_id)
        if controller is None or controller.status in TERMINAL_STATUSES:
            return self.get(playback_id)
        controller.stop()
        await self.wait(playback_id)
        return self.get(playback_id)

    async def wait(self, playback_id: str) -> PlaybackSessionResponse:
        controller = self._controllers.get(playback_id)
        if controller is not None and controller.task is not None:
            await asyncio.shield(controller.task)
        return self.get(playback_id)

    async def shutdown(self) -> None:
        for playback_id, controller in list(self._controllers.items()):
            if controller.status in TERMINAL_STATUSES or controller.task is None:
                continue
            controller.stop()
            try:
                await controller.task
            except Exception as e:
                logger.error(f"Error stopping playback {playback_id}: {e}")
        logger.info("Playback engine shutdown complete")

    def get(self, playback_id: str) -> PlaybackSessionResponse:
        db = self.session_factory()
        try:
            playback = db.get(PlaybackSession, playback_id)
            if playback is None:
                raise SessionNotFoundError(f"Playback session not found: {playback_id}")
            return PlaybackSessionResponse.model_validate(playback)
        finally:
            db.close()

    def list_playbacks(self, recording_id: str | None = None) -> list[PlaybackSessionResponse]:
        db = self.session_factory()
        try:
            query = db.query(PlaybackSession)
            if recording_id:
                query = query.filter(PlaybackSession.recording_id == recording_id)
            playbacks = query.order_by(PlaybackSession.created_at.desc()).all()
            return [PlaybackSessionResponse.model_validate(playback) for playback in playbacks]
        finally:
            db.close()

    def update_row(self, playback_id: str, **fields: Any) -> dict[str, int]:
        """Update a playback row and return its step counters."""
        db = self.session_factory()
        try:
            playback = db.get(PlaybackSession, playback_id)
            for key, value in fields.items():
                setattr(playback, key, value)
            db.commit()
            return {
                "passed_steps": playback.passed_steps,
                "failed_steps": playback.failed_steps,
                "skipped_steps": playback.skipped_steps,
                "total_steps": playback.total_steps,
            }
        finally:
            db.close()

    def record_result(self, playback_id: str, step: StepSnapshot, outcome: StepOutcome) -> None:
        db = self.session_factory()
        try:
            db.add(PlaybackStepResult(
                playback_id=playback_id,
                step_id=step.id,
                order_index=step.order_index,
                action_type=step.action_type,
                status=outcome.status,
                selector_used=outcome.selector_used,
                healed=outcome.healed,
                heal_attempts=outcome.heal_attempts or None,
                duration_ms=outcome.duration_ms,
                screenshot_path=outcome.screenshot_path,
                error_message=outcome.error_message,
            ))
            playback = db.get(PlaybackSession, playback_id)
            if outcome.status == "passed":
                playback.passed_steps += 1
            elif outcome.status == "failed":
                playback.failed_steps += 1
            else:
                playback.skipped_steps += 1
            db.commit()
        finally:
            db.close()

    def _snapshot_steps(self, recording_id: str, request: StartPlaybackRequest) -> list[StepSnapshot]:
        db = self.session_factory()
        try:
            if db.get(RecordingSession, recording_id) is None:
                raise SessionNotFoundError(f"Recording not found: {recording_id}")
            query = db.query(TestStep).filter(
                TestStep.recording_id == recording_id,
                TestStep.order_index >= request.start_index,
            )
            if request.verified_only:
                query = query.filter(TestStep.user_verified.is_(True))
            return [StepSnapshot.from_model(step) for step in query.order_by(TestStep.order_index).all()]
        finally:
            db.close()

    def discard_controller(self, playback_id: str) -> None:
        self._controllers.pop(playback_id, None)

    def _require_active(self, playback_id: str) -> PlaybackController:
        controller = self._controllers.get(playback_id)
        if controller is None or controller.status in TERMINAL_STATUSES:
            playback = self.get(playback_id)
            raise InvalidStateError(
                f"Playback {playback_id} is {playback.status}",
                {"playback_id": playback_id, "status": playback.status},
            )
        return controller
