"""
Recording Session Manager - Owns the lifecycle of recording sessions.

States: pending -> recording <-> paused -> completed, with cancelled/failed
reachable from recording or paused.

Each active recording has one controller with one worker task. Events are
accepted without blocking and synthesized in arrival order by that worker, so
a slow classifier never delays ingestion and never reorders steps. Step writes
are serialized per recording through a lock shared with the verification loop.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, AsyncIterator, Callable

from pydantic import ValidationError
from sqlalchemy import func
from sqlalchemy.orm import Session

from qa_recorder.config import settings
from qa_recorder.errors import (
    InvalidInputError,
    InvalidStateError,
    RecorderError,
    SessionNotFoundError,
    SynthesisError,
)
from qa_recorder.models import RecordingSession, TestStep, generate_uuid
from qa_recorder.schemas import (
    BrowserEvent,
    FeedbackData,
    RealTimeInsight,
    RecordingDetailResponse,
    RecordingFeedbackEvent,
    RecordingSessionResponse,
    StartRecordingRequest,
    TestStepResponse,
)
from qa_recorder.services.browser_manager import BrowserSessionHandle, BrowserSessionManager
from qa_recorder.services.channel_hub import ChannelHub, recording_channel
from qa_recorder.services.classifiers import PageContext, StepClassifier, create_classifier
from qa_recorder.services.step_synthesizer import EventMerger, StepSynthesizer, SynthesizedStep
from qa_recorder.utils.log_handler import RecordingLogHandler

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "failed", "cancelled")

# Queue item kinds
_EVENT = "event"  # dropped unless the recording is recording at dispatch
_COMMIT = "commit"  # flush merged events; dropped only once terminal
_DEBOUNCE = "debounce"  # merge window elapsed; flush if still recording


def utc_timestamp() -> str:
    return datetime.utcnow().isoformat()


@dataclass
class RecordingState:
    """In-memory state of an active recording."""

    recording_id: str
    browser_session_id: str
    status: str
    started_at: float
    owns_browser: bool
    real_time_preview: bool
    paused_at: float | None = None
    paused_seconds: float = 0.0
    accepting: bool = True
    steps_recorded: int = 0
    events_dropped: int = 0

    def elapsed_seconds(self, now: float | None = None) -> float:
        now = time.monotonic() if now is None else now
        paused = self.paused_seconds
        if self.paused_at is not None:
            paused += now - self.paused_at
        return max(now - self.started_at - paused, 0.0)


class RecordingController:
    """Queue and worker for one active recording."""

    def __init__(
        self,
        manager: "RecordingSessionManager",
        state: RecordingState,
        browser: BrowserSessionHandle,
        synthesizer: StepSynthesizer,
        merger: EventMerger,
    ):
        self.manager = manager
        self.state = state
        self.browser = browser
        self.synthesizer = synthesizer
        self.merger = merger
        self.queue: asyncio.Queue[tuple[str, BrowserEvent | None]] = asyncio.Queue()
        self.lock = manager.lock_for(state.recording_id)
        self._worker: asyncio.Task | None = None
        self._debounce_task: asyncio.Task | None = None
        self.log_handler: RecordingLogHandler | None = None

    @property
    def recording_id(self) -> str:
        return self.state.recording_id

    def start(self) -> None:
        self._worker = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._cancel_debounce()
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    def ingest(self, event: BrowserEvent) -> bool:
        """Accept an event without blocking. Events outside `recording` are dropped."""
        if not self.state.accepting or self.state.status != "recording":
            self.state.events_dropped += 1
            return False
        self.queue.put_nowait((_EVENT, event))
        return True

    async def on_browser_event(self, payload: dict[str, Any]) -> None:
        """Callback for the browser adapter's capture script."""
        try:
            event = BrowserEvent.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Discarding malformed browser event for {self.recording_id}: {e.errors()[:1]}")
            return
        self.ingest(event)

    def request_commit(self) -> None:
        self._cancel_debounce()
        self.queue.put_nowait((_COMMIT, None))

    async def drain(self) -> None:
        """Wait until every queued item has been processed or the worker is gone."""
        worker = self._worker
        if worker is None:
            return
        joined = asyncio.ensure_future(self.queue.join())
        try:
            await asyncio.wait({joined, worker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            joined.cancel()

    def _cancel_debounce(self) -> None:
        if self._debounce_task:
            self._debounce_task.cancel()
            self._debounce_task = None

    def _schedule_debounce(self) -> None:
        self._cancel_debounce()
        self._debounce_task = asyncio.create_task(self._debounce())

    async def _debounce(self) -> None:
        await asyncio.sleep(self.merger.window_ms / 1000)
        self._debounce_task = None
        self.queue.put_nowait((_DEBOUNCE, None))

    async def _run(self) -> None:
        while True:
            kind, event = await self.queue.get()
            try:
                await self._dispatch(kind, event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Recording worker error for {self.recording_id}: {e}",
                    exc_info=True,
                    extra={"recording_id": self.recording_id},
                )
            finally:
                self.queue.task_done()

    async def _dispatch(self, kind: str, event: BrowserEvent | None) -> None:
        status = self.state.status
        if status in TERMINAL_STATUSES:
            return

        if kind == _EVENT:
            if status != "recording":
                self.state.events_dropped += 1
                return
            ready = self.merger.push(event)
            if self.merger.has_pending:
                self._schedule_debounce()
        elif kind == _DEBOUNCE:
            if status != "recording":
                return
            ready = self.merger.flush()
        else:
            ready = self.merger.flush()

        for ready_event in ready:
            await self._synthesize(ready_event)

    async def _synthesize(self, event: BrowserEvent) -> None:
        context = PageContext(
            recording_id=self.recording_id,
            page_url=event.page_url,
            step_index=self.state.steps_recorded,
        )
        try:
            step = await self.synthesizer.synthesize(event, context)
        except SynthesisError as e:
            logger.warning(
                f"Synthesis failed for {event.type} event: {e.message}",
                extra={"recording_id": self.recording_id},
            )
            await self.manager.publish_feedback(
                self.recording_id,
                "error_occurred",
                error=e.message,
                element=event.element.model_dump(exclude_none=True) if event.element else None,
                raw_event=event.model_dump(mode="json", exclude_none=True),
            )
            return

        if step is None:
            return
        await self.manager.persist_step(self, step)


class RecordingSessionManager:
    """Starts, drives and finalizes recording sessions."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        browsers: BrowserSessionManager,
        hub: ChannelHub,
        classifier_factory: Callable[[], StepClassifier] | None = None,
        merge_window_ms: int | None = None,
    ):
        self.session_factory = session_factory
        self.browsers = browsers
        self.hub = hub
        self.classifier_factory = classifier_factory or create_classifier
        self.merge_window_ms = settings.TYPE_MERGE_WINDOW_MS if merge_window_ms is None else merge_window_ms
        self._controllers: dict[str, RecordingController] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def lock_for(self, recording_id: str) -> asyncio.Lock:
        """Lock serializing step writes for one recording."""
        lock = self._locks.get(recording_id)
        if lock is None:
            lock = self._locks[recording_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def step_lock(self, recording_id: str) -> AsyncIterator[None]:
        """Hold the step lock of a recording that may not be active."""
        lock = self.lock_for(recording_id)
        self._lock_users[recording_id] = self._lock_users.get(recording_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[recording_id] - 1
            if remaining:
                self._lock_users[recording_id] = remaining
            else:
                del self._lock_users[recording_id]
                self._discard_idle_lock(recording_id)

    def _discard_idle_lock(self, recording_id: str) -> None:
        if recording_id not in self._controllers and not self._lock_users.get(recording_id):
            self._locks.pop(recording_id, None)

    def get_controller(self, recording_id: str) -> RecordingController | None:
        return self._controllers.get(recording_id)

    # ============================================
    # Lifecycle
    # ============================================

    async def start(self, request: StartRecordingRequest) -> RecordingSessionResponse:
        project_id = (request.project_id or "").strip()
        if not project_id:
            raise InvalidInputError("project_id is required")
        name = (request.name or "").strip()
        if not name and request.target_id:
            name = f"Recording {request.target_id}"
        if not name:
            raise InvalidInputError("name is required")

        recording_id = generate_uuid()
        owner = f"recording:{recording_id}"

        if request.browser_session_id:
            browser = await self.browsers.claim(request.browser_session_id, owner)
            owns_browser = False
        else:
            try:
                browser = await self.browsers.create_session()
            except Exception as e:
                logger.error(f"Failed to open browser for recording: {e}")
                raise RecorderError(f"Failed to open browser session: {e}")
            await self.browsers.claim(browser.id, owner)
            owns_browser = True

        db = self.session_factory()
        try:
            recording = RecordingSession(
                id=recording_id,
                session_id=browser.id,
                project_id=project_id,
                target_id=request.target_id,
                name=name,
                description=request.description,
                status="pending",
                auto_generate_steps=request.auto_generate_steps,
                real_time_preview=request.real_time_preview,
                start_url=request.page_url,
                current_url=request.page_url or browser.adapter.current_url,
                created_by=request.created_by,
            )
            db.add(recording)
            db.commit()
        finally:
            db.close()

        state = RecordingState(
            recording_id=recording_id,
            browser_session_id=browser.id,
            status="recording",
            started_at=time.monotonic(),
            owns_browser=owns_browser,
            real_time_preview=request.real_time_preview,
        )
        synthesizer = StepSynthesizer(
            classifier=self.classifier_factory(),
            auto_generate=request.auto_generate_steps,
        )
        controller = RecordingController(self, state, browser, synthesizer, EventMerger(self.merge_window_ms))
        controller.log_handler = RecordingLogHandler(self.session_factory, recording_id)
        logging.getLogger("qa_recorder").addHandler(controller.log_handler)
        self._controllers[recording_id] = controller
        controller.start()

        try:
            if request.page_url:
                await browser.adapter.navigate(request.page_url, settings.PRIMITIVE_TIMEOUT_MS * 6)
                controller.ingest(
                    BrowserEvent(
                        type="navigate",
                        page_url=request.page_url,
                        resulting_url=request.page_url,
                        timestamp=int(time.time() * 1000),
                    )
                )
            await browser.adapter.start_event_capture(controller.on_browser_event)
        except Exception as e:
            logger.error(f"Failed to start recording {recording_id}: {e}", extra={"recording_id": recording_id})
            await self._finalize(controller, "failed", error_message=str(e))
            raise RecorderError(f"Failed to start recording: {e}")

        self._update_row(recording_id, status="recording")
        logger.info(f"Recording {recording_id} started on browser {browser.id}", extra={"recording_id": recording_id})
        await self.publish_feedback(recording_id, "recording_started")
        return self.get(recording_id, include_steps=False)

    async def pause(self, recording_id: str) -> RecordingSessionResponse:
        controller = self._require_active(recording_id)
        state = controller.state
        if state.status == "paused":
            return self.get(recording_id, include_steps=False)

        state.status = "paused"
        state.paused_at = time.monotonic()
        # Typing already buffered before the pause still becomes a step
        controller.request_commit()
        self._update_row(recording_id, status="paused")
        logger.info(f"Recording {recording_id} paused", extra={"recording_id": recording_id})
        await self.publish_feedback(recording_id, "recording_paused")
        return self.get(recording_id, include_steps=False)

    async def resume(self, recording_id: str) -> RecordingSessionResponse:
        controller = self._require_active(recording_id)
        state = controller.state
        if state.status == "recording":
            return self.get(recording_id, include_steps=False)

        if state.paused_at is not None:
            state.paused_seconds += time.monotonic() - state.paused_at
            state.paused_at = None
        state.status = "recording"
        self._update_row(recording_id, status="recording")
        logger.info(f"Recording {recording_id} resumed", extra={"recording_id": recording_id})
        await self.publish_feedback(recording_id, "recording_resumed")
        return self.get(recording_id, include_steps=False)

    async def complete(self, recording_id: str) -> RecordingSessionResponse:
        controller = self._controllers.get(recording_id)
        if controller is None:
            recording = self.get(recording_id, include_steps=False)
            if recording.status == "completed":
                return recording
            raise InvalidStateError(f"Cannot complete a recording in status: {recording.status}")

        controller.state.accepting = False
        controller.request_commit()
        await controller.drain()
        if controller.state.status in TERMINAL_STATUSES:
            # Cancelled while draining
            return self.get(recording_id, include_steps=False)
        await self._finalize(controller, "completed")
        await self.publish_feedback(recording_id, "recording_stopped")
        return self.get(recording_id, include_steps=False)

    async def cancel(self, recording_id: str) -> RecordingSessionResponse:
        controller = self._controllers.get(recording_id)
        if controller is None:
            recording = self.get(recording_id, include_steps=False)
            if recording.status == "cancelled":
                return recording
            raise InvalidStateError(f"Cannot cancel a recording in status: {recording.status}")

        await self._finalize(controller, "cancelled")
        await self.publish_feedback(recording_id, "recording_cancelled")
        return self.get(recording_id, include_steps=False)

    async def ingest(self, recording_id: str, events: list[BrowserEvent]) -> int:
        """Queue events for synthesis; returns how many were accepted."""
        controller = self._controllers.get(recording_id)
        if controller is None:
            recording = self.get(recording_id, include_steps=False)
            raise InvalidStateError(f"Recording is not accepting events (status: {recording.status})")
        return sum(1 for event in events if controller.ingest(event))

    async def wait_idle(self, recording_id: str) -> None:
        controller = self._controllers.get(recording_id)
        if controller is not None:
            await controller.drain()

    async def delete(self, recording_id: str) -> None:
        if recording_id in self._controllers:
            await self.cancel(recording_id)
        db = self.session_factory()
        try:
            recording = db.get(RecordingSession, recording_id)
            if recording is None:
                raise SessionNotFoundError(f"Recording not found: {recording_id}")
            db.delete(recording)
            db.commit()
        finally:
            db.close()
        self._discard_idle_lock(recording_id)
        logger.info(f"Recording {recording_id} deleted")

    async def shutdown(self) -> None:
        for recording_id in list(self._controllers.keys()):
            try:
                await self.cancel(recording_id)
            except Exception as e:
                logger.error(f"Error cancelling recording {recording_id}: {e}")

    async def _finalize(self, controller: RecordingController, status: str, error_message: str | None = None) -> None:
        state = controller.state
        recording_id = state.recording_id
        now = time.monotonic()
        duration = round(state.elapsed_seconds(now), 2)
        state.status = status
        state.accepting = False

        await controller.stop()
        self._controllers.pop(recording_id, None)

        browser = controller.browser
        try:
            await browser.adapter.stop_event_capture()
        except Exception as e:
            logger.warning(f"Failed to stop event capture on {browser.id}: {e}")
        self.browsers.release(browser.id, f"recording:{recording_id}")
        if state.owns_browser:
            try:
                await self.browsers.stop_session(browser.id)
            except Exception as e:
                logger.warning(f"Failed to close browser {browser.id}: {e}")

        async with controller.lock:
            db = self.session_factory()
            try:
                recording = db.get(RecordingSession, recording_id)
                if recording is not None:
                    recording.status = status
                    recording.steps_count = self._count_steps(db, recording_id)
                    recording.duration_seconds = duration
                    recording.completed_at = datetime.utcnow()
                    if error_message:
                        recording.error_message = error_message
                    db.commit()
            finally:
                db.close()

        logger.info(
            f"Recording {recording_id} {status} after {duration}s, {state.events_dropped} events dropped",
            extra={"recording_id": recording_id},
        )
        if controller.log_handler is not None:
            logging.getLogger("qa_recorder").removeHandler(controller.log_handler)
            controller.log_handler = None
        self._discard_idle_lock(recording_id)

    # ============================================
    # Steps
    # ============================================

    async def persist_step(self, controller: RecordingController, synthesized: SynthesizedStep) -> None:
        recording_id = controller.recording_id
        async with controller.lock:
            if controller.state.status in TERMINAL_STATUSES:
                logger.info(f"Discarding step synthesized after recording {recording_id} ended")
                return
            db = self.session_factory()
            try:
                order_index = self._count_steps(db, recording_id)
                step = TestStep(
                    recording_id=recording_id,
                    order_index=order_index,
                    natural_language=synthesized.natural_language,
                    action_type=synthesized.action_type,
                    element_description=synthesized.element_description,
                    element_selector=synthesized.element_selector,
                    element_alternatives=synthesized.element_alternatives,
                    value=synthesized.value,
                    page_url=synthesized.page_url or None,
                    confidence_score=synthesized.confidence_score,
                    user_verified=False,
                    needs_review=synthesized.needs_review,
                    ai_metadata=synthesized.ai_metadata,
                )
                db.add(step)
                recording = db.get(RecordingSession, recording_id)
                recording.steps_count = order_index + 1
                if synthesized.page_url:
                    recording.current_url = synthesized.page_url
                db.commit()
                db.refresh(step)
                step_id = step.id
            finally:
                db.close()

        controller.state.steps_recorded += 1
        logger.info(
            f"Step {order_index} captured: {synthesized.natural_language}",
            extra={"recording_id": recording_id},
        )

        screenshot = None
        if controller.state.real_time_preview:
            screenshot = await controller.browser.adapter.screenshot(
                f"recordings/{recording_id}_step_{order_index:03d}.png"
            )
            if screenshot:
                self._update_step(step_id, screenshot_after=screenshot)

        step_payload = self._step_payload(step_id)
        await self.publish_feedback(
            recording_id,
            "step_captured",
            step=step_payload,
            element=synthesized.element,
            confidence=synthesized.confidence_score,
            suggestions=synthesized.suggestions,
            screenshot_url=f"/screenshots/{screenshot}" if screenshot else None,
        )

        if synthesized.needs_review:
            insight = RealTimeInsight(
                type="warning",
                title="Low confidence step",
                message=f"Step {order_index + 1} may not identify the right element. Review it before verifying.",
                context={
                    "recording_id": recording_id,
                    "step_id": step_id,
                    "element_selector": synthesized.element_selector,
                    "confidence": synthesized.confidence_score,
                },
                actionable=True,
            )
            await self.hub.publish(recording_channel(recording_id), "realtime_insight", insight.model_dump(mode="json"))

    async def publish_feedback(
        self,
        recording_id: str,
        feedback_type: str,
        step: dict[str, Any] | None = None,
        element: dict[str, Any] | None = None,
        error: str | None = None,
        confidence: float | None = None,
        suggestions: list[str] | None = None,
        screenshot_url: str | None = None,
        raw_event: dict[str, Any] | None = None,
    ) -> None:
        if raw_event is not None:
            element = {**(element or {}), "raw_event": raw_event}
        event = RecordingFeedbackEvent(
            type=feedback_type,
            recording_id=recording_id,
            data=FeedbackData(
                step=step,
                element=element,
                error=error,
                confidence=confidence,
                suggestions=suggestions or [],
                screenshot_url=screenshot_url,
                timestamp=utc_timestamp(),
            ),
        )
        await self.hub.publish(recording_channel(recording_id), "recording_feedback", event.model_dump(mode="json"))

    # ============================================
    # Queries
    # ============================================

    def get(self, recording_id: str, include_steps: bool = True) -> RecordingDetailResponse | RecordingSessionResponse:
        db = self.session_factory()
        try:
            recording = db.get(RecordingSession, recording_id)
            if recording is None:
                raise SessionNotFoundError(f"Recording not found: {recording_id}")
            if include_steps:
                return RecordingDetailResponse.model_validate(recording)
            return RecordingSessionResponse.model_validate(recording)
        finally:
            db.close()

    def list_recordings(self, project_id: str | None = None, status: str | None = None) -> list[RecordingSessionResponse]:
        db = self.session_factory()
        try:
            query = db.query(RecordingSession)
            if project_id:
                query = query.filter(RecordingSession.project_id == project_id)
            if status:
                query = query.filter(RecordingSession.status == status)
            recordings = query.order_by(RecordingSession.created_at.desc()).all()
            return [RecordingSessionResponse.model_validate(r) for r in recordings]
        finally:
            db.close()

    # ============================================
    # Helpers
    # ============================================

    def _require_active(self, recording_id: str) -> RecordingController:
        controller = self._controllers.get(recording_id)
        if controller is None:
            recording = self.get(recording_id, include_steps=False)
            raise InvalidStateError(f"Recording is not active (status: {recording.status})")
        return controller

    @staticmethod
    def _count_steps(db: Session, recording_id: str) -> int:
        return db.query(func.count(TestStep.id)).filter(TestStep.recording_id == recording_id).scalar() or 0

    def _update_row(self, recording_id: str, **fields: Any) -> None:
        db = self.session_factory()
        try:
            recording = db.get(RecordingSession, recording_id)
            if recording is not None:
                for key, value in fields.items():
                    setattr(recording, key, value)
                db.commit()
        finally:
            db.close()

    def _update_step(self, step_id: str, **fields: Any) -> None:
        db = self.session_factory()
        try:
            step = db.get(TestStep, step_id)
            if step is not None:
                for key, value in fields.items():
                    setattr(step, key, value)
                db.commit()
        finally:
            db.close()

    def _step_payload(self, step_id: str) -> dict[str, Any] | None:
        db = self.session_factory()
        try:
            step = db.get(TestStep, step_id)
            if step is None:
                return None
            return TestStepResponse.model_validate(step).model_dump(mode="json")
        finally:
            db.close()
