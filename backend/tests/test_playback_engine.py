"""Tests for step playback, selector fallback and playback controls."""

import asyncio

import pytest

from conftest import add_recording
from qa_recorder.config import settings
from qa_recorder.errors import (
    InvalidInputError,
    InvalidStateError,
    SessionBusyError,
    SessionNotFoundError,
)
from qa_recorder.schemas import StartPlaybackRequest, StartRecordingRequest, UpdateStepRequest
from qa_recorder.services.playback_engine import StepSnapshot, inter_step_delay


async def wait_until(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def play(services, recording_id: str, **options):
    playback = await services.playback.start(StartPlaybackRequest(recording_session_id=recording_id, **options))
    return await services.playback.wait(playback.id)


def drain_messages(subscriber) -> list[dict]:
    messages = []
    while not subscriber.queue.empty():
        messages.append(subscriber.queue.get_nowait())
    return messages


# =============================================================================
# Running steps
# =============================================================================


class TestPlayback:
    """Tests for replaying steps in order."""

    @pytest.mark.asyncio
    async def test_all_steps_pass(self, services, session_factory, browser_factory):
        recording_id = add_recording(session_factory, [{}, {}, {}])

        playback = await play(services, recording_id)

        assert playback.status == "completed"
        assert [r.status for r in playback.results] == ["passed", "passed", "passed"]
        assert (playback.passed_steps, playback.failed_steps, playback.skipped_steps) == (3, 0, 0)
        adapter = browser_factory.adapters[playback.browser_session_id]
        assert [call[1] for call in adapter.actions()] == ["#step-0", "#step-1", "#step-2"]
        assert adapter.closed is True

    @pytest.mark.asyncio
    async def test_finished_playback_releases_its_controller(self, services, session_factory):
        recording_id = add_recording(session_factory, [{}])

        playback = await play(services, recording_id)

        assert playback.status == "completed"
        assert services.playback._controllers == {}
        assert (await services.playback.stop(playback.id)).status == "completed"

    @pytest.mark.asyncio
    async def test_failure_stops_and_skips_the_rest(self, services, session_factory, browser_factory):
        recording_id = add_recording(session_factory, [{}, {}, {}])
        browser_factory.missing.add("#step-1")

        playback = await play(services, recording_id, stop_on_error=True)

        assert playback.status == "failed"
        assert [r.status for r in playback.results] == ["passed", "failed", "skipped"]
        assert (playback.passed_steps, playback.failed_steps, playback.skipped_steps) == (1, 1, 1)
        assert playback.error_message.startswith("Step 1 failed: Element not found with 1 selector(s)")
        assert playback.results[2].error_message == "Skipped after an earlier failure"

    @pytest.mark.asyncio
    async def test_failure_without_stop_on_error_continues(self, services, session_factory, browser_factory):
        recording_id = add_recording(session_factory, [{}, {}, {}])
        browser_factory.missing.add("#step-1")

        playback = await play(services, recording_id, stop_on_error=False)

        assert playback.status == "completed"
        assert [r.status for r in playback.results] == ["passed", "failed", "passed"]

    @pytest.mark.asyncio
    async def test_navigation_uses_longer_timeout(self, services, session_factory, browser_factory):
        recording_id = add_recording(session_factory, [{
            "action_type": "navigate",
            "element_selector": None,
            "value": "https://app.example.com/dashboard",
        }])

        playback = await play(services, recording_id)

        adapter = browser_factory.adapters[playback.browser_session_id]
        assert ("navigate", "https://app.example.com/dashboard", settings.PRIMITIVE_TIMEOUT_MS * 6) in adapter.calls
        assert playback.results[0].selector_used is None

    @pytest.mark.asyncio
    async def test_values_reach_the_browser(self, services, session_factory, browser_factory):
        recording_id = add_recording(session_factory, [
            {"action_type": "type", "element_selector": "#email", "value": "joe@example.com"},
            {"action_type": "scroll", "element_selector": None, "value": "0,400"},
            {"action_type": "verify", "element_selector": "h1", "value": "Welcome"},
        ])

        playback = await play(services, recording_id)

        adapter = browser_factory.adapters[playback.browser_session_id]
        timeout = settings.PRIMITIVE_TIMEOUT_MS
        assert adapter.actions() == [
            ("type", "#email", "joe@example.com", timeout),
            ("scroll", None, 0, 400, timeout),
            ("verify", "h1", "Welcome", timeout),
        ]

    @pytest.mark.asyncio
    async def test_screenshots_are_captured_per_step(self, services, session_factory):
        recording_id = add_recording(session_factory, [{}])

        playback = await play(services, recording_id)

        assert playback.results[0].screenshot_path == f"playback/{playback.id}_step_000.png"

    @pytest.mark.asyncio
    async def test_same_recording_plays_back_identically(self, services, session_factory, browser_factory):
        recording_id = add_recording(session_factory, [{}, {"element_alternatives": ["#alt-1"]}, {}])
        browser_factory.missing.add("#step-1")

        first = await play(services, recording_id)
        second = await play(services, recording_id)

        summary = lambda p: [(r.order_index, r.status, r.selector_used, r.healed) for r in p.results]  # noqa: E731
        assert summary(first) == summary(second)

    @pytest.mark.asyncio
    async def test_playback_events_are_published(self, services, session_factory):
        recording_id = add_recording(session_factory, [{}])
        playback = await services.playback.start(StartPlaybackRequest(recording_session_id=recording_id))
        subscriber = services.hub.create_subscriber()
        services.hub.subscribe(subscriber, f"playback:{playback.id}")

        await services.playback.wait(playback.id)

        types = [m["data"]["type"] for m in drain_messages(subscriber)]
        assert types == ["playback_started", "step_started", "step_completed", "playback_completed"]


# =============================================================================
# Selector fallback
# =============================================================================


class TestSelectorFallback:
    """Tests for alternative selectors on not-found."""

    def test_candidate_selectors_dedupe(self):
        snapshot = StepSnapshot(
            id="s1",
            order_index=0,
            action_type="click",
            natural_language="Click",
            element_selector="#a",
            element_alternatives=("#b", "#a", "", "#c"),
            value=None,
            page_url=None,
        )
        assert snapshot.candidate_selectors() == ["#a", "#b", "#c"]

    @pytest.mark.asyncio
    async def test_alternative_selector_heals_step(self, services, session_factory, browser_factory):
        recording_id = add_recording(session_factory, [{"element_alternatives": ["#fallback"]}])
        browser_factory.missing.add("#step-0")
        subscriber = services.hub.create_subscriber()
        services.hub.subscribe(subscriber, f"healing:{recording_id}")

        playback = await play(services, recording_id)

        result = playback.results[0]
        assert playback.status == "completed"
        assert result.status == "passed"
        assert result.selector_used == "#fallback"
        assert result.healed is True
        assert [a["selector"] for a in result.heal_attempts] == ["#step-0", "#fallback"]
        assert [a["success"] for a in result.heal_attempts] == [False, True]

        healed = drain_messages(subscriber)
        assert len(healed) == 1
        assert healed[0]["data"]["data"]["healed_selector"] == "#fallback"

    @pytest.mark.asyncio
    async def test_all_selectors_missing(self, services, session_factory, browser_factory):
        recording_id = add_recording(session_factory, [{"element_alternatives": ["#fallback"]}])
        browser_factory.missing.update({"#step-0", "#fallback"})

        playback = await play(services, recording_id)

        result = playback.results[0]
        assert result.status == "failed"
        assert result.error_message.startswith("Element not found with 2 selector(s)")
        assert result.healed is False

    @pytest.mark.asyncio
    async def test_step_without_selector_fails(self, services, session_factory):
        recording_id = add_recording(session_factory, [{"element_selector": None}])

        playback = await play(services, recording_id)

        assert playback.results[0].status == "failed"
        assert playback.results[0].error_message == "Step 0 has no selector"


# =============================================================================
# Controls
# =============================================================================


class TestPlaybackControls:
    """Tests for pause, resume, stop and breakpoints."""

    @pytest.mark.asyncio
    async def test_breakpoint_pauses_before_step(self, services, session_factory):
        recording_id = add_recording(session_factory, [{}, {}, {}])

        playback = await services.playback.start(
            StartPlaybackRequest(recording_session_id=recording_id, breakpoints=[1])
        )
        await wait_until(lambda: services.playback.get(playback.id).status == "paused")

        paused = services.playback.get(playback.id)
        assert [r.order_index for r in paused.results] == [0]

        await services.playback.resume(playback.id)
        finished = await services.playback.wait(playback.id)

        assert finished.status == "completed"
        assert finished.passed_steps == 3

    @pytest.mark.asyncio
    async def test_pause_lets_in_flight_step_finish(self, services, session_factory, browser_factory):
        recording_id = add_recording(session_factory, [{}, {}])
        browser = await services.browsers.create_session()
        adapter = browser_factory.adapters[browser.id]
        started: dict[str, str] = {}

        async def pause_during_first_step(name, selector):
            if selector == "#step-0":
                await services.playback.pause(started["id"])

        adapter.step_hook = pause_during_first_step
        playback = await services.playback.start(
            StartPlaybackRequest(recording_session_id=recording_id, browser_session_id=browser.id)
        )
        started["id"] = playback.id

        await wait_until(lambda: len(services.playback.get(playback.id).results) == 1)
        await asyncio.sleep(0.05)
        paused = services.playback.get(playback.id)
        assert paused.status == "paused"
        assert [r.status for r in paused.results] == ["passed"]

        adapter.step_hook = None
        await services.playback.resume(playback.id)
        finished = await services.playback.wait(playback.id)
        assert [r.status for r in finished.results] == ["passed", "passed"]
        assert browser.owner is None
        assert adapter.closed is False

    @pytest.mark.asyncio
    async def test_stop_skips_remaining_steps(self, services, session_factory):
        recording_id = add_recording(session_factory, [{}, {}, {}])

        playback = await services.playback.start(
            StartPlaybackRequest(recording_session_id=recording_id, breakpoints=[1])
        )
        await wait_until(lambda: services.playback.get(playback.id).status == "paused")
        stopped = await services.playback.stop(playback.id)

        assert stopped.status == "cancelled"
        assert [r.status for r in stopped.results] == ["passed", "skipped", "skipped"]
        assert stopped.results[1].error_message == "Playback stopped"

        again = await services.playback.stop(playback.id)
        assert again.status == "cancelled"

    @pytest.mark.asyncio
    async def test_controls_after_finish(self, services, session_factory):
        recording_id = add_recording(session_factory, [{}])
        playback = await play(services, recording_id)

        with pytest.raises(InvalidStateError):
            await services.playback.pause(playback.id)
        with pytest.raises(InvalidStateError):
            await services.playback.resume(playback.id)

    @pytest.mark.asyncio
    async def test_steps_are_copied_at_start(self, services, session_factory, browser_factory):
        recording_id = add_recording(session_factory, [{}, {}, {}])

        playback = await services.playback.start(
            StartPlaybackRequest(recording_session_id=recording_id, breakpoints=[1])
        )
        await wait_until(lambda: services.playback.get(playback.id).status == "paused")
        steps = services.verification.list_steps(recording_id)
        await services.verification.edit(steps[2].id, UpdateStepRequest(element_selector="#changed"))
        await services.verification.delete(steps[1].id)

        await services.playback.resume(playback.id)
        finished = await services.playback.wait(playback.id)

        adapter = browser_factory.adapters[finished.browser_session_id]
        assert [call[1] for call in adapter.actions()] == ["#step-0", "#step-1", "#step-2"]
        assert finished.total_steps == 3

    @pytest.mark.asyncio
    async def test_start_index_and_verified_only(self, services, session_factory, browser_factory):
        recording_id = add_recording(session_factory, [
            {"user_verified": True},
            {"user_verified": False},
            {"user_verified": True},
            {"user_verified": True},
        ])

        playback = await play(services, recording_id, start_index=1, verified_only=True)

        adapter = browser_factory.adapters[playback.browser_session_id]
        assert playback.total_steps == 2
        assert [call[1] for call in adapter.actions()] == ["#step-2", "#step-3"]

    def test_speed_scales_only_the_delay(self, monkeypatch):
        monkeypatch.setattr(settings, "PLAYBACK_STEP_DELAY_MS", 500)

        assert inter_step_delay(1.0, 0) == 0.5
        assert inter_step_delay(2.0, 1000) == 0.75


# =============================================================================
# Starting
# =============================================================================


class TestStartPlayback:
    """Tests for start validation and browser ownership."""

    @pytest.mark.asyncio
    async def test_recording_id_is_required(self, services):
        with pytest.raises(InvalidInputError, match="recording_session_id is required"):
            await services.playback.start(StartPlaybackRequest())

    @pytest.mark.asyncio
    async def test_unknown_recording(self, services):
        with pytest.raises(SessionNotFoundError):
            await services.playback.start(StartPlaybackRequest(recording_session_id="missing"))

    @pytest.mark.asyncio
    async def test_empty_recording(self, services, session_factory):
        recording_id = add_recording(session_factory, [])

        with pytest.raises(InvalidInputError, match="no steps"):
            await services.playback.start(StartPlaybackRequest(recording_session_id=recording_id))

    @pytest.mark.asyncio
    async def test_browser_used_by_recording_is_busy(self, services, session_factory):
        recording_id = add_recording(session_factory, [{}])
        browser = await services.browsers.create_session()
        await services.recordings.start(
            StartRecordingRequest(project_id="p1", name="Live", browser_session_id=browser.id)
        )

        with pytest.raises(SessionBusyError):
            await services.playback.start(
                StartPlaybackRequest(recording_session_id=recording_id, browser_session_id=browser.id)
            )

    @pytest.mark.asyncio
    async def test_browser_used_by_playback_is_busy(self, services, session_factory):
        recording_id = add_recording(session_factory, [{}, {}])
        browser = await services.browsers.create_session()
        first = await services.playback.start(StartPlaybackRequest(
            recording_session_id=recording_id, browser_session_id=browser.id, breakpoints=[0],
        ))
        await wait_until(lambda: services.playback.get(first.id).status == "paused")

        with pytest.raises(SessionBusyError):
            await services.playback.start(
                StartPlaybackRequest(recording_session_id=recording_id, browser_session_id=browser.id)
            )

        await services.playback.stop(first.id)
        assert browser.owner is None
