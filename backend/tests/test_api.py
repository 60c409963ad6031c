"""End-to-end tests for the REST API."""

import time

import pytest
from fastapi.testclient import TestClient

from conftest import add_recording, make_element, make_event, submit_click
from qa_recorder.database import get_db
from qa_recorder.deps import build_services, get_services
from qa_recorder.main import app
from qa_recorder.services.classifiers import RuleBasedClassifier


@pytest.fixture
def container(session_factory, browser_factory):
    return build_services(
        session_factory=session_factory,
        adapter_factory=browser_factory,
        classifier_factory=RuleBasedClassifier,
    )


@pytest.fixture
def client(container, session_factory):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_services] = lambda: container
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
        test_client.portal.call(container.shutdown)
    app.dependency_overrides.clear()


def wait_for_playback(client: TestClient, playback_id: str, timeout: float = 2.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        playback = client.get(f"/api/playback/{playback_id}").json()["data"]
        if playback["status"] in ("completed", "failed", "cancelled") or time.monotonic() > deadline:
            return playback
        time.sleep(0.02)


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestGenerateCodeValidation:
    """POST /api/generate-code input checks."""

    def test_empty_body(self, client):
        response = client.post("/api/generate-code")

        assert response.status_code == 400
        assert response.json() == {"error": "VALIDATION_ERROR", "message": "recording_session_id is required"}

    def test_empty_object(self, client):
        response = client.post("/api/generate-code", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"
        assert response.json()["message"] == "recording_session_id is required"

    def test_unknown_language(self, client, session_factory):
        recording_id = add_recording(session_factory, [{}])

        response = client.post("/api/generate-code", json={
            "recording_session_id": recording_id,
            "options": {"language": "ruby"},
        })

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"

    def test_unsupported_action(self, client, session_factory):
        recording_id = add_recording(session_factory, [{"action_type": "hover"}])

        response = client.post("/api/generate-code", json={
            "recording_session_id": recording_id,
            "options": {"framework": "cypress"},
        })

        assert response.status_code == 422
        assert response.json()["error"] == "UNSUPPORTED_ACTION"
        assert response.json()["details"]["order_index"] == 0


class TestRecordingFlow:
    """Record, review, replay and export through the API."""

    def test_record_verify_and_generate(self, client):
        started = client.post("/api/recordings", json={"project_id": "p1", "target_id": "t1"})
        assert started.status_code == 200
        recording_id = started.json()["data"]["id"]

        ingested = client.post(f"/api/recordings/{recording_id}/events", json={"events": [
            make_event("type", make_element(tagName="input", id="email", labelText="Email"), value="joe"),
            submit_click(),
        ]})
        assert ingested.json()["data"] == {"accepted": 2, "dropped": 0}

        completed = client.post(f"/api/recordings/{recording_id}/complete")
        assert completed.json()["data"]["status"] == "completed"
        assert completed.json()["data"]["steps_count"] == 2

        steps = client.get(f"/api/recordings/{recording_id}/steps").json()["data"]
        assert [s["action_type"] for s in steps] == ["type", "click"]
        assert all(s["user_verified"] is False for s in steps)

        verified = client.post("/api/steps/batch-verify", json={"step_ids": [s["id"] for s in steps]})
        assert [s["user_verified"] for s in verified.json()["data"]] == [True, True]

        generated = client.post("/api/generate-code", json={
            "recording_session_id": recording_id,
            "options": {"verified_only": True, "include_comments": False},
        })
        assert generated.status_code == 200
        code = generated.json()["data"]["test_code"]
        assert code.count("await page.") == 2
        assert code.index('page.fill("#email", "joe")') < code.index('page.click("#submit-button")')

        listed = client.get(f"/api/recordings/{recording_id}/generated-tests").json()["data"]
        assert [t["id"] for t in listed] == [generated.json()["data"]["id"]]

    def test_edit_verify_and_quality(self, client, session_factory):
        recording_id = add_recording(session_factory, [{}])
        step_id = client.get(f"/api/recordings/{recording_id}/steps").json()["data"][0]["id"]

        edited = client.patch(f"/api/steps/{step_id}", json={"natural_language": "Click the Save button"})
        assert edited.json()["data"]["natural_language"] == "Click the Save button"
        assert edited.json()["data"]["confidence_score"] == 0.9

        flagged = client.post(f"/api/steps/{step_id}/verify", json={"verified": False})
        assert flagged.json()["data"]["needs_review"] is True

        verified = client.post(f"/api/steps/{step_id}/verify")
        assert verified.json()["data"]["user_verified"] is True

        suggestions = client.post(f"/api/steps/{step_id}/suggestions", json={"partial_text": "click"})
        assert len(suggestions.json()["data"]) >= 1

        quality = client.get(f"/api/steps/{step_id}/quality").json()["data"]
        assert quality["valid"] is True
        assert quality["execution_preview"]["can_execute"] is True

    def test_playback_through_api(self, client, session_factory, browser_factory):
        recording_id = add_recording(session_factory, [{}, {}, {}])
        browser_factory.missing.add("#step-1")

        started = client.post("/api/playback/start", json={"recording_session_id": recording_id})
        assert started.status_code == 200

        playback = wait_for_playback(client, started.json()["data"]["id"])
        assert playback["status"] == "failed"
        assert [r["status"] for r in playback["results"]] == ["passed", "failed", "skipped"]

    def test_recording_logs(self, client):
        recording_id = client.post("/api/recordings", json={"project_id": "p1", "name": "Logged"}).json()["data"]["id"]
        client.post(f"/api/recordings/{recording_id}/cancel")

        response = client.get(f"/api/recordings/{recording_id}/logs")

        assert response.status_code == 200
        assert isinstance(response.json()["data"], list)


class TestErrors:
    """Error envelopes and status codes."""

    def test_unknown_recording(self, client):
        response = client.get("/api/recordings/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "SESSION_NOT_FOUND"

    def test_request_validation(self, client, session_factory):
        recording_id = add_recording(session_factory, [])

        response = client.post(f"/api/recordings/{recording_id}/events", json={"events": []})

        assert response.status_code == 400
        assert response.json()["error"] == "VALIDATION_ERROR"
        assert response.json()["message"].startswith("events:")

    def test_missing_project(self, client):
        response = client.post("/api/recordings", json={"name": "No project"})

        assert response.status_code == 400
        assert response.json()["message"] == "project_id is required"

    def test_events_for_finished_recording(self, client, session_factory):
        recording_id = add_recording(session_factory, [])

        response = client.post(f"/api/recordings/{recording_id}/events", json={"events": [submit_click()]})

        assert response.status_code == 409
        assert response.json()["error"] == "INVALID_STATE"

    def test_busy_browser_session(self, client):
        browser_id = client.post("/api/browser/sessions").json()["data"]["id"]
        first = client.post("/api/recordings", json={
            "project_id": "p1", "name": "First", "browser_session_id": browser_id,
        })
        assert first.status_code == 200

        second = client.post("/api/recordings", json={
            "project_id": "p1", "name": "Second", "browser_session_id": browser_id,
        })
        assert second.status_code == 409
        assert second.json()["error"] == "SESSION_BUSY"

        closing = client.delete(f"/api/browser/sessions/{browser_id}")
        assert closing.status_code == 409

        client.post(f"/api/recordings/{first.json()['data']['id']}/complete")
        assert client.delete(f"/api/browser/sessions/{browser_id}").status_code == 200
