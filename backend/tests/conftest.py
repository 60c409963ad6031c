"""Shared fixtures for recorder service tests."""

import asyncio
import os
import tempfile
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing modules
_TMP_DIR = tempfile.mkdtemp(prefix="qa_recorder_tests_")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP_DIR}/app.db")
os.environ.setdefault("SCREENSHOTS_DIR", os.path.join(_TMP_DIR, "screenshots"))
os.environ.setdefault("LOGS_DIR", os.path.join(_TMP_DIR, "logs"))
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("CLASSIFIER_URL", "")
os.environ.setdefault("TYPE_MERGE_WINDOW_MS", "50")
os.environ.setdefault("PLAYBACK_STEP_DELAY_MS", "0")

from qa_recorder.database import Base  # noqa: E402
from qa_recorder.deps import build_services  # noqa: E402
from qa_recorder.errors import ElementNotFoundError  # noqa: E402
from qa_recorder.models import RecordingSession, TestStep  # noqa: E402
from qa_recorder.services.browser_adapter import BrowserAdapter, EventCallback  # noqa: E402
from qa_recorder.services.classifiers import RuleBasedClassifier  # noqa: E402


class FakeBrowserAdapter(BrowserAdapter):
    """In-memory browser: records calls, fails on selectors listed in ``missing``."""

    def __init__(self, session_id: str, missing: set[str] | None = None):
        super().__init__(session_id)
        self.missing = missing if missing is not None else set()
        self.calls: list[tuple[Any, ...]] = []
        self.url: str | None = None
        self.callback: EventCallback | None = None
        self.closed = False
        self.step_hook = None

    @property
    def current_url(self) -> str | None:
        return self.url

    async def open(self, start_url: str | None = None) -> None:
        self.url = start_url or "about:blank"

    async def close(self) -> None:
        self.closed = True

    async def _act(self, name: str, selector: str | None, *args: Any) -> None:
        if self.step_hook is not None:
            await self.step_hook(name, selector)
        if selector is not None and selector in self.missing:
            raise ElementNotFoundError(selector)
        self.calls.append((name, selector, *args))

    async def navigate(self, url: str, timeout_ms: int) -> None:
        self.calls.append(("navigate", url, timeout_ms))
        self.url = url

    async def click(self, selector: str, timeout_ms: int) -> None:
        await self._act("click", selector, timeout_ms)

    async def type_text(self, selector: str, value: str, timeout_ms: int) -> None:
        await self._act("type", selector, value, timeout_ms)

    async def select_option(self, selector: str, value: str, timeout_ms: int) -> None:
        await self._act("select", selector, value, timeout_ms)

    async def hover(self, selector: str, timeout_ms: int) -> None:
        await self._act("hover", selector, timeout_ms)

    async def scroll(self, selector: str | None, x: int, y: int, timeout_ms: int) -> None:
        await self._act("scroll", selector, x, y, timeout_ms)

    async def wait(self, selector: str | None, duration_ms: int | None, timeout_ms: int) -> None:
        await self._act("wait", selector, duration_ms, timeout_ms)

    async def verify(self, selector: str, expected_text: str | None, timeout_ms: int) -> None:
        await self._act("verify", selector, expected_text, timeout_ms)

    async def screenshot(self, filename: str) -> str | None:
        self.calls.append(("screenshot", filename))
        return filename

    async def start_event_capture(self, callback: EventCallback) -> None:
        self.callback = callback

    async def stop_event_capture(self) -> None:
        self.callback = None

    def actions(self) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] not in ("screenshot", "navigate")]


class FakeBrowserFactory:
    """Adapter factory handing out FakeBrowserAdapters that share one ``missing`` set."""

    def __init__(self):
        self.missing: set[str] = set()
        self.adapters: dict[str, FakeBrowserAdapter] = {}

    def __call__(self, session_id: str, headless: bool | None = None) -> FakeBrowserAdapter:
        adapter = FakeBrowserAdapter(session_id, self.missing)
        self.adapters[session_id] = adapter
        return adapter


def make_element(**overrides: Any) -> dict[str, Any]:
    element = {"tagName": "button", "attributes": {}, "classes": []}
    element.update(overrides)
    return element


def make_event(event_type: str = "click", element: dict[str, Any] | None = None, **overrides: Any) -> dict[str, Any]:
    """Raw camelCase payload as the capture script sends it."""
    event = {
        "type": event_type,
        "pageUrl": "https://app.example.com/login",
        "timestamp": 1_700_000_000_000,
    }
    if element is not None:
        event["element"] = element
    event.update(overrides)
    return event


def submit_click() -> dict[str, Any]:
    return make_event(
        "click",
        make_element(id="submit-button", textContent="Submit", xpath="/html/body/form/button[1]"),
    )


async def wait_for_steps(session_factory, recording_id: str, count: int, timeout: float = 2.0) -> list[TestStep]:
    """Poll until the recording has at least ``count`` steps."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        db = session_factory()
        try:
            steps = (
                db.query(TestStep)
                .filter(TestStep.recording_id == recording_id)
                .order_by(TestStep.order_index)
                .all()
            )
        finally:
            db.close()
        if len(steps) >= count or asyncio.get_running_loop().time() > deadline:
            return steps
        await asyncio.sleep(0.02)


def add_recording(session_factory, steps: list[dict[str, Any]], status: str = "completed", **fields: Any) -> str:
    """Insert a recording with the given step rows and return its id."""
    db = session_factory()
    try:
        recording = RecordingSession(
            project_id=fields.pop("project_id", "p1"),
            name=fields.pop("name", "Login flow"),
            status=status,
            steps_count=len(steps),
            **fields,
        )
        db.add(recording)
        db.flush()
        for index, step in enumerate(steps):
            row = {
                "natural_language": f"Step {index}",
                "action_type": "click",
                "element_selector": f"#step-{index}",
                "element_alternatives": [],
                "confidence_score": 0.9,
                "page_url": "https://app.example.com/login",
            }
            row.update(step)
            db.add(TestStep(recording_id=recording.id, order_index=index, **row))
        db.commit()
        return recording.id
    finally:
        db.close()


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def browser_factory():
    return FakeBrowserFactory()


@pytest_asyncio.fixture
async def services(session_factory, browser_factory):
    container = build_services(
        session_factory=session_factory,
        adapter_factory=browser_factory,
        classifier_factory=RuleBasedClassifier,
    )
    yield container
    await container.shutdown()
