"""
Browser Control Adapter - Thin wrapper around a single browser session.

Features:
- Primitive commands: navigate, click, type, select, hover, scroll, wait, verify, screenshot
- Locator timeouts surface as ElementNotFoundError so callers can try fallback selectors
- Injected capture script streams raw user interactions back as BrowserEvent payloads
"""

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Awaitable, Callable

from playwright.async_api import (
    Browser,
    BrowserContext,
    Locator,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeout,
    async_playwright,
)

from qa_recorder.config import settings
from qa_recorder.errors import ElementNotFoundError

logger = logging.getLogger(__name__)

# Receives raw event payloads emitted by the capture script
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


class BrowserAdapter(ABC):
    """Primitive browser commands. Owns no business logic."""

    def __init__(self, session_id: str):
        self.session_id = session_id

    @property
    @abstractmethod
    def current_url(self) -> str | None:
        """URL of the active page, if a page is open."""

    @abstractmethod
    async def open(self, start_url: str | None = None) -> None:
        """Launch the browser and open a page."""

    @abstractmethod
    async def close(self) -> None:
        """Close the page and browser."""

    @abstractmethod
    async def navigate(self, url: str, timeout_ms: int) -> None:
        pass

    @abstractmethod
    async def click(self, selector: str, timeout_ms: int) -> None:
        pass

    @abstractmethod
    async def type_text(self, selector: str, value: str, timeout_ms: int) -> None:
        pass

    @abstractmethod
    async def select_option(self, selector: str, value: str, timeout_ms: int) -> None:
        pass

    @abstractmethod
    async def hover(self, selector: str, timeout_ms: int) -> None:
        pass

    @abstractmethod
    async def scroll(self, selector: str | None, x: int, y: int, timeout_ms: int) -> None:
        pass

    @abstractmethod
    async def wait(self, selector: str | None, duration_ms: int | None, timeout_ms: int) -> None:
        """Wait for an element to be visible, or for a fixed duration when no selector is given."""

    @abstractmethod
    async def verify(self, selector: str, expected_text: str | None, timeout_ms: int) -> None:
        """Assert an element is visible and, optionally, contains the expected text."""

    @abstractmethod
    async def screenshot(self, filename: str) -> str | None:
        """Save a screenshot under SCREENSHOTS_DIR and return its filename."""

    @abstractmethod
    async def start_event_capture(self, callback: EventCallback) -> None:
        """Begin streaming user interactions to the callback."""

    @abstractmethod
    async def stop_event_capture(self) -> None:
        pass


# Binding exposed to the page for the capture script
BINDING_NAME = "__qaRecordEvent"

CAPTURE_SCRIPT = """
(function() {
    if (window.__qaRecorderActive) return;
    window.__qaRecorderActive = true;

    function getXPath(element) {
        if (!element) return '';
        if (element.id) return `//*[@id="${element.id}"]`;
        const parts = [];
        while (element && element.nodeType === Node.ELEMENT_NODE) {
            let index = 0;
            let sibling = element.previousSibling;
            while (sibling) {
                if (sibling.nodeType === Node.ELEMENT_NODE && sibling.tagName === element.tagName) {
                    index++;
                }
                sibling = sibling.previousSibling;
            }
            const tagName = element.tagName.toLowerCase();
            parts.unshift(index > 0 ? `${tagName}[${index + 1}]` : tagName);
            element = element.parentElement;
        }
        return '/' + parts.join('/');
    }

    function getCssPath(element) {
        const parts = [];
        while (element && element.nodeType === Node.ELEMENT_NODE && element !== document.body) {
            let part = element.tagName.toLowerCase();
            if (element.id) {
                parts.unshift(`#${CSS.escape(element.id)}`);
                break;
            }
            const parent = element.parentElement;
            if (parent) {
                const same = Array.from(parent.children).filter(c => c.tagName === element.tagName);
                if (same.length > 1) part += `:nth-of-type(${same.indexOf(element) + 1})`;
            }
            parts.unshift(part);
            element = parent;
        }
        return parts.join(' > ');
    }

    function getLabelText(target) {
        if (target.labels && target.labels.length) return target.labels[0].innerText.trim();
        const wrapping = target.closest('label');
        if (wrapping) return wrapping.innerText.trim();
        return null;
    }

    function getElement(target) {
        const attributes = {};
        for (const attr of Array.from(target.attributes || [])) {
            if (attr.name.startsWith('data-') || ['type', 'href', 'role', 'title', 'alt'].includes(attr.name)) {
                attributes[attr.name] = attr.value;
            }
        }
        const rect = target.getBoundingClientRect();
        return {
            tagName: target.tagName ? target.tagName.toLowerCase() : 'unknown',
            attributes: attributes,
            textContent: (target.innerText || target.textContent || '').substring(0, 100).trim() || null,
            ariaLabel: target.getAttribute('aria-label'),
            labelText: getLabelText(target),
            placeholder: target.placeholder || null,
            name: target.name || null,
            id: target.id || null,
            role: target.getAttribute('role'),
            inputType: target.type || null,
            classes: Array.from(target.classList || []),
            xpath: getXPath(target),
            cssPath: getCssPath(target),
            boundingBox: {x: rect.x, y: rect.y, width: rect.width, height: rect.height},
        };
    }

    function emit(payload) {
        payload.pageUrl = location.href;
        payload.timestamp = Date.now();
        window.__qaRecordEvent(JSON.stringify(payload));
    }

    document.addEventListener('click', function(e) {
        const target = e.target.closest('a, button, [role=button], input, select, textarea, label') || e.target;
        if (target.tagName === 'SELECT') return;
        const link = target.closest('a[href]');
        let resultingUrl = null;
        if (link && !link.getAttribute('href').startsWith('#') && !link.target) {
            resultingUrl = link.href;
        }
        emit({type: 'click', element: getElement(target), coordinates: {x: e.clientX, y: e.clientY}, resultingUrl: resultingUrl});
    }, true);

    document.addEventListener('input', function(e) {
        const target = e.target;
        if (!['INPUT', 'TEXTAREA'].includes(target.tagName)) return;
        if (['checkbox', 'radio'].includes(target.type)) return;
        emit({type: 'type', element: getElement(target), value: target.value});
    }, true);

    document.addEventListener('change', function(e) {
        const target = e.target;
        if (target.tagName !== 'SELECT') return;
        emit({type: 'select', element: getElement(target), value: target.value});
    }, true);

    document.addEventListener('keydown', function(e) {
        if (!['Enter', 'Tab', 'Escape'].includes(e.key)) return;
        emit({type: 'keypress', element: getElement(e.target), key: e.key});
    }, true);

    document.addEventListener('mouseover', function(e) {
        const target = e.target.closest('[aria-haspopup], [data-hover]');
        if (!target) return;
        emit({type: 'hover', element: getElement(target)});
    }, true);

    let scrollTimeout = null;
    document.addEventListener('scroll', function() {
        clearTimeout(scrollTimeout);
        scrollTimeout = setTimeout(function() {
            emit({type: 'scroll', scrollX: Math.round(window.scrollX), scrollY: Math.round(window.scrollY)});
        }, 300);
    }, true);
})();
"""


class PlaywrightBrowserAdapter(BrowserAdapter):
    """Browser adapter backed by a local Playwright Chromium instance."""

    def __init__(self, session_id: str, headless: bool | None = None):
        super().__init__(session_id)
        self.headless = settings.HEADLESS if headless is None else headless
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._context: BrowserContext | None = None
        self._page: Page | None = None
        self._event_callback: EventCallback | None = None
        self._binding_registered = False

    @property
    def current_url(self) -> str | None:
        return self._page.url if self._page else None

    @property
    def page(self) -> Page:
        if self._page is None:
            raise RuntimeError(f"Browser session {self.session_id} is not open")
        return self._page

    async def open(self, start_url: str | None = None) -> None:
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=self.headless)
        self._context = await self._browser.new_context(
            viewport={"width": settings.VIEWPORT_WIDTH, "height": settings.VIEWPORT_HEIGHT}
        )
        self._page = await self._context.new_page()
        self._page.on("framenavigated", self._on_frame_navigated)
        logger.info(f"Browser session {self.session_id} opened (headless={self.headless})")

        if start_url:
            await self.navigate(start_url, settings.PRIMITIVE_TIMEOUT_MS * 6)

    async def close(self) -> None:
        try:
            if self._context:
                await self._context.close()
            if self._browser:
                await self._browser.close()
            if self._playwright:
                await self._playwright.stop()
        finally:
            self._page = None
            self._context = None
            self._browser = None
            self._playwright = None
            logger.info(f"Browser session {self.session_id} closed")

    async def _locate(self, selector: str, timeout_ms: int) -> Locator:
        locator = self.page.locator(selector).first
        try:
            await locator.wait_for(state="visible", timeout=timeout_ms)
        except PlaywrightTimeout:
            raise ElementNotFoundError(selector)
        return locator

    async def navigate(self, url: str, timeout_ms: int) -> None:
        await self.page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)

    async def click(self, selector: str, timeout_ms: int) -> None:
        locator = await self._locate(selector, timeout_ms)
        await locator.click(timeout=timeout_ms)

    async def type_text(self, selector: str, value: str, timeout_ms: int) -> None:
        locator = await self._locate(selector, timeout_ms)
        await locator.fill(value, timeout=timeout_ms)

    async def select_option(self, selector: str, value: str, timeout_ms: int) -> None:
        locator = await self._locate(selector, timeout_ms)
        await locator.select_option(value, timeout=timeout_ms)

    async def hover(self, selector: str, timeout_ms: int) -> None:
        locator = await self._locate(selector, timeout_ms)
        await locator.hover(timeout=timeout_ms)

    async def scroll(self, selector: str | None, x: int, y: int, timeout_ms: int) -> None:
        if selector:
            locator = await self._locate(selector, timeout_ms)
            await locator.scroll_into_view_if_needed(timeout=timeout_ms)
            return
        await self.page.evaluate(f"window.scrollTo({int(x)}, {int(y)})")

    async def wait(self, selector: str | None, duration_ms: int | None, timeout_ms: int) -> None:
        if selector:
            await self._locate(selector, timeout_ms)
            return
        await asyncio.sleep((duration_ms or 0) / 1000)

    async def verify(self, selector: str, expected_text: str | None, timeout_ms: int) -> None:
        locator = await self._locate(selector, timeout_ms)
        if expected_text:
            actual = await locator.inner_text(timeout=timeout_ms)
            if expected_text not in actual:
                raise AssertionError(f"Expected '{expected_text}' in element text, got '{actual[:100]}'")

    async def screenshot(self, filename: str) -> str | None:
        if not self._page:
            return None
        try:
            screenshots_dir = Path(settings.SCREENSHOTS_DIR)
            filepath = screenshots_dir / filename
            filepath.parent.mkdir(parents=True, exist_ok=True)
            await self._page.screenshot(path=str(filepath))
            return filename
        except Exception as e:
            logger.warning(f"Screenshot failed for {filename}: {e}")
            return None

    async def start_event_capture(self, callback: EventCallback) -> None:
        self._event_callback = callback
        if not self._binding_registered:
            await self.page.context.expose_binding(BINDING_NAME, self._on_binding_called)
            await self.page.context.add_init_script(CAPTURE_SCRIPT)
            self._binding_registered = True
        await self.page.evaluate(CAPTURE_SCRIPT)
        logger.info(f"Event capture started for browser session {self.session_id}")

    async def stop_event_capture(self) -> None:
        self._event_callback = None

    async def _on_binding_called(self, source: dict[str, Any], payload: str) -> None:
        """Handle events from the injected capture script."""
        if self._event_callback is None:
            return
        try:
            event = json.loads(payload)
        except ValueError:
            logger.warning(f"Discarding malformed capture payload: {payload[:200]}")
            return
        await self._event_callback(event)

    def _on_frame_navigated(self, frame: Any) -> None:
        if self._event_callback is None or frame != self.page.main_frame:
            return
        event = {
            "type": "navigate",
            "pageUrl": frame.url,
            "resultingUrl": frame.url,
            "timestamp": int(time.time() * 1000),
        }
        asyncio.create_task(self._event_callback(event))
