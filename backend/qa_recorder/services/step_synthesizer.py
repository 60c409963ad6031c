"""
Step Synthesizer - Turns raw browser events into candidate test steps.

Pipeline per event:
1. Merge rapid related events (typing on one element, scrolling one page)
2. Classify the event into an action type
3. Describe the target element (visible text, ARIA label, label text, ...)
4. Generate a primary selector plus ranked alternatives
5. Ask the classifier for a sentence
6. Combine element and language confidence into one score

Low-confidence steps are still produced; they are flagged for review.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any

from qa_recorder.config import settings
from qa_recorder.errors import ClassificationError, SynthesisError
from qa_recorder.schemas import ACTION_TYPES, BrowserEvent, ElementSnapshot
from qa_recorder.services.classifiers import (
    PageContext,
    RuleBasedClassifier,
    SelectorCandidate,
    StepClassification,
    StepClassifier,
    StepDraft,
    assess_language_quality,
    describe_action_basic,
)

logger = logging.getLogger(__name__)

EVENT_ACTION_MAP = {
    "click": "click",
    "dblclick": "click",
    "type": "type",
    "input": "type",
    "change": "select",
    "select": "select",
    "navigate": "navigate",
    "navigation": "navigate",
    "scroll": "scroll",
    "hover": "hover",
    "mouseover": "hover",
    "mouseenter": "hover",
    "wait": "wait",
    "verify": "verify",
    "assert": "verify",
}

ACTION_TYPE_CONFIDENCE = {
    "click": 0.9,
    "type": 0.8,
    "select": 0.8,
    "navigate": 0.9,
    "verify": 0.8,
    "wait": 0.7,
    "scroll": 0.6,
    "hover": 0.5,
}

# Actions that can run without a target element
ELEMENTLESS_ACTIONS = ("navigate", "scroll", "wait")

TEST_ID_ATTRIBUTES = ("data-testid", "data-test-id", "data-test", "data-cy", "data-qa")
TEXT_SELECTOR_MAX_LENGTH = 50
DESCRIPTION_MAX_LENGTH = 50

_SIMPLE_ID = re.compile(r"^[A-Za-z_][\w-]*$")
_GENERATED_ID = re.compile(r"\d{4,}|^:r[0-9a-z]+:$")
_WHITESPACE = re.compile(r"\s+")


@dataclass
class SynthesizedStep:
    """A candidate step ready to persist."""

    action_type: str
    natural_language: str
    element_description: str | None
    element_selector: str | None
    element_alternatives: list[str]
    value: str | None
    page_url: str
    confidence_score: float
    needs_review: bool
    element: dict[str, Any] | None = None
    suggestions: list[str] = field(default_factory=list)
    ai_metadata: dict[str, Any] = field(default_factory=dict)


def normalize_event_type(event_type: str) -> str | None:
    return EVENT_ACTION_MAP.get(event_type.lower())


class EventMerger:
    """Collapses rapid related events into one.

    Consecutive ``type`` events on the same element, and consecutive ``scroll``
    events on the same page, merge when each arrives within ``window_ms`` of
    the previous one; the merged event carries the final value. ``keypress``
    events commit pending typing and are otherwise dropped.
    """

    def __init__(self, window_ms: int | None = None):
        self.window_ms = settings.TYPE_MERGE_WINDOW_MS if window_ms is None else window_ms
        self._pending: BrowserEvent | None = None

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def push(self, event: BrowserEvent) -> list[BrowserEvent]:
        """Accept one event and return the events that are ready to synthesize."""
        if event.type.lower() == "keypress":
            return self.flush()

        kind = normalize_event_type(event.type)
        if kind in ("type", "scroll"):
            if self._pending is not None and self._can_merge(self._pending, event):
                self._pending = event
                return []
            ready = self.flush()
            self._pending = event
            return ready

        ready = self.flush()
        ready.append(event)
        return ready

    def flush(self) -> list[BrowserEvent]:
        if self._pending is None:
            return []
        event, self._pending = self._pending, None
        return [event]

    def _can_merge(self, previous: BrowserEvent, event: BrowserEvent) -> bool:
        kind = normalize_event_type(event.type)
        if normalize_event_type(previous.type) != kind:
            return False
        if event.timestamp - previous.timestamp > self.window_ms:
            return False
        if kind == "scroll":
            return previous.page_url == event.page_url
        if previous.element is None or event.element is None:
            return False
        return previous.element.identity() == event.element.identity()


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def _clean_text(text: str | None) -> str | None:
    if not text:
        return None
    cleaned = _WHITESPACE.sub(" ", text).strip()
    return cleaned or None


def element_kind(element: ElementSnapshot) -> str:
    tag = element.tag_name.lower()
    role = (element.role or element.attribute("role") or "").lower()
    input_type = (element.input_type or element.attribute("type") or "").lower()

    if tag == "button" or role == "button" or (tag == "input" and input_type in ("submit", "button", "reset")):
        return "button"
    if tag == "a" or role == "link":
        return "link"
    if tag == "select" or role in ("combobox", "listbox"):
        return "dropdown"
    if tag == "input" and input_type == "checkbox" or role == "checkbox":
        return "checkbox"
    if tag == "input" and input_type == "radio" or role == "radio":
        return "radio button"
    if tag in ("input", "textarea") or role == "textbox":
        return "field"
    if tag == "img":
        return "image"
    if tag in ("h1", "h2", "h3", "h4", "h5", "h6") or role == "heading":
        return "heading"
    if tag == "option" or role == "option":
        return "option"
    if role == "tab":
        return "tab"
    return "element"


def describe_element(element: ElementSnapshot) -> str:
    """Human-readable name such as "Login button" or "Email field".

    Preference: visible text, ARIA label, nearby label text, then
    placeholder, name and id.
    """
    kind = element_kind(element)
    text = _clean_text(element.text_content)
    if text and kind == "field":
        # Text content of a text input is its value, not its name
        text = None

    for candidate in (
        text,
        _clean_text(element.aria_label),
        _clean_text(element.label_text),
        _clean_text(element.placeholder),
        element.name,
        element.id,
    ):
        if candidate:
            label = candidate[:DESCRIPTION_MAX_LENGTH].rstrip()
            return f"{label} {kind}"

    return f"{element.tag_name.lower()} {kind}" if kind != "element" else f"{element.tag_name.lower()} element"


def build_selectors(element: ElementSnapshot) -> list[SelectorCandidate]:
    """Candidate selectors ordered by decreasing robustness."""
    candidates: list[SelectorCandidate] = []
    tag = element.tag_name.lower()

    for attribute in TEST_ID_ATTRIBUTES:
        value = element.attribute(attribute)
        if value:
            candidates.append(SelectorCandidate(f"[{attribute}={_quote(value)}]", "test-id", 0.95))
            break

    if element.id:
        confidence = 0.65 if _GENERATED_ID.search(element.id) else 0.9
        if _SIMPLE_ID.match(element.id):
            candidates.append(SelectorCandidate(f"#{element.id}", "id", confidence))
        else:
            candidates.append(SelectorCandidate(f"[id={_quote(element.id)}]", "id", confidence))

    if element.aria_label:
        candidates.append(SelectorCandidate(f"[aria-label={_quote(element.aria_label)}]", "aria-label", 0.8))

    if element.name:
        candidates.append(SelectorCandidate(f"{tag}[name={_quote(element.name)}]", "name", 0.75))

    if element.placeholder:
        candidates.append(SelectorCandidate(f"[placeholder={_quote(element.placeholder)}]", "placeholder", 0.72))

    text = _clean_text(element.text_content)
    if text and len(text) <= TEXT_SELECTOR_MAX_LENGTH and element_kind(element) != "field":
        candidates.append(SelectorCandidate(f"{tag}:has-text({_quote(text)})", "text", 0.7))

    if element.css_path:
        candidates.append(SelectorCandidate(element.css_path, "css-path", 0.6))

    if element.xpath:
        candidates.append(SelectorCandidate(f"xpath={element.xpath}", "xpath", 0.5))

    unique: list[SelectorCandidate] = []
    seen: set[str] = set()
    for candidate in candidates:
        if candidate.selector not in seen:
            seen.add(candidate.selector)
            unique.append(candidate)
    if len(unique) == 1:
        fallback = _structural_fallback(element, unique[0])
        if fallback is not None and fallback.selector not in seen:
            unique.append(fallback)
    return unique


def _structural_fallback(element: ElementSnapshot, primary: SelectorCandidate) -> SelectorCandidate | None:
    """Second selector for elements that only offer one attribute to anchor on."""
    tag = element.tag_name.lower()
    if primary.strategy == "id":
        return SelectorCandidate(f"{tag}[id={_quote(element.id)}]", "css-path", 0.55)
    if primary.strategy == "name":
        return SelectorCandidate(f"[name={_quote(element.name)}]", "name", 0.5)
    if primary.strategy == "text":
        return SelectorCandidate(f"text={_quote(_clean_text(element.text_content))}", "text", 0.5)
    if primary.selector.startswith("["):
        return SelectorCandidate(f"{tag}{primary.selector}", "css-path", 0.55)
    # css-path and xpath leave nothing else to build on
    return None


def context_confidence(event: BrowserEvent) -> float:
    score = 0.5
    if event.page_url.startswith("http"):
        score += 0.2
    if event.element is not None:
        if event.element.id:
            score += 0.2
        if _clean_text(event.element.text_content):
            score += 0.1
    return min(score, 1.0)


class StepSynthesizer:
    """Per-recording synthesizer. Holds the URL of the last navigation."""

    def __init__(
        self,
        classifier: StepClassifier | None = None,
        auto_generate: bool = True,
        low_confidence_threshold: float | None = None,
        max_alternatives: int | None = None,
    ):
        self.classifier = classifier or RuleBasedClassifier()
        self.auto_generate = auto_generate
        self.low_confidence_threshold = (
            settings.LOW_CONFIDENCE_THRESHOLD if low_confidence_threshold is None else low_confidence_threshold
        )
        self.max_alternatives = settings.MAX_ALTERNATIVE_SELECTORS if max_alternatives is None else max_alternatives
        self._last_url: str | None = None

    def classify_action(self, event: BrowserEvent) -> str:
        action = normalize_event_type(event.type)
        if action is None:
            raise SynthesisError(f"Unsupported event type: {event.type}", {"event_type": event.type})
        if action == "click" and event.resulting_url and event.resulting_url != event.page_url:
            return "navigate"
        return action

    def build_draft(self, event: BrowserEvent) -> StepDraft | None:
        """Everything but the sentence. Returns None for events that produce no step."""
        action = self.classify_action(event)
        element = event.element

        if action == "navigate":
            url = event.resulting_url or event.page_url
            if not url:
                raise SynthesisError("Navigation event without a URL")
            if url == self._last_url:
                return None
            self._last_url = url
            value: str | None = url
        else:
            if event.page_url:
                self._last_url = event.page_url
            value = event.value
            if action == "scroll" and element is None:
                value = f"{event.scroll_x or 0},{event.scroll_y or 0}"

        if element is None and action not in ELEMENTLESS_ACTIONS:
            raise SynthesisError(f"A {action} event needs a target element", {"event_type": event.type})

        selectors = build_selectors(element) if element is not None else []
        if element is not None and not selectors and action not in ELEMENTLESS_ACTIONS:
            raise SynthesisError("Could not derive any selector for the target element")

        if selectors:
            selector_confidence = selectors[0].confidence
        else:
            selector_confidence = 1.0
        element_confidence = (
            0.4 * selector_confidence
            + 0.2 * ACTION_TYPE_CONFIDENCE[action]
            + 0.2 * context_confidence(event)
        ) / 0.8

        return StepDraft(
            action_type=action,
            page_url=event.page_url,
            element_description=describe_element(element) if element is not None else None,
            element_kind=element_kind(element) if element is not None else None,
            input_type=(element.input_type or element.attribute("type")) if element is not None else None,
            value=value,
            selectors=selectors[: self.max_alternatives + 1],
            element_confidence=round(min(max(element_confidence, 0.0), 1.0), 3),
        )

    async def synthesize(self, event: BrowserEvent, context: PageContext) -> SynthesizedStep | None:
        """Produce zero or one step for an event; raises SynthesisError on failure."""
        draft = self.build_draft(event)
        if draft is None:
            return None

        if self.auto_generate:
            classifier_name = getattr(self.classifier, "name", type(self.classifier).__name__)
            try:
                classification = await self.classifier.classify(event, draft, context)
                classifier_suggestions = [str(s) for s in classification.suggestions]
            except SynthesisError:
                raise
            except Exception as e:
                logger.warning(f"Classifier {classifier_name} failed on {event.type} event: {e}")
                raise ClassificationError(f"Classifier {classifier_name} failed: {e}")
        else:
            sentence = describe_action_basic(draft)
            classification = StepClassification(
                action_type=draft.action_type,
                natural_language=sentence,
                confidence=assess_language_quality(sentence),
            )
            classifier_name = "basic"
            classifier_suggestions = []

        if classification.action_type not in ACTION_TYPES:
            raise SynthesisError(f"Unknown action type: {classification.action_type}")

        confidence = round(min(max(0.8 * draft.element_confidence + 0.2 * classification.confidence, 0.0), 1.0), 3)
        needs_review = confidence < self.low_confidence_threshold

        suggestions = classifier_suggestions
        if needs_review and draft.selectors and draft.strategy != "test-id":
            suggestions.append("Add a data-testid attribute to this element for a more stable selector")
        if needs_review:
            suggestions.append("Review the description and selector before verifying this step")

        return SynthesizedStep(
            action_type=classification.action_type,
            natural_language=classification.natural_language,
            element_description=draft.element_description,
            element_selector=draft.primary_selector,
            element_alternatives=[c.selector for c in draft.selectors[1:]],
            value=draft.value,
            page_url=draft.page_url,
            confidence_score=confidence,
            needs_review=needs_review,
            element=event.element.model_dump(exclude_none=True) if event.element is not None else None,
            suggestions=suggestions,
            ai_metadata={
                "element_recognition_confidence": draft.element_confidence,
                "language_generation_confidence": round(classification.confidence, 3),
                "selector_strategy": draft.strategy,
                "classifier": classifier_name,
                "suggested_improvements": suggestions,
            },
        )
