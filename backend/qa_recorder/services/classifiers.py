"""
Step classifiers - Turn a synthesized draft into a natural-language step.

The synthesizer owns selectors and element description; a classifier owns the
sentence and its language confidence. Any implementation of StepClassifier can
be swapped in without touching the recording manager.
"""

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Protocol

import httpx

from qa_recorder.config import settings
from qa_recorder.errors import ClassificationError
from qa_recorder.schemas import ACTION_TYPES, BrowserEvent

logger = logging.getLogger(__name__)

_ACTION_VERB = re.compile(r"^(click|type|enter|select|navigate|scroll|hover|wait|verify|check|open|press)\b", re.I)
_ELEMENT_NOUN = re.compile(
    r"\b(button|input|field|link|dropdown|menu|checkbox|radio|option|image|heading|page|element|tab)\b", re.I
)


@dataclass
class SelectorCandidate:
    selector: str
    strategy: str  # test-id | id | aria-label | name | placeholder | text | css-path | xpath
    confidence: float


@dataclass
class StepDraft:
    """Everything about a step except its sentence."""

    action_type: str
    page_url: str
    element_description: str | None = None
    element_kind: str | None = None
    input_type: str | None = None
    value: str | None = None
    selectors: list[SelectorCandidate] = field(default_factory=list)
    element_confidence: float = 0.0

    @property
    def primary_selector(self) -> str | None:
        return self.selectors[0].selector if self.selectors else None

    @property
    def strategy(self) -> str | None:
        return self.selectors[0].strategy if self.selectors else None


@dataclass
class PageContext:
    recording_id: str
    page_url: str
    step_index: int
    previous_action: str | None = None


@dataclass
class StepClassification:
    action_type: str
    natural_language: str
    confidence: float
    suggestions: list[str] = field(default_factory=list)


class StepClassifier(Protocol):
    name: str

    async def classify(
        self, event: BrowserEvent, draft: StepDraft, context: PageContext
    ) -> StepClassification:
        """Return the step's sentence, or raise ClassificationError."""
        ...


def assess_language_quality(text: str | None) -> float:
    """Score a step sentence in [0, 1] from its shape alone."""
    if not text or len(text) < 5:
        return 0.2
    if len(text) > 120:
        return 0.6

    score = 0.5
    if _ACTION_VERB.search(text):
        score += 0.3
    if _ELEMENT_NOUN.search(text):
        score += 0.2
    return min(score, 1.0)


def describe_action(draft: StepDraft) -> str:
    """Plain-English imperative sentence for a draft."""
    target = f"the {draft.element_description}" if draft.element_description else "the element"
    action = draft.action_type
    value = draft.value or ""

    if action == "click":
        return f"Click {target}"
    if action == "type":
        if draft.input_type == "password":
            return f"Enter the password in {target}"
        return f'Type "{value}" into {target}'
    if action == "select":
        return f'Select "{value}" from {target}'
    if action == "hover":
        return f"Hover over {target}"
    if action == "navigate":
        return f"Navigate to {value or draft.page_url}"
    if action == "scroll":
        if draft.primary_selector:
            return f"Scroll to {target}"
        x, _, y = value.partition(",")
        return f"Scroll the page to ({x or 0}, {y or 0})"
    if action == "wait":
        if draft.primary_selector:
            return f"Wait for {target} to appear"
        return f"Wait {value or 0} ms"
    if action == "verify":
        if value:
            return f'Verify {target} contains "{value}"'
        return f"Verify {target} is visible"
    return f"{action.capitalize()} {target}"


def describe_action_basic(draft: StepDraft) -> str:
    """Terse past-tense description used when automatic step generation is off."""
    element_desc = f" on '{draft.element_description}'" if draft.element_description else ""
    value = draft.value or ""
    action = draft.action_type

    if action == "type":
        if draft.input_type == "password":
            return f"User typed a password{element_desc}"
        return f"User typed: {value[:50]}"
    if action == "click":
        return f"User clicked{element_desc}"
    if action == "select":
        return f"User selected '{value}'{element_desc}"
    if action == "navigate":
        return f"User navigated to {value or draft.page_url}"
    if action == "scroll":
        return f"User scrolled to ({value})"
    return f"User action: {action}{element_desc}"


class RuleBasedClassifier:
    """Deterministic classifier: same draft in, same sentence out."""

    name = "rule-based"

    async def classify(
        self, event: BrowserEvent, draft: StepDraft, context: PageContext
    ) -> StepClassification:
        sentence = describe_action(draft)
        suggestions: list[str] = []
        if draft.action_type == "type" and not draft.value:
            suggestions.append("Specify the text to enter")
        if draft.element_description is None and draft.action_type not in ("navigate", "wait", "scroll"):
            suggestions.append("Describe which element this step targets")
        return StepClassification(
            action_type=draft.action_type,
            natural_language=sentence,
            confidence=assess_language_quality(sentence),
            suggestions=suggestions,
        )


class HttpStepClassifier:
    """Delegates classification to a remote model service.

    The service receives ``{event, draft, context}`` and answers
    ``{action_type, natural_language, confidence, suggestions}``.
    """

    name = "remote"

    def __init__(self, url: str, timeout: float | None = None, client: httpx.AsyncClient | None = None):
        self.url = url
        self.timeout = timeout or settings.CLASSIFIER_TIMEOUT_SECONDS
        self._client = client

    async def classify(
        self, event: BrowserEvent, draft: StepDraft, context: PageContext
    ) -> StepClassification:
        payload = {
            "event": event.model_dump(mode="json"),
            "draft": asdict(draft),
            "context": asdict(context),
        }
        try:
            if self._client is not None:
                response = await self._client.post(self.url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload)
            response.raise_for_status()
            body = response.json()
            action_type = body.get("action_type") or draft.action_type
            sentence = str(body["natural_language"]).strip()
            confidence = float(body.get("confidence", assess_language_quality(sentence)))
            suggestions = body.get("suggestions") or []
            if not isinstance(suggestions, list) or not all(isinstance(s, str) for s in suggestions):
                raise TypeError(f"suggestions must be a list of strings, got {suggestions!r}")
        except httpx.HTTPError as e:
            raise ClassificationError(f"Classifier request failed: {e}")
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ClassificationError(f"Classifier returned an unusable response: {e}")

        if action_type not in ACTION_TYPES:
            raise ClassificationError(f"Classifier returned unknown action type: {action_type}")

        return StepClassification(
            action_type=action_type,
            natural_language=sentence,
            confidence=min(max(confidence, 0.0), 1.0),
            suggestions=suggestions,
        )


def create_classifier() -> StepClassifier:
    """Classifier chosen by configuration."""
    if settings.CLASSIFIER_URL:
        logger.info(f"Using remote step classifier at {settings.CLASSIFIER_URL}")
        return HttpStepClassifier(settings.CLASSIFIER_URL)
    return RuleBasedClassifier()
