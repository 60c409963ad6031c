"""Tests for event merging, selector building and step synthesis."""

import json
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import make_element, make_event
from qa_recorder.errors import ClassificationError, SynthesisError
from qa_recorder.schemas import BrowserEvent, ElementSnapshot
from qa_recorder.services.classifiers import (
    HttpStepClassifier,
    PageContext,
    RuleBasedClassifier,
    StepClassification,
    StepDraft,
    assess_language_quality,
    describe_action,
    describe_action_basic,
)
from qa_recorder.services.step_synthesizer import (
    EventMerger,
    StepSynthesizer,
    build_selectors,
    describe_element,
    element_kind,
)


def event(payload: dict) -> BrowserEvent:
    return BrowserEvent.model_validate(payload)


def typing(value: str, timestamp: int, element_id: str = "email") -> BrowserEvent:
    return event(make_event(
        "type",
        make_element(tagName="input", id=element_id, inputType="text", xpath=f"//input[@id='{element_id}']"),
        value=value,
        timestamp=timestamp,
    ))


CONTEXT = PageContext(recording_id="rec1", page_url="https://app.example.com/login", step_index=0)


# =============================================================================
# Event merging
# =============================================================================


class TestEventMerger:
    """Tests for collapsing rapid typing and scrolling."""

    def test_typing_within_window_merges_to_final_value(self):
        merger = EventMerger(window_ms=500)

        assert merger.push(typing("j", 1000)) == []
        assert merger.push(typing("jo", 1200)) == []
        assert merger.push(typing("joe", 1600)) == []

        flushed = merger.flush()
        assert len(flushed) == 1
        assert flushed[0].value == "joe"

    def test_typing_after_window_starts_new_event(self):
        merger = EventMerger(window_ms=500)
        merger.push(typing("a", 1000))

        ready = merger.push(typing("ab", 1600))

        assert [e.value for e in ready] == ["a"]
        assert [e.value for e in merger.flush()] == ["ab"]

    def test_typing_into_another_field_flushes(self):
        merger = EventMerger(window_ms=500)
        merger.push(typing("joe", 1000, element_id="email"))

        ready = merger.push(typing("x", 1100, element_id="password"))

        assert [e.value for e in ready] == ["joe"]
        assert merger.has_pending

    def test_click_flushes_pending_typing_first(self):
        merger = EventMerger(window_ms=500)
        merger.push(typing("joe", 1000))

        ready = merger.push(event(make_event("click", make_element(id="submit"))))

        assert [e.type for e in ready] == ["type", "click"]
        assert not merger.has_pending

    def test_keypress_commits_typing_and_is_dropped(self):
        merger = EventMerger(window_ms=500)
        merger.push(typing("joe", 1000))

        ready = merger.push(event(make_event("keypress", key="Enter")))

        assert [e.type for e in ready] == ["type"]
        assert merger.flush() == []

    def test_scroll_merges_on_same_page(self):
        merger = EventMerger(window_ms=500)
        merger.push(event(make_event("scroll", scrollX=0, scrollY=100, timestamp=1000)))
        merger.push(event(make_event("scroll", scrollX=0, scrollY=400, timestamp=1300)))

        flushed = merger.flush()

        assert len(flushed) == 1
        assert flushed[0].scroll_y == 400


# =============================================================================
# Element description and selectors
# =============================================================================


class TestSelectors:
    """Tests for selector candidates and element naming."""

    def test_test_id_outranks_id(self):
        element = ElementSnapshot.model_validate(make_element(id="save", attributes={"data-testid": "save-btn"}))

        selectors = build_selectors(element)

        assert selectors[0].selector == '[data-testid="save-btn"]'
        assert selectors[0].strategy == "test-id"
        assert selectors[1].selector == "#save"

    def test_generated_id_gets_lower_confidence(self):
        stable = build_selectors(ElementSnapshot(id="submit-button"))[0]
        generated = build_selectors(ElementSnapshot(id="field-839201"))[0]

        assert stable.confidence == 0.9
        assert generated.confidence == 0.65

    def test_id_with_special_characters_uses_attribute_selector(self):
        selectors = build_selectors(ElementSnapshot(id="user.email"))

        assert selectors[0].selector == '[id="user.email"]'

    def test_text_and_xpath_fallbacks(self):
        element = ElementSnapshot.model_validate(
            make_element(textContent="  Sign   in ", xpath="/html/body/button[2]")
        )

        selectors = [c.selector for c in build_selectors(element)]

        assert selectors == ['button:has-text("Sign in")', "xpath=/html/body/button[2]"]

    def test_id_only_element_gets_a_structural_alternative(self):
        element = ElementSnapshot.model_validate(make_element(id="submit-button"))

        selectors = [c.selector for c in build_selectors(element)]

        assert selectors == ["#submit-button", 'button[id="submit-button"]']

    def test_single_attribute_selector_is_qualified_with_tag(self):
        element = ElementSnapshot.model_validate(make_element(attributes={"data-testid": "save-btn"}))

        selectors = [c.selector for c in build_selectors(element)]

        assert selectors == ['[data-testid="save-btn"]', 'button[data-testid="save-btn"]']

    def test_describe_element_prefers_visible_text(self):
        element = ElementSnapshot.model_validate(make_element(textContent="Log in", ariaLabel="Submit form"))
        assert describe_element(element) == "Log in button"

    def test_describe_field_ignores_text_content(self):
        element = ElementSnapshot.model_validate(
            make_element(tagName="input", inputType="email", textContent="joe@example.com", labelText="Email")
        )
        assert describe_element(element) == "Email field"

    @pytest.mark.parametrize(
        "overrides,kind",
        [
            ({"tagName": "a"}, "link"),
            ({"tagName": "select"}, "dropdown"),
            ({"tagName": "input", "inputType": "checkbox"}, "checkbox"),
            ({"tagName": "div", "role": "tab"}, "tab"),
            ({"tagName": "span"}, "element"),
        ],
    )
    def test_element_kind(self, overrides, kind):
        assert element_kind(ElementSnapshot.model_validate(make_element(**overrides))) == kind


# =============================================================================
# Sentences
# =============================================================================


class TestDescriptions:
    """Tests for rule-based step sentences."""

    def test_password_value_is_not_spelled_out(self):
        draft = StepDraft(action_type="type", page_url="", element_description="Password field",
                          input_type="password", value="hunter2")

        sentence = describe_action(draft)

        assert sentence == "Enter the password in the Password field"
        assert "hunter2" not in sentence

    def test_basic_description_masks_password(self):
        draft = StepDraft(action_type="type", page_url="", element_description="Password field",
                          input_type="password", value="hunter2")

        sentence = describe_action_basic(draft)

        assert sentence == "User typed a password on 'Password field'"
        assert "hunter2" not in sentence

    def test_select_sentence_quotes_value(self):
        draft = StepDraft(action_type="select", page_url="", element_description="Country dropdown", value="Norway")
        assert describe_action(draft) == 'Select "Norway" from the Country dropdown'

    def test_language_quality_rewards_verb_and_noun(self):
        assert assess_language_quality("Click the Submit button") == 1.0
        assert assess_language_quality("abc") == 0.2
        assert assess_language_quality("The thing over there") == 0.5


# =============================================================================
# Synthesis
# =============================================================================


class TestStepSynthesizer:
    """Tests for turning events into steps."""

    @pytest.mark.asyncio
    async def test_click_on_button_with_id(self):
        synthesizer = StepSynthesizer(classifier=RuleBasedClassifier())
        click = event(make_event(
            "click",
            make_element(id="submit-button", textContent="Submit", xpath="/html/body/form/button[1]"),
        ))

        step = await synthesizer.synthesize(click, CONTEXT)

        assert step.action_type == "click"
        assert step.element_selector == "#submit-button"
        assert step.element_alternatives == ['button:has-text("Submit")', "xpath=/html/body/form/button[1]"]
        assert step.natural_language == "Click the Submit button"
        assert step.ai_metadata["element_recognition_confidence"] == 0.925
        assert step.confidence_score == 0.94
        assert step.needs_review is False

    @pytest.mark.asyncio
    async def test_click_that_changes_url_becomes_navigation(self):
        synthesizer = StepSynthesizer(classifier=RuleBasedClassifier())
        click = event(make_event(
            "click",
            make_element(tagName="a", textContent="Pricing"),
            resultingUrl="https://app.example.com/pricing",
        ))

        step = await synthesizer.synthesize(click, CONTEXT)

        assert step.action_type == "navigate"
        assert step.value == "https://app.example.com/pricing"

    @pytest.mark.asyncio
    async def test_repeated_navigation_to_same_url_is_skipped(self):
        synthesizer = StepSynthesizer(classifier=RuleBasedClassifier())
        navigate = event(make_event("navigate", resultingUrl="https://app.example.com/home"))

        first = await synthesizer.synthesize(navigate, CONTEXT)
        second = await synthesizer.synthesize(navigate, CONTEXT)

        assert first is not None
        assert second is None

    @pytest.mark.asyncio
    async def test_low_confidence_step_needs_review(self):
        synthesizer = StepSynthesizer(classifier=RuleBasedClassifier(), low_confidence_threshold=0.7)
        hover = event(make_event("hover", make_element(tagName="div", xpath="/html/body/div[3]"), pageUrl=""))

        step = await synthesizer.synthesize(hover, CONTEXT)

        assert step.ai_metadata["element_recognition_confidence"] == 0.5
        assert step.confidence_score == 0.6
        assert step.needs_review is True
        assert any("data-testid" in s for s in step.suggestions)

    @pytest.mark.asyncio
    async def test_unknown_event_type_raises(self):
        synthesizer = StepSynthesizer(classifier=RuleBasedClassifier())

        with pytest.raises(SynthesisError):
            await synthesizer.synthesize(event(make_event("drag", make_element())), CONTEXT)

    @pytest.mark.asyncio
    async def test_click_without_element_raises(self):
        synthesizer = StepSynthesizer(classifier=RuleBasedClassifier())

        with pytest.raises(SynthesisError):
            await synthesizer.synthesize(event(make_event("click")), CONTEXT)

    @pytest.mark.asyncio
    async def test_basic_descriptions_when_auto_generate_is_off(self):
        classifier = AsyncMock()
        synthesizer = StepSynthesizer(classifier=classifier, auto_generate=False)
        click = event(make_event("click", make_element(id="save", textContent="Save")))

        step = await synthesizer.synthesize(click, CONTEXT)

        classifier.classify.assert_not_called()
        assert step.natural_language == "User clicked on 'Save button'"
        assert step.ai_metadata["classifier"] == "basic"

    @pytest.mark.asyncio
    async def test_custom_classifier_is_used(self):
        classifier = AsyncMock()
        classifier.name = "remote"
        classifier.classify.return_value = StepClassification(
            action_type="click",
            natural_language="Press the Save button",
            confidence=0.9,
        )
        synthesizer = StepSynthesizer(classifier=classifier)

        step = await synthesizer.synthesize(event(make_event("click", make_element(id="save"))), CONTEXT)

        assert step.natural_language == "Press the Save button"
        assert step.ai_metadata["classifier"] == "remote"

    @pytest.mark.asyncio
    async def test_classifier_failure_propagates_as_synthesis_error(self):
        classifier = AsyncMock()
        classifier.classify.side_effect = ClassificationError("model unavailable")
        synthesizer = StepSynthesizer(classifier=classifier)

        with pytest.raises(SynthesisError):
            await synthesizer.synthesize(event(make_event("click", make_element(id="save"))), CONTEXT)

    @pytest.mark.asyncio
    async def test_unexpected_classifier_error_becomes_classification_error(self):
        classifier = AsyncMock()
        classifier.name = "custom"
        classifier.classify.side_effect = RuntimeError("tokenizer crashed")
        synthesizer = StepSynthesizer(classifier=classifier)

        with pytest.raises(ClassificationError, match="tokenizer crashed"):
            await synthesizer.synthesize(event(make_event("click", make_element(id="save"))), CONTEXT)

    @pytest.mark.asyncio
    async def test_id_only_click_has_an_alternative(self):
        synthesizer = StepSynthesizer(classifier=RuleBasedClassifier())

        step = await synthesizer.synthesize(event(make_event("click", make_element(id="submit-button"))), CONTEXT)

        assert step.element_selector == "#submit-button"
        assert 1 <= len(step.element_alternatives) <= 3
        assert step.element_alternatives == ['button[id="submit-button"]']


# =============================================================================
# Remote classifier
# =============================================================================


def remote_classifier(handler) -> HttpStepClassifier:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpStepClassifier("http://classifier.test/classify", client=client)


class TestHttpStepClassifier:
    """Tests for the classifier backed by a remote service."""

    DRAFT = StepDraft(action_type="click", page_url=CONTEXT.page_url, element_description="Save button")

    @pytest.mark.asyncio
    async def test_response_becomes_classification(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(json.loads(request.content))
            return httpx.Response(200, json={
                "action_type": "click",
                "natural_language": "  Press Save  ",
                "confidence": 1.4,
                "suggestions": ["Name the form"],
            })

        classification = await remote_classifier(handler).classify(
            event(make_event("click", make_element(id="save"))), self.DRAFT, CONTEXT
        )

        assert classification.natural_language == "Press Save"
        assert classification.confidence == 1.0
        assert classification.suggestions == ["Name the form"]
        assert requests[0]["draft"]["element_description"] == "Save button"
        assert requests[0]["context"]["recording_id"] == "rec1"

    @pytest.mark.asyncio
    async def test_server_error_raises_classification_error(self):
        classifier = remote_classifier(lambda request: httpx.Response(503))

        with pytest.raises(ClassificationError, match="request failed"):
            await classifier.classify(event(make_event("click", make_element(id="save"))), self.DRAFT, CONTEXT)

    @pytest.mark.asyncio
    async def test_unknown_action_type_is_rejected(self):
        classifier = remote_classifier(
            lambda request: httpx.Response(200, json={"action_type": "drag", "natural_language": "Drag it"})
        )

        with pytest.raises(ClassificationError, match="unknown action type"):
            await classifier.classify(event(make_event("click", make_element(id="save"))), self.DRAFT, CONTEXT)

    @pytest.mark.asyncio
    async def test_missing_sentence_is_rejected(self):
        classifier = remote_classifier(lambda request: httpx.Response(200, json={"action_type": "click"}))

        with pytest.raises(ClassificationError, match="unusable response"):
            await classifier.classify(event(make_event("click", make_element(id="save"))), self.DRAFT, CONTEXT)

    @pytest.mark.asyncio
    async def test_malformed_suggestions_are_rejected(self):
        classifier = remote_classifier(
            lambda request: httpx.Response(200, json={"natural_language": "Press Save", "suggestions": 5})
        )

        with pytest.raises(ClassificationError, match="unusable response"):
            await classifier.classify(event(make_event("click", make_element(id="save"))), self.DRAFT, CONTEXT)
