"""
Verification & Editing Loop - Human corrections to synthesized steps.

- edit: updates content fields and recomputes quality_score; confidence_score is never touched
- verify: the only way user_verified changes
- delete: renumbers later steps so order_index stays contiguous
- suggestions: ranked rewrites with a reasoning string each; applying one does not verify
"""

import logging
import re
from typing import Any, AsyncContextManager, Callable
from urllib.parse import urlparse

from sqlalchemy.orm import Session

from qa_recorder.errors import InvalidInputError, SessionNotFoundError
from qa_recorder.models import RecordingSession, TestStep
from qa_recorder.schemas import (
    ExecutionPreview,
    QualityIssue,
    QualityReport,
    StepSuggestion,
    TestStepResponse,
    TestValidationEvent,
    UpdateStepRequest,
)
from qa_recorder.services.channel_hub import ChannelHub, validation_channel
from qa_recorder.services.classifiers import SelectorCandidate, StepDraft, assess_language_quality, describe_action

logger = logging.getLogger(__name__)

ELEMENT_ACTIONS = ("click", "type", "select", "hover", "verify")
VALUE_ACTIONS = ("type", "select")
DESCRIPTION_MIN_LENGTH = 5
DESCRIPTION_MAX_LENGTH = 200
LOW_CONFIDENCE = 0.5
EXECUTABLE_CONFIDENCE = 0.6
MAX_SUGGESTIONS = 5

ACTION_KEYWORDS = {
    "click": re.compile(r"\b(click|press|tap|select|choose|open)", re.I),
    "type": re.compile(r"\b(type|enter|fill|input|write)", re.I),
    "select": re.compile(r"\b(select|choose|pick)", re.I),
    "navigate": re.compile(r"\b(navigate|go|open|visit|load)", re.I),
    "scroll": re.compile(r"\bscroll", re.I),
    "hover": re.compile(r"\b(hover|mouse)", re.I),
    "wait": re.compile(r"\b(wait|pause)", re.I),
    "verify": re.compile(r"\b(verify|check|assert|confirm|ensure|expect)", re.I),
}


def evaluate_step(step: TestStep) -> tuple[float, list[QualityIssue]]:
    """Quality score and issues for a step's current content."""
    issues: list[QualityIssue] = []
    text = (step.natural_language or "").strip()

    if len(text) < DESCRIPTION_MIN_LENGTH:
        issues.append(QualityIssue(
            type="warning",
            message="Description is too short or unclear",
            suggestion="Provide a more descriptive explanation of what this step does",
        ))
    elif len(text) > DESCRIPTION_MAX_LENGTH:
        issues.append(QualityIssue(
            type="warning",
            message="Description is too long",
            suggestion="Keep the description to a single sentence",
        ))

    keyword = ACTION_KEYWORDS.get(step.action_type)
    if keyword is not None and text and not keyword.search(text):
        issues.append(QualityIssue(
            type="warning",
            message=f"Description does not mention the {step.action_type} action",
            suggestion=f"Start the description with a verb such as '{step.action_type.capitalize()}'",
        ))

    if step.action_type in ELEMENT_ACTIONS and (not step.element_selector or step.element_selector == "unknown"):
        issues.append(QualityIssue(
            type="error",
            message="Invalid or missing element selector",
            suggestion="Re-record this step or manually specify the element",
        ))

    if step.action_type in VALUE_ACTIONS and not step.value:
        issues.append(QualityIssue(
            type="error",
            message="Missing required value for input action",
            suggestion="Specify what text to enter or option to select",
        ))

    if step.action_type == "navigate" and not step.value:
        issues.append(QualityIssue(
            type="error",
            message="Navigation step has no URL",
            suggestion="Specify the URL to open",
        ))

    if step.confidence_score < LOW_CONFIDENCE:
        issues.append(QualityIssue(
            type="warning",
            message="Low confidence in element identification",
            suggestion="Consider providing a more specific element description",
        ))

    errors = sum(1 for issue in issues if issue.type == "error")
    warnings = len(issues) - errors
    structure = max(1.0 - 0.35 * errors - 0.15 * warnings, 0.0)
    score = 0.5 * assess_language_quality(text) + 0.5 * structure
    return round(min(max(score, 0.0), 1.0), 3), issues


def potential_issues(step: TestStep) -> list[str]:
    found: list[str] = []
    if step.confidence_score < LOW_CONFIDENCE:
        found.append("Low confidence in element identification")
    if step.action_type in ELEMENT_ACTIONS and not step.element_alternatives:
        found.append("No alternative selectors available")
    if step.element_selector and step.element_selector.startswith(("xpath=", "/")):
        found.append("Selector depends on document structure and may break when the page layout changes")
    if step.element_selector and ":nth-of-type" in step.element_selector:
        found.append("Selector depends on element position")
    return found


def _draft_for(step: TestStep) -> StepDraft:
    selectors = [SelectorCandidate(step.element_selector, "recorded", step.confidence_score)] if step.element_selector else []
    return StepDraft(
        action_type=step.action_type,
        page_url=step.page_url or "",
        element_description=step.element_description,
        value=step.value,
        selectors=selectors,
    )


def _normalize_sentence(text: str) -> str:
    cleaned = re.sub(r"\s+", " ", text).strip().rstrip(".")
    return cleaned[:1].upper() + cleaned[1:] if cleaned else cleaned


def build_suggestions(step: TestStep, partial_text: str = "") -> list[StepSuggestion]:
    """Ranked rewrites for a step's description. Deterministic for the same input."""
    draft = _draft_for(step)
    canonical = describe_action(draft)
    candidates: dict[str, str] = {canonical: f"Standard phrasing for a {step.action_type} step"}

    target = step.element_description
    if target and step.action_type in ELEMENT_ACTIONS:
        quoted = re.sub(re.escape(target), f'"{target}"', canonical, count=1)
        candidates.setdefault(quoted, "Quotes the element name so it stands out from the action")

    if step.page_url:
        path = urlparse(step.page_url).path or "/"
        candidates.setdefault(f"{canonical} on the {path} page", "Adds the page the step runs on")

    if step.action_type == "verify" and not step.value:
        candidates.setdefault(f"{canonical} and enabled", "States the expected element state explicitly")
    if step.action_type == "click" and target:
        candidates.setdefault(f"Press the {target}", "Shorter wording for the same action")

    partial = _normalize_sentence(partial_text) if partial_text else ""
    if len(partial) >= DESCRIPTION_MIN_LENGTH:
        candidates.setdefault(partial, "Your text, normalized")

    partial_lower = partial.lower()
    partial_tokens = set(partial_lower.split())
    scored: list[StepSuggestion] = []
    for text, reasoning in candidates.items():
        score = assess_language_quality(text)
        if partial_lower:
            if text.lower().startswith(partial_lower):
                score += 0.3
            overlap = partial_tokens & set(text.lower().split())
            score += 0.2 * (len(overlap) / len(partial_tokens))
        scored.append(StepSuggestion(text=text, reasoning=reasoning, score=round(min(score, 1.5), 3)))

    scored.sort(key=lambda suggestion: (-suggestion.score, suggestion.text))
    return scored[:MAX_SUGGESTIONS]


class VerificationService:
    """Applies human edits to stored steps."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        hub: ChannelHub,
        step_lock: Callable[[str], AsyncContextManager[None]],
    ):
        self.session_factory = session_factory
        self.hub = hub
        self.step_lock = step_lock

    def get_step(self, step_id: str) -> TestStepResponse:
        db = self.session_factory()
        try:
            return TestStepResponse.model_validate(self._require_step(db, step_id))
        finally:
            db.close()

    def list_steps(self, recording_id: str) -> list[TestStepResponse]:
        db = self.session_factory()
        try:
            if db.get(RecordingSession, recording_id) is None:
                raise SessionNotFoundError(f"Recording not found: {recording_id}")
            steps = (
                db.query(TestStep)
                .filter(TestStep.recording_id == recording_id)
                .order_by(TestStep.order_index)
                .all()
            )
            return [TestStepResponse.model_validate(step) for step in steps]
        finally:
            db.close()

    async def edit(self, step_id: str, request: UpdateStepRequest) -> TestStepResponse:
        fields = request.model_dump(exclude_unset=True)
        if not fields:
            raise InvalidInputError("No fields to update")
        for required in ("natural_language", "action_type"):
            if required in fields and fields[required] is None:
                raise InvalidInputError(f"{required} cannot be empty")

        recording_id = self._recording_id_for(step_id)
        async with self.step_lock(recording_id):
            db = self.session_factory()
            try:
                step = self._require_step(db, step_id)
                for key, value in fields.items():
                    if key == "element_alternatives" and value is None:
                        value = []
                    setattr(step, key, value)
                step.quality_score, issues = evaluate_step(step)
                db.commit()
                response = TestStepResponse.model_validate(step)
            finally:
                db.close()

        logger.info(f"Step {step_id} edited: {sorted(fields)}")
        await self._publish(recording_id, "step_edited", step_id, {
            "fields": sorted(fields),
            "quality_score": response.quality_score,
            "issues": [issue.model_dump() for issue in issues],
            "step": response.model_dump(mode="json"),
        })
        return response

    async def verify(self, step_id: str, verified: bool = True) -> TestStepResponse:
        recording_id = self._recording_id_for(step_id)
        async with self.step_lock(recording_id):
            db = self.session_factory()
            try:
                step = self._require_step(db, step_id)
                step.user_verified = verified
                step.needs_review = not verified
                db.commit()
                response = TestStepResponse.model_validate(step)
            finally:
                db.close()

        await self._publish(recording_id, "step_verified", step_id, {
            "verified": verified,
            "step": response.model_dump(mode="json"),
        })
        return response

    async def verify_many(self, step_ids: list[str], verified: bool = True) -> list[TestStepResponse]:
        return [await self.verify(step_id, verified) for step_id in step_ids]

    async def delete(self, step_id: str) -> None:
        recording_id = self._recording_id_for(step_id)
        async with self.step_lock(recording_id):
            db = self.session_factory()
            try:
                step = self._require_step(db, step_id)
                removed_index = step.order_index
                db.delete(step)
                db.flush()

                later = (
                    db.query(TestStep)
                    .filter(TestStep.recording_id == recording_id, TestStep.order_index > removed_index)
                    .order_by(TestStep.order_index)
                    .all()
                )
                for later_step in later:
                    later_step.order_index -= 1

                recording = db.get(RecordingSession, recording_id)
                recording.steps_count = (
                    db.query(TestStep).filter(TestStep.recording_id == recording_id).count()
                )
                db.commit()
            finally:
                db.close()

        logger.info(f"Step {step_id} deleted from recording {recording_id}, {len(later)} steps renumbered")
        await self._publish(recording_id, "step_deleted", step_id, {"order_index": removed_index})

    async def request_suggestions(self, step_id: str, partial_text: str = "") -> list[StepSuggestion]:
        db = self.session_factory()
        try:
            step = self._require_step(db, step_id)
            recording_id = step.recording_id
            suggestions = build_suggestions(step, partial_text)
        finally:
            db.close()

        await self._publish(recording_id, "suggestions", step_id, {
            "partial_text": partial_text,
            "suggestions": [suggestion.model_dump() for suggestion in suggestions],
        })
        return suggestions

    async def apply_suggestion(self, step_id: str, text: str) -> TestStepResponse:
        text = text.strip()
        if not text:
            raise InvalidInputError("Suggestion text is required")
        return await self.edit(step_id, UpdateStepRequest(natural_language=text))

    async def analyze_quality(self, step_id: str) -> QualityReport:
        db = self.session_factory()
        try:
            step = self._require_step(db, step_id)
            recording_id = step.recording_id
            score, issues = evaluate_step(step)
            valid = not any(issue.type == "error" for issue in issues)
            improvements = [issue.suggestion for issue in issues]
            for extra in (step.ai_metadata or {}).get("suggested_improvements", []):
                if extra not in improvements:
                    improvements.append(extra)

            report = QualityReport(
                step_id=step.id,
                valid=valid,
                quality_score=score,
                confidence_score=step.confidence_score,
                issues=issues,
                suggested_improvements=improvements,
                execution_preview=ExecutionPreview(
                    can_execute=valid and step.confidence_score > EXECUTABLE_CONFIDENCE,
                    estimated_success_rate=step.confidence_score,
                    potential_issues=potential_issues(step),
                    suggested_improvements=improvements,
                ),
            )
        finally:
            db.close()

        await self._publish(recording_id, "quality_analysis", step_id, report.model_dump(mode="json"))
        return report

    def _require_step(self, db: Session, step_id: str) -> TestStep:
        step = db.get(TestStep, step_id)
        if step is None:
            raise SessionNotFoundError(f"Step not found: {step_id}")
        return step

    def _recording_id_for(self, step_id: str) -> str:
        db = self.session_factory()
        try:
            return self._require_step(db, step_id).recording_id
        finally:
            db.close()

    async def _publish(self, recording_id: str, event_type: str, step_id: str, data: dict[str, Any]) -> None:
        event = TestValidationEvent(type=event_type, recording_id=recording_id, step_id=step_id, data=data)
        await self.hub.publish(validation_channel(recording_id), "test_validation", event.model_dump(mode="json"))
