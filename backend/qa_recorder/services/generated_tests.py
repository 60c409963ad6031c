"""
Generated test artifacts - Persists code generator output per recording.

Artifacts are keyed by recording id, a hash of the generation options and a
digest of the steps they were compiled from, so a repeated request returns
the stored row and any step edit produces a new one.
"""

import hashlib
import json
import logging
from typing import Callable

from sqlalchemy.orm import Session

from qa_recorder.errors import InvalidInputError, SessionNotFoundError
from qa_recorder.models import GeneratedTest, RecordingSession, TestStep
from qa_recorder.schemas import CodeGenerationOptions, GeneratedTestResponse
from qa_recorder.services.code_generator import generate_test_code, ordered_steps

logger = logging.getLogger(__name__)

_DIGEST_FIELDS = (
    "id",
    "order_index",
    "action_type",
    "natural_language",
    "element_selector",
    "element_alternatives",
    "value",
    "page_url",
    "screenshot_after",
    "user_verified",
)


def options_hash(options: CodeGenerationOptions) -> str:
    payload = json.dumps(options.model_dump(), sort_keys=True)
    return hashlib.sha256(payload.encode()).hexdigest()


def steps_digest(steps: list[TestStep]) -> str:
    payload = json.dumps(
        [{name: getattr(step, name) for name in _DIGEST_FIELDS} for step in steps],
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode()).hexdigest()


class GeneratedTestService:
    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def generate(self, recording_id: str | None, options: CodeGenerationOptions) -> GeneratedTestResponse:
        if not recording_id:
            raise InvalidInputError("recording_session_id is required")

        db = self.session_factory()
        try:
            recording = db.get(RecordingSession, recording_id)
            if recording is None:
                raise SessionNotFoundError(f"Recording not found: {recording_id}")

            steps = ordered_steps(
                db.query(TestStep).filter(TestStep.recording_id == recording_id).all(),
                options.verified_only,
            )
            if not steps:
                raise InvalidInputError(
                    "Recording has no steps to generate code from",
                    {"recording_id": recording_id, "verified_only": options.verified_only},
                )

            key_options = options_hash(options)
            key_steps = steps_digest(steps)
            cached = (
                db.query(GeneratedTest)
                .filter(
                    GeneratedTest.recording_id == recording_id,
                    GeneratedTest.options_hash == key_options,
                    GeneratedTest.steps_digest == key_steps,
                )
                .first()
            )
            if cached is not None:
                logger.debug(f"Reusing generated test {cached.id} for recording {recording_id}")
                return GeneratedTestResponse.model_validate(cached)

            generated = generate_test_code(steps, options, default_name=recording.name)
            artifact = GeneratedTest(
                recording_id=recording_id,
                options_hash=key_options,
                steps_digest=key_steps,
                language=generated.language,
                framework=generated.framework,
                test_name=generated.test_name,
                test_code=generated.test_code,
                imports=generated.imports,
                include_comments=options.include_comments,
                include_screenshots=options.include_screenshots,
            )
            db.add(artifact)
            db.commit()
            db.refresh(artifact)
            logger.info(
                f"Generated {generated.language}/{generated.framework} test for recording {recording_id} "
                f"({generated.step_count} steps)"
            )
            return GeneratedTestResponse.model_validate(artifact)
        finally:
            db.close()

    def list_for_recording(self, recording_id: str) -> list[GeneratedTestResponse]:
        db = self.session_factory()
        try:
            if db.get(RecordingSession, recording_id) is None:
                raise SessionNotFoundError(f"Recording not found: {recording_id}")
            artifacts = (
                db.query(GeneratedTest)
                .filter(GeneratedTest.recording_id == recording_id)
                .order_by(GeneratedTest.created_at.desc())
                .all()
            )
            return [GeneratedTestResponse.model_validate(artifact) for artifact in artifacts]
        finally:
            db.close()

    def get(self, test_id: str) -> GeneratedTestResponse:
        db = self.session_factory()
        try:
            artifact = db.get(GeneratedTest, test_id)
            if artifact is None:
                raise SessionNotFoundError(f"Generated test not found: {test_id}")
            return GeneratedTestResponse.model_validate(artifact)
        finally:
            db.close()
