from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from qa_recorder.database import Base


def generate_uuid() -> str:
	return str(uuid4())


class RecordingSession(Base):
	"""A bounded period during which browser interactions become test steps."""

	__tablename__ = "recording_sessions"

	id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
	session_id: Mapped[str | None] = mapped_column(String(36), nullable=True)  # Live browser session
	project_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
	target_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
	name: Mapped[str] = mapped_column(String(255), nullable=False)
	description: Mapped[str | None] = mapped_column(Text, nullable=True)
	status: Mapped[str] = mapped_column(
		String(20), nullable=False, default="pending"
	)  # pending | recording | paused | completed | failed | cancelled
	auto_generate_steps: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
	real_time_preview: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
	start_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
	current_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
	steps_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
	duration_seconds: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
	error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
	created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
	created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
	updated_at: Mapped[datetime] = mapped_column(
		DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
	)
	completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

	# Relationships
	steps: Mapped[list["TestStep"]] = relationship(
		"TestStep",
		back_populates="recording",
		order_by="TestStep.order_index",
		cascade="all, delete-orphan",
	)
	playbacks: Mapped[list["PlaybackSession"]] = relationship(
		"PlaybackSession", back_populates="recording", cascade="all, delete-orphan"
	)
	generated_tests: Mapped[list["GeneratedTest"]] = relationship(
		"GeneratedTest", back_populates="recording", cascade="all, delete-orphan"
	)
	logs: Mapped[list["RecordingLog"]] = relationship(
		"RecordingLog", back_populates="recording", cascade="all, delete-orphan"
	)


class TestStep(Base):
	"""A human-readable, verifiable step synthesized from a browser event."""

	__test__ = False
	__tablename__ = "test_steps"

	id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
	recording_id: Mapped[str] = mapped_column(
		String(36), ForeignKey("recording_sessions.id"), nullable=False, index=True
	)
	order_index: Mapped[int] = mapped_column(Integer, nullable=False)
	natural_language: Mapped[str] = mapped_column(Text, nullable=False)
	action_type: Mapped[str] = mapped_column(
		String(20), nullable=False
	)  # click | type | verify | navigate | wait | select | scroll | hover
	element_description: Mapped[str | None] = mapped_column(String(512), nullable=True)
	element_selector: Mapped[str | None] = mapped_column(String(1024), nullable=True)
	element_alternatives: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
	value: Mapped[str | None] = mapped_column(Text, nullable=True)
	page_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
	confidence_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
	quality_score: Mapped[float | None] = mapped_column(Float, nullable=True)
	user_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
	needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
	screenshot_before: Mapped[str | None] = mapped_column(String(512), nullable=True)
	screenshot_after: Mapped[str | None] = mapped_column(String(512), nullable=True)
	ai_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
	created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
	updated_at: Mapped[datetime] = mapped_column(
		DateTime, default=datetime.utcnow, onupdate=datetime.utcnow
	)

	# Relationships
	recording: Mapped["RecordingSession"] = relationship("RecordingSession", back_populates="steps")


class PlaybackSession(Base):
	"""One replay of a recording's steps against a browser session."""

	__tablename__ = "playback_sessions"

	id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
	recording_id: Mapped[str] = mapped_column(
		String(36), ForeignKey("recording_sessions.id"), nullable=False, index=True
	)
	browser_session_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
	status: Mapped[str] = mapped_column(
		String(20), nullable=False, default="idle"
	)  # idle | running | paused | completed | failed | cancelled
	current_step_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
	total_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
	speed: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
	step_delay_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
	capture_screenshots: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
	stop_on_error: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
	passed_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
	failed_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
	skipped_steps: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
	error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
	created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
	started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
	completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

	# Relationships
	recording: Mapped["RecordingSession"] = relationship("RecordingSession", back_populates="playbacks")
	results: Mapped[list["PlaybackStepResult"]] = relationship(
		"PlaybackStepResult",
		back_populates="playback",
		order_by="PlaybackStepResult.order_index",
		cascade="all, delete-orphan",
	)


class PlaybackStepResult(Base):
	"""Outcome of replaying a single step."""

	__tablename__ = "playback_step_results"

	id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
	playback_id: Mapped[str] = mapped_column(
		String(36), ForeignKey("playback_sessions.id"), nullable=False, index=True
	)
	step_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
	order_index: Mapped[int] = mapped_column(Integer, nullable=False)
	action_type: Mapped[str] = mapped_column(String(20), nullable=False)
	status: Mapped[str] = mapped_column(String(20), nullable=False)  # passed | failed | skipped
	selector_used: Mapped[str | None] = mapped_column(String(1024), nullable=True)
	healed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
	heal_attempts: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
	duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
	screenshot_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
	error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
	created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

	# Relationships
	playback: Mapped["PlaybackSession"] = relationship("PlaybackSession", back_populates="results")


class GeneratedTest(Base):
	"""Test source compiled from a recording's steps, cached per options."""

	__test__ = False
	__tablename__ = "generated_tests"
	__table_args__ = (
		UniqueConstraint("recording_id", "options_hash", "steps_digest", name="uq_generated_tests_cache"),
	)

	id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
	recording_id: Mapped[str] = mapped_column(
		String(36), ForeignKey("recording_sessions.id"), nullable=False, index=True
	)
	options_hash: Mapped[str] = mapped_column(String(64), nullable=False)
	steps_digest: Mapped[str] = mapped_column(String(64), nullable=False)
	language: Mapped[str] = mapped_column(String(20), nullable=False)  # typescript | javascript | python
	framework: Mapped[str] = mapped_column(
		String(30), nullable=False
	)  # playwright-test | playwright | cypress | pytest
	test_name: Mapped[str] = mapped_column(String(255), nullable=False)
	test_code: Mapped[str] = mapped_column(Text, nullable=False)
	imports: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
	include_comments: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
	include_screenshots: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
	created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

	# Relationships
	recording: Mapped["RecordingSession"] = relationship("RecordingSession", back_populates="generated_tests")


class RecordingLog(Base):
	"""Log lines captured while a recording is active."""

	__tablename__ = "recording_logs"

	id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
	recording_id: Mapped[str] = mapped_column(
		String(36), ForeignKey("recording_sessions.id"), nullable=False, index=True
	)
	level: Mapped[str] = mapped_column(String(10), nullable=False)  # DEBUG | INFO | WARNING | ERROR
	message: Mapped[str] = mapped_column(Text, nullable=False)
	source: Mapped[str | None] = mapped_column(String(100), nullable=True)
	created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

	# Relationships
	recording: Mapped["RecordingSession"] = relationship("RecordingSession", back_populates="logs")
