import re
from datetime import datetime
from typing import Annotated, Any, Generic, Literal, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

T = TypeVar("T")

ACTION_TYPES = ("click", "type", "verify", "navigate", "wait", "select", "scroll", "hover")
CHANNEL_PATTERN = re.compile(r"^(recording|validation|conversation|healing|playback):[\w-]+$")


# Browser event schemas (accepted in snake_case or camelCase)
class BrowserPayload(BaseModel):
	model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Coordinates(BrowserPayload):
	x: float = 0
	y: float = 0


class BoundingBox(BrowserPayload):
	x: float = 0
	y: float = 0
	width: float = 0
	height: float = 0


class ElementSnapshot(BrowserPayload):
	tag_name: str = "unknown"
	attributes: dict[str, str] = Field(default_factory=dict)
	text_content: str | None = None
	aria_label: str | None = None
	label_text: str | None = None
	placeholder: str | None = None
	name: str | None = None
	id: str | None = None
	role: str | None = None
	input_type: str | None = None
	classes: list[str] = Field(default_factory=list)
	xpath: str | None = None
	css_path: str | None = None
	bounding_box: BoundingBox | None = None

	def attribute(self, key: str) -> str | None:
		value = self.attributes.get(key)
		return value if value else None

	def identity(self) -> str:
		"""Key used to decide whether two events target the same element."""
		return self.xpath or self.css_path or (f"#{self.id}" if self.id else "") or self.tag_name


class BrowserEvent(BrowserPayload):
	type: str = Field(..., min_length=1)
	coordinates: Coordinates | None = None
	element: ElementSnapshot | None = None
	page_url: str = ""
	timestamp: int = 0  # epoch milliseconds
	value: str | None = None
	resulting_url: str | None = None
	key: str | None = None
	scroll_x: int | None = None
	scroll_y: int | None = None


# Request schemas
class StartRecordingRequest(BaseModel):
	project_id: str | None = None
	target_id: str | None = None
	name: str | None = None
	description: str | None = None
	page_url: str | None = Field(None, description="URL to open when recording starts")
	browser_session_id: str | None = Field(
		None, description="Attach to an existing browser session instead of opening one"
	)
	auto_generate_steps: bool = True
	real_time_preview: bool = True
	created_by: str | None = None


class IngestEventsRequest(BaseModel):
	events: list[BrowserEvent] = Field(..., min_length=1)


class UpdateStepRequest(BaseModel):
	natural_language: str | None = Field(None, min_length=1)
	action_type: Literal["click", "type", "verify", "navigate", "wait", "select", "scroll", "hover"] | None = None
	element_description: str | None = None
	element_selector: str | None = None
	element_alternatives: list[str] | None = None
	value: str | None = None


class VerifyStepRequest(BaseModel):
	verified: bool = True


class BatchVerifyRequest(BaseModel):
	step_ids: list[str] = Field(..., min_length=1)
	verified: bool = True


class SuggestionsRequest(BaseModel):
	partial_text: str = ""


class ApplySuggestionRequest(BaseModel):
	text: str = Field(..., min_length=1)


class StartPlaybackRequest(BaseModel):
	recording_session_id: str | None = None
	browser_session_id: str | None = None
	speed: float = Field(default=1.0, ge=0.1, le=5.0, description="Multiplier applied to inter-step delay only")
	step_delay_ms: int = Field(default=0, ge=0)
	capture_screenshots: bool = True
	stop_on_error: bool = True
	start_index: int = Field(default=0, ge=0)
	breakpoints: list[int] = Field(default_factory=list)
	verified_only: bool = False


class CodeGenerationOptions(BaseModel):
	language: str = "typescript"
	framework: str = "playwright-test"
	include_comments: bool = True
	include_screenshots: bool = False
	test_name: str | None = None
	base_url: str | None = None
	verified_only: bool = False


class GenerateCodeRequest(BaseModel):
	recording_session_id: str | None = None
	options: CodeGenerationOptions = Field(default_factory=CodeGenerationOptions)


class CreateBrowserSessionRequest(BaseModel):
	start_url: str | None = None
	headless: bool | None = None


# Response schemas
class ApiResponse(BaseModel, Generic[T]):
	data: T
	message: str


class ErrorResponse(BaseModel):
	error: str
	message: str
	details: dict[str, Any] | None = None


class TestStepResponse(BaseModel):
	__test__ = False

	id: str
	recording_id: str
	order_index: int
	natural_language: str
	action_type: str
	element_description: str | None = None
	element_selector: str | None = None
	element_alternatives: list[str] = Field(default_factory=list)
	value: str | None = None
	page_url: str | None = None
	confidence_score: float
	quality_score: float | None = None
	user_verified: bool
	needs_review: bool
	screenshot_before: str | None = None
	screenshot_after: str | None = None
	ai_metadata: dict[str, Any] | None = None
	created_at: datetime
	updated_at: datetime

	class Config:
		from_attributes = True


class RecordingSessionResponse(BaseModel):
	id: str
	session_id: str | None = None
	project_id: str
	target_id: str | None = None
	name: str
	description: str | None = None
	status: str
	auto_generate_steps: bool
	real_time_preview: bool
	start_url: str | None = None
	current_url: str | None = None
	steps_count: int
	duration_seconds: float
	error_message: str | None = None
	created_by: str | None = None
	created_at: datetime
	updated_at: datetime
	completed_at: datetime | None = None

	class Config:
		from_attributes = True


class RecordingDetailResponse(RecordingSessionResponse):
	steps: list[TestStepResponse] = Field(default_factory=list)


class RecordingLogResponse(BaseModel):
	id: str
	level: str
	message: str
	source: str | None = None
	created_at: datetime

	class Config:
		from_attributes = True


class PlaybackStepResultResponse(BaseModel):
	id: str
	step_id: str | None = None
	order_index: int
	action_type: str
	status: str
	selector_used: str | None = None
	healed: bool
	heal_attempts: list[dict[str, Any]] | None = None
	duration_ms: int
	screenshot_path: str | None = None
	error_message: str | None = None

	class Config:
		from_attributes = True


class PlaybackSessionResponse(BaseModel):
	id: str
	recording_id: str
	browser_session_id: str | None = None
	status: str
	current_step_index: int
	total_steps: int
	speed: float
	step_delay_ms: int
	capture_screenshots: bool
	stop_on_error: bool
	passed_steps: int
	failed_steps: int
	skipped_steps: int
	error_message: str | None = None
	created_at: datetime
	started_at: datetime | None = None
	completed_at: datetime | None = None
	results: list[PlaybackStepResultResponse] = Field(default_factory=list)

	class Config:
		from_attributes = True


class GeneratedTestResponse(BaseModel):
	__test__ = False

	id: str
	recording_id: str
	language: str
	test_framework: str = Field(validation_alias="framework")
	test_name: str
	test_code: str
	imports: list[str] = Field(default_factory=list)
	include_comments: bool
	include_screenshots: bool
	created_at: datetime

	class Config:
		from_attributes = True


class QualityIssue(BaseModel):
	type: Literal["error", "warning"]
	message: str
	suggestion: str


class ExecutionPreview(BaseModel):
	can_execute: bool
	estimated_success_rate: float
	potential_issues: list[str] = Field(default_factory=list)
	suggested_improvements: list[str] = Field(default_factory=list)


class QualityReport(BaseModel):
	step_id: str
	valid: bool
	quality_score: float
	confidence_score: float
	issues: list[QualityIssue] = Field(default_factory=list)
	suggested_improvements: list[str] = Field(default_factory=list)
	execution_preview: ExecutionPreview


class StepSuggestion(BaseModel):
	text: str
	reasoning: str
	score: float


class BrowserSessionResponse(BaseModel):
	id: str
	status: str
	owner: str | None = None
	current_url: str | None = None
	created_at: datetime


# Channel payloads
class FeedbackData(BaseModel):
	step: dict[str, Any] | None = None
	element: dict[str, Any] | None = None
	error: str | None = None
	confidence: float | None = None
	suggestions: list[str] = Field(default_factory=list)
	screenshot_url: str | None = None
	timestamp: str


class RecordingFeedbackEvent(BaseModel):
	type: Literal[
		"step_captured",
		"recording_started",
		"recording_paused",
		"recording_resumed",
		"recording_stopped",
		"recording_cancelled",
		"error_occurred",
	]
	recording_id: str
	data: FeedbackData


class TestValidationEvent(BaseModel):
	__test__ = False

	type: Literal["step_edited", "step_verified", "step_deleted", "quality_analysis", "suggestions"]
	recording_id: str
	step_id: str | None = None
	data: dict[str, Any] = Field(default_factory=dict)


class RealTimeInsight(BaseModel):
	type: Literal["warning", "suggestion", "tip"]
	title: str
	message: str
	context: dict[str, Any] = Field(default_factory=dict)
	actionable: bool = False


class PlaybackEvent(BaseModel):
	type: Literal[
		"playback_started",
		"step_started",
		"step_completed",
		"step_failed",
		"step_skipped",
		"selector_healed",
		"playback_paused",
		"playback_resumed",
		"playback_stopped",
		"playback_completed",
		"playback_failed",
	]
	playback_id: str
	data: dict[str, Any] = Field(default_factory=dict)


# WebSocket messages
class WSMessage(BaseModel):
	type: str


def _check_channel(channel: str) -> str:
	if not CHANNEL_PATTERN.match(channel):
		raise ValueError(f"Unknown channel: {channel}")
	return channel


class WSSubscribe(WSMessage):
	type: Literal["subscribe"] = "subscribe"
	channel: str

	validate_channel = field_validator("channel")(_check_channel)


class WSUnsubscribe(WSMessage):
	type: Literal["unsubscribe"] = "unsubscribe"
	channel: str

	validate_channel = field_validator("channel")(_check_channel)


class WSPing(WSMessage):
	type: Literal["ping"] = "ping"


class WSBrowserEvent(WSMessage):
	type: Literal["browser_event"] = "browser_event"
	recording_id: str
	event: BrowserEvent


InboundMessage = Annotated[
	Union[WSSubscribe, WSUnsubscribe, WSPing, WSBrowserEvent],
	Field(discriminator="type"),
]
inbound_message_adapter = TypeAdapter(InboundMessage)


class WSChannelMessage(WSMessage):
	type: Literal["recording_feedback", "test_validation", "realtime_insight", "playback_event"]
	channel: str
	data: dict[str, Any]


class WSSubscribed(WSMessage):
	type: Literal["subscribed"] = "subscribed"
	channel: str


class WSUnsubscribed(WSMessage):
	type: Literal["unsubscribed"] = "unsubscribed"
	channel: str


class WSHeartbeat(WSMessage):
	type: Literal["heartbeat"] = "heartbeat"
	timestamp: str


class WSPong(WSMessage):
	type: Literal["pong"] = "pong"


class WSError(WSMessage):
	type: Literal["error"] = "error"
	error: str
	message: str


OutboundMessage = Annotated[
	Union[WSChannelMessage, WSSubscribed, WSUnsubscribed, WSHeartbeat, WSPong, WSError],
	Field(discriminator="type"),
]
outbound_message_adapter = TypeAdapter(OutboundMessage)
