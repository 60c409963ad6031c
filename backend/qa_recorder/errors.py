"""Error taxonomy shared by the services, the REST layer and the channel.

Every error carries a stable ``code`` that is rendered to clients as
``{"error": code, "message": ...}``.
"""

from typing import Any


class RecorderError(Exception):
	"""Base class for errors surfaced to API callers."""

	code = "INTERNAL_ERROR"
	status_code = 500

	def __init__(self, message: str, details: dict[str, Any] | None = None):
		super().__init__(message)
		self.message = message
		self.details = details or {}

	def to_dict(self) -> dict[str, Any]:
		payload: dict[str, Any] = {"error": self.code, "message": self.message}
		if self.details:
			payload["details"] = self.details
		return payload


class InvalidInputError(RecorderError):
	"""Missing or malformed required input."""

	code = "VALIDATION_ERROR"
	status_code = 400


class SessionBusyError(RecorderError):
	"""A browser session is already owned by another recording or playback."""

	code = "SESSION_BUSY"
	status_code = 409


class SessionNotFoundError(RecorderError):
	code = "SESSION_NOT_FOUND"
	status_code = 404


class InvalidStateError(RecorderError):
	"""A transition that the session's current status does not allow."""

	code = "INVALID_STATE"
	status_code = 409


class SynthesisError(RecorderError):
	"""A browser event could not be turned into a step."""

	code = "SYNTHESIS_ERROR"
	status_code = 422


class ClassificationError(SynthesisError):
	"""The step classifier failed for one event."""


class ElementNotFoundError(RecorderError):
	code = "ELEMENT_NOT_FOUND"
	status_code = 404

	def __init__(self, selector: str, message: str | None = None):
		super().__init__(message or f"Element not found: {selector}", {"selector": selector})
		self.selector = selector


class UnsupportedActionError(RecorderError):
	"""A step cannot be emitted for the requested framework."""

	code = "UNSUPPORTED_ACTION"
	status_code = 422

	def __init__(self, order_index: int, action_type: str, framework: str, reason: str | None = None):
		reason = reason or f"action '{action_type}' is not supported by {framework}"
		super().__init__(
			f"Step {order_index}: {reason}",
			{"order_index": order_index, "action_type": action_type, "framework": framework},
		)
		self.order_index = order_index
		self.action_type = action_type
		self.framework = framework


class TransportError(RecorderError):
	"""Channel disconnect, heartbeat loss or reconnect failure."""

	code = "TRANSPORT_ERROR"
	status_code = 503
