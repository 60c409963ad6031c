"""
Recordings Router - Recording session control.

Endpoints:
- POST /api/recordings - Start a recording
- GET /api/recordings - List recordings
- GET /api/recordings/{recording_id} - Recording with its steps
- POST /api/recordings/{recording_id}/pause|resume|complete|cancel - Lifecycle
- DELETE /api/recordings/{recording_id} - Delete a recording and its steps
- POST /api/recordings/{recording_id}/events - Ingest browser events
- GET /api/recordings/{recording_id}/steps - Ordered steps
- GET /api/recordings/{recording_id}/logs - Captured log lines
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from qa_recorder.database import get_db
from qa_recorder.deps import ServiceContainer, get_services
from qa_recorder.errors import SessionNotFoundError
from qa_recorder.models import RecordingLog, RecordingSession
from qa_recorder.schemas import (
	ApiResponse,
	IngestEventsRequest,
	RecordingDetailResponse,
	RecordingLogResponse,
	RecordingSessionResponse,
	StartRecordingRequest,
	TestStepResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/recordings", tags=["recordings"])


@router.post("", response_model=ApiResponse[RecordingSessionResponse])
async def start_recording(request: StartRecordingRequest, services: ServiceContainer = Depends(get_services)):
	"""Start recording browser interactions."""
	recording = await services.recordings.start(request)
	return ApiResponse(data=recording, message="Recording started")


@router.get("", response_model=ApiResponse[list[RecordingSessionResponse]])
async def list_recordings(
	project_id: str | None = None,
	status: str | None = None,
	services: ServiceContainer = Depends(get_services),
):
	"""List recordings, newest first."""
	recordings = services.recordings.list_recordings(project_id=project_id, status=status)
	return ApiResponse(data=recordings, message=f"{len(recordings)} recordings")


@router.get("/{recording_id}", response_model=ApiResponse[RecordingDetailResponse])
async def get_recording(recording_id: str, services: ServiceContainer = Depends(get_services)):
	"""Get a recording with its ordered steps."""
	return ApiResponse(data=services.recordings.get(recording_id), message="Recording retrieved")


@router.post("/{recording_id}/pause", response_model=ApiResponse[RecordingSessionResponse])
async def pause_recording(recording_id: str, services: ServiceContainer = Depends(get_services)):
	recording = await services.recordings.pause(recording_id)
	return ApiResponse(data=recording, message="Recording paused")


@router.post("/{recording_id}/resume", response_model=ApiResponse[RecordingSessionResponse])
async def resume_recording(recording_id: str, services: ServiceContainer = Depends(get_services)):
	recording = await services.recordings.resume(recording_id)
	return ApiResponse(data=recording, message="Recording resumed")


@router.post("/{recording_id}/complete", response_model=ApiResponse[RecordingSessionResponse])
async def complete_recording(recording_id: str, services: ServiceContainer = Depends(get_services)):
	"""Stop recording and keep the captured steps."""
	recording = await services.recordings.complete(recording_id)
	return ApiResponse(data=recording, message="Recording completed")


@router.post("/{recording_id}/cancel", response_model=ApiResponse[RecordingSessionResponse])
async def cancel_recording(recording_id: str, services: ServiceContainer = Depends(get_services)):
	recording = await services.recordings.cancel(recording_id)
	return ApiResponse(data=recording, message="Recording cancelled")


@router.delete("/{recording_id}")
async def delete_recording(recording_id: str, services: ServiceContainer = Depends(get_services)):
	"""Delete a recording, its steps, playbacks and generated tests."""
	await services.recordings.delete(recording_id)
	return {"data": {"id": recording_id}, "message": "Recording deleted"}


@router.post("/{recording_id}/events")
async def ingest_events(
	recording_id: str,
	request: IngestEventsRequest,
	services: ServiceContainer = Depends(get_services),
):
	"""Queue browser events for step synthesis. Returns immediately."""
	accepted = await services.recordings.ingest(recording_id, request.events)
	return {
		"data": {"accepted": accepted, "dropped": len(request.events) - accepted},
		"message": f"{accepted} events queued",
	}


@router.get("/{recording_id}/steps", response_model=ApiResponse[list[TestStepResponse]])
async def list_steps(recording_id: str, services: ServiceContainer = Depends(get_services)):
	steps = services.verification.list_steps(recording_id)
	return ApiResponse(data=steps, message=f"{len(steps)} steps")


@router.get("/{recording_id}/logs", response_model=ApiResponse[list[RecordingLogResponse]])
async def get_recording_logs(recording_id: str, level: str | None = None, db: Session = Depends(get_db)):
	"""Get log lines captured while the recording was active."""
	recording = db.query(RecordingSession).filter(RecordingSession.id == recording_id).first()
	if not recording:
		raise SessionNotFoundError(f"Recording not found: {recording_id}")

	query = db.query(RecordingLog).filter(RecordingLog.recording_id == recording_id)
	if level:
		query = query.filter(RecordingLog.level == level.upper())
	logs = query.order_by(RecordingLog.created_at).all()
	return ApiResponse(data=[RecordingLogResponse.model_validate(log) for log in logs], message=f"{len(logs)} log lines")
