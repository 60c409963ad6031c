"""
Playback Router - Replay recorded steps in a browser.

Endpoints:
- POST /api/playback/start - Start playback of a recording
- GET /api/playback - List playback sessions
- GET /api/playback/{playback_id} - Playback status with step results
- POST /api/playback/{playback_id}/pause|resume|stop - Control a running playback
"""

from fastapi import APIRouter, Depends

from qa_recorder.deps import ServiceContainer, get_services
from qa_recorder.schemas import ApiResponse, PlaybackSessionResponse, StartPlaybackRequest

router = APIRouter(prefix="/api/playback", tags=["playback"])


@router.post("/start", response_model=ApiResponse[PlaybackSessionResponse])
async def start_playback(request: StartPlaybackRequest, services: ServiceContainer = Depends(get_services)):
	"""Start playback. Runs in the background; poll or subscribe to playback:<id>."""
	playback = await services.playback.start(request)
	return ApiResponse(data=playback, message="Playback started")


@router.get("", response_model=ApiResponse[list[PlaybackSessionResponse]])
async def list_playbacks(recording_id: str | None = None, services: ServiceContainer = Depends(get_services)):
	playbacks = services.playback.list_playbacks(recording_id)
	return ApiResponse(data=playbacks, message=f"{len(playbacks)} playback sessions")


@router.get("/{playback_id}", response_model=ApiResponse[PlaybackSessionResponse])
async def get_playback(playback_id: str, services: ServiceContainer = Depends(get_services)):
	return ApiResponse(data=services.playback.get(playback_id), message="Playback retrieved")


@router.post("/{playback_id}/pause", response_model=ApiResponse[PlaybackSessionResponse])
async def pause_playback(playback_id: str, services: ServiceContainer = Depends(get_services)):
	playback = await services.playback.pause(playback_id)
	return ApiResponse(data=playback, message="Playback paused")


@router.post("/{playback_id}/resume", response_model=ApiResponse[PlaybackSessionResponse])
async def resume_playback(playback_id: str, services: ServiceContainer = Depends(get_services)):
	playback = await services.playback.resume(playback_id)
	return ApiResponse(data=playback, message="Playback resumed")


@router.post("/{playback_id}/stop", response_model=ApiResponse[PlaybackSessionResponse])
async def stop_playback(playback_id: str, services: ServiceContainer = Depends(get_services)):
	playback = await services.playback.stop(playback_id)
	return ApiResponse(data=playback, message="Playback stopped")
