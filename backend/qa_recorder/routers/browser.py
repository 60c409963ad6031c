"""
Browser Router - Browser sessions that recordings and playbacks attach to.

Endpoints:
- POST /api/browser/sessions - Open a browser session
- GET /api/browser/sessions - List open sessions
- GET /api/browser/sessions/{session_id} - Session details
- DELETE /api/browser/sessions/{session_id} - Close a session
"""

import logging

from fastapi import APIRouter, Depends

from qa_recorder.deps import ServiceContainer, get_services
from qa_recorder.errors import RecorderError, SessionBusyError
from qa_recorder.schemas import ApiResponse, BrowserSessionResponse, CreateBrowserSessionRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/browser", tags=["browser"])


@router.post("/sessions", response_model=ApiResponse[BrowserSessionResponse])
async def create_browser_session(
	request: CreateBrowserSessionRequest | None = None,
	services: ServiceContainer = Depends(get_services),
):
	"""Open a new browser session."""
	request = request or CreateBrowserSessionRequest()
	try:
		session = await services.browsers.create_session(start_url=request.start_url, headless=request.headless)
	except Exception as e:
		logger.error(f"Failed to create browser session: {e}")
		raise RecorderError(f"Failed to create browser session: {e}")
	return ApiResponse(data=BrowserSessionResponse(**session.to_dict()), message="Browser session created")


@router.get("/sessions", response_model=ApiResponse[list[BrowserSessionResponse]])
async def list_browser_sessions(services: ServiceContainer = Depends(get_services)):
	sessions = [BrowserSessionResponse(**session.to_dict()) for session in services.browsers.list_sessions()]
	return ApiResponse(data=sessions, message=f"{len(sessions)} browser sessions")


@router.get("/sessions/{session_id}", response_model=ApiResponse[BrowserSessionResponse])
async def get_browser_session(session_id: str, services: ServiceContainer = Depends(get_services)):
	session = services.browsers.require_session(session_id)
	return ApiResponse(data=BrowserSessionResponse(**session.to_dict()), message="Browser session retrieved")


@router.delete("/sessions/{session_id}")
async def stop_browser_session(session_id: str, services: ServiceContainer = Depends(get_services)):
	"""Close a browser session that no recording or playback is using."""
	session = services.browsers.require_session(session_id)
	if session.is_busy:
		raise SessionBusyError(
			f"Browser session {session_id} is in use by {session.owner}",
			{"browser_session_id": session_id, "owner": session.owner},
		)
	await services.browsers.stop_session(session_id)
	return {"data": {"id": session_id}, "message": "Browser session stopped"}
