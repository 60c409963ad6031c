"""
Codegen Router - Export recordings as runnable test files.

Endpoints:
- POST /api/generate-code - Generate (or reuse) test code for a recording
- GET /api/generated-tests/{test_id} - Get a generated test
- GET /api/recordings/{recording_id}/generated-tests - Generated tests of a recording
"""

from fastapi import APIRouter, Body, Depends

from qa_recorder.deps import ServiceContainer, get_services
from qa_recorder.errors import InvalidInputError
from qa_recorder.schemas import ApiResponse, GeneratedTestResponse, GenerateCodeRequest

router = APIRouter(prefix="/api", tags=["codegen"])


@router.post("/generate-code", response_model=ApiResponse[GeneratedTestResponse])
async def generate_code(
	request: GenerateCodeRequest | None = Body(None),
	services: ServiceContainer = Depends(get_services),
):
	"""Compile a recording's ordered steps into test source."""
	if request is None or not request.recording_session_id:
		raise InvalidInputError("recording_session_id is required")
	generated = services.generated_tests.generate(request.recording_session_id, request.options)
	return ApiResponse(data=generated, message="Test code generated")


@router.get("/generated-tests/{test_id}", response_model=ApiResponse[GeneratedTestResponse])
async def get_generated_test(test_id: str, services: ServiceContainer = Depends(get_services)):
	return ApiResponse(data=services.generated_tests.get(test_id), message="Generated test retrieved")


@router.get("/recordings/{recording_id}/generated-tests", response_model=ApiResponse[list[GeneratedTestResponse]])
async def list_generated_tests(recording_id: str, services: ServiceContainer = Depends(get_services)):
	tests = services.generated_tests.list_for_recording(recording_id)
	return ApiResponse(data=tests, message=f"{len(tests)} generated tests")
