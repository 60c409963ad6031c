"""
Steps Router - Verification and editing of synthesized steps.

Endpoints:
- GET /api/steps/{step_id} - Get a step
- PATCH /api/steps/{step_id} - Edit description, selector or value
- POST /api/steps/{step_id}/verify - Verify or flag for re-review
- POST /api/steps/batch-verify - Verify several steps at once
- DELETE /api/steps/{step_id} - Delete and renumber
- POST /api/steps/{step_id}/suggestions - Ranked rewrites
- POST /api/steps/{step_id}/apply-suggestion - Replace the description
- GET /api/steps/{step_id}/quality - Quality analysis and execution preview
"""

from fastapi import APIRouter, Depends

from qa_recorder.deps import ServiceContainer, get_services
from qa_recorder.schemas import (
	ApiResponse,
	ApplySuggestionRequest,
	BatchVerifyRequest,
	QualityReport,
	StepSuggestion,
	SuggestionsRequest,
	TestStepResponse,
	UpdateStepRequest,
	VerifyStepRequest,
)

router = APIRouter(prefix="/api/steps", tags=["steps"])


@router.post("/batch-verify", response_model=ApiResponse[list[TestStepResponse]])
async def batch_verify_steps(request: BatchVerifyRequest, services: ServiceContainer = Depends(get_services)):
	steps = await services.verification.verify_many(request.step_ids, request.verified)
	return ApiResponse(data=steps, message=f"{len(steps)} steps updated")


@router.get("/{step_id}", response_model=ApiResponse[TestStepResponse])
async def get_step(step_id: str, services: ServiceContainer = Depends(get_services)):
	return ApiResponse(data=services.verification.get_step(step_id), message="Step retrieved")


@router.patch("/{step_id}", response_model=ApiResponse[TestStepResponse])
async def update_step(step_id: str, request: UpdateStepRequest, services: ServiceContainer = Depends(get_services)):
	"""Edit step content. Confidence and verification are left unchanged."""
	step = await services.verification.edit(step_id, request)
	return ApiResponse(data=step, message="Step updated")


@router.post("/{step_id}/verify", response_model=ApiResponse[TestStepResponse])
async def verify_step(
	step_id: str,
	request: VerifyStepRequest | None = None,
	services: ServiceContainer = Depends(get_services),
):
	verified = request.verified if request else True
	step = await services.verification.verify(step_id, verified)
	return ApiResponse(data=step, message="Step verified" if verified else "Step marked for review")


@router.delete("/{step_id}")
async def delete_step(step_id: str, services: ServiceContainer = Depends(get_services)):
	await services.verification.delete(step_id)
	return {"data": {"id": step_id}, "message": "Step deleted"}


@router.post("/{step_id}/suggestions", response_model=ApiResponse[list[StepSuggestion]])
async def get_suggestions(
	step_id: str,
	request: SuggestionsRequest | None = None,
	services: ServiceContainer = Depends(get_services),
):
	"""Ranked rewrites of the step description, optionally completing partial text."""
	partial_text = request.partial_text if request else ""
	suggestions = await services.verification.request_suggestions(step_id, partial_text)
	return ApiResponse(data=suggestions, message=f"{len(suggestions)} suggestions")


@router.post("/{step_id}/apply-suggestion", response_model=ApiResponse[TestStepResponse])
async def apply_suggestion(
	step_id: str,
	request: ApplySuggestionRequest,
	services: ServiceContainer = Depends(get_services),
):
	step = await services.verification.apply_suggestion(step_id, request.text)
	return ApiResponse(data=step, message="Suggestion applied")


@router.get("/{step_id}/quality", response_model=ApiResponse[QualityReport])
async def analyze_step_quality(step_id: str, services: ServiceContainer = Depends(get_services)):
	report = await services.verification.analyze_quality(step_id)
	return ApiResponse(data=report, message="Quality analysis complete")
