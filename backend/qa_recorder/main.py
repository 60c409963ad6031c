import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from qa_recorder.config import settings
from qa_recorder.database import init_database
from qa_recorder.deps import init_services, shutdown_services
from qa_recorder.errors import RecorderError
from qa_recorder.routers import browser, channels, codegen, playback, recordings, steps

logger = logging.getLogger(__name__)


def configure_logging() -> None:
	"""Console logging for the service; recording logs are added per session."""
	level = logging.DEBUG if settings.DEBUG else getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)
	logging.basicConfig(
		level=level,
		format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
	)
	logging.getLogger("qa_recorder").setLevel(level)


@asynccontextmanager
async def lifespan(app: FastAPI):
	"""Application lifespan handler."""
	# Startup: ensure directories exist
	Path(settings.SCREENSHOTS_DIR).mkdir(parents=True, exist_ok=True)
	Path(settings.LOGS_DIR).mkdir(parents=True, exist_ok=True)
	init_database()

	try:
		await init_services()
		logger.info("Services initialized")
	except Exception as e:
		logger.warning(f"Failed to initialize services: {e}")

	yield

	# Shutdown: stop recordings, playbacks and browsers
	try:
		await shutdown_services()
		logger.info("Services shutdown complete")
	except Exception as e:
		logger.error(f"Error shutting down services: {e}")


configure_logging()

app = FastAPI(
	title=settings.APP_NAME,
	lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
	CORSMiddleware,
	allow_origins=["*"],
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)


@app.exception_handler(RecorderError)
async def recorder_error_handler(request: Request, exc: RecorderError):
	if exc.status_code >= 500:
		logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
	return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
	errors = exc.errors()
	first = errors[0] if errors else {}
	field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
	message = f"{field}: {first.get('msg')}" if field else str(first.get("msg", "Invalid request"))
	return JSONResponse(
		status_code=400,
		content={"error": "VALIDATION_ERROR", "message": message, "details": {"errors": jsonable_encoder(errors)}},
	)


@app.get("/health")
async def health_check():
	"""Health check endpoint."""
	return {"status": "healthy", "app": settings.APP_NAME}


# Include routers
app.include_router(recordings.router)
app.include_router(steps.router)
app.include_router(playback.router)
app.include_router(codegen.router)
app.include_router(browser.router)
app.include_router(channels.router)

# Mount static files for screenshots
Path(settings.SCREENSHOTS_DIR).mkdir(parents=True, exist_ok=True)
app.mount("/screenshots", StaticFiles(directory=settings.SCREENSHOTS_DIR), name="screenshots")
