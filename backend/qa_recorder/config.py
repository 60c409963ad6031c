from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
	model_config = SettingsConfigDict(
		env_file=".env",
		env_file_encoding="utf-8",
		extra="ignore",
	)

	# Application settings
	APP_NAME: str = "QA Recorder API"
	DEBUG: bool = False
	LOG_LEVEL: str = "INFO"

	# Database settings
	DATABASE_URL: str = "sqlite:///./data/app.db"

	# Redis fan-out for channel messages (empty = in-process delivery only)
	REDIS_URL: str = ""

	# Storage settings
	SCREENSHOTS_DIR: str = str(Path(__file__).parent.parent / "data" / "screenshots")
	LOGS_DIR: str = str(Path(__file__).parent.parent / "data" / "logs")

	# Browser settings
	HEADLESS: bool = True
	VIEWPORT_WIDTH: int = 1280
	VIEWPORT_HEIGHT: int = 720
	PRIMITIVE_TIMEOUT_MS: int = 5000  # Per-action locator timeout, never scaled by playback speed

	# Step synthesis policy
	TYPE_MERGE_WINDOW_MS: int = 500
	LOW_CONFIDENCE_THRESHOLD: float = 0.5
	MAX_ALTERNATIVE_SELECTORS: int = 3

	# Remote step classifier (empty = rule-based classifier)
	CLASSIFIER_URL: str = ""
	CLASSIFIER_TIMEOUT_SECONDS: float = 10.0

	# Playback settings
	PLAYBACK_STEP_DELAY_MS: int = 500

	# Channel settings
	HEARTBEAT_INTERVAL_SECONDS: float = 25.0
	HEARTBEAT_TIMEOUT_SECONDS: float = 60.0
	RECONNECT_BASE_DELAY_SECONDS: float = 1.0
	RECONNECT_MAX_DELAY_SECONDS: float = 30.0
	RECONNECT_MAX_ATTEMPTS: int = 5  # 0 = retry forever
	CHANNEL_QUEUE_SIZE: int = 256

	@property
	def database_path(self) -> Path:
		"""Extract the database file path from the URL."""
		if self.DATABASE_URL.startswith("sqlite:///"):
			return Path(self.DATABASE_URL.replace("sqlite:///", ""))
		return Path("data/app.db")


settings = Settings()
