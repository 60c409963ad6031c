import logging
from collections.abc import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from qa_recorder.config import settings

logger = logging.getLogger(__name__)

# Create engine
engine = create_engine(
	settings.DATABASE_URL,
	connect_args={"check_same_thread": False},  # Required for SQLite
	echo=settings.DEBUG,
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
	"""Base class for all SQLAlchemy models."""

	pass


def get_db() -> Generator[Session, None, None]:
	"""Dependency that provides a database session."""
	db = SessionLocal()
	try:
		yield db
	finally:
		db.close()


def init_database() -> None:
	"""Create any missing tables. Alembic revisions describe the same schema."""
	# Import models so they register on Base.metadata
	from qa_recorder import models  # noqa: F401

	if settings.DATABASE_URL.startswith("sqlite:///"):
		settings.database_path.parent.mkdir(parents=True, exist_ok=True)

	Base.metadata.create_all(bind=engine)
	logger.info("Database tables ready")
