import logging
from typing import Callable

from sqlalchemy.orm import Session


class RecordingLogHandler(logging.Handler):
	"""Log handler that stores records tagged with a recording id in the database.

	Records are matched through ``extra={"recording_id": ...}`` so that
	concurrent recordings sharing a logger do not mix their logs.
	"""

	def __init__(self, db_session_factory: Callable[[], Session], recording_id: str, level: int = logging.INFO):
		super().__init__(level)
		self.db_session_factory = db_session_factory
		self.recording_id = recording_id
		self.addFilter(self._belongs_to_recording)

	def _belongs_to_recording(self, record: logging.LogRecord) -> bool:
		return getattr(record, "recording_id", None) == self.recording_id

	def emit(self, record: logging.LogRecord) -> None:
		"""Store log record in database."""
		from qa_recorder.models import RecordingLog

		try:
			db = self.db_session_factory()
			try:
				db.add(
					RecordingLog(
						recording_id=self.recording_id,
						level=record.levelname,
						message=self.format(record),
						source=record.name,
					)
				)
				db.commit()
			finally:
				db.close()
		except Exception:
			self.handleError(record)
