"""MetaSync - Job State (sync cursor) Repository."""

from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from metasync.core.errors import PersistenceError
from metasync.core.logging import get_logger
from metasync.models.sync_models import JobState
from metasync.repositories.upsert import UpsertStore

logger = get_logger("repositories.job_state")

LAST_LEADS_SYNC_KEY = "lastSuccessfulLeadsSyncUtc"


class JobStateStore:
    """Key → opaque string cursor store, one row per job."""

    def __init__(self, session_factory: Callable[[], Session], upsert_store: UpsertStore):
        self._session_factory = session_factory
        self._upsert = upsert_store

    def get(self, key: str) -> Optional[str]:
        """Stored value, or ``None`` when missing or reset to empty."""
        try:
            with self._session_factory() as session:
                row = session.get(JobState, key)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to read job state '{key}': {e}") from e
        if row is None or not row.job_value:
            return None
        return row.job_value

    def set(self, key: str, value: str) -> None:
        self._upsert.upsert(
            JobState,
            [{"job_key": key, "job_value": value, "updated_at": datetime.now(timezone.utc)}],
            ["job_key"],
        )
        logger.info(f"Job state '{key}' set to '{value}'", extra={"job": key})

    def reset(self, key: str) -> None:
        """Clear the cursor so the next run uses the fallback window."""
        self.set(key, "")
