import logging
import threading
from typing import Dict, Optional

from .models import JobStatus

logger = logging.getLogger("routecast")


class StatusStore:
    """Job id -> latest JobStatus, shared between HTTP threads and the main loop.

    Records are immutable and swapped whole under the lock, so readers never
    see a half-written status.
    """

    def __init__(self):
        self._jobs: Dict[str, JobStatus] = {}
        self._lock = threading.Lock()

    def get(self, job_id: Optional[str]) -> Optional[JobStatus]:
        if not job_id:
            return None
        with self._lock:
            return self._jobs.get(job_id)

    def admit(self, status: JobStatus) -> None:
        """Record the first status of a new submission, replacing any old record."""
        with self._lock:
            self._jobs[status.job_id] = status

    def update(self, status: JobStatus) -> bool:
        with self._lock:
            current = self._jobs.get(status.job_id)
            if current is not None and current.terminal:
                logger.warning(
                    "Ignoring %s/%s for job %s: already %s",
                    status.state,
                    status.message,
                    status.job_id,
                    current.state,
                )
                return False
            self._jobs[status.job_id] = status
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
