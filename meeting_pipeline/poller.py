"""
Per-participant polling of the remote analysis job.

A JobPoller fetches the status of one participant's job and an AnalysisJob
keeps the best known result for it. Results only move forward in time: an
incoming result replaces the stored one only when its timestamp is strictly
newer, so late or repeated deliveries never roll the displayed metrics back.
"""

import enum
import logging
import threading
from typing import Optional

from meeting_pipeline.analytics_client import AnalyticsClient
from meeting_pipeline.models import (
    AnalysisResult,
    PollOutcome,
    PollStatus,
    ViewState,
    job_id_for,
)

logger = logging.getLogger(__name__)


class JobState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class AnalysisJob:
    def __init__(self, session_id: str, subject_id: str) -> None:
        self.session_id = session_id
        self.subject_id = subject_id
        self.state = JobState.UNINITIALIZED
        self.result: Optional[AnalysisResult] = None
        self.error = ""

    @property
    def job_id(self) -> str:
        return job_id_for(self.session_id, self.subject_id)

    def accept(self, result: AnalysisResult) -> bool:
        """Store ``result`` if it is newer than the current one. Ties keep the current."""
        if not result.is_newer_than(self.result):
            logger.debug(
                "%s: discarding result from %s, have %s",
                self.job_id, result.timestamp, self.result.timestamp if self.result else None,
            )
            return False
        self.result = result
        return True

    def apply(self, outcome: PollOutcome) -> bool:
        """Fold a poll outcome into the job. Returns True if the result changed."""
        changed = False
        if outcome.status is PollStatus.OK and outcome.result is not None:
            changed = self.accept(outcome.result)
            self.state = JobState.READY
            self.error = ""
        elif outcome.status is PollStatus.NOT_FOUND:
            self.state = JobState.READY if self.result is not None else JobState.PENDING
            self.error = ""
        else:
            self.state = JobState.FAILED
            self.error = outcome.error or "Failed to fetch analytics"
        return changed

    def view(self, outcome: PollOutcome) -> ViewState:
        """View state after ``outcome`` has been applied."""
        if outcome.status is PollStatus.NOT_FOUND:
            return ViewState(loading=self.result is None, error="", result=self.result)
        if outcome.is_error:
            return ViewState(loading=False, error=self.error, result=self.result)
        return ViewState(loading=False, error="", result=self.result)


class JobPoller:
    """Fetches job status for one participant, one request at a time."""

    def __init__(self, client: AnalyticsClient, session_id: str, subject_id: str) -> None:
        self.client = client
        self.job = AnalysisJob(session_id, subject_id)
        self._inflight = threading.Lock()

    @property
    def subject_id(self) -> str:
        return self.job.subject_id

    @property
    def busy(self) -> bool:
        return self._inflight.locked()

    async def poll(self) -> Optional[PollOutcome]:
        """Request the job status once.

        Returns None without sending anything if a request for this job is
        still in flight.
        """
        if not self._inflight.acquire(blocking=False):
            logger.debug("%s: previous poll still running, skipping", self.job.job_id)
            return None
        try:
            return await self.client.get_job_status(self.job.session_id, self.job.subject_id)
        finally:
            self._inflight.release()
