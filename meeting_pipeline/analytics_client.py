"""
HTTP client for the remote analysis, notes and leaderboard services.

Every call returns a typed outcome instead of raising, so timers and
processors never see transport exceptions. Job status responses are
classified here: a 404 whose body says the job was not found means the job
has not been created yet and is reported as PollStatus.NOT_FOUND.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Sequence

import aiohttp

from meeting_pipeline.constant import (
    ANALYTICS_BASE_URL,
    HTTP_TIMEOUT_SECONDS,
    NOTES_BASE_URL,
)
from meeting_pipeline.models import AnalysisResult, PollOutcome, PollStatus, job_id_for

logger = logging.getLogger(__name__)

JOB_NOT_FOUND_MARKER = "job not found"


def classify_job_status(status: int, body: str) -> PollOutcome:
    """Turn a raw /job_status response into a PollOutcome."""
    if status == 404 and JOB_NOT_FOUND_MARKER in body.lower():
        return PollOutcome(PollStatus.NOT_FOUND)
    if not 200 <= status < 300:
        return PollOutcome(
            PollStatus.FAILED,
            error=f"Failed to get analysis results: HTTP {status}",
        )
    try:
        result = AnalysisResult.from_payload(json.loads(body))
    except (ValueError, KeyError, TypeError) as e:
        return PollOutcome(PollStatus.DECODE_ERROR, error=f"Malformed job status response: {e}")
    return PollOutcome(PollStatus.OK, result=result)


class AnalyticsClient:
    def __init__(
        self,
        analytics_url: str = ANALYTICS_BASE_URL,
        notes_url: str = NOTES_BASE_URL,
        timeout: float = HTTP_TIMEOUT_SECONDS,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.analytics_url = analytics_url.rstrip("/")
        self.notes_url = notes_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "AnalyticsClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self.timeout,
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def submit_student_images(
        self, session_id: str, subject_id: str, image_urls: Sequence[str]
    ) -> Optional[Dict[str, Any]]:
        """Submit a batch of frame URLs. Returns the service's JSON reply or None."""
        url = f"{self.analytics_url}/analyze_student_images"
        body = {"job_id": job_id_for(session_id, subject_id), "image_urls": list(image_urls)}
        try:
            async with self.session.post(url, json=body) as resp:
                if resp.status >= 300:
                    text = await resp.text()
                    logger.error(
                        "Analysis API error for %s: %s %s %s",
                        body["job_id"], resp.status, resp.reason, text[:200],
                    )
                    return None
                return await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error("Failed to submit student images for %s: %s", body["job_id"], e)
            return None

    async def get_job_status(self, session_id: str, subject_id: str) -> PollOutcome:
        url = f"{self.analytics_url}/job_status"
        job_id = job_id_for(session_id, subject_id)
        try:
            async with self.session.post(url, json={"job_id": job_id}) as resp:
                text = await resp.text()
                outcome = classify_job_status(resp.status, text)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            return PollOutcome(PollStatus.FAILED, error=f"Job status request failed: {str(e) or type(e).__name__}")
        if outcome.is_error:
            logger.warning("Job status for %s: %s", job_id, outcome.error)
        return outcome

    async def request_notes(self, session_id: str, audio_url: str) -> bool:
        """Ask the notes service to transcribe an uploaded audio segment."""
        url = f"{self.notes_url}/class/{session_id}/notes"
        try:
            async with self.session.post(url, params={"audio_url": audio_url}) as resp:
                if resp.status >= 300:
                    logger.warning("Notes API responded with status %s for %s", resp.status, session_id)
                    return False
                return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Notes request for %s failed: %s", session_id, e)
            return False

    async def fetch_notes(self, session_id: str) -> Optional[str]:
        url = f"{self.notes_url}/class/{session_id}/notes"
        try:
            async with self.session.get(url) as resp:
                if resp.status >= 300:
                    logger.warning("Fetching notes for %s returned %s", session_id, resp.status)
                    return None
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.warning("Error fetching notes for %s: %s", session_id, e)
            return None
        if not isinstance(data, dict):
            return None
        return str(data.get("notes") or "")

    async def increment_leaderboard(self, class_name: str) -> bool:
        url = f"{self.notes_url}/leaderboard/{class_name}/increment"
        try:
            async with self.session.post(url) as resp:
                if resp.status >= 300:
                    logger.error("Failed to increment leaderboard for %s: %s", class_name, resp.status)
                    return False
                return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Failed to increment leaderboard for %s: %s", class_name, e)
            return False
