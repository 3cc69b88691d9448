import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import numpy as np
import pytest
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame, VideoFrame

from meeting_pipeline.models import AnalysisResult, PollOutcome, PollStatus, UploadResult
from meeting_pipeline.uploader import SampleUploader

T0 = datetime(2024, 11, 5, 10, 0, 0, tzinfo=timezone.utc)


class FakeTimer:
    """Stands in for RepeatingTimer; ticks only when the test fires it."""

    def __init__(self, interval_ms, callback, name="timer"):
        self.interval_ms = interval_ms
        self.callback = callback
        self.name = name
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    async def join(self):
        pass

    async def fire(self):
        if self.cancelled:
            return None
        return await self.callback()


class TimerFactory:
    def __init__(self):
        self.timers: List[FakeTimer] = []

    def __call__(self, interval_ms, callback, name="timer"):
        timer = FakeTimer(interval_ms, callback, name)
        self.timers.append(timer)
        return timer

    def by_name(self, name) -> FakeTimer:
        matching = [t for t in self.timers if t.name == name]
        assert matching, f"no timer named {name}"
        return matching[-1]


class FakeUploader(SampleUploader):
    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.calls = []

    async def upload(self, payload, content_type, destination_key, acl="private"):
        self.calls.append((destination_key, content_type, acl, len(payload)))
        if len(self.calls) in self.fail_on:
            return UploadResult(False, key=destination_key, error="S3 unavailable")
        return UploadResult(True, url=f"https://bucket.test/{destination_key}", key=destination_key)


class FakeAudioTrack(MediaStreamTrack):
    kind = "audio"

    def __init__(self):
        super().__init__()
        self.queue: asyncio.Queue = asyncio.Queue()

    async def push(self, frame):
        """Hand a frame to the reader and wait until it was received."""
        await self.queue.put(frame)
        await self.queue.join()

    async def recv(self):
        frame = await self.queue.get()
        self.queue.task_done()
        if frame is None:
            raise MediaStreamError
        return frame


class FakeVideoTrack(MediaStreamTrack):
    kind = "video"

    def __init__(self, frame=None):
        super().__init__()
        self.frame = frame if frame is not None else make_video_frame()
        self._sent = False

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        if self._sent:
            await asyncio.sleep(0.01)
        self._sent = True
        return self.frame


def make_audio_frame(value: int, samples: int = 1600, rate: int = 16000) -> AudioFrame:
    arr = np.full((1, samples), value, dtype=np.int16)
    frame = AudioFrame.from_ndarray(arr, format="s16", layout="mono")
    frame.sample_rate = rate
    return frame


def make_video_frame(width: int = 64, height: int = 48) -> VideoFrame:
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[:, : width // 2] = (0, 128, 255)
    return VideoFrame.from_ndarray(image, format="bgr24")


def make_result(offset_seconds: float = 0, attentiveness: float = 7, comment: str = "focused") -> AnalysisResult:
    return AnalysisResult(
        timestamp=T0 + timedelta(seconds=offset_seconds),
        attentiveness_rating=attentiveness,
        eye_contact_score=6,
        posture_score=8,
        focus_duration=42,
        comment=comment,
    )


def ok(result: AnalysisResult) -> PollOutcome:
    return PollOutcome(PollStatus.OK, result=result)


NOT_FOUND = PollOutcome(PollStatus.NOT_FOUND)


def failed(message: str = "Failed to get analysis results: HTTP 500") -> PollOutcome:
    return PollOutcome(PollStatus.FAILED, error=message)


class FakeAnalyticsClient:
    """Scripted replacement for AnalyticsClient.

    ``script`` maps subject ids to the outcomes returned by successive polls;
    the last outcome repeats once the list is exhausted. ``gates`` holds an
    asyncio.Event per subject that a poll waits on before answering.
    """

    def __init__(self, script: Optional[Dict[str, List[PollOutcome]]] = None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.gates: Dict[str, asyncio.Event] = {}
        self.calls: List[str] = []
        self.submitted = []
        self.notes_requests = []
        self.leaderboard = []
        self.notes = "## Notes\n- photosynthesis"
        self.closed = False

    def gate(self, subject_id: str) -> asyncio.Event:
        self.gates[subject_id] = asyncio.Event()
        return self.gates[subject_id]

    async def get_job_status(self, session_id, subject_id):
        self.calls.append(subject_id)
        gate = self.gates.get(subject_id)
        if gate is not None:
            await gate.wait()
        outcomes = self.script.get(subject_id) or [NOT_FOUND]
        return outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]

    async def submit_student_images(self, session_id, subject_id, image_urls):
        self.submitted.append((session_id, subject_id, list(image_urls)))
        return {"status": "queued"}

    async def request_notes(self, session_id, audio_url):
        self.notes_requests.append((session_id, audio_url))
        return True

    async def fetch_notes(self, session_id):
        return self.notes

    async def increment_leaderboard(self, class_name):
        self.leaderboard.append(class_name)
        return True

    async def close(self):
        self.closed = True


@pytest.fixture
def timers():
    return TimerFactory()
