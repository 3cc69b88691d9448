"""
Periodic frame capture with batched hand-off.

A capture tick grabs the newest frame of the participant's video track,
encodes it to JPEG and uploads it. Successful uploads land in a pending
buffer; a slower flush tick hands the buffer to a consumer as one
SampleBatch. A failed upload drops its frame, frames are never retried.
"""

import asyncio
import functools
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Tuple

import cv2
from aiortc import MediaStreamTrack
from av import VideoFrame

from meeting_pipeline.constant import CAPTURE_INTERVAL_MS, FLUSH_INTERVAL_MS, JPEG_QUALITY
from meeting_pipeline.errors import RecorderStateError
from meeting_pipeline.models import SampleBatch, UploadResult
from meeting_pipeline.scheduler import RepeatingTimer, TimerFactory
from meeting_pipeline.streaming import LatestFrameReader
from meeting_pipeline.uploader import SampleUploader, frame_key

logger = logging.getLogger(__name__)

BatchCallback = Callable[[SampleBatch], Awaitable[None]]


def encode_jpeg(frame: VideoFrame, quality: int = JPEG_QUALITY) -> bytes:
    image = frame.to_ndarray(format="bgr24")
    ok, buf = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buf.tobytes()


class _Slot:
    """Place of one capture in the buffer, reserved before its upload starts."""

    __slots__ = ("url", "done")

    def __init__(self) -> None:
        self.url = ""
        self.done = False


@dataclass
class CaptureSession:
    session_id: str
    subject_id: str
    reader: LatestFrameReader
    on_batch: BatchCallback
    capture_interval_ms: int
    flush_interval_ms: int
    buffer: List[_Slot] = field(default_factory=list)
    timers: List[RepeatingTimer] = field(default_factory=list)


class CaptureBatcher:
    def __init__(
        self,
        uploader: SampleUploader,
        timer_factory: TimerFactory = RepeatingTimer,
        jpeg_quality: int = JPEG_QUALITY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.uploader = uploader
        self.jpeg_quality = jpeg_quality
        self._timer_factory = timer_factory
        self._clock = clock
        self._lock = threading.Lock()
        self._session: Optional[CaptureSession] = None

    @property
    def active(self) -> bool:
        return self._session is not None

    @property
    def session(self) -> Optional[CaptureSession]:
        return self._session

    @property
    def pending_references(self) -> Tuple[str, ...]:
        """Uploaded references waiting for the next flush, in capture order."""
        session = self._session
        if session is None:
            return ()
        with self._lock:
            return tuple(slot.url for slot in session.buffer if slot.done)

    async def start_session(
        self,
        video_source: MediaStreamTrack,
        session_id: str,
        subject_id: str,
        on_batch: BatchCallback,
        capture_interval_ms: int = CAPTURE_INTERVAL_MS,
        flush_interval_ms: int = FLUSH_INTERVAL_MS,
    ) -> CaptureSession:
        if self._session is not None:
            raise RecorderStateError("a capture session is already running")
        if capture_interval_ms >= flush_interval_ms:
            raise ValueError("capture_interval_ms must be smaller than flush_interval_ms")

        reader = LatestFrameReader(video_source)
        session = CaptureSession(
            session_id=session_id,
            subject_id=subject_id,
            reader=reader,
            on_batch=on_batch,
            capture_interval_ms=capture_interval_ms,
            flush_interval_ms=flush_interval_ms,
        )
        session.timers = [
            self._timer_factory(
                capture_interval_ms, functools.partial(self._capture, session), "frame-capture"
            ),
            self._timer_factory(
                flush_interval_ms, functools.partial(self._flush, session), "batch-flush"
            ),
        ]
        self._session = session
        reader.start()
        for timer in session.timers:
            timer.start()
        logger.info(
            "Capture session %s/%s started: capture every %d ms, flush every %d ms",
            session_id, subject_id, capture_interval_ms, flush_interval_ms,
        )
        return session

    async def capture_once(self) -> bool:
        if self._session is None:
            return False
        return await self._capture(self._session)

    async def flush_once(self) -> Optional[SampleBatch]:
        if self._session is None:
            return None
        return await self._flush(self._session)

    async def _capture(self, session: CaptureSession) -> bool:
        frame = session.reader.latest()
        if frame is None or session.reader.ended:
            logger.warning("No video frame available for %s, skipping capture", session.subject_id)
            return False
        try:
            payload = await asyncio.to_thread(encode_jpeg, frame, self.jpeg_quality)
        except (ValueError, cv2.error) as e:
            logger.error("Could not encode frame for %s: %s", session.subject_id, e)
            return False

        slot = _Slot()
        with self._lock:
            session.buffer.append(slot)
        key = frame_key(session.session_id, session.subject_id, int(self._clock() * 1000))
        result = UploadResult(False, key=key, error="upload cancelled")
        try:
            result = await self.uploader.upload(payload, "image/jpeg", key)
        except Exception as e:
            result = UploadResult(False, key=key, error=str(e) or type(e).__name__)
        finally:
            # a slot that never completes would hold back every later flush
            with self._lock:
                if result.success:
                    slot.url = result.url
                    slot.done = True
                else:
                    session.buffer.remove(slot)
        if not result.success:
            logger.error("Error uploading image %s: %s", key, result.error)
        return result.success

    async def _flush(self, session: CaptureSession) -> Optional[SampleBatch]:
        with self._lock:
            ready = 0
            for slot in session.buffer:
                if not slot.done:
                    break
                ready += 1
            references = tuple(slot.url for slot in session.buffer[:ready])
            del session.buffer[:ready]
        if not references:
            return None
        batch = SampleBatch(session.session_id, session.subject_id, references)
        try:
            await session.on_batch(batch)
        except Exception:
            logger.exception("Batch consumer failed for %s", session.subject_id)
        return batch

    async def stop_session(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        for timer in session.timers:
            timer.cancel()
        # in-flight uploads still get their slot filled before the last flush
        for timer in session.timers:
            await timer.join()
        await self._flush(session)
        await session.reader.stop()
        logger.info("Capture session %s/%s stopped", session.session_id, session.subject_id)
