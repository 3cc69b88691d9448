import asyncio
import io
import itertools
import logging
import threading
from typing import Awaitable, Callable, List, Optional, Set

import librosa
import numpy as np
import soundfile as sf
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame, VideoFrame

from meeting_pipeline.constant import SAMPLE_RATE, SEGMENT_DURATION_MS
from meeting_pipeline.errors import RecorderStateError, SourceUnavailableError
from meeting_pipeline.models import Segment
from meeting_pipeline.scheduler import RepeatingTimer, TimerFactory

logger = logging.getLogger(__name__)

SegmentCallback = Callable[[Segment], Awaitable[None]]
SourceFactory = Callable[[], Awaitable[MediaStreamTrack]]
IndexSource = Callable[[], int]


def prepare_audio(frame: AudioFrame, target_rate: int = SAMPLE_RATE) -> np.ndarray:
    """
    Convert a PyAV AudioFrame to a mono float32 waveform at target_rate.
    Input shape: (channels, samples) or (1, samples * channels) for packed formats
    Output shape: (n_samples,) 1D NumPy array
    """
    arr = frame.to_ndarray()
    channels = len(frame.layout.channels)
    if frame.format.is_packed and channels > 1:
        arr = arr.reshape(-1, channels).T
    if np.issubdtype(arr.dtype, np.integer):
        arr = arr.astype(np.float32) / np.iinfo(arr.dtype).max
    if arr.ndim == 2:
        arr = arr.mean(axis=0)

    arr = arr.astype(np.float32)

    peak = np.abs(arr).max() if arr.size else 0.0
    if peak > 1.0:
        arr = arr / peak

    if frame.sample_rate != target_rate:
        arr = librosa.resample(arr, orig_sr=frame.sample_rate, target_sr=target_rate)

    return arr


def encode_wav(samples: np.ndarray, sample_rate: int = SAMPLE_RATE) -> bytes:
    buf = io.BytesIO()
    sf.write(buf, samples, sample_rate, format="WAV", subtype="PCM_16")
    return buf.getvalue()


class SegmentRecorder:
    """Cuts a live audio track into fixed-length WAV segments.

    Calling start() while already recording raises RecorderStateError;
    stop() while idle does nothing.
    """

    def __init__(
        self,
        source_factory: SourceFactory,
        session_id: str,
        sample_rate: int = SAMPLE_RATE,
        timer_factory: TimerFactory = RepeatingTimer,
        next_index: Optional[IndexSource] = None,
    ) -> None:
        self.source_factory = source_factory
        self.session_id = session_id
        self.sample_rate = sample_rate
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._chunks: List[np.ndarray] = []
        # recorders of one meeting share a source so chunk numbers stay unique
        self._next_index = next_index or itertools.count(1).__next__
        self._emitted = 0
        self._track: Optional[MediaStreamTrack] = None
        self._timer: Optional[RepeatingTimer] = None
        self._consumer: Optional[asyncio.Task] = None
        self._on_segment: Optional[SegmentCallback] = None
        self._deliveries: Set[asyncio.Task] = set()
        self._recording = False
        self._starting = False

    @property
    def recording(self) -> bool:
        return self._recording

    async def start(
        self,
        on_segment: SegmentCallback,
        segment_duration_ms: int = SEGMENT_DURATION_MS,
    ) -> None:
        if self._recording or self._starting:
            raise RecorderStateError("recorder is already recording")
        self._starting = True
        try:
            try:
                track = await self.source_factory()
            except Exception as e:
                raise SourceUnavailableError(f"could not acquire audio source: {e}") from e
            if track is None or track.kind != "audio":
                raise SourceUnavailableError("audio source did not provide an audio track")
        finally:
            self._starting = False

        with self._lock:
            self._chunks = []
        self._track = track
        self._on_segment = on_segment
        self._recording = True
        self._consumer = asyncio.create_task(self._consume(track), name="segment-recorder-recv")
        self._timer = self._timer_factory(segment_duration_ms, self._on_boundary, "segment-recorder")
        self._timer.start()
        logger.info("Started recording %s in %d ms segments", self.session_id, segment_duration_ms)

    async def _consume(self, track: MediaStreamTrack) -> None:
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                logger.info("audio track for %s ended", self.session_id)
                break
            self.add_frame(frame)

    def add_frame(self, frame: AudioFrame) -> None:
        samples = prepare_audio(frame, self.sample_rate)
        with self._lock:
            self._chunks.append(samples)

    async def _on_boundary(self) -> None:
        self._rotate()

    def _rotate(self) -> Optional[Segment]:
        with self._lock:
            chunks, self._chunks = self._chunks, []
            if not chunks:
                return None
            index = self._next_index()
            self._emitted += 1
        segment = Segment(
            payload=encode_wav(np.concatenate(chunks), self.sample_rate),
            index=index,
            session_id=self.session_id,
        )
        task = asyncio.create_task(self._deliver(segment), name=f"segment-{index}")
        self._deliveries.add(task)
        task.add_done_callback(self._deliveries.discard)
        return segment

    async def _deliver(self, segment: Segment) -> None:
        try:
            await self._on_segment(segment)
        except Exception:
            logger.exception("segment %d of %s was not handled", segment.index, self.session_id)

    async def stop(self) -> None:
        if not self._recording:
            return
        self._recording = False
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            await timer.join()
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)

        self._rotate()

        track, self._track = self._track, None
        if track is not None:
            track.stop()
        if self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)
        self._on_segment = None
        logger.info("Stopped recording %s after %d segments", self.session_id, self._emitted)


class LatestFrameReader:
    """Reads a video track in the background and keeps only the newest frame."""

    def __init__(self, track: MediaStreamTrack) -> None:
        self.track = track
        self._frame: Optional[VideoFrame] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def ended(self) -> bool:
        return self.track.readyState == "ended"

    def start(self) -> None:
        if self._task is None:
            self._running = True
            self._task = asyncio.create_task(self.recv_loop(), name="latest-frame-reader")

    async def recv_loop(self) -> None:
        while self._running:
            try:
                frame = await self.track.recv()
            except MediaStreamError:
                logger.warning("video track ended, no further frames")
                break
            self._frame = frame

    def latest(self) -> Optional[VideoFrame]:
        return self._frame

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._frame = None
        self.track.stop()
