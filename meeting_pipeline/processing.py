import asyncio
import logging
from typing import Optional, Set

from aiortc import MediaStreamTrack

from meeting_pipeline.analytics_client import AnalyticsClient
from meeting_pipeline.batcher import CaptureBatcher
from meeting_pipeline.constant import (
    CAPTURE_INTERVAL_MS,
    FLUSH_INTERVAL_MS,
    SEGMENT_DURATION_MS,
)
from meeting_pipeline.models import SampleBatch, Segment
from meeting_pipeline.streaming import IndexSource, SegmentRecorder
from meeting_pipeline.uploader import SampleUploader, audio_chunk_key

logger = logging.getLogger(__name__)


class AudioProcessor:
    def __init__(
        self,
        track: MediaStreamTrack,
        session_id: str,
        uploader: SampleUploader,
        client: AnalyticsClient,
        segment_duration_ms: int = SEGMENT_DURATION_MS,
        recorder: Optional[SegmentRecorder] = None,
        next_index: Optional[IndexSource] = None,
    ) -> None:
        self.track = track
        self.session_id = session_id
        self.uploader = uploader
        self.client = client
        self.segment_duration_ms = segment_duration_ms
        self.recorder = recorder or SegmentRecorder(
            self._open_source, session_id, next_index=next_index
        )
        self._notes_requests: Set[asyncio.Task] = set()

    async def _open_source(self) -> MediaStreamTrack:
        if self.track.readyState == "ended":
            raise RuntimeError("audio track already ended")
        return self.track

    async def start(self) -> None:
        await self.recorder.start(self.handle_segment, self.segment_duration_ms)

    async def handle_segment(self, segment: Segment) -> None:
        key = audio_chunk_key(segment.session_id, segment.index)
        result = await self.uploader.upload(
            segment.payload, segment.content_type, key, acl="public-read"
        )
        if not result.success:
            logger.error("Failed to upload audio chunk %d: %s", segment.index, result.error)
            return
        logger.info("Uploaded audio chunk %d of %s", segment.index, segment.session_id)
        # transcription is best effort and must not hold up the recorder
        task = asyncio.create_task(self.client.request_notes(segment.session_id, result.url))
        self._notes_requests.add(task)
        task.add_done_callback(self._notes_requests.discard)

    async def stop(self) -> None:
        await self.recorder.stop()
        if self._notes_requests:
            await asyncio.gather(*list(self._notes_requests), return_exceptions=True)


class VideoProcessor:
    def __init__(
        self,
        track: MediaStreamTrack,
        session_id: str,
        subject_id: str,
        uploader: SampleUploader,
        client: AnalyticsClient,
        capture_interval_ms: int = CAPTURE_INTERVAL_MS,
        flush_interval_ms: int = FLUSH_INTERVAL_MS,
        batcher: Optional[CaptureBatcher] = None,
    ) -> None:
        self.track = track
        self.session_id = session_id
        self.subject_id = subject_id
        self.client = client
        self.capture_interval_ms = capture_interval_ms
        self.flush_interval_ms = flush_interval_ms
        self.batcher = batcher or CaptureBatcher(uploader)

    async def start(self) -> None:
        await self.batcher.start_session(
            self.track,
            self.session_id,
            self.subject_id,
            self.submit_batch,
            self.capture_interval_ms,
            self.flush_interval_ms,
        )

    async def submit_batch(self, batch: SampleBatch) -> None:
        reply = await self.client.submit_student_images(
            batch.session_id, batch.subject_id, batch.references
        )
        if reply is None:
            logger.error(
                "Dropped batch of %d images for %s/%s", len(batch), batch.session_id, batch.subject_id
            )
        else:
            logger.info("Submitted %d images for %s/%s", len(batch), batch.session_id, batch.subject_id)

    async def stop(self) -> None:
        await self.batcher.stop_session()
