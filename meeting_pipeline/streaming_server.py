import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Union

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from meeting_pipeline.analytics_client import AnalyticsClient
from meeting_pipeline.constant import POLL_INTERVAL_MS, STUN_URL
from meeting_pipeline.errors import PipelineError
from meeting_pipeline.log import configure_logging
from meeting_pipeline.processing import AudioProcessor, VideoProcessor
from meeting_pipeline.registry import AnalyticsRegistry
from meeting_pipeline.streaming import IndexSource
from meeting_pipeline.uploader import S3SampleUploader, SampleUploader

logger = logging.getLogger(__name__)

Processor = Union[AudioProcessor, VideoProcessor]


class Offer(BaseModel):
    sdp: str
    type: str
    session_id: str
    subject_id: str


class RosterUpdate(BaseModel):
    host_id: str
    participants: List[str]


class EndMeeting(BaseModel):
    class_name: Optional[str] = None


@dataclass
class MeetingMedia:
    """Peer connections and running processors of one meeting."""

    pcs: Set[RTCPeerConnection] = field(default_factory=set)
    processors: Set[Processor] = field(default_factory=set)


@dataclass
class PipelineState:
    client: AnalyticsClient
    uploader: SampleUploader
    poll_interval_ms: int = POLL_INTERVAL_MS
    meetings: Dict[str, MeetingMedia] = field(default_factory=dict)
    registries: Dict[str, AnalyticsRegistry] = field(default_factory=dict)
    # kept after a meeting ends so a reused session id never rewrites old chunks
    chunk_counters: Dict[str, IndexSource] = field(default_factory=dict)

    def meeting(self, session_id: str) -> MeetingMedia:
        return self.meetings.setdefault(session_id, MeetingMedia())

    def next_chunk(self, session_id: str) -> IndexSource:
        return self.chunk_counters.setdefault(session_id, itertools.count(1).__next__)

    def create_processor(
        self, session_id: str, subject_id: str, track: MediaStreamTrack
    ) -> Optional[Processor]:
        if track.kind == "audio":
            return AudioProcessor(
                track, session_id, self.uploader, self.client,
                next_index=self.next_chunk(session_id),
            )
        if track.kind == "video":
            return VideoProcessor(track, session_id, subject_id, self.uploader, self.client)
        return None

    async def attach_track(
        self, session_id: str, subject_id: str, track: MediaStreamTrack
    ) -> Optional[Processor]:
        """Start a processor for a newly received track.

        Returns None for unsupported tracks and for tracks that could not be
        started. The processor is stopped when the track ends.
        """
        processor = self.create_processor(session_id, subject_id, track)
        if processor is None:
            return None
        try:
            await processor.start()
        except PipelineError as e:
            logger.error("Could not start %s for %s/%s: %s", type(processor).__name__, session_id, subject_id, e)
            return None
        self.meeting(session_id).processors.add(processor)

        @track.on("ended")
        async def on_ended():
            await self.stop_processor(session_id, processor)

        return processor

    async def stop_processor(self, session_id: str, processor: Processor) -> bool:
        """Stop ``processor`` unless it was already stopped. Returns True if it was running."""
        media = self.meetings.get(session_id)
        if media is None or processor not in media.processors:
            return False
        media.processors.discard(processor)
        await processor.stop()
        return True

    async def drop_peer(
        self, session_id: str, pc: RTCPeerConnection, processors: Iterable[Processor]
    ) -> None:
        for processor in list(processors):
            await self.stop_processor(session_id, processor)
        await pc.close()
        media = self.meetings.get(session_id)
        if media is not None:
            media.pcs.discard(pc)

    async def end_meeting(self, session_id: str) -> None:
        """Stop every processor and peer of a meeting, then its analytics polling."""
        media = self.meetings.pop(session_id, None)
        if media is not None:
            # processors flush their last segment and batch before the peers go away
            await asyncio.gather(*(p.stop() for p in media.processors), return_exceptions=True)
            await asyncio.gather(*(pc.close() for pc in media.pcs), return_exceptions=True)
            logger.info(
                "Ended %s: stopped %d processors, closed %d peers",
                session_id, len(media.processors), len(media.pcs),
            )
        registry = self.registries.pop(session_id, None)
        if registry is not None:
            await registry.stop()

    async def close(self) -> None:
        for session_id in set(self.meetings) | set(self.registries):
            await self.end_meeting(session_id)
        await self.client.close()


def create_app(
    client: Optional[AnalyticsClient] = None,
    uploader: Optional[SampleUploader] = None,
    poll_interval_ms: int = POLL_INTERVAL_MS,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.pipeline = PipelineState(
            client=client or AnalyticsClient(),
            uploader=uploader or S3SampleUploader(),
            poll_interval_ms=poll_interval_ms,
        )
        yield
        await app.state.pipeline.close()

    app = FastAPI(lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def pipeline() -> PipelineState:
        return app.state.pipeline

    def registry_for(session_id: str) -> AnalyticsRegistry:
        registry = pipeline().registries.get(session_id)
        if registry is None:
            raise HTTPException(status_code=404, detail=f"no analytics for session {session_id}")
        return registry

    @app.post("/offer")
    async def offer(params: Offer):
        state = pipeline()
        config = RTCConfiguration(iceServers=[RTCIceServer(urls=STUN_URL)])
        pc = RTCPeerConnection(configuration=config)
        state.meeting(params.session_id).pcs.add(pc)
        owned = []

        @pc.on("track")
        async def on_track(track: MediaStreamTrack):
            processor = await state.attach_track(params.session_id, params.subject_id, track)
            if processor is not None:
                owned.append(processor)

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            if pc.connectionState in ("failed", "closed"):
                logger.info("Peer %s/%s %s", params.session_id, params.subject_id, pc.connectionState)
                await state.drop_peer(params.session_id, pc, owned)

        await pc.setRemoteDescription(RTCSessionDescription(sdp=params.sdp, type=params.type))
        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        return JSONResponse(
            {"sdp": pc.localDescription.sdp, "type": pc.localDescription.type}
        )

    @app.post("/close")
    async def close():
        state = pipeline()
        for media in list(state.meetings.values()):
            for pc in list(media.pcs):
                await pc.close()
                media.pcs.discard(pc)
        return JSONResponse({"status": "closed"})

    @app.put("/sessions/{session_id}/roster")
    async def set_roster(session_id: str, update: RosterUpdate):
        state = pipeline()
        registry = state.registries.get(session_id)
        if registry is None:
            registry = AnalyticsRegistry(
                state.client, session_id, update.host_id, state.poll_interval_ms
            )
            state.registries[session_id] = registry
            registry.set_roster(update.participants)
            await registry.start()
        else:
            registry.set_roster(update.participants)
        return {"session_id": session_id, "roster": sorted(registry.roster)}

    @app.get("/sessions/{session_id}/analytics")
    async def all_views(session_id: str):
        registry = registry_for(session_id)
        return {subject_id: view.to_dict() for subject_id, view in registry.views().items()}

    @app.get("/sessions/{session_id}/analytics/{subject_id}")
    async def view(session_id: str, subject_id: str):
        current = registry_for(session_id).get_view(subject_id)
        if current is None:
            raise HTTPException(status_code=404, detail=f"{subject_id} is not being analysed")
        return current.to_dict()

    @app.get("/sessions/{session_id}/metrics")
    async def metrics(session_id: str):
        return asdict(registry_for(session_id).metrics())

    @app.get("/sessions/{session_id}/notes")
    async def notes(session_id: str):
        text = await pipeline().client.fetch_notes(session_id)
        if text is None:
            raise HTTPException(status_code=502, detail="notes service unavailable")
        return {"notes": text}

    @app.post("/sessions/{session_id}/end")
    async def end_meeting(session_id: str, body: EndMeeting):
        state = pipeline()
        await state.end_meeting(session_id)
        incremented = False
        if body.class_name:
            incremented = await state.client.increment_leaderboard(body.class_name)
        return {"session_id": session_id, "leaderboard_incremented": incremented}

    return app


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
