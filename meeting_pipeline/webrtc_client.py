import argparse
import asyncio
import json
import logging
from aiortc import (
    RTCPeerConnection,
    RTCSessionDescription,
    RTCConfiguration,
    RTCIceServer,
)
from aiortc.contrib.media import MediaPlayer
import aiohttp

from meeting_pipeline.constant import STUN_URL
from meeting_pipeline.log import configure_logging

logger = logging.getLogger(__name__)

SIGNALLING_SERVER = "http://localhost:8000/offer"


def offer_payload(pc: RTCPeerConnection, session_id: str, subject_id: str) -> dict:
    return {
        "sdp": pc.localDescription.sdp,
        "type": pc.localDescription.type,
        "session_id": session_id,
        "subject_id": subject_id,
    }


async def client_request(
    session_id: str,
    subject_id: str,
    server: str = SIGNALLING_SERVER,
    video_device: str = "/dev/video0",
    audio_device: str = "default",
    duration: float = 3600,
):
    config = RTCConfiguration(iceServers=[RTCIceServer(urls=STUN_URL)])
    pc = RTCPeerConnection(configuration=config)
    player = MediaPlayer(
        video_device, format="v4l2", options={"video_size": "1280x720"}
    )
    mic = MediaPlayer(audio_device, format="pulse")
    pc.addTrack(player.video)
    pc.addTrack(mic.audio)

    offer = await pc.createOffer()
    await pc.setLocalDescription(offer)

    async with aiohttp.ClientSession() as session:
        async with session.post(
            server,
            data=json.dumps(offer_payload(pc, session_id, subject_id)),
            headers={"Content-Type": "application/json"},
        ) as response:
            response.raise_for_status()
            answer = await response.json()

    await pc.setRemoteDescription(
        RTCSessionDescription(sdp=answer["sdp"], type=answer["type"])
    )
    logger.info("Streaming %s/%s to %s", session_id, subject_id, server)
    try:
        await asyncio.sleep(duration)
    finally:
        await pc.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Publish camera and microphone to the analytics server.")
    parser.add_argument("session_id")
    parser.add_argument("subject_id")
    parser.add_argument("--server", default=SIGNALLING_SERVER)
    parser.add_argument("--video", default="/dev/video0")
    parser.add_argument("--audio", default="default")
    parser.add_argument("--duration", type=float, default=3600)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(
        client_request(args.session_id, args.subject_id, args.server, args.video, args.audio, args.duration)
    )
