"""
Sample uploads to the remote object store.

Audio segments and captured frames are written to S3 under a per-meeting
prefix. Uploads never raise: the caller gets an UploadResult and decides
whether to drop the sample.
"""

import asyncio
import logging
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from meeting_pipeline.constant import AWS_REGION, AWS_S3_BUCKET
from meeting_pipeline.models import UploadResult

logger = logging.getLogger(__name__)


def audio_chunk_key(session_id: str, index: int, ext: str = "wav") -> str:
    return f"meetings/{session_id}/audio/chunk-{index}.{ext}"


def frame_key(session_id: str, subject_id: str, timestamp_ms: int) -> str:
    return f"meetings/{session_id}/analytics/{subject_id}/{timestamp_ms}.jpg"


class SampleUploader:
    """Interface of anything that can store a sample and hand back its URL."""

    async def upload(
        self,
        payload: bytes,
        content_type: str,
        destination_key: str,
        acl: str = "private",
    ) -> UploadResult:
        raise NotImplementedError


class S3SampleUploader(SampleUploader):
    def __init__(
        self,
        bucket: Optional[str] = AWS_S3_BUCKET,
        region: str = AWS_REGION,
        client=None,
    ) -> None:
        if not bucket:
            raise ValueError("AWS_S3_BUCKET is not configured")
        self.bucket = bucket
        self.region = region
        self._client = client

    @property
    def client(self):
        # boto3 clients are thread safe once built, build lazily off the event loop path
        if self._client is None:
            self._client = boto3.client("s3", region_name=self.region)
        return self._client

    def object_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def _put(self, payload: bytes, content_type: str, key: str, acl: str) -> None:
        self.client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=payload,
            ContentType=content_type,
            ACL=acl,
        )

    async def upload(
        self,
        payload: bytes,
        content_type: str,
        destination_key: str,
        acl: str = "private",
    ) -> UploadResult:
        if not payload:
            return UploadResult(False, key=destination_key, error="empty payload")
        try:
            await asyncio.to_thread(self._put, payload, content_type, destination_key, acl)
        except (BotoCoreError, ClientError) as e:
            logger.warning("S3 upload of %s failed: %s", destination_key, e)
            return UploadResult(False, key=destination_key, error=str(e)[:200])
        url = self.object_url(destination_key)
        logger.debug("uploaded %s (%d bytes)", destination_key, len(payload))
        return UploadResult(True, url=url, key=destination_key)
