"""
Value types shared by the recorder, the batcher and the analytics poller.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple


def parse_timestamp(value: Any) -> datetime:
    """Parse an ISO-8601 string or an epoch number into an aware UTC datetime.

    Naive timestamps are taken to be UTC. Epoch values above 1e12 are read as
    milliseconds.
    """
    if isinstance(value, bool):
        raise TypeError(f"invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e12 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        raise TypeError(f"invalid timestamp: {value!r}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class Segment:
    """One closed audio segment produced by SegmentRecorder."""

    payload: bytes
    index: int
    session_id: str
    content_type: str = "audio/wav"


@dataclass(frozen=True)
class SampleBatch:
    session_id: str
    subject_id: str
    references: Tuple[str, ...]

    def __len__(self) -> int:
        return len(self.references)


@dataclass
class UploadResult:
    success: bool
    url: str = ""
    key: str = ""
    error: str = ""


@dataclass(frozen=True)
class AnalysisResult:
    timestamp: datetime
    attentiveness_rating: float
    eye_contact_score: float
    posture_score: float
    focus_duration: float
    comment: str = ""

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "AnalysisResult":
        """Build a result from a /job_status body.

        Raises KeyError, TypeError or ValueError when the body is malformed.
        """
        if not isinstance(payload, dict):
            raise TypeError(f"expected a JSON object, got {type(payload).__name__}")
        return cls(
            timestamp=parse_timestamp(payload["timestamp"]),
            attentiveness_rating=float(payload["attentiveness_rating"]),
            eye_contact_score=float(payload["eye_contact_score"]),
            posture_score=float(payload["posture_score"]),
            focus_duration=float(payload["focus_duration"]),
            comment=str(payload.get("comment") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "attentiveness_rating": self.attentiveness_rating,
            "eye_contact_score": self.eye_contact_score,
            "posture_score": self.posture_score,
            "focus_duration": self.focus_duration,
            "comment": self.comment,
        }

    def is_newer_than(self, other: Optional["AnalysisResult"]) -> bool:
        return other is None or self.timestamp > other.timestamp


@dataclass(frozen=True)
class AnalyticsMetrics:
    """Aggregate over the latest result of every analysed participant."""

    total_entries: int = 0
    average_attentiveness: float = 0.0
    average_eye_contact: float = 0.0
    average_posture: float = 0.0
    total_focus_duration: float = 0.0
    latest_comment: str = ""

    @classmethod
    def from_results(cls, results: Iterable[AnalysisResult]) -> "AnalyticsMetrics":
        results = list(results)
        if not results:
            return cls()
        count = len(results)
        latest = max(results, key=lambda r: r.timestamp)
        return cls(
            total_entries=count,
            average_attentiveness=sum(r.attentiveness_rating for r in results) / count,
            average_eye_contact=sum(r.eye_contact_score for r in results) / count,
            average_posture=sum(r.posture_score for r in results) / count,
            total_focus_duration=sum(r.focus_duration for r in results),
            latest_comment=latest.comment,
        )


class PollStatus(enum.Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    FAILED = "failed"
    DECODE_ERROR = "decode_error"


@dataclass(frozen=True)
class PollOutcome:
    """Typed result of one /job_status request."""

    status: PollStatus
    result: Optional[AnalysisResult] = None
    error: str = ""

    @property
    def is_error(self) -> bool:
        return self.status in (PollStatus.FAILED, PollStatus.DECODE_ERROR)


@dataclass(frozen=True)
class ViewState:
    """What the host sees for one participant."""

    loading: bool = True
    error: str = ""
    result: Optional[AnalysisResult] = field(default=None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "loading": self.loading,
            "error": self.error,
            "result": self.result.to_dict() if self.result else None,
        }


def job_id_for(session_id: str, subject_id: str) -> str:
    return f"{session_id}_{subject_id}"
