"""Data models for the vox transcription daemon."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import MalformedTranscript


class LifecycleStatus(str, Enum):
    """Lifecycle of a candidate within one session."""
    QUEUED = "QUEUED"
    PROCESSING_AUDIO = "PROCESSING_AUDIO"
    TRANSCRIBING = "TRANSCRIBING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (LifecycleStatus.COMPLETE, LifecycleStatus.FAILED)


@dataclass(frozen=True)
class Candidate:
    """
    A file considered for transcription.

    Identity is the content hash, so a renamed or moved file maps onto the
    same lifecycle record.
    """
    path: Path
    content_hash: str

    @property
    def filename(self) -> str:
        return self.path.name

    @property
    def name(self) -> str:
        return self.path.stem

    @property
    def extension(self) -> str:
        return self.path.suffix.lower()

    @property
    def directory(self) -> Path:
        return self.path.parent


@dataclass
class LifecycleRecord:
    """Mutable tracking state for one candidate, keyed by content hash."""
    hash: str
    candidate: Candidate
    status: LifecycleStatus = LifecycleStatus.QUEUED
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    added_at: datetime = field(default_factory=datetime.now)
    finalized_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'hash': self.hash,
            'path': str(self.candidate.path),
            'status': self.status.value,
            'retry_count': self.retry_count,
            'last_retry_at': self.last_retry_at.isoformat() if self.last_retry_at else None,
            'added_at': self.added_at.isoformat(),
            'finalized_at': self.finalized_at.isoformat() if self.finalized_at else None,
        }


@dataclass
class QueueState:
    """Snapshot handed to status observers."""
    running: bool
    items: Dict[str, LifecycleRecord]


@dataclass
class TranscriptionParams:
    temperature: str = "0.0"
    temperature_inc: str = "0.2"


@dataclass
class TranscriptResult:
    """
    A validated transcription.

    Segments are kept as returned by the backend; they are normalised into a
    single shape at the markdown boundary.
    """
    text: str
    language: Optional[str]
    segments: List[Any]
    duration: Optional[float] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "TranscriptResult":
        """
        Validate a backend payload.

        A 200 response is not proof of success: the text must be non-empty and
        there must be at least one segment.

        Raises:
            MalformedTranscript: If any required field is missing or empty
        """
        if not isinstance(payload, dict):
            raise MalformedTranscript(f"Expected a JSON object, got {type(payload).__name__}")

        text = payload.get('text')
        segments = payload.get('segments')

        if not isinstance(text, str) or not text.strip():
            raise MalformedTranscript("Transcript is missing its text")
        if not isinstance(segments, list):
            raise MalformedTranscript("Transcript is missing its segments")
        if not segments:
            raise MalformedTranscript("Transcript returned an empty segments array")

        return cls(
            text=text,
            language=payload.get('language'),
            segments=segments,
            duration=payload.get('duration'),
        )


@dataclass(frozen=True)
class BackoffPolicy:
    """Geometric backoff configuration. Holds no state of its own."""
    base_delay_ms: int
    max_delay_ms: int
    max_retries: int

    def delay_ms(self, retry_count: int) -> int:
        """
        Delay before the next attempt.

        Args:
            retry_count: Failures recorded before the current one (0-based)
        """
        return min(self.base_delay_ms * (2 ** retry_count), self.max_delay_ms)


class RetryAction(Enum):
    RETRY_AFTER = "retry_after"
    PERMANENT_FAILURE = "permanent_failure"
    PAUSE_QUEUE = "pause_queue"


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a failure; applied by the queue."""
    action: RetryAction
    retry_count: int
    delay_ms: Optional[int] = None


@dataclass(frozen=True)
class FileStabilitySample:
    size: int
    observed_at: float
