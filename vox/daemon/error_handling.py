"""Failure classification and retry decisions.

This module decides what happens after a candidate fails:
- Geometric backoff for transient failures
- Permanent failure once retries are exhausted or the input is unusable
- Pausing the whole queue when the backend signals a quota limit

The controller only computes decisions; the queue applies them.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

import httpx
from loguru import logger

from .errors import (
    ConsolidationError,
    DecodeError,
    MalformedTranscript,
    NetworkError,
    RateLimited,
    TranscriptionTimeout,
    UnsupportedFormat,
)
from .models import BackoffPolicy, Candidate, RetryAction, RetryDecision


class ErrorKind(Enum):
    """How a failure should be treated."""
    RATE_LIMITED = "rate_limited"
    PERMANENT = "permanent"
    TRANSIENT = "transient"


@dataclass
class ErrorEvent:
    """Represents a failure and the decision taken for it."""
    timestamp: datetime
    candidate_hash: str
    filename: str
    error_type: str
    message: str
    action: RetryAction
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            'timestamp': self.timestamp.isoformat(),
            'candidate_hash': self.candidate_hash,
            'filename': self.filename,
            'error_type': self.error_type,
            'message': self.message,
            'action': self.action.value,
            'context': self.context
        }


def classify_error(error: BaseException) -> ErrorKind:
    """Classify a failure raised anywhere in the per-candidate pipeline."""
    if isinstance(error, RateLimited):
        return ErrorKind.RATE_LIMITED
    if isinstance(error, httpx.HTTPStatusError) and error.response.status_code == 429:
        return ErrorKind.RATE_LIMITED
    if isinstance(error, UnsupportedFormat):
        return ErrorKind.PERMANENT
    # Network, timeout, decode, malformed payloads and IO are worth another try
    return ErrorKind.TRANSIENT


def describe_error(error: BaseException) -> str:
    """Short human label used in notices."""
    if isinstance(error, RateLimited):
        return "transcription limit reached"
    if isinstance(error, (NetworkError, httpx.TransportError)):
        return "error connecting to transcription host"
    if isinstance(error, TranscriptionTimeout):
        return "transcription timed out"
    if isinstance(error, MalformedTranscript):
        return "invalid transcription response"
    if isinstance(error, UnsupportedFormat):
        return "not an audio file or unacceptable format"
    if isinstance(error, DecodeError):
        return "audio conversion failed"
    if isinstance(error, ConsolidationError):
        return "could not write output files"
    return str(error) or type(error).__name__


class RetryController:
    """Turns a failure into RETRY_AFTER, PERMANENT_FAILURE or PAUSE_QUEUE."""

    def __init__(self,
                 policy: BackoffPolicy,
                 notify: Optional[Callable[..., None]] = None,
                 window_size: int = 100):
        """
        Initialize retry controller.

        Args:
            policy: Backoff and retry limits
            notify: Callable used for user-visible notices
            window_size: Number of recent failures to keep
        """
        self.policy = policy
        self.notify = notify
        self.errors: Deque[ErrorEvent] = deque(maxlen=window_size)

    def decide(self, candidate: Candidate, retry_count: int, error: BaseException) -> RetryDecision:
        """
        Decide what to do with a failed candidate.

        Args:
            candidate: The candidate that failed
            retry_count: Failures recorded before this one
            error: The failure

        Returns:
            The decision, carrying the incremented retry count
        """
        new_count = retry_count + 1
        kind = classify_error(error)
        max_retries = self.policy.max_retries

        summary = (
            f"\"{candidate.filename}\" failed (attempt {new_count}/{max_retries}): "
            f"{type(error).__name__}: {error}"
        )

        if kind == ErrorKind.RATE_LIMITED:
            logger.warning(f"{summary}; pausing queue")
            decision = RetryDecision(RetryAction.PAUSE_QUEUE, new_count)
            self._notice("You've reached your transcription limit. The queue is paused.", "warning",
                         candidate=candidate)
        elif kind == ErrorKind.PERMANENT or new_count >= max_retries:
            if kind == ErrorKind.PERMANENT:
                # Keep unusable files out of future scans
                new_count = max(new_count, max_retries)
            logger.warning(f"{summary}; giving up")
            decision = RetryDecision(RetryAction.PERMANENT_FAILURE, new_count)
            self._notice(
                f"Failed to transcribe \"{candidate.filename}\" after {new_count} "
                f"attempt{'s' if new_count != 1 else ''}: {describe_error(error)}.",
                "error",
                candidate=candidate,
            )
        else:
            delay = self.policy.delay_ms(retry_count)
            decision = RetryDecision(RetryAction.RETRY_AFTER, new_count, delay)
            logger.debug(f"{summary}; retrying in {delay / 1000:.1f} seconds")

        self.errors.append(ErrorEvent(
            timestamp=datetime.now(),
            candidate_hash=candidate.content_hash,
            filename=candidate.filename,
            error_type=type(error).__name__,
            message=str(error),
            action=decision.action,
            context={'retry_count': new_count, 'delay_ms': decision.delay_ms}
        ))

        return decision

    def recent_errors(self, limit: int = 10) -> List[Dict]:
        return [e.to_dict() for e in list(self.errors)[-limit:]]

    def _notice(self, message: str, level: str, candidate: Candidate) -> None:
        if self.notify is not None:
            self.notify(message, level, hash=candidate.content_hash)
