"""In-memory status map of every candidate seen this session."""

from datetime import datetime
from typing import Callable, Dict, Optional

import ulid
from loguru import logger

from .models import Candidate, LifecycleRecord, LifecycleStatus, QueueState

StatusObserver = Callable[[QueueState], None]


class CandidateRegistry:
    """
    Lifecycle records keyed by content hash.

    Records are never removed within a session. Every mutation fans out to all
    subscribers synchronously; subscribers must not raise.
    """

    _MUTABLE_FIELDS = {"status", "retry_count", "last_retry_at", "finalized_at"}

    def __init__(self, now: Callable[[], datetime] = datetime.now):
        self._items: Dict[str, LifecycleRecord] = {}
        self._subscribers: Dict[str, StatusObserver] = {}
        self._now = now
        self.running = True

    def get(self, content_hash: str) -> Optional[LifecycleRecord]:
        return self._items.get(content_hash)

    def __contains__(self, content_hash: str) -> bool:
        return content_hash in self._items

    def __len__(self) -> int:
        return len(self._items)

    def upsert(self, candidate: Candidate, **patch) -> LifecycleRecord:
        """
        Create or update the record for a candidate.

        Raises:
            ValueError: On unknown fields or a decreasing retry count
        """
        unknown = set(patch) - self._MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot patch fields: {sorted(unknown)}")

        record = self._items.get(candidate.content_hash)
        if record is None:
            record = LifecycleRecord(
                hash=candidate.content_hash,
                candidate=candidate,
                added_at=self._now(),
            )
            self._items[candidate.content_hash] = record
        else:
            # Keep the latest location for renamed files
            record.candidate = candidate

        retry_count = patch.get("retry_count")
        if retry_count is not None and retry_count < record.retry_count:
            raise ValueError(
                f"retry_count cannot decrease ({record.retry_count} -> {retry_count})"
            )

        for key, value in patch.items():
            setattr(record, key, value)

        self._notify()
        return record

    def transition(self, candidate: Candidate, status: LifecycleStatus) -> LifecycleRecord:
        """
        Move a candidate to a new status.

        The single place where ``finalized_at`` is stamped: set on entering a
        terminal status, cleared when a record is revived.
        """
        record = self._items.get(candidate.content_hash)
        if status.is_terminal:
            if record is not None and record.status == status and record.finalized_at:
                finalized_at = record.finalized_at
            else:
                finalized_at = self._now()
        else:
            finalized_at = None

        logger.debug(f"{candidate.filename} [{candidate.content_hash[:8]}] -> {status.value}")
        return self.upsert(candidate, status=status, finalized_at=finalized_at)

    def set_running(self, running: bool) -> None:
        self.running = running
        self._notify()

    def snapshot(self) -> QueueState:
        return QueueState(running=self.running, items=dict(self._items))

    def counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in LifecycleStatus}
        for record in self._items.values():
            counts[record.status.value] += 1
        return counts

    def subscribe(self, callback: StatusObserver) -> Callable[[], None]:
        """Subscribe to state changes. Returns an unsubscribe function."""
        subscriber_id = str(ulid.ULID())
        self._subscribers[subscriber_id] = callback
        return lambda: self._subscribers.pop(subscriber_id, None)

    def _notify(self) -> None:
        state = self.snapshot()
        for callback in list(self._subscribers.values()):
            callback(state)
