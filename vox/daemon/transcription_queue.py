"""Bounded-concurrency transcription queue.

Each candidate runs strictly in sequence:

    QUEUED -> PROCESSING_AUDIO -> TRANSCRIBING -> COMPLETE

Any failure along the way goes to the RetryController, and the queue applies
its decision: re-queue after a backoff delay, mark FAILED, or mark FAILED and
pause the whole pool.
"""

import asyncio
from collections import deque
from datetime import datetime
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Protocol, Set

import aiofiles
from loguru import logger

from .bus import Event, EventBus
from .error_handling import RetryController
from .models import (
    Candidate,
    LifecycleStatus,
    RetryAction,
    RetryDecision,
    TranscriptionParams,
    TranscriptResult,
)
from .registry import CandidateRegistry


class Converter(Protocol):
    async def convert(self, data: bytes, source_ext: str) -> bytes: ...


class Transcriber(Protocol):
    async def transcribe(self, audio: bytes, params: TranscriptionParams) -> Any: ...


class Assembler(Protocol):
    async def consolidate(self, candidate: Candidate, transcript: TranscriptResult, audio: bytes) -> Any: ...


DrainedCallback = Callable[[], Any]


class TranscriptionQueue:
    """
    Worker pool driving candidates through conversion, transcription and
    consolidation.

    The pool is the only writer of lifecycle status. A content hash is held
    by at most one of: the pending deque, a worker, or a retry timer.
    """

    def __init__(self,
                 registry: CandidateRegistry,
                 retry_controller: RetryController,
                 converter: Converter,
                 transcriber: Transcriber,
                 assembler: Assembler,
                 params: Optional[TranscriptionParams] = None,
                 concurrency: int = 8,
                 bus: Optional[EventBus] = None,
                 notify: Optional[Callable[..., None]] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.registry = registry
        self.retry_controller = retry_controller
        self.converter = converter
        self.transcriber = transcriber
        self.assembler = assembler
        self.params = params or TranscriptionParams()
        self.concurrency = concurrency
        self.bus = bus
        self.notify = notify
        self._sleep = sleep

        self._pending: Deque[Candidate] = deque()
        self._pending_hashes: Set[str] = set()
        self._in_flight: Set[str] = set()
        self._retry_tasks: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._drained_callbacks: Dict[int, DrainedCallback] = {}
        self._next_callback_id = 0

        self._workers: List[asyncio.Task] = []
        self._wakeup = asyncio.Event()
        self._settled = asyncio.Event()
        self._settled.set()
        self._paused = False
        self._stopping = False

        # Statistics
        self.stats = {
            "completed": 0,
            "failed": 0,
            "retries_scheduled": 0,
        }

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Spawn the worker tasks."""
        if self._workers:
            logger.warning("Transcription queue already started")
            return

        self._stopping = False
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"vox-worker-{i}")
            for i in range(self.concurrency)
        ]
        self.registry.set_running(not self._paused)
        logger.info(f"Transcription queue started ({self.concurrency} workers)")

    async def stop(self) -> None:
        """
        Clear pending work and retry timers, then end the workers.

        In-flight candidates are allowed to finish; nothing is cancelled
        mid-call.
        """
        self._stopping = True
        self._clear_pending()
        self.registry.set_running(False)
        self._wakeup.set()

        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
            self._workers = []

        for task in list(self._background):
            task.cancel()
        logger.info("Transcription queue stopped")

    def pause(self) -> None:
        """Stop pulling new work. In-flight work continues."""
        if self._paused:
            return
        self._paused = True
        self.registry.set_running(False)
        self._emit("queue.paused", {})
        logger.info("Transcription queue paused")

    def resume(self) -> None:
        """Resume pulling work; an empty queue triggers the drained hook."""
        if not self._paused:
            return
        self._paused = False
        self.registry.set_running(True)
        self._emit("queue.resumed", {})
        logger.info("Transcription queue resumed")

        self._wakeup.set()
        if not self._pending and not self._in_flight:
            self._fire_drained()

    def reset(self) -> None:
        """Drop all pending work (not in-flight), e.g. after a config change."""
        dropped = self._clear_pending()
        logger.info(f"Transcription queue reset, dropped {dropped} pending item(s)")
        self.registry.set_running(not self._paused)

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def size(self) -> int:
        return len(self._pending)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def retries_pending(self) -> int:
        return len(self._retry_tasks)

    def is_active(self, content_hash: str) -> bool:
        """True if the queue currently holds this hash in any form."""
        return (
            content_hash in self._pending_hashes
            or content_hash in self._in_flight
            or content_hash in self._retry_tasks
        )

    async def join(self) -> None:
        """Wait until nothing is pending, in flight, awaiting retry or draining."""
        while not self._is_settled():
            await self._settled.wait()
            # Settled may flip back while drained callbacks are scheduled
            await asyncio.sleep(0)

    # -- adding work -------------------------------------------------------

    def add(self, candidate: Candidate) -> bool:
        """
        Enqueue one candidate.

        Completed and permanently failed records are not revived here, so a
        stale scan result cannot run a file twice. Use ``retry()`` for that.

        Returns:
            False if the queue already holds this candidate or it is finished
        """
        if self._stopping:
            return False
        if self.is_active(candidate.content_hash):
            logger.debug(f"{candidate.filename} already queued, skipping")
            return False
        if self.is_finished(candidate.content_hash):
            logger.debug(f"{candidate.filename} already finished, skipping")
            return False

        self.registry.transition(candidate, LifecycleStatus.QUEUED)
        self._enqueue(candidate)
        return True

    def retry(self, candidate: Candidate) -> bool:
        """
        Run a candidate again whatever its recorded status.

        The retry count is kept; counts never go down.
        """
        if self._stopping or self.is_active(candidate.content_hash):
            return False

        self.registry.transition(candidate, LifecycleStatus.QUEUED)
        self._enqueue(candidate)
        logger.info(f"Manual retry of {candidate.filename}")
        return True

    def is_finished(self, content_hash: str) -> bool:
        """True for COMPLETE records and FAILED records out of retries."""
        record = self.registry.get(content_hash)
        if record is None:
            return False
        if record.status == LifecycleStatus.COMPLETE:
            return True
        return (
            record.status == LifecycleStatus.FAILED
            and record.retry_count >= self.retry_controller.policy.max_retries
        )

    def add_batch(self, candidates: Iterable[Candidate]) -> int:
        """Enqueue many candidates; returns the number actually added."""
        added = sum(1 for candidate in candidates if self.add(candidate))
        if added and self.notify is not None:
            self.notify(f"Added {added} file{'s' if added > 1 else ''} to the transcription queue.")
        return added

    def on_drained(self, callback: DrainedCallback) -> Callable[[], None]:
        """
        Register a callback for when the queue runs dry.

        Coroutine callbacks are scheduled as tasks. Returns an unsubscribe
        function.
        """
        callback_id = self._next_callback_id
        self._next_callback_id += 1
        self._drained_callbacks[callback_id] = callback
        return lambda: self._drained_callbacks.pop(callback_id, None)

    # -- internals ---------------------------------------------------------

    def _enqueue(self, candidate: Candidate) -> None:
        if self._stopping:
            return
        self._pending.append(candidate)
        self._pending_hashes.add(candidate.content_hash)
        self._update_settled()
        self._wakeup.set()

    def _clear_pending(self) -> int:
        dropped = len(self._pending)
        self._pending.clear()
        self._pending_hashes.clear()

        for task in self._retry_tasks.values():
            task.cancel()
        dropped += len(self._retry_tasks)
        self._retry_tasks.clear()

        self._update_settled()
        return dropped

    async def _next_candidate(self) -> Optional[Candidate]:
        while True:
            if self._stopping:
                return None
            if not self._paused and self._pending:
                candidate = self._pending.popleft()
                self._pending_hashes.discard(candidate.content_hash)
                return candidate
            self._wakeup.clear()
            await self._wakeup.wait()

    async def _worker(self, index: int) -> None:
        while True:
            candidate = await self._next_candidate()
            if candidate is None:
                return

            self._in_flight.add(candidate.content_hash)
            self._update_settled()
            try:
                await self.process(candidate)
            except Exception as e:
                # process() routes its own failures; this guards the pool itself
                logger.exception(f"Worker {index} crashed on {candidate.filename}: {e}")
            finally:
                self._in_flight.discard(candidate.content_hash)
                self._after_task()

    async def process(self, candidate: Candidate) -> None:
        """Run one candidate through the state machine."""
        try:
            self.registry.transition(candidate, LifecycleStatus.PROCESSING_AUDIO)
            async with aiofiles.open(candidate.path, 'rb') as f:
                raw = await f.read()
            audio = await self.converter.convert(raw, candidate.extension)

            self.registry.transition(candidate, LifecycleStatus.TRANSCRIBING)
            payload = await self.transcriber.transcribe(audio, self.params)
            transcript = TranscriptResult.from_payload(payload)

            result = await self.assembler.consolidate(candidate, transcript, audio)
        except Exception as e:
            self._handle_failure(candidate, e)
            return

        self.registry.transition(candidate, LifecycleStatus.COMPLETE)
        self.stats["completed"] += 1
        logger.info(f"Transcription complete: {candidate.filename} -> {getattr(result, 'markdown_path', result)}")
        if self.notify is not None:
            self.notify(f"Transcription complete: {candidate.filename}", hash=candidate.content_hash)

    def _handle_failure(self, candidate: Candidate, error: Exception) -> None:
        record = self.registry.get(candidate.content_hash)
        retry_count = record.retry_count if record else 0

        decision = self.retry_controller.decide(candidate, retry_count, error)
        self._apply(candidate, decision)

    def _apply(self, candidate: Candidate, decision: RetryDecision) -> None:
        self.registry.upsert(
            candidate,
            retry_count=decision.retry_count,
            last_retry_at=datetime.now(),
        )

        if decision.action == RetryAction.RETRY_AFTER:
            self.registry.transition(candidate, LifecycleStatus.QUEUED)
            self._schedule_retry(candidate, decision.delay_ms)
            return

        self.registry.transition(candidate, LifecycleStatus.FAILED)
        self.stats["failed"] += 1
        if decision.action == RetryAction.PAUSE_QUEUE:
            self.pause()

    def _schedule_retry(self, candidate: Candidate, delay_ms: int) -> None:
        if self._stopping:
            return
        task = asyncio.create_task(self._retry_after(candidate, delay_ms))
        self._retry_tasks[candidate.content_hash] = task
        self.stats["retries_scheduled"] += 1
        self._update_settled()

    async def _retry_after(self, candidate: Candidate, delay_ms: int) -> None:
        try:
            await self._sleep(delay_ms / 1000)
        except asyncio.CancelledError:
            return
        if self._retry_tasks.get(candidate.content_hash) is not asyncio.current_task():
            return
        del self._retry_tasks[candidate.content_hash]
        self._enqueue(candidate)
        self._update_settled()

    def _after_task(self) -> None:
        if not self._pending and not self._in_flight and not self._paused and not self._stopping:
            self._fire_drained()
        self._update_settled()

    def _fire_drained(self) -> None:
        logger.debug("Transcription queue drained")
        self._emit("queue.drained", {"retries_pending": len(self._retry_tasks)})

        for callback in list(self._drained_callbacks.values()):
            result = callback()
            if asyncio.iscoroutine(result):
                task = asyncio.create_task(result)
                self._background.add(task)
                task.add_done_callback(self._background_done)
        self._update_settled()

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Drained callback failed: {task.exception()}")
        self._update_settled()

    def _is_settled(self) -> bool:
        return not (self._pending or self._in_flight or self._retry_tasks or self._background)

    def _update_settled(self) -> None:
        if self._is_settled():
            self._settled.set()
        else:
            self._settled.clear()

    def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.bus is not None:
            self.bus.emit_nowait(Event(type=event_type, data=data, source="transcription_queue"))
