"""
Intake watcher for newly created recordings.

Polls the watch directory for paths it has not seen before, waits for each
to finish writing, and hands it to the transcription queue.
"""

import asyncio
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional, Set

from loguru import logger

from .discovery import CandidateDiscovery, TranscribedIndex
from .errors import FileMissing, StatUnavailable
from .stability import LocalStatProvider, StatProvider, await_stability
from .transcription_queue import TranscriptionQueue


class IntakeWatcher:
    """Background worker that feeds new files into the queue."""

    def __init__(
        self,
        watch_directory: Path,
        discovery: CandidateDiscovery,
        queue: TranscriptionQueue,
        load_transcribed: Callable[[], Awaitable[TranscribedIndex]],
        stat_provider: Optional[StatProvider] = None,
        poll_interval_s: float = 2.0,
        quiet_period_ms: int = 3000,
        check_interval_ms: int = 1000,
        stability_timeout_ms: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.watch_directory = watch_directory
        self.discovery = discovery
        self.queue = queue
        self.load_transcribed = load_transcribed
        self.stat_provider = stat_provider or LocalStatProvider()
        self.poll_interval_s = poll_interval_s
        self.quiet_period_ms = quiet_period_ms
        self.check_interval_ms = check_interval_ms
        self.stability_timeout_ms = stability_timeout_ms
        self._clock = clock
        self._sleep = sleep

        self.running = False
        self.task: Optional[asyncio.Task] = None
        self._seen: Set[Path] = set()
        self._pending: Set[asyncio.Task] = set()

        self.stats = {
            "detected": 0,
            "queued": 0,
            "unstable": 0,
        }

    async def start(self) -> None:
        """Start polling. Files already present are left to discovery."""
        if self.running:
            return

        self._seen = set(await self._list_files())
        self.running = True
        self.task = asyncio.create_task(self._run_loop())
        logger.info(f"Intake watcher started on {self.watch_directory} (interval: {self.poll_interval_s}s)")

    async def stop(self) -> None:
        self.running = False
        tasks = [t for t in (self.task, *self._pending) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.task = None
        self._pending.clear()
        logger.info("Intake watcher stopped")

    async def _run_loop(self) -> None:
        while self.running:
            try:
                await self.poll_once()
                await self._sleep(self.poll_interval_s)
            except asyncio.CancelledError:
                break
            except OSError as e:
                logger.error(f"Intake poll failed: {e}")
                await self._sleep(self.poll_interval_s)

    async def poll_once(self) -> int:
        """
        Start intake for every unseen path.

        Returns:
            Number of new paths detected
        """
        current = set(await self._list_files())
        new_paths = sorted(current - self._seen)
        # Forget deleted paths so a re-created file is picked up again
        self._seen &= current

        for path in new_paths:
            self._seen.add(path)
            self.stats["detected"] += 1
            task = asyncio.create_task(self.handle(path))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        if new_paths:
            logger.debug(f"Intake detected {len(new_paths)} new file(s)")
        return len(new_paths)

    async def handle(self, path: Path) -> bool:
        """Wait for one file to settle, then queue it unless already transcribed."""
        try:
            await self._await_stable(path)
        except (FileMissing, StatUnavailable) as e:
            logger.warning(f"Skipping {path.name}: {e}")
            self._unstable(path)
            return False
        except asyncio.TimeoutError:
            logger.warning(
                f"Skipping {path.name}: not stable within {self.stability_timeout_ms}ms"
            )
            self._unstable(path)
            return False

        try:
            transcribed = await self.load_transcribed()
            candidate, is_transcribed = await self.discovery.transcribed_status(path, transcribed)
        except OSError as e:
            logger.warning(f"Failed to inspect {path}: {e}")
            self._unstable(path)
            return False

        if is_transcribed:
            logger.debug(f"{path.name} already transcribed, not queueing")
            return False
        if self.discovery.has_exceeded_max_retries(candidate.content_hash):
            logger.debug(f"{path.name} exhausted its retries, not queueing")
            return False

        added = self.queue.add(candidate)
        if added:
            self.stats["queued"] += 1
            logger.info(f"Queued new recording {path.name}")
        return added

    async def _await_stable(self, path: Path) -> None:
        waiter = await_stability(
            path,
            self.stat_provider,
            quiet_period_ms=self.quiet_period_ms,
            poll_interval_ms=self.check_interval_ms,
            clock=self._clock,
            sleep=self._sleep,
        )
        if self.stability_timeout_ms is None:
            await waiter
        else:
            await asyncio.wait_for(waiter, timeout=self.stability_timeout_ms / 1000)

    def _unstable(self, path: Path) -> None:
        self.stats["unstable"] += 1
        # Let a later poll try again if the file is still there
        self._seen.discard(path)

    async def _list_files(self):
        return await asyncio.to_thread(
            lambda: list(self.discovery.iter_files(self.watch_directory))
        )
