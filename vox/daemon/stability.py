"""Wait for freshly created files to stop growing before reading them."""

import asyncio
import time
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Protocol

import aiofiles.os
from loguru import logger

from .errors import FileMissing, StatUnavailable
from .models import FileStabilitySample


class StatProvider(Protocol):
    async def exists(self, path: Path) -> bool: ...

    async def size(self, path: Path) -> Optional[int]: ...


class LocalStatProvider:
    """Stat provider backed by the local filesystem."""

    async def exists(self, path: Path) -> bool:
        return await aiofiles.os.path.exists(path)

    async def size(self, path: Path) -> Optional[int]:
        try:
            stat = await aiofiles.os.stat(path)
        except FileNotFoundError:
            return None
        return stat.st_size


async def await_stability(
    path: Path,
    stat_provider: StatProvider,
    quiet_period_ms: int = 3000,
    poll_interval_ms: int = 1000,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    """
    Poll a file's size until it is non-zero and unchanged for the quiet period.

    There is no overall deadline: a file that keeps growing is polled until it
    stops. Callers that need one wrap this in ``asyncio.wait_for``.

    Args:
        path: File to watch
        stat_provider: Source of existence and size information
        quiet_period_ms: How long the size must hold still
        poll_interval_ms: Delay between polls
        clock: Monotonic time source in seconds
        sleep: Coroutine used between polls

    Raises:
        FileMissing: If the file disappears
        StatUnavailable: If the file exists but has no size
    """
    quiet_period = quiet_period_ms / 1000
    interval = poll_interval_ms / 1000

    last_size: Optional[int] = None
    stable_since: Optional[float] = None
    samples: List[FileStabilitySample] = []

    while True:
        if not await stat_provider.exists(path):
            raise FileMissing(f"File does not exist: {path}")

        size = await stat_provider.size(path)
        if size is None:
            raise StatUnavailable(f"Could not get stats for file: {path}")

        now = clock()
        samples.append(FileStabilitySample(size=size, observed_at=now))

        if size == 0:
            # An empty file may be about to be written to
            last_size = None
            stable_since = None
        elif size != last_size:
            last_size = size
            stable_since = now
        elif stable_since is not None and now - stable_since >= quiet_period:
            logger.debug(
                f"{path} stable at {size} bytes after {len(samples)} samples"
            )
            return

        await sleep(interval)
