"""Main daemon process for vox."""

import asyncio
import signal
import sys
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import psutil
import yaml
from loguru import logger
from pydantic import ValidationError

from .audio import FFmpegConverter
from .bus import EventBus, Notifier
from .config import Config, LoggingConfig, VOX_VERSION
from .discovery import CandidateDiscovery, TranscribedIndex
from .error_handling import RetryController
from .intake import IntakeWatcher
from .markdown import MarkdownAssembler
from .models import Candidate, TranscriptionParams
from .registry import CandidateRegistry
from .transcriber import HttpTranscriber, LocalTranscriber, create_transcriber
from .transcription_queue import Assembler, Converter, Transcriber, TranscriptionQueue

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


class VoxDaemon:
    """Main daemon coordinating intake, discovery and the transcription queue."""

    def __init__(self,
                 config: Config,
                 converter: Optional[Converter] = None,
                 transcriber: Optional[Transcriber] = None,
                 assembler: Optional[Assembler] = None):
        self.config = config
        self.start_time = datetime.now()
        self.running = False

        self.event_bus = EventBus()
        self.notify = Notifier(self.event_bus)
        self.registry = CandidateRegistry()

        self.converter = converter or FFmpegConverter(
            binary=config.ffmpeg_binary,
            extensions=config.audio_extensions,
        )
        self.transcriber = transcriber or create_transcriber(config.transcription)
        self.assembler = assembler or MarkdownAssembler(
            config.watch_directory,
            config.output_directory,
            config.output,
        )

        self._build_pipeline()
        self._unsubscribe_drained = None

    def _build_pipeline(self) -> None:
        config = self.config
        self.retry_controller = RetryController(config.retry.policy(), notify=self.notify)
        self.queue = TranscriptionQueue(
            self.registry,
            self.retry_controller,
            self.converter,
            self.transcriber,
            self.assembler,
            params=TranscriptionParams(
                temperature=config.transcription.temperature,
                temperature_inc=config.transcription.temperature_inc,
            ),
            concurrency=config.queue.concurrency,
            bus=self.event_bus,
            notify=self.notify,
        )
        self.discovery = CandidateDiscovery(
            self.registry,
            config.retry.policy(),
            config.audio_extensions,
            batch_size=config.queue.batch_size,
            queue=self.queue,
        )
        self.intake = IntakeWatcher(
            config.watch_directory,
            self.discovery,
            self.queue,
            self.load_transcribed,
            poll_interval_s=config.intake_poll_interval_s,
            quiet_period_ms=config.stability.file_stability_delay_ms,
            check_interval_ms=config.stability.file_stability_check_interval_ms,
            stability_timeout_ms=config.stability.file_stability_timeout_ms,
        )

    async def start(self) -> None:
        """Start all daemon services and queue whatever is waiting."""
        logger.info("Starting vox daemon...")

        # A local model that cannot load fails the start
        load = getattr(self.transcriber, "load", None)
        if load is not None:
            await load()

        await self.event_bus.start()
        await self.queue.start()
        self._unsubscribe_drained = self.queue.on_drained(self.queue_unprocessed)
        await self.intake.start()
        self.running = True

        await self.queue_unprocessed()
        logger.info(f"vox daemon started, watching {self.config.watch_directory}")

    async def stop(self) -> None:
        """Stop all daemon services."""
        if not self.running:
            return
        self.running = False
        logger.info("Stopping vox daemon...")

        if self._unsubscribe_drained is not None:
            self._unsubscribe_drained()
            self._unsubscribe_drained = None
        await self.intake.stop()
        await self.queue.stop()
        await self.event_bus.stop()

        aclose = getattr(self.transcriber, "aclose", None)
        if aclose is not None:
            await aclose()

        logger.info("vox daemon stopped")

    async def load_transcribed(self) -> TranscribedIndex:
        return await TranscribedIndex.load(self.config.output_directory)

    async def discover(self) -> List[Candidate]:
        """Scan the watch directory without queueing anything."""
        transcribed = await self.load_transcribed()
        return await self.discovery.scan(self.config.watch_directory, transcribed)

    async def queue_unprocessed(self) -> int:
        """Scan for a fresh batch and add it to the queue."""
        if self.queue.paused:
            logger.debug("Queue paused, skipping scan")
            return 0
        candidates = await self.discover()
        return self.queue.add_batch(candidates)

    async def reload(self, config: Config) -> None:
        """
        Apply a new configuration.

        Pending work is dropped and rediscovered under the new settings;
        in-flight work finishes with the old collaborators.
        """
        logger.info("Reloading configuration")
        was_running = self.running
        if was_running:
            await self.stop()

        self.config = config
        if isinstance(self.converter, FFmpegConverter):
            self.converter = FFmpegConverter(config.ffmpeg_binary, config.audio_extensions)
        if isinstance(self.transcriber, (HttpTranscriber, LocalTranscriber)):
            await self.transcriber.aclose()
            self.transcriber = create_transcriber(config.transcription)
        if isinstance(self.assembler, MarkdownAssembler):
            self.assembler = MarkdownAssembler(
                config.watch_directory, config.output_directory, config.output,
            )

        self.queue.reset()
        self.event_bus = EventBus()
        self.notify = Notifier(self.event_bus)
        self._build_pipeline()

        if was_running:
            await self.start()

    def get_status(self) -> dict:
        """Get daemon status and statistics."""
        process = psutil.Process()
        uptime = (datetime.now() - self.start_time).total_seconds()
        state = self.registry.snapshot()

        return {
            "status": "running" if self.running else "stopped",
            "version": VOX_VERSION,
            "uptime": f"{uptime:.0f}s",
            "queue": {
                "running": state.running,
                "paused": self.queue.paused,
                "pending": self.queue.size,
                "in_flight": self.queue.in_flight,
                "retries_pending": self.queue.retries_pending,
                "counts": self.registry.counts(),
            },
            "stats": {
                **self.queue.stats,
                **{f"intake_{k}": v for k, v in self.intake.stats.items()},
                "memory_mb": process.memory_info().rss / 1024 / 1024,
            },
            "config": {
                "watch_directory": str(self.config.watch_directory),
                "output_directory": str(self.config.output_directory),
                "transcription_mode": self.config.transcription.mode,
                "endpoint": self.config.transcription.endpoint,
                "concurrency": self.config.queue.concurrency,
            },
        }


def setup_logging(config: Optional[LoggingConfig] = None, verbose: bool = False) -> None:
    config = config or LoggingConfig()
    logger.remove()
    logger.add(
        sys.stderr,
        format=LOG_FORMAT,
        level="DEBUG" if verbose else config.level,
    )

    if config.log_dir is not None:
        log_dir = Path(config.log_dir).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_dir / "daemon.log",
            rotation="1 day",
            retention="7 days",
            level="DEBUG",
        )


async def main(config_path: Optional[str] = None, verbose: bool = False):
    """Main entry point for the daemon."""
    setup_logging(verbose=verbose)

    # Load configuration
    try:
        if config_path:
            config = Config.load(Path(config_path))
        else:
            config = Config.load()
    except (FileNotFoundError, ValidationError, yaml.YAMLError) as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    setup_logging(config.logging, verbose=verbose)

    daemon = VoxDaemon(config)
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    try:
        await daemon.start()
        await stop_event.wait()
        logger.info("Shutdown signal received")
    except Exception as e:
        logger.exception(f"Daemon error: {e}")
    finally:
        await daemon.stop()


if __name__ == "__main__":
    asyncio.run(main())
