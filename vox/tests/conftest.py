"""Shared fixtures for vox tests."""

from typing import Optional

import pytest

from vox.daemon.config import Config
from vox.daemon.error_handling import RetryController
from vox.daemon.models import BackoffPolicy
from vox.daemon.registry import CandidateRegistry
from vox.daemon.transcription_queue import TranscriptionQueue
from vox.tests.helpers import FakeAssembler, FakeConverter, FakeTranscriber, RecordingSleep


@pytest.fixture
def watch_dir(tmp_path):
    path = tmp_path / "recordings"
    path.mkdir()
    return path


@pytest.fixture
def output_dir(tmp_path):
    path = tmp_path / "notes"
    path.mkdir()
    return path


@pytest.fixture
def test_config(watch_dir, output_dir):
    """Create test configuration."""
    return Config(watch_directory=watch_dir, output_directory=output_dir)


@pytest.fixture
def registry():
    return CandidateRegistry()


@pytest.fixture
def policy():
    return BackoffPolicy(base_delay_ms=1000, max_delay_ms=300000, max_retries=3)


@pytest.fixture
def retry_sleep():
    return RecordingSleep()


@pytest.fixture
def build_queue(registry, policy, retry_sleep):
    """Factory for a queue wired to fakes. Tests stop what they start."""

    def factory(converter=None, transcriber=None, assembler=None,
                concurrency: int = 2, retry_policy: Optional[BackoffPolicy] = None,
                notify=None, bus=None) -> TranscriptionQueue:
        queue = TranscriptionQueue(
            registry,
            RetryController(retry_policy or policy, notify=notify),
            converter or FakeConverter(),
            transcriber or FakeTranscriber(),
            assembler or FakeAssembler(),
            concurrency=concurrency,
            bus=bus,
            notify=notify,
            sleep=retry_sleep,
        )
        return queue

    return factory
