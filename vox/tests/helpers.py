"""Fakes and helpers shared by vox tests."""

import asyncio
import hashlib
from pathlib import Path
from typing import Any, List, Optional

from vox.daemon.models import Candidate

GOOD_PAYLOAD = {
    "text": "Hello there. This is a test.",
    "language": "en",
    "segments": [
        {"id": 0, "start": 0.0, "end": 1.2, "text": " Hello there."},
        {"id": 1, "start": 1.2, "end": 2.5, "text": " This is a test."},
    ],
}


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class RecordingSleep:
    """Records requested delays and returns on the next loop iteration."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class FakeConverter:
    def __init__(self, errors: Optional[List[Optional[Exception]]] = None):
        self.errors = list(errors or [])
        self.calls: List[str] = []

    async def convert(self, data: bytes, source_ext: str) -> bytes:
        self.calls.append(source_ext)
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        return b"WAV:" + data


class FakeTranscriber:
    """Returns scripted results in order, then ``default`` forever."""

    def __init__(self, results: Optional[List[Any]] = None, default: Any = None):
        self.results = list(results or [])
        self.default = GOOD_PAYLOAD if default is None else default
        self.calls: List[bytes] = []

    async def transcribe(self, audio: bytes, params) -> Any:
        self.calls.append(audio)
        result = self.results.pop(0) if self.results else self.default
        if isinstance(result, Exception):
            raise result
        return result


class FailingTranscriber(FakeTranscriber):
    def __init__(self, error: Exception):
        super().__init__()
        self.error = error

    async def transcribe(self, audio: bytes, params) -> Any:
        self.calls.append(audio)
        raise self.error


class FakeAssembler:
    def __init__(self):
        self.consolidated: List[Candidate] = []

    async def consolidate(self, candidate, transcript, audio):
        self.consolidated.append(candidate)
        return candidate.path.with_suffix(".md")


def sha1(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def write_audio(directory: Path, name: str, content: bytes = b"audio-bytes") -> Path:
    path = directory / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def make_candidate(directory: Path, name: str, content: Optional[bytes] = None) -> Candidate:
    content = content if content is not None else name.encode()
    path = write_audio(directory, name, content)
    return Candidate(path=path, content_hash=sha1(content))


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Spin the loop until ``predicate()`` holds."""
    async def spin():
        while not predicate():
            await asyncio.sleep(0)
    await asyncio.wait_for(spin(), timeout=timeout)

