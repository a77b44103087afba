"""Find audio files in the watch directory that still need transcribing."""

import asyncio
import hashlib
import os
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple

import aiofiles
import frontmatter
from loguru import logger

from .models import BackoffPolicy, Candidate, LifecycleStatus
from .registry import CandidateRegistry

HASH_CHUNK_SIZE = 64 * 1024


class FileHasher:
    """
    SHA-1 content hashes, cached per path and invalidated when the size or
    mtime changes.

    Hashing runs in a worker thread so large recordings do not stall the
    event loop.
    """

    def __init__(self):
        # path -> (size, mtime_ns, digest)
        self._cache: Dict[str, Tuple[int, int, str]] = {}

    async def hash(self, path: Path) -> str:
        stat = await asyncio.to_thread(path.stat)
        key = str(path)

        cached = self._cache.get(key)
        if cached is not None and cached[:2] == (stat.st_size, stat.st_mtime_ns):
            return cached[2]

        digest = await asyncio.to_thread(self._sha1, path)
        self._cache[key] = (stat.st_size, stat.st_mtime_ns, digest)
        return digest

    def forget(self, keep: Iterable[Path]) -> None:
        """Drop cache entries for paths not in ``keep``."""
        live = {str(p) for p in keep}
        for key in [k for k in self._cache if k not in live]:
            del self._cache[key]

    def __len__(self) -> int:
        return len(self._cache)

    @staticmethod
    def _sha1(path: Path) -> str:
        h = hashlib.sha1()
        with open(path, 'rb') as f:
            while chunk := f.read(HASH_CHUNK_SIZE):
                h.update(chunk)
        return h.hexdigest()


@dataclass
class TranscribedIndex:
    """Original file names and hashes recorded in transcribed notes."""
    names: Set[str] = field(default_factory=set)
    hashes: Dict[str, str] = field(default_factory=dict)  # name -> hash
    known_hashes: Set[str] = field(default_factory=set)

    def add(self, name: Optional[str], content_hash: Optional[str]) -> None:
        if name:
            self.names.add(name)
            if content_hash:
                self.hashes[name] = content_hash
        if content_hash:
            self.known_hashes.add(content_hash)

    @classmethod
    async def load(cls, output_dir: Path) -> "TranscribedIndex":
        """Read the frontmatter of every note under the output directory."""
        index = cls()
        if not output_dir.exists():
            return index

        notes = await asyncio.to_thread(lambda: list(output_dir.rglob("*.md")))
        for note in notes:
            try:
                async with aiofiles.open(note, 'r', encoding='utf-8') as f:
                    post = frontmatter.loads(await f.read())
            except Exception as e:
                logger.warning(f"Could not read frontmatter from {note}: {e}")
                continue

            index.add(
                post.metadata.get("original_file_name"),
                post.metadata.get("original_file_hash"),
            )

        logger.debug(f"Loaded {len(index.known_hashes)} transcribed record(s) from {output_dir}")
        return index


class CandidateDiscovery:
    """
    Scans the watch directory for a bounded batch of fresh candidates.

    Enumeration order is shuffled so a file that keeps failing near the start
    of a large directory cannot starve the rest.
    """

    def __init__(self,
                 registry: CandidateRegistry,
                 policy: BackoffPolicy,
                 audio_extensions: Iterable[str],
                 batch_size: int = 24,
                 queue=None,
                 hasher: Optional[FileHasher] = None,
                 rng: Optional[random.Random] = None):
        self.registry = registry
        self.policy = policy
        self.audio_extensions = {e.lower() for e in audio_extensions}
        self.batch_size = batch_size
        self.queue = queue
        self.hasher = hasher or FileHasher()
        self.rng = rng or random.Random()

    async def scan(self, watch_dir: Path, transcribed: TranscribedIndex) -> List[Candidate]:
        """
        Return up to ``batch_size`` candidates that still need work.

        Skips files that are already transcribed (by name, then by hash),
        files the queue is already holding, files completed this session and
        files that exhausted their retries.
        """
        paths = await asyncio.to_thread(lambda: list(self.iter_files(watch_dir)))
        self.hasher.forget(paths)
        self.rng.shuffle(paths)

        candidates: List[Candidate] = []
        for path in paths:
            if len(candidates) >= self.batch_size:
                break

            try:
                candidate, is_transcribed = await self.transcribed_status(path, transcribed)
            except OSError as e:
                # Vanished or unreadable; the next scan tries again
                logger.warning(f"Failed to inspect {path}: {e}")
                continue

            if is_transcribed or not self._is_eligible(candidate):
                continue
            candidates.append(candidate)

        logger.debug(f"Discovery found {len(candidates)} candidate(s) among {len(paths)} file(s)")
        return candidates

    async def transcribed_status(self, path: Path,
                                 transcribed: TranscribedIndex) -> Tuple[Candidate, bool]:
        """Resolve a file to a candidate and whether it was already transcribed."""
        # Fast path: name match without reading the file
        if path.name in transcribed.names:
            content_hash = transcribed.hashes.get(path.name) or await self.hasher.hash(path)
            return Candidate(path=path, content_hash=content_hash), True

        # Slow path: catches files renamed after transcription
        content_hash = await self.hasher.hash(path)
        return Candidate(path=path, content_hash=content_hash), content_hash in transcribed.known_hashes

    def has_exceeded_max_retries(self, content_hash: str) -> bool:
        record = self.registry.get(content_hash)
        if record is None:
            return False
        return (
            record.status == LifecycleStatus.FAILED
            and record.retry_count >= self.policy.max_retries
        )

    def _is_eligible(self, candidate: Candidate) -> bool:
        content_hash = candidate.content_hash
        if self.has_exceeded_max_retries(content_hash):
            return False
        if self.queue is not None and self.queue.is_active(content_hash):
            return False
        record = self.registry.get(content_hash)
        if record is not None and record.status == LifecycleStatus.COMPLETE:
            return False
        return True

    def iter_files(self, root: Path) -> Iterator[Path]:
        """Walk the watch directory, skipping hidden entries and non-audio files."""
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = [d for d in dirnames if not d.startswith(".")]
            for filename in filenames:
                if filename.startswith("."):
                    continue
                path = Path(dirpath) / filename
                if path.suffix.lower() in self.audio_extensions:
                    yield path
