"""Turn a validated transcript into a note and move the artifacts into place."""

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import aiofiles
import aiofiles.os
import frontmatter
from loguru import logger

from .config import OutputConfig, VOX_VERSION
from .errors import ConsolidationError, MalformedTranscript
from .models import Candidate, TranscriptResult

MARKDOWN_DATE_FORMAT = "%Y-%m-%d %H:%M"
FILENAME_DATE_FORMAT = "%Y%m%d-%H%M"
AUDIO_SUBDIRECTORY = "audio"

# Legacy whisper.cpp array segments, in positional order
SEGMENT_FIELDS = (
    "id", "seek", "start", "end", "text", "tokens",
    "temperature", "avg_logprob", "compression_ratio", "no_speech_prob",
)


@dataclass
class MarkdownOutput:
    title: str
    content: str


@dataclass
class ConsolidationResult:
    markdown_path: Path
    audio_path: Path


def normalize_segment(segment: Any) -> Dict[str, Any]:
    """Accept either an object segment or the legacy positional array."""
    if isinstance(segment, dict):
        if "text" not in segment:
            raise MalformedTranscript(f"Segment has no text: {segment!r}")
        return dict(segment)

    if isinstance(segment, (list, tuple)) and len(segment) >= 5:
        return dict(zip(SEGMENT_FIELDS, segment))

    raise MalformedTranscript(f"Unrecognised segment format: {segment!r}")


def start_case(text: str) -> str:
    words = re.findall(r"[A-Za-z0-9]+", text)
    return " ".join(w[:1].upper() + w[1:] for w in words)


class MarkdownAssembler:
    """
    Builds transcription notes and consolidates output files.

    Layout mirrors the watch directory under the output directory:
    ``<output>/<subdir>/<title>.md`` with the converted audio beside it in
    ``<output>/<subdir>/audio/``.
    """

    def __init__(self,
                 watch_directory: Path,
                 output_directory: Path,
                 output: Optional[OutputConfig] = None,
                 now: Callable[[], datetime] = datetime.now):
        self.watch_directory = watch_directory
        self.output_directory = output_directory
        self.output = output or OutputConfig()
        self._now = now

        keys = sorted(self.output.category_map, key=len, reverse=True)
        self._category_regex = (
            re.compile(rf"^({'|'.join(re.escape(k) for k in keys)})(?=[\s\-_]|$)[\s\-_]*")
            if keys else None
        )

    async def consolidate(self, candidate: Candidate, transcript: TranscriptResult,
                          audio: bytes) -> ConsolidationResult:
        """
        Write the converted audio and the note to their final location.

        Safe to call again for the same candidate; existing files are replaced.

        Raises:
            ConsolidationError: If any file operation fails
        """
        try:
            recorded_at = await self._recorded_at(candidate.path)
            target_dir = self._target_directory(candidate)
            audio_dir = target_dir / AUDIO_SUBDIRECTORY
            await aiofiles.os.makedirs(audio_dir, exist_ok=True)

            audio_filename = f"{self.clean_audio_name(candidate, recorded_at)}.wav"
            audio_path = audio_dir / audio_filename
            async with aiofiles.open(audio_path, 'wb') as f:
                await f.write(audio)

            markdown = self.generate(candidate, transcript, audio_filename, recorded_at)
            markdown_path = target_dir / f"{markdown.title}.md"
            async with aiofiles.open(markdown_path, 'w', encoding='utf-8') as f:
                await f.write(markdown.content)

            if self.output.should_delete_original and await aiofiles.os.path.exists(candidate.path):
                await aiofiles.os.remove(candidate.path)
                logger.debug(f"Removed original {candidate.path}")

        except OSError as e:
            raise ConsolidationError(f"Failed to consolidate {candidate.filename}: {e}") from e

        logger.debug(f"Consolidated {candidate.filename} -> {markdown_path}")
        return ConsolidationResult(markdown_path=markdown_path, audio_path=audio_path)

    def generate(self, candidate: Candidate, transcript: TranscriptResult,
                 audio_filename: str, recorded_at: datetime) -> MarkdownOutput:
        """Render the note for a transcript."""
        title = self.title(candidate, recorded_at)
        content: List[str] = [f"\n# {title}\n\n"]

        if self.output.extract_tags:
            tags = ["#transcribed", *self.extract_tags(transcript.text)]
            content.append(f"{' '.join(tags)}\n\n")

        content.append(f"![]({AUDIO_SUBDIRECTORY}/{audio_filename})\n\n")

        segments = [normalize_segment(s) for s in transcript.segments]
        for i, segment in enumerate(segments):
            text = str(segment.get("text", "")).strip()
            content.append(f"{text} ")
            # Sensible paragraph spacing
            if text.endswith(".") and i % 8 == 0:
                content.append("\n\n")

        metadata: Dict[str, Any] = {
            "title": title,
            "type": "transcribed",
            "recorded_at": recorded_at.strftime(MARKDOWN_DATE_FORMAT),
            "transcribed_at": self._now().strftime(MARKDOWN_DATE_FORMAT),
            "transcribed_vox_version": VOX_VERSION,
            "language": transcript.language,
            "original_file_name": candidate.filename,
            "original_file_hash": candidate.content_hash,
        }
        if self.output.use_category_maps:
            metadata["voice_memo_category"] = self.category(candidate.name) or "none"

        post = frontmatter.Post(content="".join(content), **metadata)
        return MarkdownOutput(title=title, content=frontmatter.dumps(post))

    def title(self, candidate: Candidate, recorded_at: datetime) -> str:
        return f"TXC - {recorded_at:%Y-%m-%d} {start_case(self._strip_category(candidate.name))}".strip()

    def clean_audio_name(self, candidate: Candidate, recorded_at: datetime) -> str:
        """
        Filesystem friendly name prefixed with the recording time.

        "LN i caught a BIG fish" -> "20210715-0202-i-caught-a-big-fish"
        """
        name = self._strip_category(candidate.name)
        name = re.sub(r"[^\w\s\-]", "", name)
        name = re.sub(r"[\s,_]+", "-", name.strip())
        name = re.sub(r"-{2,}", "-", name).strip("-").lower()
        prefix = recorded_at.strftime(FILENAME_DATE_FORMAT)
        return f"{prefix}-{name}" if name else prefix

    def extract_tags(self, text: str) -> List[str]:
        """Configured tags that appear in the transcript, as hashtags."""
        found = []
        for tag in self.output.tags:
            if re.search(rf"\b{re.escape(tag)}\b", text, re.IGNORECASE):
                found.append("#" + re.sub(r"\s+", "-", tag.strip()).lower())
            if len(found) >= self.output.tag_limit:
                break
        return found

    def category(self, name: str) -> Optional[str]:
        if self._category_regex is None:
            return None
        match = self._category_regex.match(name)
        if not match:
            return None
        return self.output.category_map.get(match.group(1))

    def _strip_category(self, name: str) -> str:
        if self._category_regex is None:
            return name.strip()
        return self._category_regex.sub("", name).strip()

    def _target_directory(self, candidate: Candidate) -> Path:
        try:
            subdirectory = candidate.directory.relative_to(self.watch_directory)
        except ValueError:
            # Queued manually from outside the watch directory
            subdirectory = Path()
        return self.output_directory / subdirectory

    async def _recorded_at(self, path: Path) -> datetime:
        try:
            stat = await aiofiles.os.stat(path)
        except FileNotFoundError:
            return self._now()
        return datetime.fromtimestamp(stat.st_mtime)
