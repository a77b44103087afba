"""Audio conversion to the 16 kHz mono WAV the transcription backend expects."""

import asyncio
from typing import Iterable, List, Optional

from loguru import logger

from .errors import DecodeError, UnsupportedFormat

DEFAULT_INPUT_EXTENSIONS = (".wav", ".mp3", ".m4a", ".aac", ".ogg", ".flac")

WAV_ARGS = [
    "-i", "pipe:0",
    "-ar", "16000",
    "-ac", "1",
    "-c:a", "pcm_s16le",
    "-f", "wav",
    "pipe:1",
]


class FFmpegConverter:
    """
    Pipes audio through an ffmpeg binary.

    Stateless between calls, so it is safe to retry.
    """

    def __init__(self,
                 binary: str = "ffmpeg",
                 extensions: Optional[Iterable[str]] = None):
        self.binary = binary
        self.extensions = {e.lower() for e in (extensions or DEFAULT_INPUT_EXTENSIONS)}

    async def convert(self, data: bytes, source_ext: str) -> bytes:
        """
        Convert raw audio bytes to WAV.

        Raises:
            UnsupportedFormat: If the extension is not an accepted audio type
            DecodeError: If ffmpeg is missing or fails
        """
        ext = source_ext.lower()
        if not ext.startswith("."):
            ext = f".{ext}"

        if ext not in self.extensions:
            raise UnsupportedFormat(f"Not an audio file or unacceptable format: {source_ext!r}")

        if ext == ".wav":
            logger.debug("Audio is already WAV, skipping conversion")
            return data

        logger.debug(f"Converting {ext} audio to WAV ({len(data) / 1024 / 1024:.2f} MB)")
        return await self._run(WAV_ARGS, data)

    async def _run(self, args: List[str], data: bytes) -> bytes:
        try:
            process = await asyncio.create_subprocess_exec(
                self.binary, "-hide_banner", "-loglevel", "error", *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise DecodeError(f"Could not start {self.binary}: {e}") from e

        stdout, stderr = await process.communicate(data)

        if process.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            raise DecodeError(f"ffmpeg exited with code {process.returncode}: {message}")
        if not stdout:
            raise DecodeError("ffmpeg produced no output")

        logger.debug(f"Converted audio to WAV ({len(stdout)} bytes)")
        return stdout
