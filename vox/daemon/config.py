"""Configuration management for vox."""

from pathlib import Path
from typing import Dict, List, Literal, Optional

import yaml
from loguru import logger
from pydantic import BaseModel, Field, field_validator, model_validator

from .models import BackoffPolicy

VOX_VERSION = "0.1.0"


class TranscriptionConfig(BaseModel):
    mode: Literal["remote", "local"] = "remote"

    # remote: a whisper.cpp-compatible server
    endpoint: str = "http://localhost:8080"
    api_key: Optional[str] = None

    # local: a faster-whisper model name or a path to a converted model
    local_model: str = "small"
    local_device: str = "auto"
    local_compute_type: str = "default"

    temperature: str = "0.0"
    temperature_inc: str = "0.2"
    timeout_min: int = 20

    @field_validator('local_model')
    @classmethod
    def validate_local_model(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("local_model must name a model or a model path")
        return v


class RetryConfig(BaseModel):
    max_retries: int = 3
    retry_base_delay_ms: int = 5000
    retry_max_delay_ms: int = 300000

    @field_validator('max_retries', 'retry_base_delay_ms', 'retry_max_delay_ms')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("retry settings must be positive")
        return v

    @model_validator(mode='after')
    def validate_delay_bounds(self) -> "RetryConfig":
        if self.retry_max_delay_ms < self.retry_base_delay_ms:
            raise ValueError("retry_max_delay_ms must be >= retry_base_delay_ms")
        return self

    def policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            base_delay_ms=self.retry_base_delay_ms,
            max_delay_ms=self.retry_max_delay_ms,
            max_retries=self.max_retries,
        )


class StabilityConfig(BaseModel):
    file_stability_delay_ms: int = 3000
    file_stability_check_interval_ms: int = 1000
    file_stability_timeout_ms: Optional[int] = None


class QueueConfig(BaseModel):
    concurrency: int = 8
    batch_size: int = 24

    @field_validator('concurrency', 'batch_size')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


class OutputConfig(BaseModel):
    should_delete_original: bool = False
    extract_tags: bool = True
    tags: List[str] = Field(default_factory=list)
    tag_limit: int = 5
    use_category_maps: bool = False
    category_map: Dict[str, str] = Field(default_factory=lambda: {
        "LN": "Life Note",
        "IN": "Insight",
        "DR": "Dream",
        "RM": "Ramble",
    })


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: Optional[Path] = None


class Config(BaseModel):
    """Main configuration for the vox daemon."""

    watch_directory: Path
    output_directory: Path
    audio_extensions: List[str] = Field(
        default_factory=lambda: [".wav", ".mp3", ".m4a", ".aac", ".ogg", ".flac"]
    )
    ffmpeg_binary: str = "ffmpeg"
    intake_poll_interval_s: float = 2.0
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    stability: StabilityConfig = Field(default_factory=StabilityConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator('watch_directory')
    @classmethod
    def validate_watch_directory(cls, v: Path) -> Path:
        if isinstance(v, str):
            v = Path(v)
        v = v.expanduser().resolve()
        if not v.exists():
            logger.warning(f"Watch directory does not exist, will create: {v}")
            v.mkdir(parents=True, exist_ok=True)
        return v

    @field_validator('output_directory')
    @classmethod
    def validate_output_directory(cls, v: Path) -> Path:
        if isinstance(v, str):
            v = Path(v)
        return v.expanduser().resolve()

    @field_validator('audio_extensions')
    @classmethod
    def normalize_extensions(cls, v: List[str]) -> List[str]:
        return [e.lower() if e.startswith(".") else f".{e.lower()}" for e in v]

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """Load configuration from YAML file."""
        if config_path is None:
            # Try default locations
            candidates = [
                Path("vox.yaml"),
                Path.home() / ".config" / "vox" / "config.yaml",
                Path("/etc/vox/config.yaml"),
            ]
            for candidate in candidates:
                if candidate.exists():
                    config_path = candidate
                    break
            else:
                raise FileNotFoundError(
                    f"No config file found. Searched: {[str(c) for c in candidates]}"
                )

        logger.info(f"Loading config from: {config_path}")
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}

        return cls.model_validate(data)

    def save(self, config_path: Path) -> None:
        """Save configuration to YAML file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, 'w') as f:
            yaml.safe_dump(self.model_dump(mode='json'), f, default_flow_style=False)
