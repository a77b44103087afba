"""Tests for configuration loading."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from vox.daemon.config import Config, RetryConfig


def test_defaults(test_config):
    assert test_config.audio_extensions == [".wav", ".mp3", ".m4a", ".aac", ".ogg", ".flac"]
    assert test_config.transcription.endpoint == "http://localhost:8080"
    assert test_config.transcription.temperature == "0.0"
    assert test_config.transcription.temperature_inc == "0.2"
    assert test_config.transcription.timeout_min == 20
    assert test_config.retry.max_retries == 3
    assert test_config.retry.retry_base_delay_ms == 5000
    assert test_config.retry.retry_max_delay_ms == 300000
    assert test_config.stability.file_stability_delay_ms == 3000
    assert test_config.stability.file_stability_check_interval_ms == 1000
    assert test_config.stability.file_stability_timeout_ms is None
    assert test_config.queue.concurrency == 8
    assert test_config.queue.batch_size == 24


def test_watch_directory_is_created(tmp_path):
    config = Config(watch_directory=tmp_path / "new" / "inbox", output_directory=tmp_path / "out")

    assert config.watch_directory.is_dir()
    assert config.watch_directory.is_absolute()


def test_extensions_are_normalised(watch_dir, output_dir):
    config = Config(watch_directory=watch_dir, output_directory=output_dir,
                    audio_extensions=["MP3", ".M4A"])

    assert config.audio_extensions == [".mp3", ".m4a"]


def test_retry_policy():
    policy = RetryConfig(max_retries=5, retry_base_delay_ms=100, retry_max_delay_ms=1000).policy()

    assert policy.max_retries == 5
    assert policy.delay_ms(0) == 100
    assert policy.delay_ms(10) == 1000


@pytest.mark.parametrize("values", [
    {"max_retries": 0},
    {"retry_base_delay_ms": -1},
    {"retry_base_delay_ms": 5000, "retry_max_delay_ms": 1000},
])
def test_retry_validation(values):
    with pytest.raises(ValidationError):
        RetryConfig(**values)


def test_queue_validation(watch_dir, output_dir):
    with pytest.raises(ValidationError):
        Config(watch_directory=watch_dir, output_directory=output_dir, queue={"concurrency": 0})


def test_load_yaml(tmp_path, watch_dir, output_dir):
    path = tmp_path / "vox.yaml"
    path.write_text(yaml.safe_dump({
        "watch_directory": str(watch_dir),
        "output_directory": str(output_dir),
        "transcription": {"endpoint": "http://gpu-box:9000", "api_key": "k"},
        "retry": {"max_retries": 5},
        "output": {"tags": ["work"], "should_delete_original": True},
    }))

    config = Config.load(path)

    assert config.transcription.endpoint == "http://gpu-box:9000"
    assert config.transcription.api_key == "k"
    assert config.retry.max_retries == 5
    assert config.retry.retry_base_delay_ms == 5000
    assert config.output.tags == ["work"]
    assert config.output.should_delete_original is True


def test_save_round_trip(tmp_path, test_config):
    path = tmp_path / "conf" / "vox.yaml"

    test_config.save(path)
    loaded = Config.load(path)

    assert loaded == test_config


def test_missing_config(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(Path, "home", lambda: tmp_path)

    if Path("/etc/vox/config.yaml").exists():
        pytest.skip("system config present")

    with pytest.raises(FileNotFoundError):
        Config.load()


def test_transcription_mode(watch_dir, output_dir):
    config = Config(watch_directory=watch_dir, output_directory=output_dir,
                    transcription={"mode": "local", "local_model": "/models/whisper-small"})

    assert config.transcription.mode == "local"
    assert config.transcription.local_model == "/models/whisper-small"
    assert config.transcription.local_device == "auto"


@pytest.mark.parametrize("values", [{"mode": "cloud"}, {"mode": "local", "local_model": " "}])
def test_transcription_validation(watch_dir, output_dir, values):
    with pytest.raises(ValidationError):
        Config(watch_directory=watch_dir, output_directory=output_dir, transcription=values)


def test_load_rejects_non_mapping(tmp_path):
    path = tmp_path / "vox.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ValidationError):
        Config.load(path)
