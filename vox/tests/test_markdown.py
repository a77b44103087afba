"""Tests for note generation and consolidation."""

import os
from datetime import datetime

import frontmatter
import pytest

from vox.daemon.config import OutputConfig, VOX_VERSION
from vox.daemon.errors import ConsolidationError, MalformedTranscript
from vox.daemon.markdown import MarkdownAssembler, normalize_segment, start_case
from vox.daemon.models import TranscriptResult
from vox.tests.helpers import GOOD_PAYLOAD, make_candidate

RECORDED = datetime(2021, 7, 15, 2, 2)
NOW = datetime(2021, 7, 16, 10, 30)


def assembler_for(watch_dir, output_dir, **output):
    return MarkdownAssembler(watch_dir, output_dir, OutputConfig(**output), now=lambda: NOW)


def set_mtime(path, when: datetime):
    ts = when.timestamp()
    os.utime(path, (ts, ts))


def test_normalize_segment_accepts_both_shapes():
    assert normalize_segment({"text": " hi", "start": 0})["text"] == " hi"

    legacy = [0, 0, 0.0, 1.5, " hello", [50364, 2425], 0.0, -0.3, 1.1, 0.01]
    segment = normalize_segment(legacy)
    assert segment["text"] == " hello"
    assert segment["end"] == 1.5
    assert segment["no_speech_prob"] == 0.01

    with pytest.raises(MalformedTranscript):
        normalize_segment({"start": 0})
    with pytest.raises(MalformedTranscript):
        normalize_segment("just text")


def test_start_case():
    assert start_case("i caught a BIG fish") == "I Caught A BIG Fish"
    assert start_case("meeting_notes-final") == "Meeting Notes Final"


def test_generate_note(watch_dir, output_dir):
    assembler = assembler_for(watch_dir, output_dir, tags=["test", "fishing"])
    candidate = make_candidate(watch_dir, "i caught a fish.m4a")
    transcript = TranscriptResult.from_payload(GOOD_PAYLOAD)

    output = assembler.generate(candidate, transcript, "20210715-0202-i-caught-a-fish.wav", RECORDED)
    post = frontmatter.loads(output.content)

    assert output.title == "TXC - 2021-07-15 I Caught A Fish"
    assert post["title"] == output.title
    assert post["type"] == "transcribed"
    assert post["recorded_at"] == "2021-07-15 02:02"
    assert post["transcribed_at"] == "2021-07-16 10:30"
    assert post["transcribed_vox_version"] == VOX_VERSION
    assert post["language"] == "en"
    assert post["original_file_name"] == "i caught a fish.m4a"
    assert post["original_file_hash"] == candidate.content_hash
    assert "voice_memo_category" not in post.metadata

    assert "# TXC - 2021-07-15 I Caught A Fish" in post.content
    assert "#transcribed #test" in post.content
    assert "#fishing" not in post.content
    assert "![](audio/20210715-0202-i-caught-a-fish.wav)" in post.content
    assert "Hello there." in post.content
    assert "This is a test." in post.content


def test_paragraph_breaks_every_eighth_sentence(watch_dir, output_dir):
    assembler = assembler_for(watch_dir, output_dir, extract_tags=False)
    candidate = make_candidate(watch_dir, "long.wav")
    segments = [{"text": f" Sentence {i}."} for i in range(10)]
    transcript = TranscriptResult(text="long", language="en", segments=segments)

    body = frontmatter.loads(assembler.generate(candidate, transcript, "a.wav", RECORDED).content).content

    assert "Sentence 0. \n\nSentence 1." in body
    assert "Sentence 7. Sentence 8. \n\nSentence 9." in body
    assert "#transcribed" not in body


def test_tag_limit(watch_dir, output_dir):
    assembler = assembler_for(watch_dir, output_dir, tags=["hello", "test", "there"], tag_limit=2)
    candidate = make_candidate(watch_dir, "tags.wav")
    transcript = TranscriptResult.from_payload(GOOD_PAYLOAD)

    tags = assembler.extract_tags(transcript.text)

    assert tags == ["#hello", "#test"]


def test_category_maps(watch_dir, output_dir):
    assembler = assembler_for(watch_dir, output_dir, use_category_maps=True)
    candidate = make_candidate(watch_dir, "LN i caught a BIG fish.m4a")
    transcript = TranscriptResult.from_payload(GOOD_PAYLOAD)

    output = assembler.generate(candidate, transcript, "a.wav", RECORDED)
    post = frontmatter.loads(output.content)

    assert post["voice_memo_category"] == "Life Note"
    assert output.title == "TXC - 2021-07-15 I Caught A BIG Fish"
    assert assembler.clean_audio_name(candidate, RECORDED) == "20210715-0202-i-caught-a-big-fish"

    plain = make_candidate(watch_dir, "LNG meeting.m4a")
    assert assembler.category(plain.name) is None


@pytest.mark.asyncio
async def test_consolidate_mirrors_subdirectory(watch_dir, output_dir):
    assembler = assembler_for(watch_dir, output_dir)
    candidate = make_candidate(watch_dir / "work" / "standups", "monday sync.m4a", b"orig")
    set_mtime(candidate.path, RECORDED)
    transcript = TranscriptResult.from_payload(GOOD_PAYLOAD)

    result = await assembler.consolidate(candidate, transcript, b"RIFF-wav")

    target = output_dir / "work" / "standups"
    assert result.audio_path == target / "audio" / "20210715-0202-monday-sync.wav"
    assert result.audio_path.read_bytes() == b"RIFF-wav"
    assert result.markdown_path == target / "TXC - 2021-07-15 Monday Sync.md"

    post = frontmatter.load(result.markdown_path)
    assert post["original_file_name"] == "monday sync.m4a"
    # Original is kept by default
    assert candidate.path.exists()


@pytest.mark.asyncio
async def test_consolidate_is_reentrant(watch_dir, output_dir):
    assembler = assembler_for(watch_dir, output_dir)
    candidate = make_candidate(watch_dir, "again.wav")
    transcript = TranscriptResult.from_payload(GOOD_PAYLOAD)

    first = await assembler.consolidate(candidate, transcript, b"one")
    second = await assembler.consolidate(candidate, transcript, b"two")

    assert first == second
    assert second.audio_path.read_bytes() == b"two"
    assert len(list((output_dir / "audio").iterdir())) == 1


@pytest.mark.asyncio
async def test_consolidate_deletes_original_when_configured(watch_dir, output_dir):
    assembler = assembler_for(watch_dir, output_dir, should_delete_original=True)
    candidate = make_candidate(watch_dir, "delete me.mp3")
    transcript = TranscriptResult.from_payload(GOOD_PAYLOAD)

    await assembler.consolidate(candidate, transcript, b"wav")

    assert not candidate.path.exists()


@pytest.mark.asyncio
async def test_consolidate_wraps_io_errors(watch_dir, tmp_path):
    blocker = tmp_path / "blocked"
    blocker.write_text("not a directory")
    assembler = assembler_for(watch_dir, blocker)
    candidate = make_candidate(watch_dir, "memo.wav")
    transcript = TranscriptResult.from_payload(GOOD_PAYLOAD)

    with pytest.raises(ConsolidationError):
        await assembler.consolidate(candidate, transcript, b"wav")
