"""
Tests for the batch orchestration entry points.

Coroutines are driven with asyncio.run; encoders are patched where a test
only cares about ordering, failure or cancellation behaviour.
"""

import asyncio
import io
import threading
import zipfile
from unittest.mock import AsyncMock, patch

import numpy as np
import pytest

from sentence_splitter import (
    AudioBuffer,
    AudioFormat,
    BatchCancelledError,
    BatchError,
    DecodeError,
    EncodedSegment,
    EncodeError,
    SegmentBoundary,
    TranscriptionError,
    archive_all,
    archive_filename,
    encode_wav,
    process_all,
    reencode_segment,
    segment_filename,
    split_audio,
)


def make_source(seconds=10.0, sample_rate=8000, channel_count=2):
    frame_count = int(seconds * sample_rate)
    ramp = np.linspace(-0.5, 0.5, frame_count, dtype=np.float32)
    return AudioBuffer(sample_rate, np.stack([ramp] * channel_count))


def make_boundaries(count):
    return [SegmentBoundary(f"Sentence {i}.", float(i), float(i) + 0.5) for i in range(count)]


def failing_encoder(fail_at):
    """An encode() stand-in that fails on the call with 0-based index ``fail_at``."""
    calls = {"count": 0}

    def fake_encode(buffer, fmt, bitrate_kbps=128):
        index = calls["count"]
        calls["count"] += 1
        if index == fail_at:
            raise EncodeError("codec exploded")
        return f"{fmt.value}-{index}".encode()

    return fake_encode


class TestFilenames:
    """Tests for output naming."""

    def test_segment_filename(self):
        assert segment_filename(0, AudioFormat.WAV) == "sentence-1.wav"
        assert segment_filename(11, AudioFormat.MP3) == "sentence-12.mp3"

    def test_archive_filename(self):
        assert archive_filename("/uploads/talk.final.m4a", AudioFormat.MP3) == "talk.final-sentences-mp3.zip"

    def test_archive_filename_without_source(self):
        assert archive_filename(None, AudioFormat.WAV) == "audio-sentences-wav.zip"


class TestProcessAll:
    """Tests for process_all."""

    def test_order_and_duration(self):
        source = make_source(seconds=10.0)
        boundaries = [
            SegmentBoundary("A.", 0, 1),
            SegmentBoundary("B.", 2, 3),
            SegmentBoundary("C.", 5, 6),
        ]

        segments = asyncio.run(process_all(source, boundaries, AudioFormat.WAV))

        assert [s.boundary.text for s in segments] == ["A.", "B.", "C."]
        for segment in segments:
            assert segment.format is AudioFormat.WAV
            assert segment.frame_count == 8000
            assert segment.duration == pytest.approx(1.0, abs=1 / 8000)
            assert segment.data[:4] == b"RIFF"

    def test_wav_bytes_match_direct_encoding(self):
        source = make_source(seconds=2.0)
        segments = asyncio.run(process_all(source, [SegmentBoundary("A.", 0.5, 1.0)]))
        assert segments[0].data == encode_wav(segments[0].buffer)

    def test_degenerate_boundary_gives_silent_frame(self):
        source = make_source(seconds=10.0)
        segments = asyncio.run(process_all(source, [SegmentBoundary("Empty.", 5.0, 5.0)]))
        assert segments[0].frame_count == 1
        assert len(segments[0].data) == 44 + 2 * 2

    def test_source_is_untouched(self):
        source = make_source(seconds=3.0)
        before = source.channels.copy()
        asyncio.run(process_all(source, make_boundaries(3)))
        np.testing.assert_array_equal(source.channels, before)

    def test_empty_boundaries(self):
        assert asyncio.run(process_all(make_source(), [])) == []

    def test_aborts_on_failing_segment(self):
        source = make_source()
        with patch("sentence_splitter.pipeline.encode", side_effect=failing_encoder(2)):
            with pytest.raises(BatchError) as exc_info:
                asyncio.run(process_all(source, make_boundaries(5), AudioFormat.MP3))

        assert exc_info.value.index == 2
        assert exc_info.value.filename == "sentence-3.mp3"
        assert isinstance(exc_info.value.cause, EncodeError)
        assert "index 2" in str(exc_info.value)

    def test_yields_before_batch_and_each_mp3_encode(self):
        source = make_source()
        with patch("sentence_splitter.pipeline.encode", return_value=b"mp3"), patch(
            "sentence_splitter.pipeline.asyncio.sleep", new_callable=AsyncMock
        ) as mock_sleep:
            asyncio.run(process_all(source, make_boundaries(3), AudioFormat.MP3))
        assert mock_sleep.await_count == 4

    def test_wav_batch_yields_once(self):
        source = make_source()
        with patch("sentence_splitter.pipeline.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            asyncio.run(process_all(source, make_boundaries(3), AudioFormat.WAV))
        assert mock_sleep.await_count == 1

    def test_cancel_between_segments_keeps_finished_work(self):
        source = make_source()
        cancel = threading.Event()

        def encode_then_cancel(buffer, fmt, bitrate_kbps=128):
            cancel.set()
            return b"wav"

        with patch("sentence_splitter.pipeline.encode", side_effect=encode_then_cancel):
            with pytest.raises(BatchCancelledError) as exc_info:
                asyncio.run(process_all(source, make_boundaries(4), cancel_event=cancel))

        completed = exc_info.value.completed
        assert len(completed) == 1
        assert completed[0].boundary.text == "Sentence 0."

    def test_progress_messages(self):
        messages = []
        asyncio.run(process_all(make_source(), make_boundaries(2), progress_callback=messages.append))
        assert any("1/2" in msg for msg in messages)
        assert any("2/2" in msg for msg in messages)


class TestReencodeSegment:
    """Tests for reencode_segment."""

    def test_same_format_is_returned_as_is(self):
        segment = asyncio.run(process_all(make_source(), make_boundaries(1)))[0]
        assert asyncio.run(reencode_segment(segment, AudioFormat.WAV)) is segment

    def test_converts_from_kept_buffer(self):
        segment = asyncio.run(process_all(make_source(), make_boundaries(1)))[0]
        with patch("sentence_splitter.pipeline.encode", return_value=b"mp3-bytes") as mock_encode:
            converted = asyncio.run(reencode_segment(segment, AudioFormat.MP3, 160))

        assert converted.format is AudioFormat.MP3
        assert converted.data == b"mp3-bytes"
        assert converted.boundary == segment.boundary
        assert converted.buffer is segment.buffer
        mock_encode.assert_called_once_with(segment.buffer, AudioFormat.MP3, 160)

    def test_without_buffer(self):
        segment = EncodedSegment(SegmentBoundary("A.", 0, 1), AudioFormat.WAV, b"RIFF")
        with pytest.raises(EncodeError):
            asyncio.run(reencode_segment(segment, AudioFormat.MP3))


class TestArchiveAll:
    """Tests for archive_all."""

    def test_wav_archive_in_order(self):
        segments = asyncio.run(process_all(make_source(), make_boundaries(3)))

        archive = asyncio.run(archive_all(segments, AudioFormat.WAV))

        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            assert zf.namelist() == ["sentence-1.wav", "sentence-2.wav", "sentence-3.wav"]
            for name, segment in zip(zf.namelist(), segments):
                assert zf.read(name) == segment.data

    def test_converts_to_mp3(self):
        segments = asyncio.run(process_all(make_source(), make_boundaries(2)))
        with patch("sentence_splitter.pipeline.encode", side_effect=failing_encoder(-1)):
            archive = asyncio.run(archive_all(segments, AudioFormat.MP3))

        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            assert zf.namelist() == ["sentence-1.mp3", "sentence-2.mp3"]
            assert zf.read("sentence-2.mp3") == b"mp3-1"

    def test_custom_naming(self):
        segments = asyncio.run(process_all(make_source(), make_boundaries(2)))
        archive = asyncio.run(
            archive_all(segments, AudioFormat.WAV, naming=lambda i, fmt: f"clip_{i:03d}.{fmt.value}")
        )
        with zipfile.ZipFile(io.BytesIO(archive)) as zf:
            assert zf.namelist() == ["clip_000.wav", "clip_001.wav"]

    def test_duplicate_names_raise_batch_error(self):
        segments = asyncio.run(process_all(make_source(), make_boundaries(3)))

        with pytest.raises(BatchError) as exc_info:
            asyncio.run(archive_all(segments, AudioFormat.WAV, naming=lambda i, fmt: "clip.wav"))

        assert exc_info.value.index == 1
        assert exc_info.value.filename == "clip.wav"
        assert isinstance(exc_info.value.cause, ValueError)

    def test_failure_produces_no_archive(self):
        segments = asyncio.run(process_all(make_source(), make_boundaries(5)))

        with patch("sentence_splitter.pipeline.encode", side_effect=failing_encoder(2)), patch(
            "sentence_splitter.pipeline.ZipArchive"
        ) as mock_archive:
            with pytest.raises(BatchError) as exc_info:
                asyncio.run(archive_all(segments, AudioFormat.MP3))

        assert exc_info.value.index == 2
        mock_archive.return_value.to_bytes.assert_not_called()

    def test_cancelled_archive(self):
        segments = asyncio.run(process_all(make_source(), make_boundaries(2)))
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(BatchCancelledError) as exc_info:
            asyncio.run(archive_all(segments, AudioFormat.WAV, cancel_event=cancel))
        assert exc_info.value.completed == []


class TestSplitAudio:
    """Tests for the decode -> transcribe -> process entry point."""

    def test_full_pipeline(self):
        source = make_source(seconds=6.0)
        boundaries = [SegmentBoundary("One.", 0, 1), SegmentBoundary("Two.", 2, 3.5)]
        calls = []

        def transcriber(data, mime_type):
            calls.append((data, mime_type))
            return boundaries

        with patch("sentence_splitter.pipeline.decode_audio", return_value=source) as mock_decode:
            segments = asyncio.run(
                split_audio(b"raw", "audio/mpeg", transcriber, AudioFormat.WAV, filename="in.mp3")
            )

        mock_decode.assert_called_once_with(b"raw", "in.mp3")
        assert calls == [(b"raw", "audio/mpeg")]
        assert [s.boundary for s in segments] == boundaries
        assert segments[1].frame_count == 12000

    def test_decode_error_propagates(self):
        with patch(
            "sentence_splitter.pipeline.decode_audio", side_effect=DecodeError("not audio")
        ):
            with pytest.raises(DecodeError):
                asyncio.run(split_audio(b"raw", "audio/mpeg", lambda d, m: []))

    def test_transcriber_failure_is_wrapped(self):
        def transcriber(data, mime_type):
            raise ConnectionError("network down")

        with patch("sentence_splitter.pipeline.decode_audio", return_value=make_source()):
            with pytest.raises(TranscriptionError, match="network down"):
                asyncio.run(split_audio(b"raw", "audio/mpeg", transcriber))
