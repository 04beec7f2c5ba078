"""
Batch orchestration: decode -> slice -> encode -> (optionally) archive.

All entry points are coroutines. The batch loops yield to the event loop
before starting and before every MP3 encode, and they can be cancelled
between segments.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Sequence

from sentence_splitter.archive import ZipArchive
from sentence_splitter.audio import AudioBuffer, decode_audio, format_duration, slice_buffer
from sentence_splitter.encoding import DEFAULT_MP3_BITRATE, AudioFormat, encode
from sentence_splitter.errors import (
    BatchCancelledError,
    BatchError,
    EncodeError,
    SplitterError,
    TranscriptionError,
)
from sentence_splitter.transcription import SegmentBoundary

logger = logging.getLogger(__name__)

Transcriber = Callable[[bytes, str], list[SegmentBoundary]]


class CancelToken(Protocol):
    def is_set(self) -> bool: ...


@dataclass(frozen=True)
class EncodedSegment:
    """An encoded clip for one boundary.

    ``buffer`` keeps the sliced audio so the clip can be re-encoded to
    another format later; it is None for segments reloaded from storage.
    """

    boundary: SegmentBoundary
    format: AudioFormat
    data: bytes
    buffer: Optional[AudioBuffer] = None

    @property
    def frame_count(self) -> Optional[int]:
        return self.buffer.frame_count if self.buffer is not None else None

    @property
    def duration(self) -> float:
        if self.buffer is not None:
            return self.buffer.duration
        return self.boundary.duration


def segment_filename(index: int, fmt: AudioFormat) -> str:
    """File name for the segment at 0-based ``index``."""
    return f"sentence-{index + 1}.{AudioFormat(fmt).extension}"


def archive_filename(source_name: Optional[str], fmt: AudioFormat) -> str:
    """Download name for an archive built from ``source_name``."""
    stem = os.path.splitext(os.path.basename(source_name))[0] if source_name else ""
    return f"{stem or 'audio'}-sentences-{AudioFormat(fmt).value}.zip"


def _check_cancelled(cancel_event: Optional[CancelToken], completed: list) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise BatchCancelledError(completed)


async def _encode_segment(
    index: int,
    boundary: SegmentBoundary,
    buffer: Optional[AudioBuffer],
    target_format: AudioFormat,
    bitrate_kbps: int,
) -> EncodedSegment:
    filename = segment_filename(index, target_format)
    if target_format is AudioFormat.MP3:
        # Let the event loop breathe before the expensive part
        await asyncio.sleep(0)
    try:
        if buffer is None:
            raise EncodeError("Segment has no audio buffer to encode from")
        data = encode(buffer, target_format, bitrate_kbps)
    except EncodeError as e:
        logger.error("Error encoding segment %d (%s): %s", index, filename, e)
        raise BatchError(index, filename, e) from e
    return EncodedSegment(boundary=boundary, format=target_format, data=data, buffer=buffer)


async def process_all(
    source: AudioBuffer,
    boundaries: Sequence[SegmentBoundary],
    target_format: AudioFormat = AudioFormat.WAV,
    bitrate_kbps: int = DEFAULT_MP3_BITRATE,
    cancel_event: Optional[CancelToken] = None,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> list[EncodedSegment]:
    """Slice and encode every boundary of ``source``, in input order.

    Args:
        source: The decoded recording; never modified
        boundaries: Sentence boundaries in output order
        target_format: Encoding for every segment
        bitrate_kbps: MP3 bitrate
        cancel_event: Object with ``is_set()``; checked between segments
        progress_callback: Optional callback function for progress messages

    Returns:
        One EncodedSegment per boundary, in the same order

    Raises:
        BatchError: If any segment fails to encode
        BatchCancelledError: If cancelled; carries the finished segments
    """

    def log(msg: str):
        if progress_callback:
            progress_callback(msg)

    target_format = AudioFormat(target_format)
    await asyncio.sleep(0)

    results: list[EncodedSegment] = []
    total = len(boundaries)
    for index, boundary in enumerate(boundaries):
        _check_cancelled(cancel_event, results)
        log(
            f"Cutting segment {index + 1}/{total} "
            f"({format_duration(boundary.start)} - {format_duration(boundary.end)})..."
        )
        sliced = slice_buffer(source, boundary.start, boundary.end)
        results.append(await _encode_segment(index, boundary, sliced, target_format, bitrate_kbps))

    logger.info("Encoded %d segment(s) as %s", len(results), target_format.value)
    return results


async def reencode_segment(
    segment: EncodedSegment,
    target_format: AudioFormat,
    bitrate_kbps: int = DEFAULT_MP3_BITRATE,
) -> EncodedSegment:
    """Convert one segment to another format on demand.

    Raises:
        EncodeError: If the segment has no buffer or encoding fails
    """
    target_format = AudioFormat(target_format)
    if segment.format is target_format:
        return segment
    if segment.buffer is None:
        raise EncodeError("Segment has no audio buffer to re-encode from")
    if target_format is AudioFormat.MP3:
        await asyncio.sleep(0)
    data = encode(segment.buffer, target_format, bitrate_kbps)
    return EncodedSegment(boundary=segment.boundary, format=target_format, data=data, buffer=segment.buffer)


async def archive_all(
    segments: Sequence[EncodedSegment],
    target_format: AudioFormat,
    naming: Callable[[int, AudioFormat], str] = segment_filename,
    bitrate_kbps: int = DEFAULT_MP3_BITRATE,
    cancel_event: Optional[CancelToken] = None,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> bytes:
    """Bundle every segment, converted to ``target_format``, into one ZIP.

    Nothing is returned unless every segment converts; a failure raises
    BatchError naming the failing index.

    Raises:
        BatchError: If any segment fails to encode or ``naming`` repeats a name
        BatchCancelledError: If cancelled; carries the converted segments
    """

    def log(msg: str):
        if progress_callback:
            progress_callback(msg)

    target_format = AudioFormat(target_format)
    await asyncio.sleep(0)

    archive = ZipArchive()
    converted: list[EncodedSegment] = []
    for index, segment in enumerate(segments):
        _check_cancelled(cancel_event, converted)
        if segment.format is not target_format:
            log(f"Converting segment {index + 1}/{len(segments)} to {target_format.value}...")
            segment = await _encode_segment(
                index, segment.boundary, segment.buffer, target_format, bitrate_kbps
            )
        converted.append(segment)
        name = naming(index, target_format)
        try:
            archive.add(name, segment.data)
        except ValueError as e:
            logger.error("Cannot add segment %d to archive as %s: %s", index, name, e)
            raise BatchError(index, name, e) from e

    log(f"Writing archive with {len(archive)} file(s)...")
    return archive.to_bytes()


async def split_audio(
    data: bytes,
    mime_type: str,
    transcriber: Transcriber,
    target_format: AudioFormat = AudioFormat.WAV,
    filename: Optional[str] = None,
    bitrate_kbps: int = DEFAULT_MP3_BITRATE,
    cancel_event: Optional[CancelToken] = None,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> list[EncodedSegment]:
    """Decode a recording, find its sentences and cut one clip per sentence.

    Decoding and transcription run in worker threads.

    Args:
        data: The encoded source recording
        mime_type: MIME type handed to the transcriber
        transcriber: Callable returning boundaries for ``(data, mime_type)``
        target_format: Encoding for every segment
        filename: Original filename, used as a container hint for decoding

    Raises:
        DecodeError: If the recording cannot be decoded
        TranscriptionError: If the transcriber fails
        BatchError: If any segment fails to encode
        BatchCancelledError: If cancelled between segments
    """

    def log(msg: str):
        if progress_callback:
            progress_callback(msg)

    log("Decoding audio...")
    source = await asyncio.to_thread(decode_audio, data, filename)
    log(
        f"Duration: {format_duration(source.duration)} "
        f"({source.channel_count} channel(s), {source.sample_rate} Hz)"
    )

    log("Detecting sentences...")
    try:
        boundaries = await asyncio.to_thread(transcriber, data, mime_type)
    except SplitterError:
        raise
    except Exception as e:
        raise TranscriptionError(f"Transcription failed: {e}") from e
    log(f"Found {len(boundaries)} sentences")

    return await process_all(
        source,
        boundaries,
        target_format,
        bitrate_kbps=bitrate_kbps,
        cancel_event=cancel_event,
        progress_callback=progress_callback,
    )
