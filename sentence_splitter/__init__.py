"""
Sentence Splitter Core Module.

This module cuts a recording into one audio clip per spoken sentence.
It contains no CLI or HTTP-specific code.

Example usage:
    import asyncio
    from functools import partial
    from openai import OpenAI
    from sentence_splitter import AudioFormat, split_audio, transcribe_boundaries

    client = OpenAI()
    with open("audio.mp3", "rb") as f:
        data = f.read()
    segments = asyncio.run(
        split_audio(
            data,
            "audio/mpeg",
            partial(transcribe_boundaries, openai_client=client),
            target_format=AudioFormat.MP3,
        )
    )
    print(segments[0].boundary.text)
"""

from sentence_splitter.audio import (
    AudioBuffer,
    decode_audio,
    decode_audio_file,
    format_duration,
    slice_buffer,
)
from sentence_splitter.encoding import (
    DEFAULT_MP3_BITRATE,
    MP3_BLOCK_SIZE,
    AudioFormat,
    encode,
    encode_mp3,
    encode_wav,
    quantize,
    quantize_samples,
)
from sentence_splitter.errors import (
    BatchCancelledError,
    BatchError,
    DecodeError,
    EncodeError,
    SplitterError,
    TranscriptionError,
)
from sentence_splitter.pipeline import (
    EncodedSegment,
    archive_all,
    archive_filename,
    process_all,
    reencode_segment,
    segment_filename,
    split_audio,
)
from sentence_splitter.transcription import (
    DEFAULT_LOCAL_MODEL,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY,
    DEFAULT_TRANSCRIPTION_MODEL,
    SegmentBoundary,
    group_sentence_segments,
    guess_mime_type,
    parse_boundaries,
    transcribe_boundaries,
    transcribe_boundaries_local,
)

__all__ = [
    # Data classes
    "AudioBuffer",
    "AudioFormat",
    "SegmentBoundary",
    "EncodedSegment",
    # Errors
    "SplitterError",
    "DecodeError",
    "TranscriptionError",
    "EncodeError",
    "BatchError",
    "BatchCancelledError",
    # Configuration defaults
    "DEFAULT_MP3_BITRATE",
    "MP3_BLOCK_SIZE",
    "DEFAULT_TRANSCRIPTION_MODEL",
    "DEFAULT_LOCAL_MODEL",
    "DEFAULT_MAX_RETRIES",
    "DEFAULT_RETRY_DELAY",
    # Main functions
    "split_audio",
    "process_all",
    "reencode_segment",
    "archive_all",
    # Utility functions
    "format_duration",
    "guess_mime_type",
    "segment_filename",
    "archive_filename",
    # Lower-level functions (for advanced usage)
    "decode_audio",
    "decode_audio_file",
    "slice_buffer",
    "quantize",
    "quantize_samples",
    "encode",
    "encode_wav",
    "encode_mp3",
    "transcribe_boundaries",
    "transcribe_boundaries_local",
    "parse_boundaries",
    "group_sentence_segments",
]
