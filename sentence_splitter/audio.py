"""
In-memory audio buffers, decoding and slicing.

Decoding is delegated to the host's ffmpeg/ffprobe binaries; everything
after that works on an :class:`AudioBuffer` held in memory.
"""

import json
import logging
import math
import os
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Optional

import numpy as np

from sentence_splitter.errors import DecodeError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class AudioBuffer:
    """Multi-channel float32 samples at a fixed sample rate.

    ``channels`` is shaped ``(channel_count, frame_count)``. The samples are
    copied and made read-only on construction, so later writes to the
    caller's array never reach the buffer; operations always return a new
    buffer.
    """

    sample_rate: int
    channels: np.ndarray

    def __post_init__(self):
        if int(self.sample_rate) <= 0:
            raise ValueError(f"sample_rate must be positive, got {self.sample_rate}")
        data = np.array(self.channels, dtype=np.float32, copy=True)
        if data.ndim != 2 or data.shape[0] < 1:
            raise ValueError("channels must be a 2-D array with at least one channel")
        data.setflags(write=False)
        object.__setattr__(self, "sample_rate", int(self.sample_rate))
        object.__setattr__(self, "channels", data)

    @classmethod
    def silence(cls, channel_count: int, frame_count: int, sample_rate: int) -> "AudioBuffer":
        """Create a zero-filled buffer."""
        return cls(sample_rate, np.zeros((channel_count, frame_count), dtype=np.float32))

    @property
    def channel_count(self) -> int:
        return self.channels.shape[0]

    @property
    def frame_count(self) -> int:
        return self.channels.shape[1]

    @property
    def duration(self) -> float:
        """Length in seconds."""
        return self.frame_count / self.sample_rate


def format_duration(seconds: float) -> str:
    """Format duration in seconds to HH:MM:SS.mmm format."""
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)
    milliseconds = int((seconds % 1) * 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{milliseconds:03d}"


def _probe_audio_stream(filepath: str) -> tuple[int, int]:
    """Return (sample_rate, channel_count) of the first audio stream."""
    result = subprocess.run(
        [
            "ffprobe",
            "-v",
            "error",
            "-select_streams",
            "a:0",
            "-show_entries",
            "stream=sample_rate,channels",
            "-of",
            "json",
            filepath,
        ],
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    )
    if result.returncode != 0:
        raise DecodeError(f"ffprobe could not read the audio container: {result.stderr.strip()}")

    try:
        streams = json.loads(result.stdout or "{}").get("streams", [])
    except json.JSONDecodeError as e:
        raise DecodeError(f"Unreadable ffprobe output: {e}") from e
    if not streams:
        raise DecodeError("No audio stream found")

    stream = streams[0]
    try:
        sample_rate = int(stream["sample_rate"])
        channel_count = int(stream["channels"])
    except (KeyError, TypeError, ValueError) as e:
        raise DecodeError(f"Audio stream is missing sample rate or channel count: {stream}") from e
    if sample_rate <= 0 or channel_count <= 0:
        raise DecodeError(f"Invalid audio stream parameters: {stream}")
    return sample_rate, channel_count


def decode_audio_file(filepath: str) -> AudioBuffer:
    """Decode an audio file on disk into an :class:`AudioBuffer`.

    The native sample rate and channel layout are kept; ffmpeg only converts
    the samples to interleaved float32.

    Raises:
        DecodeError: If the file is not a parseable audio container
    """
    try:
        sample_rate, channel_count = _probe_audio_stream(filepath)
        result = subprocess.run(
            [
                "ffmpeg",
                "-v",
                "error",
                "-i",
                filepath,
                "-vn",
                "-f",
                "f32le",
                "-acodec",
                "pcm_f32le",
                "pipe:1",
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise DecodeError(f"ffmpeg/ffprobe not available: {e}") from e

    if result.returncode != 0:
        raise DecodeError(
            f"ffmpeg failed to decode {filepath}. "
            f"Error: {result.stderr.decode('utf-8', errors='ignore')}"
        )

    samples = np.frombuffer(result.stdout, dtype="<f4")
    frame_count = samples.size // channel_count
    if frame_count == 0:
        raise DecodeError("Decoded audio contains no samples")

    # Interleaved frames -> one row per channel
    channels = samples[: frame_count * channel_count].reshape(frame_count, channel_count).T
    buffer = AudioBuffer(sample_rate, np.ascontiguousarray(channels, dtype=np.float32))
    logger.debug(
        "Decoded %s: %d channel(s), %d Hz, %d frames",
        filepath,
        buffer.channel_count,
        buffer.sample_rate,
        buffer.frame_count,
    )
    return buffer


def decode_audio(data: bytes, filename: Optional[str] = None) -> AudioBuffer:
    """Decode raw container bytes (mp3, m4a, wav, ...) into an :class:`AudioBuffer`.

    Args:
        data: The encoded audio bytes
        filename: Optional original filename, used as a container hint

    Raises:
        DecodeError: If the bytes are empty or not a parseable audio container
    """
    if not data:
        raise DecodeError("Audio data is empty")

    suffix = os.path.splitext(filename)[1] if filename else ""
    temp_file = tempfile.NamedTemporaryFile(suffix=suffix, delete=False)
    try:
        temp_file.write(data)
        temp_file.close()
        return decode_audio_file(temp_file.name)
    finally:
        temp_file.close()
        if os.path.exists(temp_file.name):
            os.unlink(temp_file.name)


def slice_buffer(buffer: AudioBuffer, start_seconds: float, end_seconds: float) -> AudioBuffer:
    """Copy the frames in ``[start_seconds, end_seconds)`` into a new buffer.

    The start is floored and the end ceiled to whole frames, then clamped to
    the buffer. A range that ends up empty yields one frame of silence per
    channel instead of an error. No fading is applied at the cut edges.
    """
    rate = buffer.sample_rate
    start_frame = max(0, math.floor(start_seconds * rate))
    end_frame = min(buffer.frame_count, math.ceil(end_seconds * rate))
    frame_count = end_frame - start_frame

    if frame_count <= 0:
        logger.debug(
            "Degenerate range %.3f-%.3fs on %d frames, returning silence",
            start_seconds,
            end_seconds,
            buffer.frame_count,
        )
        return AudioBuffer.silence(buffer.channel_count, 1, rate)

    return AudioBuffer(rate, buffer.channels[:, start_frame:end_frame])
