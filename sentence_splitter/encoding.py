"""
PCM quantization and the WAV / MP3 encoders.

Both encoders share the same float -> int16 rule so a segment exported as
WAV and as MP3 starts from identical PCM.
"""

import enum
import logging
import math
import struct

import av
import numpy as np

from sentence_splitter.audio import AudioBuffer
from sentence_splitter.errors import EncodeError

logger = logging.getLogger(__name__)

DEFAULT_MP3_BITRATE = 128  # kbps
MP3_BLOCK_SIZE = 1152  # frames per MPEG-1 Layer III frame

WAV_HEADER_SIZE = 44
BITS_PER_SAMPLE = 16


class AudioFormat(str, enum.Enum):
    WAV = "wav"
    MP3 = "mp3"

    @property
    def extension(self) -> str:
        return self.value

    @property
    def mime_type(self) -> str:
        return "audio/wav" if self is AudioFormat.WAV else "audio/mpeg"


def quantize(sample: float) -> int:
    """Convert one float sample to a signed 16-bit integer.

    Clamped to [-1, 1]; negatives scale by 32768 and the rest by 32767, and
    the product is truncated toward zero.
    """
    if math.isnan(sample):
        return 0
    value = max(-1.0, min(1.0, float(sample)))
    return int(value * 32768) if value < 0 else int(value * 32767)


def quantize_samples(samples) -> np.ndarray:
    """Vectorized :func:`quantize` over an array of any shape."""
    values = np.nan_to_num(np.asarray(samples, dtype=np.float64), nan=0.0)
    values = np.clip(values, -1.0, 1.0)
    scaled = np.where(values < 0, values * 32768.0, values * 32767.0)
    # astype truncates toward zero
    return scaled.astype(np.int16)


def encode_wav(buffer: AudioBuffer) -> bytes:
    """Serialize a buffer as a canonical 16-bit PCM RIFF/WAVE byte stream."""
    channel_count = buffer.channel_count
    block_align = channel_count * 2
    data_size = buffer.frame_count * block_align

    header = struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        WAV_HEADER_SIZE + data_size - 8,
        b"WAVE",
        b"fmt ",
        16,  # fmt chunk size
        1,  # PCM
        channel_count,
        buffer.sample_rate,
        buffer.sample_rate * block_align,  # byte rate
        block_align,
        BITS_PER_SAMPLE,
        b"data",
        data_size,
    )
    # (channels, frames) -> frames x channels, little-endian int16
    pcm = quantize_samples(buffer.channels).T.astype("<i2")
    return header + pcm.tobytes()


def encode_mp3(buffer: AudioBuffer, bitrate_kbps: int = DEFAULT_MP3_BITRATE) -> bytes:
    """Encode a buffer as an MPEG-1 Layer III stream with libmp3lame.

    Only mono and stereo are supported: extra channels beyond the first two
    are dropped. A fresh encoder is created and flushed for every call.

    Args:
        buffer: The audio to encode
        bitrate_kbps: Constant bitrate in kilobits per second

    Returns:
        The concatenated MP3 frames

    Raises:
        EncodeError: If the codec cannot be opened or any block fails to encode
    """
    channel_count = min(2, buffer.channel_count)
    layout = "mono" if channel_count == 1 else "stereo"

    try:
        codec = av.CodecContext.create("libmp3lame", "w")
        codec.sample_rate = buffer.sample_rate
        codec.layout = layout
        codec.format = "s16p"
        codec.bit_rate = bitrate_kbps * 1000
        codec.open()
    except Exception as e:
        raise EncodeError(
            f"Could not open MP3 encoder ({layout}, {buffer.sample_rate} Hz, {bitrate_kbps} kbps): {e}"
        ) from e

    pcm = quantize_samples(buffer.channels[:channel_count])
    chunks: list[bytes] = []
    offset = 0

    try:
        for offset in range(0, buffer.frame_count, MP3_BLOCK_SIZE):
            block = np.ascontiguousarray(pcm[:, offset : offset + MP3_BLOCK_SIZE])
            frame = av.AudioFrame.from_ndarray(block, format="s16p", layout=layout)
            frame.sample_rate = buffer.sample_rate
            frame.pts = offset
            for packet in codec.encode(frame):
                chunks.append(bytes(packet))

        # Flush whatever the encoder is still holding
        for packet in codec.encode(None):
            chunks.append(bytes(packet))
    except Exception as e:
        raise EncodeError(f"MP3 encoding failed at frame {offset}: {e}") from e

    mp3_data = b"".join(chunks)
    logger.debug(
        "Encoded %d frames to %d bytes of MP3 (%d kbps, %s)",
        buffer.frame_count,
        len(mp3_data),
        bitrate_kbps,
        layout,
    )
    return mp3_data


def encode(buffer: AudioBuffer, fmt: AudioFormat, bitrate_kbps: int = DEFAULT_MP3_BITRATE) -> bytes:
    """Encode a buffer in the requested format.

    Raises:
        EncodeError: If encoding fails for any reason
    """
    fmt = AudioFormat(fmt)
    try:
        if fmt is AudioFormat.MP3:
            return encode_mp3(buffer, bitrate_kbps)
        return encode_wav(buffer)
    except EncodeError:
        raise
    except Exception as e:
        raise EncodeError(f"{fmt.value.upper()} encoding failed: {e}") from e
