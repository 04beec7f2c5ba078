"""
Sentence boundary detection.

Boundaries come from Whisper, either through the OpenAI API or a local
``openai-whisper`` model. Whisper's timed segments do not always line up with
sentences, so consecutive segments are grouped until one ends a sentence.
"""

import logging
import math
import mimetypes
import os
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

import torch
import whisper
from openai import OpenAI

from sentence_splitter.errors import TranscriptionError

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_TRANSCRIPTION_MODEL = "whisper-1"
DEFAULT_LOCAL_MODEL = "base"
DEFAULT_MAX_RETRIES = 3  # attempts before giving up
DEFAULT_RETRY_DELAY = 5  # seconds
DEFAULT_MAX_SENTENCE_DURATION = 30.0  # seconds

SENTENCE_TERMINATORS = (".", "?", "!", "…")
CLOSING_CHARS = "\"')]»”’"


@dataclass(frozen=True)
class SegmentBoundary:
    """One sentence and its time range in the source recording."""

    text: str
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


def guess_mime_type(filename: Optional[str]) -> str:
    """Guess the MIME type of an audio file from its name."""
    if filename:
        mime_type, _ = mimetypes.guess_type(filename)
        if mime_type:
            return mime_type
    return "application/octet-stream"


def _extension_for(mime_type: str) -> str:
    return mimetypes.guess_extension(mime_type) or ""


def _field(item: Any, name: str) -> Any:
    if isinstance(item, dict):
        return item.get(name)
    return getattr(item, name, None)


def parse_boundaries(items: Iterable[Any]) -> list[SegmentBoundary]:
    """Convert timed segments (dicts or response objects) into boundaries.

    Ranges are not checked for start < end; the slicer turns degenerate
    ranges into silent segments.

    Raises:
        TranscriptionError: If a segment lacks text or numeric timestamps
    """
    boundaries = []
    for position, item in enumerate(items):
        text = _field(item, "text")
        start = _field(item, "start")
        end = _field(item, "end")
        if text is None or start is None or end is None:
            raise TranscriptionError(
                f"Segment {position} is missing text, start or end: {item!r}"
            )
        try:
            start = float(start)
            end = float(end)
        except (TypeError, ValueError) as e:
            raise TranscriptionError(f"Segment {position} has non-numeric timestamps: {item!r}") from e
        if not (math.isfinite(start) and math.isfinite(end)):
            raise TranscriptionError(f"Segment {position} has non-finite timestamps: {item!r}")
        boundaries.append(SegmentBoundary(text=str(text).strip(), start=start, end=end))
    return boundaries


def _ends_sentence(text: str) -> bool:
    stripped = text.rstrip().rstrip(CLOSING_CHARS)
    return stripped.endswith(SENTENCE_TERMINATORS)


def group_sentence_segments(
    boundaries: list[SegmentBoundary],
    max_duration: float = DEFAULT_MAX_SENTENCE_DURATION,
) -> list[SegmentBoundary]:
    """Merge consecutive segments until each one holds a full sentence.

    Args:
        boundaries: Timed segments in playback order
        max_duration: Stop merging once a group reaches this many seconds,
            even without terminal punctuation

    Returns:
        List of merged boundaries
    """
    if not boundaries:
        return []

    grouped = []
    current = boundaries[0]

    for segment in boundaries[1:]:
        if _ends_sentence(current.text) or current.duration >= max_duration:
            grouped.append(current)
            current = segment
        else:
            current = SegmentBoundary(
                text=f"{current.text} {segment.text}".strip(),
                start=current.start,
                end=segment.end,
            )

    grouped.append(current)
    return grouped


def transcribe_boundaries(
    data: bytes,
    mime_type: str,
    openai_client: OpenAI,
    filename: Optional[str] = None,
    model: str = DEFAULT_TRANSCRIPTION_MODEL,
    language: Optional[str] = None,
    max_retries: int = DEFAULT_MAX_RETRIES,
    retry_delay: float = DEFAULT_RETRY_DELAY,
    group_sentences: bool = True,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> list[SegmentBoundary]:
    """Get sentence boundaries for an audio file from the OpenAI Whisper API.

    Args:
        data: Encoded audio bytes
        mime_type: MIME type of ``data``
        openai_client: Initialized OpenAI client
        filename: Name sent with the upload; its extension tells the API the
            container format, so one is derived from ``mime_type`` when omitted
        model: Transcription model
        language: Optional language code for transcription
        max_retries: Number of attempts before giving up
        retry_delay: Delay in seconds between retry attempts on failure
        group_sentences: Merge Whisper segments into whole sentences
        progress_callback: Optional callback function for progress messages

    Returns:
        Boundaries in playback order

    Raises:
        TranscriptionError: If every attempt fails or the response is unusable
    """

    def log(msg: str):
        if progress_callback:
            progress_callback(msg)

    if not filename:
        filename = "audio" + _extension_for(mime_type)

    kwargs = {
        "model": model,
        "file": (filename, data, mime_type),
        "response_format": "verbose_json",
        "timestamp_granularities": ["segment"],
    }
    if language:
        kwargs["language"] = language

    attempts = max(1, max_retries)
    for attempt in range(1, attempts + 1):
        try:
            log(f"Transcribing {filename} (attempt {attempt}/{attempts})...")
            transcript = openai_client.audio.transcriptions.create(**kwargs)
            break
        except Exception as e:
            logger.warning("Transcription attempt %d/%d failed: %s", attempt, attempts, e)
            if attempt == attempts:
                raise TranscriptionError(f"Transcription failed: {e}") from e
            log(f"Error: {e}. Retrying in {retry_delay} seconds...")
            time.sleep(retry_delay)

    segments = _field(transcript, "segments")
    if segments is None:
        raise TranscriptionError("Transcription response contains no segments")

    boundaries = parse_boundaries(segments)
    if group_sentences:
        boundaries = group_sentence_segments(boundaries)
    log(f"Found {len(boundaries)} sentences")
    return boundaries


def _select_device() -> str:
    if torch.cuda.is_available():
        try:
            # Make sure the GPU actually works before committing to it
            torch.zeros(1).cuda()
            return "cuda"
        except Exception as e:
            logger.warning("GPU detected but not compatible: %s. Falling back to CPU", e)
    return "cpu"


def transcribe_boundaries_local(
    data: bytes,
    mime_type: str,
    filename: Optional[str] = None,
    model_name: str = DEFAULT_LOCAL_MODEL,
    language: Optional[str] = None,
    group_sentences: bool = True,
    progress_callback: Optional[Callable[[str], None]] = None,
) -> list[SegmentBoundary]:
    """Get sentence boundaries using a local Whisper model.

    Args:
        data: Encoded audio bytes
        mime_type: MIME type of ``data``, used to pick a file extension
        filename: Original filename; its extension wins over ``mime_type``
        model_name: Whisper model size ('tiny', 'base', 'small', ...)
        language: Optional language code; None auto-detects
        group_sentences: Merge Whisper segments into whole sentences
        progress_callback: Optional callback function for progress messages

    Raises:
        TranscriptionError: If the model cannot be loaded or transcription fails
    """

    def log(msg: str):
        if progress_callback:
            progress_callback(msg)

    suffix = os.path.splitext(filename)[1] if filename else ""
    suffix = suffix or _extension_for(mime_type)
    temp_file = tempfile.NamedTemporaryFile(suffix=suffix, delete=False)
    try:
        temp_file.write(data)
        temp_file.close()

        device = _select_device()
        log(f"Loading Whisper model '{model_name}' on {device}...")
        model = whisper.load_model(model_name, device=device)
        log("Transcribing locally...")
        result = model.transcribe(temp_file.name, language=language)
    except Exception as e:
        raise TranscriptionError(f"Local transcription failed: {e}") from e
    finally:
        temp_file.close()
        if os.path.exists(temp_file.name):
            os.unlink(temp_file.name)

    boundaries = parse_boundaries(result.get("segments", []))
    if group_sentences:
        boundaries = group_sentence_segments(boundaries)
    log(f"Detected language: {result.get('language')}. Found {len(boundaries)} sentences")
    return boundaries
