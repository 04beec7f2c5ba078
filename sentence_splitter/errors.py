"""Exception types raised by the sentence splitter pipeline."""

from typing import Optional


class SplitterError(Exception):
    """Base class for all pipeline errors.

    Every error records the pipeline stage it came from.
    """

    stage = "pipeline"

    def __init__(self, message: str, stage: Optional[str] = None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage

    def __str__(self) -> str:
        return f"[{self.stage}] {super().__str__()}"


class DecodeError(SplitterError):
    """The source bytes are not a parseable audio container."""

    stage = "decode"


class TranscriptionError(SplitterError):
    """The transcription service failed or returned an unusable response."""

    stage = "transcribe"


class EncodeError(SplitterError):
    """A codec could not be constructed or failed while encoding."""

    stage = "encode"


class BatchError(SplitterError):
    """A segment failed inside a batch; the whole batch is aborted."""

    stage = "encode"

    def __init__(self, index: int, filename: str, cause: Exception):
        self.index = index
        self.filename = filename
        self.cause = cause
        super().__init__(f"Failed to encode segment index {index} ({filename}): {cause}")


class BatchCancelledError(SplitterError):
    """The batch was cancelled between segments.

    ``completed`` holds the segments finished before cancellation so the
    caller can decide whether to keep them.
    """

    stage = "cancel"

    def __init__(self, completed: list):
        self.completed = list(completed)
        super().__init__(f"Batch cancelled after {len(self.completed)} segment(s)")
