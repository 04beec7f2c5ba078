"""CLI for splitting recordings into per-sentence audio clips."""
import os
import asyncio
from functools import partial
from glob import glob
import argparse

from openai import OpenAI

from sentence_splitter import (
    AudioFormat,
    DEFAULT_LOCAL_MODEL,
    DEFAULT_MP3_BITRATE,
    SplitterError,
    archive_all,
    archive_filename,
    format_duration,
    guess_mime_type,
    segment_filename,
    split_audio,
    transcribe_boundaries,
    transcribe_boundaries_local,
)

AUDIO_DIR = "input"  # Default input directory
OUTPUT_DIR = "output"  # Default output directory
AUDIO_PATTERNS = (
    "*.m4a",
    "*.mp3",
    "*.mp4",
    "*.wav",
    "*.aac",
    "*.flac",
    "*.ogg",
    "*.webm",
)


def split_audio_file(audio_file, transcriber, args):
    """Split one file and write its clips, transcript and optional archive.

    Returns:
        Directory containing the written clips
    """
    target_format = AudioFormat(args.format)
    basename = os.path.splitext(os.path.basename(audio_file))[0]
    segment_dir = os.path.join(args.output_dir, basename)
    os.makedirs(segment_dir, exist_ok=True)

    with open(audio_file, "rb") as f:
        data = f.read()

    segments = asyncio.run(
        split_audio(
            data,
            guess_mime_type(audio_file),
            partial(transcriber, filename=os.path.basename(audio_file)),
            target_format=target_format,
            filename=audio_file,
            bitrate_kbps=args.bitrate,
            progress_callback=print,
        )
    )

    transcript_lines = []
    for index, segment in enumerate(segments):
        filename = segment_filename(index, target_format)
        with open(os.path.join(segment_dir, filename), "wb") as f:
            f.write(segment.data)
        boundary = segment.boundary
        transcript_lines.append(
            f"[{format_duration(boundary.start)} - {format_duration(boundary.end)}] "
            f"{boundary.text}"
        )

    with open(os.path.join(segment_dir, "transcript.txt"), "w", encoding="utf-8") as f:
        f.write("\n".join(transcript_lines) + "\n")
    print(f"Wrote {len(segments)} clips to {segment_dir}")

    if args.zip:
        archive = asyncio.run(archive_all(segments, target_format, bitrate_kbps=args.bitrate))
        archive_path = os.path.join(args.output_dir, archive_filename(audio_file, target_format))
        with open(archive_path, "wb") as f:
            f.write(archive)
        print(f"Archive saved to {archive_path}")

    return segment_dir


def build_parser():
    parser = argparse.ArgumentParser(description="Split a recording into one audio clip per sentence")
    parser.add_argument(
        "audio_file",
        nargs="?",
        help="Path to a single audio file to process (.mp3, .m4a, .wav, .flac, etc)",
    )
    parser.add_argument(
        "--format",
        choices=[f.value for f in AudioFormat],
        default=AudioFormat.WAV.value,
        help="Output format for the clips (default: wav)",
    )
    parser.add_argument(
        "--bitrate",
        type=int,
        default=DEFAULT_MP3_BITRATE,
        help="MP3 bitrate in kbps (default: %(default)s)",
    )
    parser.add_argument(
        "--output-dir",
        default=OUTPUT_DIR,
        help="Directory for the clips (default: %(default)s)",
    )
    parser.add_argument(
        "--zip",
        action="store_true",
        help="Also bundle all clips into a single .zip archive",
    )
    parser.add_argument(
        "--local",
        action="store_true",
        help="Use a local Whisper model instead of the OpenAI API",
    )
    parser.add_argument(
        "--model",
        default=DEFAULT_LOCAL_MODEL,
        help="Local Whisper model size when --local is set (default: %(default)s)",
    )
    parser.add_argument(
        "--language",
        default=None,
        help="Language code of the recording (default: auto-detect)",
    )
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    if args.local:
        transcriber = partial(
            transcribe_boundaries_local,
            model_name=args.model,
            language=args.language,
        )
    else:
        # Check if OPENAI_API_KEY environment variable is set
        if not os.getenv("OPENAI_API_KEY"):
            print("Error: OPENAI_API_KEY environment variable is not set.")
            return 1
        transcriber = partial(
            transcribe_boundaries,
            openai_client=OpenAI(),
            language=args.language,
        )

    if args.audio_file:
        audio_files = [args.audio_file]
    else:
        audio_files = []
        for pattern in AUDIO_PATTERNS:
            audio_files.extend(glob(os.path.join(AUDIO_DIR, pattern)))
    if not audio_files:
        print("No audio files found to process.")
        return 1

    failures = 0
    for audio_file in audio_files:
        print(f"Processing: {audio_file}")
        try:
            split_audio_file(audio_file, transcriber, args)
        except SplitterError as e:
            print(f"Error: {e}")
            failures += 1
    print("All done!")
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
