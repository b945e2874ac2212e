"""Audio extraction from uploaded media using ffmpeg.

Drops any video stream and encodes the audio track as 16 kHz mono MP3,
which keeps the artifact small enough for hosted ASR upload limits
while preserving speech quality.
"""

import json
import os
import shutil
import subprocess
from dataclasses import dataclass

from media_pipeline.utils.errors import TranscodeError

TARGET_SAMPLE_RATE = 16000
TARGET_CHANNELS = 1
TARGET_BITRATE = "64k"
OUTPUT_FILENAME = "audio.mp3"

FFPROBE_TIMEOUT_SECONDS = 30
FFMPEG_TIMEOUT_SECONDS = 600


@dataclass
class ExtractResult:
    """Where the extracted audio landed and what it measured."""

    source_path: str
    audio_path: str
    source_size_bytes: int
    audio_size_bytes: int
    duration_seconds: float


def _require_binary(name: str) -> str:
    """Resolve a binary on PATH or fail the stage."""
    path = shutil.which(name)
    if not path:
        raise TranscodeError(f"{name} binary not found on PATH")
    return path


def _run_tool(cmd: list[str], timeout: float, source_path: str, what: str) -> str:
    """Run an ffmpeg-family command and return its stdout.

    Raises:
        TranscodeError: On a non-zero exit or when ``timeout`` elapses.
    """
    try:
        completed = subprocess.run(
            cmd, check=True, capture_output=True, text=True, timeout=timeout
        )
    except subprocess.TimeoutExpired as exc:
        raise TranscodeError(
            f"{what}: timed out after {timeout} seconds", input_path=source_path
        ) from exc
    except subprocess.CalledProcessError as exc:
        detail = (exc.stderr or "").strip() or f"exit status {exc.returncode}"
        raise TranscodeError(f"{what}: {detail}", input_path=source_path) from exc
    return completed.stdout or ""


def probe_media(path: str) -> dict:
    """Describe a media file's streams and container with ffprobe.

    Returns an empty dict when ffprobe is not installed; ffmpeg then
    becomes the only validation.
    """
    ffprobe = shutil.which("ffprobe")
    if not ffprobe:
        return {}

    stdout = _run_tool(
        [
            ffprobe,
            "-v", "error",
            "-print_format", "json",
            "-show_streams",
            "-show_format",
            path,
        ],
        FFPROBE_TIMEOUT_SECONDS,
        path,
        "Media file is corrupt or unreadable (ffprobe)",
    )
    try:
        return json.loads(stdout or "{}")
    except ValueError:
        return {}


def _has_audio_stream(probe: dict) -> bool:
    return any(s.get("codec_type") == "audio" for s in probe.get("streams", []))


def _duration(probe: dict) -> float:
    try:
        return float(probe.get("format", {}).get("duration", 0.0))
    except (TypeError, ValueError):
        return 0.0


def extract_audio(
    source_path: str,
    output_dir: str,
    output_filename: str = OUTPUT_FILENAME,
    timeout: int = FFMPEG_TIMEOUT_SECONDS,
) -> ExtractResult:
    """Extract the audio track of a media file to 16 kHz mono MP3.

    Args:
        source_path: Path to the uploaded media (video or audio).
        output_dir: Directory to write the MP3 into; created if missing.
        output_filename: Output file name (default ``audio.mp3``).
        timeout: Seconds before ffmpeg is killed.

    Raises:
        TranscodeError: If the source is missing, corrupt or silent-only
            (no audio stream), or ffmpeg fails.
    """
    if not os.path.isfile(source_path):
        raise TranscodeError(
            f"Input file does not exist: {source_path}", input_path=source_path
        )
    ffmpeg = _require_binary("ffmpeg")

    probe = probe_media(source_path)
    if probe and not _has_audio_stream(probe):
        raise TranscodeError("Media file has no audio stream", input_path=source_path)

    os.makedirs(output_dir, exist_ok=True)
    audio_path = os.path.join(output_dir, output_filename)

    _run_tool(
        [
            ffmpeg,
            "-y",
            "-i", source_path,
            "-vn",
            "-ac", str(TARGET_CHANNELS),
            "-ar", str(TARGET_SAMPLE_RATE),
            "-c:a", "libmp3lame",
            "-b:a", TARGET_BITRATE,
            audio_path,
        ],
        timeout,
        source_path,
        "ffmpeg audio extraction failed",
    )

    audio_size = os.path.getsize(audio_path) if os.path.exists(audio_path) else 0
    if audio_size == 0:
        raise TranscodeError(
            f"ffmpeg wrote no audio to {audio_path}", input_path=source_path
        )

    return ExtractResult(
        source_path=source_path,
        audio_path=audio_path,
        source_size_bytes=os.path.getsize(source_path),
        audio_size_bytes=audio_size,
        duration_seconds=_duration(probe),
    )
