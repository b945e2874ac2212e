"""Deterministic storage keys for a job's objects.

Every object belonging to a job lives under ``{prefix}uploads/{job_id}/``
so that retries overwrite the same keys instead of leaving orphans.
"""

import re

_EXT_PATTERN = re.compile(r"^[a-z0-9]{1,8}$")
_JOB_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")

SOURCE_STEM = "original"
AUDIO_ARTIFACT = "audio.mp3"
RAW_TRANSCRIPT_ARTIFACT = "transcript.raw.json"
TEXT_TRANSCRIPT_ARTIFACT = "transcript.txt"


def file_extension(file_name: str) -> str:
    """Lower-cased extension of file_name, or "bin" when unusable."""
    _, dot, ext = file_name.rpartition(".")
    ext = ext.lower()
    if not dot or not _EXT_PATTERN.match(ext):
        return "bin"
    return ext


def is_valid_job_id(job_id: str) -> bool:
    """Job ids are uuid4 hex strings; anything else could escape the prefix."""
    return bool(_JOB_ID_PATTERN.match(job_id or ""))


def job_prefix(job_id: str, prefix: str = "") -> str:
    return f"{prefix}uploads/{job_id}/"


def source_key(job_id: str, file_name: str, prefix: str = "") -> str:
    """Key of the uploaded original, e.g. ``uploads/{job_id}/original.mp4``."""
    return f"{job_prefix(job_id, prefix)}{SOURCE_STEM}.{file_extension(file_name)}"


def artifact_key(job_id: str, artifact: str, prefix: str = "") -> str:
    """Key of a stage artifact, e.g. ``uploads/{job_id}/audio.mp3``."""
    return f"{job_prefix(job_id, prefix)}{artifact}"
