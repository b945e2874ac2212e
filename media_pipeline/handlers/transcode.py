"""Transcode stage: source media in storage -> compressed audio artifact."""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile

from media_pipeline.audio.transcode import FFMPEG_TIMEOUT_SECONDS, extract_audio
from media_pipeline.handlers.interface import (
    StageHandler,
    StageOutcome,
    download_with_retry,
    upload_with_retry,
)
from media_pipeline.jobs.models import Job, Stage
from media_pipeline.storage.object_store import ObjectStore
from media_pipeline.upload.keys import AUDIO_ARTIFACT, artifact_key
from media_pipeline.utils.errors import HandlerFailure

logger = logging.getLogger(__name__)


class TranscodeHandler(StageHandler):
    """Download the original, extract its audio track and upload it.

    The artifact always lands on ``uploads/{job_id}/audio.mp3`` so a
    retried attempt overwrites the previous one.
    """

    stage = Stage.TRANSCODE.value

    def __init__(
        self,
        object_store: ObjectStore,
        key_prefix: str = "",
        ffmpeg_timeout: int = FFMPEG_TIMEOUT_SECONDS,
    ) -> None:
        self.object_store = object_store
        self.key_prefix = key_prefix
        self.ffmpeg_timeout = ffmpeg_timeout

    async def handle(self, job: Job) -> StageOutcome:
        source_key = (job.meta or {}).get("source_key")
        if not source_key:
            raise HandlerFailure(
                "Job has no source_key in meta", job_id=job.id, stage=self.stage
            )
        audio_key = artifact_key(job.id, AUDIO_ARTIFACT, self.key_prefix)

        # source and audio stay on disk; only paths cross the thread boundary
        with tempfile.TemporaryDirectory(prefix=f"transcode-{job.id}-") as tmp_dir:
            input_path = os.path.join(tmp_dir, os.path.basename(source_key))
            await download_with_retry(self.object_store, source_key, input_path)

            result = await asyncio.to_thread(
                extract_audio,
                input_path,
                os.path.join(tmp_dir, "out"),
                timeout=self.ffmpeg_timeout,
            )
            await upload_with_retry(
                self.object_store, audio_key, result.audio_path, "audio/mpeg"
            )

        logger.info(
            "Extracted audio",
            extra={
                "job_id": job.id,
                "stage": self.stage,
                "duration_seconds": result.duration_seconds,
            },
        )
        return StageOutcome(
            meta_updates={
                "audio_key": audio_key,
                "audio_duration_seconds": result.duration_seconds,
                "audio_size_bytes": result.audio_size_bytes,
                "source_size_bytes": result.source_size_bytes,
            },
            input_size_bytes=result.source_size_bytes,
            output_size_bytes=result.audio_size_bytes,
        )
