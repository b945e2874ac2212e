"""Speech recognition stage: audio artifact -> stored transcript.

The handler is written against ASRProvider only; which backend runs is
decided once at startup by configuration.
"""

from __future__ import annotations

import asyncio
import json
import logging

from media_pipeline.asr.interface import ASRProvider
from media_pipeline.handlers.interface import (
    StageHandler,
    StageOutcome,
    TranscriptRecord,
    fetch_with_retry,
    put_with_retry,
)
from media_pipeline.jobs.models import Job, Stage
from media_pipeline.storage.object_store import ObjectStore
from media_pipeline.upload.keys import (
    RAW_TRANSCRIPT_ARTIFACT,
    TEXT_TRANSCRIPT_ARTIFACT,
    artifact_key,
)
from media_pipeline.utils.errors import HandlerFailure, ProviderError

logger = logging.getLogger(__name__)


class ASRHandler(StageHandler):
    """Transcribe the job's audio artifact and persist both renderings.

    Args:
        object_store: Gateway used to read audio and write artifacts.
        provider: The process-wide ASR provider.
        timeout_seconds: Upper bound on one provider call.
        key_prefix: Storage key prefix shared with the upload side.
    """

    stage = Stage.ASR.value

    def __init__(
        self,
        object_store: ObjectStore,
        provider: ASRProvider,
        timeout_seconds: float,
        key_prefix: str = "",
    ) -> None:
        self.object_store = object_store
        self.provider = provider
        self.timeout_seconds = timeout_seconds
        self.key_prefix = key_prefix

    async def handle(self, job: Job) -> StageOutcome:
        meta = job.meta or {}
        audio_key = meta.get("audio_key")
        if not audio_key:
            raise HandlerFailure(
                "Job has no audio_key in meta", job_id=job.id, stage=self.stage
            )

        audio = await fetch_with_retry(self.object_store, audio_key)

        options = {"file_name": audio_key.rsplit("/", 1)[-1]}
        if meta.get("language"):
            options["language"] = meta["language"]

        try:
            result = await asyncio.wait_for(
                self.provider.transcribe(audio, options),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as exc:
            raise ProviderError(
                f"Provider did not answer within {self.timeout_seconds}s",
                job_id=job.id,
                provider=self.provider.name,
                cause="timeout",
            ) from exc

        raw_key = artifact_key(job.id, RAW_TRANSCRIPT_ARTIFACT, self.key_prefix)
        text_key = artifact_key(job.id, TEXT_TRANSCRIPT_ARTIFACT, self.key_prefix)
        raw_json = json.dumps(result.raw_response, ensure_ascii=False).encode("utf-8")
        text = result.text.encode("utf-8")

        await put_with_retry(self.object_store, raw_key, raw_json, "application/json")
        await put_with_retry(
            self.object_store, text_key, text, "text/plain; charset=utf-8"
        )

        logger.info(
            "Stored transcript",
            extra={"job_id": job.id, "stage": self.stage},
        )
        return StageOutcome(
            meta_updates={
                "provider": self.provider.name,
                "transcript_raw_key": raw_key,
                "transcript_text_key": text_key,
            },
            transcript=TranscriptRecord(
                provider=self.provider.name,
                raw_artifact_key=raw_key,
                text_artifact_key=text_key,
                meta=dict(result.model_meta),
            ),
            input_size_bytes=len(audio),
            output_size_bytes=len(text),
        )
