"""Stage handler contract.

A handler performs the blocking work for one stage and describes the
result as a StageOutcome. It never writes job state itself; the worker
applies the outcome through the job store so every transition stays a
conditional update on the claim.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from media_pipeline.jobs.models import Job
from media_pipeline.storage.object_store import ObjectStore
from media_pipeline.utils.retry import retry_with_backoff


@dataclass
class TranscriptRecord:
    """Transcript row to insert when the ASR stage succeeds."""

    provider: str
    raw_artifact_key: str
    text_artifact_key: str
    meta: dict[str, Any] = field(default_factory=dict)


@dataclass
class StageOutcome:
    """What a successful stage run produced."""

    meta_updates: dict[str, Any] = field(default_factory=dict)
    transcript: TranscriptRecord | None = None
    input_size_bytes: int = 0
    output_size_bytes: int = 0


class StageHandler(ABC):
    """Performs the work for jobs waiting on ``stage``."""

    stage: str = ""

    @abstractmethod
    async def handle(self, job: Job) -> StageOutcome:
        """Run the stage for a claimed job.

        Raises:
            Exception: Any failure; the worker counts it against the
                stage's retry budget.
        """


@retry_with_backoff(max_retries=3, base_delay=0.5)
async def fetch_with_retry(object_store: ObjectStore, key: str) -> bytes:
    """Fetch an object, retrying transient storage errors."""
    return await asyncio.to_thread(object_store.fetch_object, key)


@retry_with_backoff(max_retries=3, base_delay=0.5)
async def put_with_retry(
    object_store: ObjectStore, key: str, data: bytes, content_type: str = ""
) -> None:
    """Store an object, retrying transient storage errors."""
    await asyncio.to_thread(object_store.put_object, key, data, content_type)


@retry_with_backoff(max_retries=3, base_delay=0.5)
async def download_with_retry(object_store: ObjectStore, key: str, path: str) -> int:
    """Stream an object to a local file, retrying transient storage errors."""
    return await asyncio.to_thread(object_store.download_to_path, key, path)


@retry_with_backoff(max_retries=3, base_delay=0.5)
async def upload_with_retry(
    object_store: ObjectStore, key: str, path: str, content_type: str = ""
) -> int:
    """Stream a local file to storage, retrying transient storage errors."""
    return await asyncio.to_thread(
        object_store.upload_from_path, key, path, content_type
    )
