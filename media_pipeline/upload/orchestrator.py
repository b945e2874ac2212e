"""Direct-to-storage multipart uploads.

The client never streams media through this service: initiate() opens a
multipart session and hands out one presigned PUT URL per part, the
client uploads the parts straight to storage, and finalize() stitches
them together and creates the job. Finalize is idempotent, so network
retries and double submits never produce a second job.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Any

from media_pipeline.config import DEFAULT_PART_SIZE_BYTES
from media_pipeline.jobs.store import JobStore
from media_pipeline.storage.object_store import ObjectStore
from media_pipeline.upload.keys import SOURCE_STEM, is_valid_job_id, job_prefix, source_key
from media_pipeline.utils.errors import ObjectNotFoundError, UploadSessionNotFound

logger = logging.getLogger(__name__)

MAX_PARTS = 10_000
FINALIZED = "completed"


@dataclass
class InitiatedUpload:
    job_id: str
    upload_id: str
    key: str
    part_urls: list[str] = field(default_factory=list)


@dataclass
class UploadPart:
    part_number: int
    etag: str


class UploadOrchestrator:
    """Creates multipart sessions and finalizes them into jobs."""

    def __init__(
        self,
        object_store: ObjectStore,
        job_store: JobStore,
        part_size_bytes: int = DEFAULT_PART_SIZE_BYTES,
        presign_ttl_seconds: int = 3600,
        key_prefix: str = "",
    ) -> None:
        self.object_store = object_store
        self.job_store = job_store
        self.part_size_bytes = part_size_bytes
        self.presign_ttl_seconds = presign_ttl_seconds
        self.key_prefix = key_prefix

    def part_count_for(self, file_size: int) -> int:
        """Number of parts the fixed part-size policy yields for file_size."""
        return max(1, math.ceil(file_size / self.part_size_bytes))

    def initiate(
        self, file_name: str, file_size: int, part_count: int | None = None
    ) -> InitiatedUpload:
        """Open a multipart session and presign one URL per part.

        Args:
            file_name: Client-side file name; only its extension is kept.
            file_size: Size in bytes; must be positive.
            part_count: Parts the client will send. Defaults to the count
                derived from the part-size policy.

        Raises:
            ValueError: On a non-positive size or out-of-range part count.
            StorageError: If the session cannot be opened or presigned.
        """
        if file_size <= 0:
            raise ValueError("fileSize must be positive")
        if part_count is None:
            part_count = self.part_count_for(file_size)
        if not 1 <= part_count <= MAX_PARTS:
            raise ValueError(f"partCount must be between 1 and {MAX_PARTS}")

        job_id = uuid.uuid4().hex
        key = source_key(job_id, file_name, self.key_prefix)
        upload_id = self.object_store.create_multipart_upload(key)
        part_urls = [
            self.object_store.presign_part_upload_url(
                key, upload_id, part_number, self.presign_ttl_seconds
            )
            for part_number in range(1, part_count + 1)
        ]

        logger.info(
            "Initiated upload of %s (%d bytes, %d parts)",
            file_name,
            file_size,
            part_count,
            extra={"job_id": job_id},
        )
        return InitiatedUpload(
            job_id=job_id, upload_id=upload_id, key=key, part_urls=part_urls
        )

    def _normalize_parts(self, parts: list[UploadPart]) -> list[dict[str, Any]]:
        if not parts:
            raise ValueError("parts must not be empty")
        numbers = [p.part_number for p in parts]
        if len(set(numbers)) != len(numbers):
            raise ValueError("parts contain duplicate part numbers")
        if any(n < 1 or n > MAX_PARTS for n in numbers):
            raise ValueError(f"part numbers must be between 1 and {MAX_PARTS}")
        return [
            {"PartNumber": p.part_number, "ETag": p.etag}
            for p in sorted(parts, key=lambda p: p.part_number)
        ]

    def _job_meta(self, key: str, file_name: str | None, language: str | None) -> dict[str, Any]:
        meta: dict[str, Any] = {
            "source_key": key,
            "file_name": file_name or key.rsplit("/", 1)[-1],
        }
        if language:
            meta["language"] = language
        return meta

    def _resolve_source_key(self, job_id: str, file_name: str | None) -> str:
        """Rebuild the source key from file_name, or look it up by job id."""
        if file_name:
            return source_key(job_id, file_name, self.key_prefix)
        prefix = f"{job_prefix(job_id, self.key_prefix)}{SOURCE_STEM}."
        key = self.object_store.find_key_by_prefix(prefix)
        if not key:
            raise UploadSessionNotFound(
                f"No upload found under '{prefix}'", job_id=job_id, key=prefix
            )
        return key

    def _object_exists(self, key: str) -> bool:
        try:
            self.object_store.head_object(key)
        except ObjectNotFoundError:
            return False
        return True

    def finalize(
        self,
        job_id: str,
        parts: list[UploadPart],
        file_name: str | None = None,
        upload_id: str | None = None,
        language: str | None = None,
    ) -> dict[str, str]:
        """Complete the multipart upload and create the job, idempotently.

        1. Resolve the source key: rebuilt from ``file_name`` when given,
           otherwise found in storage under ``uploads/{job_id}/original.``.
        2. If the object already exists the upload was finalized before;
           make sure its job row exists and return the same success.
        3. Without a known upload id, recover it from storage or fail with
           UploadSessionNotFound.
        4. Complete the upload, then create the job (``queued/transcode``).
           A concurrent finalize that completed first is detected by a
           second HeadObject and reported as the same success.

        Storage errors propagate unchanged and no job is created.

        Returns:
            ``{"status": "completed", "job_id": job_id}``
        """
        if not is_valid_job_id(job_id):
            raise ValueError(f"Invalid jobId '{job_id}'")
        key = self._resolve_source_key(job_id, file_name)
        meta = self._job_meta(key, file_name, language)

        if self._object_exists(key):
            _, created = self.job_store.create_job(job_id, meta)
            logger.info(
                "Finalize on existing object, job %s",
                "recreated" if created else "already present",
                extra={"job_id": job_id},
            )
            return {"status": FINALIZED, "job_id": job_id}

        normalized = self._normalize_parts(parts)

        if not upload_id:
            upload_id = self.object_store.find_active_upload_id(key)
            if not upload_id:
                raise UploadSessionNotFound(
                    f"No multipart upload session for '{key}'",
                    job_id=job_id,
                    key=key,
                )
            logger.info("Recovered multipart upload id %s", upload_id, extra={"job_id": job_id})

        try:
            self.object_store.complete_multipart_upload(key, upload_id, normalized)
        except ObjectNotFoundError:
            if not self._object_exists(key):
                raise
            logger.info(
                "Upload was completed by a concurrent finalize", extra={"job_id": job_id}
            )
        self.job_store.create_job(job_id, meta)
        return {"status": FINALIZED, "job_id": job_id}
