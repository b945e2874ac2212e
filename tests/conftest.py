"""Shared fixtures: an in-memory job database and an in-memory bucket."""

from __future__ import annotations

from typing import Any

import pytest

from media_pipeline.jobs.db import create_schema, make_engine, make_session_factory
from media_pipeline.jobs.store import JobStore
from media_pipeline.utils.errors import ObjectNotFoundError


class InMemoryObjectStore:
    """Dict-backed stand-in for ObjectStore with the same method surface."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}
        self.uploads: dict[str, str] = {}
        self.completed: list[tuple[str, str, list[dict[str, Any]]]] = []
        self._next_upload = 0

    def create_multipart_upload(self, key: str, content_type: str = "") -> str:
        self._next_upload += 1
        upload_id = f"upload-{self._next_upload}"
        self.uploads[upload_id] = key
        return upload_id

    def presign_part_upload_url(
        self, key: str, upload_id: str, part_number: int, ttl: int
    ) -> str:
        return f"https://storage.test/{key}?uploadId={upload_id}&partNumber={part_number}"

    def presign_get_url(self, key: str, ttl: int) -> str:
        return f"https://storage.test/{key}?expires={ttl}"

    def complete_multipart_upload(
        self, key: str, upload_id: str, parts: list[dict[str, Any]]
    ) -> dict[str, Any]:
        if self.uploads.get(upload_id) != key:
            raise ObjectNotFoundError("NoSuchUpload", status=404, key=key)
        del self.uploads[upload_id]
        self.completed.append((key, upload_id, parts))
        self.objects[key] = b"".join(p["ETag"].encode() for p in parts)
        return {"Key": key}

    def find_active_upload_id(self, key: str) -> str | None:
        matches = [u for u, k in self.uploads.items() if k == key]
        return matches[-1] if matches else None

    def head_object(self, key: str) -> dict[str, Any]:
        if key not in self.objects:
            raise ObjectNotFoundError("Not Found", status=404, key=key)
        return {
            "content_length": len(self.objects[key]),
            "content_type": self.content_types.get(key, ""),
            "etag": "",
        }

    def fetch_object(self, key: str) -> bytes:
        if key not in self.objects:
            raise ObjectNotFoundError("NoSuchKey", status=404, key=key)
        return self.objects[key]

    def put_object(self, key: str, data: bytes, content_type: str = "") -> None:
        self.objects[key] = data
        self.content_types[key] = content_type

    def find_key_by_prefix(self, prefix: str) -> str | None:
        stored = sorted(k for k in self.objects if k.startswith(prefix))
        if stored:
            return stored[0]
        pending = [k for k in self.uploads.values() if k.startswith(prefix)]
        return pending[-1] if pending else None

    def download_to_path(self, key: str, path: str) -> int:
        if key not in self.objects:
            raise ObjectNotFoundError("404", status=404, key=key)
        data = self.objects[key]
        with open(path, "wb") as f:
            f.write(data)
        return len(data)

    def upload_from_path(self, key: str, path: str, content_type: str = "") -> int:
        with open(path, "rb") as f:
            data = f.read()
        self.objects[key] = data
        self.content_types[key] = content_type
        return len(data)


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    create_schema(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def job_store(session_factory) -> JobStore:
    return JobStore(session_factory, max_attempts=3)


@pytest.fixture
def object_store() -> InMemoryObjectStore:
    return InMemoryObjectStore()
