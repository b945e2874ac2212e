"""HTTP surface for uploads and job polling.

Thin FastAPI layer over UploadOrchestrator and JobStore. Request and
response bodies use camelCase keys to match the browser client.
"""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from media_pipeline.config import Settings
from media_pipeline.jobs.db import create_schema, make_engine, make_session_factory
from media_pipeline.jobs.models import JobState
from media_pipeline.jobs.store import JobStore
from media_pipeline.observability.logger import setup_logging
from media_pipeline.storage.object_store import ObjectStore
from media_pipeline.upload.orchestrator import UploadOrchestrator, UploadPart
from media_pipeline.utils.errors import (
    JobNotFound,
    StorageError,
    UploadSessionNotFound,
)

logger = logging.getLogger(__name__)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InitiateRequest(CamelModel):
    file_name: str = Field(min_length=1, max_length=1024)
    file_size: int
    part_count: int | None = None


class InitiateResponse(CamelModel):
    job_id: str
    upload_id: str
    key: str
    part_urls: list[str]


class PartIn(CamelModel):
    part_number: int
    e_tag: str = Field(min_length=1)


class FinalizeRequest(CamelModel):
    job_id: str
    file_name: str | None = Field(default=None, min_length=1, max_length=1024)
    upload_id: str | None = None
    language: str | None = None
    parts: list[PartIn] = Field(default_factory=list)


class FinalizeResponse(CamelModel):
    status: str
    job_id: str


class JobResponse(CamelModel):
    job_id: str
    state: str
    stage: str
    retry_count: int
    created_at: datetime
    updated_at: datetime


class HealthResponse(BaseModel):
    ok: bool
    db_ok: bool


def create_app(
    settings: Settings | None = None,
    job_store: JobStore | None = None,
    object_store: ObjectStore | None = None,
) -> FastAPI:
    """Build the API application.

    Collaborators can be injected for tests; otherwise they are built
    from ``settings`` (or the environment).
    """
    setup_logging()
    settings = settings or Settings.from_env()

    if job_store is None:
        engine = make_engine(settings.database_url)
        create_schema(engine)
        job_store = JobStore(
            make_session_factory(engine), max_attempts=settings.max_stage_attempts
        )
    if object_store is None:
        object_store = ObjectStore(
            bucket=settings.s3_bucket,
            region=settings.aws_region,
            endpoint_url=settings.s3_endpoint_url,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
        )

    orchestrator = UploadOrchestrator(
        object_store,
        job_store,
        part_size_bytes=settings.upload_part_size_bytes,
        presign_ttl_seconds=settings.presign_ttl_seconds,
        key_prefix=settings.storage_key_prefix,
    )

    app = FastAPI(title="Media Pipeline API", version="0.1.0")

    @app.exception_handler(UploadSessionNotFound)
    async def _session_not_found(request: Request, exc: UploadSessionNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(JobNotFound)
    async def _job_not_found(request: Request, exc: JobNotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": str(exc)})

    @app.exception_handler(StorageError)
    async def _storage_error(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("Storage error: %s", exc, extra={"job_id": exc.job_id})
        return JSONResponse(
            status_code=502,
            content={"error": str(exc), "storageStatus": exc.status},
        )

    @app.exception_handler(ValueError)
    async def _bad_request(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.post("/uploads/initiate", response_model=InitiateResponse)
    def initiate_upload(req: InitiateRequest) -> InitiateResponse:
        initiated = orchestrator.initiate(req.file_name, req.file_size, req.part_count)
        return InitiateResponse(
            job_id=initiated.job_id,
            upload_id=initiated.upload_id,
            key=initiated.key,
            part_urls=initiated.part_urls,
        )

    @app.post("/uploads/finalize", response_model=FinalizeResponse)
    def finalize_upload(req: FinalizeRequest) -> FinalizeResponse:
        result = orchestrator.finalize(
            req.job_id,
            [UploadPart(part_number=p.part_number, etag=p.e_tag) for p in req.parts],
            file_name=req.file_name,
            upload_id=req.upload_id,
            language=req.language,
        )
        return FinalizeResponse(status=result["status"], job_id=result["job_id"])

    @app.get("/jobs/{job_id}", response_model=JobResponse)
    def get_job(job_id: str) -> JobResponse:
        job = job_store.get_job(job_id)
        return JobResponse(
            job_id=job.id,
            state=job.state,
            stage=job.stage,
            retry_count=job.retry_count,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )

    @app.get("/jobs/{job_id}/transcript")
    def get_transcript(job_id: str):
        job = job_store.get_job(job_id)
        if job.state != JobState.DONE.value:
            return JSONResponse(
                status_code=404,
                content={"error": f"Job '{job_id}' is {job.state}", "state": job.state},
            )
        transcripts = job_store.list_transcripts(job_id)
        if not transcripts:
            raise JobNotFound(f"Job '{job_id}' has no transcript", job_id=job_id)
        url = object_store.presign_get_url(
            transcripts[0].text_artifact_key, settings.presign_ttl_seconds
        )
        return RedirectResponse(url, status_code=307)

    @app.get("/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(ok=True, db_ok=job_store.ping())

    return app
