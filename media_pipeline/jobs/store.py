"""Job store: the persisted job record and its state-transition contract.

Every transition out of ``queued`` or ``processing`` is a single
conditional UPDATE whose WHERE clause restates the state the caller
believes the row is in. A rowcount of zero means somebody else moved the
row first, so no row is ever processed by two workers at once and no
worker can overwrite a transition it did not own. No other lock is used.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from media_pipeline.jobs.models import (
    Job,
    JobState,
    Stage,
    Transcript,
    next_stage,
    utcnow,
)
from media_pipeline.utils.errors import ExhaustedRetries, JobNotFound

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3


class JobStore:
    """Single source of truth for job state, shared by every process."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._session_factory = session_factory
        self.max_attempts = max_attempts

    # -- create / read --

    def create_job(
        self, job_id: str, meta: dict[str, Any] | None = None
    ) -> tuple[Job, bool]:
        """Insert a job in ``queued/transcode`` unless it already exists.

        Returns:
            (job, created) where created is False when a row with the same
            id was already present.
        """
        with self._session_factory() as session:
            existing = session.get(Job, job_id)
            if existing is not None:
                return existing, False

            now = utcnow()
            job = Job(
                id=job_id,
                state=JobState.QUEUED.value,
                stage=Stage.TRANSCODE.value,
                retry_count=0,
                meta=dict(meta or {}),
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            try:
                session.commit()
            except IntegrityError:
                # a concurrent finalize inserted the same id first
                session.rollback()
                existing = session.get(Job, job_id, populate_existing=True)
                if existing is None:
                    raise
                return existing, False

        logger.info("Created job", extra={"job_id": job_id, "stage": job.stage})
        return job, True

    def get_job(self, job_id: str) -> Job:
        with self._session_factory() as session:
            job = session.get(Job, job_id)
            if job is None:
                raise JobNotFound(f"Job '{job_id}' not found", job_id=job_id)
            return job

    def list_transcripts(self, job_id: str) -> list[Transcript]:
        """Transcripts for a job, newest first."""
        with self._session_factory() as session:
            rows = session.scalars(
                select(Transcript)
                .where(Transcript.job_id == job_id)
                .order_by(Transcript.created_at.desc(), Transcript.id.desc())
            )
            return list(rows)

    def ping(self) -> bool:
        """True if the database answers a trivial query."""
        try:
            with self._session_factory() as session:
                session.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.warning("Database ping failed", exc_info=True)
            return False
        return True

    # -- claim --

    def try_claim(self, job_id: str, worker_id: str) -> bool:
        """Move one job from ``queued`` to ``processing`` if still queued.

        Returns:
            True when this call won the row, False when it was already
            claimed (or finished) by the time the write happened.
        """
        with self._session_factory() as session:
            result = session.execute(
                update(Job)
                .where(Job.id == job_id, Job.state == JobState.QUEUED.value)
                .values(
                    state=JobState.PROCESSING.value,
                    claimed_by=worker_id,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            session.commit()
            return result.rowcount == 1

    def claim_next(self, worker_id: str, limit: int = 1) -> list[Job]:
        """Claim up to ``limit`` eligible jobs, oldest first.

        Candidates lost to another worker are skipped silently.
        """
        with self._session_factory() as session:
            candidates = list(
                session.scalars(
                    select(Job.id)
                    .where(Job.state == JobState.QUEUED.value)
                    .order_by(Job.updated_at, Job.created_at)
                    .limit(limit * 4)
                )
            )

        claimed: list[Job] = []
        for job_id in candidates:
            if len(claimed) >= limit:
                break
            if not self.try_claim(job_id, worker_id):
                logger.debug(
                    "Lost claim race", extra={"job_id": job_id, "worker_id": worker_id}
                )
                continue
            job = self.get_job(job_id)
            logger.info(
                "Claimed job",
                extra={"job_id": job_id, "stage": job.stage, "worker_id": worker_id},
            )
            claimed.append(job)
        return claimed

    # -- transitions out of processing --

    def _owned(self, job_id: str, stage: str, worker_id: str):
        """WHERE clause matching a row still held by worker_id at stage."""
        return (
            Job.id == job_id,
            Job.state == JobState.PROCESSING.value,
            Job.stage == stage,
            Job.claimed_by == worker_id,
        )

    def advance(
        self,
        job_id: str,
        stage: str,
        worker_id: str,
        meta_updates: dict[str, Any] | None = None,
    ) -> bool:
        """Requeue a job on the stage after ``stage`` once its handler succeeded.

        The retry count resets for the new stage; the count the finished
        stage needed is kept under ``meta["attempts"]``.

        Returns:
            False when the claim was lost (e.g. swept as stale) and nothing
            was written.
        """
        new_stage = next_stage(Stage(stage))
        with self._session_factory() as session:
            job = session.get(Job, job_id, populate_existing=True)
            if job is None:
                raise JobNotFound(f"Job '{job_id}' not found", job_id=job_id)

            meta = dict(job.meta or {})
            meta.update(meta_updates or {})
            attempts = dict(meta.get("attempts", {}))
            attempts[stage] = job.retry_count
            meta["attempts"] = attempts
            meta.pop("last_error", None)

            result = session.execute(
                update(Job)
                .where(*self._owned(job_id, stage, worker_id))
                .values(
                    state=JobState.QUEUED.value,
                    stage=new_stage.value,
                    retry_count=0,
                    meta=meta,
                    claimed_by=None,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning(
                    "Claim lost before advance",
                    extra={"job_id": job_id, "stage": stage, "worker_id": worker_id},
                )
                return False
            session.commit()

        logger.info(
            "Advanced job",
            extra={"job_id": job_id, "stage": new_stage.value, "state": "queued"},
        )
        return True

    def complete_with_transcript(
        self,
        job_id: str,
        worker_id: str,
        provider: str,
        raw_artifact_key: str,
        text_artifact_key: str,
        transcript_meta: dict[str, Any] | None = None,
        meta_updates: dict[str, Any] | None = None,
    ) -> Transcript | None:
        """Insert the Transcript row and mark the job ``done`` atomically.

        Returns:
            The new Transcript, or None when the claim was lost; in that
            case the insert is rolled back and nothing changes.
        """
        stage = Stage.ASR.value
        with self._session_factory() as session:
            job = session.get(Job, job_id, populate_existing=True)
            if job is None:
                raise JobNotFound(f"Job '{job_id}' not found", job_id=job_id)

            meta = dict(job.meta or {})
            meta.update(meta_updates or {})
            attempts = dict(meta.get("attempts", {}))
            attempts[stage] = job.retry_count
            meta["attempts"] = attempts
            meta.pop("last_error", None)

            transcript = Transcript(
                job_id=job_id,
                provider=provider,
                raw_artifact_key=raw_artifact_key,
                text_artifact_key=text_artifact_key,
                meta={**(transcript_meta or {}), "retry_count": job.retry_count},
                created_at=utcnow(),
            )
            session.add(transcript)

            result = session.execute(
                update(Job)
                .where(*self._owned(job_id, stage, worker_id))
                .values(
                    state=JobState.DONE.value,
                    stage=Stage.ASR_COMPLETED.value,
                    meta=meta,
                    claimed_by=None,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning(
                    "Claim lost before completion",
                    extra={"job_id": job_id, "stage": stage, "worker_id": worker_id},
                )
                return None
            session.commit()

        logger.info(
            "Job done", extra={"job_id": job_id, "stage": Stage.ASR_COMPLETED.value}
        )
        return transcript

    def _failure_values(self, job: Job, error_message: str) -> dict[str, Any]:
        """Column values for one more failed attempt at the job's stage."""
        retry_count = job.retry_count + 1
        meta = dict(job.meta or {})
        attempts = dict(meta.get("attempts", {}))
        attempts[job.stage] = retry_count
        meta["attempts"] = attempts

        if retry_count >= self.max_attempts:
            exhausted = ExhaustedRetries(
                f"Stage '{job.stage}' failed {retry_count} times: {error_message}",
                job_id=job.id,
                stage=job.stage,
                attempts=retry_count,
            )
            meta["last_error"] = str(exhausted)
            meta["failed_stage"] = job.stage
            state = JobState.FAILED.value
        else:
            meta["last_error"] = error_message
            state = JobState.QUEUED.value

        return {
            "state": state,
            "retry_count": retry_count,
            "meta": meta,
            "claimed_by": None,
            "updated_at": utcnow(),
        }

    def record_failure(
        self, job_id: str, stage: str, worker_id: str, error_message: str
    ) -> Job | None:
        """Count one handler failure: requeue on the same stage or fail.

        Returns:
            The updated job, or None when the claim was already lost.
        """
        with self._session_factory() as session:
            job = session.get(Job, job_id, populate_existing=True)
            if job is None:
                raise JobNotFound(f"Job '{job_id}' not found", job_id=job_id)
            values = self._failure_values(job, error_message)
            result = session.execute(
                update(Job)
                .where(*self._owned(job_id, stage, worker_id))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning(
                    "Claim lost before failure could be recorded",
                    extra={"job_id": job_id, "stage": stage, "worker_id": worker_id},
                )
                return None
            session.commit()

        job = self.get_job(job_id)
        log = logger.error if job.state == JobState.FAILED.value else logger.warning
        log(
            "Stage attempt failed",
            extra={
                "job_id": job_id,
                "stage": stage,
                "state": job.state,
                "retry_count": job.retry_count,
                "error": error_message,
            },
        )
        return job

    # -- recovery --

    def sweep_stale(self, older_than_seconds: float, now: datetime | None = None) -> list[str]:
        """Recover jobs left in ``processing`` by a crashed worker.

        Each stale row is treated as one failed attempt at its stage, so a
        job that keeps crashing its workers still ends in ``failed``.

        Returns:
            Ids of the jobs this call recovered.
        """
        cutoff = (now or utcnow()) - timedelta(seconds=older_than_seconds)
        with self._session_factory() as session:
            stale = list(
                session.scalars(
                    select(Job).where(
                        Job.state == JobState.PROCESSING.value,
                        Job.updated_at < cutoff,
                    )
                )
            )

        recovered: list[str] = []
        for job in stale:
            owner = (
                Job.claimed_by.is_(None)
                if job.claimed_by is None
                else Job.claimed_by == job.claimed_by
            )
            values = self._failure_values(
                job, f"Worker '{job.claimed_by}' stopped responding during '{job.stage}'"
            )
            with self._session_factory() as session:
                result = session.execute(
                    update(Job)
                    .where(
                        Job.id == job.id,
                        Job.state == JobState.PROCESSING.value,
                        Job.stage == job.stage,
                        owner,
                        Job.updated_at < cutoff,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                session.commit()
            if result.rowcount == 1:
                recovered.append(job.id)
                logger.warning(
                    "Recovered stale job",
                    extra={
                        "job_id": job.id,
                        "stage": job.stage,
                        "state": values["state"],
                        "worker_id": job.claimed_by,
                    },
                )
        return recovered
