"""Polling worker that claims jobs and dispatches them to stage handlers.

Any number of workers may run this loop against the same database.
Coordination happens only through the job store's conditional updates:
the claim guarantees a job is processed by one worker at a time, and the
stale sweep each cycle recovers jobs abandoned by crashed workers.
"""

from __future__ import annotations

import asyncio
import logging

from media_pipeline.handlers.interface import StageHandler
from media_pipeline.jobs.models import Job, JobState
from media_pipeline.jobs.store import JobStore
from media_pipeline.observability.metrics import (
    AttemptMetrics,
    StageTimer,
    log_attempt_metrics,
)
from media_pipeline.utils.errors import HandlerFailure

logger = logging.getLogger(__name__)


class JobWorker:
    """Claim -> dispatch -> transition loop.

    Args:
        job_store: Shared job store.
        handlers: Stage name -> handler for that stage.
        worker_id: Identity recorded on claims.
        poll_interval: Seconds to wait when a cycle found nothing to do.
        batch_size: Max jobs claimed per cycle.
        stale_after_seconds: Processing jobs untouched for longer than this
            are treated as abandoned. Must exceed any handler's runtime.
    """

    def __init__(
        self,
        job_store: JobStore,
        handlers: dict[str, StageHandler],
        worker_id: str,
        poll_interval: float = 5.0,
        batch_size: int = 1,
        stale_after_seconds: float = 1800.0,
    ) -> None:
        self.job_store = job_store
        self.handlers = handlers
        self.worker_id = worker_id
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.stale_after_seconds = stale_after_seconds
        self._running = False
        self._stop_event: asyncio.Event | None = None

    async def process_job(self, job: Job) -> str | None:
        """Run the handler for a claimed job and apply the resulting transition.

        Handler exceptions never escape: they are recorded as a failed
        attempt at the job's stage.

        Returns:
            The job's state after the transition, or None if the claim was
            lost before the result could be written.
        """
        stage = job.stage
        handler = self.handlers.get(stage)
        timer = StageTimer(stage)
        metrics = AttemptMetrics(
            job_id=job.id,
            stage=stage,
            outcome="success",
            worker_id=self.worker_id,
            duration_seconds=0.0,
            retry_count=job.retry_count,
        )

        try:
            with timer:
                if handler is None:
                    raise HandlerFailure(
                        f"No handler registered for stage '{stage}'",
                        job_id=job.id,
                        stage=stage,
                    )
                outcome = await handler.handle(job)
        except Exception as exc:
            failure = (
                exc
                if isinstance(exc, HandlerFailure)
                else HandlerFailure(f"{type(exc).__name__}: {exc}", job_id=job.id, stage=stage)
            )
            logger.warning(
                "Stage handler failed",
                exc_info=True,
                extra={"job_id": job.id, "stage": stage, "worker_id": self.worker_id},
            )
            updated = self.job_store.record_failure(
                job.id, stage, self.worker_id, str(failure)
            )
            metrics.outcome = "failure"
            metrics.duration_seconds = timer.duration_seconds
            metrics.error_type = type(exc).__name__
            metrics.error_message = str(exc)
            metrics.provider = getattr(exc, "provider", None)
            metrics.next_state = updated.state if updated else None
            log_attempt_metrics(metrics)
            return updated.state if updated else None

        metrics.duration_seconds = timer.duration_seconds
        metrics.input_size_bytes = outcome.input_size_bytes
        metrics.output_size_bytes = outcome.output_size_bytes

        if outcome.transcript is not None:
            record = outcome.transcript
            metrics.provider = record.provider
            transcript = self.job_store.complete_with_transcript(
                job.id,
                self.worker_id,
                provider=record.provider,
                raw_artifact_key=record.raw_artifact_key,
                text_artifact_key=record.text_artifact_key,
                transcript_meta=record.meta,
                meta_updates=outcome.meta_updates,
            )
            next_state = JobState.DONE.value if transcript is not None else None
        else:
            advanced = self.job_store.advance(
                job.id, stage, self.worker_id, outcome.meta_updates
            )
            next_state = JobState.QUEUED.value if advanced else None

        if next_state is None:
            metrics.outcome = "claim_lost"
        metrics.next_state = next_state
        log_attempt_metrics(metrics)
        return next_state

    async def poll_once(self) -> int:
        """One cycle: sweep stale jobs, claim a batch, process it in order.

        Returns:
            Number of jobs claimed this cycle.
        """
        recovered = self.job_store.sweep_stale(self.stale_after_seconds)
        if recovered:
            logger.warning(
                "Swept %d stale processing jobs", len(recovered),
                extra={"worker_id": self.worker_id},
            )

        jobs = self.job_store.claim_next(self.worker_id, limit=self.batch_size)
        for job in jobs:
            await self.process_job(job)
        return len(jobs)

    async def _idle(self) -> None:
        """Sleep for the poll interval, waking early on stop()."""
        if self._stop_event is None:
            await asyncio.sleep(self.poll_interval)
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
        except TimeoutError:
            pass

    async def run(self) -> None:
        """Poll until stop() is called.

        A failing cycle (database unreachable, ...) is logged and the loop
        carries on; jobs caught mid-transition are recovered by the sweep.
        """
        self._running = True
        self._stop_event = asyncio.Event()
        logger.info(
            "Worker starting poll loop", extra={"worker_id": self.worker_id}
        )

        while self._running:
            try:
                count = await self.poll_once()
            except Exception:
                logger.error(
                    "Unexpected error in poll cycle",
                    exc_info=True,
                    extra={"worker_id": self.worker_id},
                )
                count = 0

            if self._running and count < self.batch_size:
                await self._idle()

        logger.info("Worker poll loop stopped", extra={"worker_id": self.worker_id})

    def stop(self) -> None:
        """Signal the loop to exit after the job in progress finishes."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        logger.info("Worker stopping", extra={"worker_id": self.worker_id})
