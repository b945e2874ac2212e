"""Worker process entry point.

Runs the JobWorker polling loop next to a minimal HTTP health check
server (container platforms require a listening port). Handles SIGTERM
for graceful shutdown: the job in progress finishes, then the loop exits.
"""

import asyncio
import logging
import signal
from asyncio import StreamReader, StreamWriter

from media_pipeline.asr import get_asr_provider
from media_pipeline.config import Settings
from media_pipeline.handlers.asr import ASRHandler
from media_pipeline.handlers.interface import StageHandler
from media_pipeline.handlers.transcode import TranscodeHandler
from media_pipeline.jobs.db import create_schema, make_engine, make_session_factory
from media_pipeline.jobs.store import JobStore
from media_pipeline.observability.logger import setup_logging
from media_pipeline.storage.object_store import ObjectStore
from media_pipeline.worker.loop import JobWorker

logger = logging.getLogger(__name__)

# Leaves headroom before the platform sends SIGKILL (typically 30s)
SHUTDOWN_TIMEOUT_SECONDS = 25


async def _health_handler(reader: StreamReader, writer: StreamWriter) -> None:
    """Answer any request with 200 OK."""
    await reader.read(4096)
    response = (
        "HTTP/1.1 200 OK\r\n"
        "Content-Type: text/plain\r\n"
        "Content-Length: 2\r\n"
        "\r\n"
        "ok"
    )
    writer.write(response.encode())
    await writer.drain()
    writer.close()


def build_worker(settings: Settings) -> JobWorker:
    """Wire the worker's collaborators from settings.

    The ASR provider is built once here and shared by every job the
    process handles.
    """
    engine = make_engine(settings.database_url)
    create_schema(engine)
    job_store = JobStore(
        make_session_factory(engine), max_attempts=settings.max_stage_attempts
    )
    object_store = ObjectStore(
        bucket=settings.s3_bucket,
        region=settings.aws_region,
        endpoint_url=settings.s3_endpoint_url,
        access_key_id=settings.aws_access_key_id,
        secret_access_key=settings.aws_secret_access_key,
    )
    provider = get_asr_provider(settings.asr_provider, **settings.provider_kwargs())
    logger.info("Using ASR provider %s", provider.name)

    handlers: dict[str, StageHandler] = {
        TranscodeHandler.stage: TranscodeHandler(
            object_store,
            key_prefix=settings.storage_key_prefix,
            ffmpeg_timeout=int(settings.handler_timeout_seconds),
        ),
        ASRHandler.stage: ASRHandler(
            object_store,
            provider,
            timeout_seconds=settings.handler_timeout_seconds,
            key_prefix=settings.storage_key_prefix,
        ),
    }
    return JobWorker(
        job_store,
        handlers,
        worker_id=settings.worker_id,
        poll_interval=settings.poll_interval_seconds,
        batch_size=settings.worker_batch_size,
        stale_after_seconds=settings.stale_processing_seconds,
    )


async def _run(worker: JobWorker, port: int) -> None:
    """Run the health server and worker loop until a shutdown signal."""
    server = await asyncio.start_server(_health_handler, "0.0.0.0", port)
    logger.info("Health server listening on port %d", port)

    worker_task = asyncio.create_task(worker.run())

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    worker_task.add_done_callback(lambda _: stop_event.set())

    def _shutdown() -> None:
        logger.info("Received shutdown signal")
        worker.stop()
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown)

    await stop_event.wait()
    try:
        await asyncio.wait_for(worker_task, timeout=SHUTDOWN_TIMEOUT_SECONDS)
    except TimeoutError:
        # the interrupted job stays in processing until the stale sweep
        logger.warning(
            "Worker did not stop within %ss, cancelling", SHUTDOWN_TIMEOUT_SECONDS
        )
    finally:
        server.close()
        await server.wait_closed()


def main() -> None:
    """Start the worker and process jobs until stopped."""
    setup_logging()
    settings = Settings.from_env()
    logger.info("Media pipeline worker starting", extra={"worker_id": settings.worker_id})

    worker = build_worker(settings)
    asyncio.run(_run(worker, settings.port))


if __name__ == "__main__":
    main()
