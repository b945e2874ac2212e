"""Process configuration.

Settings are read from the environment once at process start and passed
to constructors from there; nothing re-reads the environment later.
"""

from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field

from media_pipeline.utils.errors import ConfigError

DEFAULT_PART_SIZE_BYTES = 10 * 1024 * 1024
# S3 rejects parts below 5 MiB except for the last one
MIN_PART_SIZE_BYTES = 5 * 1024 * 1024

KNOWN_ASR_PROVIDERS = ("speechmatics", "openai")


def _default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got '{raw}'") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number, got '{raw}'") from exc


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./media_pipeline.db"

    # object storage
    s3_bucket: str = ""
    aws_region: str = "us-east-1"
    s3_endpoint_url: str | None = None
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None
    storage_key_prefix: str = ""
    upload_part_size_bytes: int = DEFAULT_PART_SIZE_BYTES
    presign_ttl_seconds: int = 3600

    # speech recognition
    asr_provider: str = "speechmatics"
    speechmatics_api_key: str = ""
    speechmatics_language: str = "en"
    openai_api_key: str = ""
    openai_asr_model: str = "whisper-1"

    # worker
    poll_interval_seconds: float = 5.0
    worker_batch_size: int = 1
    handler_timeout_seconds: float = 900.0
    stale_processing_seconds: float = 1800.0
    max_stage_attempts: int = 3
    worker_id: str = field(default_factory=_default_worker_id)
    port: int = 8080

    @classmethod
    def from_env(cls) -> Settings:
        """Build and validate settings from environment variables."""
        settings = cls(
            database_url=os.environ.get("DATABASE_URL", cls.database_url),
            s3_bucket=os.environ.get("S3_BUCKET", ""),
            aws_region=os.environ.get("AWS_REGION", cls.aws_region),
            s3_endpoint_url=os.environ.get("S3_ENDPOINT_URL") or None,
            aws_access_key_id=os.environ.get("AWS_ACCESS_KEY_ID") or None,
            aws_secret_access_key=os.environ.get("AWS_SECRET_ACCESS_KEY") or None,
            storage_key_prefix=os.environ.get("STORAGE_KEY_PREFIX", ""),
            upload_part_size_bytes=_env_int(
                "UPLOAD_PART_SIZE_BYTES", DEFAULT_PART_SIZE_BYTES
            ),
            presign_ttl_seconds=_env_int("PRESIGN_TTL_SECONDS", 3600),
            asr_provider=os.environ.get("ASR_PROVIDER", cls.asr_provider).strip().lower(),
            speechmatics_api_key=os.environ.get("SPEECHMATICS_API_KEY", ""),
            speechmatics_language=os.environ.get("SPEECHMATICS_LANGUAGE", "en"),
            openai_api_key=os.environ.get("OPENAI_API_KEY", ""),
            openai_asr_model=os.environ.get("OPENAI_ASR_MODEL", cls.openai_asr_model),
            poll_interval_seconds=_env_float("WORKER_POLL_INTERVAL_SECONDS", 5.0),
            worker_batch_size=_env_int("WORKER_BATCH_SIZE", 1),
            handler_timeout_seconds=_env_float("HANDLER_TIMEOUT_SECONDS", 900.0),
            stale_processing_seconds=_env_float("STALE_PROCESSING_SECONDS", 1800.0),
            max_stage_attempts=_env_int("MAX_STAGE_ATTEMPTS", 3),
            worker_id=os.environ.get("WORKER_ID") or _default_worker_id(),
            port=_env_int("PORT", 8080),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Reject configurations the pipeline cannot run with.

        Raises:
            ConfigError: On the first invalid value found.
        """
        if not self.s3_bucket:
            raise ConfigError("S3_BUCKET is required")
        if "/" in self.s3_bucket:
            raise ConfigError(
                f"Invalid S3_BUCKET '{self.s3_bucket}': bucket names cannot "
                f"contain slashes"
            )
        if self.asr_provider not in KNOWN_ASR_PROVIDERS:
            raise ConfigError(
                f"Unknown ASR_PROVIDER '{self.asr_provider}'. "
                f"Available: {', '.join(KNOWN_ASR_PROVIDERS)}"
            )
        if self.upload_part_size_bytes < MIN_PART_SIZE_BYTES:
            raise ConfigError(
                f"UPLOAD_PART_SIZE_BYTES must be at least {MIN_PART_SIZE_BYTES}"
            )
        if self.max_stage_attempts < 1:
            raise ConfigError("MAX_STAGE_ATTEMPTS must be at least 1")
        if self.poll_interval_seconds <= 0:
            raise ConfigError("WORKER_POLL_INTERVAL_SECONDS must be positive")
        if self.stale_processing_seconds <= self.handler_timeout_seconds:
            raise ConfigError(
                "STALE_PROCESSING_SECONDS must exceed HANDLER_TIMEOUT_SECONDS, "
                "otherwise live jobs would be swept"
            )

    def provider_kwargs(self) -> dict[str, object]:
        """Constructor arguments for the configured ASR provider."""
        if self.asr_provider == "speechmatics":
            return {
                "api_key": self.speechmatics_api_key,
                "language": self.speechmatics_language,
                "timeout": int(self.handler_timeout_seconds),
            }
        return {"api_key": self.openai_api_key, "model": self.openai_asr_model}
