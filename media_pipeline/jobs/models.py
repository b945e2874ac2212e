from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class JobState(str, enum.Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class Stage(str, enum.Enum):
    TRANSCODE = "transcode"
    ASR = "asr"
    ASR_COMPLETED = "asr_completed"


# Forward-only pipeline order
STAGE_ORDER = (Stage.TRANSCODE, Stage.ASR, Stage.ASR_COMPLETED)


def next_stage(stage: Stage) -> Stage:
    index = STAGE_ORDER.index(stage)
    if index == len(STAGE_ORDER) - 1:
        raise ValueError(f"Stage '{stage.value}' has no successor")
    return STAGE_ORDER[index + 1]


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (Index("ix_jobs_state_updated_at", "state", "updated_at"),)

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    state: Mapped[str] = mapped_column(String(16), nullable=False, default=JobState.QUEUED.value)
    stage: Mapped[str] = mapped_column(String(32), nullable=False, default=Stage.TRANSCODE.value)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # stage artifacts: source_key, audio_key, provider, attempts, last_error ...
    meta: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    # worker holding the current claim; null unless processing
    claimed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "state": self.state,
            "stage": self.stage,
            "retry_count": self.retry_count,
            "meta": dict(self.meta or {}),
            "claimed_by": self.claimed_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class Transcript(Base):
    __tablename__ = "transcripts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)

    provider: Mapped[str] = mapped_column(String(64), nullable=False)
    raw_artifact_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    text_artifact_key: Mapped[str] = mapped_column(String(1024), nullable=False)

    # model id, confidence / verification flags, retry count at success
    meta: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
