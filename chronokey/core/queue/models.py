from __future__ import annotations
from datetime import datetime
from typing import Any, Optional
from sqlalchemy import (
    String,
    Boolean,
    DateTime,
    Integer,
    Index,
    Enum as SQLAlchemyEnum,
    false as sa_false,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from chronokey.core.types.status import JobState


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for queue tables"""

    pass


class JobModel(Base):
    """
    SQLAlchemy model for jobs handed off by the scheduler.

    - id: str # uuid4
    - job_type: str # the definition's `type`
    - queue_name: str # target queue, defaulting to PostgresConfig.default_queue
    - data: dict # the definition's `data`, including the `schedule` tag
    - schedule_tag: str # copy of data.schedule (NOW, ONCE, RECURRING:<expr>) for filtering
    - state: JobState # QUEUED or DELAYED on insert; consumers drive the rest
    - priority: int # lower runs first; named levels map to integers
    - max_attempts: int # attempts a consumer may make
    - backoff: dict # {"type": "fixed"|"exponential", "delay": ms}
    - ttl_ms: int # how long a consumer may hold the job active
    - remove_on_complete: bool # whether consumers delete the row on completion
    - dedup_key: str # <schedule_id>:<fire_at epoch ms>; unique, NULL for unscheduled jobs
    - run_at: datetime # when the job becomes available to consumers
    - created_at: datetime
    - updated_at: datetime
    """

    __tablename__ = 'chronokey_jobs'
    __table_args__ = (
        Index('idx_chronokey_jobs_queue_state_run', 'queue_name', 'state', 'run_at'),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    job_type: Mapped[str] = mapped_column(String(255), nullable=False)
    queue_name: Mapped[str] = mapped_column(String(100), nullable=False)
    data: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    schedule_tag: Mapped[Optional[str]] = mapped_column(
        String(512), nullable=True, index=True
    )

    state: Mapped[JobState] = mapped_column(
        SQLAlchemyEnum(JobState, native_enum=False),
        nullable=False,
        default=JobState.QUEUED,
    )
    priority: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text('0'),
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=1, server_default=text('1'),
    )
    backoff: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    ttl_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    remove_on_complete: Mapped[bool] = mapped_column(
        Boolean, default=False, server_default=sa_false(),
    )

    # Occurrence identity; a second insert with the same key is a no-op
    dedup_key: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )

    run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=text('NOW()'),
    )
