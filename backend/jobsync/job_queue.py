"""Durable background job queue in the relational store.

Workers poll ``claim_next``; a claim is one UPDATE whose target row is picked
with ``FOR UPDATE SKIP LOCKED`` on PostgreSQL, so concurrent workers never get
the same row. SQLite serializes writers, which gives the same guarantee there.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session, aliased

from .config import settings
from .models import BackgroundJob

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

MAX_ERROR_CHARS = 2000


class JobType(str, enum.Enum):
    GMAIL_INITIAL_SYNC = "gmail_initial_sync"


@dataclass
class QueuedJob:
    """A claimed work item. ``type`` is the raw stored string, possibly unknown."""
    id: int
    type: str
    user_id: Optional[int]
    payload: Any
    attempts: int


def enqueue(db: Session, job_type: str, user_id: Optional[int], payload: Any = None) -> int:
    """Insert a pending job eligible immediately. Returns the new job id."""
    now = datetime.utcnow()
    job = BackgroundJob(
        type=getattr(job_type, "value", job_type),
        user_id=user_id,
        payload=payload,
        status=PENDING,
        attempts=0,
        created_at=now,
        updated_at=now,
        process_after=now,
    )
    db.add(job)
    db.commit()
    logger.info(f"Enqueued job {job.id} type={job.type} user_id={user_id}")
    return job.id


def claim_next(
    db: Session,
    now: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
) -> Optional[QueuedJob]:
    """
    Atomically claim the eligible pending job with the earliest process_after.

    Increments attempts and flips the row to processing. Returns None when
    there is no work.
    """
    now = now or datetime.utcnow()
    max_attempts = settings.queue_max_attempts if max_attempts is None else max_attempts

    # Select from an alias so the subquery is not correlated to the UPDATE target.
    picked = aliased(BackgroundJob)
    candidate = (
        select(picked.id)
        .where(
            picked.status == PENDING,
            picked.process_after <= now,
            picked.attempts < max_attempts,
        )
        .order_by(picked.process_after, picked.id)
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    stmt = (
        update(BackgroundJob)
        .where(BackgroundJob.id == candidate, BackgroundJob.status == PENDING)
        .values(
            status=PROCESSING,
            attempts=BackgroundJob.attempts + 1,
            updated_at=now,
        )
        .returning(
            BackgroundJob.id,
            BackgroundJob.type,
            BackgroundJob.user_id,
            BackgroundJob.payload,
            BackgroundJob.attempts,
        )
        .execution_options(synchronize_session=False)
    )
    try:
        row = db.execute(stmt).first()
        db.commit()
    except Exception:
        db.rollback()
        raise

    if row is None:
        return None
    return QueuedJob(id=row.id, type=row.type, user_id=row.user_id, payload=row.payload, attempts=row.attempts)


def mark_complete(db: Session, job_id: int) -> None:
    """Terminal success. Repeated calls leave the row completed."""
    db.execute(
        update(BackgroundJob)
        .where(BackgroundJob.id == job_id, BackgroundJob.status.in_((PROCESSING, COMPLETED)))
        .values(status=COMPLETED, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()


def mark_failed(db: Session, job_id: int, error: Optional[str] = None, permanent: bool = False) -> None:
    """
    Terminal failure with a diagnostic message.

    permanent=True pins attempts at the ceiling so retry_failed never picks
    the row up again (data errors, unknown job types).
    """
    values: dict[str, Any] = {
        "status": FAILED,
        "error": (error or "")[:MAX_ERROR_CHARS] or None,
        "updated_at": datetime.utcnow(),
    }
    if permanent:
        values["attempts"] = settings.queue_max_attempts
    db.execute(
        update(BackgroundJob)
        .where(BackgroundJob.id == job_id, BackgroundJob.status.in_((PROCESSING, FAILED)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def retry_failed(
    db: Session,
    now: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
    backoff_base_s: Optional[float] = None,
) -> int:
    """
    Requeue failed jobs that still have attempts left.

    Each goes back to pending with process_after pushed out exponentially:
    base * 2^(attempts-1). Returns the number of jobs requeued.
    """
    now = now or datetime.utcnow()
    max_attempts = settings.queue_max_attempts if max_attempts is None else max_attempts
    backoff_base_s = settings.queue_retry_backoff_s if backoff_base_s is None else backoff_base_s

    rows = (
        db.query(BackgroundJob)
        .filter(BackgroundJob.status == FAILED, BackgroundJob.attempts < max_attempts)
        .with_for_update(skip_locked=True)
        .all()
    )
    for job in rows:
        delay = backoff_base_s * (2 ** max(0, job.attempts - 1))
        job.status = PENDING
        job.process_after = now + timedelta(seconds=delay)
        job.updated_at = now
        logger.info(f"Requeued job {job.id} (attempt {job.attempts}/{max_attempts}) in {delay:.0f}s")
    db.commit()
    return len(rows)


def get_job(db: Session, job_id: int) -> Optional[BackgroundJob]:
    return db.query(BackgroundJob).filter(BackgroundJob.id == job_id).first()
