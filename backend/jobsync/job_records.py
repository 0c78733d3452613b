"""Job record persistence used by Gmail import: create-if-new and known message ids."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import JobRecord

logger = logging.getLogger(__name__)

UNKNOWN_COMPANY = "Unknown Company"
UNKNOWN_POSITION = "Unknown Position"
IMPORT_NOTE_PREFIX = "[Gmail Import]"


@dataclass
class CreateResult:
    job_id: Optional[int]
    duplicate: bool = False


def list_known_message_ids(db: Session, user_id: int) -> set[str]:
    """Every gmail_message_id already imported for this user."""
    rows = (
        db.query(JobRecord.gmail_message_id)
        .filter(JobRecord.user_id == user_id, JobRecord.gmail_message_id.isnot(None))
        .all()
    )
    return {r.gmail_message_id for r in rows if r.gmail_message_id}


def create_from_event(db: Session, user_id: int, event) -> CreateResult:
    """
    Insert a job record derived from a scanned JobEvent.

    A unique-constraint hit on (user_id, gmail_message_id) means another writer
    imported the message first; that is reported as a duplicate, not an error.
    """
    record = JobRecord(
        user_id=user_id,
        company=(event.company or UNKNOWN_COMPANY)[:255],
        position=(event.title or UNKNOWN_POSITION)[:255],
        status=event.status,
        applied_date=event.applied_date,
        notes=f"{IMPORT_NOTE_PREFIX} {event.subject}",
        gmail_message_id=event.message_id,
    )
    try:
        with db.begin_nested():
            db.add(record)
            db.flush()
            job_id = record.id
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.debug(f"Job record for message {event.message_id} already exists (user_id={user_id})")
        return CreateResult(job_id=None, duplicate=True)
    return CreateResult(job_id=job_id)
