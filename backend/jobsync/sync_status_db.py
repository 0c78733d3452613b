"""Gmail initial-sync status in DB (GmailSyncStatus model), one row per user."""
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import GmailSyncStatus


def get_sync_status(db: Session, user_id: int) -> Optional[GmailSyncStatus]:
    return db.query(GmailSyncStatus).filter(GmailSyncStatus.user_id == user_id).first()


def get_or_create_status(db: Session, user_id: int) -> GmailSyncStatus:
    row = get_sync_status(db, user_id)
    if row:
        return row
    now = datetime.utcnow()
    try:
        with db.begin_nested():
            row = GmailSyncStatus(
                user_id=user_id,
                initial_sync_completed=False,
                total_imported=0,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
        db.commit()
    except IntegrityError:
        # Another worker created it first.
        db.rollback()
        row = get_sync_status(db, user_id)
    return row


def set_sync_started(db: Session, user_id: int) -> None:
    """Record the first time an initial sync started for this user; later calls keep it."""
    row = get_or_create_status(db, user_id)
    now = datetime.utcnow()
    if row.initial_sync_started_at is None:
        row.initial_sync_started_at = now
    row.updated_at = now
    db.commit()


def add_imported(db: Session, user_id: int, count: int) -> None:
    """Increase total_imported; never decreases."""
    if count <= 0:
        return
    row = get_or_create_status(db, user_id)
    row.total_imported = (row.total_imported or 0) + count
    row.updated_at = datetime.utcnow()
    db.commit()


def set_sync_completed(db: Session, user_id: int) -> None:
    """Flip the completed flag. The completion timestamp is frozen once set."""
    row = get_or_create_status(db, user_id)
    now = datetime.utcnow()
    row.initial_sync_completed = True
    if row.initial_sync_completed_at is None:
        row.initial_sync_completed_at = now
    row.updated_at = now
    db.commit()


def set_last_history_id(db: Session, user_id: int, history_id: str) -> None:
    row = get_or_create_status(db, user_id)
    row.last_history_id = history_id
    row.updated_at = datetime.utcnow()
    db.commit()


def is_syncing(row: Optional[GmailSyncStatus]) -> bool:
    """Started and not yet completed. No staleness timeout: a crashed worker leaves this True."""
    if row is None:
        return False
    return row.initial_sync_started_at is not None and not row.initial_sync_completed


def get_state_from_db(db: Session, user_id: int) -> dict:
    """Return sync status dict used by GET /api/google/sync-status."""
    row = get_or_create_status(db, user_id)
    return {
        "is_syncing": is_syncing(row),
        "initial_sync_completed": bool(row.initial_sync_completed),
        "total_imported": row.total_imported or 0,
        "started_at": row.initial_sync_started_at,
        "completed_at": row.initial_sync_completed_at,
    }
