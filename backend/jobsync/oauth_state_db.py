"""OAuth CSRF state persisted in DB, bound to the user who started the Gmail link."""
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from .models import OAuthState

OAUTH_STATE_TTL_SECONDS = 900  # 15 minutes (avoids invalid_state when slow or callback retried)

KIND_GMAIL = "gmail"


def oauth_state_create(db: Session, kind: str, user_id: int, redirect_url: Optional[str] = None) -> str:
    """Store a fresh random state token for this user and return it."""
    state_token = secrets.token_urlsafe(32)
    db.add(OAuthState(
        state_token=state_token,
        kind=kind,
        user_id=user_id,
        redirect_url=redirect_url or "",
        created_at=datetime.utcnow(),
    ))
    db.commit()
    return state_token


def oauth_state_consume(db: Session, kind: str, state_token: str) -> Optional[dict]:
    """
    Look up state, validate kind and TTL, delete row, return payload or None.
    Returns {"user_id": int, "redirect_url": str, "created_at": datetime} if valid.
    """
    if not state_token:
        return None
    row = db.query(OAuthState).filter(OAuthState.state_token == state_token).first()
    if not row:
        return None
    expired = (datetime.utcnow() - row.created_at).total_seconds() > OAUTH_STATE_TTL_SECONDS
    kind_matches = row.kind == kind
    payload = {"user_id": row.user_id, "redirect_url": row.redirect_url or "", "created_at": row.created_at}
    # Single use either way.
    db.delete(row)
    db.commit()
    if expired or not kind_matches or payload["user_id"] is None:
        return None
    return payload


def oauth_state_cleanup_expired(db: Session) -> int:
    """Delete expired state rows. Returns how many were removed."""
    cutoff = datetime.utcnow() - timedelta(seconds=OAUTH_STATE_TTL_SECONDS)
    removed = (
        db.query(OAuthState)
        .filter(OAuthState.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    return removed
