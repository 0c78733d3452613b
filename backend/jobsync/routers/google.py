"""Gmail linking and scanning API: auth URL, OAuth callback, status, disconnect, scan, sync-status."""
import logging
from datetime import date, datetime, time, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from ..auth import get_current_user_id
from ..config import settings
from ..crypto import get_secret_box
from ..database import get_sync_db
from ..gmail_service import GmailAuthRequiredError, authorization_url, build_gmail_client, exchange_code
from ..job_queue import JobType, enqueue
from ..job_records import list_known_message_ids
from ..oauth_state_db import KIND_GMAIL, oauth_state_cleanup_expired, oauth_state_consume, oauth_state_create
from ..scanner import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, scan_page
from ..schemas import AuthUrlResponse, ConnectionStatus, MessageResponse, ScanResponse, SyncStatusResponse
from ..sync_status_db import get_state_from_db
from ..token_store import PROVIDER_GMAIL, TokenDecryptionError, TokenNotFoundError, TokenStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/google", tags=["google"])


def get_token_store() -> TokenStore:
    return TokenStore(get_secret_box())


def get_client_factory():
    """Overridable in tests."""
    return build_gmail_client


@router.get("/auth-url", response_model=AuthUrlResponse)
def google_auth_url(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_sync_db),
):
    """Google consent URL for linking Gmail. The state token is bound to the calling user."""
    oauth_state_cleanup_expired(db)
    state = oauth_state_create(db, KIND_GMAIL, user_id, redirect_url=settings.frontend_url)
    try:
        url = authorization_url(state)
    except ValueError as e:
        logger.error(f"Gmail OAuth is not configured: {e}")
        raise HTTPException(status_code=503, detail="Gmail linking is not configured")
    return AuthUrlResponse(url=url)


@router.get("/callback")
def google_callback(
    code: Optional[str] = None,
    state: Optional[str] = None,
    db: Session = Depends(get_sync_db),
    store: TokenStore = Depends(get_token_store),
):
    """
    OAuth redirect target. Google does not forward the bearer token, so the
    user comes from the stored state.
    """
    if not state:
        raise HTTPException(status_code=400, detail="missing state")
    entry = oauth_state_consume(db, KIND_GMAIL, state)
    if not entry:
        raise HTTPException(status_code=400, detail="invalid or expired state")
    if not code:
        raise HTTPException(status_code=400, detail="missing code")
    user_id = entry["user_id"]

    try:
        token = exchange_code(code)
    except Exception as e:
        logger.warning(f"Gmail OAuth code exchange failed for user {user_id}: {e}")
        raise HTTPException(status_code=400, detail="oauth exchange failed")

    try:
        store.save(db, user_id, PROVIDER_GMAIL, token)
    except Exception:
        db.rollback()
        logger.exception(f"Saving Gmail token failed for user {user_id}")
        raise HTTPException(status_code=500, detail="saving token failed")

    try:
        job_id = enqueue(db, JobType.GMAIL_INITIAL_SYNC, user_id)
        logger.info(f"Queued initial Gmail sync job {job_id} for user {user_id}")
    except Exception:
        # The link itself succeeded; the user can still scan on demand.
        db.rollback()
        logger.exception(f"Failed to queue initial Gmail sync for user {user_id}")

    front = (entry.get("redirect_url") or settings.frontend_url).rstrip("/")
    return RedirectResponse(url=f"{front}/dashboard?gmail=connected", status_code=302)


@router.get("/status", response_model=ConnectionStatus)
def google_status(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_sync_db),
    store: TokenStore = Depends(get_token_store),
):
    try:
        store.get(db, user_id, PROVIDER_GMAIL)
    except TokenNotFoundError:
        return ConnectionStatus(connected=False)
    except TokenDecryptionError:
        logger.error(f"Stored Gmail credential for user {user_id} cannot be decrypted; reconnect required")
        return ConnectionStatus(connected=False, needs_reconnect=True)
    return ConnectionStatus(connected=True)


@router.post("/disconnect", response_model=MessageResponse)
def google_disconnect(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_sync_db),
    store: TokenStore = Depends(get_token_store),
):
    try:
        store.delete(db, user_id, PROVIDER_GMAIL)
    except Exception:
        db.rollback()
        logger.exception(f"Disconnecting Gmail failed for user {user_id}")
        raise HTTPException(status_code=500, detail="failed to disconnect")
    return MessageResponse(message="disconnected")


@router.get("/scan", response_model=ScanResponse)
def google_scan(
    since: Optional[date] = Query(None, description="YYYY-MM-DD; defaults to one year ago"),
    until: Optional[date] = Query(None, description="YYYY-MM-DD, inclusive"),
    limit: int = Query(DEFAULT_PAGE_SIZE),
    cursor: str = Query(""),
    only: str = Query("", description="applied | rejected; anything else scans both"),
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_sync_db),
    store: TokenStore = Depends(get_token_store),
    client_factory=Depends(get_client_factory),
):
    """One page of Gmail job events not yet imported. Nothing is written."""
    known_ids = list_known_message_ids(db, user_id)
    try:
        token = store.get(db, user_id, PROVIDER_GMAIL)
    except TokenNotFoundError:
        raise HTTPException(status_code=401, detail="gmail not connected")
    except TokenDecryptionError:
        logger.error(f"Stored Gmail credential for user {user_id} cannot be decrypted")
        raise HTTPException(status_code=500, detail="stored gmail credential is unreadable; reconnect gmail")

    if since is None:
        since = (datetime.utcnow() - timedelta(days=settings.gmail_initial_sync_days_back)).date()
    if limit <= 0 or limit > MAX_PAGE_SIZE:
        limit = DEFAULT_PAGE_SIZE

    try:
        client = client_factory(token)
        result = scan_page(
            client,
            since=datetime.combine(since, time.min),
            until=datetime.combine(until, time.min) if until else None,
            page_size=limit,
            cursor=cursor,
            mode=only,
            known_ids=known_ids,
            max_concurrency=settings.gmail_scan_max_concurrency,
        )
    except GmailAuthRequiredError:
        raise HTTPException(status_code=401, detail="gmail authorization expired; reconnect gmail")
    except Exception:
        logger.exception(f"Gmail scan failed for user {user_id}")
        raise HTTPException(status_code=502, detail="gmail scan failed")

    return ScanResponse(
        events=[vars(e) for e in result.events],
        count=len(result.events),
        next_page_token=result.next_page_token,
    )


@router.get("/sync-status", response_model=SyncStatusResponse)
def google_sync_status(
    user_id: int = Depends(get_current_user_id),
    db: Session = Depends(get_sync_db),
):
    return SyncStatusResponse(**get_state_from_db(db, user_id))
