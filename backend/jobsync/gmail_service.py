"""Gmail API integration: per-user client factory, rate-limit backoff, OAuth linking."""
import logging
import threading
import time
from typing import Callable, Optional

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import settings
from .token_store import OAuthToken

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"

METADATA_HEADERS = ["Subject", "From", "Date"]

RETRYABLE_STATUSES = (429, 500, 503)


class GmailAuthRequiredError(Exception):
    """Stored Gmail credential was rejected or could not be refreshed; the user must reconnect."""
    pass


# Rate limiting: exponential backoff
def _with_backoff(fn: Callable, max_retries: int = 5, sleep: Callable[[float], None] = time.sleep):
    for attempt in range(max_retries):
        try:
            return fn()
        except HttpError as e:
            if e.resp.status in RETRYABLE_STATUSES and attempt < max_retries - 1:
                logger.warning(f"Gmail API returned {e.resp.status}; retrying in {2 ** attempt}s")
                sleep(2 ** attempt)
                continue
            if e.resp.status == 401:
                raise GmailAuthRequiredError("Gmail rejected the stored credential") from e
            raise
        except RefreshError as e:
            raise GmailAuthRequiredError("Gmail token refresh failed; reconnect Gmail") from e


def credentials_from_token(token: OAuthToken) -> Credentials:
    return Credentials(
        token=token.access_token,
        refresh_token=token.refresh_token,
        token_uri=GOOGLE_TOKEN_URI,
        client_id=settings.google_client_id,
        client_secret=settings.google_client_secret,
        scopes=settings.google_scopes,
        expiry=token.expiry,
    )


class GmailClient:
    """
    Thin wrapper over the Gmail v1 API for one user.

    httplib2 connections are not thread-safe, so each thread gets its own
    service object; all of them share one Credentials, so a refresh done by
    any thread is visible through current_token(). Call refresh_if_expired()
    before fanning out so pool threads don't race to refresh the same token.
    """

    def __init__(self, credentials: Credentials, service_builder: Callable = build, request_factory: Callable = Request):
        self.credentials = credentials
        self._service_builder = service_builder
        self._request_factory = request_factory
        self._local = threading.local()
        self._refresh_lock = threading.Lock()

    def refresh_if_expired(self) -> bool:
        """Refresh an expired access token once. Returns True if a refresh happened."""
        with self._refresh_lock:
            creds = self.credentials
            if not (creds.expired and creds.refresh_token):
                return False
            logger.info("Gmail access token expired; refreshing")
            _with_backoff(lambda: creds.refresh(self._request_factory()))
            return True

    def _service(self):
        service = getattr(self._local, "service", None)
        if service is None:
            service = self._service_builder(
                "gmail", "v1", credentials=self.credentials, cache_discovery=False
            )
            self._local.service = service
        return service

    def list_message_ids(
        self,
        query: str,
        page_size: int,
        page_token: Optional[str] = None,
    ) -> tuple[list[str], str]:
        """One listing page. Returns (message ids, next page token or "")."""
        result = _with_backoff(
            lambda: self._service()
            .users()
            .messages()
            .list(
                userId="me",
                q=query,
                maxResults=min(page_size, settings.gmail_messages_max_results),
                pageToken=page_token or None,
            )
            .execute()
        )
        ids = [m["id"] for m in result.get("messages", []) if m.get("id")]
        return ids, result.get("nextPageToken") or ""

    def get_message_metadata(self, msg_id: str) -> dict:
        """Message with Subject/From/Date headers, snippet and internalDate; no body."""
        return _with_backoff(
            lambda: self._service()
            .users()
            .messages()
            .get(userId="me", id=msg_id, format="metadata", metadataHeaders=METADATA_HEADERS)
            .execute()
        )

    def get_profile_history_id(self) -> Optional[str]:
        """Return the user's current historyId from Gmail profile."""
        profile = _with_backoff(
            lambda: self._service().users().getProfile(userId="me").execute()
        )
        history_id = profile.get("historyId")
        return str(history_id) if history_id is not None else None

    def current_token(self) -> OAuthToken:
        creds = self.credentials
        return OAuthToken(
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expiry=creds.expiry,
        )


def build_gmail_client(token: OAuthToken) -> GmailClient:
    """Source client factory. A fresh client per call; nothing is cached across jobs."""
    client = GmailClient(credentials_from_token(token))
    client.refresh_if_expired()
    return client


def build_oauth_flow() -> Flow:
    if not settings.google_client_id or not settings.google_client_secret:
        raise ValueError("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set to link Gmail")
    if not settings.google_redirect_uri:
        raise ValueError("GOOGLE_REDIRECT_URI must be set to link Gmail")
    client_config = {
        "web": {
            "client_id": settings.google_client_id,
            "client_secret": settings.google_client_secret,
            "auth_uri": GOOGLE_AUTH_URI,
            "token_uri": GOOGLE_TOKEN_URI,
            "redirect_uris": [settings.google_redirect_uri],
        }
    }
    # The callback builds a new Flow, so there is no code verifier to carry over.
    return Flow.from_client_config(
        client_config,
        scopes=settings.google_scopes,
        redirect_uri=settings.google_redirect_uri,
        autogenerate_code_verifier=False,
    )


def authorization_url(state: str) -> str:
    """Google consent URL requesting offline access so a refresh token is issued."""
    flow = build_oauth_flow()
    url, _ = flow.authorization_url(access_type="offline", prompt="consent", state=state)
    return url


def exchange_code(code: str) -> OAuthToken:
    flow = build_oauth_flow()
    flow.fetch_token(code=code)
    creds = flow.credentials
    if not creds.token:
        raise GmailAuthRequiredError("Google returned no access token")
    return OAuthToken(
        access_token=creds.token,
        refresh_token=creds.refresh_token,
        expiry=creds.expiry,
    )
