"""Sealed OAuth token persistence per (user, provider)."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from .crypto import SealedDataError, SecretBox
from .models import EmailToken

PROVIDER_GMAIL = "gmail"


class TokenNotFoundError(LookupError):
    """No stored credential for this (user, provider): the account is not connected."""


class TokenDecryptionError(Exception):
    """A stored credential exists but could not be opened (corruption or key rotation)."""


@dataclass
class OAuthToken:
    access_token: str
    refresh_token: Optional[str] = None
    expiry: Optional[datetime] = None  # naive UTC
    token_type: str = "Bearer"


class TokenStore:
    """Every save and get round-trips through the vault."""

    def __init__(self, box: SecretBox):
        self.box = box

    def save(self, db: Session, user_id: int, provider: str, token: OAuthToken) -> None:
        if token is None or not token.access_token:
            raise ValueError("token must carry an access token")

        enc_access = self.box.seal(token.access_token.encode("utf-8"))
        enc_refresh = None
        if token.refresh_token:
            enc_refresh = self.box.seal(token.refresh_token.encode("utf-8"))

        now = datetime.utcnow()
        row = (
            db.query(EmailToken)
            .filter(EmailToken.user_id == user_id, EmailToken.provider == provider)
            .first()
        )
        if row:
            row.access_token_enc = enc_access
            row.refresh_token_enc = enc_refresh
            row.expiry = token.expiry
            row.updated_at = now
        else:
            db.add(EmailToken(
                user_id=user_id,
                provider=provider,
                access_token_enc=enc_access,
                refresh_token_enc=enc_refresh,
                expiry=token.expiry,
                created_at=now,
                updated_at=now,
            ))
        db.commit()

    def get(self, db: Session, user_id: int, provider: str) -> OAuthToken:
        row = (
            db.query(EmailToken)
            .filter(EmailToken.user_id == user_id, EmailToken.provider == provider)
            .first()
        )
        if row is None:
            raise TokenNotFoundError(f"no {provider} credential for user {user_id}")

        try:
            access = self.box.open(row.access_token_enc).decode("utf-8")
            refresh = None
            if row.refresh_token_enc:
                refresh = self.box.open(row.refresh_token_enc).decode("utf-8")
        except (SealedDataError, UnicodeDecodeError) as e:
            raise TokenDecryptionError(
                f"stored {provider} credential for user {user_id} could not be decrypted"
            ) from e

        return OAuthToken(access_token=access, refresh_token=refresh, expiry=row.expiry)

    def delete(self, db: Session, user_id: int, provider: str) -> None:
        db.query(EmailToken).filter(
            EmailToken.user_id == user_id, EmailToken.provider == provider
        ).delete(synchronize_session=False)
        db.commit()
