"""SQLAlchemy models."""
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    Boolean,
    ForeignKey,
    Index,
    LargeBinary,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy import JSON

Base = declarative_base()


class User(Base):
    """Owned by the login service; referenced here only as a foreign key target."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class JobRecord(Base):
    """Tracked job application. Rows imported from Gmail carry gmail_message_id."""
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    company = Column(String, nullable=False)
    position = Column(String, nullable=False)
    status = Column(String, default="applied", index=True)  # applied, rejected
    applied_date = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    gmail_message_id = Column(String, nullable=True, index=True)  # unique per user (see constraint)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "gmail_message_id", name="uq_jobs_user_gmail_message"),
    )


class EmailToken(Base):
    """Sealed OAuth credentials, one row per (user, provider)."""
    __tablename__ = "email_tokens"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    provider = Column(String(50), nullable=False)  # e.g. gmail
    access_token_enc = Column(LargeBinary, nullable=False)
    refresh_token_enc = Column(LargeBinary, nullable=True)
    expiry = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_email_tokens_user_provider"),
    )


class GmailSyncStatus(Base):
    """Initial-import bookkeeping per user."""
    __tablename__ = "gmail_sync_status"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    initial_sync_completed = Column(Boolean, default=False, nullable=False)
    initial_sync_started_at = Column(DateTime, nullable=True)
    initial_sync_completed_at = Column(DateTime, nullable=True)
    last_history_id = Column(String(255), nullable=True)  # cursor for future incremental syncs
    total_imported = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class BackgroundJob(Base):
    """Durable work item polled by the worker."""
    __tablename__ = "background_jobs"

    id = Column(Integer, primary_key=True, index=True)
    type = Column(String(50), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    payload = Column(JSON, nullable=True)
    status = Column(String(20), default="pending", nullable=False)  # pending, processing, completed, failed
    attempts = Column(Integer, default=0, nullable=False)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    process_after = Column(DateTime, default=datetime.utcnow, nullable=False)


class OAuthState(Base):
    """OAuth CSRF state for Gmail linking, bound to the user who started it."""
    __tablename__ = "oauth_state"

    state_token = Column(String(64), primary_key=True)
    kind = Column(String(32), nullable=False, index=True)  # gmail
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True)
    redirect_url = Column(String(512), nullable=True)
    created_at = Column(DateTime, nullable=False)


Index("ix_background_jobs_status_process_after", BackgroundJob.status, BackgroundJob.process_after)
