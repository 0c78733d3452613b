"""Tests for job record import, per-user sync status, and OAuth state storage."""
from datetime import datetime, timedelta

from jobsync.job_records import IMPORT_NOTE_PREFIX, UNKNOWN_COMPANY, UNKNOWN_POSITION, create_from_event, list_known_message_ids
from jobsync.models import GmailSyncStatus, JobRecord, OAuthState, User
from jobsync.oauth_state_db import (
    KIND_GMAIL,
    OAUTH_STATE_TTL_SECONDS,
    oauth_state_cleanup_expired,
    oauth_state_consume,
    oauth_state_create,
)
from jobsync.scanner import JobEvent
from jobsync.sync_status_db import (
    add_imported,
    get_or_create_status,
    get_state_from_db,
    is_syncing,
    set_last_history_id,
    set_sync_completed,
    set_sync_started,
)


def _event(message_id="m1", company="Acme", title="Engineer", subject="Your application to Acme"):
    return JobEvent(
        message_id=message_id,
        subject=subject,
        snippet="",
        company=company,
        title=title,
        status="applied",
        applied_date=datetime(2025, 6, 1, 9, 30),
        link=f"https://mail.google.com/mail/u/0/#all/{message_id}",
    )


def test_create_from_event_uses_placeholders(db_session, user):
    result = create_from_event(db_session, user.id, _event(company="", title=""))

    assert result.duplicate is False
    record = db_session.query(JobRecord).filter(JobRecord.id == result.job_id).one()
    assert record.company == UNKNOWN_COMPANY
    assert record.position == UNKNOWN_POSITION
    assert record.notes == f"{IMPORT_NOTE_PREFIX} Your application to Acme"
    assert record.applied_date == datetime(2025, 6, 1, 9, 30)
    assert record.gmail_message_id == "m1"


def test_create_from_event_duplicate_is_signalled(db_session, user):
    first = create_from_event(db_session, user.id, _event())
    second = create_from_event(db_session, user.id, _event())

    assert first.duplicate is False
    assert second.duplicate is True
    assert second.job_id is None
    assert db_session.query(JobRecord).count() == 1


def test_same_message_for_two_users_is_not_duplicate(db_session, user):
    other = User(email="bob@example.com")
    db_session.add(other)
    db_session.commit()

    assert create_from_event(db_session, user.id, _event()).duplicate is False
    assert create_from_event(db_session, other.id, _event()).duplicate is False


def test_list_known_message_ids_is_per_user(db_session, user):
    create_from_event(db_session, user.id, _event("a"))
    create_from_event(db_session, user.id, _event("b"))
    db_session.add(JobRecord(user_id=user.id, company="Manual", position="Dev"))
    db_session.add(JobRecord(user_id=user.id + 1, company="Other", position="Dev", gmail_message_id="c"))
    db_session.commit()

    assert list_known_message_ids(db_session, user.id) == {"a", "b"}


def test_status_is_created_on_first_access(db_session, user):
    row = get_or_create_status(db_session, user.id)
    assert row.initial_sync_completed is False
    assert row.total_imported == 0
    assert get_or_create_status(db_session, user.id).id == row.id
    assert db_session.query(GmailSyncStatus).count() == 1


def test_sync_lifecycle(db_session, user):
    assert get_state_from_db(db_session, user.id)["is_syncing"] is False

    set_sync_started(db_session, user.id)
    started = get_or_create_status(db_session, user.id).initial_sync_started_at
    assert is_syncing(get_or_create_status(db_session, user.id)) is True

    set_sync_started(db_session, user.id)
    assert get_or_create_status(db_session, user.id).initial_sync_started_at == started

    add_imported(db_session, user.id, 3)
    add_imported(db_session, user.id, 0)
    add_imported(db_session, user.id, 2)
    set_sync_completed(db_session, user.id)
    completed = get_or_create_status(db_session, user.id).initial_sync_completed_at
    set_sync_completed(db_session, user.id)

    state = get_state_from_db(db_session, user.id)
    assert state["is_syncing"] is False
    assert state["initial_sync_completed"] is True
    assert state["total_imported"] == 5
    assert state["completed_at"] == completed


def test_last_history_id(db_session, user):
    set_last_history_id(db_session, user.id, "12345")
    assert get_or_create_status(db_session, user.id).last_history_id == "12345"


def test_oauth_state_round_trip(db_session, user):
    state = oauth_state_create(db_session, KIND_GMAIL, user.id, redirect_url="http://localhost:5173")
    entry = oauth_state_consume(db_session, KIND_GMAIL, state)
    assert entry["user_id"] == user.id
    assert entry["redirect_url"] == "http://localhost:5173"
    assert oauth_state_consume(db_session, KIND_GMAIL, state) is None


def test_oauth_state_expires(db_session, user):
    state = oauth_state_create(db_session, KIND_GMAIL, user.id)
    row = db_session.query(OAuthState).filter(OAuthState.state_token == state).one()
    row.created_at = datetime.utcnow() - timedelta(seconds=OAUTH_STATE_TTL_SECONDS + 1)
    db_session.commit()

    assert oauth_state_consume(db_session, KIND_GMAIL, state) is None
    assert db_session.query(OAuthState).count() == 0


def test_oauth_state_kind_must_match(db_session, user):
    state = oauth_state_create(db_session, "other", user.id)
    assert oauth_state_consume(db_session, KIND_GMAIL, state) is None


def test_oauth_state_cleanup(db_session, user):
    fresh = oauth_state_create(db_session, KIND_GMAIL, user.id)
    stale = oauth_state_create(db_session, KIND_GMAIL, user.id)
    row = db_session.query(OAuthState).filter(OAuthState.state_token == stale).one()
    row.created_at = datetime.utcnow() - timedelta(hours=1)
    db_session.commit()

    assert oauth_state_cleanup_expired(db_session) == 1
    assert [r.state_token for r in db_session.query(OAuthState)] == [fresh]
