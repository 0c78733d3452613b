"""End-to-end tests for the background worker against a SQLite queue and a fake Gmail."""
import pytest

from jobsync.config import settings
from jobsync.job_queue import COMPLETED, FAILED, JobType, enqueue, get_job, retry_failed
from jobsync.models import GmailSyncStatus, JobRecord
from jobsync.token_store import PROVIDER_GMAIL, OAuthToken, TokenNotFoundError
from jobsync.worker import Worker


def _msg(msg_id, subject, internal_ms):
    return {
        "id": msg_id,
        "snippet": "",
        "internalDate": str(internal_ms),
        "payload": {"headers": [
            {"name": "Subject", "value": subject},
            {"name": "From", "value": "Careers <no-reply@acme.com>"},
        ]},
    }


class FakeGmail:
    def __init__(self, pages, messages, fail_on=None, refreshed_token=None):
        self.pages = pages
        self.messages = messages
        self.fail_on = fail_on
        self.refreshed_token = refreshed_token
        self.fetched = []
        self.queries = []

    def list_message_ids(self, query, page_size, page_token=None):
        self.queries.append(query)
        if self.fail_on is not None and (page_token or "") == self.fail_on:
            raise RuntimeError("gmail listing failed")
        return self.pages[page_token or ""]

    def get_message_metadata(self, msg_id):
        self.fetched.append(msg_id)
        return self.messages[msg_id]

    def get_profile_history_id(self):
        return "98765"

    def current_token(self):
        return self.refreshed_token or OAuthToken("access-1", "refresh-1")


MESSAGES = {
    "n1": _msg("n1", "Your application to Acme Corp", 3000),
    "n2": _msg("n2", "Application for Backend Engineer at Stripe", 2000),
    "n3": _msg("n3", "We regret to inform you", 1000),
    "k1": _msg("k1", "Thanks for applying to Known", 4000),
}


@pytest.fixture
def connected_user(db_session, user, token_store):
    token_store.save(db_session, user.id, PROVIDER_GMAIL, OAuthToken("access-1", "refresh-1"))
    db_session.add(JobRecord(user_id=user.id, company="Known", position="Engineer", gmail_message_id="k1"))
    db_session.commit()
    return user


def _worker(session_factory, token_store, fake):
    return Worker(
        session_factory=session_factory,
        token_store=token_store,
        client_factory=lambda token: fake,
        poll_interval_s=0,
        sleep=lambda s: None,
    )


def test_initial_sync_imports_new_messages(db_session, session_factory, token_store, connected_user):
    user_id = connected_user.id
    fake = FakeGmail(pages={"": (["n1", "n2", "n3", "k1"], "p2"), "p2": ([], "")}, messages=MESSAGES)
    job_id = enqueue(db_session, JobType.GMAIL_INITIAL_SYNC, user_id)

    assert _worker(session_factory, token_store, fake).process_next_job() is True

    db_session.expire_all()
    job = get_job(db_session, job_id)
    assert job.status == COMPLETED
    assert job.attempts == 1

    status = db_session.query(GmailSyncStatus).filter(GmailSyncStatus.user_id == user_id).one()
    assert status.initial_sync_completed is True
    assert status.total_imported == 3
    assert status.initial_sync_started_at is not None
    assert status.initial_sync_completed_at is not None
    assert status.last_history_id == "98765"

    assert "k1" not in fake.fetched
    records = {r.gmail_message_id: r for r in db_session.query(JobRecord).filter(JobRecord.user_id == user_id)}
    assert set(records) == {"k1", "n1", "n2", "n3"}
    assert records["n1"].company == "Acme Corp"
    assert records["n1"].position == "Unknown Position"
    assert records["n1"].notes == "[Gmail Import] Your application to Acme Corp"
    assert records["n2"].position == "Backend Engineer"
    assert records["n3"].status == "rejected"
    assert records["n3"].company == "Acme"


def test_initial_sync_uses_all_mode_and_a_year_window(db_session, session_factory, token_store, connected_user):
    fake = FakeGmail(pages={"": ([], "")}, messages={})
    enqueue(db_session, JobType.GMAIL_INITIAL_SYNC, connected_user.id)

    _worker(session_factory, token_store, fake).process_next_job()

    query = fake.queries[0]
    assert 'subject:"application received"' in query
    assert 'subject:"we regret"' in query
    assert " after:" in query and " before:" in query


def test_failure_on_second_page_marks_job_failed(db_session, session_factory, token_store, connected_user):
    user_id = connected_user.id
    fake = FakeGmail(pages={"": (["n1", "n2", "n3"], "p2")}, messages=MESSAGES, fail_on="p2")
    job_id = enqueue(db_session, JobType.GMAIL_INITIAL_SYNC, user_id)

    assert _worker(session_factory, token_store, fake).process_next_job() is True

    db_session.expire_all()
    job = get_job(db_session, job_id)
    assert job.status == FAILED
    assert job.attempts == 1
    assert "gmail listing failed" in job.error

    status = db_session.query(GmailSyncStatus).filter(GmailSyncStatus.user_id == user_id).one()
    assert status.initial_sync_completed is False
    # First page was committed before the failure.
    assert status.total_imported == 3


def test_retry_after_partial_failure_does_not_duplicate(db_session, session_factory, token_store, connected_user):
    user_id = connected_user.id
    failing = FakeGmail(pages={"": (["n1", "n2"], "p2")}, messages=MESSAGES, fail_on="p2")
    job_id = enqueue(db_session, JobType.GMAIL_INITIAL_SYNC, user_id)
    _worker(session_factory, token_store, failing).process_next_job()

    worker = _worker(
        session_factory,
        token_store,
        FakeGmail(pages={"": (["n1", "n2"], "p2"), "p2": (["n3"], "")}, messages=MESSAGES),
    )
    assert retry_failed(db_session, backoff_base_s=0) == 1
    assert worker.process_next_job() is True

    db_session.expire_all()
    assert get_job(db_session, job_id).status == COMPLETED
    assert get_job(db_session, job_id).attempts == 2
    status = db_session.query(GmailSyncStatus).filter(GmailSyncStatus.user_id == user_id).one()
    assert status.total_imported == 3
    assert db_session.query(JobRecord).filter(JobRecord.user_id == user_id).count() == 4


def test_unknown_job_type_fails_permanently(db_session, session_factory, token_store, user):
    job_id = enqueue(db_session, "mystery_job", user.id)
    worker = _worker(session_factory, token_store, FakeGmail(pages={}, messages={}))

    assert worker.process_next_job() is True

    db_session.expire_all()
    job = get_job(db_session, job_id)
    assert job.status == FAILED
    assert "unknown job type" in job.error
    assert job.attempts == settings.queue_max_attempts
    assert worker.requeue_failed() == 0


def test_malformed_payload_fails_permanently(db_session, session_factory, token_store, connected_user):
    job_id = enqueue(db_session, JobType.GMAIL_INITIAL_SYNC, connected_user.id, ["not", "an", "object"])

    _worker(session_factory, token_store, FakeGmail(pages={}, messages={})).process_next_job()

    db_session.expire_all()
    job = get_job(db_session, job_id)
    assert job.status == FAILED
    assert job.attempts == settings.queue_max_attempts


def test_missing_credential_fails_and_stays_retryable(db_session, session_factory, token_store, user):
    job_id = enqueue(db_session, JobType.GMAIL_INITIAL_SYNC, user.id)

    _worker(session_factory, token_store, FakeGmail(pages={}, messages={})).process_next_job()

    db_session.expire_all()
    job = get_job(db_session, job_id)
    assert job.status == FAILED
    assert job.attempts == 1
    assert job.error


def test_no_work_returns_false(session_factory, token_store):
    assert _worker(session_factory, token_store, None).process_next_job() is False


def test_refreshed_token_is_saved(db_session, session_factory, token_store, connected_user):
    fake = FakeGmail(
        pages={"": ([], "")},
        messages={},
        refreshed_token=OAuthToken("access-2", None),
    )
    enqueue(db_session, JobType.GMAIL_INITIAL_SYNC, connected_user.id)

    _worker(session_factory, token_store, fake).process_next_job()

    db_session.expire_all()
    stored = token_store.get(db_session, connected_user.id, PROVIDER_GMAIL)
    assert stored.access_token == "access-2"
    assert stored.refresh_token == "refresh-1"


def test_process_initial_sync_propagates_missing_token(db_session, session_factory, token_store, user):
    worker = _worker(session_factory, token_store, None)
    with pytest.raises(TokenNotFoundError):
        worker.process_initial_sync(db_session, user.id)


def test_run_forever_stops(session_factory, token_store):
    worker = _worker(session_factory, token_store, None)
    calls = []

    def process_once():
        calls.append(1)
        worker.stop()
        return False

    worker.process_next_job = process_once
    worker.run_forever()
    assert calls == [1]
