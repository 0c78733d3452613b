"""
Background worker: polls the job queue and runs Gmail initial syncs.

Run with ``jobsync-worker`` (or ``python -m jobsync.worker``). Any number of
worker processes may poll the same database; the queue claim keeps them from
taking the same job.
"""
import logging
import signal
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from .config import settings
from .crypto import InvalidKeyError, get_secret_box
from .database import SessionLocal, init_db
from .gmail_service import build_gmail_client
from .job_queue import JobType, QueuedJob, claim_next, mark_complete, mark_failed, retry_failed
from .job_records import create_from_event, list_known_message_ids
from .scanner import MODE_ALL, scan_all
from .sync_status_db import add_imported, set_last_history_id, set_sync_completed, set_sync_started
from .token_store import PROVIDER_GMAIL, OAuthToken, TokenStore

logger = logging.getLogger(__name__)


class InvalidJobError(ValueError):
    """Job row cannot be processed as stored (bad payload, missing user). Never retried."""


class Worker:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        token_store: Optional[TokenStore] = None,
        client_factory: Callable = build_gmail_client,
        poll_interval_s: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.token_store = token_store or TokenStore(get_secret_box())
        self.client_factory = client_factory
        self.poll_interval_s = settings.worker_poll_interval_s if poll_interval_s is None else poll_interval_s
        self.sleep = sleep
        self.now = now
        self._stop = threading.Event()
        self.handlers = {
            JobType.GMAIL_INITIAL_SYNC.value: self._handle_initial_sync,
        }

    def stop(self) -> None:
        self._stop.set()

    def run_forever(self) -> None:
        logger.info(f"Worker started (poll every {self.poll_interval_s}s)")
        while not self._stop.is_set():
            try:
                self.requeue_failed()
                self.process_next_job()
            except Exception:
                # DB outages must not kill the loop; the next tick tries again.
                logger.exception("Worker tick failed")
            self._stop.wait(self.poll_interval_s)
        logger.info("Worker stopped")

    def requeue_failed(self) -> int:
        db = self.session_factory()
        try:
            return retry_failed(db, now=self.now())
        finally:
            db.close()

    def process_next_job(self) -> bool:
        """Claim and run one job. Returns False when the queue had nothing eligible."""
        db = self.session_factory()
        try:
            job = claim_next(db, now=self.now())
            if job is None:
                return False

            logger.info(f"Processing job {job.id} type={job.type} user_id={job.user_id} attempt={job.attempts}")
            handler = self.handlers.get(job.type)
            if handler is None:
                logger.error(f"Job {job.id} has unknown type {job.type!r}; failing permanently")
                mark_failed(db, job.id, f"unknown job type: {job.type}", permanent=True)
                return True

            try:
                handler(db, job)
            except InvalidJobError as e:
                db.rollback()
                logger.error(f"Job {job.id} is invalid: {e}")
                mark_failed(db, job.id, f"invalid job: {e}", permanent=True)
                return True
            except Exception as e:
                db.rollback()
                logger.exception(f"Job {job.id} failed on attempt {job.attempts}")
                mark_failed(db, job.id, str(e) or e.__class__.__name__)
                return True

            mark_complete(db, job.id)
            logger.info(f"Job {job.id} completed")
            return True
        finally:
            db.close()

    def _handle_initial_sync(self, db: Session, job: QueuedJob) -> None:
        if job.user_id is None:
            raise InvalidJobError("gmail_initial_sync requires a user_id")
        if job.payload is not None and not isinstance(job.payload, dict):
            raise InvalidJobError(f"payload must be an object, got {type(job.payload).__name__}")
        imported = self.process_initial_sync(db, job.user_id)
        logger.info(f"Initial Gmail sync for user {job.user_id} imported {imported} job(s)")

    def process_initial_sync(self, db: Session, user_id: int) -> int:
        """
        Import the last year of job-related Gmail messages for one user.

        Each page is committed as it is processed, so a failure part-way
        keeps earlier pages; the retry skips them through the dedup index.
        """
        token = self.token_store.get(db, user_id, PROVIDER_GMAIL)
        client = self.client_factory(token)

        set_sync_started(db, user_id)
        known_ids = list_known_message_ids(db, user_id)

        until = self.now()
        since = until - timedelta(days=settings.gmail_initial_sync_days_back)

        imported = 0
        for page in scan_all(
            client,
            since=since,
            until=until,
            page_size=settings.gmail_scan_page_size,
            mode=MODE_ALL,
            known_ids=known_ids,
            max_concurrency=settings.gmail_scan_max_concurrency,
            page_pause_s=settings.gmail_page_pause_s,
            sleep=self.sleep,
        ):
            page_imported = 0
            for event in page.events:
                result = create_from_event(db, user_id, event)
                known_ids.add(event.message_id)
                if not result.duplicate:
                    page_imported += 1
            add_imported(db, user_id, page_imported)
            imported += page_imported

        self._store_history_id(db, user_id, client)
        set_sync_completed(db, user_id)
        self._save_refreshed_token(db, user_id, token, client)
        return imported

    def _store_history_id(self, db: Session, user_id: int, client) -> None:
        """Cursor for future incremental syncs; the import stands without it."""
        try:
            history_id = client.get_profile_history_id()
        except Exception as e:
            logger.warning(f"Could not read Gmail historyId for user {user_id}: {e}")
            return
        if history_id:
            set_last_history_id(db, user_id, history_id)

    def _save_refreshed_token(self, db: Session, user_id: int, previous: OAuthToken, client) -> None:
        current = client.current_token()
        if not current.access_token or current.access_token == previous.access_token:
            return
        if not current.refresh_token:
            current.refresh_token = previous.refresh_token
        self.token_store.save(db, user_id, PROVIDER_GMAIL, current)
        logger.info(f"Stored refreshed Gmail token for user {user_id}")


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    try:
        box = get_secret_box()
    except InvalidKeyError as e:
        logger.critical(f"Cannot start worker: {e}")
        raise SystemExit(1)

    init_db()
    worker = Worker(token_store=TokenStore(box))

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}; stopping after the current job")
        worker.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    worker.run_forever()


if __name__ == "__main__":
    main()
