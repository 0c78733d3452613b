"""
Paginated Gmail scan: listing query, bounded-concurrency metadata fetch,
heuristic extraction, dedup against imported messages, date ordering.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Iterable, Iterator, Optional

from .config import settings
from .extraction import extract

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 200
MAX_PAGE_SIZE = 500  # Gmail list page cap
DEFAULT_MAX_CONCURRENCY = 16

SOURCE_GMAIL = "gmail"
GMAIL_LINK_PREFIX = "https://mail.google.com/mail/u/0/#all/"

MODE_ALL = "all"
MODE_APPLIED = "applied"
MODE_REJECTED = "rejected"

APPLICATION_QUERIES = [
    'subject:"application received"',
    'subject:"thanks for applying"',
    'subject:"we received your application"',
    'subject:"your application to"',
    'subject:"applied for"',
    "from:jobs-lever.co",
    "from:greenhouse.io",
    "from:workday.com",
    "from:smartrecruiters.com",
    "from:ashbyhq.com",
    "from:workable.com",
    "from:indeed.com",
    "from:linkedin.com",
]

REJECTION_QUERIES = [
    'subject:"we regret"',
    'subject:"unfortunately"',
    'subject:"not moving forward"',
    'subject:"no longer being considered"',
    'subject:"pursue other candidates"',
    'subject:"not selected"',
]


@dataclass
class JobEvent:
    message_id: str
    subject: str
    snippet: str
    company: str
    title: str
    status: str
    applied_date: Optional[datetime]  # naive UTC
    source: str = SOURCE_GMAIL
    link: str = ""


@dataclass
class ScanResult:
    events: list[JobEvent] = field(default_factory=list)
    next_page_token: str = ""


def _joined(queries: Iterable[str]) -> str:
    return "(" + " OR ".join(queries) + ")"


def _day(value) -> date:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


def build_query(since=None, until=None, mode: Optional[str] = MODE_ALL) -> str:
    """
    Gmail search query for one scan.

    ``until`` is inclusive, so the ``before:`` bound is the following day.
    Unknown modes fall back to all.
    """
    normalized = (mode or "").strip().lower()
    if normalized == MODE_REJECTED:
        q = _joined(REJECTION_QUERIES)
    elif normalized == MODE_APPLIED:
        q = _joined(APPLICATION_QUERIES)
    else:
        q = _joined(APPLICATION_QUERIES) + " OR " + _joined(REJECTION_QUERIES)

    if since is not None:
        q += f" after:{_day(since).strftime('%Y/%m/%d')}"
    if until is not None:
        q += f" before:{(_day(until) + timedelta(days=1)).strftime('%Y/%m/%d')}"
    return q


def clamp_page_size(page_size: Optional[int]) -> int:
    if not page_size or page_size <= 0:
        return DEFAULT_PAGE_SIZE
    return min(page_size, MAX_PAGE_SIZE)


def _headers(msg: dict) -> dict:
    return {h["name"].lower(): h.get("value", "") for h in msg.get("payload", {}).get("headers", [])}


def _applied_date(msg: dict, date_header: str) -> Optional[datetime]:
    """internalDate (ms since epoch) first, then the Date header. Naive UTC."""
    try:
        internal_ms = int(msg.get("internalDate") or 0)
    except (TypeError, ValueError):
        internal_ms = 0
    if internal_ms > 0:
        return datetime.fromtimestamp(internal_ms / 1000, tz=timezone.utc).replace(tzinfo=None)
    if not date_header:
        return None
    try:
        parsed = parsedate_to_datetime(date_header)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def message_to_event(msg: dict, fallback_id: str = "") -> JobEvent:
    message_id = msg.get("id") or fallback_id
    headers = _headers(msg)
    subject = headers.get("subject", "")
    sender = headers.get("from", "")
    snippet = msg.get("snippet", "") or ""
    extracted = extract(subject, snippet, sender)
    return JobEvent(
        message_id=message_id,
        subject=subject,
        snippet=snippet,
        company=extracted.company,
        title=extracted.title,
        status=extracted.status,
        applied_date=_applied_date(msg, headers.get("date", "")),
        link=GMAIL_LINK_PREFIX + message_id,
    )


def _sort_events(events: list[JobEvent]) -> list[JobEvent]:
    # sorted() with reverse=True keeps equal keys in listing order; undated events go last.
    return sorted(events, key=lambda e: e.applied_date or datetime.min, reverse=True)


def scan_page(
    client,
    since=None,
    until=None,
    page_size: Optional[int] = None,
    cursor: str = "",
    mode: Optional[str] = MODE_ALL,
    known_ids: Optional[set[str]] = None,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
) -> ScanResult:
    """
    Scan one listing page.

    Known message ids are skipped before any detail fetch. A failed or
    malformed detail fetch drops that message only; a failed listing call raises.
    """
    known_ids = known_ids or set()
    query = build_query(since, until, mode)
    ids, next_token = client.list_message_ids(query, clamp_page_size(page_size), cursor or None)

    fresh = [mid for mid in ids if mid not in known_ids]
    skipped = len(ids) - len(fresh)
    if skipped:
        logger.debug(f"Skipping {skipped} already imported messages")

    def fetch_one(msg_id: str) -> Optional[JobEvent]:
        try:
            msg = client.get_message_metadata(msg_id)
        except Exception as e:
            logger.warning(f"Failed to fetch Gmail message {msg_id}: {e}")
            return None
        try:
            return message_to_event(msg, fallback_id=msg_id)
        except (KeyError, AttributeError, TypeError) as e:
            logger.warning(f"Skipping malformed Gmail message {msg_id}: {e!r}")
            return None

    events: list[JobEvent] = []
    if fresh:
        workers = max(1, min(max_concurrency or DEFAULT_MAX_CONCURRENCY, len(fresh)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            # map() yields in submission order, so events keep listing order before sorting.
            for event in executor.map(fetch_one, fresh):
                if event is not None:
                    events.append(event)

    logger.info(
        f"Scanned page: {len(ids)} listed, {skipped} known, {len(events)} events, "
        f"more={'yes' if next_token else 'no'}"
    )
    return ScanResult(events=_sort_events(events), next_page_token=next_token or "")


def scan_all(
    client,
    since=None,
    until=None,
    page_size: Optional[int] = None,
    mode: Optional[str] = MODE_ALL,
    known_ids: Optional[set[str]] = None,
    max_concurrency: Optional[int] = None,
    page_pause_s: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[ScanResult]:
    """
    Yield every page until Gmail stops returning a page token.

    ``known_ids`` is read on every page, so a caller that adds imported ids
    between pages gets them skipped on later pages.
    """
    max_concurrency = max_concurrency or settings.gmail_scan_max_concurrency
    page_pause_s = settings.gmail_page_pause_s if page_pause_s is None else page_pause_s
    known_ids = known_ids if known_ids is not None else set()

    cursor = ""
    page_num = 0
    while True:
        page_num += 1
        result = scan_page(
            client,
            since=since,
            until=until,
            page_size=page_size,
            cursor=cursor,
            mode=mode,
            known_ids=known_ids,
            max_concurrency=max_concurrency,
        )
        yield result
        if not result.next_page_token:
            break
        if result.next_page_token == cursor:
            logger.warning("Pagination stalled (repeated page token); stopping scan.")
            break
        cursor = result.next_page_token
        if page_pause_s > 0:
            sleep(page_pause_s)
    logger.info(f"Scan finished after {page_num} page(s)")
