"""
Heuristic extraction of job events from Gmail message metadata.

Pure and deterministic. Every pattern list is ordered and the first match
wins; tests pin that order.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

STATUS_APPLIED = "applied"
STATUS_REJECTED = "rejected"

_COMPANY_PATTERNS = [
    re.compile(r"your application to ([\w\s.\-&']+)", re.I),
    re.compile(r"application received (?:at|from) ([\w\s.\-&']+)", re.I),
    re.compile(r"thanks for applying to ([\w\s.\-&']+)", re.I),
]
_AT_COMPANY_RE = re.compile(r"\bat\s+([A-Za-z0-9&.\-'\s]+)", re.I)

_TITLE_PATTERNS = [
    # "... for the position of Software Engineer at Acme"
    re.compile(r"\bfor (?:the )?position of ([\w\s.\-/&']+?)(?=\s+(?:at|with)\b|\s*[,.!:;|(]|\s*$)", re.I),
    # "Application for Backend Engineer at Stripe"
    re.compile(r"\bapplication (?:for|to) ([\w\s.\-/&']+?) (?:at|with)\b", re.I),
    # "Your application to Acme for Data Analyst"
    re.compile(r"\byour application to .*? for ([\w\s.\-/&']+)$", re.I),
    # "“Software Engineer”: next steps"
    re.compile(r"[“\"]([^”\"]+)[”\"]\s*:", re.I),
    # "Software Engineer: application update"
    re.compile(r"^\s*([^:]+?)\s*:\s*", re.I),
    # "\"Software Engineer\" at Acme"
    re.compile(r"^[\"“]?([^\"”]+?)[\"”]?\s+at\s+", re.I),
]

REJECTION_INDICATORS = (
    "not moving forward",
    "unfortunately",
    "no longer being considered",
    "not selected",
    "pursue other candidates",
    "we regret",
    "regret to inform",
)


@dataclass(frozen=True)
class Extraction:
    company: str
    title: str
    status: str


def _company_from_sender(from_address: str) -> str:
    """First label of the sender's domain, title-cased: jobs@mail.acme.com -> Acme."""
    at = (from_address or "").find("@")
    if at == -1:
        return ""
    domain = from_address[at + 1:].strip().lower()
    if domain.startswith("mail."):
        domain = domain[len("mail."):]
    domain = domain.split(">", 1)[0]
    label, dot, _ = domain.partition(".")
    if not dot or not label:
        return ""
    return label.title()


def extract_company(subject: str, from_address: str) -> str:
    s = (subject or "").strip()
    for pattern in _COMPANY_PATTERNS:
        m = pattern.search(s)
        if m:
            return m.group(1).strip()
    m = _AT_COMPANY_RE.search(s)
    if m:
        return m.group(1).strip()
    return _company_from_sender(from_address)


def extract_title(subject: str) -> str:
    """Empty string when nothing matches; the caller supplies a placeholder."""
    s = (subject or "").strip()
    for pattern in _TITLE_PATTERNS:
        m = pattern.search(s)
        if m:
            return m.group(1).strip()
    return ""


def infer_status(subject: str, snippet: str) -> str:
    text = f"{subject or ''} {snippet or ''}".lower()
    if any(indicator in text for indicator in REJECTION_INDICATORS):
        return STATUS_REJECTED
    return STATUS_APPLIED


def extract(subject: str, snippet: str, from_address: str) -> Extraction:
    return Extraction(
        company=extract_company(subject, from_address),
        title=extract_title(subject),
        status=infer_status(subject, snippet),
    )
