"""
Source scoring helpers

Content quality, domain authority and freshness signals shared by relevance
ordering and source prioritization. All scores are in [0, 1].
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

_SENTENCE_END_RE = re.compile(r"[.!?]+(?:\s|$)")
_PARAGRAPH_RE = re.compile(r"\n\s*\n")

# Raw authority 0-100.
KNOWN_DOMAINS = {
    "wikipedia.org": 85,
    "britannica.com": 85,
    "nature.com": 90,
    "sciencedirect.com": 85,
    "arxiv.org": 80,
    "nih.gov": 95,
    "who.int": 95,
    "github.com": 75,
    "stackoverflow.com": 75,
    "docs.python.org": 85,
    "developer.mozilla.org": 85,
    "reuters.com": 85,
    "bbc.com": 80,
    "nytimes.com": 80,
    "medium.com": 55,
    "reddit.com": 45,
    "quora.com": 40,
}
TLD_AUTHORITY = {"gov": 90, "edu": 85, "org": 70}
DEFAULT_AUTHORITY = 0.5


def extract_domain(url: str) -> str:
    try:
        host = urlparse(str(url or "")).hostname or ""
    except ValueError:
        return ""
    host = host.lower()
    return host[4:] if host.startswith("www.") else host


def domain_authority(url: str) -> float:
    domain = extract_domain(url)
    if not domain:
        return DEFAULT_AUTHORITY
    if domain in KNOWN_DOMAINS:
        return KNOWN_DOMAINS[domain] / 100
    for known, raw in KNOWN_DOMAINS.items():
        if domain.endswith("." + known):
            return raw / 100
    tld = domain.rsplit(".", 1)[-1]
    if tld in TLD_AUTHORITY:
        return TLD_AUTHORITY[tld] / 100
    return DEFAULT_AUTHORITY


def _parse_date(value: str) -> Optional[datetime]:
    text = str(value or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        try:
            parsed = datetime.strptime(text[:10], "%Y-%m-%d")
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def freshness_score(published_date: Optional[str], *, now: Optional[datetime] = None) -> float:
    """1.0 within a week, stepping down to 0.7 within a year, then linear decay floored at 0.3."""
    published = _parse_date(published_date) if published_date else None
    now = now or datetime.now(timezone.utc)
    if published is None or published > now:
        return 0.5
    days = (now - published).total_seconds() / 86400
    if days <= 7:
        return 1.0
    if days <= 30:
        return 0.9
    if days <= 90:
        return 0.8
    if days <= 365:
        return 0.7
    return max(0.3, 1.0 - (days - 365) / 365)


def _length_score(length: int) -> float:
    if length < 50:
        return length / 50
    if length <= 500:
        return 1.0
    if length <= 5000:
        return 1.0 - min(0.3, (length - 500) / 4500)
    return max(0.3, 1.0 - min(0.5, (length - 5000) / 5000))


def _readability(word_count: int, sentence_count: int) -> float:
    if word_count == 0:
        return 0.0
    average = word_count / sentence_count
    if average < 5:
        sentence_length = max(0.3, average / 5)
    elif average > 25:
        sentence_length = 1.0 - min(0.5, (average - 25) / 25)
    else:
        sentence_length = 1.0
    return min(1.0, sentence_length * 0.6 + min(1.0, sentence_count / 3) * 0.4)


def _structure(title: str, paragraph_count: int, content: str) -> float:
    score = 0.3 if title.strip() and title != "Untitled" else 0.0
    score += 0.4 * min(1.0, paragraph_count / 2)
    if any(marker in content for marker in ("\n-", "\n*", "\n1.", "<h", "#")):
        score += 0.3
    elif paragraph_count > 1:
        score += 0.15
    return min(1.0, score)


def _completeness(length: int, word_count: int) -> float:
    if word_count < 20:
        words = word_count / 20
    elif word_count <= 200:
        words = 1.0
    else:
        words = 1.0 - min(0.2, (word_count - 200) / 200)
    return min(1.0, min(1.0, _length_score(length)) * 0.6 + words * 0.4)


def quality_score(title: str, content: str) -> float:
    """Weighted blend: length .25, readability .30, structure .25, completeness .20."""
    content = str(content or "")
    title = str(title or "")
    words = content.split()
    sentences = max(1, len(_SENTENCE_END_RE.findall(content)))
    paragraphs = max(1, len([p for p in _PARAGRAPH_RE.split(content) if p.strip()]))
    score = (
        _length_score(len(content)) * 0.25
        + _readability(len(words), sentences) * 0.30
        + _structure(title, paragraphs, content) * 0.25
        + _completeness(len(content), len(words)) * 0.20
    )
    return min(1.0, max(0.0, score))
