"""Parsers for forest closure notice pages and the closure tag classifier."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Dict, List, Optional
from urllib.parse import parse_qs, urljoin, urlparse

from bs4 import BeautifulSoup, NavigableString

from .html_normalize import minimal_text_fix
from .models import ClosureNotice, ClosureNoticeStatus
from .pipeline_config import CLOSURE_TAG_RULES
from .pipeline_utils import iso_from_epoch, normalize_forest_label, normalize_text, slugify

_FOREST_NAME_HINT_RE = re.compile(r"^(.*?\bstate forests?\b)", re.I)
_PARTIAL_RE = re.compile(
    r"\bpartial|partly|partially|sections?\s+of|exclusive\s+use\s+on\s+part|limited\s+camping\b"
)
_CLOSED_RE = re.compile(r"\bstate\s+forests?\s*:?\s*closed\b")
_CLOSURE_WORD_RE = re.compile(r"\bclosed|closure\b")
_COMPILED_TAG_RULES = tuple((key, re.compile(pattern, re.I)) for key, pattern in CLOSURE_TAG_RULES)
_BLOCK_TAGS = ("p", "div", "li", "h1", "h2", "h3", "h4", "h5", "h6")
_DATE_FORMATS = (
    "%d %B %Y",
    "%d %b %Y",
    "%A %d %B %Y",
    "%a %d %b %Y",
    "%A, %d %B %Y",
    "%a, %d %b %Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d/%m/%Y",
    "%Y-%m-%d",
    "%d %B %Y %I:%M %p",
    "%d %b %Y %I:%M %p",
    "%d %B %Y %H:%M",
)


def classify_closure_notice_tags(text: Optional[str]) -> List[str]:
    """Return matching impact tags in taxonomy order, without duplicates."""

    normalized = normalize_text(text)
    if not normalized:
        return []
    return [key for key, pattern in _COMPILED_TAG_RULES if pattern.search(normalized)]


def merge_closure_tags(*tag_lists: List[str]) -> List[str]:
    present = {tag for tags in tag_lists for tag in tags}
    return [key for key, _ in CLOSURE_TAG_RULES if key in present]


def parse_closure_notice_forest_name_hint(title: Optional[str]) -> Optional[str]:
    text = normalize_text(title)
    match = _FOREST_NAME_HINT_RE.match(text)
    if not match:
        return None
    hint = re.sub(r"state forests$", "State Forest", normalize_forest_label(match.group(1)), flags=re.I)
    return hint or None


def parse_closure_notice_status(title: Optional[str]) -> ClosureNoticeStatus:
    text = normalize_text(title).lower()
    if not text:
        return ClosureNoticeStatus.NOTICE
    if _PARTIAL_RE.search(text):
        return ClosureNoticeStatus.PARTIAL
    if _CLOSED_RE.search(text):
        return ClosureNoticeStatus.CLOSED
    # Feature-level closures (a road, a campground) are partial
    if _CLOSURE_WORD_RE.search(text):
        return ClosureNoticeStatus.PARTIAL
    return ClosureNoticeStatus.NOTICE


def parse_closure_date(value: Optional[str]) -> Optional[str]:
    """Return an ISO timestamp, or None for blank, open-ended or unparsable dates."""

    text = normalize_text(value)
    if not text or "further notice" in text.lower():
        return None
    cleaned = re.sub(r"(\d)(st|nd|rd|th)\b", r"\1", text)
    cleaned = re.sub(r"\s*,\s*", ", ", cleaned)
    for candidate in (cleaned, cleaned.replace(",", "")):
        for fmt in _DATE_FORMATS:
            try:
                parsed = datetime.strptime(candidate, fmt)
            except ValueError:
                continue
            return iso_from_epoch(parsed.replace(tzinfo=timezone.utc).timestamp())
    iso = cleaned[:-1] + "+00:00" if cleaned.endswith("Z") else cleaned
    try:
        parsed = datetime.fromisoformat(iso)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return iso_from_epoch(parsed.timestamp())


def _time_value(node) -> Optional[str]:
    text = normalize_text(node.get_text(" "))
    return text or normalize_text(node.get("datetime")) or None


def _notice_id(detail_url: str, title: str) -> str:
    query = parse_qs(urlparse(detail_url).query)
    ids = query.get("id") or []
    if ids and ids[0].strip():
        return ids[0].strip()
    return slugify(title) or slugify(detail_url) or "closure-notice"


def parse_closure_notices_page(html: str, base_url: str) -> List[ClosureNotice]:
    """One notice per ``#closuresList`` item; later duplicates replace earlier ones."""

    soup = BeautifulSoup(html or "", "lxml")
    notices: Dict[str, ClosureNotice] = {}
    for anchor in soup.select("#closuresList li[id^='closureItem'] a[href]"):
        heading = anchor.find("h3")
        title = normalize_text(heading.get_text(" ") if heading else "") or normalize_text(anchor.get("title"))
        href = (anchor.get("href") or "").strip()
        if not title or not href:
            continue
        detail_url = urljoin(base_url, href)
        times = [_time_value(node) for node in anchor.find_all("time")]
        start_text = times[0] if len(times) > 0 else None
        end_text = times[1] if len(times) > 1 else None
        notice_id = _notice_id(detail_url, title)
        notices[notice_id] = ClosureNotice(
            id=notice_id,
            title=title,
            detail_url=detail_url,
            status=parse_closure_notice_status(title),
            start_date=parse_closure_date(start_text),
            end_date=parse_closure_date(end_text),
            detail_text=None,
            tags=classify_closure_notice_tags(title),
            forest_name_hint=parse_closure_notice_forest_name_hint(title),
        )
    return list(notices.values())


def _block_text(container) -> Optional[str]:
    for br in container.find_all("br"):
        br.replace_with(NavigableString("\n"))
    for node in container.find_all(_BLOCK_TAGS):
        node.insert(0, NavigableString("\n"))
        node.append(NavigableString("\n"))
    lines = [normalize_text(line) for line in container.get_text().split("\n")]
    text = "\n".join(line for line in lines if line)
    return minimal_text_fix(text) or None


def parse_closure_notice_detail_page(html: Optional[str]) -> Optional[str]:
    """Extract the notice body.

    Returns ``None`` when ``html`` is ``None`` (page never fetched) or no body
    block exists, and ``""`` when the body block is present but empty.
    """

    if html is None:
        return None
    soup = BeautifulSoup(html, "lxml")
    container = soup.select_one("main .text-container-wd")
    if container is not None:
        return _block_text(container) or ""

    for heading in soup.select("main h3"):
        if "more information" not in normalize_text(heading.get_text(" ")).lower():
            continue
        paragraph = heading.find_next_sibling("p")
        if paragraph is not None:
            return _block_text(paragraph) or ""
        break
    return None


__all__ = [
    "classify_closure_notice_tags",
    "merge_closure_tags",
    "parse_closure_notice_forest_name_hint",
    "parse_closure_notice_status",
    "parse_closure_date",
    "parse_closure_notices_page",
    "parse_closure_notice_detail_page",
]
