"""Offline parse stages: raw page archive -> typed records plus warnings.

Pages missing from the archive are an expected condition (a partial scrape
still archives what it reached), so they become warnings. Only a missing or
unparsable landing page aborts the forestry stage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .closure_parser import merge_closure_tags, classify_closure_notice_tags
from .closure_parser import parse_closure_notice_detail_page, parse_closure_notices_page
from .errors import PageParseError
from .forestry_parser import is_cloudflare_challenge_html, parse_area_forest_names, parse_directory_page
from .forestry_parser import parse_main_fire_ban_page
from .models import ClosureNotice, DirectorySnapshot, ForestArea
from .pipeline_config import CLOSURES_URL, FORESTRY_DIRECTORY_URLS, FORESTRY_ENTRY_URL
from .raw_page_cache import RawPagesArchive

logger = logging.getLogger(__name__)


@dataclass
class ForestryParseResult:
    areas: List[ForestArea]
    directory: DirectorySnapshot
    warnings: List[str] = field(default_factory=list)


@dataclass
class ClosureParseResult:
    notices: List[ClosureNotice]
    warnings: List[str] = field(default_factory=list)


def _page_html(archive: RawPagesArchive, url: str) -> Optional[str]:
    entry = archive.pages.get(url)
    return entry.html if entry is not None else None


def parse_forestry_archive(
    archive: RawPagesArchive,
    *,
    entry_url: str = FORESTRY_ENTRY_URL,
    directory_urls: Sequence[str] = FORESTRY_DIRECTORY_URLS,
) -> ForestryParseResult:
    main_html = _page_html(archive, entry_url)
    if main_html is None:
        raise PageParseError(f"Fire ban landing page {entry_url} is not in the raw archive")
    if is_cloudflare_challenge_html(main_html):
        raise PageParseError(f"Fire ban landing page {entry_url} was archived as a bot challenge")
    areas = parse_main_fire_ban_page(main_html, entry_url)
    if not areas:
        raise PageParseError(f"No fire ban areas were found on {entry_url}")

    warnings: List[str] = []
    missing = 0
    blocked = 0
    for area in areas:
        html = _page_html(archive, area.area_url or "")
        if html is None:
            missing += 1
            continue
        if is_cloudflare_challenge_html(html):
            blocked += 1
            continue
        area.forests = parse_area_forest_names(html)
    if missing:
        warnings.append(f"{missing} area page(s) were not found in the raw archive.")
    if blocked:
        warnings.append(f"{blocked} area page(s) were blocked by a bot challenge and have no forests.")

    directory = DirectorySnapshot()
    for url in directory_urls:
        html = _page_html(archive, url)
        if html is None or is_cloudflare_challenge_html(html):
            continue
        directory = parse_directory_page(html)
        if directory.forests:
            break
    if not directory.forests:
        warnings.append(
            "Forest directory page was not found in the raw archive; facility and coordinate data are unavailable."
        )
    warnings.extend(directory.warnings)
    logger.info("Parsed %d area(s) and %d directory forest(s)", len(areas), len(directory.forests))
    return ForestryParseResult(areas=areas, directory=directory, warnings=warnings)


def parse_closures_archive(archive: RawPagesArchive, *, list_url: str = CLOSURES_URL) -> ClosureParseResult:
    list_html = _page_html(archive, list_url)
    if list_html is None:
        return ClosureParseResult(notices=[], warnings=["Closure notices page was not found in the raw archive."])

    notices = parse_closure_notices_page(list_html, list_url)
    missing = 0
    for notice in notices:
        html = _page_html(archive, notice.detail_url)
        if html is None:
            missing += 1
            notice.detail_text = None
            continue
        notice.detail_text = parse_closure_notice_detail_page(html)
        if notice.detail_text:
            notice.tags = merge_closure_tags(notice.tags, classify_closure_notice_tags(notice.detail_text))

    warnings: List[str] = []
    if missing:
        warnings.append(f"{missing} closure detail page(s) were not found in the raw archive.")
    return ClosureParseResult(notices=notices, warnings=warnings)


__all__ = [
    "ForestryParseResult",
    "ClosureParseResult",
    "parse_forestry_archive",
    "parse_closures_archive",
]
