"""Fetch stages that populate the raw page caches.

Each method is one attempt through one egress proxy and is meant to be
driven by :func:`~forestbans.workflows.proxy_retry.run_with_proxy_retries`.
Pages fetched before a failure stay in the cache, so the next attempt only
fetches what is still missing or stale.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional, Sequence, Tuple

import aiohttp

from .errors import NonRetryableFetchError, PageParseError, RetryableFetchError
from .forestry_parser import parse_main_fire_ban_page
from .closure_parser import parse_closure_notices_page
from .page_fetch import PageResponse
from .pipeline_config import (
    CLOSURES_URL,
    DEFAULT_PAGE_CONCURRENCY,
    FORESTRY_DIRECTORY_URLS,
    FORESTRY_ENTRY_URL,
)
from .proxy_retry import ProxyId

logger = logging.getLogger(__name__)


async def _fetch_all(
    fetcher: Any,
    urls: Sequence[str],
    proxy_id: ProxyId,
    concurrency: int,
) -> List[Tuple[str, Optional[PageResponse], Optional[Exception]]]:
    sem = asyncio.Semaphore(max(1, concurrency))

    async def one(url: str) -> Tuple[str, Optional[PageResponse], Optional[Exception]]:
        async with sem:
            try:
                return url, await fetcher.fetch(url, proxy_id), None
            except Exception as exc:
                return url, None, exc

    return list(await asyncio.gather(*(one(url) for url in urls)))


class ForestryScraper:
    def __init__(
        self,
        fetcher: Any,
        *,
        closure_fetcher: Any = None,
        entry_url: str = FORESTRY_ENTRY_URL,
        directory_urls: Sequence[str] = FORESTRY_DIRECTORY_URLS,
        closures_url: str = CLOSURES_URL,
        concurrency: int = DEFAULT_PAGE_CONCURRENCY,
    ) -> None:
        self.fetcher = fetcher
        self.closure_fetcher = closure_fetcher or fetcher
        self.entry_url = entry_url
        self.directory_urls = tuple(directory_urls)
        self.closures_url = closures_url
        self.concurrency = concurrency

    async def fetch_forestry_pages(self, proxy_id: ProxyId = None) -> List[str]:
        """Fetch the landing page, every area page and the directory.

        Raises when the landing page or any area page fails transiently, so
        the orchestrator retries through another proxy. Returns warnings.
        """

        main = await self.fetcher.fetch(self.entry_url, proxy_id)
        areas = parse_main_fire_ban_page(main.html, self.entry_url)
        if not areas:
            raise PageParseError(f"No fire ban areas were found on {self.entry_url}")

        area_urls = [area.area_url for area in areas if area.area_url]
        results = await _fetch_all(self.fetcher, area_urls, proxy_id, self.concurrency)
        retryable = [exc for _, _, exc in results if _is_transient(exc)]
        failed = [(url, exc) for url, _, exc in results if exc is not None]
        for url, exc in failed:
            logger.warning("Area page %s failed: %s", url, exc)
        if retryable:
            raise RetryableFetchError(
                f"{len(retryable)} of {len(area_urls)} area page(s) failed; last error: {retryable[-1]}"
            )
        unexpected = [exc for _, exc in failed if not isinstance(exc, NonRetryableFetchError)]
        if unexpected:
            raise unexpected[0]

        warnings: List[str] = []
        if failed:
            warnings.append(f"{len(failed)} area page(s) could not be fetched.")
        warnings.extend(await self._fetch_directory(proxy_id))
        return warnings

    async def _fetch_directory(self, proxy_id: ProxyId) -> List[str]:
        errors: List[str] = []
        for url in self.directory_urls:
            try:
                await self.fetcher.fetch(url, proxy_id)
                return []
            except Exception as exc:
                if not _is_fetch_failure(exc):
                    raise
                logger.warning("Forest directory %s failed: %s", url, exc)
                errors.append(str(exc))
        return [f"Could not fetch the forest directory page ({'; '.join(errors) or 'no URL configured'})."]

    async def fetch_closure_pages(self, proxy_id: ProxyId = None) -> List[str]:
        """Fetch the closure list and every notice detail page; returns warnings."""

        listing = await self.closure_fetcher.fetch(self.closures_url, proxy_id)
        notices = parse_closure_notices_page(listing.html, self.closures_url)
        detail_urls = list(dict.fromkeys(notice.detail_url for notice in notices))
        results = await _fetch_all(self.closure_fetcher, detail_urls, proxy_id, self.concurrency)
        failed = [(url, exc) for url, _, exc in results if exc is not None]
        for url, exc in failed:
            if not _is_fetch_failure(exc):
                raise exc
            logger.warning("Closure detail page %s failed: %s", url, exc)
        if failed:
            return [f"{len(failed)} closure detail page(s) could not be fetched."]
        return []


def _is_transient(exc: Optional[BaseException]) -> bool:
    return isinstance(exc, (RetryableFetchError, aiohttp.ClientError, asyncio.TimeoutError, OSError))


def _is_fetch_failure(exc: Optional[BaseException]) -> bool:
    return _is_transient(exc) or isinstance(exc, NonRetryableFetchError)


__all__ = ["ForestryScraper"]
