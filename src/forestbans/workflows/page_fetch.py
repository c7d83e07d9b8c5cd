"""Fetch-by-URL capability used by the scraper.

Two interchangeable backends return a ``PageResponse``:

* ``AiohttpPageFetcher`` - plain HTTP, optionally through an egress proxy.
* ``PlaywrightPageFetcher`` - headless Chromium for bot-protected pages
  (only when Playwright is installed).

``CachedPageFetcher`` wraps either backend, reads through a
``RawPageCache`` and classifies bad responses into typed failures.
Challenge interstitials and error pages are never written to the cache.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set

import aiohttp

from .errors import BotChallengeError, NonRetryableFetchError, RetryableFetchError
from .forestry_parser import is_cloudflare_challenge_html
from .html_normalize import decode_bytes_auto
from .pipeline_config import (
    DEFAULT_ACCEPT_LANGUAGE,
    DEFAULT_FETCH_TIMEOUT,
    DEFAULT_USER_AGENT,
    HDR_ACCEPT_LANGUAGE,
    HDR_USER_AGENT,
)
from .proxy_retry import ProxyId, ProxyRotationSettings
from .raw_page_cache import RawPageCache

logger = logging.getLogger(__name__)

try:  # Playwright is optional; fallback gracefully if unavailable
    from playwright.async_api import async_playwright  # type: ignore
except Exception:  # pragma: no cover - handled at runtime
    async_playwright = None  # type: ignore

RETRYABLE_STATUSES = {408, 425, 429}


@dataclass
class PageResponse:
    status: int
    final_url: str
    html: str
    from_cache: bool = False


class AiohttpPageFetcher:
    """Plain HTTP fetcher with per-request timeout and optional proxy."""

    def __init__(
        self,
        proxy: Optional[ProxyRotationSettings] = None,
        *,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.proxy = proxy
        self.timeout = timeout
        self.user_agent = user_agent
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={HDR_USER_AGENT: self.user_agent, HDR_ACCEPT_LANGUAGE: DEFAULT_ACCEPT_LANGUAGE}
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "AiohttpPageFetcher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def fetch(self, url: str, proxy_id: ProxyId = None) -> PageResponse:
        session = await self._get_session()
        request_kwargs: Dict[str, Any] = {}
        if proxy_id is not None and self.proxy is not None:
            request_kwargs["proxy"] = self.proxy.proxy_url(proxy_id)
            if self.proxy.username or self.proxy.password:
                request_kwargs["proxy_auth"] = aiohttp.BasicAuth(
                    self.proxy.username or "",
                    self.proxy.password or "",
                )
        async with session.get(
            url,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            **request_kwargs,
        ) as resp:
            raw_bytes = await resp.read()
            html = decode_bytes_auto(raw_bytes, resp.headers)
            return PageResponse(status=resp.status, final_url=str(resp.url), html=html)


class PlaywrightPageFetcher:
    """Headless Chromium fetcher that waits out bot-protection interstitials."""

    def __init__(
        self,
        proxy: Optional[ProxyRotationSettings] = None,
        *,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
        ready_timeout: float = 30.0,
        poll_interval: float = 1.0,
    ) -> None:
        if async_playwright is None:
            raise RuntimeError("Playwright is not installed; install the 'browser' extra")
        self.proxy = proxy
        self.timeout = timeout
        self.user_agent = user_agent
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval

    async def close(self) -> None:
        return None

    async def __aenter__(self) -> "PlaywrightPageFetcher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def _wait_for_ready_content(self, page) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.ready_timeout
        content = await page.content()
        while is_cloudflare_challenge_html(content) and loop.time() < deadline:
            await page.wait_for_timeout(int(self.poll_interval * 1000))
            content = await page.content()
        return content

    async def fetch(self, url: str, proxy_id: ProxyId = None) -> PageResponse:
        assert async_playwright is not None  # For type checker
        launch_kwargs: Dict[str, Any] = {"headless": True}
        if proxy_id is not None and self.proxy is not None:
            launch_kwargs["proxy"] = {
                "server": self.proxy.proxy_url(proxy_id),
                "username": self.proxy.username or "",
                "password": self.proxy.password or "",
            }
        async with async_playwright() as p:  # type: ignore
            browser = await p.chromium.launch(**launch_kwargs)
            context = await browser.new_context(
                user_agent=self.user_agent,
                viewport={"width": 1920, "height": 1080},
                locale="en-AU",
                java_script_enabled=True,
            )
            page = await context.new_page()
            try:
                response = await page.goto(
                    url,
                    timeout=int(self.timeout * 1000),
                    wait_until="domcontentloaded",
                )
                content = await self._wait_for_ready_content(page)
                status = response.status if response else 0
                final_url = page.url or url
            finally:
                await context.close()
                await browser.close()
        return PageResponse(status=status, final_url=final_url, html=content)


def raise_for_page(url: str, response: PageResponse) -> None:
    """Translate an unusable response into a typed failure."""

    if is_cloudflare_challenge_html(response.html):
        raise BotChallengeError(f"Bot challenge served for {url}", url=url, status=response.status)
    status = response.status
    if status in RETRYABLE_STATUSES or status >= 500 or status in (0, 407):
        raise RetryableFetchError(f"HTTP {status} for {url}", url=url, status=status)
    if status >= 400:
        raise NonRetryableFetchError(f"HTTP {status} for {url}")


class CachedPageFetcher:
    """Read-through cache in front of a backend fetcher.

    Pages recorded by this fetcher are served regardless of ``force_refresh``
    or the TTL, so a retried attempt only fetches what an earlier attempt
    did not. With ``force_refresh`` older entries are ignored.
    """

    def __init__(self, backend: Any, cache: RawPageCache, *, force_refresh: bool = False) -> None:
        self.backend = backend
        self.cache = cache
        self.force_refresh = force_refresh
        self._recorded: Set[str] = set()

    async def fetch(self, url: str, proxy_id: ProxyId = None) -> PageResponse:
        if url in self._recorded:
            entry = self.cache.peek(url)
        elif not self.force_refresh:
            entry = self.cache.get(url)
        else:
            entry = None
        if entry is not None:
            logger.debug("Cache hit for %s", url)
            return PageResponse(status=200, final_url=entry.final_url, html=entry.html, from_cache=True)
        response = await self.backend.fetch(url, proxy_id)
        raise_for_page(url, response)
        self.cache.record(url, response.final_url, response.html)
        self._recorded.add(url)
        return response


def build_backend(kind: str, proxy: Optional[ProxyRotationSettings], *, timeout: float):
    """Return the fetch backend named by ``kind`` (``aiohttp`` or ``playwright``)."""

    normalized = (kind or "aiohttp").strip().lower()
    if normalized == "playwright":
        if async_playwright is None:
            logger.warning("Playwright requested but not installed; using aiohttp")
        else:
            return PlaywrightPageFetcher(proxy, timeout=timeout)
    return AiohttpPageFetcher(proxy, timeout=timeout)


__all__ = [
    "PageResponse",
    "AiohttpPageFetcher",
    "PlaywrightPageFetcher",
    "CachedPageFetcher",
    "raise_for_page",
    "build_backend",
]
