"""One pipeline run: concurrent source stages, a barrier, then parse and merge.

The fire ban areas source is mandatory: if every proxy fails for it, the run
fails. Closures and the total fire ban feed are optional and degrade to
warnings. Parsing always reads from the raw page archives, so pages cached
by earlier (even failed) attempts are still used.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional

from .archive_parse import parse_closures_archive, parse_forestry_archive
from .errors import ArchiveError
from .models import PersistedForestPoint
from .page_fetch import CachedPageFetcher, build_backend
from .pipeline_config import (
    CLOSURE_CACHE_PATH,
    DEFAULT_BACKOFF_INITIAL,
    DEFAULT_BACKOFF_MAX,
    DEFAULT_FETCH_TIMEOUT,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_PAGE_CONCURRENCY,
    DEFAULT_RETRY_BUDGET,
    DEFAULT_SCRAPE_TTL_MS,
    RAW_CACHE_PATH,
)
from .pipeline_utils import _safe_float, _safe_int, dedupe_preserving_order, iso_from_epoch
from .proxy_retry import (
    AttemptRecord,
    ProxyRotationSettings,
    RetryPolicy,
    _load_proxy_rotation_from_env,
    proxy_candidates,
    run_with_proxy_retries,
)
from .raw_page_cache import RawPageCache, RawPagesArchive, read_raw_pages_archive
from .reconciler import build_forest_points
from .scraper import ForestryScraper
from .total_fire_ban import TotalFireBanClient, TotalFireBanSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineSettings:
    """Configuration for a pipeline run."""

    scrape_ttl_ms: int = DEFAULT_SCRAPE_TTL_MS
    raw_cache_path: Optional[Path] = RAW_CACHE_PATH
    closure_cache_path: Optional[Path] = CLOSURE_CACHE_PATH
    snapshot_path: Optional[Path] = None
    fetch_timeout: float = DEFAULT_FETCH_TIMEOUT
    retry_budget: float = DEFAULT_RETRY_BUDGET
    backoff_initial: float = DEFAULT_BACKOFF_INITIAL
    backoff_max: float = DEFAULT_BACKOFF_MAX
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    fetch_backend: str = "aiohttp"
    concurrency: int = DEFAULT_PAGE_CONCURRENCY
    proxy: Optional[ProxyRotationSettings] = None

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        ttl = _safe_int(os.getenv("FORESTBANS_SCRAPE_TTL_MS"), DEFAULT_SCRAPE_TTL_MS)
        snapshot = os.getenv("FORESTBANS_SNAPSHOT_PATH", "").strip()
        return cls(
            scrape_ttl_ms=max(0, ttl if ttl is not None else DEFAULT_SCRAPE_TTL_MS),
            raw_cache_path=Path(os.getenv("FORESTBANS_RAW_CACHE_PATH") or RAW_CACHE_PATH),
            closure_cache_path=Path(os.getenv("FORESTBANS_CLOSURE_CACHE_PATH") or CLOSURE_CACHE_PATH),
            snapshot_path=Path(snapshot) if snapshot else None,
            fetch_timeout=_safe_float(os.getenv("FORESTBANS_FETCH_TIMEOUT"), DEFAULT_FETCH_TIMEOUT),
            retry_budget=_safe_float(os.getenv("FORESTBANS_RETRY_BUDGET"), DEFAULT_RETRY_BUDGET),
            backoff_initial=_safe_float(os.getenv("FORESTBANS_BACKOFF_INITIAL"), DEFAULT_BACKOFF_INITIAL),
            backoff_max=_safe_float(os.getenv("FORESTBANS_BACKOFF_MAX"), DEFAULT_BACKOFF_MAX),
            max_attempts=_safe_int(os.getenv("FORESTBANS_MAX_ATTEMPTS"), DEFAULT_MAX_ATTEMPTS) or DEFAULT_MAX_ATTEMPTS,
            fetch_backend=os.getenv("FORESTBANS_FETCH_BACKEND", "aiohttp").strip() or "aiohttp",
            concurrency=_safe_int(os.getenv("FORESTBANS_CONCURRENCY"), DEFAULT_PAGE_CONCURRENCY)
            or DEFAULT_PAGE_CONCURRENCY,
            proxy=_load_proxy_rotation_from_env(),
        )

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            backoff_initial=self.backoff_initial,
            backoff_max=self.backoff_max,
            max_total_seconds=self.retry_budget,
        )


@dataclass
class PipelineResult:
    forests: List[PersistedForestPoint]
    fetched_at: str
    warnings: List[str] = field(default_factory=list)
    attempts: List[AttemptRecord] = field(default_factory=list)


def reconcile_archives(
    forestry_archive: RawPagesArchive,
    closure_archive: Optional[RawPagesArchive] = None,
    *,
    total_fire_ban: Optional[TotalFireBanSnapshot] = None,
    now: float,
) -> PipelineResult:
    """Parse archived pages and merge them into forest points (no network)."""

    forestry = parse_forestry_archive(forestry_archive)
    warnings = list(forestry.warnings)
    notices = []
    if closure_archive is not None:
        closures = parse_closures_archive(closure_archive)
        notices = closures.notices
        warnings.extend(closures.warnings)
    if total_fire_ban is not None:
        warnings.extend(total_fire_ban.warnings)
    forests, merge_warnings = build_forest_points(
        forestry.areas,
        directory=forestry.directory,
        closures=notices,
        total_fire_ban=total_fire_ban,
        now=now,
    )
    warnings.extend(merge_warnings)
    return PipelineResult(forests=forests, fetched_at=iso_from_epoch(now), warnings=dedupe_preserving_order(warnings))


def parse_saved_archives(
    forestry_path: Path,
    closure_path: Optional[Path] = None,
    *,
    now: Optional[float] = None,
) -> PipelineResult:
    """Offline entry point: parse archive files written by an earlier scrape."""

    forestry_archive = read_raw_pages_archive(forestry_path)
    closure_archive = None
    warnings: List[str] = []
    if closure_path is not None:
        try:
            closure_archive = read_raw_pages_archive(closure_path)
        except (ArchiveError, OSError) as exc:
            warnings.append(f"Closure archive {closure_path} could not be read: {exc}")
    result = reconcile_archives(forestry_archive, closure_archive, now=time.time() if now is None else now)
    result.warnings = dedupe_preserving_order(warnings + result.warnings)
    return result


class ForestDataPipeline:
    """Runs the scrape stages concurrently and reconciles the results."""

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        *,
        backend: Any = None,
        total_fire_ban_client: Optional[TotalFireBanClient] = None,
        now: Callable[[], float] = time.time,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self.settings = settings or PipelineSettings.from_env()
        self._backend = backend
        self._tfb_client = total_fire_ban_client
        self._now = now
        self._sleep = sleep

    async def _closure_stage(self, scraper: ForestryScraper, history: List[AttemptRecord]) -> List[str]:
        try:
            return await run_with_proxy_retries(
                scraper.fetch_closure_pages,
                proxy_candidates(self.settings.proxy),
                self.settings.retry_policy(),
                label="closures",
                history=history,
                sleep=self._sleep,
            )
        except Exception as exc:
            logger.warning("Closure scrape failed: %s", exc)
            return [f"Closure notices could not be refreshed: {exc}"]

    async def _total_fire_ban_stage(self) -> Optional[TotalFireBanSnapshot]:
        client = self._tfb_client or TotalFireBanClient()
        try:
            return await asyncio.to_thread(client.fetch_current_snapshot)
        except Exception as exc:
            logger.warning("Total fire ban feed failed: %s", exc)
            return TotalFireBanSnapshot(
                fetched_at=iso_from_epoch(self._now()),
                warnings=[f"Total Fire Ban status could not be loaded: {exc}"],
            )

    async def run(self, *, force_refresh: bool = False) -> PipelineResult:
        settings = self.settings
        # Persisted once on close
        forestry_cache = RawPageCache(
            settings.raw_cache_path, settings.scrape_ttl_ms, now=self._now, autoflush=False
        ).open()
        closure_cache = RawPageCache(
            settings.closure_cache_path, settings.scrape_ttl_ms, now=self._now, autoflush=False
        ).open()
        backend = self._backend or build_backend(settings.fetch_backend, settings.proxy, timeout=settings.fetch_timeout)
        history: List[AttemptRecord] = []
        try:
            scraper = ForestryScraper(
                CachedPageFetcher(backend, forestry_cache, force_refresh=force_refresh),
                closure_fetcher=CachedPageFetcher(backend, closure_cache, force_refresh=force_refresh),
                concurrency=settings.concurrency,
            )
            forestry_stage = run_with_proxy_retries(
                scraper.fetch_forestry_pages,
                proxy_candidates(settings.proxy),
                settings.retry_policy(),
                label="forestry",
                history=history,
                sleep=self._sleep,
            )
            forestry_result, closure_warnings, tfb_snapshot = await asyncio.gather(
                forestry_stage,
                self._closure_stage(scraper, history),
                self._total_fire_ban_stage(),
                return_exceptions=True,
            )
            if isinstance(forestry_result, BaseException):
                raise forestry_result
            for outcome in (closure_warnings, tfb_snapshot):
                if isinstance(outcome, BaseException):
                    raise outcome

            result = reconcile_archives(
                forestry_cache.export_all_pages(),
                closure_cache.export_all_pages(),
                total_fire_ban=tfb_snapshot,
                now=self._now(),
            )
        finally:
            forestry_cache.close()
            closure_cache.close()
            if self._backend is None:
                await backend.close()

        result.warnings = dedupe_preserving_order(list(forestry_result) + list(closure_warnings) + result.warnings)
        result.attempts = history
        logger.info("Pipeline produced %d forest(s) with %d warning(s)", len(result.forests), len(result.warnings))
        return result


async def run_pipeline(settings: Optional[PipelineSettings] = None, *, force_refresh: bool = False) -> PipelineResult:
    """Top-level run; a failure of the mandatory source propagates to the caller."""

    return await ForestDataPipeline(settings).run(force_refresh=force_refresh)


__all__ = [
    "PipelineSettings",
    "PipelineResult",
    "ForestDataPipeline",
    "reconcile_archives",
    "parse_saved_archives",
    "run_pipeline",
]
