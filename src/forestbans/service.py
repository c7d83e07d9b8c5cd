"""In-memory served snapshot with single-flight refresh and stale fallback.

``LiveForestDataService`` moves between three states::

    EMPTY -> REFRESHING -> READY
    READY -> REFRESHING   (forced refresh or TTL expiry)
    REFRESHING -> READY   (success, or failure with the last good snapshot marked stale)

At most one refresh runs at a time; callers arriving while it runs await the
same task. A cancelled refresh leaves the previous snapshot untouched.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import os
import tempfile
import time
from dataclasses import replace
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from forestbans.core import K_AREA_NAME, K_BAN_SCOPE, K_DISTANCE_KM, K_FOREST_NAME, K_ID, K_NEAREST_LEGAL_SPOT
from forestbans.workflows.models import (
    BanStatus,
    ClosureStatus,
    ForestSnapshot,
    PersistedForestPoint,
    SolidFuelBanScope,
)
from forestbans.workflows.pipeline import ForestDataPipeline, PipelineResult, PipelineSettings
from forestbans.workflows.pipeline_utils import dedupe_preserving_order

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

RefreshFn = Callable[[bool], Awaitable[PipelineResult]]
Location = Tuple[float, float]


class ServiceState(str, Enum):
    EMPTY = "EMPTY"
    REFRESHING = "REFRESHING"
    READY = "READY"


def haversine_distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = math.sin(d_lat / 2) ** 2 + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def campfire_permitted_in_camps(forest: PersistedForestPoint) -> bool:
    if forest.ban_status is BanStatus.NOT_BANNED:
        return True
    # Fires banned outside designated campgrounds are still permitted inside them
    return forest.ban_status is BanStatus.BANNED and forest.ban_scope is SolidFuelBanScope.OUTSIDE_CAMPS


def is_legal_campfire_spot(forest: PersistedForestPoint) -> bool:
    return (
        campfire_permitted_in_camps(forest)
        and forest.total_fire_ban_status is not BanStatus.BANNED
        and forest.closure_status is not ClosureStatus.CLOSED
    )


def find_nearest_legal_spot(forests: List[PersistedForestPoint]) -> Optional[Dict[str, Any]]:
    """Closest forest where a campfire is permitted in its designated campgrounds.

    Excludes forests under a total fire ban or fully closed.
    """

    nearest: Optional[PersistedForestPoint] = None
    for forest in forests:
        if forest.distance_km is None or not is_legal_campfire_spot(forest):
            continue
        if nearest is None or forest.distance_km < nearest.distance_km:
            nearest = forest
    if nearest is None:
        return None
    return {
        K_ID: nearest.id,
        K_FOREST_NAME: nearest.forest_name,
        K_AREA_NAME: nearest.areas[0].area_name if nearest.areas else None,
        K_BAN_SCOPE: nearest.ban_scope.value,
        K_DISTANCE_KM: nearest.distance_km,
    }


def read_snapshot(path: Path) -> ForestSnapshot:
    return ForestSnapshot.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))


def write_snapshot(path: Path, snapshot: ForestSnapshot) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(snapshot.to_dict(), handle, ensure_ascii=False, indent=2)
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class LiveForestDataService:
    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        *,
        refresh: Optional[RefreshFn] = None,
        route_service: Any = None,
        now: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or PipelineSettings.from_env()
        self._refresh_fn = refresh or self._run_pipeline
        self._route_service = route_service
        self._now = now
        self._state = ServiceState.EMPTY
        self._last_good: Optional[ForestSnapshot] = None
        self._served: Optional[ForestSnapshot] = None
        self._refreshed_at: Optional[float] = None
        self._inflight: Optional[asyncio.Task] = None
        self._swap_lock = asyncio.Lock()
        self._load_persisted_snapshot()

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def snapshot(self) -> Optional[ForestSnapshot]:
        return self._served

    def _load_persisted_snapshot(self) -> None:
        path = self.settings.snapshot_path
        if path is None or not Path(path).exists():
            return
        try:
            loaded = read_snapshot(path)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring saved snapshot %s: %s", path, exc)
            return
        # Loaded data has no refresh time, so the first request refreshes it.
        self._last_good = self._served = loaded
        self._state = ServiceState.READY
        logger.info("Loaded saved snapshot from %s (%d forests)", path, len(loaded.forests))

    async def _run_pipeline(self, force_refresh: bool) -> PipelineResult:
        return await ForestDataPipeline(self.settings, now=self._now).run(force_refresh=force_refresh)

    def is_fresh(self) -> bool:
        ttl = self.settings.scrape_ttl_ms
        if self._served is None or self._refreshed_at is None or ttl <= 0:
            return False
        return (self._now() - self._refreshed_at) * 1000.0 < ttl

    async def refresh(self, *, force_refresh: bool = False) -> ForestSnapshot:
        """Start a refresh, or join the one already running."""

        task = self._inflight
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._refresh_once(force_refresh))
            self._inflight = task
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if not task.cancelled() or self._served is None:
                raise
            logger.warning("Refresh was cancelled; keeping snapshot from %s", self._served.fetched_at)
            return self._served

    def cancel_refresh(self) -> bool:
        task = self._inflight
        if task is None or task.done():
            return False
        return task.cancel()

    async def _refresh_once(self, force_refresh: bool) -> ForestSnapshot:
        self._state = ServiceState.REFRESHING
        logger.info("Refreshing forest snapshot (force_refresh=%s)", force_refresh)
        try:
            result = await self._refresh_fn(force_refresh)
        except asyncio.CancelledError:
            self._state = ServiceState.READY if self._served is not None else ServiceState.EMPTY
            raise
        except Exception as exc:
            if self._last_good is None:
                self._state = ServiceState.EMPTY
                raise
            logger.warning("Refresh failed; serving stale snapshot from %s: %s", self._last_good.fetched_at, exc)
            stale = replace(
                self._last_good,
                stale=True,
                warnings=dedupe_preserving_order(list(self._last_good.warnings) + [f"Refresh failed: {exc}"]),
            )
            async with self._swap_lock:
                self._served = stale
                self._state = ServiceState.READY
            return stale

        snapshot = ForestSnapshot(
            forests=list(result.forests),
            fetched_at=result.fetched_at,
            stale=False,
            warnings=dedupe_preserving_order(list(result.warnings)),
        )
        async with self._swap_lock:
            self._last_good = self._served = snapshot
            self._refreshed_at = self._now()
            self._state = ServiceState.READY
        logger.info("Snapshot refreshed: %d forests, %d warnings", len(snapshot.forests), len(snapshot.warnings))
        if self.settings.snapshot_path is not None:
            try:
                write_snapshot(self.settings.snapshot_path, snapshot)
            except OSError as exc:
                logger.warning("Could not save snapshot to %s: %s", self.settings.snapshot_path, exc)
        return snapshot

    async def _distances(
        self, forests: List[PersistedForestPoint], origin: Location
    ) -> Tuple[Dict[str, float], List[str]]:
        distances = {
            forest.id: haversine_distance_km(origin[0], origin[1], forest.latitude, forest.longitude)
            for forest in forests
            if forest.has_coordinates
        }
        if self._route_service is None or not distances:
            return distances, []
        routable = [(forest.id, forest.latitude, forest.longitude) for forest in forests if forest.has_coordinates]
        try:
            routed = await self._route_service.driving_distances(origin, routable)
        except Exception as exc:
            logger.warning("Driving route lookup failed: %s", exc)
            return distances, [f"Driving route lookup failed: {exc}"]
        for forest_id, km in (routed or {}).items():
            if km is not None and forest_id in distances:
                distances[forest_id] = float(km)
        return distances, []

    async def get_forest_data(
        self,
        *,
        force_refresh: bool = False,
        user_location: Optional[Location] = None,
    ) -> Dict[str, Any]:
        """Return ``{forests, fetchedAt, stale, warnings}`` (plus ``nearestLegalSpot`` with a location)."""

        if force_refresh or not self.is_fresh():
            snapshot = await self.refresh(force_refresh=force_refresh)
        else:
            snapshot = self._served

        if user_location is None:
            return snapshot.to_dict()

        distances, route_warnings = await self._distances(snapshot.forests, user_location)
        forests = [replace(forest, distance_km=distances.get(forest.id)) for forest in snapshot.forests]
        served = replace(
            snapshot,
            forests=forests,
            warnings=dedupe_preserving_order(list(snapshot.warnings) + route_warnings),
            nearest_legal_spot=find_nearest_legal_spot(forests),
        )
        payload = served.to_dict()
        payload.setdefault(K_NEAREST_LEGAL_SPOT, None)
        return payload


__all__ = [
    "ServiceState",
    "LiveForestDataService",
    "haversine_distance_km",
    "find_nearest_legal_spot",
    "is_legal_campfire_spot",
    "campfire_permitted_in_camps",
    "read_snapshot",
    "write_snapshot",
]
