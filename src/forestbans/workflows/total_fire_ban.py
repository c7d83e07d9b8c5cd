"""Total fire ban feed from the NSW RFS fire danger ratings service.

Two JSON documents are combined: the per-fire-weather-area ratings (which
carry ``tobanToday``) and a GeoJSON of the area boundaries. A forest's total
fire ban status comes from a point-in-polygon lookup of its coordinates.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from .models import BanStatus
from .pipeline_config import (
    DEFAULT_TFB_TIMEOUT,
    TOTAL_FIRE_BAN_GEOJSON_URL,
    TOTAL_FIRE_BAN_RATINGS_URL,
    TOTAL_FIRE_BAN_STATUS_TEXT,
)
from .pipeline_utils import epoch_from_iso, normalize_text, utc_now_iso

logger = logging.getLogger(__name__)

Point = Tuple[float, float]  # (longitude, latitude), GeoJSON order
Ring = List[Point]
Polygon = List[Ring]

LOOKUP_MATCHED = "MATCHED"
LOOKUP_NO_COORDINATES = "NO_COORDINATES"
LOOKUP_NO_AREA_MATCH = "NO_AREA_MATCH"
LOOKUP_MISSING_AREA_STATUS = "MISSING_AREA_STATUS"
LOOKUP_DATA_UNAVAILABLE = "DATA_UNAVAILABLE"


@dataclass(frozen=True)
class TotalFireBanAreaStatus:
    area_id: str
    area_name: str
    status: BanStatus
    status_text: str
    raw_status_text: str


@dataclass
class TotalFireBanGeoArea:
    area_id: str
    area_name: str
    polygons: List[Polygon]
    bounds: Tuple[float, float, float, float]  # min_lon, min_lat, max_lon, max_lat

    def contains(self, lon: float, lat: float) -> bool:
        min_lon, min_lat, max_lon, max_lat = self.bounds
        if not (min_lon <= lon <= max_lon and min_lat <= lat <= max_lat):
            return False
        return any(point_in_polygon((lon, lat), polygon) for polygon in self.polygons)


@dataclass
class TotalFireBanSnapshot:
    fetched_at: str
    last_updated_iso: Optional[str] = None
    area_statuses: List[TotalFireBanAreaStatus] = field(default_factory=list)
    geo_areas: List[TotalFireBanGeoArea] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class TotalFireBanLookup:
    status: BanStatus
    status_text: str
    lookup_code: str
    fire_weather_area_name: Optional[str] = None
    raw_status_text: Optional[str] = None


def _normalize_area_name(value: str) -> str:
    lowered = normalize_text(value).lower()
    lowered = re.sub(r"[&/]", " and ", lowered)
    lowered = re.sub(r"[^a-z0-9\s-]", " ", lowered)
    return normalize_text(lowered)


def parse_total_fire_ban_status(value: Optional[str]) -> BanStatus:
    normalized = normalize_text(value).lower()
    if normalized in {"yes", "y", "true", "1"}:
        return BanStatus.BANNED
    if normalized in {"no", "n", "false", "0"}:
        return BanStatus.NOT_BANNED
    return BanStatus.UNKNOWN


def _area_id(value: Any) -> str:
    if isinstance(value, bool):
        return ""
    if isinstance(value, (int, float)):
        return str(int(value)) if float(value).is_integer() else str(value)
    if isinstance(value, str):
        return normalize_text(value)
    return ""


def parse_ratings_payload(payload: Any) -> Tuple[List[TotalFireBanAreaStatus], Optional[str]]:
    if not isinstance(payload, dict):
        return [], None
    rows = payload.get("fireWeatherAreaRatings")
    statuses: List[TotalFireBanAreaStatus] = []
    for row in rows if isinstance(rows, list) else []:
        if not isinstance(row, dict):
            continue
        area_id = _area_id(row.get("areaId"))
        area_name = normalize_text(row.get("areaName")) if isinstance(row.get("areaName"), str) else ""
        if not area_id or not area_name:
            continue
        raw = normalize_text(row.get("tobanToday")) if isinstance(row.get("tobanToday"), str) else ""
        status = parse_total_fire_ban_status(raw)
        statuses.append(
            TotalFireBanAreaStatus(area_id, area_name, status, TOTAL_FIRE_BAN_STATUS_TEXT[status.value], raw)
        )
    last_updated = payload.get("lastUpdatedIso")
    if not isinstance(last_updated, str) or epoch_from_iso(last_updated) is None:
        last_updated = None
    return statuses, last_updated


def _parse_ring(raw: Any) -> Optional[Ring]:
    if not isinstance(raw, list):
        return None
    ring: Ring = []
    for point in raw:
        if not isinstance(point, (list, tuple)) or len(point) < 2:
            return None
        lon, lat = point[0], point[1]
        if isinstance(lon, bool) or isinstance(lat, bool):
            return None
        if not isinstance(lon, (int, float)) or not isinstance(lat, (int, float)):
            return None
        ring.append((float(lon), float(lat)))
    # A closed ring needs at least four positions
    return ring if len(ring) >= 4 else None


def _parse_polygon(raw: Any) -> Optional[Polygon]:
    if not isinstance(raw, list) or not raw:
        return None
    polygon: Polygon = []
    for raw_ring in raw:
        ring = _parse_ring(raw_ring)
        if ring is None:
            return None
        polygon.append(ring)
    return polygon


def parse_geojson_payload(payload: Any) -> List[TotalFireBanGeoArea]:
    if not isinstance(payload, dict) or not isinstance(payload.get("features"), list):
        return []
    areas: Dict[str, TotalFireBanGeoArea] = {}
    for feature in payload["features"]:
        if not isinstance(feature, dict):
            continue
        properties = feature.get("properties") if isinstance(feature.get("properties"), dict) else {}
        geometry = feature.get("geometry") if isinstance(feature.get("geometry"), dict) else {}
        area_id = _area_id(properties.get("FIREAREAID"))
        area_name = normalize_text(properties.get("FIREAREA")) if isinstance(properties.get("FIREAREA"), str) else ""
        if not area_id or not area_name:
            continue
        kind = geometry.get("type")
        if kind == "Polygon":
            polygon = _parse_polygon(geometry.get("coordinates"))
            polygons = [polygon] if polygon else []
        elif kind == "MultiPolygon":
            raw = geometry.get("coordinates")
            parsed = [_parse_polygon(item) for item in raw] if isinstance(raw, list) else []
            polygons = [polygon for polygon in parsed if polygon]
        else:
            continue
        if not polygons:
            continue
        points = [point for polygon in polygons for ring in polygon for point in ring]
        bounds = (
            min(p[0] for p in points),
            min(p[1] for p in points),
            max(p[0] for p in points),
            max(p[1] for p in points),
        )
        existing = areas.get(area_id)
        if existing is not None:
            existing.polygons.extend(polygons)
            existing.bounds = (
                min(existing.bounds[0], bounds[0]),
                min(existing.bounds[1], bounds[1]),
                max(existing.bounds[2], bounds[2]),
                max(existing.bounds[3], bounds[3]),
            )
            continue
        areas[area_id] = TotalFireBanGeoArea(area_id, area_name, polygons, bounds)
    return sorted(areas.values(), key=lambda area: area.area_name)


def _on_segment(point: Point, start: Point, end: Point) -> bool:
    cross = (point[1] - start[1]) * (end[0] - start[0]) - (point[0] - start[0]) * (end[1] - start[1])
    if abs(cross) > 1e-12:
        return False
    dot = (point[0] - start[0]) * (end[0] - start[0]) + (point[1] - start[1]) * (end[1] - start[1])
    if dot < 0:
        return False
    return dot <= (end[0] - start[0]) ** 2 + (end[1] - start[1]) ** 2


def point_in_ring(point: Point, ring: Sequence[Point]) -> bool:
    """Even-odd ray cast; points on an edge count as inside."""

    inside = False
    lon, lat = point
    previous = ring[-1]
    for current in ring:
        if _on_segment(point, previous, current):
            return True
        if (current[1] > lat) != (previous[1] > lat):
            crossing = (previous[0] - current[0]) * (lat - current[1]) / (previous[1] - current[1]) + current[0]
            if lon < crossing:
                inside = not inside
        previous = current
    return inside


def point_in_polygon(point: Point, polygon: Polygon) -> bool:
    if not polygon or not point_in_ring(point, polygon[0]):
        return False
    return not any(point_in_ring(point, hole) for hole in polygon[1:])


def lookup_status_by_coordinates(
    snapshot: Optional[TotalFireBanSnapshot],
    latitude: Optional[float],
    longitude: Optional[float],
) -> TotalFireBanLookup:
    unknown_text = TOTAL_FIRE_BAN_STATUS_TEXT[BanStatus.UNKNOWN.value]
    if latitude is None or longitude is None:
        return TotalFireBanLookup(BanStatus.UNKNOWN, unknown_text, LOOKUP_NO_COORDINATES)
    if snapshot is None or not snapshot.area_statuses or not snapshot.geo_areas:
        return TotalFireBanLookup(BanStatus.UNKNOWN, unknown_text, LOOKUP_DATA_UNAVAILABLE)

    matched = next((area for area in snapshot.geo_areas if area.contains(longitude, latitude)), None)
    if matched is None:
        return TotalFireBanLookup(BanStatus.UNKNOWN, unknown_text, LOOKUP_NO_AREA_MATCH)

    by_id = {status.area_id: status for status in snapshot.area_statuses}
    by_name = {_normalize_area_name(status.area_name): status for status in snapshot.area_statuses}
    status = by_id.get(matched.area_id) or by_name.get(_normalize_area_name(matched.area_name))
    if status is None:
        return TotalFireBanLookup(BanStatus.UNKNOWN, unknown_text, LOOKUP_MISSING_AREA_STATUS, matched.area_name)
    return TotalFireBanLookup(status.status, status.status_text, LOOKUP_MATCHED, status.area_name, status.raw_status_text)


class TotalFireBanClient:
    """Blocking client; the async pipeline runs it in a worker thread."""

    def __init__(
        self,
        *,
        ratings_url: str = TOTAL_FIRE_BAN_RATINGS_URL,
        geojson_url: str = TOTAL_FIRE_BAN_GEOJSON_URL,
        timeout: float = DEFAULT_TFB_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.ratings_url = ratings_url
        self.geojson_url = geojson_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def _fetch_json(self, url: str) -> Any:
        resp = self.session.get(url, timeout=self.timeout, headers={"Accept": "application/json"})
        resp.raise_for_status()
        return resp.json()

    def fetch_current_snapshot(self) -> TotalFireBanSnapshot:
        warnings: List[str] = []
        snapshot = TotalFireBanSnapshot(fetched_at=utc_now_iso())

        try:
            statuses, last_updated = parse_ratings_payload(self._fetch_json(self.ratings_url))
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Total fire ban ratings fetch failed: %s", exc)
            warnings.append(f"Could not load Total Fire Ban status feed from NSW RFS ({self.ratings_url}).")
        else:
            snapshot.area_statuses = statuses
            snapshot.last_updated_iso = last_updated
            if not statuses:
                warnings.append(
                    "Total Fire Ban status feed returned no fire weather areas; statuses are temporarily unknown."
                )

        try:
            geo_areas = parse_geojson_payload(self._fetch_json(self.geojson_url))
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Total fire ban geometry fetch failed: %s", exc)
            warnings.append(f"Could not load Total Fire Ban map geometry feed from NSW RFS ({self.geojson_url}).")
        else:
            snapshot.geo_areas = geo_areas
            if not geo_areas:
                warnings.append(
                    "Total Fire Ban map geometry feed returned no usable fire weather areas; "
                    "status mapping is temporarily unavailable."
                )

        snapshot.warnings = warnings
        return snapshot


__all__ = [
    "TotalFireBanAreaStatus",
    "TotalFireBanGeoArea",
    "TotalFireBanSnapshot",
    "TotalFireBanLookup",
    "TotalFireBanClient",
    "parse_total_fire_ban_status",
    "parse_ratings_payload",
    "parse_geojson_payload",
    "point_in_polygon",
    "lookup_status_by_coordinates",
]
