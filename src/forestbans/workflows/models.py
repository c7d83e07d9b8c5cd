"""Typed records shared by the parsers, reconciler and live service.

Every record serializes to the camelCase JSON the map client consumes. The
``from_dict`` decoders fail closed: an unrecognized shape raises
``ValueError`` instead of being coerced.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core.keys import (
    K_AREA_NAME,
    K_AREA_URL,
    K_AREAS,
    K_BAN_SCOPE,
    K_BAN_STATUS,
    K_BAN_STATUS_TEXT,
    K_CLOSURE_STATUS,
    K_CLOSURE_TAGS,
    K_CLOSURES,
    K_DETAIL_TEXT,
    K_DETAIL_URL,
    K_DISTANCE_KM,
    K_END_DATE,
    K_FACILITIES,
    K_FETCHED_AT,
    K_FIRE_WEATHER_AREA,
    K_FOREST_NAME,
    K_FOREST_NAME_HINT,
    K_FOREST_URL,
    K_FORESTS,
    K_ID,
    K_LATITUDE,
    K_LONGITUDE,
    K_NEAREST_LEGAL_SPOT,
    K_STALE,
    K_START_DATE,
    K_STATUS,
    K_STATUS_TEXT,
    K_TAGS,
    K_TITLE,
    K_TOTAL_FIRE_BAN_LOOKUP,
    K_TOTAL_FIRE_BAN_STATUS,
    K_TOTAL_FIRE_BAN_STATUS_TEXT,
    K_WARNINGS,
)


class BanStatus(str, Enum):
    UNKNOWN = "UNKNOWN"
    NOT_BANNED = "NOT_BANNED"
    BANNED = "BANNED"

    @property
    def priority(self) -> int:
        return BAN_STATUS_PRIORITY[self]


BAN_STATUS_PRIORITY = {
    BanStatus.UNKNOWN: 0,
    BanStatus.NOT_BANNED: 1,
    BanStatus.BANNED: 2,
}


class SolidFuelBanScope(str, Enum):
    """Where a solid fuel fire ban applies.

    ``OUTSIDE_CAMPS`` bans fires outside designated campgrounds but permits
    them inside; ``INCLUDING_CAMPS`` bans them in camping areas too.
    """

    ALL = "ALL"
    OUTSIDE_CAMPS = "OUTSIDE_CAMPS"
    INCLUDING_CAMPS = "INCLUDING_CAMPS"


class ClosureNoticeStatus(str, Enum):
    NOTICE = "NOTICE"
    PARTIAL = "PARTIAL"
    CLOSED = "CLOSED"


class ClosureStatus(str, Enum):
    NONE = "NONE"
    NOTICE = "NOTICE"
    PARTIAL = "PARTIAL"
    CLOSED = "CLOSED"


def _require(payload: Dict[str, Any], key: str, kind: type) -> Any:
    value = payload.get(key)
    if not isinstance(value, kind):
        raise ValueError(f"expected {key!r} to be {kind.__name__}, got {type(value).__name__}")
    return value


def _optional(payload: Dict[str, Any], key: str, kind: Any) -> Any:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, kind):
        raise ValueError(f"expected {key!r} to be optional {kind}, got {type(value).__name__}")
    return value


def _coordinate(payload: Dict[str, Any], key: str) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"expected {key!r} to be a number or null")
    return float(value)


@dataclass(frozen=True)
class ForestAreaReference:
    area_name: str
    area_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {K_AREA_NAME: self.area_name}
        if self.area_url:
            payload[K_AREA_URL] = self.area_url
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ForestAreaReference":
        return cls(
            area_name=_require(payload, K_AREA_NAME, str),
            area_url=_optional(payload, K_AREA_URL, str),
        )


@dataclass
class ForestArea:
    """One upstream administrative grouping with a single ban status."""

    area_name: str
    status: BanStatus
    status_text: str
    forests: List[str] = field(default_factory=list)
    area_url: Optional[str] = None
    ban_scope: SolidFuelBanScope = SolidFuelBanScope.ALL

    def to_dict(self) -> Dict[str, Any]:
        return {
            K_AREA_NAME: self.area_name,
            K_AREA_URL: self.area_url,
            K_STATUS: self.status.value,
            K_STATUS_TEXT: self.status_text,
            K_BAN_SCOPE: self.ban_scope.value,
            K_FORESTS: list(self.forests),
        }


@dataclass
class ClosureNotice:
    id: str
    title: str
    detail_url: str
    status: ClosureNoticeStatus = ClosureNoticeStatus.NOTICE
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    detail_text: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    forest_name_hint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            K_ID: self.id,
            K_TITLE: self.title,
            K_DETAIL_URL: self.detail_url,
            K_START_DATE: self.start_date,
            K_END_DATE: self.end_date,
            K_STATUS: self.status.value,
            K_DETAIL_TEXT: self.detail_text,
            K_TAGS: list(self.tags),
            K_FOREST_NAME_HINT: self.forest_name_hint,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ClosureNotice":
        tags = _require(payload, K_TAGS, list)
        if not all(isinstance(tag, str) for tag in tags):
            raise ValueError("closure tags must be strings")
        return cls(
            id=_require(payload, K_ID, str),
            title=_require(payload, K_TITLE, str),
            detail_url=_require(payload, K_DETAIL_URL, str),
            status=ClosureNoticeStatus(_require(payload, K_STATUS, str)),
            start_date=_optional(payload, K_START_DATE, str),
            end_date=_optional(payload, K_END_DATE, str),
            detail_text=_optional(payload, K_DETAIL_TEXT, str),
            tags=list(tags),
            forest_name_hint=_optional(payload, K_FOREST_NAME_HINT, str),
        )


@dataclass(frozen=True)
class FacilityDefinition:
    key: str
    label: str
    param_name: str
    icon_key: str

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "label": self.label, "paramName": self.param_name, "iconKey": self.icon_key}


@dataclass
class DirectoryForest:
    forest_name: str
    forest_url: str
    facilities: Dict[str, bool] = field(default_factory=dict)
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass
class DirectorySnapshot:
    forests: List[DirectoryForest] = field(default_factory=list)
    filters: List[FacilityDefinition] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class PersistedForestPoint:
    """The canonical per-forest record that is stored and served."""

    id: str
    forest_name: str
    latitude: Optional[float]
    longitude: Optional[float]
    ban_status: BanStatus
    ban_status_text: str
    ban_scope: SolidFuelBanScope = SolidFuelBanScope.ALL
    areas: List[ForestAreaReference] = field(default_factory=list)
    closures: List[ClosureNotice] = field(default_factory=list)
    forest_url: Optional[str] = None
    facilities: Dict[str, bool] = field(default_factory=dict)
    closure_status: ClosureStatus = ClosureStatus.NONE
    closure_tags: Dict[str, bool] = field(default_factory=dict)
    total_fire_ban_status: BanStatus = BanStatus.UNKNOWN
    total_fire_ban_status_text: str = "Unknown (Total Fire Ban status unavailable)"
    total_fire_ban_lookup_code: str = "DATA_UNAVAILABLE"
    fire_weather_area_name: Optional[str] = None
    distance_km: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            K_ID: self.id,
            K_FOREST_NAME: self.forest_name,
            K_FOREST_URL: self.forest_url,
            K_LATITUDE: self.latitude,
            K_LONGITUDE: self.longitude,
            K_BAN_STATUS: self.ban_status.value,
            K_BAN_STATUS_TEXT: self.ban_status_text,
            K_BAN_SCOPE: self.ban_scope.value,
            K_TOTAL_FIRE_BAN_STATUS: self.total_fire_ban_status.value,
            K_TOTAL_FIRE_BAN_STATUS_TEXT: self.total_fire_ban_status_text,
            K_TOTAL_FIRE_BAN_LOOKUP: self.total_fire_ban_lookup_code,
            K_FIRE_WEATHER_AREA: self.fire_weather_area_name,
            K_AREAS: [area.to_dict() for area in self.areas],
            K_CLOSURES: [notice.to_dict() for notice in self.closures],
            K_CLOSURE_STATUS: self.closure_status.value,
            K_CLOSURE_TAGS: dict(self.closure_tags),
            K_FACILITIES: dict(self.facilities),
            K_DISTANCE_KM: self.distance_km,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PersistedForestPoint":
        if not isinstance(payload, dict):
            raise ValueError("forest point must be an object")
        areas = [ForestAreaReference.from_dict(item) for item in _require(payload, K_AREAS, list)]
        closures = [ClosureNotice.from_dict(item) for item in payload.get(K_CLOSURES) or []]
        return cls(
            id=_require(payload, K_ID, str),
            forest_name=_require(payload, K_FOREST_NAME, str),
            latitude=_coordinate(payload, K_LATITUDE),
            longitude=_coordinate(payload, K_LONGITUDE),
            ban_status=BanStatus(_require(payload, K_BAN_STATUS, str)),
            ban_status_text=_require(payload, K_BAN_STATUS_TEXT, str),
            ban_scope=SolidFuelBanScope(payload.get(K_BAN_SCOPE) or SolidFuelBanScope.ALL.value),
            areas=areas,
            closures=closures,
            forest_url=_optional(payload, K_FOREST_URL, str),
            facilities=dict(payload.get(K_FACILITIES) or {}),
            closure_status=ClosureStatus(payload.get(K_CLOSURE_STATUS) or ClosureStatus.NONE.value),
            closure_tags=dict(payload.get(K_CLOSURE_TAGS) or {}),
            total_fire_ban_status=BanStatus(payload.get(K_TOTAL_FIRE_BAN_STATUS) or BanStatus.UNKNOWN.value),
            total_fire_ban_status_text=payload.get(K_TOTAL_FIRE_BAN_STATUS_TEXT)
            or "Unknown (Total Fire Ban status unavailable)",
            total_fire_ban_lookup_code=payload.get(K_TOTAL_FIRE_BAN_LOOKUP) or "DATA_UNAVAILABLE",
            fire_weather_area_name=_optional(payload, K_FIRE_WEATHER_AREA, str),
        )


@dataclass
class ForestSnapshot:
    """The served response: merged forests plus freshness and warnings."""

    forests: List[PersistedForestPoint]
    fetched_at: str
    stale: bool = False
    warnings: List[str] = field(default_factory=list)
    nearest_legal_spot: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            K_FORESTS: [forest.to_dict() for forest in self.forests],
            K_FETCHED_AT: self.fetched_at,
            K_STALE: self.stale,
            K_WARNINGS: list(self.warnings),
        }
        if self.nearest_legal_spot is not None:
            payload[K_NEAREST_LEGAL_SPOT] = self.nearest_legal_spot
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ForestSnapshot":
        if not isinstance(payload, dict):
            raise ValueError("snapshot must be an object")
        warnings = _require(payload, K_WARNINGS, list)
        return cls(
            forests=[PersistedForestPoint.from_dict(item) for item in _require(payload, K_FORESTS, list)],
            fetched_at=_require(payload, K_FETCHED_AT, str),
            stale=bool(payload.get(K_STALE, False)),
            warnings=[str(item) for item in warnings],
        )


__all__ = [
    "BanStatus",
    "SolidFuelBanScope",
    "BAN_STATUS_PRIORITY",
    "ClosureNoticeStatus",
    "ClosureStatus",
    "ForestAreaReference",
    "ForestArea",
    "ClosureNotice",
    "FacilityDefinition",
    "DirectoryForest",
    "DirectorySnapshot",
    "PersistedForestPoint",
    "ForestSnapshot",
]
