"""Reconcile per-area ban statuses and duplicate forest records.

Upstream sources describe the same forest inconsistently: one forest may sit
in several areas, appear with different capitalization, or be missing
coordinates in one listing. Everything here groups records by
:func:`~forestbans.workflows.pipeline_utils.forest_key` and guarantees one
row per physical forest, carrying the strictest applicable ban status,
without dropping any area association.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from difflib import SequenceMatcher
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .models import (
    BanStatus,
    ClosureNotice,
    ClosureNoticeStatus,
    ClosureStatus,
    DirectoryForest,
    DirectorySnapshot,
    ForestArea,
    ForestAreaReference,
    PersistedForestPoint,
    SolidFuelBanScope,
)
from .pipeline_config import (
    BAN_STATUS_DEFAULT_TEXT,
    CLOSURE_MATCH_THRESHOLD,
    CLOSURE_TAG_RULES,
    FOREST_NAME_STOP_WORDS,
    FUZZY_DIRECTORY_MATCH_THRESHOLD,
    UNLISTED_FOREST_STATUS_TEXT,
)
from .pipeline_utils import epoch_from_iso, forest_key, normalize_forest_label, normalize_text, slugify
from .total_fire_ban import TotalFireBanSnapshot, lookup_status_by_coordinates

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BanResolution:
    forest_name: str
    status: BanStatus
    status_text: str
    ban_scope: SolidFuelBanScope = SolidFuelBanScope.ALL


def normalize_ban_status_text(status: BanStatus, status_text: Optional[str]) -> str:
    text = (status_text or "").strip()
    return text or BAN_STATUS_DEFAULT_TEXT[status.value]


def build_most_restrictive_ban_by_forest(areas: Iterable[ForestArea]) -> Dict[str, BanResolution]:
    """Return forest key -> strictest status across every area listing it.

    A later status replaces the recorded one only when strictly more
    restrictive; ties keep the first-seen status text and scope.
    """

    resolved: Dict[str, BanResolution] = {}
    for area in areas:
        seen_in_area = set()
        for raw_name in area.forests:
            key = forest_key(raw_name)
            if not key or key in seen_in_area:
                continue
            seen_in_area.add(key)
            current = resolved.get(key)
            if current is None or area.status.priority > current.status.priority:
                resolved[key] = BanResolution(
                    forest_name=current.forest_name if current else normalize_forest_label(raw_name),
                    status=area.status,
                    status_text=normalize_ban_status_text(area.status, area.status_text),
                    ban_scope=area.ban_scope,
                )
    return resolved


# Fuzzy name matching ---------------------------------------------------------


def _core_tokens(name: str) -> List[str]:
    return [token for token in forest_key(name).split(" ") if token and token not in FOREST_NAME_STOP_WORDS]


def score_forest_name_similarity(left: str, right: str) -> float:
    left_key, right_key = forest_key(left), forest_key(right)
    if not left_key or not right_key:
        return 0.0
    if left_key == right_key:
        return 1.0
    left_core = " ".join(_core_tokens(left))
    right_core = " ".join(_core_tokens(right))
    if left_core and left_core == right_core:
        return 0.98
    return SequenceMatcher(None, left_core or left_key, right_core or right_key).ratio()


def find_best_forest_name_match(target: str, candidates: Sequence[str]) -> Optional[Tuple[str, float]]:
    best: Optional[Tuple[str, float]] = None
    for candidate in candidates:
        score = score_forest_name_similarity(target, candidate)
        if best is None or score > best[1]:
            best = (candidate, score)
    return best


# Duplicate merge -------------------------------------------------------------


def _merge_area_refs(groups: Iterable[Iterable[ForestAreaReference]]) -> List[ForestAreaReference]:
    merged: List[ForestAreaReference] = []
    seen = set()
    for refs in groups:
        for ref in refs:
            folded = normalize_text(ref.area_name).casefold()
            if folded in seen:
                continue
            seen.add(folded)
            merged.append(ref)
    return merged


def _merge_closures(groups: Iterable[Iterable[ClosureNotice]]) -> List[ClosureNotice]:
    merged: Dict[str, ClosureNotice] = {}
    for notices in groups:
        for notice in notices:
            merged.setdefault(notice.detail_url or notice.id, notice)
    return list(merged.values())


def merge_duplicate_forests(points: Sequence[PersistedForestPoint]) -> List[PersistedForestPoint]:
    """Collapse records sharing a forest key into one canonical record.

    The primary record is the first member with coordinates, else the first
    member. The merged id is recomputed from the primary's name.
    """

    groups: Dict[str, List[PersistedForestPoint]] = {}
    for point in points:
        groups.setdefault(forest_key(point.forest_name) or point.id, []).append(point)

    merged: List[PersistedForestPoint] = []
    for members in groups.values():
        if len(members) == 1:
            merged.append(members[0])
            continue
        primary = next((member for member in members if member.has_coordinates), members[0])
        strictest = members[0]
        for member in members[1:]:
            if member.ban_status.priority > strictest.ban_status.priority:
                strictest = member
        facilities: Dict[str, bool] = {}
        for member in members:
            for key, available in member.facilities.items():
                facilities[key] = facilities.get(key, False) or available
        merged.append(
            replace(
                primary,
                id=slugify(primary.forest_name),
                ban_status=strictest.ban_status,
                ban_status_text=strictest.ban_status_text,
                ban_scope=strictest.ban_scope,
                areas=_merge_area_refs(member.areas for member in members),
                closures=_merge_closures(member.closures for member in members),
                forest_url=primary.forest_url or next((m.forest_url for m in members if m.forest_url), None),
                facilities=facilities,
            )
        )
    return merged


# Closures --------------------------------------------------------------------


def is_closure_notice_active(notice: ClosureNotice, now: float) -> bool:
    start = epoch_from_iso(notice.start_date)
    if start is not None and start > now:
        return False
    end = epoch_from_iso(notice.end_date)
    if end is not None and end < now:
        return False
    return True


def closure_status_from_notices(notices: Sequence[ClosureNotice]) -> ClosureStatus:
    if any(notice.status is ClosureNoticeStatus.CLOSED for notice in notices):
        return ClosureStatus.CLOSED
    if any(notice.status is ClosureNoticeStatus.PARTIAL for notice in notices):
        return ClosureStatus.PARTIAL
    if notices:
        return ClosureStatus.NOTICE
    return ClosureStatus.NONE


def closure_tags_from_notices(notices: Sequence[ClosureNotice]) -> Dict[str, bool]:
    tags = {key: False for key, _ in CLOSURE_TAG_RULES}
    for notice in notices:
        for tag in notice.tags:
            tags[tag] = True
    return tags


def assign_closures(
    points: Sequence[PersistedForestPoint],
    notices: Sequence[ClosureNotice],
    now: float,
    *,
    threshold: float = CLOSURE_MATCH_THRESHOLD,
) -> List[str]:
    """Attach active notices to forests by their forest-name hint; returns warnings."""

    by_key = {forest_key(point.forest_name): point for point in points}
    names = [point.forest_name for point in points]
    unmatched = 0
    fuzzy = 0
    for notice in notices:
        if not is_closure_notice_active(notice, now):
            continue
        hint = notice.forest_name_hint or ""
        target = by_key.get(forest_key(hint)) if hint else None
        if target is None and hint:
            best = find_best_forest_name_match(hint, names)
            if best is not None and best[1] >= threshold:
                target = by_key.get(forest_key(best[0]))
                fuzzy += 1
                logger.debug("Closure %r matched %s (score %.2f)", notice.title, best[0], best[1])
        if target is None:
            unmatched += 1
            continue
        if all(existing.detail_url != notice.detail_url for existing in target.closures):
            target.closures.append(notice)

    for point in points:
        point.closure_status = closure_status_from_notices(point.closures)
        point.closure_tags = closure_tags_from_notices(point.closures)

    warnings: List[str] = []
    if unmatched:
        warnings.append(f"{unmatched} active closure notice(s) could not be matched to a forest.")
    if fuzzy:
        logger.info("%d closure notice(s) matched a forest by approximate name", fuzzy)
    return warnings


# Point building --------------------------------------------------------------


def _directory_lookup(
    directory: Optional[DirectorySnapshot],
) -> Tuple[Dict[str, DirectoryForest], List[str]]:
    entries: Dict[str, DirectoryForest] = {}
    for entry in directory.forests if directory else []:
        entries.setdefault(forest_key(entry.forest_name), entry)
    return entries, [entry.forest_name for entry in entries.values()]


def build_forest_points(
    areas: Sequence[ForestArea],
    *,
    directory: Optional[DirectorySnapshot] = None,
    closures: Sequence[ClosureNotice] = (),
    total_fire_ban: Optional[TotalFireBanSnapshot] = None,
    now: float,
) -> Tuple[List[PersistedForestPoint], List[str]]:
    """Build the merged forest list in first-seen order across area lists."""

    warnings: List[str] = []
    resolutions = build_most_restrictive_ban_by_forest(areas)
    directory_by_key, directory_names = _directory_lookup(directory)
    matched_directory_keys = set()
    fuzzy_matches = 0

    points: List[PersistedForestPoint] = []
    for area in areas:
        seen_in_area = set()
        for raw_name in area.forests:
            key = forest_key(raw_name)
            if not key or key in seen_in_area:
                continue
            seen_in_area.add(key)
            name = normalize_forest_label(raw_name)
            resolution = resolutions[key]
            entry = directory_by_key.get(key)
            if entry is None and directory_names:
                best = find_best_forest_name_match(name, directory_names)
                if best is not None and best[1] >= FUZZY_DIRECTORY_MATCH_THRESHOLD:
                    entry = directory_by_key.get(forest_key(best[0]))
                    fuzzy_matches += 1
            if entry is not None:
                matched_directory_keys.add(forest_key(entry.forest_name))
            points.append(
                PersistedForestPoint(
                    id=slugify(name),
                    forest_name=name,
                    latitude=entry.latitude if entry else None,
                    longitude=entry.longitude if entry else None,
                    ban_status=resolution.status,
                    ban_status_text=resolution.status_text,
                    ban_scope=resolution.ban_scope,
                    areas=[ForestAreaReference(area.area_name, area.area_url)],
                    forest_url=entry.forest_url if entry else None,
                    facilities=dict(entry.facilities) if entry else {},
                )
            )
    if fuzzy_matches:
        warnings.append(f"{fuzzy_matches} forest(s) were matched to the directory by approximate name.")

    unlisted = [entry for key, entry in directory_by_key.items() if key not in matched_directory_keys]
    for entry in unlisted:
        points.append(
            PersistedForestPoint(
                id=slugify(entry.forest_name),
                forest_name=entry.forest_name,
                latitude=entry.latitude,
                longitude=entry.longitude,
                ban_status=BanStatus.UNKNOWN,
                ban_status_text=UNLISTED_FOREST_STATUS_TEXT,
                areas=[],
                forest_url=entry.forest_url,
                facilities=dict(entry.facilities),
            )
        )
    if unlisted:
        warnings.append(
            f"{len(unlisted)} forest(s) from the directory are not listed on any Solid Fuel Fire Ban area page."
        )

    merged = merge_duplicate_forests(points)

    for point in merged:
        lookup = lookup_status_by_coordinates(total_fire_ban, point.latitude, point.longitude)
        point.total_fire_ban_status = lookup.status
        point.total_fire_ban_status_text = lookup.status_text
        point.total_fire_ban_lookup_code = lookup.lookup_code
        point.fire_weather_area_name = lookup.fire_weather_area_name

    warnings.extend(assign_closures(merged, closures, now))
    return merged, warnings


__all__ = [
    "BanResolution",
    "normalize_ban_status_text",
    "build_most_restrictive_ban_by_forest",
    "score_forest_name_similarity",
    "find_best_forest_name_match",
    "merge_duplicate_forests",
    "is_closure_notice_active",
    "closure_status_from_notices",
    "closure_tags_from_notices",
    "assign_closures",
    "build_forest_points",
]
