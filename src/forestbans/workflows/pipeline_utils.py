"""Shared helper functions used by the forestbans workflow."""

from __future__ import annotations

import os
import re
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

_WHITESPACE_RE = re.compile(r"\s+")
_FOREST_KEY_STRIP_RE = re.compile(r"[^a-z0-9\s]")
_STATE_FOREST_NAME_RE = re.compile(
    r"^[a-z0-9][a-z0-9 '&./()-]*state forest(?:\s*\([^)]*\))?$", re.I
)
_NOT_A_FOREST_RES = (
    re.compile(r"^find a state forest$", re.I),
    re.compile(r"^defined state forest area$", re.I),
    re.compile(r"^includes:", re.I),
    re.compile(r"\bplanning your visit\b", re.I),
    re.compile(r"\bright to information\b", re.I),
    re.compile(r"\bmaps and spatial data\b", re.I),
    re.compile(r"\bcontracts held\b", re.I),
)


def normalize_text(value: Optional[str]) -> str:
    """Collapse runs of whitespace and trim."""

    return _WHITESPACE_RE.sub(" ", value or "").strip()


def normalize_forest_label(value: Optional[str]) -> str:
    return normalize_text(value)


def forest_key(name: Optional[str]) -> str:
    """Return the reconciliation identity for a forest name.

    Case, whitespace and punctuation are folded so ``"Watagan State Forest"``
    and ``" watagan  state-forest."`` group together.
    """

    lowered = (name or "").lower().replace("&", " and ")
    return normalize_text(_FOREST_KEY_STRIP_RE.sub(" ", lowered))


def slugify(value: Optional[str]) -> str:
    slug = (value or "").lower().strip()
    slug = _WHITESPACE_RE.sub("-", slug)
    slug = re.sub(r"[^a-z0-9-]", "", slug)
    return re.sub(r"-+", "-", slug)


def is_likely_state_forest_name(value: Optional[str]) -> bool:
    name = normalize_forest_label(value)
    if not name or len(name) > 120:
        return False
    if any(pattern.search(name) for pattern in _NOT_A_FOREST_RES):
        return False
    return bool(_STATE_FOREST_NAME_RE.match(name))


def utc_now_iso() -> str:
    return iso_from_epoch(datetime.now(timezone.utc).timestamp())


def iso_from_epoch(seconds: float) -> str:
    stamp = datetime.fromtimestamp(seconds, tz=timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def epoch_from_iso(value: Optional[str]) -> Optional[float]:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed) into epoch seconds."""

    raw = (value or "").strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def dedupe_preserving_order(values: List[str]) -> List[str]:
    seen: Set[str] = set()
    ordered: List[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        ordered.append(value)
    return ordered


def _split_env_list(value: str, *, lower: bool = False) -> Tuple[str, ...]:
    tokens: List[str] = []
    for token in value.split(","):
        cleaned = token.strip()
        if not cleaned:
            continue
        tokens.append(cleaned.lower() if lower else cleaned)
    return tuple(dedupe_preserving_order(tokens))


def _env_int_list(raw: str) -> Tuple[int, ...]:
    values: List[int] = []
    for cleaned in _split_env_list(raw or ""):
        if "-" in cleaned:
            # Port ranges such as 30001-30010
            start, _, end = cleaned.partition("-")
            try:
                values.extend(range(int(start), int(end) + 1))
            except ValueError:
                continue
            continue
        try:
            values.append(int(cleaned))
        except ValueError:
            continue
    deduped: List[int] = []
    seen: Set[int] = set()
    for val in values:
        if val in seen:
            continue
        seen.add(val)
        deduped.append(val)
    return tuple(deduped)


def _as_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if not normalized:
        return default
    return normalized not in {"0", "false", "off", "no"}


def _safe_int(value: Optional[str], default: Optional[int] = None) -> Optional[int]:
    if value is None:
        return default
    try:
        cleaned = value.strip()
        if not cleaned:
            return default
        return int(cleaned)
    except ValueError:
        return default


def _safe_float(value: Optional[str], default: float) -> float:
    if value is None:
        return default
    try:
        cleaned = value.strip()
        if not cleaned:
            return default
        return float(cleaned)
    except ValueError:
        return default


def collect_environment_warnings() -> List[Dict[str, str]]:
    """Return environment problems that degrade a scrape without breaking it."""

    warnings: List[Dict[str, str]] = []

    from . import page_fetch

    if getattr(page_fetch, "async_playwright", None) is None:
        warnings.append(
            {
                "code": "playwright_missing",
                "message": "Playwright is not installed; bot-protected pages use plain HTTP only.",
                "remedy": "pip install 'forestbans[browser]' && playwright install chromium",
            }
        )

    proxy_wanted = _as_bool(os.getenv("FORCE_PROXY")) or _as_bool(os.getenv("CI"))
    has_creds = bool(os.getenv("PROXY_USERNAME")) and bool(os.getenv("PROXY_PASSWORD"))
    if proxy_wanted and not has_creds:
        warnings.append(
            {
                "code": "proxy_credentials_missing",
                "message": "Proxy requested (FORCE_PROXY/CI) but PROXY_USERNAME/PROXY_PASSWORD are unset.",
                "remedy": "Set PROXY_USERNAME and PROXY_PASSWORD, or unset FORCE_PROXY.",
            }
        )

    ttl_raw = os.getenv("FORESTBANS_SCRAPE_TTL_MS")
    if ttl_raw is not None and _safe_int(ttl_raw) is None:
        warnings.append(
            {
                "code": "scrape_ttl_invalid",
                "message": f"FORESTBANS_SCRAPE_TTL_MS={ttl_raw!r} is not an integer; using the default.",
                "remedy": "Set FORESTBANS_SCRAPE_TTL_MS to a whole number of milliseconds.",
            }
        )
    return warnings


def sanity_check() -> None:
    assert forest_key(" Watagan  State-Forest. ") == "watagan state forest"
    assert slugify("Watagan State Forest") == "watagan-state-forest"
    assert is_likely_state_forest_name("Watagan State Forest")
    assert not is_likely_state_forest_name("Find a State Forest")
    assert _env_int_list("30001-30003,30003") == (30001, 30002, 30003)


sanity_check()

__all__ = [
    "normalize_text",
    "normalize_forest_label",
    "forest_key",
    "slugify",
    "is_likely_state_forest_name",
    "utc_now_iso",
    "iso_from_epoch",
    "epoch_from_iso",
    "dedupe_preserving_order",
    "collect_environment_warnings",
    "sanity_check",
]
