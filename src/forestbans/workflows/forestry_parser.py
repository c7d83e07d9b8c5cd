"""Pure parsers for Forestry Corporation pages.

Covers the solid fuel fire ban landing page (one row per area), the
per-area pages listing the state forests an area covers, and the forest
directory with its facility taxonomy. No function here performs I/O.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from .models import BanStatus, DirectoryForest, DirectorySnapshot, FacilityDefinition, ForestArea, SolidFuelBanScope
from .pipeline_config import DEFAULT_FACILITY_DEFINITIONS, FORESTRY_BASE_URL, FORESTRY_ENTRY_URL
from .pipeline_utils import is_likely_state_forest_name, normalize_forest_label, normalize_text, slugify

_CHALLENGE_RE = re.compile(
    r"Just a moment|Performing security verification|Verifying you are human|"
    r"Enable JavaScript and cookies to continue",
    re.I,
)

# Full-text patterns, first match wins
_BanRule = Tuple[re.Pattern, BanStatus, SolidFuelBanScope]
_ALL = SolidFuelBanScope.ALL
_OUTSIDE = SolidFuelBanScope.OUTSIDE_CAMPS
_INCLUDING = SolidFuelBanScope.INCLUDING_CAMPS

_KNOWN_BAN_PATTERNS: Tuple[_BanRule, ...] = (
    (re.compile(r"^no\s+solid\s+fuel\s+fire\s+ban$"), BanStatus.NOT_BANNED, _ALL),
    (re.compile(r"^no\s+ban$"), BanStatus.NOT_BANNED, _ALL),
    (re.compile(r"^solid\s+fuel\s+fires?\s+(?:are\s+)?banned\s+outside\s+designated\s+campgrounds?\b"), BanStatus.BANNED, _OUTSIDE),
    (re.compile(r"^solid\s+fuel\s+fires?\s+(?:are\s+)?permitted\s+inside\s+designated\s+campgrounds?\.?$"), BanStatus.BANNED, _OUTSIDE),
    (
        re.compile(r"^solid\s+fuel\s+fires?\s+(?:are\s+)?banned\s+in\s+all\s+(?:plantation\s+)?areas?,?\s*including\s+camp"),
        BanStatus.BANNED,
        _INCLUDING,
    ),
    (re.compile(r"^solid\s+fuel\s+fire\s+ban$"), BanStatus.BANNED, _ALL),
    (re.compile(r"^solid\s+fuel\s+fires?\s+banned$"), BanStatus.BANNED, _ALL),
)

# Prefix/phrase patterns tried when no full pattern matches
_BAN_PREFIX_PATTERNS: Tuple[_BanRule, ...] = (
    (re.compile(r"^no\s+solid\s+fuel\s+fire\s+ban"), BanStatus.NOT_BANNED, _ALL),
    (re.compile(r"^no\s+ban"), BanStatus.NOT_BANNED, _ALL),
    (re.compile(r"^solid\s+fuel\s+fires?\s+(?:are\s+)?banned\s+outside\s+designated"), BanStatus.BANNED, _OUTSIDE),
    (re.compile(r"^solid\s+fuel\s+fires?\s+(?:are\s+)?permitted\s+inside\s+designated"), BanStatus.BANNED, _OUTSIDE),
    (re.compile(r"^solid\s+fuel\s+fires?\s+(?:are\s+)?banned\b"), BanStatus.BANNED, _ALL),
    (re.compile(r"^solid\s+fuel\s+fire\s+ban"), BanStatus.BANNED, _ALL),
    (re.compile(r"\btotal\s+fire\s+ban"), BanStatus.BANNED, _ALL),
    (re.compile(r"\bfires?\s+(?:are\s+)?banned\b"), BanStatus.BANNED, _ALL),
)

_AREA_INCLUDE_RE = re.compile(
    r"this area includes.*state forests|state forests around|state forests?.*include|following state forests",
    re.I,
)
_AREA_EXCLUDE_RE = re.compile(
    r"excluded in this list|sit in the .* area list|are excluded|excluded in this area", re.I
)
_AREA_NAV_RE = re.compile(r"quicklinks|contact us|global site search|sustainability|visit a forest", re.I)
_CONTAINER_NAV_RE = re.compile(r"cookies|privacy|facebook|youtube|copyright|download|quicklinks|search", re.I)

_FOREST_DETAIL_PATH_RE = re.compile(r"^/(?:visit(?:ing)?/)?forests/[^/?#]+/?$", re.I)
_SCRIPT_FOREST_LINK_RE = re.compile(
    r"""<a href=['"]([^'"]*/(?:visit(?:ing)?/)?forests/[^'"]+)['"][^>]*>([^<]+)</a>""", re.I
)
_SCRIPT_LATLNG_RE = re.compile(r"\[\s*(-?\d{1,3}\.\d+)\s*,\s*(-?\d{1,3}\.\d+)\s*\]")
_LAT_ATTRS = ("data-lat", "data-latitude")
_LNG_ATTRS = ("data-lng", "data-lon", "data-long", "data-longitude")


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "lxml")


def is_cloudflare_challenge_html(html: Optional[str]) -> bool:
    return bool(_CHALLENGE_RE.search(html or ""))


def classify_ban_status(status_text: Optional[str]) -> Tuple[BanStatus, SolidFuelBanScope]:
    """Map upstream status wording onto a status and the campground scope it implies."""

    text = normalize_text(status_text).lower()
    if not text:
        return BanStatus.UNKNOWN, _ALL
    for rules in (_KNOWN_BAN_PATTERNS, _BAN_PREFIX_PATTERNS):
        for pattern, status, scope in rules:
            if pattern.search(text):
                return status, scope
    return BanStatus.UNKNOWN, _ALL


def parse_ban_status(status_text: Optional[str]) -> BanStatus:
    return classify_ban_status(status_text)[0]


def _cell_text(cell) -> str:
    paragraphs = cell.find_all("p")
    if paragraphs:
        # Join block children so sentences do not run together
        return " ".join(filter(None, (normalize_text(p.get_text(" ")) for p in paragraphs)))
    return normalize_text(cell.get_text(" "))


def parse_main_fire_ban_page(html: str, base_url: str = FORESTRY_ENTRY_URL) -> List[ForestArea]:
    """Return one ``ForestArea`` (without forests) per table row linking an area page."""

    soup = _soup(html)
    rows: Dict[str, ForestArea] = {}
    for row in soup.select("table tr"):
        link = row.find("a", href=True)
        if link is None:
            continue
        area_name = normalize_text(link.get_text(" "))
        href = (link.get("href") or "").strip()
        if not area_name or not href:
            continue
        area_url = urljoin(base_url, href)
        cells = [text for text in (_cell_text(cell) for cell in row.find_all(["th", "td"])) if text]
        # Columns: area | solid fuel fire ban | firewood collection
        status_text = cells[1] if len(cells) > 1 else "Unknown"
        status, scope = classify_ban_status(status_text)
        rows[area_url] = ForestArea(
            area_name=area_name,
            status=status,
            status_text=status_text,
            forests=[],
            area_url=area_url,
            ban_scope=scope,
        )
    return list(rows.values())


def _forest_names_from_list(list_node) -> Iterator[str]:
    for li in list_node.find_all("li"):
        name = normalize_text(li.get_text(" "))
        if not name or len(name) > 100 or _AREA_NAV_RE.search(name):
            continue
        cleaned = normalize_forest_label(re.sub(r"[.,;]$", "", name))
        if is_likely_state_forest_name(cleaned):
            yield cleaned
            continue
        # Some area pages list bare names such as "Micalong"
        if cleaned and "state forest" not in cleaned.lower():
            with_suffix = f"{cleaned} State Forest"
            if is_likely_state_forest_name(with_suffix):
                yield with_suffix


def parse_area_forest_names(html: str) -> List[str]:
    """Extract the state forest names listed on one area page."""

    soup = _soup(html)
    names: Dict[str, None] = {}
    for anchor in soup.find_all(["h1", "h2", "h3", "h4", "p", "strong"]):
        anchor_text = normalize_text(anchor.get_text(" "))
        if not _AREA_INCLUDE_RE.search(anchor_text) or _AREA_EXCLUDE_RE.search(anchor_text):
            continue
        target = anchor.find_next_sibling(["ul", "ol"])
        if target is None:
            wrapper = anchor.find_next_sibling("div")
            target = wrapper.find(["ul", "ol"]) if wrapper is not None else None
        if target is None:
            continue
        for name in _forest_names_from_list(target):
            names.setdefault(name, None)

    if not names:
        for li in soup.select("div[id^='content_container_'] li"):
            name = normalize_text(li.get_text(" "))
            if not name or len(name) > 100 or _CONTAINER_NAV_RE.search(name):
                continue
            if "state forest" not in name.lower():
                continue
            cleaned = normalize_forest_label(re.sub(r"[.,;]$", "", name))
            if is_likely_state_forest_name(cleaned):
                names.setdefault(cleaned, None)
    return list(names)


def parse_areas_page(
    html: str,
    base_url: str = FORESTRY_ENTRY_URL,
    area_pages: Optional[Mapping[str, str]] = None,
) -> List[ForestArea]:
    """Parse the landing page and fill each area's forests from its area page HTML.

    ``area_pages`` maps area URL to HTML. Areas whose page is absent keep an
    empty forest list; callers decide whether that deserves a warning.
    """

    areas = parse_main_fire_ban_page(html, base_url)
    pages = area_pages or {}
    for area in areas:
        page_html = pages.get(area.area_url or "")
        if page_html:
            area.forests = parse_area_forest_names(page_html)
    return areas


# Directory -----------------------------------------------------------------

_ICON_RULES = (
    (r"camp", "camping"),
    (r"walk", "walking"),
    (r"4wd|four.?wheel", "four-wheel-drive"),
    (r"bike|cycling|mountain", "cycling"),
    (r"horse|riding", "horse-riding"),
    (r"canoe|kayak|paddle", "canoeing"),
    (r"water|swim|river|lake", "waterways"),
    (r"fish", "fishing"),
    (r"caravan|camper|motorhome", "caravan"),
    (r"picnic", "picnic"),
    (r"lookout|view|scenic", "lookout"),
    (r"adventure", "adventure"),
    (r"hunting|hunt", "hunting"),
    (r"cabin|hut", "cabin"),
    (r"fireplace|fire pit|fire\b", "fireplace"),
    (r"2wd|two.?wheel", "two-wheel-drive"),
    (r"toilet|restroom|bathroom|amenities", "toilets"),
    (r"wheelchair|accessible|accessibilit", "wheelchair"),
)


def infer_facility_icon_key(label: str, param_name: str = "") -> str:
    text = f"{label} {param_name}".lower()
    for pattern, icon in _ICON_RULES:
        if re.search(pattern, text):
            return icon
    return "facility"


def parse_filter_key(name: str, label: str) -> str:
    key = slugify(name or label).replace("-", "_")
    return key or "facility_unknown"


def _clean_directory_forest_name(value: str) -> str:
    cleaned = re.sub(r"\s*\|\s*show on map", "", value or "", flags=re.I)
    return normalize_text(re.sub(r"[|,;]$", "", cleaned))


def resolve_forest_detail_url(href: Optional[str]) -> Optional[str]:
    value = normalize_text(href)
    if not value or value.startswith("#") or value.lower().startswith("javascript:"):
        return None
    path = urlparse(urljoin(f"{FORESTRY_BASE_URL}/visiting/", value)).path
    if not _FOREST_DETAIL_PATH_RE.match(path):
        return None
    path = re.sub(r"^/visiting/", "/visit/", path.rstrip("/"), flags=re.I)
    return urljoin(FORESTRY_BASE_URL, path)


def _valid_forest_label(label: str) -> Optional[str]:
    name = _clean_directory_forest_name(label)
    if not name or len(name) > 120 or not re.search(r"state\s+forest", name, re.I):
        return None
    if not is_likely_state_forest_name(name):
        return None
    return normalize_forest_label(name)


def _float_attr(node, names: Iterable[str]) -> Optional[float]:
    for name in names:
        raw = node.get(name) if node is not None else None
        if raw is None:
            continue
        try:
            return float(str(raw).strip())
        except ValueError:
            continue
    return None


def _coordinates_near(anchor, container) -> Tuple[Optional[float], Optional[float]]:
    candidates = [anchor, container]
    if container is not None:
        candidates.extend(container.find_all(attrs={"data-lat": True}))
        candidates.extend(container.find_all(attrs={"data-latitude": True}))
    for node in candidates:
        lat = _float_attr(node, _LAT_ATTRS)
        lng = _float_attr(node, _LNG_ATTRS)
        if lat is not None and lng is not None and -90 <= lat <= 90 and -180 <= lng <= 180:
            return lat, lng
    return None, None


def _script_forest_markers(soup: BeautifulSoup) -> Iterator[Tuple[str, str, Optional[float], Optional[float]]]:
    """Yield (href, label, lat, lng) for map-marker popups embedded in scripts."""

    for script in soup.find_all("script"):
        body = script.string or script.get_text() or ""
        for match in _SCRIPT_FOREST_LINK_RE.finditer(body):
            window = body[max(0, match.start() - 300):match.start()]
            pairs = _SCRIPT_LATLNG_RE.findall(window)
            lat = lng = None
            if pairs:
                lat, lng = float(pairs[-1][0]), float(pairs[-1][1])
            yield match.group(1), match.group(2), lat, lng


def _container_for(anchor):
    container = anchor.find_parent("div", class_="mb-4")
    if container is not None:
        return container
    for parent in anchor.parents:
        if parent.name in ("li", "tr"):
            return parent
        classes = " ".join(parent.get("class") or [])
        if parent.name == "div" and ("result" in classes or "forest" in classes):
            return parent
    parent = anchor.parent
    return parent.parent if parent is not None and parent.parent is not None else parent


def parse_directory_filters(html: str) -> List[FacilityDefinition]:
    """Facility taxonomy from filter form inputs, else from the default list."""

    soup = _soup(html)
    rows: Dict[str, FacilityDefinition] = {}
    forms = [form for form in soup.find_all("form") if re.search(r"\bfacilit(y|ies)\b", form.get_text(" "), re.I)]
    sources = forms or [soup]
    selector = "input[type='checkbox'][name], input[type='radio'][name], input[type='hidden'][name]"
    for source in sources:
        for node in source.select(selector):
            name = normalize_text(node.get("name"))
            if not name:
                continue
            value = normalize_text(node.get("value")).lower()
            if value and value not in {"yes", "on", "true"}:
                continue
            labels = []
            input_id = node.get("id")
            if input_id:
                label_node = soup.find("label", attrs={"for": input_id})
                labels.append(normalize_text(label_node.get_text(" ")) if label_node else "")
            parent_label = node.find_parent("label")
            labels.append(normalize_text(parent_label.get_text(" ")) if parent_label else "")
            labels.append(normalize_text(node.parent.get_text(" ")) if node.parent else "")
            label = next(
                (
                    entry
                    for entry in (re.sub(r"\s*:\s*(yes|no)?\s*$", "", item, flags=re.I).strip() for item in labels)
                    if entry and not re.search(r"\bapply\b|\bsearch\b", entry, re.I)
                ),
                "",
            )
            if not label or len(label) > 80:
                continue
            if re.search(r"\bstate forests?\b|\bshowing\s+\d+\s+results\b", label, re.I):
                continue
            key = parse_filter_key(name, label)
            if key not in rows:
                rows[key] = FacilityDefinition(key, label, name, infer_facility_icon_key(label, name))
    if rows:
        return list(rows.values())

    body_text = normalize_text(soup.get_text(" ")).lower()
    for key, label, icon in DEFAULT_FACILITY_DEFINITIONS:
        if label.lower() in body_text:
            rows[key] = FacilityDefinition(key, label, key, icon)
    return list(rows.values())


def parse_directory_page(html: str) -> DirectorySnapshot:
    """Extract forests, coordinates and facilities from the forest directory.

    Facility icons are ``<i data-original-title="...">``; the
    ``g-color-primary`` class marks a facility as available.
    """

    soup = _soup(html)
    facility_titles: Dict[str, FacilityDefinition] = {}
    for icon in soup.select("i[data-original-title]"):
        title = normalize_text(icon.get("data-original-title"))
        if title and title not in facility_titles:
            key = parse_filter_key(slugify(title), title)
            facility_titles[title] = FacilityDefinition(key, title, key, infer_facility_icon_key(title, key))

    warnings: List[str] = []
    if facility_titles:
        filters = list(facility_titles.values())
    else:
        filters = parse_directory_filters(html)
        if filters:
            warnings.append(
                "Facility tooltip icons were not found on the directory page; facility data may be incomplete."
            )

    forests: Dict[str, DirectoryForest] = {}
    for anchor in soup.find_all("a", href=True):
        forest_url = resolve_forest_detail_url(anchor.get("href"))
        if not forest_url:
            continue
        forest_name = _valid_forest_label(anchor.get_text(" "))
        if not forest_name or forest_name in forests:
            continue
        container = _container_for(anchor)
        facilities = {definition.key: False for definition in filters}
        if facility_titles and container is not None:
            for icon in container.select("i[data-original-title]"):
                meta = facility_titles.get(normalize_text(icon.get("data-original-title")))
                if meta is not None:
                    facilities[meta.key] = "g-color-primary" in (icon.get("class") or [])
        lat, lng = _coordinates_near(anchor, container)
        forests[forest_name] = DirectoryForest(forest_name, forest_url, facilities, lat, lng)

    for href, label, lat, lng in _script_forest_markers(soup):
        forest_url = resolve_forest_detail_url(href)
        forest_name = _valid_forest_label(label)
        if not forest_url or not forest_name:
            continue
        existing = forests.get(forest_name)
        if existing is None:
            forests[forest_name] = DirectoryForest(
                forest_name, forest_url, {definition.key: False for definition in filters}, lat, lng
            )
        elif existing.latitude is None and lat is not None:
            existing.latitude, existing.longitude = lat, lng

    ordered = sorted(forests.values(), key=lambda entry: entry.forest_name.casefold())
    return DirectorySnapshot(forests=ordered, filters=filters, warnings=warnings)


__all__ = [
    "is_cloudflare_challenge_html",
    "classify_ban_status",
    "parse_ban_status",
    "parse_main_fire_ban_page",
    "parse_area_forest_names",
    "parse_areas_page",
    "infer_facility_icon_key",
    "parse_filter_key",
    "resolve_forest_detail_url",
    "parse_directory_filters",
    "parse_directory_page",
]
