"""Pipeline defaults (endpoints, headers, TTLs, proxy defaults, taxonomies).

Centralizes static defaults so the scraper and parsers have no embedded
magic strings. These are baseline constants used to construct
``PipelineSettings``; callers can inject their own settings to override
any of them.
"""

from __future__ import annotations

import tempfile
from pathlib import Path

# Endpoints
FORESTRY_BASE_URL = "https://www.forestrycorporation.com.au"
FORESTRY_ENTRY_URL = f"{FORESTRY_BASE_URL}/visit/solid-fuel-fire-bans"
FORESTRY_DIRECTORY_URLS = (
    f"{FORESTRY_BASE_URL}/visiting/forests",
    f"{FORESTRY_BASE_URL}/visit/forests",
)
CLOSURES_URL = "https://forestclosure.fcnsw.net/indexframe"
TOTAL_FIRE_BAN_RATINGS_URL = (
    "https://www.rfs.nsw.gov.au/_designs/xml/fire-danger-ratings/fire-danger-ratings-v2"
)
TOTAL_FIRE_BAN_GEOJSON_URL = (
    "https://www.rfs.nsw.gov.au/_designs/geojson/fire-danger-ratings-geojson"
)

# Headers
HDR_USER_AGENT = "User-Agent"
HDR_ACCEPT_LANGUAGE = "Accept-Language"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
DEFAULT_ACCEPT_LANGUAGE = "en-AU,en;q=0.9"

# Paths
_CACHE_ROOT = Path(tempfile.gettempdir()) / "forestbans"
RAW_CACHE_PATH = _CACHE_ROOT / "forestry-raw-pages.json"
CLOSURE_CACHE_PATH = _CACHE_ROOT / "closure-raw-pages.json"

# Timing
DEFAULT_SCRAPE_TTL_MS = 15 * 60 * 1000
DEFAULT_FETCH_TIMEOUT = 60.0
DEFAULT_TFB_TIMEOUT = 20.0
DEFAULT_RETRY_BUDGET = 600.0
DEFAULT_BACKOFF_INITIAL = 5.0
DEFAULT_BACKOFF_MAX = 30.0
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_PAGE_CONCURRENCY = 4

# Proxy defaults
DEFAULT_PROXY_HOST = "au.decodo.com"
DEFAULT_PROXY_PORTS = tuple(range(30001, 30011))
DEFAULT_PROXY_PROVIDER = "decodo"

# Closure impact taxonomy, in definition order
CLOSURE_TAG_RULES = (
    (
        "ROAD_ACCESS",
        r"\b(road|roads|track|tracks|trail|trails|fire\s+trail|bridge|vehicle|4wd|driv\w*|access)\b",
    ),
    ("CAMPING", r"\b(camp|campground|campgrounds|camping|picnic|rest\s+area|caravan)\b"),
    ("EVENT", r"\b(event|festival|community)\b"),
    (
        "OPERATIONS",
        r"\b(pest|harvest\w*|logging|truck|quarry|fossick\w*|maintenance|works|restoration|"
        r"weather|flood\w*|landslip|landslide|bushfire|hazard\w*)\b",
    ),
)
CLOSURE_TAG_LABELS = {
    "ROAD_ACCESS": "Road/trail access",
    "CAMPING": "Camping impact",
    "EVENT": "Event closure",
    "OPERATIONS": "Operations/safety",
}

# Fallback facility taxonomy: (key, label, iconKey)
DEFAULT_FACILITY_DEFINITIONS = (
    ("camping", "Camping", "camping"),
    ("walking", "Walking track", "walking"),
    ("fourwheeling", "4WD tracks", "four-wheel-drive"),
    ("cycling", "Designated mntn bike track", "cycling"),
    ("horse", "Designated horse riding track", "horse-riding"),
    ("canoeing", "Canoeing/kayaking", "canoeing"),
    ("waterways", "Waterways", "waterways"),
    ("fishing", "Fishing", "fishing"),
    ("caravan", "Caravan site", "caravan"),
    ("picnicing", "Picnic area", "picnic"),
    ("lookout", "Lookouts", "lookout"),
    ("adventure", "Adventure", "adventure"),
    ("hunting", "Authorised hunting", "hunting"),
    ("cabin", "Cabins or huts available", "cabin"),
    ("fireplace", "Fireplace", "fireplace"),
    ("twowheeling", "2WD access", "two-wheel-drive"),
    ("toilets", "Toilets", "toilets"),
    ("wheelchair", "Wheelchair access", "wheelchair"),
)

# Reconciliation
FUZZY_DIRECTORY_MATCH_THRESHOLD = 0.88
CLOSURE_MATCH_THRESHOLD = 0.68
FOREST_NAME_STOP_WORDS = {
    "state",
    "forest",
    "forests",
    "nsw",
    "new",
    "south",
    "wales",
    "region",
    "area",
    "native",
    "around",
}

# Status texts
BAN_STATUS_DEFAULT_TEXT = {
    "BANNED": "Solid Fuel Fire Ban",
    "NOT_BANNED": "No Solid Fuel Fire Ban",
    "UNKNOWN": "Unknown",
}
UNLISTED_FOREST_STATUS_TEXT = "Unknown (not listed on Solid Fuel Fire Ban pages)"
TOTAL_FIRE_BAN_STATUS_TEXT = {
    "BANNED": "Total Fire Ban",
    "NOT_BANNED": "No Total Fire Ban",
    "UNKNOWN": "Unknown (Total Fire Ban status unavailable)",
}
