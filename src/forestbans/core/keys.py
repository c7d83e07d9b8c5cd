"""Shared schema keys to avoid magic strings across forestbans modules."""

from __future__ import annotations

# Raw page archive
K_SCHEMA_VERSION = "schemaVersion"
K_PAGES = "pages"
K_FETCHED_AT = "fetchedAt"
K_FINAL_URL = "finalUrl"
K_HTML = "html"

# Served snapshot
K_FORESTS = "forests"
K_STALE = "stale"
K_WARNINGS = "warnings"
K_NEAREST_LEGAL_SPOT = "nearestLegalSpot"

# Forest point / area / closure records
K_ID = "id"
K_FOREST_NAME = "forestName"
K_FOREST_URL = "forestUrl"
K_LATITUDE = "latitude"
K_LONGITUDE = "longitude"
K_BAN_STATUS = "banStatus"
K_BAN_STATUS_TEXT = "banStatusText"
K_BAN_SCOPE = "banScope"
K_AREAS = "areas"
K_AREA_NAME = "areaName"
K_AREA_URL = "areaUrl"
K_STATUS = "status"
K_STATUS_TEXT = "statusText"
K_CLOSURES = "closures"
K_CLOSURE_STATUS = "closureStatus"
K_CLOSURE_TAGS = "closureTags"
K_FACILITIES = "facilities"
K_FILTERS = "filters"
K_TITLE = "title"
K_DETAIL_URL = "detailUrl"
K_DETAIL_TEXT = "detailText"
K_START_DATE = "startDate"
K_END_DATE = "endDate"
K_TAGS = "tags"
K_FOREST_NAME_HINT = "forestNameHint"
K_TOTAL_FIRE_BAN_STATUS = "totalFireBanStatus"
K_TOTAL_FIRE_BAN_STATUS_TEXT = "totalFireBanStatusText"
K_TOTAL_FIRE_BAN_LOOKUP = "totalFireBanLookupCode"
K_FIRE_WEATHER_AREA = "fireWeatherAreaName"
K_DISTANCE_KM = "distanceKm"
