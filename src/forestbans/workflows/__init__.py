"""High-level exports for the forestbans workflows."""

from .models import (
    BanStatus,
    ClosureNotice,
    ForestArea,
    ForestSnapshot,
    PersistedForestPoint,
    SolidFuelBanScope,
)
from .pipeline import ForestDataPipeline, PipelineResult, PipelineSettings, parse_saved_archives, run_pipeline
from .proxy_retry import RetryPolicy, run_with_proxy_retries
from .raw_page_cache import RawPageCache, read_raw_pages_archive, write_raw_pages_archive
from .reconciler import build_forest_points, build_most_restrictive_ban_by_forest, merge_duplicate_forests

__all__ = [
    "BanStatus",
    "ClosureNotice",
    "ForestArea",
    "ForestSnapshot",
    "PersistedForestPoint",
    "SolidFuelBanScope",
    "ForestDataPipeline",
    "PipelineResult",
    "PipelineSettings",
    "parse_saved_archives",
    "run_pipeline",
    "RetryPolicy",
    "run_with_proxy_retries",
    "RawPageCache",
    "read_raw_pages_archive",
    "write_raw_pages_archive",
    "build_forest_points",
    "build_most_restrictive_ban_by_forest",
    "merge_duplicate_forests",
]
