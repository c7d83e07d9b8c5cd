"""Durable URL -> fetched page store with TTL semantics.

The archive on disk is the durability boundary::

    {"schemaVersion": 1,
     "pages": {"<url>": {"fetchedAt": "<iso>", "finalUrl": "<url>", "html": "..."}}}

A reader that finds a different ``schemaVersion`` rejects the whole file.
``RawPageCache`` never talks to the network; it only memoizes pages that a
fetcher hands to :meth:`RawPageCache.put`.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from ..core.keys import K_FETCHED_AT, K_FINAL_URL, K_HTML, K_PAGES, K_SCHEMA_VERSION
from .errors import ArchiveError, ArchiveFormatError, ArchiveVersionError
from .pipeline_utils import epoch_from_iso, iso_from_epoch

logger = logging.getLogger(__name__)

RAW_PAGES_ARCHIVE_VERSION = 1


@dataclass(frozen=True)
class RawPageEntry:
    url: str
    final_url: str
    fetched_at: str
    html: str

    def to_dict(self) -> Dict[str, str]:
        return {K_FETCHED_AT: self.fetched_at, K_FINAL_URL: self.final_url, K_HTML: self.html}

    @classmethod
    def from_dict(cls, url: str, payload: Any) -> "RawPageEntry":
        if not isinstance(payload, dict):
            raise ArchiveFormatError(f"page entry for {url!r} is not an object")
        values = {}
        for key in (K_FETCHED_AT, K_FINAL_URL, K_HTML):
            value = payload.get(key)
            if not isinstance(value, str):
                raise ArchiveFormatError(f"page entry for {url!r} has no string {key!r}")
            values[key] = value
        if epoch_from_iso(values[K_FETCHED_AT]) is None:
            raise ArchiveFormatError(f"page entry for {url!r} has invalid fetchedAt")
        return cls(url=url, final_url=values[K_FINAL_URL], fetched_at=values[K_FETCHED_AT], html=values[K_HTML])


@dataclass
class RawPagesArchive:
    schema_version: int = RAW_PAGES_ARCHIVE_VERSION
    pages: Dict[str, RawPageEntry] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            K_SCHEMA_VERSION: self.schema_version,
            K_PAGES: {url: entry.to_dict() for url, entry in self.pages.items()},
        }

    @classmethod
    def from_dict(cls, payload: Any, *, expected_version: int = RAW_PAGES_ARCHIVE_VERSION) -> "RawPagesArchive":
        if not isinstance(payload, dict):
            raise ArchiveFormatError("archive root is not an object")
        version = payload.get(K_SCHEMA_VERSION)
        if version != expected_version or isinstance(version, bool):
            raise ArchiveVersionError(version, expected_version)
        pages = payload.get(K_PAGES)
        if not isinstance(pages, dict):
            raise ArchiveFormatError("archive has no pages map")
        return cls(
            schema_version=version,
            pages={url: RawPageEntry.from_dict(url, entry) for url, entry in pages.items()},
        )


def read_raw_pages_archive(path: Path) -> RawPagesArchive:
    """Load an archive, raising ``ArchiveError`` subclasses when it is unusable."""

    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ArchiveFormatError(f"{path}: {exc}") from exc
    return RawPagesArchive.from_dict(payload)


def write_raw_pages_archive(path: Path, archive: RawPagesArchive) -> None:
    """Write the archive atomically (temp file + rename in the same directory)."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=str(target.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(archive.to_dict(), handle, ensure_ascii=False)
        os.replace(tmp_name, target)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


class RawPageCache:
    """Memoization layer over a raw page archive file.

    Writes go through a single lock so concurrent callers observe
    last-write-wins without ever seeing a half-written entry or file.
    """

    def __init__(
        self,
        path: Optional[Path],
        ttl_ms: int,
        *,
        now: Callable[[], float] = time.time,
        autoflush: bool = True,
    ) -> None:
        self.path = Path(path) if path is not None else None
        self.ttl_ms = max(0, int(ttl_ms))
        self._now = now
        self._autoflush = autoflush
        self._pages: Dict[str, RawPageEntry] = {}
        self._lock = threading.RLock()
        self._dirty = False
        self._opened = False

    def __enter__(self) -> "RawPageCache":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def open(self) -> "RawPageCache":
        with self._lock:
            if self._opened:
                return self
            self._pages = {}
            if self.path is not None and self.path.exists():
                try:
                    self._pages = dict(read_raw_pages_archive(self.path).pages)
                except ArchiveError as exc:
                    logger.warning("Ignoring raw page archive %s: %s", self.path, exc)
                except OSError as exc:
                    logger.warning("Could not read raw page archive %s: %s", self.path, exc)
            self._opened = True
        return self

    def close(self) -> None:
        with self._lock:
            if self._opened:
                self.flush()
            self._opened = False

    def flush(self) -> None:
        with self._lock:
            if not self._dirty or self.path is None:
                return
            write_raw_pages_archive(self.path, self.export_all_pages())
            self._dirty = False

    def _ensure_open(self) -> None:
        if not self._opened:
            self.open()

    def _age_ms(self, entry: RawPageEntry) -> float:
        fetched = epoch_from_iso(entry.fetched_at)
        if fetched is None:
            return float("inf")
        return (self._now() - fetched) * 1000.0

    def is_fresh(self, entry: RawPageEntry) -> bool:
        # ttl_ms == 0 means always stale, even for entries stamped in the future
        return self.ttl_ms > 0 and self._age_ms(entry) < self.ttl_ms

    def peek(self, url: str) -> Optional[RawPageEntry]:
        """Return the stored entry regardless of age."""

        self._ensure_open()
        with self._lock:
            return self._pages.get(url)

    def get(self, url: str) -> Optional[RawPageEntry]:
        """Return the entry only while it is younger than the TTL."""

        entry = self.peek(url)
        if entry is None or not self.is_fresh(entry):
            return None
        return entry

    def is_stale(self, url: str) -> bool:
        entry = self.peek(url)
        return entry is None or not self.is_fresh(entry)

    def put(self, url: str, entry: RawPageEntry) -> None:
        self._ensure_open()
        if entry.url != url:
            entry = RawPageEntry(url=url, final_url=entry.final_url, fetched_at=entry.fetched_at, html=entry.html)
        with self._lock:
            self._pages[url] = entry
            self._dirty = True
            if self._autoflush:
                self.flush()

    def record(self, url: str, final_url: str, html: str) -> RawPageEntry:
        entry = RawPageEntry(url=url, final_url=final_url or url, fetched_at=iso_from_epoch(self._now()), html=html)
        self.put(url, entry)
        return entry

    def export_all_pages(self) -> RawPagesArchive:
        self._ensure_open()
        with self._lock:
            return RawPagesArchive(schema_version=RAW_PAGES_ARCHIVE_VERSION, pages=dict(self._pages))

    def __len__(self) -> int:
        with self._lock:
            return len(self._pages)


__all__ = [
    "RAW_PAGES_ARCHIVE_VERSION",
    "RawPageEntry",
    "RawPagesArchive",
    "RawPageCache",
    "read_raw_pages_archive",
    "write_raw_pages_archive",
]
