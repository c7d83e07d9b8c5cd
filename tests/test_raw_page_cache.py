import json

import pytest

from forestbans.workflows.errors import ArchiveFormatError, ArchiveVersionError
from forestbans.workflows.raw_page_cache import (
    RAW_PAGES_ARCHIVE_VERSION,
    RawPageCache,
    RawPageEntry,
    RawPagesArchive,
    read_raw_pages_archive,
    write_raw_pages_archive,
)

URL = "https://www.forestrycorporation.com.au/visit/solid-fuel-fire-bans"
T0 = 1_717_200_000.0  # 2024-06-01T00:00:00Z


class Clock:
    def __init__(self, start: float = T0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


def _archive() -> RawPagesArchive:
    return RawPagesArchive(
        schema_version=RAW_PAGES_ARCHIVE_VERSION,
        pages={
            URL: RawPageEntry(URL, URL + "/", "2024-06-01T00:00:00.000Z", "<html>areas</html>"),
            URL + "/hunter": RawPageEntry(URL + "/hunter", URL + "/hunter", "2024-05-31T23:00:00.000Z", "<p>ünïcode</p>"),
        },
    )


def test_archive_round_trip(tmp_path):
    path = tmp_path / "raw.json"
    archive = _archive()
    write_raw_pages_archive(path, archive)

    loaded = read_raw_pages_archive(path)
    assert loaded == archive
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk == archive.to_dict()
    assert on_disk["pages"][URL] == {
        "fetchedAt": "2024-06-01T00:00:00.000Z",
        "finalUrl": URL + "/",
        "html": "<html>areas</html>",
    }


def test_archive_version_mismatch_is_rejected(tmp_path):
    path = tmp_path / "raw.json"
    payload = _archive().to_dict()
    payload["schemaVersion"] = RAW_PAGES_ARCHIVE_VERSION + 1
    path.write_text(json.dumps(payload), encoding="utf-8")

    with pytest.raises(ArchiveVersionError):
        read_raw_pages_archive(path)


def test_archive_corrupt_json_is_rejected(tmp_path):
    path = tmp_path / "raw.json"
    path.write_text('{"schemaVersion": 1, "pages": {', encoding="utf-8")
    with pytest.raises(ArchiveFormatError):
        read_raw_pages_archive(path)


def test_archive_entry_missing_html_is_rejected():
    payload = {"schemaVersion": 1, "pages": {URL: {"fetchedAt": "2024-06-01T00:00:00Z", "finalUrl": URL}}}
    with pytest.raises(ArchiveFormatError):
        RawPagesArchive.from_dict(payload)


def test_cache_get_respects_ttl(tmp_path):
    clock = Clock()
    cache = RawPageCache(tmp_path / "raw.json", ttl_ms=60_000, now=clock).open()
    cache.record(URL, URL, "<html>v1</html>")

    clock.now += 30
    assert cache.get(URL).html == "<html>v1</html>"
    assert not cache.is_stale(URL)

    clock.now += 31
    assert cache.get(URL) is None
    assert cache.is_stale(URL)
    # expired entries stay available for staleness queries and export
    assert cache.peek(URL).html == "<html>v1</html>"
    assert URL in cache.export_all_pages().pages


def test_cache_ttl_zero_is_always_stale(tmp_path):
    clock = Clock()
    cache = RawPageCache(tmp_path / "raw.json", ttl_ms=0, now=clock).open()
    cache.record(URL, URL, "<html></html>")

    assert cache.get(URL) is None
    assert cache.is_stale(URL)
    assert cache.peek(URL) is not None

    future = RawPageEntry(URL, URL, "2030-01-01T00:00:00.000Z", "<html>future</html>")
    cache.put(URL, future)
    assert cache.get(URL) is None


def test_cache_put_overwrites_and_persists(tmp_path):
    path = tmp_path / "nested" / "raw.json"
    clock = Clock()
    with RawPageCache(path, ttl_ms=60_000, now=clock) as cache:
        cache.record(URL, URL, "<html>v1</html>")
        clock.now += 1
        cache.record(URL, URL + "?redirected", "<html>v2</html>")
        assert len(cache) == 1

    reopened = RawPageCache(path, ttl_ms=60_000, now=clock).open()
    entry = reopened.get(URL)
    assert entry is not None
    assert entry.html == "<html>v2</html>"
    assert entry.final_url == URL + "?redirected"
    assert entry.url == URL


def test_cache_ignores_mismatched_archive(tmp_path):
    path = tmp_path / "raw.json"
    payload = _archive().to_dict()
    payload["schemaVersion"] = 99
    path.write_text(json.dumps(payload), encoding="utf-8")

    cache = RawPageCache(path, ttl_ms=60_000, now=Clock()).open()
    assert len(cache) == 0
    assert cache.peek(URL) is None


def test_cache_ignores_corrupt_archive(tmp_path):
    path = tmp_path / "raw.json"
    path.write_text("not json", encoding="utf-8")

    cache = RawPageCache(path, ttl_ms=60_000, now=Clock()).open()
    assert len(cache) == 0
    cache.record(URL, URL, "<html></html>")
    assert read_raw_pages_archive(path).pages[URL].html == "<html></html>"


def test_cache_ignores_archive_with_invalid_utf8(tmp_path):
    path = tmp_path / "raw.json"
    path.write_bytes(b'{"schemaVersion": 1, "pages": {"\xff\xfe": 1}}')

    with pytest.raises(ArchiveFormatError):
        read_raw_pages_archive(path)

    cache = RawPageCache(path, ttl_ms=1000, now=Clock()).open()
    assert len(cache) == 0
    assert cache.get(URL) is None
