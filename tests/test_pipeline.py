import asyncio

import pytest

from forestbans.workflows import raw_page_cache
from forestbans.workflows.errors import ProxyExhaustedError
from forestbans.workflows.models import BanStatus
from forestbans.workflows.page_fetch import PageResponse
from forestbans.workflows.pipeline import ForestDataPipeline, PipelineSettings, parse_saved_archives
from forestbans.workflows.pipeline_config import CLOSURES_URL, FORESTRY_DIRECTORY_URLS, FORESTRY_ENTRY_URL
from forestbans.workflows.raw_page_cache import RawPageEntry, RawPagesArchive, write_raw_pages_archive
from forestbans.workflows.total_fire_ban import TotalFireBanSnapshot

NOW = 1_717_200_000.0
HUNTER_URL = "https://www.forestrycorporation.com.au/visit/solid-fuel-fire-bans/hunter"

PAGES = {
    FORESTRY_ENTRY_URL: """
        <table><tr><td><a href="/visit/solid-fuel-fire-bans/hunter">Hunter</a></td>
        <td>Solid Fuel Fire Ban</td></tr></table>
    """,
    HUNTER_URL: """
        <div><p>This area includes the following state forests:</p>
        <ul><li>Watagan State Forest</li><li>Olney State Forest</li></ul></div>
    """,
    FORESTRY_DIRECTORY_URLS[0]: """
        <div class="mb-4"><a href="/visiting/forests/watagan" data-lat="-33.0" data-lng="151.4">Watagan State Forest</a>
        <i data-original-title="Camping" class="g-color-primary"></i></div>
    """,
    CLOSURES_URL: """
        <ul id="closuresList"><li id="closureItem7">
        <a href="closure?id=7" title="Olney State Forest: Camping area closed"></a></li></ul>
    """,
    "https://forestclosure.fcnsw.net/closure?id=7": (
        '<main><div class="text-container-wd"><p>Camping area closed for works.</p></div></main>'
    ),
}


class FakeBackend:
    def __init__(self, pages, failing=(), fail_once=(), errors=None):
        self.pages = pages
        self.failing = set(failing)
        self.fail_once = set(fail_once)
        self.errors = errors or {}
        self.calls = []

    async def fetch(self, url, proxy_id=None):
        self.calls.append(url)
        if url in self.errors:
            raise self.errors[url]
        if url in self.fail_once:
            self.fail_once.discard(url)
            return PageResponse(status=503, final_url=url, html="upstream unavailable")
        if url in self.failing:
            return PageResponse(status=503, final_url=url, html="upstream unavailable")
        if url not in self.pages:
            return PageResponse(status=404, final_url=url, html="not found")
        return PageResponse(status=200, final_url=url, html=self.pages[url])

    async def close(self):
        pass


class FakeTotalFireBanClient:
    def __init__(self, error=None):
        self.error = error

    def fetch_current_snapshot(self):
        if self.error is not None:
            raise self.error
        return TotalFireBanSnapshot(fetched_at="2024-06-01T00:00:00.000Z")


async def _no_sleep(delay):
    pass


def _settings(tmp_path, **overrides):
    values = dict(
        raw_cache_path=tmp_path / "forestry.json",
        closure_cache_path=tmp_path / "closures.json",
        backoff_initial=0.0,
        max_attempts=2,
    )
    values.update(overrides)
    return PipelineSettings(**values)


def _pipeline(tmp_path, backend, tfb=None, **overrides):
    return ForestDataPipeline(
        _settings(tmp_path, **overrides),
        backend=backend,
        total_fire_ban_client=tfb or FakeTotalFireBanClient(),
        now=lambda: NOW,
        sleep=_no_sleep,
    )


def test_pipeline_merges_all_sources(tmp_path):
    backend = FakeBackend(PAGES)

    result = asyncio.run(_pipeline(tmp_path, backend).run())

    assert result.fetched_at == "2024-06-01T00:00:00.000Z"
    assert [forest.forest_name for forest in result.forests] == ["Watagan State Forest", "Olney State Forest"]
    watagan, olney = result.forests
    assert watagan.ban_status is BanStatus.BANNED
    assert (watagan.latitude, watagan.longitude) == (-33.0, 151.4)
    assert olney.closures[0].id == "7"
    assert olney.closures[0].detail_text == "Camping area closed for works."
    assert (tmp_path / "forestry.json").exists()
    assert (tmp_path / "closures.json").exists()
    assert result.attempts


def test_second_run_reads_from_cache(tmp_path):
    backend = FakeBackend(PAGES)
    pipeline = _pipeline(tmp_path, backend)

    asyncio.run(pipeline.run())
    first_calls = len(backend.calls)
    asyncio.run(pipeline.run())

    assert len(backend.calls) == first_calls

    asyncio.run(pipeline.run(force_refresh=True))
    assert len(backend.calls) > first_calls


def test_mandatory_source_failure_propagates(tmp_path):
    backend = FakeBackend(PAGES, failing={FORESTRY_ENTRY_URL})

    with pytest.raises(ProxyExhaustedError):
        asyncio.run(_pipeline(tmp_path, backend).run())

    assert backend.calls.count(FORESTRY_ENTRY_URL) == 2


def test_optional_sources_degrade_to_warnings(tmp_path):
    backend = FakeBackend(PAGES, failing={CLOSURES_URL})
    tfb = FakeTotalFireBanClient(error=RuntimeError("feed offline"))

    result = asyncio.run(_pipeline(tmp_path, backend, tfb).run())

    assert len(result.forests) == 2
    assert any(warning.startswith("Closure notices could not be refreshed:") for warning in result.warnings)
    assert "Total Fire Ban status could not be loaded: feed offline" in result.warnings
    assert "Closure notices page was not found in the raw archive." in result.warnings


def test_unexpected_closure_error_does_not_block_bans(tmp_path):
    backend = FakeBackend(PAGES, errors={CLOSURES_URL: ValueError("unexpected closure markup")})

    result = asyncio.run(_pipeline(tmp_path, backend).run())

    assert [forest.forest_name for forest in result.forests] == ["Watagan State Forest", "Olney State Forest"]
    assert "Closure notices could not be refreshed: unexpected closure markup" in result.warnings


def test_caches_are_written_once_per_run(monkeypatch, tmp_path):
    writes = []
    original = raw_page_cache.write_raw_pages_archive

    def counting_write(path, archive):
        writes.append((path.name, len(archive.pages)))
        original(path, archive)

    monkeypatch.setattr(raw_page_cache, "write_raw_pages_archive", counting_write)

    asyncio.run(_pipeline(tmp_path, FakeBackend(PAGES)).run())

    assert sorted(writes) == [("closures.json", 2), ("forestry.json", 3)]


def test_forced_retry_reuses_pages_fetched_earlier_in_the_run(tmp_path):
    backend = FakeBackend(PAGES, fail_once={HUNTER_URL})

    result = asyncio.run(_pipeline(tmp_path, backend).run(force_refresh=True))

    assert len(result.forests) == 2
    assert backend.calls.count(FORESTRY_ENTRY_URL) == 1
    assert backend.calls.count(HUNTER_URL) == 2


def test_parse_saved_archives(tmp_path):
    fetched_at = "2024-06-01T00:00:00.000Z"
    archive = RawPagesArchive(
        pages={url: RawPageEntry(url, url, fetched_at, html) for url, html in PAGES.items() if url != CLOSURES_URL}
    )
    forestry_path = tmp_path / "forestry.json"
    write_raw_pages_archive(forestry_path, archive)
    broken = tmp_path / "closures.json"
    broken.write_text("{not json", encoding="utf-8")

    result = parse_saved_archives(forestry_path, broken, now=NOW)

    assert [forest.forest_name for forest in result.forests] == ["Watagan State Forest", "Olney State Forest"]
    assert result.warnings[0].startswith(f"Closure archive {broken} could not be read:")


def test_settings_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("FORESTBANS_SCRAPE_TTL_MS", "0")
    monkeypatch.setenv("FORESTBANS_RAW_CACHE_PATH", str(tmp_path / "raw.json"))
    monkeypatch.setenv("FORESTBANS_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("FORESTBANS_FETCH_BACKEND", "playwright")
    monkeypatch.delenv("FORESTBANS_SNAPSHOT_PATH", raising=False)
    monkeypatch.delenv("CI", raising=False)
    monkeypatch.delenv("FORCE_PROXY", raising=False)

    settings = PipelineSettings.from_env()

    assert settings.scrape_ttl_ms == 0
    assert settings.raw_cache_path == tmp_path / "raw.json"
    assert settings.snapshot_path is None
    assert settings.fetch_backend == "playwright"
    assert settings.retry_policy().max_attempts == 3
    assert settings.proxy is None
