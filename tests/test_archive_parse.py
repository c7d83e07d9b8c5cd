import pytest

from forestbans.workflows.archive_parse import parse_closures_archive, parse_forestry_archive
from forestbans.workflows.errors import PageParseError
from forestbans.workflows.pipeline_config import CLOSURES_URL, FORESTRY_DIRECTORY_URLS, FORESTRY_ENTRY_URL
from forestbans.workflows.raw_page_cache import RawPageEntry, RawPagesArchive

FETCHED_AT = "2024-06-01T00:00:00.000Z"
HUNTER_URL = "https://www.forestrycorporation.com.au/visit/solid-fuel-fire-bans/hunter"
COAST_URL = "https://www.forestrycorporation.com.au/visit/solid-fuel-fire-bans/south-coast"

MAIN_HTML = """
<table>
  <tr><td><a href="/visit/solid-fuel-fire-bans/hunter">Hunter</a></td><td>Solid Fuel Fire Ban</td></tr>
  <tr><td><a href="/visit/solid-fuel-fire-bans/south-coast">South Coast</a></td><td>No Solid Fuel Fire Ban</td></tr>
</table>
"""
HUNTER_HTML = """
<div><p>This area includes the following state forests:</p>
<ul><li>Watagan State Forest</li><li>Olney State Forest</li></ul></div>
"""
DIRECTORY_HTML = """
<div class="mb-4"><a href="/visiting/forests/watagan" data-lat="-33.0" data-lng="151.4">Watagan State Forest</a>
<i data-original-title="Camping" class="g-color-primary"></i></div>
"""
CLOSURE_LIST_HTML = """
<ul id="closuresList">
  <li id="closureItem1"><a href="closure?id=1" title="Watagan State Forest: Road closed"></a></li>
  <li id="closureItem2"><a href="closure?id=2" title="Olney State Forest closed"></a></li>
</ul>
"""
CLOSURE_DETAIL_HTML = '<main><div class="text-container-wd"><p>Camping area closed for pest control.</p></div></main>'


def _archive(pages):
    return RawPagesArchive(pages={url: RawPageEntry(url, url, FETCHED_AT, html) for url, html in pages.items()})


def test_parse_forestry_archive_with_missing_area_page():
    archive = _archive(
        {
            FORESTRY_ENTRY_URL: MAIN_HTML,
            HUNTER_URL: HUNTER_HTML,
            FORESTRY_DIRECTORY_URLS[1]: DIRECTORY_HTML,
        }
    )
    result = parse_forestry_archive(archive)

    assert [area.area_name for area in result.areas] == ["Hunter", "South Coast"]
    assert result.areas[0].forests == ["Watagan State Forest", "Olney State Forest"]
    assert result.areas[1].forests == []
    assert [forest.forest_name for forest in result.directory.forests] == ["Watagan State Forest"]
    assert result.warnings == ["1 area page(s) were not found in the raw archive."]


def test_parse_forestry_archive_blocked_pages_and_missing_directory():
    archive = _archive(
        {
            FORESTRY_ENTRY_URL: MAIN_HTML,
            HUNTER_URL: "<title>Just a moment...</title>",
            COAST_URL: HUNTER_HTML,
        }
    )
    result = parse_forestry_archive(archive)

    assert result.areas[0].forests == []
    assert result.areas[1].forests == ["Watagan State Forest", "Olney State Forest"]
    assert any("blocked by a bot challenge" in warning for warning in result.warnings)
    assert any("Forest directory page was not found" in warning for warning in result.warnings)


def test_parse_forestry_archive_requires_landing_page():
    with pytest.raises(PageParseError):
        parse_forestry_archive(_archive({HUNTER_URL: HUNTER_HTML}))
    with pytest.raises(PageParseError):
        parse_forestry_archive(_archive({FORESTRY_ENTRY_URL: "<p>Just a moment...</p>"}))
    with pytest.raises(PageParseError):
        parse_forestry_archive(_archive({FORESTRY_ENTRY_URL: "<p>maintenance</p>"}))


def test_parse_closures_archive_missing_detail_is_a_warning():
    detail_url = "https://forestclosure.fcnsw.net/closure?id=1"
    archive = _archive({CLOSURES_URL: CLOSURE_LIST_HTML, detail_url: CLOSURE_DETAIL_HTML})

    result = parse_closures_archive(archive)

    assert [notice.id for notice in result.notices] == ["1", "2"]
    first, second = result.notices
    assert first.detail_text == "Camping area closed for pest control."
    assert first.tags == ["ROAD_ACCESS", "CAMPING", "OPERATIONS"]
    assert second.detail_text is None
    assert result.warnings == ["1 closure detail page(s) were not found in the raw archive."]


def test_parse_closures_archive_without_list_page():
    result = parse_closures_archive(_archive({}))
    assert result.notices == []
    assert result.warnings == ["Closure notices page was not found in the raw archive."]
