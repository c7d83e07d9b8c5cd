import asyncio

import pytest

from forestbans.workflows.errors import NonRetryableFetchError, PageParseError, RetryableFetchError
from forestbans.workflows.page_fetch import PageResponse
from forestbans.workflows.scraper import ForestryScraper

ENTRY = "https://forests.test/bans"
HUNTER = "https://forests.test/bans/hunter"
COAST = "https://forests.test/bans/south-coast"
DIRECTORY = ("https://forests.test/directory-a", "https://forests.test/directory-b")
CLOSURES = "https://closures.test/list"

MAIN_HTML = """
<table>
  <tr><td><a href="/bans/hunter">Hunter</a></td><td>Solid Fuel Fire Ban</td></tr>
  <tr><td><a href="/bans/south-coast">South Coast</a></td><td>No Solid Fuel Fire Ban</td></tr>
</table>
"""
CLOSURE_LIST_HTML = """
<ul id="closuresList">
  <li id="closureItem1"><a href="/closure?id=1" title="Watagan State Forest: Road closed"></a></li>
  <li id="closureItem2"><a href="/closure?id=2" title="Olney State Forest closed"></a></li>
</ul>
"""


class FakeFetcher:
    def __init__(self, pages):
        self.pages = pages
        self.calls = []

    async def fetch(self, url, proxy_id=None):
        self.calls.append((url, proxy_id))
        page = self.pages.get(url)
        if page is None:
            raise NonRetryableFetchError(f"HTTP 404 for {url}")
        if isinstance(page, Exception):
            raise page
        return PageResponse(status=200, final_url=url, html=page)


def _scraper(pages):
    fetcher = FakeFetcher(pages)
    scraper = ForestryScraper(
        fetcher,
        entry_url=ENTRY,
        directory_urls=DIRECTORY,
        closures_url=CLOSURES,
        concurrency=2,
    )
    return scraper, fetcher


def test_fetch_forestry_pages_visits_every_area_and_directory():
    scraper, fetcher = _scraper({ENTRY: MAIN_HTML, HUNTER: "<ul></ul>", COAST: "<ul></ul>", DIRECTORY[0]: "<div></div>"})

    warnings = asyncio.run(scraper.fetch_forestry_pages(10001))

    assert warnings == []
    urls = [url for url, _ in fetcher.calls]
    assert urls[0] == ENTRY
    assert set(urls[1:3]) == {HUNTER, COAST}
    assert urls[3:] == [DIRECTORY[0]]
    assert {proxy for _, proxy in fetcher.calls} == {10001}


def test_transient_area_failure_raises_retryable():
    scraper, _ = _scraper(
        {
            ENTRY: MAIN_HTML,
            HUNTER: "<ul></ul>",
            COAST: RetryableFetchError("HTTP 503 for coast", status=503),
        }
    )
    with pytest.raises(RetryableFetchError, match="1 of 2 area page"):
        asyncio.run(scraper.fetch_forestry_pages())


def test_permanent_area_failure_is_a_warning():
    scraper, _ = _scraper({ENTRY: MAIN_HTML, HUNTER: "<ul></ul>", DIRECTORY[1]: "<div></div>"})

    warnings = asyncio.run(scraper.fetch_forestry_pages())

    assert warnings == ["1 area page(s) could not be fetched."]


def test_directory_failure_is_a_warning():
    scraper, fetcher = _scraper({ENTRY: MAIN_HTML, HUNTER: "<ul></ul>", COAST: "<ul></ul>"})

    warnings = asyncio.run(scraper.fetch_forestry_pages())

    assert len(warnings) == 1
    assert warnings[0].startswith("Could not fetch the forest directory page (HTTP 404")
    assert [url for url, _ in fetcher.calls][-2:] == list(DIRECTORY)


def test_landing_page_without_areas_is_a_parse_error():
    scraper, _ = _scraper({ENTRY: "<p>maintenance</p>"})
    with pytest.raises(PageParseError):
        asyncio.run(scraper.fetch_forestry_pages())


def test_fetch_closure_pages_counts_failed_details():
    scraper, fetcher = _scraper(
        {
            CLOSURES: CLOSURE_LIST_HTML,
            "https://closures.test/closure?id=1": "<main><p>Road closed</p></main>",
        }
    )

    warnings = asyncio.run(scraper.fetch_closure_pages())

    assert warnings == ["1 closure detail page(s) could not be fetched."]
    assert len(fetcher.calls) == 3


def test_fetch_closure_pages_list_failure_propagates():
    scraper, _ = _scraper({CLOSURES: RetryableFetchError("HTTP 502 for list", status=502)})
    with pytest.raises(RetryableFetchError):
        asyncio.run(scraper.fetch_closure_pages())
