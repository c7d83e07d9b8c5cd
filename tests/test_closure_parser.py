from forestbans.workflows.closure_parser import (
    classify_closure_notice_tags,
    merge_closure_tags,
    parse_closure_date,
    parse_closure_notice_detail_page,
    parse_closure_notice_forest_name_hint,
    parse_closure_notice_status,
    parse_closure_notices_page,
)
from forestbans.workflows.models import ClosureNoticeStatus

BASE_URL = "https://forestclosure.fcnsw.net/indexframe"

LIST_HTML = """
<html><body>
<ul id="closuresList">
  <li id="closureItem1">
    <a href="/closure?id=101" title="Watagan State Forest: Road closed due to landslide">
      <time>12 March 2024</time>
      <time>Further notice</time>
    </a>
  </li>
  <li id="closureItem2">
    <a href="closure?id=102" title="Olney State Forest closed">
      <time>1 January 2024</time>
      <time>31 January 2024</time>
    </a>
  </li>
  <li id="closureItem3">
    <a href="closure-detail" title="Campground upgrade works">
      <time>not a date</time>
    </a>
  </li>
</ul>
<ul><li id="closureItem9"><a href="/ignored?id=9" title="Outside list">x</a></li></ul>
</body></html>
"""


def test_classify_tags_follow_taxonomy_order():
    tags = classify_closure_notice_tags("road closed due to landslide")
    assert "ROAD_ACCESS" in tags
    assert tags == ["ROAD_ACCESS", "OPERATIONS"]
    assert classify_closure_notice_tags("road closed due to landslide") == tags

    text = "Harvesting operations: camping area closed, access via fire trail only"
    assert classify_closure_notice_tags(text) == ["ROAD_ACCESS", "CAMPING", "OPERATIONS"]
    assert classify_closure_notice_tags("") == []
    assert classify_closure_notice_tags(None) == []


def test_merge_closure_tags_dedupes_in_taxonomy_order():
    assert merge_closure_tags(["OPERATIONS", "ROAD_ACCESS"], ["CAMPING", "ROAD_ACCESS"]) == [
        "ROAD_ACCESS",
        "CAMPING",
        "OPERATIONS",
    ]


def test_notice_status_and_hint_from_title():
    assert parse_closure_notice_status("Olney State Forest closed") is ClosureNoticeStatus.CLOSED
    assert parse_closure_notice_status("Watagan State Forest: Road closed") is ClosureNoticeStatus.PARTIAL
    assert parse_closure_notice_status("Bago State Forest partially closed") is ClosureNoticeStatus.PARTIAL
    assert parse_closure_notice_status("Pest control notice") is ClosureNoticeStatus.NOTICE
    assert parse_closure_notice_forest_name_hint("Watagan State Forest: Road closed") == "Watagan State Forest"
    assert parse_closure_notice_forest_name_hint("Campground upgrade works") is None


def test_parse_closure_date():
    assert parse_closure_date("12 March 2024") == "2024-03-12T00:00:00.000Z"
    assert parse_closure_date("Tuesday 12th March 2024") == "2024-03-12T00:00:00.000Z"
    assert parse_closure_date("12/03/2024") == "2024-03-12T00:00:00.000Z"
    assert parse_closure_date("until further notice") is None
    assert parse_closure_date("soon") is None
    assert parse_closure_date(None) is None


def test_parse_closure_notices_page():
    notices = parse_closure_notices_page(LIST_HTML, BASE_URL)

    assert [notice.id for notice in notices] == ["101", "102", "campground-upgrade-works"]
    first, second, third = notices
    assert first.detail_url == "https://forestclosure.fcnsw.net/closure?id=101"
    assert first.status is ClosureNoticeStatus.PARTIAL
    assert first.start_date == "2024-03-12T00:00:00.000Z"
    assert first.end_date is None
    assert first.tags == ["ROAD_ACCESS", "OPERATIONS"]
    assert first.forest_name_hint == "Watagan State Forest"
    assert first.detail_text is None

    assert second.detail_url == "https://forestclosure.fcnsw.net/closure?id=102"
    assert second.status is ClosureNoticeStatus.CLOSED
    assert second.end_date == "2024-01-31T00:00:00.000Z"

    assert third.start_date is None
    assert third.end_date is None
    assert third.tags == ["CAMPING", "OPERATIONS"]


def test_detail_page_absent_empty_and_present():
    assert parse_closure_notice_detail_page(None) is None
    assert parse_closure_notice_detail_page("<html><main><p>No body</p></main></html>") is None
    assert parse_closure_notice_detail_page('<main><div class="text-container-wd"></div></main>') == ""

    html = '<main><div class="text-container-wd"><p>Line one</p><p>Line   two<br>continued</p></div></main>'
    assert parse_closure_notice_detail_page(html) == "Line one\nLine two\ncontinued"


def test_detail_page_more_information_fallback():
    html = """
    <main>
      <h3>Closure details</h3><p>Ignored</p>
      <h3>More information</h3><p>Contact the Tumut office.</p>
    </main>
    """
    assert parse_closure_notice_detail_page(html) == "Contact the Tumut office."
