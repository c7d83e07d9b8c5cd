from forestbans.workflows import doctor, page_fetch

PROXY_ENV = ("CI", "FORCE_PROXY", "FORESTBANS_PROXY_DISABLE", "PROXY_USERNAME", "PROXY_PASSWORD", "PROXY_HOST", "PROXY_PORTS", "PROXY_PORT")


def _isolate(monkeypatch, tmp_path):
    for name in PROXY_ENV + ("FORESTBANS_FETCH_BACKEND", "FORESTBANS_SCRAPE_TTL_MS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("FORESTBANS_RAW_CACHE_PATH", str(tmp_path / "cache" / "forestry.json"))
    monkeypatch.setenv("FORESTBANS_CLOSURE_CACHE_PATH", str(tmp_path / "cache" / "closures.json"))


def _check(report, name):
    return next(check for check in report["checks"] if check["name"] == name)


def test_redact_value():
    assert doctor.redact_value("") == ""
    assert doctor.redact_value("short") == "*****"
    assert doctor.redact_value("abcd1234efgh5678") == "abcd...5678"


def test_doctor_direct_connection_is_ok(monkeypatch, tmp_path):
    _isolate(monkeypatch, tmp_path)

    report = doctor.build_doctor_report()

    assert report["ok"] is True
    proxy = _check(report, "PROXY")
    assert proxy["level"] == "info"
    assert proxy["detail"] == "Direct connection (no proxy)"
    assert _check(report, "FORESTBANS_RAW_CACHE_PATH")["status"] == "ok"


def test_doctor_flags_requested_proxy_without_credentials(monkeypatch, tmp_path):
    _isolate(monkeypatch, tmp_path)
    monkeypatch.setenv("FORCE_PROXY", "1")

    report = doctor.build_doctor_report()

    assert report["ok"] is False
    proxy = _check(report, "PROXY")
    assert proxy["status"] == "missing"
    assert proxy["level"] == "warn"
    assert "proxy_credentials_missing" in {item["code"] for item in report["environment_warnings"]}


def test_doctor_reports_proxy_and_redacts_password(monkeypatch, tmp_path):
    _isolate(monkeypatch, tmp_path)
    monkeypatch.setenv("FORCE_PROXY", "true")
    monkeypatch.setenv("PROXY_USERNAME", "scraper")
    monkeypatch.setenv("PROXY_PASSWORD", "hunter2hunter2xyz")
    monkeypatch.setenv("PROXY_PORTS", "30001-30003")

    report = doctor.build_doctor_report()

    assert _check(report, "PROXY")["detail"] == "decodo via au.decodo.com:30001-30003 (3 port(s))"
    password = _check(report, "PROXY_PASSWORD")
    assert password["value"] == "hunt...2xyz"
    text = doctor.format_doctor_report(report)
    assert text.startswith("forestbans doctor\n")
    assert "hunter2hunter2xyz" not in text
    assert "- [info] PROXY_PASSWORD: ok (hunt...2xyz)" in text


def test_doctor_requires_playwright_only_for_browser_backend(monkeypatch, tmp_path):
    _isolate(monkeypatch, tmp_path)
    monkeypatch.setattr(page_fetch, "async_playwright", None, raising=False)

    assert doctor.build_doctor_report()["ok"] is True

    monkeypatch.setenv("FORESTBANS_FETCH_BACKEND", "playwright")
    report = doctor.build_doctor_report()
    assert report["ok"] is False
    assert _check(report, "playwright")["level"] == "warn"
    assert "Environment warnings:" in doctor.format_doctor_report(report)
