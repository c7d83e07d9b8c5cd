from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .pipeline_config import CLOSURE_CACHE_PATH, RAW_CACHE_PATH
from .pipeline_utils import _as_bool, _safe_int, collect_environment_warnings
from .proxy_retry import _load_proxy_rotation_from_env


_SECRET_TOKENS = ("key", "token", "secret", "password", "pass")


def _is_secret_name(name: str) -> bool:
    lowered = (name or "").lower()
    return any(token in lowered for token in _SECRET_TOKENS)


def redact_value(value: str, keep: int = 4) -> str:
    raw = (value or "").strip()
    if not raw:
        return ""
    if len(raw) <= keep * 2:
        return "*" * len(raw)
    return f"{raw[:keep]}...{raw[-keep:]}"


def _redacted_env_value(name: str, value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return redact_value(value) if _is_secret_name(name) else value


def _check_playwright_available() -> bool:
    from . import page_fetch

    return getattr(page_fetch, "async_playwright", None) is not None


def _check_writable(path: Path) -> bool:
    if path.exists():
        return os.access(path, os.W_OK)
    # The archive writer creates missing directories, so look for the nearest existing ancestor.
    parent = path.parent
    while not parent.exists() and parent != parent.parent:
        parent = parent.parent
    return parent.exists() and os.access(parent, os.W_OK)


def build_doctor_report() -> Dict[str, Any]:
    report: Dict[str, Any] = {
        "generated_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
        "ok": True,
        "checks": [],
        "environment_warnings": collect_environment_warnings(),
    }

    def add_check(
        name: str,
        status: bool,
        *,
        detail: Optional[str] = None,
        remedy: Optional[str] = None,
        level: str = "warn",
        value: Optional[str] = None,
    ) -> None:
        entry = {
            "name": name,
            "status": "ok" if status else "missing",
            "level": level,
            "detail": detail,
        }
        if remedy:
            entry["remedy"] = remedy
        if value is not None:
            entry["value"] = _redacted_env_value(name, value)
        report["checks"].append(entry)
        if not status and level == "warn":
            report["ok"] = False

    proxy = _load_proxy_rotation_from_env()
    proxy_wanted = _as_bool(os.getenv("FORCE_PROXY")) or _as_bool(os.getenv("CI"))
    if proxy is not None:
        add_check(
            "PROXY",
            True,
            detail=f"{proxy.provider} via {proxy.display_endpoint} ({len(proxy.ports)} port(s))",
            level="info",
        )
    else:
        add_check(
            "PROXY",
            not proxy_wanted,
            detail="Proxy requested but not configured" if proxy_wanted else "Direct connection (no proxy)",
            remedy="Set PROXY_USERNAME and PROXY_PASSWORD (and optionally PROXY_HOST, PROXY_PORTS).",
            level="warn" if proxy_wanted else "info",
        )
    add_check(
        "PROXY_PASSWORD",
        bool(os.getenv("PROXY_PASSWORD")),
        detail="Proxy password set" if os.getenv("PROXY_PASSWORD") else "Proxy password unset",
        level="info",
        value=os.getenv("PROXY_PASSWORD"),
    )

    playwright_ok = _check_playwright_available()
    backend = os.getenv("FORESTBANS_FETCH_BACKEND", "aiohttp").strip().lower() or "aiohttp"
    add_check(
        "playwright",
        playwright_ok,
        detail="Browser backend available" if playwright_ok else "Browser backend unavailable",
        remedy="pip install 'forestbans[browser]' and run `playwright install --with-deps chromium`.",
        level="warn" if backend == "playwright" else "info",
    )

    for env_name, default in (
        ("FORESTBANS_RAW_CACHE_PATH", RAW_CACHE_PATH),
        ("FORESTBANS_CLOSURE_CACHE_PATH", CLOSURE_CACHE_PATH),
    ):
        path = Path(os.getenv(env_name) or default)
        add_check(
            env_name,
            _check_writable(path),
            detail=str(path),
            remedy=f"Create the cache directory or set {env_name} to a writable location.",
            level="warn",
        )

    ttl = _safe_int(os.getenv("FORESTBANS_SCRAPE_TTL_MS"))
    if ttl == 0:
        add_check("FORESTBANS_SCRAPE_TTL_MS", True, detail="TTL is 0; every request refetches upstream", level="info")

    return report


def format_doctor_report(report: Dict[str, Any]) -> str:
    lines: List[str] = []
    lines.append("forestbans doctor")
    lines.append(f"Generated: {report.get('generated_at')}")
    lines.append("Values are redacted where applicable.")
    lines.append("")
    for check in report.get("checks", []):
        name = check.get("name", "check")
        status = check.get("status", "unknown")
        level = check.get("level", "info")
        detail = check.get("detail")
        value = check.get("value")
        label = f"{name}: {status}"
        if value:
            label = f"{label} ({value})"
        lines.append(f"- [{level}] {label}")
        if detail:
            lines.append(f"  detail: {detail}")
        remedy = check.get("remedy")
        if remedy:
            lines.append(f"  remedy: {remedy}")
    warnings = report.get("environment_warnings") or []
    if warnings:
        lines.append("")
        lines.append("Environment warnings:")
        for warning in warnings:
            code = warning.get("code", "warning")
            message = warning.get("message", "")
            remedy = warning.get("remedy", "")
            lines.append(f"- {code}: {message}")
            if remedy:
                lines.append(f"  remedy: {remedy}")
    return "\n".join(lines).rstrip() + "\n"
