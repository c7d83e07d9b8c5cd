import asyncio

import aiohttp
import pytest

from forestbans.workflows.errors import (
    BotChallengeError,
    PageParseError,
    ProxyExhaustedError,
    RetryableFetchError,
    RetryBudgetExceededError,
)
from forestbans.workflows.proxy_retry import (
    AttemptOutcome,
    RetryPolicy,
    _load_proxy_rotation_from_env,
    classify_failure,
    proxy_candidates,
    run_with_proxy_retries,
)


class FakeSleep:
    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _set_proxy_env(monkeypatch, **extra):
    monkeypatch.delenv("FORESTBANS_PROXY_DISABLE", raising=False)
    monkeypatch.delenv("FORCE_PROXY", raising=False)
    monkeypatch.delenv("CI", raising=False)
    monkeypatch.setenv("PROXY_HOST", "rotator.local")
    monkeypatch.setenv("PROXY_PORTS", "30001-30003")
    monkeypatch.setenv("PROXY_USERNAME", "user1")
    monkeypatch.setenv("PROXY_PASSWORD", "pass1")
    for key, value in extra.items():
        monkeypatch.setenv(key, value)


def test_proxy_rotation_env_requires_opt_in(monkeypatch):
    _set_proxy_env(monkeypatch)
    assert _load_proxy_rotation_from_env() is None

    monkeypatch.setenv("FORCE_PROXY", "1")
    settings = _load_proxy_rotation_from_env()
    assert settings is not None
    assert settings.host == "rotator.local"
    assert settings.ports == (30001, 30002, 30003)
    assert settings.display_endpoint == "rotator.local:30001-30003"
    assert settings.proxy_url("30002") == "http://rotator.local:30002"
    assert sorted(proxy_candidates(settings)) == ["30001", "30002", "30003"]
    assert proxy_candidates(settings, shuffle=False) == ["30001", "30002", "30003"]


def test_proxy_rotation_env_disabled_or_missing_credentials(monkeypatch):
    _set_proxy_env(monkeypatch, CI="true", FORESTBANS_PROXY_DISABLE="1")
    assert _load_proxy_rotation_from_env() is None

    monkeypatch.delenv("FORESTBANS_PROXY_DISABLE")
    monkeypatch.delenv("PROXY_PASSWORD")
    assert _load_proxy_rotation_from_env() is None
    assert proxy_candidates(None) == [None]


def test_classify_failure():
    assert classify_failure(RetryableFetchError("503")) is AttemptOutcome.RETRYABLE
    assert classify_failure(BotChallengeError("challenge")) is AttemptOutcome.RETRYABLE
    assert classify_failure(aiohttp.ClientConnectionError()) is AttemptOutcome.RETRYABLE
    assert classify_failure(asyncio.TimeoutError()) is AttemptOutcome.RETRYABLE
    assert classify_failure(PageParseError("no areas")) is AttemptOutcome.TERMINAL
    assert classify_failure(KeyError("bug")) is AttemptOutcome.TERMINAL


def test_retry_advances_to_next_proxy_on_retryable_failure():
    calls = []
    sleep = FakeSleep()
    history = []

    async def attempt(proxy_id):
        calls.append(proxy_id)
        if proxy_id == "a":
            raise BotChallengeError("Just a moment")
        return f"ok via {proxy_id}"

    result = asyncio.run(
        run_with_proxy_retries(
            attempt,
            ["a", "b", "c"],
            RetryPolicy(backoff_initial=2, backoff_max=10, max_total_seconds=100),
            history=history,
            sleep=sleep,
        )
    )

    assert result == "ok via b"
    assert calls == ["a", "b"]
    assert sleep.delays == [2]
    assert [record.outcome for record in history] == [AttemptOutcome.RETRYABLE, AttemptOutcome.SUCCESS]
    assert history[0].proxy_id == "a"


def test_terminal_failure_is_raised_without_retry():
    calls = []

    async def attempt(proxy_id):
        calls.append(proxy_id)
        raise PageParseError("No fire ban areas were found")

    with pytest.raises(PageParseError):
        asyncio.run(run_with_proxy_retries(attempt, ["a", "b"], RetryPolicy(), sleep=FakeSleep()))
    assert calls == ["a"]


def test_exhausting_candidates_raises_with_last_error_and_count():
    sleep = FakeSleep()

    async def attempt(proxy_id):
        raise RetryableFetchError(f"HTTP 503 via {proxy_id}", status=503)

    with pytest.raises(ProxyExhaustedError) as excinfo:
        asyncio.run(
            run_with_proxy_retries(
                attempt,
                ["a", "b", "c", "d"],
                RetryPolicy(backoff_initial=1, backoff_max=3, max_total_seconds=1000),
                sleep=sleep,
            )
        )

    assert excinfo.value.attempts_tried == 4
    assert "via d" in str(excinfo.value.last_error)
    # exponential, capped at backoff_max
    assert sleep.delays == [1, 2, 3]


def test_budget_exceeded_is_distinct_from_exhaustion():
    sleep = FakeSleep()

    async def attempt(proxy_id):
        raise RetryableFetchError("timeout")

    with pytest.raises(RetryBudgetExceededError) as excinfo:
        asyncio.run(
            run_with_proxy_retries(
                attempt,
                ["a", "b", "c"],
                RetryPolicy(backoff_initial=5, backoff_max=5, max_total_seconds=1),
                sleep=sleep,
            )
        )

    assert excinfo.value.attempts_tried == 1
    assert sleep.delays == []
    assert not isinstance(excinfo.value, ProxyExhaustedError)


def test_max_attempts_cycles_candidates():
    calls = []

    async def attempt(proxy_id):
        calls.append(proxy_id)
        if len(calls) < 3:
            raise RetryableFetchError("busy")
        return "done"

    result = asyncio.run(
        run_with_proxy_retries(
            attempt,
            [None],
            RetryPolicy(max_attempts=3, backoff_initial=0, backoff_max=0, max_total_seconds=10),
            sleep=FakeSleep(),
        )
    )
    assert result == "done"
    assert calls == [None, None, None]
