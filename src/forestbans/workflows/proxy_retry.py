"""Retrying fetch orchestrator that rotates egress proxies.

``run_with_proxy_retries`` drives a unit of work once per candidate proxy
until it succeeds. Each failure is classified into an ``AttemptOutcome``:

* ``RETRYABLE`` - network/timeout errors and bot challenges; move to the
  next proxy after a backoff delay.
* ``TERMINAL`` - parse errors and anything unrecognized; raised at once,
  because a different egress will not fix them.

Running out of candidates raises ``ProxyExhaustedError``; running out of
wall-clock budget raises ``RetryBudgetExceededError``.
"""

from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, TypeVar
from urllib.parse import urlparse

import aiohttp

from .errors import NonRetryableFetchError, ProxyExhaustedError, RetryableFetchError, RetryBudgetExceededError
from .pipeline_config import (
    DEFAULT_BACKOFF_INITIAL,
    DEFAULT_BACKOFF_MAX,
    DEFAULT_PROXY_HOST,
    DEFAULT_PROXY_PORTS,
    DEFAULT_PROXY_PROVIDER,
    DEFAULT_RETRY_BUDGET,
)
from .pipeline_utils import _as_bool, _env_int_list, _safe_int

logger = logging.getLogger(__name__)

T = TypeVar("T")
ProxyId = Optional[str]

PROXY_CREDIT_STATUS_HINTS = {402, 407, 509, 511}
PROXY_CREDIT_KEYWORDS = (
    "out of credit",
    "out-of-credit",
    "out of credits",
    "no credit",
    "insufficient credit",
    "insufficient credits",
    "insufficient balance",
    "insufficient traffic",
    "traffic exhausted",
    "bandwidth exhausted",
    "bandwidth limit exceeded",
    "not enough credit",
    "exhausted your traffic",
)


def _detect_proxy_credit_exhaustion(status: int, text: Optional[str], error: Optional[str]) -> Optional[str]:
    haystacks: List[str] = []
    if text:
        haystacks.append(text)
    if error:
        haystacks.append(error)
    for blob in haystacks:
        lower = blob.lower()
        for keyword in PROXY_CREDIT_KEYWORDS:
            if keyword in lower:
                return keyword
    if status in PROXY_CREDIT_STATUS_HINTS:
        return f"status_{status}"
    return None


@dataclass(frozen=True)
class ProxyRotationSettings:
    scheme: str
    host: str
    ports: Tuple[int, ...]
    username: Optional[str]
    password: Optional[str]
    provider: str = DEFAULT_PROXY_PROVIDER

    @property
    def display_endpoint(self) -> str:
        if len(self.ports) == 1:
            return f"{self.host}:{self.ports[0]}"
        return f"{self.host}:{self.ports[0]}-{self.ports[-1]}"

    def proxy_url(self, proxy_id: str) -> str:
        """Map a candidate id (the port) to an HTTP proxy URL."""

        return f"{self.scheme}://{self.host}:{proxy_id}"

    def candidate_ids(self, *, shuffle: bool = True, rng: Optional[random.Random] = None) -> List[str]:
        ids = [str(port) for port in self.ports]
        if shuffle:
            (rng or random).shuffle(ids)
        return ids


def _load_proxy_rotation_from_env() -> Optional[ProxyRotationSettings]:
    """Build proxy settings when the environment asks for them.

    Proxies are used only when ``CI`` or ``FORCE_PROXY`` is set and both
    ``PROXY_USERNAME`` and ``PROXY_PASSWORD`` are present.
    """

    if _as_bool(os.getenv("FORESTBANS_PROXY_DISABLE"), False):
        return None
    wanted = _as_bool(os.getenv("CI")) or _as_bool(os.getenv("FORCE_PROXY"))
    username = os.getenv("PROXY_USERNAME", "").strip()
    password = os.getenv("PROXY_PASSWORD", "").strip()
    if not wanted or not username or not password:
        return None

    raw_host = os.getenv("PROXY_HOST", "").strip() or DEFAULT_PROXY_HOST
    parsed = urlparse(raw_host if "://" in raw_host else f"http://{raw_host}")
    host = parsed.hostname or DEFAULT_PROXY_HOST
    ports = _env_int_list(os.getenv("PROXY_PORTS", ""))
    if not ports and parsed.port:
        ports = (parsed.port,)
    if not ports:
        single = _safe_int(os.getenv("PROXY_PORT"))
        ports = (single,) if single else DEFAULT_PROXY_PORTS
    provider = os.getenv("PROXY_PROVIDER", DEFAULT_PROXY_PROVIDER).strip() or DEFAULT_PROXY_PROVIDER
    return ProxyRotationSettings(
        scheme=parsed.scheme or "http",
        host=host,
        ports=tuple(ports),
        username=username,
        password=password,
        provider=provider,
    )


def proxy_candidates(settings: Optional[ProxyRotationSettings], *, shuffle: bool = True) -> List[ProxyId]:
    """Return the ordered candidate list; ``[None]`` means a direct connection."""

    if settings is None or not settings.ports:
        return [None]
    return list(settings.candidate_ids(shuffle=shuffle))


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: Optional[int] = None
    backoff_initial: float = DEFAULT_BACKOFF_INITIAL
    backoff_max: float = DEFAULT_BACKOFF_MAX
    max_total_seconds: float = DEFAULT_RETRY_BUDGET
    attempt_timeout: Optional[float] = None

    def attempts_for(self, candidate_count: int) -> int:
        if self.max_attempts is None:
            return max(1, candidate_count)
        return max(1, self.max_attempts)


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


@dataclass
class AttemptRecord:
    attempt: int
    proxy_id: ProxyId
    outcome: AttemptOutcome
    error: Optional[str] = None
    elapsed: float = 0.0
    credit_exhausted: Optional[str] = None


def classify_failure(exc: BaseException) -> AttemptOutcome:
    if isinstance(exc, NonRetryableFetchError):
        return AttemptOutcome.TERMINAL
    if isinstance(exc, (RetryableFetchError, aiohttp.ClientError, asyncio.TimeoutError, OSError)):
        return AttemptOutcome.RETRYABLE
    return AttemptOutcome.TERMINAL


async def run_with_proxy_retries(
    attempt: Callable[[ProxyId], Awaitable[T]],
    candidates: Sequence[ProxyId],
    policy: Optional[RetryPolicy] = None,
    *,
    label: str = "scrape",
    history: Optional[List[AttemptRecord]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Run ``attempt`` per candidate proxy until one succeeds."""

    policy = policy or RetryPolicy()
    pool: List[ProxyId] = list(candidates) or [None]
    total = policy.attempts_for(len(pool))
    started = clock()
    delay = policy.backoff_initial
    last_error: Optional[BaseException] = None
    tried = 0

    for index in range(total):
        proxy_id = pool[index % len(pool)]
        if index > 0:
            elapsed = clock() - started
            if elapsed + delay > policy.max_total_seconds:
                raise RetryBudgetExceededError(last_error, tried, elapsed)
            await sleep(delay)
            delay = min(delay * 2, policy.backoff_max)

        tried += 1
        attempt_started = clock()
        logger.info("%s attempt %d/%d via %s", label, index + 1, total, proxy_id or "direct connection")
        try:
            if policy.attempt_timeout:
                result = await asyncio.wait_for(attempt(proxy_id), timeout=policy.attempt_timeout)
            else:
                result = await attempt(proxy_id)
        except Exception as exc:
            outcome = classify_failure(exc)
            credit = _detect_proxy_credit_exhaustion(getattr(exc, "status", None) or -1, None, str(exc))
            if history is not None:
                history.append(
                    AttemptRecord(
                        attempt=index + 1,
                        proxy_id=proxy_id,
                        outcome=outcome,
                        error=f"{type(exc).__name__}: {exc}",
                        elapsed=clock() - attempt_started,
                        credit_exhausted=credit,
                    )
                )
            if credit and proxy_id is not None:
                logger.warning("Proxy credits exhausted for %s via %s: %s", label, proxy_id, credit)
            if outcome is AttemptOutcome.TERMINAL:
                raise
            last_error = exc
            logger.warning("%s attempt %d failed via %s: %s", label, index + 1, proxy_id or "direct", exc)
            continue

        if history is not None:
            history.append(
                AttemptRecord(
                    attempt=index + 1,
                    proxy_id=proxy_id,
                    outcome=AttemptOutcome.SUCCESS,
                    elapsed=clock() - attempt_started,
                )
            )
        return result

    raise ProxyExhaustedError(last_error, tried)


__all__ = [
    "ProxyRotationSettings",
    "RetryPolicy",
    "AttemptOutcome",
    "AttemptRecord",
    "classify_failure",
    "proxy_candidates",
    "run_with_proxy_retries",
]
