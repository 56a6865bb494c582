from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from http_utils import (
    Clock,
    HostHealth,
    HostRateLimiter,
    RetryPolicy,
    Sleeper,
    host_of,
    is_dns_error,
)

DEFAULT_USER_AGENT = "catalog-sync/1.0"
DEFAULT_IMAGE_TIMEOUT = 10
DEFAULT_RATE_LIMIT_SECONDS = 0.2
DEFAULT_UNHEALTHY_WINDOW = 300.0

NOT_FOUND = "not_found"
FORBIDDEN = "forbidden"
HTTP_ERROR = "http_error"
TIMEOUT = "timeout"
TRANSPORT = "transport"
UNHEALTHY_HOST = "unhealthy_host"


@dataclass(frozen=True)
class FetchFailure:
    kind: str
    reason: str
    retryable: bool
    status: Optional[int] = None


@dataclass(frozen=True)
class FetchResult:
    url: str
    data: Optional[bytes] = None
    failure: Optional[FetchFailure] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.data is not None


@dataclass
class FetchStats:
    total: int = 0
    success: int = 0
    failed: int = 0
    skipped_unhealthy: int = 0
    by_host: Dict[str, int] = field(default_factory=dict)

    def record(self, host: str, ok: bool) -> None:
        self.total += 1
        if ok:
            self.success += 1
        else:
            self.failed += 1
        self.by_host[host] = self.by_host.get(host, 0) + 1

    def snapshot(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "success": self.success,
            "failed": self.failed,
            "skipped_unhealthy": self.skipped_unhealthy,
            "by_host": dict(self.by_host),
        }


class AssetFetcher:
    """Downloads cover and logo images one at a time.

    Rate limiter and host health are per instance, so every run gets its
    own state.
    """

    def __init__(
        self,
        *,
        session: Any | None = None,
        timeout: float = DEFAULT_IMAGE_TIMEOUT,
        rate_limiter: HostRateLimiter | None = None,
        host_health: HostHealth | None = None,
        backoff_step: float = 2.0,
        clock: Clock = time.monotonic,
        sleep: Sleeper = time.sleep,
    ) -> None:
        if session is None:
            session = requests.Session()
            session.headers.update({"User-Agent": DEFAULT_USER_AGENT})
        self.session = session
        self.timeout = timeout
        self.backoff_step = backoff_step
        self._sleep = sleep
        self.rate_limiter = rate_limiter or HostRateLimiter(
            DEFAULT_RATE_LIMIT_SECONDS, clock=clock, sleep=sleep
        )
        self.host_health = host_health or HostHealth(
            DEFAULT_UNHEALTHY_WINDOW, clock=clock
        )
        self.stats = FetchStats()

    def fetch(self, url: str, max_attempts: int = 1) -> FetchResult:
        host = host_of(url)
        if host and self.host_health.is_unhealthy(host):
            self.stats.skipped_unhealthy += 1
            logging.warning("Skipping download from unhealthy host: %s", url)
            return FetchResult(
                url,
                failure=FetchFailure(
                    UNHEALTHY_HOST, f"host {host} is marked unhealthy", retryable=True
                ),
            )

        policy = RetryPolicy(attempts=max_attempts, backoff_step=self.backoff_step)
        failure: FetchFailure | None = None
        attempt = 0
        for attempt in range(1, policy.attempts + 1):
            self.rate_limiter.wait(url)
            logging.debug(
                "Downloading image from %s (attempt %s/%s)", url, attempt, policy.attempts
            )
            data, failure = self._attempt(url, policy)
            self.stats.record(host, data is not None)
            if data is not None:
                logging.debug("Downloaded %s bytes from %s", len(data), url)
                return FetchResult(url, data=data, attempts=attempt)
            if not failure.retryable:
                break
            if attempt < policy.attempts:
                delay = policy.delay_for_attempt(attempt)
                logging.warning(
                    "Image retry %s/%s after error: %s (sleep %.1fs) url=%s",
                    attempt,
                    policy.attempts,
                    failure.reason,
                    delay,
                    url,
                )
                self._sleep(delay)

        if failure is not None and failure.kind == TIMEOUT:
            self.host_health.mark_unhealthy(host)
        return FetchResult(url, failure=failure, attempts=attempt)

    def _attempt(
        self, url: str, policy: RetryPolicy
    ) -> tuple[Optional[bytes], Optional[FetchFailure]]:
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.Timeout as exc:
            logging.warning("Request timeout for %s: %s", url, exc)
            return None, FetchFailure(TIMEOUT, f"timeout: {exc}", retryable=True)
        except requests.RequestException as exc:
            if is_dns_error(exc):
                logging.warning("DNS error for %s: %s", url, exc)
            else:
                logging.warning(
                    "HTTP request failed for %s: %s (%s)", url, exc, type(exc).__name__
                )
            return None, FetchFailure(TRANSPORT, str(exc), retryable=True)

        try:
            status = int(response.status_code)
            if 200 <= status < 300:
                return response.content, None
            reason = getattr(response, "reason", "") or ""
            logging.warning(
                "Failed to download image from %s - HTTP %s %s", url, status, reason
            )
            if policy.is_terminal(status):
                kind = NOT_FOUND if status == 404 else FORBIDDEN
                return None, FetchFailure(
                    kind, f"HTTP {status}", retryable=False, status=status
                )
            return None, FetchFailure(
                HTTP_ERROR, f"HTTP {status}", retryable=True, status=status
            )
        finally:
            close = getattr(response, "close", None)
            if callable(close):
                close()
