from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable
from urllib.parse import urlparse

_DNS_ERROR_TOKENS = (
    "name or service not known",
    "nodename nor servname provided",
    "temporary failure in name resolution",
    "failed to resolve",
    "cannot resolve",
    "getaddrinfo failed",
    "no address associated with hostname",
)

Clock = Callable[[], float]
Sleeper = Callable[[float], None]


def host_of(url: str | None) -> str:
    if not url:
        return ""
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return ""
    return (parsed.hostname or "").lower()


def is_local_origin(url: str | None, local_hosts: Iterable[str]) -> bool:
    host = host_of(url)
    if not host:
        return False
    return host in {value.strip().lower() for value in local_hosts if value}


def is_dns_error(exc: Exception) -> bool:
    message = str(exc).lower()
    return any(token in message for token in _DNS_ERROR_TOKENS)


@dataclass
class RetryPolicy:
    attempts: int = 1
    backoff_step: float = 2.0
    terminal_statuses: set[int] = field(default_factory=lambda: {403, 404})

    def __post_init__(self) -> None:
        self.attempts = max(1, int(self.attempts))
        self.backoff_step = max(0.0, float(self.backoff_step))

    def delay_for_attempt(self, attempt: int) -> float:
        return self.backoff_step * attempt

    def is_terminal(self, status: int) -> bool:
        return status in self.terminal_statuses


class HostRateLimiter:
    """Keeps a minimum spacing between requests to the same host."""

    def __init__(
        self,
        min_interval: float,
        *,
        clock: Clock = time.monotonic,
        sleep: Sleeper = time.sleep,
    ) -> None:
        self.min_interval = max(0.0, float(min_interval))
        self._clock = clock
        self._sleep = sleep
        self._last_request_ts: Dict[str, float] = {}

    def wait(self, url: str) -> float:
        host = host_of(url)
        if not host or self.min_interval <= 0:
            return 0.0
        waited = 0.0
        last_ts = self._last_request_ts.get(host)
        if last_ts is not None:
            wait_for = self.min_interval - (self._clock() - last_ts)
            if wait_for > 0:
                logging.debug("Rate limit %s: sleeping %.3fs", host, wait_for)
                self._sleep(wait_for)
                waited = wait_for
        self._last_request_ts[host] = self._clock()
        return waited


class HostHealth:
    """Per-run circuit breaker: hosts marked unhealthy fail fast until expiry."""

    def __init__(self, window: float, *, clock: Clock = time.monotonic) -> None:
        self.window = max(0.0, float(window))
        self._clock = clock
        self._unhealthy_until: Dict[str, float] = {}

    def is_unhealthy(self, host: str) -> bool:
        expires_at = self._unhealthy_until.get(host)
        if expires_at is None:
            return False
        if self._clock() >= expires_at:
            self._unhealthy_until.pop(host, None)
            logging.info("Host %s health window expired, allowing requests", host)
            return False
        return True

    def mark_unhealthy(self, host: str) -> None:
        if not host or self.window <= 0:
            return
        self._unhealthy_until[host] = self._clock() + self.window
        logging.warning(
            "Marking host %s as unhealthy for %.0fs due to repeated timeouts",
            host,
            self.window,
        )

    def snapshot(self) -> Dict[str, float]:
        now = self._clock()
        return {
            host: round(expires_at - now, 3)
            for host, expires_at in self._unhealthy_until.items()
            if expires_at > now
        }
