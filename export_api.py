from __future__ import annotations

import logging
import random
import time
from typing import Any

import requests

from http_utils import Sleeper

DEFAULT_USER_AGENT = "catalog-sync/1.0"


class ExportApiError(RuntimeError):
    pass


def bearer(auth_token: str | None) -> str:
    token = (auth_token or "").strip()
    if not token:
        return ""
    if " " in token:
        return token
    return f"Bearer {token}"


class CatalogClient:
    """Client for the catalog's internal full-export CSV endpoint."""

    def __init__(
        self,
        export_url: str,
        timeout: int,
        *,
        retries: int = 2,
        retry_backoff: float = 2.0,
        session: Any | None = None,
        sleep: Sleeper = time.sleep,
    ) -> None:
        self.export_url = export_url
        self.timeout = timeout
        self.retries = max(0, int(retries))
        self.retry_backoff = max(0.0, float(retry_backoff))
        if session is None:
            session = requests.Session()
            session.headers.update({"User-Agent": DEFAULT_USER_AGENT})
        self.session = session
        self._sleep = sleep
        self._retry_statuses = {500, 502, 503, 504}

    def _sleep_backoff(self, attempt: int, exc: Exception) -> None:
        delay = self.retry_backoff * (2 ** (attempt - 1))
        delay += random.uniform(0, self.retry_backoff) if self.retry_backoff else 0.0
        logging.warning(
            "Export request retry %s/%s after error: %s (sleep %.1fs) url=%s",
            attempt,
            self.retries,
            exc,
            delay,
            self.export_url,
        )
        self._sleep(delay)

    def fetch_full_export(self, auth_token: str | None = None) -> bytes:
        headers = {"Accept": "text/csv"}
        authorization = bearer(auth_token)
        if authorization:
            headers["Authorization"] = authorization

        attempts = self.retries + 1
        for attempt in range(1, attempts + 1):
            try:
                response = self.session.get(
                    self.export_url, headers=headers, timeout=self.timeout
                )
            except requests.RequestException as exc:
                if attempt >= attempts:
                    raise ExportApiError(f"Full export request failed: {exc}") from exc
                self._sleep_backoff(attempt, exc)
                continue

            if response.status_code in self._retry_statuses and attempt < attempts:
                self._sleep_backoff(attempt, RuntimeError(f"HTTP {response.status_code}"))
                continue
            if response.status_code in (401, 403):
                raise ExportApiError(
                    f"Full export rejected credentials: HTTP {response.status_code}"
                )
            if response.status_code != 200:
                raise ExportApiError(
                    f"Failed to get CSV export: HTTP {response.status_code} "
                    f"{(response.text or '')[:200]}"
                )
            data = response.content
            logging.info("Downloaded full export CSV: %s bytes", len(data))
            return data

        raise ExportApiError("Full export request failed")
