"""Shared fixtures: scripted HTTP session, fake clock, temporary catalog store."""

import csv
import io
from typing import Any, Callable, Dict, List, Optional

import pytest
from PIL import Image

from asset_fetcher import AssetFetcher
from catalog_store import CatalogStore
from http_utils import HostHealth, HostRateLimiter

CSV_COLUMNS = [
    "Type", "Name", "Color", "IsActive", "SortOrder", "IsDefault", "StatusType",
    "Description", "FiltersJson", "SortingJson", "IsPublic", "CreatedBy",
    "Status", "Platform", "PlayWith", "PlayedStatus", "Released", "Started",
    "Finished", "Score", "Critic", "CriticProvider", "Grade", "Completion",
    "Story", "Comment", "Logo", "Cover", "IsCheaperByKey", "KeyStoreUrl",
]


def image_bytes(fmt: str = "PNG") -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (2, 2), (200, 10, 10)).save(buffer, fmt)
    return buffer.getvalue()


PNG_BYTES = image_bytes("PNG")
JPEG_BYTES = image_bytes("JPEG")


def make_csv(rows: List[Dict[str, str]], bom: bool = False) -> bytes:
    buffer = io.StringIO(newline="")
    writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow({column: row.get(column, "") for column in CSV_COLUMNS})
    text = buffer.getvalue()
    return (("\ufeff" + text) if bom else text).encode("utf-8")


def game_row(name: str, logo: str = "", cover: str = "", **extra: str) -> Dict[str, str]:
    row = {"Type": "Game", "Name": name, "Logo": logo, "Cover": cover}
    row.update(extra)
    return row


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(round(seconds, 3))
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeResponse:
    def __init__(self, status_code: int = 200, content: bytes = b"", reason: str = "") -> None:
        self.status_code = status_code
        self.content = content
        self.reason = reason
        self.text = content.decode("utf-8", errors="replace")
        self.headers: Dict[str, str] = {}

    def close(self) -> None:
        return


class FakeSession:
    """Serves scripted outcomes per URL; the last outcome repeats once exhausted."""

    def __init__(self) -> None:
        self.routes: Dict[str, List[Any]] = {}
        self.calls: List[str] = []
        self.headers_seen: List[Dict[str, str]] = []
        self.headers: Dict[str, str] = {}
        self.on_get: Optional[Callable[[str], None]] = None

    def route(self, url: str, *outcomes: Any) -> None:
        self.routes[url] = list(outcomes)

    def serve(self, url: str, content: bytes = PNG_BYTES) -> None:
        self.route(url, FakeResponse(200, content))

    def get(self, url: str, timeout: Any = None, headers: Any = None, **_kwargs: Any) -> Any:
        self.calls.append(url)
        self.headers_seen.append(dict(headers or {}))
        if self.on_get is not None:
            self.on_get(url)
        outcomes = self.routes.get(url)
        if not outcomes:
            return FakeResponse(404, b"", "Not Found")
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeClient:
    def __init__(self, csv_data: bytes = b"", error: Exception | None = None) -> None:
        self.csv_data = csv_data
        self.error = error
        self.tokens: List[Any] = []

    def fetch_full_export(self, auth_token: Any = None) -> bytes:
        self.tokens.append(auth_token)
        if self.error is not None:
            raise self.error
        return self.csv_data


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def store(tmp_path):
    catalog = CatalogStore(tmp_path / "catalog.db")
    yield catalog
    catalog.close()


@pytest.fixture
def make_fetcher(session, clock):
    def factory(rate_limit: float = 0.2, unhealthy_window: float = 300.0) -> AssetFetcher:
        return AssetFetcher(
            session=session,
            timeout=5,
            rate_limiter=HostRateLimiter(rate_limit, clock=clock, sleep=clock.sleep),
            host_health=HostHealth(unhealthy_window, clock=clock),
            clock=clock,
            sleep=clock.sleep,
        )

    return factory
