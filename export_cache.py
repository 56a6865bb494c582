from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from http_utils import is_local_origin

ASSET_TYPES = ("logo", "cover")


@dataclass(frozen=True)
class GameReference:
    id: int
    name: str
    modified_since_last_export: bool


@dataclass
class AssetCacheEntry:
    game_id: int
    logo_url: Optional[str] = None
    logo_downloaded: bool = False
    cover_url: Optional[str] = None
    cover_downloaded: bool = False
    last_synced_at: Optional[datetime] = None
    persisted: bool = False

    def url_for(self, asset_type: str) -> Optional[str]:
        return self.logo_url if asset_type == "logo" else self.cover_url

    def downloaded(self, asset_type: str) -> bool:
        return self.logo_downloaded if asset_type == "logo" else self.cover_downloaded

    def mark(self, asset_type: str, url: str | None, downloaded: bool) -> None:
        if asset_type == "logo":
            if url is not None:
                self.logo_url = url
            self.logo_downloaded = downloaded
        else:
            if url is not None:
                self.cover_url = url
            self.cover_downloaded = downloaded

    def touch(self) -> None:
        self.last_synced_at = datetime.now(timezone.utc)


@dataclass(frozen=True)
class AssetDecision:
    asset_type: str
    url: str
    needed: bool
    fetch: bool
    url_changed: bool

    @property
    def local(self) -> bool:
        return self.needed and not self.fetch


def needs_game_sync(
    game: GameReference, cache: Optional[AssetCacheEntry], full_sync: bool
) -> bool:
    return full_sync or cache is None or game.modified_since_last_export


def needs_asset_sync(
    asset_url: str | None,
    cached_url: str | None,
    cached_downloaded: bool,
    *,
    cache_present: bool = True,
) -> bool:
    if not asset_url or not asset_url.strip():
        return False
    if not cache_present:
        return True
    return cached_url != asset_url or not cached_downloaded


def plan_asset(
    asset_type: str,
    asset_url: str | None,
    cache: Optional[AssetCacheEntry],
    local_hosts: Iterable[str],
    *,
    force: bool = False,
) -> AssetDecision:
    """Decide what to do with one asset of a game.

    A URL served by this application itself counts as already present at
    the destination: it is needed (so the cache gets marked) but never
    fetched.

    ``force`` marks every non-empty URL as needed regardless of the cache.
    """
    url = (asset_url or "").strip()
    cached_url = cache.url_for(asset_type) if cache is not None else None
    needed = needs_asset_sync(
        url,
        cached_url,
        cache.downloaded(asset_type) if cache is not None else False,
        cache_present=cache is not None,
    ) or (force and bool(url))
    url_changed = bool(url) and cached_url is not None and cached_url != url
    fetch = needed and not is_local_origin(url, local_hosts)
    return AssetDecision(
        asset_type=asset_type,
        url=url,
        needed=needed,
        fetch=fetch,
        url_changed=url_changed,
    )
