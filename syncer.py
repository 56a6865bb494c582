from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from asset_fetcher import AssetFetcher
from catalog_store import (
    AmbiguousGameName,
    CatalogStore,
    CatalogStoreError,
    DuplicateCacheEntry,
)
from config import Config, ConfigError, validate_export_source, validate_sync_target
from export_api import CatalogClient
from export_cache import (
    ASSET_TYPES,
    AssetCacheEntry,
    AssetDecision,
    GameReference,
    needs_game_sync,
    plan_asset,
)
from http_utils import Clock, HostHealth, HostRateLimiter, Sleeper
from records import (
    RECORD_TYPES,
    SETTINGS_FILES,
    CatalogRecord,
    GameRecord,
    parse_csv,
    records_of,
)
from sinks import (
    BACKUPS_DIR,
    GAMES_DIR,
    SETTINGS_DIR,
    ArchiveSink,
    DirectorySink,
    OutputSink,
    latest_backup_name,
    next_backup_name,
)
from telemetry import start_span
from utils import asset_extension, folder_name_for, utc_today
from writer import write_asset, write_json_if_changed


@dataclass
class FailedAssetInfo:
    game_name: str
    failed_asset_types: List[str] = field(default_factory=list)


@dataclass
class SyncStatistics:
    success: bool = False
    cancelled: bool = False
    elapsed_seconds: float = 0.0
    total_games: int = 0
    games_synced: int = 0
    games_skipped: int = 0
    games_unresolved: int = 0
    images_synced: int = 0
    images_retried: int = 0
    images_failed: int = 0
    files_written: int = 0
    failed_assets: List[FailedAssetInfo] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    error_message: Optional[str] = None

    def record_failure(self, game_name: str, asset_type: str) -> None:
        for item in self.failed_assets:
            if item.game_name == game_name:
                if asset_type not in item.failed_asset_types:
                    item.failed_asset_types.append(asset_type)
                return
        self.failed_assets.append(FailedAssetInfo(game_name, [asset_type]))

    def clear_failure(self, game_name: str, asset_type: str) -> None:
        for item in list(self.failed_assets):
            if item.game_name != game_name:
                continue
            if asset_type in item.failed_asset_types:
                item.failed_asset_types.remove(asset_type)
            if not item.failed_asset_types:
                self.failed_assets.remove(item)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PendingAsset:
    game_id: int
    game_name: str
    container: str
    asset_type: str
    url: str
    url_changed: bool


class CatalogSyncer:
    def __init__(
        self,
        store: CatalogStore,
        sink: OutputSink,
        tenant_id: str,
        fetcher: AssetFetcher,
        *,
        full_sync: bool = False,
        local_hosts: Iterable[str] = (),
        retry_passes: int = 2,
        retry_pass_delay: float = 3.0,
        sleep: Sleeper = time.sleep,
        cancel_event: threading.Event | None = None,
        stats: SyncStatistics | None = None,
        defer_persist: bool = False,
    ) -> None:
        self.store = store
        self.sink = sink
        self.tenant_id = tenant_id
        self.fetcher = fetcher
        self.full_sync = full_sync
        self.local_hosts = list(local_hosts)
        self.retry_passes = max(0, int(retry_passes))
        self.retry_pass_delay = max(0.0, float(retry_pass_delay))
        self._sleep = sleep
        self.cancel_event = cancel_event
        self.stats = stats or SyncStatistics()
        self.cache: Dict[int, AssetCacheEntry] = {}
        self.retry_queue: List[PendingAsset] = []
        self.defer_persist = defer_persist
        self.deferred: Dict[int, tuple[str, AssetCacheEntry, bool]] = {}

    def run(self, csv_data: bytes) -> SyncStatistics:
        with start_span(
            "catalog.sync",
            {
                "catalog.tenant_id": self.tenant_id,
                "catalog.full_sync": self.full_sync,
                "catalog.csv_bytes": len(csv_data),
            },
        ):
            self.write_backup(csv_data)
            records = parse_csv(csv_data)
            logging.info("Parsed %s CSV records", len(records))
            self.write_settings(records)
            return self.sync_records(records)

    def write_backup(self, csv_data: bytes) -> bool:
        today = utc_today()
        latest = latest_backup_name(self.sink, today)
        if latest is not None:
            existing = self.sink.read_bytes(f"{BACKUPS_DIR}/{latest}")
            if existing == csv_data:
                logging.debug("Backup unchanged since %s, skipping", latest)
                return False
        self.sink.ensure_container(BACKUPS_DIR)
        name = next_backup_name(self.sink, today)
        self.sink.write_bytes(f"{BACKUPS_DIR}/{name}", csv_data)
        self.stats.files_written += 1
        logging.info("Synced backup CSV: %s", name)
        return True

    def write_settings(self, records: List[CatalogRecord]) -> int:
        self.sink.ensure_container(SETTINGS_DIR)
        written = 0
        for kind, file_name in SETTINGS_FILES.items():
            items = [record.to_settings() for record in records_of(records, RECORD_TYPES[kind])]
            if write_json_if_changed(self.sink, f"{SETTINGS_DIR}/{file_name}", items):
                logging.info("Synced settings file: %s (%s items)", file_name, len(items))
                written += 1
        self.stats.files_written += written
        return written

    def sync_records(self, records: List[CatalogRecord]) -> SyncStatistics:
        games = records_of(records, GameRecord)
        self.stats.total_games = len(games)
        self.cache = self.store.load_cache_entries(self.tenant_id)
        logging.info(
            "Syncing %s games for tenant %s (full=%s, cached=%s)",
            len(games),
            self.tenant_id,
            self.full_sync,
            len(self.cache),
        )

        for record in games:
            if self._cancelled():
                logging.warning("Sync cancelled, stopping before game %s", record.name)
                break
            self.sync_game(record)

        self.run_retry_passes()

        fetch_stats = self.fetcher.stats.snapshot()
        if fetch_stats.get("total") or fetch_stats.get("skipped_unhealthy"):
            logging.info(
                "Image requests: total=%s ok=%s failed=%s skipped_unhealthy=%s hosts=%s",
                fetch_stats.get("total"),
                fetch_stats.get("success"),
                fetch_stats.get("failed"),
                fetch_stats.get("skipped_unhealthy"),
                fetch_stats.get("by_host"),
            )
        unhealthy = self.fetcher.host_health.snapshot()
        if unhealthy:
            logging.warning("Hosts still marked unhealthy: %s", unhealthy)
        logging.info(
            "Sync finished: games synced=%s skipped=%s unresolved=%s, "
            "images synced=%s retried=%s failed=%s, files written=%s",
            self.stats.games_synced,
            self.stats.games_skipped,
            self.stats.games_unresolved,
            self.stats.images_synced,
            self.stats.images_retried,
            self.stats.images_failed,
            self.stats.files_written,
        )
        return self.stats

    def sync_game(self, record: GameRecord) -> None:
        name = record.name
        try:
            game = self.store.resolve_game(self.tenant_id, name)
        except AmbiguousGameName as exc:
            logging.warning("Skipping ambiguous game row: %s", exc)
            self.stats.errors.append(str(exc))
            self.stats.games_unresolved += 1
            return
        if game is None:
            logging.warning("Game not found in catalog, skipping: %s", name)
            self.stats.games_unresolved += 1
            return

        container = f"{GAMES_DIR}/{folder_name_for(name)}"
        self.sink.ensure_container(container)

        cache = self.cache.get(game.id)
        game_dirty = needs_game_sync(game, cache, self.full_sync)
        decisions = [
            plan_asset(
                asset_type,
                getattr(record, asset_type),
                cache,
                self.local_hosts,
                force=game_dirty,
            )
            for asset_type in ASSET_TYPES
        ]
        needed = [decision for decision in decisions if decision.needed]
        if not game_dirty and not needed:
            logging.debug("Game unchanged, skipping: %s", name)
            self.stats.games_skipped += 1
            return

        self.stats.games_synced += 1
        with start_span(
            "catalog.game",
            {
                "catalog.game_id": game.id,
                "catalog.game_dirty": game_dirty,
                "catalog.assets": ",".join(d.asset_type for d in needed),
            },
        ):
            if game_dirty or any(d.url_changed for d in decisions):
                if write_json_if_changed(self.sink, f"{container}/info.json", record.to_info()):
                    self.stats.files_written += 1

            entry = cache or AssetCacheEntry(game_id=game.id)
            for decision in needed:
                self._sync_asset(game, name, container, entry, decision)
            entry.touch()
            self._persist(game.id, name, entry, clear_modified=game_dirty)

    def _sync_asset(
        self,
        game: GameReference,
        name: str,
        container: str,
        entry: AssetCacheEntry,
        decision: AssetDecision,
    ) -> None:
        if decision.local:
            logging.debug("Local %s for %s, marking as present: %s", decision.asset_type, name, decision.url)
            entry.mark(decision.asset_type, decision.url, True)
            self.stats.images_synced += 1
            return

        result = self.fetcher.fetch(decision.url, max_attempts=1)
        if result.ok:
            self._store_asset(container, decision.asset_type, decision.url, decision.url_changed, result.data)
            entry.mark(decision.asset_type, decision.url, True)
            self.stats.images_synced += 1
            return

        failure = result.failure
        entry.mark(decision.asset_type, None, False)
        self.stats.images_failed += 1
        self.stats.record_failure(name, decision.asset_type)
        if failure is not None and failure.retryable:
            logging.warning(
                "Failed to download %s for %s, queued for retry: %s",
                decision.asset_type,
                name,
                failure.reason,
            )
            self.retry_queue.append(
                PendingAsset(
                    game_id=game.id,
                    game_name=name,
                    container=container,
                    asset_type=decision.asset_type,
                    url=decision.url,
                    url_changed=decision.url_changed,
                )
            )
        else:
            logging.warning(
                "Failed to download %s for %s permanently: %s",
                decision.asset_type,
                name,
                failure.reason if failure else "unknown",
            )

    def _store_asset(
        self, container: str, asset_type: str, url: str, url_changed: bool, data: bytes
    ) -> None:
        ext = asset_extension(url, data)
        write_asset(self.sink, container, asset_type, ext, data, url_changed)
        self.stats.files_written += 1

    def _persist(
        self, game_id: int, name: str, entry: AssetCacheEntry, clear_modified: bool
    ) -> bool:
        if self.defer_persist:
            queued = self.deferred.get(game_id)
            if queued is not None:
                clear_modified = clear_modified or queued[2]
            self.deferred[game_id] = (name, entry, clear_modified)
            self.cache[game_id] = entry
            return True
        return self._save(game_id, name, entry, clear_modified)

    def commit_progress(self) -> int:
        """Save cache state held back while the output was still being built."""
        pending, self.deferred = self.deferred, {}
        saved = 0
        for game_id, (name, entry, clear_modified) in pending.items():
            if self._save(game_id, name, entry, clear_modified):
                saved += 1
        logging.info("Committed sync state for %s of %s games", saved, len(pending))
        return saved

    def _save(
        self, game_id: int, name: str, entry: AssetCacheEntry, clear_modified: bool
    ) -> bool:
        try:
            try:
                self.store.save_game_progress(self.tenant_id, entry, clear_modified)
            except DuplicateCacheEntry as exc:
                logging.warning("Cache entry for %s already exists, updating: %s", name, exc)
                entry.persisted = True
                self.store.save_game_progress(self.tenant_id, entry, clear_modified)
        except CatalogStoreError as exc:
            logging.warning("Failed to persist sync state for %s: %s", name, exc)
            self.stats.errors.append(f"{name}: {exc}")
            self._discard_entry(game_id)
            return False
        self.cache[game_id] = entry
        return True

    def _discard_entry(self, game_id: int) -> None:
        self.cache.pop(game_id, None)
        try:
            stored = self.store.get_cache_entry(self.tenant_id, game_id)
        except CatalogStoreError as exc:
            logging.warning("Failed to reload cache entry for game %s: %s", game_id, exc)
            return
        if stored is not None:
            self.cache[game_id] = stored

    def run_retry_passes(self) -> None:
        for pass_no in range(1, self.retry_passes + 1):
            if not self.retry_queue:
                return
            if self._cancelled():
                logging.warning("Sync cancelled, skipping retry pass %s", pass_no)
                return
            logging.info(
                "Retry pass %s/%s: %s failed images, waiting %.1fs",
                pass_no,
                self.retry_passes,
                len(self.retry_queue),
                self.retry_pass_delay,
            )
            if self.retry_pass_delay > 0:
                self._sleep(self.retry_pass_delay)
            with start_span(
                "catalog.retry_pass",
                {"catalog.retry_pass": pass_no, "catalog.pending": len(self.retry_queue)},
            ):
                self._retry_pass()

        if self.retry_queue:
            logging.warning(
                "%s images still failing after %s retry passes",
                len(self.retry_queue),
                self.retry_passes,
            )

    def _retry_pass(self) -> None:
        pending, self.retry_queue = self.retry_queue, []
        touched: Dict[int, tuple[str, AssetCacheEntry]] = {}
        recovered = 0
        for item in pending:
            self.stats.images_retried += 1
            result = self.fetcher.fetch(item.url, max_attempts=1)
            if result.ok:
                self._store_asset(item.container, item.asset_type, item.url, item.url_changed, result.data)
                entry = self.cache.get(item.game_id) or AssetCacheEntry(game_id=item.game_id)
                self.cache[item.game_id] = entry
                entry.mark(item.asset_type, item.url, True)
                touched[item.game_id] = (item.game_name, entry)
                self.stats.images_failed -= 1
                self.stats.images_synced += 1
                self.stats.clear_failure(item.game_name, item.asset_type)
                recovered += 1
                continue
            failure = result.failure
            if failure is not None and failure.retryable:
                self.retry_queue.append(item)
            else:
                logging.warning(
                    "Giving up on %s for %s: %s",
                    item.asset_type,
                    item.game_name,
                    failure.reason if failure else "unknown",
                )

        for game_id, (name, entry) in touched.items():
            entry.touch()
            self._persist(game_id, name, entry, clear_modified=False)
        logging.info(
            "Retry pass recovered %s of %s images", recovered, len(pending)
        )

    def _cancelled(self) -> bool:
        if self.cancel_event is not None and self.cancel_event.is_set():
            self.stats.cancelled = True
            return True
        return False


def build_fetcher(
    config: Config,
    *,
    session: Any | None = None,
    clock: Clock = time.monotonic,
    sleep: Sleeper = time.sleep,
) -> AssetFetcher:
    return AssetFetcher(
        session=session,
        timeout=config.image_timeout,
        rate_limiter=HostRateLimiter(config.rate_limit_ms / 1000.0, clock=clock, sleep=sleep),
        host_health=HostHealth(config.host_unhealthy_seconds, clock=clock),
        clock=clock,
        sleep=sleep,
    )


def _validate_network_sync(config: Config) -> None:
    validate_sync_target(config)
    validate_export_source(config)


def _execute(
    config: Config,
    store: CatalogStore,
    tenant_id: str,
    auth_token: str | None,
    full_sync: bool,
    sink: OutputSink,
    *,
    validate: Callable[[Config], None],
    client: CatalogClient | None,
    fetcher: AssetFetcher | None,
    sleep: Sleeper,
    clock: Clock,
    cancel_event: threading.Event | None,
    defer_persist: bool = False,
) -> SyncStatistics:
    stats = SyncStatistics()
    started = clock()
    try:
        validate(config)
        client = client or CatalogClient(
            config.export_url,
            config.timeout,
            retries=config.http_retries,
            retry_backoff=config.http_retry_backoff,
            sleep=sleep,
        )
        csv_data = client.fetch_full_export(auth_token)
        syncer = CatalogSyncer(
            store,
            sink,
            tenant_id,
            fetcher or build_fetcher(config, clock=clock, sleep=sleep),
            full_sync=full_sync,
            local_hosts=config.local_hosts,
            retry_passes=config.retry_passes,
            retry_pass_delay=config.retry_pass_delay,
            sleep=sleep,
            cancel_event=cancel_event,
            stats=stats,
            defer_persist=defer_persist,
        )
        syncer.run(csv_data)
        if stats.cancelled:
            stats.error_message = "Sync cancelled"
            if syncer.deferred:
                logging.warning("Discarding sync state of %s games", len(syncer.deferred))
        else:
            if syncer.deferred:
                syncer.commit_progress()
            stats.success = True
    except ConfigError as exc:
        logging.error("Sync configuration error: %s", exc)
        stats.error_message = str(exc)
    except Exception as exc:
        logging.exception("Catalog sync failed for tenant %s", tenant_id)
        stats.error_message = str(exc) or type(exc).__name__
    finally:
        stats.elapsed_seconds = round(clock() - started, 3)
    return stats


def run_export(
    config: Config,
    store: CatalogStore,
    tenant_id: str,
    auth_token: str | None,
    full_export: bool,
    *,
    client: CatalogClient | None = None,
    fetcher: AssetFetcher | None = None,
    sleep: Sleeper = time.sleep,
    clock: Clock = time.monotonic,
    cancel_event: threading.Event | None = None,
) -> tuple[bytes, SyncStatistics]:
    sink = ArchiveSink(config.archive_root)
    stats = _execute(
        config,
        store,
        tenant_id,
        auth_token,
        full_export,
        sink,
        validate=validate_export_source,
        client=client,
        fetcher=fetcher,
        sleep=sleep,
        clock=clock,
        cancel_event=cancel_event,
        defer_persist=True,
    )
    if not stats.success:
        return b"", stats
    return sink.getvalue(), stats


def run_network_sync(
    config: Config,
    store: CatalogStore,
    tenant_id: str,
    auth_token: str | None,
    full_sync: bool,
    *,
    client: CatalogClient | None = None,
    fetcher: AssetFetcher | None = None,
    sleep: Sleeper = time.sleep,
    clock: Clock = time.monotonic,
    cancel_event: threading.Event | None = None,
) -> SyncStatistics:
    return _execute(
        config,
        store,
        tenant_id,
        auth_token,
        full_sync,
        DirectorySink(Path(config.sync_path or ".") / str(tenant_id)),
        validate=_validate_network_sync,
        client=client,
        fetcher=fetcher,
        sleep=sleep,
        clock=clock,
        cancel_event=cancel_event,
    )
