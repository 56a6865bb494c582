"""
SQLite persistence for game references and the asset cache.

Every query is scoped by tenant. Sync progress is saved one game per
transaction, so a failure only loses the game in flight.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from export_cache import AssetCacheEntry, GameReference

SCHEMA = """
CREATE TABLE IF NOT EXISTS games (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    name TEXT NOT NULL,
    modified_since_export INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_games_tenant_name ON games (tenant_id, name);

CREATE TABLE IF NOT EXISTS asset_cache (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    game_id INTEGER NOT NULL UNIQUE REFERENCES games (id),
    logo_url TEXT,
    logo_downloaded INTEGER NOT NULL DEFAULT 0,
    cover_url TEXT,
    cover_downloaded INTEGER NOT NULL DEFAULT 0,
    last_synced_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_asset_cache_tenant ON asset_cache (tenant_id);
"""


class CatalogStoreError(RuntimeError):
    pass


class DuplicateCacheEntry(CatalogStoreError):
    pass


class AmbiguousGameName(LookupError):
    def __init__(self, tenant_id: str, name: str, game_ids: List[int]) -> None:
        super().__init__(
            f"Game name '{name}' matches {len(game_ids)} games "
            f"(ids {', '.join(str(i) for i in game_ids)}) for tenant {tenant_id}"
        )
        self.tenant_id = tenant_id
        self.name = name
        self.game_ids = game_ids


def _to_game(row: sqlite3.Row) -> GameReference:
    return GameReference(
        id=int(row["id"]),
        name=row["name"],
        modified_since_last_export=bool(row["modified_since_export"]),
    )


def _to_entry(row: sqlite3.Row) -> AssetCacheEntry:
    synced = row["last_synced_at"]
    return AssetCacheEntry(
        game_id=int(row["game_id"]),
        logo_url=row["logo_url"],
        logo_downloaded=bool(row["logo_downloaded"]),
        cover_url=row["cover_url"],
        cover_downloaded=bool(row["cover_downloaded"]),
        last_synced_at=datetime.fromisoformat(synced) if synced else None,
        persisted=True,
    )


class CatalogStore:
    def __init__(self, db_path: Path | str) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self.db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(SCHEMA)
        logging.debug("Catalog store ready at %s", self.db_path)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "CatalogStore":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def add_game(self, tenant_id: str, name: str, modified: bool = True) -> int:
        with self._conn:
            cursor = self._conn.execute(
                "INSERT INTO games (tenant_id, name, modified_since_export) VALUES (?, ?, ?)",
                (tenant_id, name, int(modified)),
            )
        return int(cursor.lastrowid)

    def set_modified(self, game_id: int, modified: bool = True) -> None:
        with self._conn:
            self._conn.execute(
                "UPDATE games SET modified_since_export = ? WHERE id = ?",
                (int(modified), game_id),
            )

    def list_games(self, tenant_id: str) -> List[GameReference]:
        rows = self._conn.execute(
            "SELECT id, name, modified_since_export FROM games WHERE tenant_id = ? ORDER BY id",
            (tenant_id,),
        ).fetchall()
        return [_to_game(row) for row in rows]

    def get_game(self, tenant_id: str, game_id: int) -> Optional[GameReference]:
        row = self._conn.execute(
            "SELECT id, name, modified_since_export FROM games WHERE tenant_id = ? AND id = ?",
            (tenant_id, game_id),
        ).fetchone()
        return _to_game(row) if row else None

    def find_games_by_name(self, tenant_id: str, name: str) -> List[GameReference]:
        rows = self._conn.execute(
            "SELECT id, name, modified_since_export FROM games "
            "WHERE tenant_id = ? AND name = ? ORDER BY id",
            (tenant_id, name),
        ).fetchall()
        return [_to_game(row) for row in rows]

    def resolve_game(self, tenant_id: str, name: str) -> Optional[GameReference]:
        matches = self.find_games_by_name(tenant_id, name)
        if not matches:
            return None
        if len(matches) > 1:
            raise AmbiguousGameName(tenant_id, name, [game.id for game in matches])
        return matches[0]

    def load_cache_entries(self, tenant_id: str) -> Dict[int, AssetCacheEntry]:
        rows = self._conn.execute(
            "SELECT * FROM asset_cache WHERE tenant_id = ?", (tenant_id,)
        ).fetchall()
        return {int(row["game_id"]): _to_entry(row) for row in rows}

    def get_cache_entry(self, tenant_id: str, game_id: int) -> Optional[AssetCacheEntry]:
        try:
            row = self._conn.execute(
                "SELECT * FROM asset_cache WHERE tenant_id = ? AND game_id = ?",
                (tenant_id, game_id),
            ).fetchone()
        except sqlite3.Error as exc:
            raise CatalogStoreError(str(exc)) from exc
        return _to_entry(row) if row else None

    def save_game_progress(
        self, tenant_id: str, entry: AssetCacheEntry, clear_modified: bool = False
    ) -> None:
        """Upsert one cache entry and optionally clear the game's dirty flag.

        Both writes share one transaction. Inserting an entry that already
        exists raises :class:`DuplicateCacheEntry`; any other database error
        raises :class:`CatalogStoreError`. Nothing is committed on error.
        """
        synced = entry.last_synced_at.isoformat() if entry.last_synced_at else None
        values = (
            entry.logo_url,
            int(entry.logo_downloaded),
            entry.cover_url,
            int(entry.cover_downloaded),
            synced,
        )
        try:
            with self._conn:
                if entry.persisted:
                    self._conn.execute(
                        "UPDATE asset_cache SET logo_url = ?, logo_downloaded = ?, "
                        "cover_url = ?, cover_downloaded = ?, last_synced_at = ? "
                        "WHERE tenant_id = ? AND game_id = ?",
                        values + (tenant_id, entry.game_id),
                    )
                else:
                    self._conn.execute(
                        "INSERT INTO asset_cache (logo_url, logo_downloaded, cover_url, "
                        "cover_downloaded, last_synced_at, tenant_id, game_id) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?)",
                        values + (tenant_id, entry.game_id),
                    )
                if clear_modified:
                    self._conn.execute(
                        "UPDATE games SET modified_since_export = 0 "
                        "WHERE tenant_id = ? AND id = ?",
                        (tenant_id, entry.game_id),
                    )
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" in str(exc).upper():
                raise DuplicateCacheEntry(
                    f"cache entry for game {entry.game_id} already exists"
                ) from exc
            raise CatalogStoreError(str(exc)) from exc
        except sqlite3.Error as exc:
            raise CatalogStoreError(str(exc)) from exc
        entry.persisted = True
