from __future__ import annotations

import logging
import re
import unicodedata
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from catalog_store import CatalogStore
from export_cache import GameReference
from utils import make_safe_folder_name

_WORD_RE = re.compile(r"[a-z0-9]+")


@dataclass
class OrphanFolder:
    folder_name: str
    full_path: str


@dataclass
class DuplicateFolders:
    game_name: str
    folder_names: List[str]
    reason: str = "Folders share the same words (different casing or punctuation)"


@dataclass
class DuplicateGames:
    normalized_key: str
    games: List[Dict[str, Any]]
    reason: str = (
        "Games share the same words in their title (case-insensitive, punctuation ignored)"
    )


@dataclass
class FolderAnalysis:
    total_games: int = 0
    total_folders: int = 0
    difference: int = 0
    orphan_folders: List[OrphanFolder] = field(default_factory=list)
    duplicate_folders: List[DuplicateFolders] = field(default_factory=list)
    duplicate_games: List[DuplicateGames] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def word_set_key(name: str) -> str:
    """Sorted lower-case alphanumeric words of ``name`` joined with ``|``.

    "God of War" and "GOD OF WAR" share a key; "Hollow Knight" and
    "Hollow Knight: Silksong" do not.
    """
    decomposed = unicodedata.normalize("NFD", name or "").lower()
    return "|".join(sorted(_WORD_RE.findall(decomposed)))


def _group_games(games: List[GameReference]) -> List[DuplicateGames]:
    groups: Dict[str, List[GameReference]] = defaultdict(list)
    for game in games:
        groups[word_set_key(game.name)].append(game)
    return [
        DuplicateGames(
            normalized_key=key,
            games=[{"id": game.id, "name": game.name} for game in members],
        )
        for key, members in groups.items()
        if len(members) > 1
    ]


def find_duplicate_games(store: CatalogStore, tenant_id: str) -> List[DuplicateGames]:
    return _group_games(store.list_games(tenant_id))


def analyze_folders(store: CatalogStore, tenant_id: str, games_root: Path) -> FolderAnalysis:
    games = store.list_games(tenant_id)
    result = FolderAnalysis(total_games=len(games))
    result.duplicate_games = _group_games(games)

    games_root = Path(games_root)
    if not games_root.is_dir():
        logging.info("Games folder does not exist yet: %s", games_root)
        result.difference = result.total_games
        return result

    folders = sorted(item.name for item in games_root.iterdir() if item.is_dir())
    result.total_folders = len(folders)
    result.difference = result.total_folders - result.total_games

    expected = {make_safe_folder_name(game.name).lower() for game in games}
    for folder in folders:
        if folder.lower() not in expected:
            result.orphan_folders.append(
                OrphanFolder(folder_name=folder, full_path=str(games_root / folder))
            )

    folder_groups: Dict[str, List[str]] = defaultdict(list)
    for folder in folders:
        folder_groups[word_set_key(folder)].append(folder)
    for key, names in folder_groups.items():
        if len(names) < 2:
            continue
        match = next(
            (
                game
                for game in games
                if word_set_key(make_safe_folder_name(game.name)) == key
            ),
            None,
        )
        result.duplicate_folders.append(
            DuplicateFolders(
                game_name=match.name if match else names[0],
                folder_names=names,
            )
        )

    logging.info(
        "Folder analysis for tenant %s: games=%s folders=%s orphans=%s duplicates=%s",
        tenant_id,
        result.total_games,
        result.total_folders,
        len(result.orphan_folders),
        len(result.duplicate_folders),
    )
    return result
