from __future__ import annotations

import io
import logging
import re
import zipfile
from pathlib import Path
from typing import Dict, List, Optional

from utils import ensure_dir

BACKUPS_DIR = "Backups"
SETTINGS_DIR = "Settings"
GAMES_DIR = "Games"
BACKUP_PREFIX = "database_full_export_"


def _clean(path: str) -> str:
    return "/".join(part for part in path.replace("\\", "/").split("/") if part)


class OutputSink:
    """Destination for export entries addressed by ``/``-separated paths."""

    def ensure_container(self, path: str) -> None:
        raise NotImplementedError

    def read_bytes(self, path: str) -> Optional[bytes]:
        raise NotImplementedError

    def write_bytes(self, path: str, data: bytes) -> None:
        raise NotImplementedError

    def list_names(self, container: str) -> List[str]:
        raise NotImplementedError

    def remove(self, path: str) -> bool:
        raise NotImplementedError

    def read_text(self, path: str) -> Optional[str]:
        data = self.read_bytes(path)
        if data is None:
            return None
        return data.decode("utf-8", errors="replace")

    def write_text(self, path: str, text: str) -> None:
        self.write_bytes(path, text.encode("utf-8"))


class ArchiveSink(OutputSink):
    """In-memory ZIP built fresh for each export."""

    def __init__(self, root: str = "Games Database") -> None:
        self.root = _clean(root)
        self._entries: Dict[str, bytes] = {}

    def _name(self, path: str) -> str:
        path = _clean(path)
        return f"{self.root}/{path}" if self.root else path

    def ensure_container(self, path: str) -> None:
        return

    def read_bytes(self, path: str) -> Optional[bytes]:
        return self._entries.get(self._name(path))

    def write_bytes(self, path: str, data: bytes) -> None:
        self._entries[self._name(path)] = bytes(data)

    def list_names(self, container: str) -> List[str]:
        prefix = self._name(container) + "/"
        return [
            name[len(prefix):]
            for name in self._entries
            if name.startswith(prefix) and "/" not in name[len(prefix):]
        ]

    def remove(self, path: str) -> bool:
        return self._entries.pop(self._name(path), None) is not None

    def entry_names(self) -> List[str]:
        return list(self._entries)

    def getvalue(self) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as archive:
            for name, data in self._entries.items():
                archive.writestr(name, data)
        logging.debug("Built archive with %s entries", len(self._entries))
        return buffer.getvalue()


class DirectorySink(OutputSink):
    """Mirrored directory tree; writes overwrite existing files."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        return self.root.joinpath(*_clean(path).split("/"))

    def ensure_container(self, path: str) -> None:
        ensure_dir(self._resolve(path))

    def read_bytes(self, path: str) -> Optional[bytes]:
        target = self._resolve(path)
        if not target.is_file():
            return None
        return target.read_bytes()

    def write_bytes(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        ensure_dir(target.parent)
        target.write_bytes(data)

    def list_names(self, container: str) -> List[str]:
        folder = self._resolve(container)
        if not folder.is_dir():
            return []
        return sorted(item.name for item in folder.iterdir() if item.is_file())

    def remove(self, path: str) -> bool:
        target = self._resolve(path)
        if not target.is_file():
            return False
        target.unlink()
        return True


def next_backup_name(sink: OutputSink, date: str) -> str:
    """Pick a backup file name for ``date`` that does not overwrite an existing one.

    The first backup of a day is ``database_full_export_<date>.csv``; later
    ones get ``_v2``, ``_v3`` and so on after the highest version present.
    """
    base = f"{BACKUP_PREFIX}{date}"
    names = sink.list_names(BACKUPS_DIR)
    pattern = re.compile(rf"^{re.escape(base)}_v(\d+)\.csv$")
    versions = [int(match.group(1)) for match in map(pattern.match, names) if match]
    if f"{base}.csv" not in names and not versions:
        return f"{base}.csv"
    return f"{base}_v{max(versions + [1]) + 1}.csv"


def latest_backup_name(sink: OutputSink, date: str) -> Optional[str]:
    base = f"{BACKUP_PREFIX}{date}"
    names = sink.list_names(BACKUPS_DIR)
    pattern = re.compile(rf"^{re.escape(base)}_v(\d+)\.csv$")
    versioned = [
        (int(match.group(1)), match.group(0))
        for match in map(pattern.match, names)
        if match
    ]
    if versioned:
        return max(versioned)[1]
    if f"{base}.csv" in names:
        return f"{base}.csv"
    return None
