"""
Typed rows of the catalog full-export CSV.

Every row carries a ``Type`` column naming its kind. Each kind gets its own
record class holding only the columns that mean something for it; columns
that are missing from the file or from a row read as empty strings.
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, fields
from typing import Any, ClassVar, Dict, Iterable, List, Type, TypeVar, Union

from utils import decode_csv_bytes, strip_bom

TRUE_VALUES = {"true", "1", "yes"}


def parse_bool(value: str | None) -> bool:
    if not value or not value.strip():
        return False
    return value.strip().lower() in TRUE_VALUES


def parse_int(value: str | None) -> int | None:
    if value is None or not value.strip():
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


@dataclass(frozen=True)
class PlatformRecord:
    kind: ClassVar[str] = "Platform"
    name: str = ""
    color: str = ""
    is_active: str = ""
    sort_order: str = ""
    is_default: str = ""

    def to_settings(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "color": self.color,
            "isActive": parse_bool(self.is_active),
            "sortOrder": parse_int(self.sort_order) or 0,
            "isDefault": parse_bool(self.is_default),
        }


@dataclass(frozen=True)
class StatusRecord:
    kind: ClassVar[str] = "Status"
    name: str = ""
    color: str = ""
    status_type: str = ""
    is_active: str = ""
    sort_order: str = ""
    is_default: str = ""

    def to_settings(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "color": self.color,
            "statusType": self.status_type,
            "isActive": parse_bool(self.is_active),
            "sortOrder": parse_int(self.sort_order) or 0,
            "isDefault": parse_bool(self.is_default),
        }


@dataclass(frozen=True)
class PlayWithRecord:
    kind: ClassVar[str] = "PlayWith"
    name: str = ""
    color: str = ""
    is_active: str = ""
    sort_order: str = ""

    def to_settings(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "color": self.color,
            "isActive": parse_bool(self.is_active),
            "sortOrder": parse_int(self.sort_order) or 0,
        }


@dataclass(frozen=True)
class PlayedStatusRecord:
    kind: ClassVar[str] = "PlayedStatus"
    name: str = ""
    color: str = ""
    is_active: str = ""
    sort_order: str = ""

    def to_settings(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "color": self.color,
            "isActive": parse_bool(self.is_active),
            "sortOrder": parse_int(self.sort_order) or 0,
        }


@dataclass(frozen=True)
class ViewRecord:
    kind: ClassVar[str] = "View"
    name: str = ""
    description: str = ""
    filters_json: str = ""
    sorting_json: str = ""
    is_public: str = ""
    created_by: str = ""
    sort_order: str = ""

    def to_settings(self) -> Dict[str, Any]:
        sort_order = parse_int(self.sort_order)
        return {
            "name": self.name,
            "description": self.description,
            "filtersJson": self.filters_json or "{}",
            "sortingJson": self.sorting_json,
            "isPublic": parse_bool(self.is_public),
            "createdBy": self.created_by,
            "sortOrder": 999 if sort_order is None else sort_order,
        }


@dataclass(frozen=True)
class GameRecord:
    kind: ClassVar[str] = "Game"
    name: str = ""
    status: str = ""
    platform: str = ""
    play_with: str = ""
    played_status: str = ""
    released: str = ""
    started: str = ""
    finished: str = ""
    score: str = ""
    critic: str = ""
    critic_provider: str = ""
    grade: str = ""
    completion: str = ""
    story: str = ""
    comment: str = ""
    description: str = ""
    logo: str = ""
    cover: str = ""
    is_cheaper_by_key: str = ""
    key_store_url: str = ""

    def to_info(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "platform": self.platform,
            "playWith": self.play_with,
            "playedStatus": self.played_status,
            "released": self.released,
            "started": self.started,
            "finished": self.finished,
            "score": self.score,
            "critic": self.critic,
            "criticProvider": self.critic_provider,
            "grade": self.grade,
            "completion": self.completion,
            "story": self.story,
            "comment": self.comment,
            "description": self.description,
            "logo": self.logo,
            "cover": self.cover,
            "isCheaperByKey": self.is_cheaper_by_key,
            "keyStoreUrl": self.key_store_url,
        }


CatalogRecord = Union[
    PlatformRecord,
    StatusRecord,
    PlayWithRecord,
    PlayedStatusRecord,
    ViewRecord,
    GameRecord,
]
RecordT = TypeVar("RecordT")

RECORD_TYPES: Dict[str, Type[Any]] = {
    cls.kind: cls
    for cls in (
        PlatformRecord,
        StatusRecord,
        PlayWithRecord,
        PlayedStatusRecord,
        ViewRecord,
        GameRecord,
    )
}

# Settings file name per kind, in the order they are written.
SETTINGS_FILES: Dict[str, str] = {
    "Platform": "Platforms.json",
    "Status": "Status.json",
    "PlayWith": "PlayWith.json",
    "PlayedStatus": "PlayedStatus.json",
    "View": "Views.json",
}


def _column_name(field_name: str) -> str:
    return "".join(part.capitalize() for part in field_name.split("_"))


def _build_record(cls: Type[RecordT], row: Dict[str, str]) -> RecordT:
    values = {}
    for item in fields(cls):
        values[item.name] = row.get(_column_name(item.name)) or ""
    return cls(**values)


def parse_rows(rows: Iterable[Dict[str, str | None]]) -> List[CatalogRecord]:
    records: List[CatalogRecord] = []
    unknown = 0
    for row in rows:
        clean = {
            str(key).strip(): (value or "")
            for key, value in row.items()
            if key is not None
        }
        kind = clean.get("Type", "").strip()
        cls = RECORD_TYPES.get(kind)
        if cls is None:
            unknown += 1
            continue
        records.append(_build_record(cls, clean))
    if unknown:
        logging.debug("Ignored %s CSV rows with unknown Type", unknown)
    return records


def parse_csv(data: bytes | str) -> List[CatalogRecord]:
    text = decode_csv_bytes(data) if isinstance(data, bytes) else strip_bom(data)
    reader = csv.DictReader(io.StringIO(text, newline=""))
    return parse_rows(reader)


def records_of(records: Iterable[CatalogRecord], cls: Type[RecordT]) -> List[RecordT]:
    return [record for record in records if isinstance(record, cls)]
