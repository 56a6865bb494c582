from __future__ import annotations

import json
import logging
from typing import Any

from sinks import OutputSink
from utils import IMAGE_EXTENSIONS, content_hash, normalize_for_compare


def serialize_json(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, indent=2)


def write_json_if_changed(sink: OutputSink, path: str, payload: Any) -> bool:
    """Write ``payload`` as JSON unless the sink already holds the same content."""
    text = serialize_json(payload)
    existing = sink.read_text(path)
    if existing is not None:
        if content_hash(normalize_for_compare(existing)) == content_hash(
            normalize_for_compare(text)
        ):
            logging.debug("Skipped unchanged file: %s", path)
            return False
        logging.debug("Updating changed file: %s", path)
    sink.write_text(path, text)
    return True


def remove_stale_variants(
    sink: OutputSink, container: str, asset_type: str, keep_name: str
) -> int:
    removed = 0
    for ext in IMAGE_EXTENSIONS:
        name = f"{asset_type}{ext}"
        if name == keep_name:
            continue
        if sink.remove(f"{container}/{name}"):
            logging.info("Removed old %s image: %s/%s", asset_type, container, name)
            removed += 1
    return removed


def write_asset(
    sink: OutputSink,
    container: str,
    asset_type: str,
    ext: str,
    data: bytes,
    url_changed: bool = False,
) -> str:
    name = f"{asset_type}{ext}"
    if url_changed:
        remove_stale_variants(sink, container, asset_type, name)
    path = f"{container}/{name}"
    sink.write_bytes(path, data)
    logging.debug("Wrote %s (%s bytes)", path, len(data))
    return path
