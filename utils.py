import hashlib
import io
import logging
import posixpath
import re
import unicodedata
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import unquote, urlparse

from PIL import Image, UnidentifiedImageError

BOM = "\ufeff"
UNKNOWN_GAME_FOLDER = "Unknown_Game"
DEFAULT_IMAGE_EXTENSION = ".png"
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp")
MAX_SAFE_NAME_LENGTH = 200

_ALLOWED_PUNCTUATION = {" ", "-", "_", ".", "(", ")"}
_INVALID_FILENAME_CHARS = set('<>:"/\\|?*') | {chr(code) for code in range(32)}
_SIZE_SUFFIXES = {"large", "medium", "small"}
_PIL_FORMAT_EXTENSIONS = {
    "JPEG": ".jpg",
    "PNG": ".png",
    "GIF": ".gif",
    "WEBP": ".webp",
    "BMP": ".bmp",
}


def utc_today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def _is_kept_char(char: str) -> bool:
    if char in _ALLOWED_PUNCTUATION:
        return True
    category = unicodedata.category(char)
    return category.startswith("L") or category == "Nd"


def make_safe_folder_name(name: str | None) -> str:
    """Map a display name onto a path segment usable on disk and inside a ZIP.

    Accents are removed through canonical decomposition, everything except
    letters, digits, space and ``-_.()`` is dropped, spaces become
    underscores and underscore runs collapse. The result is capped at
    200 characters. Empty input gives an empty string; callers pick the
    fallback name.
    """
    if not name or not name.strip():
        return ""
    decomposed = unicodedata.normalize("NFD", name)
    kept = "".join(
        char
        for char in decomposed
        if unicodedata.category(char) != "Mn" and _is_kept_char(char)
    )
    safe = "".join("_" if char in _INVALID_FILENAME_CHARS else char for char in kept)
    safe = safe.replace(" ", "_")
    safe = re.sub(r"_+", "_", safe)
    safe = safe.strip("_.")
    if len(safe) > MAX_SAFE_NAME_LENGTH:
        safe = safe[:MAX_SAFE_NAME_LENGTH].rstrip("_.")
    return safe


def folder_name_for(name: str | None) -> str:
    return make_safe_folder_name(name) or UNKNOWN_GAME_FOLDER


def strip_bom(text: str) -> str:
    if text.startswith(BOM):
        return text[1:]
    return text


def decode_csv_bytes(data: bytes) -> str:
    return strip_bom(data.decode("utf-8", errors="replace"))


def normalize_for_compare(text: str) -> str:
    return text.strip().lstrip(BOM).strip()


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def extension_from_url(url: str | None) -> str:
    """Return the lower-cased file extension of a URL path, or ``""``."""
    if not url:
        return ""
    try:
        path = unquote(urlparse(url.strip()).path or "")
    except ValueError:
        return ""
    colon = path.rfind(":")
    if colon > 0 and path[colon + 1 :].lower() in _SIZE_SUFFIXES:
        path = path[:colon]
    ext = posixpath.splitext(posixpath.basename(path))[1].lower()
    if ext not in IMAGE_EXTENSIONS:
        return ""
    return ext


def sniff_image_extension(data: bytes | None) -> str:
    if not data:
        return ""
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = (img.format or "").upper()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        logging.debug("Could not identify image payload: %s", exc)
        return ""
    return _PIL_FORMAT_EXTENSIONS.get(fmt, "")


def asset_extension(url: str | None, data: bytes | None = None) -> str:
    return extension_from_url(url) or sniff_image_extension(data) or DEFAULT_IMAGE_EXTENSION
