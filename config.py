from dataclasses import dataclass
import os
import re

DEFAULT_EXPORT_URL = "http://localhost:8080/api/dataexport/full"
DEFAULT_DB_PATH = "./catalog.db"
DEFAULT_ARCHIVE_ROOT = "Games Database"
DEFAULT_LOCAL_HOSTS = "localhost,127.0.0.1"
DEFAULT_TIMEOUT = 60
DEFAULT_HTTP_RETRIES = 2
DEFAULT_HTTP_RETRY_BACKOFF = 2.0
DEFAULT_IMAGE_TIMEOUT = 10
DEFAULT_RATE_LIMIT_MS = 200
DEFAULT_HOST_UNHEALTHY_SECONDS = 300
DEFAULT_RETRY_PASSES = 2
DEFAULT_RETRY_PASS_DELAY = 3.0
DEFAULT_LOG_LEVEL = "INFO"


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def parse_int(value: str | None, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


def parse_float(value: str | None, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def parse_list(value: str | None) -> list[str]:
    if not value:
        return []
    parts = re.split(r"[,\s]+", value.strip())
    return [part for part in (p.strip() for p in parts) if part]


class ConfigError(RuntimeError):
    pass


@dataclass
class Config:
    export_url: str
    db_path: str
    sync_enabled: bool
    sync_path: str
    archive_root: str
    local_hosts: list[str]
    timeout: int
    http_retries: int
    http_retry_backoff: float
    image_timeout: int
    rate_limit_ms: int
    host_unhealthy_seconds: int
    retry_passes: int
    retry_pass_delay: float
    log_level: str
    log_file: str


def load_config() -> Config:
    export_url = os.environ.get("CATALOG_EXPORT_URL", DEFAULT_EXPORT_URL)
    db_path = os.environ.get("CATALOG_DB_PATH", DEFAULT_DB_PATH)
    sync_enabled = parse_bool(os.environ.get("CATALOG_SYNC_ENABLED"), False)
    sync_path = os.environ.get("CATALOG_SYNC_PATH", "")
    archive_root = os.environ.get("CATALOG_ARCHIVE_ROOT", DEFAULT_ARCHIVE_ROOT)
    local_hosts = parse_list(
        os.environ.get("CATALOG_LOCAL_HOSTS", DEFAULT_LOCAL_HOSTS)
    )
    timeout = parse_int(os.environ.get("CATALOG_HTTP_TIMEOUT"), DEFAULT_TIMEOUT)
    http_retries = parse_int(os.environ.get("CATALOG_HTTP_RETRIES"), DEFAULT_HTTP_RETRIES)
    http_retry_backoff = parse_float(
        os.environ.get("CATALOG_HTTP_RETRY_BACKOFF"), DEFAULT_HTTP_RETRY_BACKOFF
    )
    image_timeout = parse_int(
        os.environ.get("CATALOG_IMAGE_TIMEOUT"), DEFAULT_IMAGE_TIMEOUT
    )
    rate_limit_ms = parse_int(
        os.environ.get("CATALOG_RATE_LIMIT_MS"), DEFAULT_RATE_LIMIT_MS
    )
    host_unhealthy_seconds = parse_int(
        os.environ.get("CATALOG_HOST_UNHEALTHY_SECONDS"), DEFAULT_HOST_UNHEALTHY_SECONDS
    )
    retry_passes = parse_int(os.environ.get("CATALOG_RETRY_PASSES"), DEFAULT_RETRY_PASSES)
    retry_pass_delay = parse_float(
        os.environ.get("CATALOG_RETRY_PASS_DELAY"), DEFAULT_RETRY_PASS_DELAY
    )
    log_level = os.environ.get("CATALOG_LOG_LEVEL", DEFAULT_LOG_LEVEL)
    log_file = os.environ.get("CATALOG_LOG_FILE", "")

    return Config(
        export_url=export_url,
        db_path=db_path,
        sync_enabled=sync_enabled,
        sync_path=sync_path,
        archive_root=archive_root,
        local_hosts=local_hosts,
        timeout=timeout,
        http_retries=max(0, http_retries),
        http_retry_backoff=max(0.0, http_retry_backoff),
        image_timeout=max(1, image_timeout),
        rate_limit_ms=max(0, rate_limit_ms),
        host_unhealthy_seconds=max(0, host_unhealthy_seconds),
        retry_passes=max(0, retry_passes),
        retry_pass_delay=max(0.0, retry_pass_delay),
        log_level=log_level,
        log_file=log_file,
    )


def validate_sync_target(config: Config) -> None:
    if not config.sync_enabled:
        raise ConfigError("Network sync is disabled in configuration")
    if not config.sync_path or not config.sync_path.strip():
        raise ConfigError("Network path is not configured")
    if not os.path.isdir(config.sync_path):
        raise ConfigError(f"Network path not accessible: {config.sync_path}")


def validate_export_source(config: Config) -> None:
    if not config.export_url or not config.export_url.strip():
        raise ConfigError("Full export URL is not configured")
