import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import uptrace
from opentelemetry import trace
from opentelemetry.instrumentation.requests import RequestsInstrumentor

SERVICE_NAME = "catalog-sync"

_OTEL_READY = False
_OTEL_ENABLED = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    tracer = trace.get_tracer(SERVICE_NAME)
    with tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def init_telemetry(service_version: str = "") -> bool:
    global _OTEL_READY, _OTEL_ENABLED

    if _OTEL_READY:
        return _OTEL_ENABLED

    _OTEL_READY = True
    dsn = os.environ.get("UPTRACE_DSN", "").strip()
    if not dsn:
        logging.info("UPTRACE_DSN is not set, tracing is disabled")
        _OTEL_ENABLED = False
        return False

    try:
        uptrace.configure_opentelemetry(
            dsn=dsn,
            service_name=os.environ.get("OTEL_SERVICE_NAME", SERVICE_NAME).strip(),
            service_version=os.environ.get("OTEL_SERVICE_VERSION", service_version).strip(),
            deployment_environment=os.environ.get("OTEL_DEPLOYMENT_ENVIRONMENT", "").strip(),
        )
        RequestsInstrumentor().instrument(
            request_hook=_request_hook,
            response_hook=_response_hook,
        )
    except (RuntimeError, ValueError, TypeError, AttributeError):
        logging.exception("Failed to initialize OpenTelemetry")
        _OTEL_ENABLED = False
        return False

    _OTEL_ENABLED = True
    logging.info("OpenTelemetry is enabled and exporting to Uptrace")
    return True


def shutdown_telemetry() -> None:
    if not _OTEL_ENABLED:
        return
    try:
        uptrace.shutdown()
    except (RuntimeError, ValueError, TypeError, AttributeError):
        logging.exception("Failed to shutdown OpenTelemetry cleanly")


def _request_hook(span: Any, request_obj: Any) -> None:
    if span is None or not span.is_recording():
        return
    method = str(getattr(request_obj, "method", "") or "GET").upper()
    url = str(getattr(request_obj, "url", "") or "")
    parsed = urlparse(url)
    route = _normalize_route(parsed.path)
    try:
        span.update_name(f"{method} {parsed.hostname or ''}{route}")
    except (AttributeError, RuntimeError, ValueError, TypeError):
        pass
    _set_attribute(span, "http.route", route)

    safe_url, query_keys = sanitize_url(url)
    if safe_url:
        _set_attribute(span, "url.full", safe_url)
    if query_keys:
        _set_attribute(span, "http.query_keys", ",".join(query_keys))


def _response_hook(span: Any, _request_obj: Any, response_obj: Any) -> None:
    if span is None or not span.is_recording():
        return
    status = getattr(response_obj, "status_code", None)
    if isinstance(status, int):
        _set_attribute(span, "http.response.status_code", status)
    headers = getattr(response_obj, "headers", None) or {}
    size = headers.get("Content-Length")
    if size and str(size).isdigit():
        _set_attribute(span, "http.response.body.size", int(size))
    content_type = headers.get("Content-Type")
    if content_type:
        _set_attribute(span, "http.response.content_type", _clip_text(content_type))


def _set_attribute(span: Any, key: str, value: Any) -> None:
    try:
        span.set_attribute(key, value)
    except (AttributeError, RuntimeError, ValueError, TypeError):
        pass


def sanitize_url(url: str) -> tuple[str, list[str]]:
    """Replace query values with ``redacted``; image CDNs often sign URLs."""
    try:
        parsed = urlparse(url or "")
    except ValueError:
        return str(url or ""), []
    if not parsed.query:
        return str(url or ""), []

    pairs: list[tuple[str, str]] = []
    keys: list[str] = []
    for key, _value in parse_qsl(parsed.query, keep_blank_values=True):
        safe_key = _clip_text(str(key or ""), max_len=64)
        pairs.append((safe_key, "redacted"))
        if safe_key and safe_key not in keys and len(keys) < 20:
            keys.append(safe_key)
    if not pairs:
        return str(url or ""), []
    return urlunparse(parsed._replace(query=urlencode(pairs))), keys


def _clip_text(value: str, max_len: int = 256) -> str:
    text = str(value or "")
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _normalize_route(path: str) -> str:
    parts = ["{id}" if part.isdigit() else part for part in (path or "").split("/") if part]
    return "/" + "/".join(parts) if parts else "/"
