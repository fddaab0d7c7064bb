"""Resolve a host specification into the base URL of an Ollama service."""

from __future__ import annotations

import logging

LOGGER = logging.getLogger(__name__)

DEFAULT_SCHEME = "http"
DEFAULT_HOST = "localhost"
DEFAULT_PORT = 11434


def resolve_service_address(host_spec: str | None) -> str:
    """Normalize ``host``, ``host:port`` or a full URL into a base URL.

    An empty or missing spec resolves to the local default service. A bare
    host gets the default scheme and port; a URL without a port is kept as
    written so reverse proxies on 80/443 keep working.

    Raises ValueError when the port component is not an integer.
    """
    raw = (host_spec or "").strip()
    if not raw:
        resolved = f"{DEFAULT_SCHEME}://{DEFAULT_HOST}:{DEFAULT_PORT}"
        _log_resolved(raw, resolved)
        return resolved

    scheme = ""
    remainder = raw
    for prefix in ("http://", "https://"):
        if raw.lower().startswith(prefix):
            scheme = prefix[:-3].lower()
            remainder = raw[len(prefix) :]
            break

    authority, _, path = remainder.partition("/")
    if not authority:
        raise ValueError(f"Failed to parse OLLAMA_HOST {host_spec!r}")

    host, sep, port_text = authority.rpartition(":")
    if sep and not authority.endswith("]"):
        try:
            port = int(port_text)
        except ValueError as exc:
            raise ValueError(
                f"Failed to parse host and port from {host_spec!r}"
            ) from exc
        if not host:
            host = DEFAULT_HOST
        resolved = f"{scheme or DEFAULT_SCHEME}://{host}:{port}"
    elif scheme:
        resolved = f"{scheme}://{authority}"
    else:
        resolved = f"{DEFAULT_SCHEME}://{authority}:{DEFAULT_PORT}"

    path = path.strip("/")
    if path:
        resolved = f"{resolved}/{path}"
    _log_resolved(raw, resolved)
    return resolved


def endpoint_url(base_url: str, endpoint: str) -> str:
    """Join ``base_url`` and ``endpoint`` with exactly one slash."""
    return f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"


def _log_resolved(raw: str, resolved: str) -> None:
    LOGGER.info(
        "address.resolved",
        extra={"event": "address.resolved", "host_spec": raw, "base_url": resolved},
    )
