"""Model discovery and selection against an Ollama host."""

from __future__ import annotations

from collections.abc import Sequence
import logging
from typing import Any

import httpx
from ollama import AsyncClient, ResponseError
from pydantic import BaseModel, ConfigDict, ValidationError, model_validator

from .exceptions import (
    OllamaShellError,
    ProtocolError,
    ServiceUnavailableError,
    UnknownModelError,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_FALLBACK_MODEL = "llama3.1:latest"
LATEST_SUFFIX = ":latest"


class ModelDescriptor(BaseModel):
    """Read-only metadata for one model as reported by the host."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    family: str = ""
    parameter_size: str | None = None
    model: str | None = None
    size: int | None = None
    digest: str | None = None
    format: str | None = None
    quantization_level: str | None = None
    expires_at: str | None = None
    size_vram: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_details(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        flattened = dict(data)
        # /api/tags reports the identifier under "model" in newer hosts.
        if not flattened.get("name") and flattened.get("model"):
            flattened["name"] = flattened["model"]
        details = flattened.pop("details", None)
        if isinstance(details, dict):
            for key in ("family", "parameter_size", "format", "quantization_level"):
                if flattened.get(key) is None and details.get(key) is not None:
                    flattened[key] = details[key]
        if flattened.get("family") is None:
            flattened["family"] = ""
        if flattened.get("expires_at") is not None:
            flattened["expires_at"] = str(flattened["expires_at"])
        return flattened

    def describe(self) -> str:
        """Render a one-line listing entry."""
        return f"- {self.name} {self.family} {self.parameter_size or ''}".rstrip()


def _as_dict(value: Any) -> Any:
    """Normalise SDK response objects into plain JSON-like data."""
    if isinstance(value, dict):
        return value
    if hasattr(value, "model_dump"):
        try:
            return value.model_dump()
        except (ValueError, TypeError) as exc:
            raise ProtocolError(f"Unreadable model listing entry: {exc}") from exc
    return value


def negotiate_default(
    installed: Sequence[ModelDescriptor],
    resident: Sequence[ModelDescriptor],
    fallback: str = DEFAULT_FALLBACK_MODEL,
) -> str:
    """Pick the model to start with.

    A resident model wins because it answers the first turn without a load
    delay; otherwise the first installed model, otherwise ``fallback``.
    """
    if resident:
        LOGGER.info(
            "catalog.negotiated",
            extra={
                "event": "catalog.negotiated",
                "model": resident[0].name,
                "reason": "resident",
            },
        )
        return resident[0].name
    if installed:
        LOGGER.info(
            "catalog.negotiated",
            extra={
                "event": "catalog.negotiated",
                "model": installed[0].name,
                "reason": "installed",
            },
        )
        return installed[0].name
    LOGGER.info(
        "catalog.negotiated",
        extra={"event": "catalog.negotiated", "model": fallback, "reason": "fallback"},
    )
    return fallback


class ModelCatalog:
    """Query installed and resident models and track the active one."""

    def __init__(
        self,
        host: str,
        timeout: int = 120,
        fallback_model: str = DEFAULT_FALLBACK_MODEL,
        client: Any | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.host = host
        self.fallback_model = fallback_model
        self._logger = logger or LOGGER

        self._owns_client = client is None
        self._client = (
            client if client is not None else AsyncClient(host=host, timeout=timeout)
        )

        self.installed: tuple[ModelDescriptor, ...] = ()
        self.resident: tuple[ModelDescriptor, ...] = ()
        self.active_model: str | None = None

    async def aclose(self) -> None:
        """Close the SDK's HTTP client when this catalog created it."""
        if self._owns_client:
            # ollama.AsyncClient keeps its httpx.AsyncClient on ``_client``.
            await self._client._client.aclose()

    async def list_installed(self) -> tuple[ModelDescriptor, ...]:
        """Return every model installed on the host (``/api/tags``)."""
        return await self._fetch("list", "installed")

    async def list_resident(self) -> tuple[ModelDescriptor, ...]:
        """Return models currently loaded in memory (``/api/ps``)."""
        return await self._fetch("ps", "resident")

    async def connect(self) -> str:
        """Probe the host once and negotiate the starting model."""
        self.installed = await self.list_installed()
        self.resident = await self.list_resident()
        self.active_model = negotiate_default(
            self.installed, self.resident, self.fallback_model
        )
        return self.active_model

    def installed_names(self) -> list[str]:
        return [model.name for model in self.installed]

    def set_active(self, name: str) -> str:
        """Select ``name`` if installed, retrying once with a ``:latest`` suffix."""
        requested = name.strip()
        available = self.installed_names()
        candidate = requested
        if candidate not in available:
            candidate = f"{requested}{LATEST_SUFFIX}"
            if candidate not in available:
                raise UnknownModelError(requested, available)

        self.active_model = candidate
        self._logger.info(
            "catalog.model.selected",
            extra={
                "event": "catalog.model.selected",
                "requested": requested,
                "model": candidate,
            },
        )
        return candidate

    async def _fetch(self, method: str, kind: str) -> tuple[ModelDescriptor, ...]:
        try:
            response = await getattr(self._client, method)()
        except Exception as exc:
            raise self._map_exception(exc) from exc

        payload = _as_dict(response)
        models = payload.get("models") if isinstance(payload, dict) else None
        if not isinstance(models, list):
            raise ProtocolError(
                f"Malformed {kind} model listing from {self.host}: missing 'models' list."
            )

        try:
            descriptors = tuple(
                ModelDescriptor.model_validate(_as_dict(item)) for item in models
            )
        except ValidationError as exc:
            raise ProtocolError(
                f"Malformed {kind} model listing from {self.host}: {exc}"
            ) from exc

        self._logger.info(
            "catalog.list",
            extra={"event": "catalog.list", "kind": kind, "count": len(descriptors)},
        )
        return descriptors

    def _map_exception(self, exc: Exception) -> OllamaShellError:
        if isinstance(exc, OllamaShellError):
            return exc
        if isinstance(exc, httpx.TransportError):
            return ServiceUnavailableError(self.host, str(exc))
        if isinstance(exc, (ConnectionError, TimeoutError)):
            return ServiceUnavailableError(self.host, str(exc))
        if isinstance(exc, ResponseError):
            return ServiceUnavailableError(
                self.host, f"HTTP {exc.status_code}: {exc.error}"
            )
        # JSON decoding and SDK model validation both surface as ValueError.
        if isinstance(exc, ValueError):
            return ProtocolError(f"Malformed model listing from {self.host}: {exc}")
        return ServiceUnavailableError(self.host, str(exc))
