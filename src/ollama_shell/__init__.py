"""Top-level package for ollama-shell."""

from __future__ import annotations

from importlib import import_module
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .address import resolve_service_address
    from .catalog import ModelCatalog, ModelDescriptor, negotiate_default
    from .chat import ChatOptions, StreamingTurnExecutor, TurnResult, TurnState
    from .exceptions import (
        ConfigValidationError,
        DuplicateToolError,
        MissingArgumentError,
        OllamaShellError,
        ProtocolError,
        ServiceUnavailableError,
        UnexpectedArgumentError,
        UnknownModelError,
    )
    from .session import ChatSession, Message, Role
    from .tooling import ToolCallRequest, ToolParameter, ToolRegistry, ToolSpec

_EXPORTS = {
    "resolve_service_address": ".address",
    "ModelCatalog": ".catalog",
    "ModelDescriptor": ".catalog",
    "negotiate_default": ".catalog",
    "ChatOptions": ".chat",
    "StreamingTurnExecutor": ".chat",
    "TurnResult": ".chat",
    "TurnState": ".chat",
    "ConfigValidationError": ".exceptions",
    "DuplicateToolError": ".exceptions",
    "MissingArgumentError": ".exceptions",
    "OllamaShellError": ".exceptions",
    "ProtocolError": ".exceptions",
    "ServiceUnavailableError": ".exceptions",
    "UnexpectedArgumentError": ".exceptions",
    "UnknownModelError": ".exceptions",
    "ChatSession": ".session",
    "Message": ".session",
    "Role": ".session",
    "ToolCallRequest": ".tooling",
    "ToolParameter": ".tooling",
    "ToolRegistry": ".tooling",
    "ToolSpec": ".tooling",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import public symbols on first access."""
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(import_module(module_name, __name__), name)
