"""Domain exception hierarchy for the Ollama shell client."""

from __future__ import annotations

from collections.abc import Iterable


class OllamaShellError(RuntimeError):
    """Base class for all domain-level errors."""


class ServiceUnavailableError(OllamaShellError):
    """Raised when the Ollama host cannot be reached or the transport fails."""

    def __init__(self, host: str, reason: str = "") -> None:
        self.host = host
        self.reason = reason
        message = f"Unable to reach Ollama host {host}"
        super().__init__(f"{message}: {reason}" if reason else f"{message}.")


class ProtocolError(OllamaShellError):
    """Raised when a non-streaming response body does not have the expected shape."""


class UnknownModelError(OllamaShellError):
    """Raised when the requested model is not installed on the host."""

    def __init__(self, requested: str, available: Iterable[str] = ()) -> None:
        self.requested = requested
        self.available = tuple(available)
        super().__init__(
            f"Cannot load model {requested!r}, available models are {list(self.available)}"
        )


class DuplicateToolError(OllamaShellError):
    """Raised when a tool name is registered twice."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool {name!r} is already registered.")


class ToolArgumentError(OllamaShellError):
    """Raised when a tool call does not match the tool's declared parameters."""

    def __init__(self, tool: str, detail: str) -> None:
        self.tool = tool
        self.detail = detail
        super().__init__(detail)


class MissingArgumentError(ToolArgumentError):
    """A declared parameter is absent from the call."""

    def __init__(self, tool: str, param: str) -> None:
        self.param = param
        super().__init__(tool, f"No such argument {param!r} to function {tool!r}")


class UnexpectedArgumentError(ToolArgumentError):
    """The call supplies a key the tool does not declare."""

    def __init__(self, tool: str, key: str) -> None:
        self.key = key
        super().__init__(tool, f"Function {tool!r} does not take a {key!r} argument")


class ConfigValidationError(OllamaShellError):
    """Raised when configuration cannot be validated safely."""
