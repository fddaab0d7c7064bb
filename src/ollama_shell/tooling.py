"""Tool schemas, strict argument validation, and dispatch for model tool calls."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from .exceptions import (
    DuplicateToolError,
    MissingArgumentError,
    UnexpectedArgumentError,
)

LOGGER = logging.getLogger(__name__)

ToolBody = Callable[[list[str]], str]


@dataclass(frozen=True)
class ToolParameter:
    """One declared tool parameter."""

    name: str
    type: str = "string"
    description: str = ""
    enum: tuple[str, ...] | None = None

    def as_schema(self) -> dict[str, Any]:
        schema: dict[str, Any] = {"type": self.type, "description": self.description}
        if self.enum is not None:
            schema["enum"] = list(self.enum)
        return schema


@dataclass(frozen=True)
class ToolSpec:
    """JSON-schema function tool definition plus its executable body.

    Parameters keep their declaration order; that order defines the
    positional argument list handed to ``body``.
    """

    name: str
    description: str
    body: ToolBody = field(repr=False, compare=False)
    parameters: tuple[ToolParameter, ...] = ()
    required: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        names = [param.name for param in self.parameters]
        if len(names) != len(set(names)):
            raise ValueError(f"Tool {self.name!r} declares a parameter twice.")
        unknown = sorted(self.required - set(names))
        if unknown:
            raise ValueError(f"No such parameter {unknown[0]!r} in {self.name!r}")

    @property
    def parameter_names(self) -> list[str]:
        return [param.name for param in self.parameters]

    def as_ollama_tool(self) -> dict[str, Any]:
        """Render the tool in Ollama's function schema format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {
                        param.name: param.as_schema() for param in self.parameters
                    },
                    "required": [
                        name for name in self.parameter_names if name in self.required
                    ],
                },
            },
        }


class ToolCallRequest(BaseModel):
    """A tool call the assistant embedded as raw JSON in its reply."""

    model_config = ConfigDict(frozen=True)

    name: str
    parameters: dict[str, str]

    @classmethod
    def parse(cls, text: str) -> ToolCallRequest | None:
        """Return the call encoded by ``text``, or None when it is not one.

        Anything that is not a single JSON object with a string ``name`` and
        a string-to-string ``parameters`` mapping is ordinary prose.
        """
        candidate = text.strip()
        if not candidate.startswith("{"):
            return None
        try:
            return cls.model_validate_json(candidate)
        except ValidationError:
            return None


class ToolRegistry:
    """Registry of tools the model may call during a conversation."""

    def __init__(self, specs: Iterable[ToolSpec] = ()) -> None:
        self._specs: dict[str, ToolSpec] = {}
        self._frozen = False
        for spec in specs:
            self.register(spec)

    def register(self, spec: ToolSpec) -> None:
        """Register a tool; names are unique within one registry."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register {spec.name!r}: the tool set is fixed once a session uses it."
            )
        if spec.name in self._specs:
            raise DuplicateToolError(spec.name)
        self._specs[spec.name] = spec
        LOGGER.debug(
            "tools.registered",
            extra={"event": "tools.registered", "tool": spec.name},
        )

    def freeze(self) -> None:
        """Reject further registrations."""
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def lookup(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def list_tool_names(self) -> list[str]:
        return list(self._specs)

    def build_tools_list(self) -> list[dict[str, Any]]:
        """Return Ollama-formatted tool schemas in registration order."""
        return [spec.as_ollama_tool() for spec in self._specs.values()]

    @staticmethod
    def extract_args(spec: ToolSpec, call: ToolCallRequest) -> list[str]:
        """Validate ``call`` against ``spec`` and return ordered positional values."""
        args: list[str] = []
        for name in spec.parameter_names:
            if name not in call.parameters:
                raise MissingArgumentError(spec.name, name)
            args.append(call.parameters[name])

        declared = set(spec.parameter_names)
        for key in call.parameters:
            if key not in declared:
                raise UnexpectedArgumentError(spec.name, key)
        return args

    def invoke(self, spec: ToolSpec, call: ToolCallRequest) -> str:
        """Validate the call strictly and run the tool body synchronously.

        Raises MissingArgumentError or UnexpectedArgumentError before the
        body runs. Failures inside the body are the tool's own business.
        """
        args = self.extract_args(spec, call)
        return str(spec.body(args))

    @property
    def is_empty(self) -> bool:
        return not self._specs

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __iter__(self) -> Iterator[ToolSpec]:
        return iter(self._specs.values())

    def __len__(self) -> int:
        return len(self._specs)
