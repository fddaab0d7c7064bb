"""Ordered conversation history bound to one model and one tool registry."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import json
from typing import Any

from .tooling import ToolRegistry


class Role(str, Enum):
    """Authors of conversation messages."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass(frozen=True)
class Message:
    """One immutable history entry."""

    role: Role
    content: str
    tool_calls: tuple[dict[str, Any], ...] | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_calls is not None:
            payload["tool_calls"] = [dict(call) for call in self.tool_calls]
        return payload


class ChatSession:
    """Own the message history of one logical conversation.

    History only grows; nothing outside this class mutates it. The model is
    fixed at construction, so switching models means starting a new session.
    The tool registry is frozen when the session takes it.
    """

    def __init__(self, model: str, tools: ToolRegistry | None = None) -> None:
        self._model = model
        self._tools = tools if tools is not None else ToolRegistry()
        self._tools.freeze()
        self._messages: list[Message] = []

    @property
    def model(self) -> str:
        return self._model

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def append_user(self, text: str) -> Message:
        return self._append(Role.USER, text)

    def append_assistant(self, text: str) -> Message:
        return self._append(Role.ASSISTANT, text)

    def append_tool(self, text: str) -> Message:
        return self._append(Role.TOOL, text)

    def last_assistant_text(self) -> str | None:
        """Return the content of the latest assistant message, if any."""
        for message in reversed(self._messages):
            if message.role is Role.ASSISTANT:
                return message.content
        return None

    def to_payload(self) -> list[dict[str, Any]]:
        """Messages in the shape the chat endpoint expects."""
        return [message.to_payload() for message in self._messages]

    def export_json(self) -> str:
        """Export history using stable list and field ordering."""
        return json.dumps(self.to_payload(), ensure_ascii=False, separators=(",", ":"))

    def _append(self, role: Role, text: str) -> Message:
        message = Message(role=role, content=text)
        self._messages.append(message)
        return message

    def __len__(self) -> int:
        return len(self._messages)
