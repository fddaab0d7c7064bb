"""Streaming chat turns against Ollama's NDJSON chat endpoint, with tool dispatch."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from enum import Enum
import json
import logging
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from .address import endpoint_url
from .exceptions import (
    OllamaShellError,
    ServiceUnavailableError,
    ToolArgumentError,
    UnknownModelError,
)
from .session import ChatSession
from .tooling import ToolCallRequest

LOGGER = logging.getLogger(__name__)

CHAT_ENDPOINT = "api/chat"
_LOGGED_LINE_LIMIT = 200

FragmentSink = Callable[[str], Any]


class TurnState(str, Enum):
    """Phases of a single request/response turn."""

    IDLE = "IDLE"
    SENDING = "SENDING"
    STREAMING = "STREAMING"
    ASSEMBLING = "ASSEMBLING"
    TOOL_DISPATCH = "TOOL_DISPATCH"
    DONE = "DONE"


class FragmentMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str = "assistant"
    content: str = ""


class ChatFragment(BaseModel):
    """One NDJSON line of a streamed chat reply."""

    model_config = ConfigDict(extra="ignore")

    message: FragmentMessage
    done: bool = False
    model: str | None = None
    created_at: str | None = None
    total_duration: int | None = None
    load_duration: int | None = None
    prompt_eval_count: int | None = None
    prompt_eval_duration: int | None = None
    eval_count: int | None = None
    eval_duration: int | None = None


class NdjsonLineDecoder:
    """Reassemble newline-delimited JSON from arbitrarily split text chunks.

    A line is only parsed once its terminating newline has arrived (or the
    stream ended), so fragment boundaries never depend on chunk boundaries.
    Lines that fail to parse are logged and dropped.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._buffer = ""
        self._logger = logger or LOGGER
        self.skipped_lines = 0

    def feed(self, text: str) -> list[ChatFragment]:
        """Consume ``text`` and return every fragment completed by it."""
        self._buffer += text
        *complete, self._buffer = self._buffer.split("\n")
        return self._parse_lines(complete)

    def finish(self) -> list[ChatFragment]:
        """Parse whatever is left once the stream has closed."""
        remainder, self._buffer = self._buffer, ""
        return self._parse_lines([remainder])

    def _parse_lines(self, lines: list[str]) -> list[ChatFragment]:
        fragments: list[ChatFragment] = []
        for raw_line in lines:
            line = raw_line.strip()
            if not line:
                continue
            fragment = self._parse_line(line)
            if fragment is not None:
                fragments.append(fragment)
        return fragments

    def _parse_line(self, line: str) -> ChatFragment | None:
        try:
            data = json.loads(line)
        except (ValueError, RecursionError) as exc:
            # RecursionError comes from pathologically nested arrays or objects.
            self._skip(line, f"{exc.__class__.__name__}: {exc}")
            return None

        if isinstance(data, dict) and "error" in data and "message" not in data:
            self.skipped_lines += 1
            self._logger.warning(
                "chat.stream.error_fragment",
                extra={"event": "chat.stream.error_fragment", "error": str(data["error"])},
            )
            return None

        try:
            return ChatFragment.model_validate(data)
        except ValidationError as exc:
            self._skip(line, str(exc))
            return None

    def _skip(self, line: str, reason: str) -> None:
        self.skipped_lines += 1
        self._logger.warning(
            "chat.stream.malformed_line",
            extra={
                "event": "chat.stream.malformed_line",
                "line": line[:_LOGGED_LINE_LIMIT],
                "reason": reason,
            },
        )


@dataclass(frozen=True)
class ChatOptions:
    """Turn policy knobs.

    ``auto_follow_up`` lets ``run_conversation_turn`` send prompt-less turns
    after a tool dispatch so the model can read the tool result.
    """

    auto_follow_up: bool = False
    max_follow_up_turns: int = 1


@dataclass(frozen=True)
class TurnResult:
    """Outcome of one completed turn."""

    text: str
    tool_invoked: bool = False
    tool_name: str | None = None
    tool_result: str | None = None
    fragment_count: int = 0


class StreamingTurnExecutor:
    """Run chat turns: send history, stream the reply, dispatch one tool call."""

    def __init__(
        self,
        host: str,
        timeout: int = 120,
        options: ChatOptions | None = None,
        client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.host = host
        self.options = options or ChatOptions()
        self._logger = logger or LOGGER
        self._owns_client = client is None
        self._client = (
            client
            if client is not None
            else httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        )
        self._state = TurnState.IDLE
        self._in_flight = False

    @property
    def state(self) -> TurnState:
        return self._state

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> StreamingTurnExecutor:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def _transition(self, new_state: TurnState) -> None:
        self._logger.debug(
            "chat.turn.state",
            extra={
                "event": "chat.turn.state",
                "from_state": self._state.value,
                "to_state": new_state.value,
            },
        )
        self._state = new_state

    def build_payload(self, session: ChatSession) -> dict[str, Any]:
        return {
            "model": session.model,
            "messages": session.to_payload(),
            "tools": session.tools.build_tools_list(),
        }

    async def stream_reply(
        self, session: ChatSession
    ) -> AsyncGenerator[str, None]:
        """Send the session history and yield reply text as it arrives.

        The generator is single-use. Closing it early, or cancelling the
        task consuming it, closes the HTTP stream.
        """
        payload = self.build_payload(session)
        url = endpoint_url(self.host, CHAT_ENDPOINT)
        decoder = NdjsonLineDecoder(self._logger)
        self._logger.info(
            "chat.request.start",
            extra={
                "event": "chat.request.start",
                "model": session.model,
                "messages": len(payload["messages"]),
                "tools": len(payload["tools"]),
            },
        )

        try:
            async with self._client.stream("POST", url, json=payload) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise self._status_error(session, response.status_code, body)

                self._transition(TurnState.STREAMING)
                async for text in response.aiter_text():
                    for fragment in decoder.feed(text):
                        if fragment.message.content:
                            yield fragment.message.content
                for fragment in decoder.finish():
                    if fragment.message.content:
                        yield fragment.message.content
        except httpx.HTTPError as exc:
            raise self._map_exception(exc) from exc

    async def run_turn(
        self,
        session: ChatSession,
        prompt: str | None = None,
        on_fragment: FragmentSink | None = None,
    ) -> TurnResult:
        """Run one turn and return the assembled assistant reply.

        The user prompt, when given, is appended before sending and stays in
        history even if the request fails. Exactly one assistant message is
        appended per completed turn, followed by at most one tool message.
        """
        if self._in_flight:
            raise RuntimeError("A turn is already in progress on this executor.")

        self._in_flight = True
        try:
            self._transition(TurnState.SENDING)
            if prompt is not None:
                session.append_user(prompt)

            parts: list[str] = []
            async for text in self.stream_reply(session):
                parts.append(text)
                if on_fragment is not None:
                    on_fragment(text)

            self._transition(TurnState.ASSEMBLING)
            reply = "".join(parts)
            session.append_assistant(reply)
            self._logger.info(
                "chat.turn.complete",
                extra={
                    "event": "chat.turn.complete",
                    "model": session.model,
                    "fragments": len(parts),
                    "chars": len(reply),
                },
            )

            result = await self._dispatch_tool_call(session, reply, len(parts))
        except asyncio.CancelledError:
            self._logger.info(
                "chat.request.cancelled",
                extra={"event": "chat.request.cancelled"},
            )
            self._state = TurnState.IDLE
            raise
        except BaseException:
            self._state = TurnState.IDLE
            raise
        finally:
            self._in_flight = False

        self._transition(TurnState.DONE)
        return result

    async def run_conversation_turn(
        self,
        session: ChatSession,
        prompt: str | None = None,
        on_fragment: FragmentSink | None = None,
    ) -> list[TurnResult]:
        """Run a turn, then follow-up turns after tool calls when enabled."""
        results = [await self.run_turn(session, prompt, on_fragment)]
        follow_ups = 0
        while (
            self.options.auto_follow_up
            and results[-1].tool_invoked
            and follow_ups < self.options.max_follow_up_turns
        ):
            follow_ups += 1
            results.append(await self.run_turn(session, None, on_fragment))
        return results

    async def _dispatch_tool_call(
        self, session: ChatSession, reply: str, fragment_count: int
    ) -> TurnResult:
        call = ToolCallRequest.parse(reply)
        spec = session.tools.lookup(call.name) if call is not None else None
        if call is None or spec is None:
            return TurnResult(text=reply, fragment_count=fragment_count)

        self._transition(TurnState.TOOL_DISPATCH)
        self._logger.info(
            "chat.tool.call",
            extra={"event": "chat.tool.call", "tool": call.name},
        )
        try:
            result = await asyncio.to_thread(session.tools.invoke, spec, call)
        except ToolArgumentError as exc:
            result = f"Error calling {call.name}: {exc.detail}"
            self._logger.warning(
                "chat.tool.error",
                extra={"event": "chat.tool.error", "tool": call.name, "error": exc.detail},
            )
        session.append_tool(result)
        return TurnResult(
            text=reply,
            tool_invoked=True,
            tool_name=call.name,
            tool_result=result,
            fragment_count=fragment_count,
        )

    def _status_error(
        self, session: ChatSession, status_code: int, body: str
    ) -> OllamaShellError:
        if status_code == 404:
            return UnknownModelError(session.model)
        return ServiceUnavailableError(self.host, f"HTTP {status_code}: {body.strip()}")

    def _map_exception(self, exc: Exception) -> OllamaShellError:
        if isinstance(exc, OllamaShellError):
            return exc
        return ServiceUnavailableError(self.host, str(exc) or exc.__class__.__name__)
