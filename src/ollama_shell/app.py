"""Wire configuration, model catalog, session and executor into the shell loop."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import sys
from typing import Any, TextIO

from .address import resolve_service_address
from .builtin_tools import register_default_tools
from .catalog import ModelCatalog
from .chat import ChatOptions, StreamingTurnExecutor, TurnResult
from .clipboard import expand_clipboard_token, write_clipboard
from .config import resolve_host_spec
from .display import TerminalDisplay
from .exceptions import OllamaShellError, ServiceUnavailableError
from .session import ChatSession
from .tooling import ToolRegistry

LOGGER = logging.getLogger(__name__)

MARKDOWN_PREFIX = "!"


@dataclass(frozen=True)
class RunOptions:
    """Per-invocation choices taken from the command line."""

    model: str | None = None
    prompt: str | None = None
    list_models: bool = False
    force_markdown: bool = False
    store_in_clipboard: bool = False


class ShellApp:
    """Run single-shot or interactive conversations against one Ollama host."""

    def __init__(
        self,
        config: dict[str, dict[str, Any]],
        catalog: ModelCatalog | None = None,
        executor: StreamingTurnExecutor | None = None,
        display: TerminalDisplay | None = None,
        stdin: TextIO | None = None,
    ) -> None:
        self.config = config
        ollama_cfg = config["ollama"]
        self.base_url = resolve_service_address(resolve_host_spec(config))
        self.catalog = catalog or ModelCatalog(
            self.base_url,
            timeout=int(ollama_cfg["timeout"]),
            fallback_model=str(ollama_cfg["fallback_model"]),
        )
        chat_cfg = config["chat"]
        self.executor = executor or StreamingTurnExecutor(
            self.base_url,
            timeout=int(ollama_cfg["timeout"]),
            options=ChatOptions(
                auto_follow_up=bool(chat_cfg["auto_follow_up"]),
                max_follow_up_turns=int(chat_cfg["max_follow_up_turns"]),
            ),
        )
        self.display = display or TerminalDisplay(
            max_width=int(config["display"]["max_width"])
        )
        self.stdin = stdin or sys.stdin

    def build_tools(self) -> ToolRegistry:
        tools_cfg = self.config["tools"]
        registry = ToolRegistry()
        if tools_cfg["enabled"]:
            register_default_tools(
                registry,
                calculator=bool(tools_cfg["calculator"]),
                open_url=bool(tools_cfg["open_url"]),
            )
        return registry

    def new_session(self) -> ChatSession:
        model = self.catalog.active_model or self.catalog.fallback_model
        return ChatSession(model, self.build_tools())

    async def run(self, options: RunOptions) -> int:
        """Run the requested mode and return a process exit code."""
        try:
            await self.catalog.connect()
            if options.list_models:
                self.display.print_models(self.catalog.installed)
                return 0

            requested = options.model or str(self.config["ollama"]["model"])
            if requested:
                self.catalog.set_active(requested)

            if options.prompt is not None:
                await self.single(options)
            else:
                await self.interactive(options)
            return 0
        except OllamaShellError as exc:
            self.display.error(str(exc))
            return 1
        finally:
            await self.executor.aclose()
            await self.catalog.aclose()

    async def single(self, options: RunOptions) -> str | None:
        session = self.new_session()
        prompt = expand_clipboard_token(options.prompt or "")
        await self._converse(session, prompt)
        return self._present(session, options, options.force_markdown)

    async def interactive(self, options: RunOptions) -> None:
        session = self.new_session()
        while True:
            self.display.user_prompt()
            line = await asyncio.to_thread(self.stdin.readline)
            if not line:
                self.display.end_reply()
                return

            prompt = expand_clipboard_token(line.rstrip("\n"))
            as_markdown = prompt.startswith(MARKDOWN_PREFIX)
            if as_markdown:
                prompt = prompt[len(MARKDOWN_PREFIX) :]

            try:
                await self._converse(session, prompt)
            except ServiceUnavailableError as exc:
                # The session stays usable; the user may simply retry.
                self.display.error(str(exc))
                continue
            self._present(session, options, as_markdown or options.force_markdown)

    async def _converse(self, session: ChatSession, prompt: str) -> list[TurnResult]:
        self.display.assistant_prompt()
        results = await self.executor.run_conversation_turn(
            session, prompt, on_fragment=self.display.write_fragment
        )
        self.display.end_reply()
        for result in results:
            if result.tool_invoked and result.tool_name and result.tool_result:
                self.display.tool_result(result.tool_name, result.tool_result)
        return results

    def _present(
        self, session: ChatSession, options: RunOptions, as_markdown: bool
    ) -> str | None:
        response = session.last_assistant_text()
        if response is None:
            return None
        if as_markdown:
            self.display.show_markdown(response)
        if options.store_in_clipboard:
            write_clipboard(response)
        return response
