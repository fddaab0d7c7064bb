"""Terminal presentation of prompts, streamed replies, and markdown views."""

from __future__ import annotations

from collections.abc import Iterable

from rich.console import Console
from rich.markdown import Markdown

from .catalog import ModelDescriptor


class TerminalDisplay:
    """Echo streamed assistant text and page rendered markdown replies."""

    def __init__(self, console: Console | None = None, max_width: int = 120) -> None:
        self.console = console or Console(highlight=False)
        self.max_width = max_width

    def user_prompt(self) -> None:
        self.console.print("\nUser: ", style="bold blue", end="")

    def assistant_prompt(self) -> None:
        self.console.print("\nAssistant: ", style="bold red", end="")

    def write_fragment(self, text: str) -> None:
        """Print one streamed fragment without a newline and flush immediately."""
        self.console.print(text, end="", markup=False, highlight=False, soft_wrap=True)
        self.console.file.flush()

    def end_reply(self) -> None:
        self.console.print()

    def show_markdown(self, text: str) -> None:
        """Render ``text`` as markdown inside the pager."""
        width = min(self.max_width, self.console.width)
        with self.console.pager(styles=True):
            self.console.print(Markdown(text), width=width)

    def print_models(self, models: Iterable[ModelDescriptor]) -> None:
        for model in models:
            self.console.print(model.describe(), markup=False, highlight=False)

    def error(self, message: str) -> None:
        self.console.print(f"Error: {message}", style="bold red", markup=False)

    def tool_result(self, name: str, result: str) -> None:
        self.console.print(f"[{name}] {result}", style="dim", markup=False)
