"""CLI entrypoint for ollama-shell."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from importlib import metadata
from pathlib import Path

from .app import RunOptions, ShellApp
from .config import load_config
from .logging_utils import configure_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ollama-shell",
        description="ollama-shell - Chat with Ollama models from the terminal",
    )
    parser.add_argument("-m", "--model", help="Model to be used")
    parser.add_argument(
        "-f",
        "--force-md",
        action="store_true",
        help="Always show replies in the markdown pager",
    )
    parser.add_argument(
        "-l",
        "--list-models",
        action="store_true",
        help="List available models and exit",
    )
    parser.add_argument(
        "-s",
        "--store-in-clipboard",
        action="store_true",
        help="Store the last response in the clipboard",
    )
    parser.add_argument("--host", help="Ollama host (overrides config and OLLAMA_HOST)")
    parser.add_argument("--config", type=Path, help="Path to an alternate config.toml")
    parser.add_argument("--log-level", help="Override the configured log level")
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    parser.add_argument(
        "prompt",
        nargs="*",
        help="Optional prompt; runs a single turn instead of the interactive loop",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Load configuration, handle CLI flags, and run the shell."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("ollama-shell")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"ollama-shell {version}")
        return 0

    config = load_config(args.config)
    if args.host:
        config["ollama"]["host"] = args.host
    if args.log_level:
        config["logging"]["level"] = args.log_level
    configure_logging(config["logging"])

    display_cfg = config["display"]
    options = RunOptions(
        model=args.model,
        prompt=" ".join(args.prompt) if args.prompt else None,
        list_models=args.list_models,
        force_markdown=args.force_md or bool(display_cfg["force_markdown"]),
        store_in_clipboard=args.store_in_clipboard
        or bool(display_cfg["store_in_clipboard"]),
    )
    try:
        app = ShellApp(config)
    except ValueError as exc:
        parser.error(str(exc))
    return asyncio.run(app.run(options))


if __name__ == "__main__":
    raise SystemExit(main())
