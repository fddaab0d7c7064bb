"""Clipboard access through whichever desktop clipboard command is installed."""

from __future__ import annotations

import logging
import shutil
import subprocess

LOGGER = logging.getLogger(__name__)

CLIPBOARD_TOKEN = "::CL::"

# Tried in order; Wayland first, then X11, then macOS.
_READ_COMMANDS: tuple[tuple[str, ...], ...] = (
    ("wl-paste", "--no-newline"),
    ("xclip", "-selection", "clipboard", "-o"),
    ("xsel", "--clipboard", "--output"),
    ("pbpaste",),
)
_WRITE_COMMANDS: tuple[tuple[str, ...], ...] = (
    ("wl-copy",),
    ("xclip", "-selection", "clipboard"),
    ("xsel", "--clipboard", "--input"),
    ("pbcopy",),
)
_TIMEOUT_SECONDS = 5


def _first_available(commands: tuple[tuple[str, ...], ...]) -> list[str] | None:
    for command in commands:
        binary = shutil.which(command[0])
        if binary is not None:
            return [binary, *command[1:]]
    return None


def read_clipboard() -> str:
    """Return clipboard text, or an empty string when unavailable."""
    cmd = _first_available(_READ_COMMANDS)
    if cmd is None:
        LOGGER.warning(
            "clipboard.unavailable",
            extra={"event": "clipboard.unavailable", "operation": "read"},
        )
        return ""
    try:
        proc = subprocess.run(
            cmd, capture_output=True, timeout=_TIMEOUT_SECONDS, check=False
        )
    except (subprocess.TimeoutExpired, OSError) as exc:
        LOGGER.warning(
            "clipboard.read.failed",
            extra={"event": "clipboard.read.failed", "error": str(exc)},
        )
        return ""
    if proc.returncode != 0:
        return ""
    return proc.stdout.decode("utf-8", errors="replace")


def write_clipboard(text: str) -> bool:
    """Store ``text`` in the clipboard; return whether it worked."""
    cmd = _first_available(_WRITE_COMMANDS)
    if cmd is None:
        LOGGER.warning(
            "clipboard.unavailable",
            extra={"event": "clipboard.unavailable", "operation": "write"},
        )
        return False
    try:
        proc = subprocess.run(
            cmd,
            input=text.encode("utf-8"),
            # wl-copy keeps a daemon attached to inherited pipes.
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            timeout=_TIMEOUT_SECONDS,
            check=False,
        )
    except (subprocess.TimeoutExpired, OSError) as exc:
        LOGGER.error(
            "clipboard.write.failed",
            extra={"event": "clipboard.write.failed", "error": str(exc)},
        )
        return False
    if proc.returncode != 0:
        LOGGER.error(
            "clipboard.write.failed",
            extra={"event": "clipboard.write.failed", "returncode": proc.returncode},
        )
        return False
    LOGGER.info("clipboard.write", extra={"event": "clipboard.write"})
    return True


def expand_clipboard_token(prompt: str) -> str:
    """Replace every ``::CL::`` in ``prompt`` with the clipboard contents."""
    if CLIPBOARD_TOKEN not in prompt:
        return prompt
    return prompt.replace(CLIPBOARD_TOKEN, read_clipboard())
