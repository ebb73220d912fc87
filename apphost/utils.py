"""Shared utility functions for apphost.

Provides Rich-based console reporting, manifest JSON I/O, name sanitising and
small formatting helpers used across the runtime modules.
"""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape

console = Console(highlight=False, soft_wrap=True)
err_console = Console(stderr=True, highlight=False, soft_wrap=True)

LOG_PREFIX = "[apphost]"

_debug_enabled = False


# ---------------------------------------------------------------------------
# Console output
# ---------------------------------------------------------------------------


def set_debug(enabled: bool) -> None:
    """Enable or disable ``print_debug`` output for this process."""
    global _debug_enabled
    _debug_enabled = enabled


def debug_enabled() -> bool:
    return _debug_enabled


def log(message: str) -> None:
    """Print a prefixed status line to stdout."""
    console.print(f"[cyan]{escape(LOG_PREFIX)}[/cyan] {escape(message)}")


def print_success(message: str) -> None:
    """Print a green success message."""
    console.print(f"[bold green]{escape(LOG_PREFIX)} {escape(message)}[/bold green]")


def print_error(message: str) -> None:
    """Print a red error message to stderr."""
    err_console.print(f"[bold red]{escape(LOG_PREFIX)} {escape(message)}[/bold red]")


def print_warning(message: str) -> None:
    """Print a yellow warning message to stderr."""
    err_console.print(f"[bold yellow]{escape(LOG_PREFIX)} {escape(message)}[/bold yellow]")


def print_debug(message: str, **data: Any) -> None:
    """Print a dim diagnostic line to stderr when debug output is enabled.

    Keyword arguments are rendered as ``key=value`` pairs after the message.
    """
    if not _debug_enabled:
        return
    details = " ".join(f"{key}={value!r}" for key, value in data.items())
    text = f"{message} {details}" if details else message
    err_console.print(f"[dim]{escape(LOG_PREFIX)} {escape(text)}[/dim]")


# ---------------------------------------------------------------------------
# String / name helpers
# ---------------------------------------------------------------------------


def sanitize_name(name: str) -> str:
    """Convert a package name into a safe single directory name.

    Every character outside ``[a-zA-Z0-9_-]`` becomes a hyphen and runs of
    hyphens are collapsed.

    Examples::

        sanitize_name("@renoun/blog") -> "-renoun-blog"
        sanitize_name("docs app") -> "docs-app"
    """
    result = re.sub(r"[^a-zA-Z0-9_-]", "-", name)
    return re.sub(r"-{2,}", "-", result)


def summarize_layered_paths(paths: list[str]) -> str:
    """Summarise relative paths by top-level directory.

    Example::

        summarize_layered_paths(["components/Box.tsx", "components/Button.tsx", "hooks/index.ts"])
        -> "components/ (2 files), hooks/index.ts"
    """
    groups: dict[str, list[str]] = {}
    for path in paths:
        top_level = path.split("/", 1)[0]
        groups.setdefault(top_level, []).append(path)

    parts: list[str] = []
    for top_level, members in groups.items():
        if len(members) == 1:
            parts.append(members[0])
        else:
            parts.append(f"{top_level}/ ({len(members)} files)")
    return ", ".join(parts)


def pluralize(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


# ---------------------------------------------------------------------------
# JSON I/O
# ---------------------------------------------------------------------------


def load_json(path: str | Path) -> dict[str, Any]:
    """Load and parse a JSON object from *path*.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the top-level value is not an object.
    """
    file_path = Path(path)
    data = json.loads(file_path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object in {file_path}")
    return data


def write_json(data: dict[str, Any], path: str | Path) -> None:
    """Write *data* as 2-space indented JSON with a trailing newline."""
    file_path = Path(path)
    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_path.write_text(json.dumps(data, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples::

        format_duration(3.7)    -> "3.7s"
        format_duration(65.2)   -> "1m 5s"
        format_duration(3661.0) -> "1h 1m 1s"
    """
    if seconds < 0:
        return "0.0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60

    parts: list[str] = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")

    if hours > 0 or minutes > 0:
        parts.append(f"{int(secs)}s")
    else:
        parts.append(f"{secs:.1f}s")

    return " ".join(parts)
