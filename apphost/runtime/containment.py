"""Path containment checks.

Guards every place where a symbolic link or user-supplied path could point
outside of the directory it was found in.
"""

from __future__ import annotations

import os
from pathlib import Path


class PathEscapeError(ValueError):
    """Raised when a path resolves outside of its expected root."""

    def __init__(self, candidate: str | Path, root: str | Path, resolved: Path | None = None):
        self.candidate = Path(candidate)
        self.root = Path(root)
        self.resolved = resolved
        target = f" (resolves to {resolved})" if resolved is not None else ""
        super().__init__(f"Path {self.candidate}{target} escapes {self.root}")


def assert_inside(candidate: str | Path, root: str | Path) -> Path:
    """Return the canonical form of *candidate* if it lies within *root*.

    Both paths are resolved through every symbolic link. The candidate must
    exist; a dangling link raises ``FileNotFoundError`` and a link loop
    raises ``RuntimeError`` or ``OSError`` depending on the interpreter.

    Raises:
        PathEscapeError: If the resolved candidate is neither *root* itself
            nor a descendant of it.
    """
    resolved_root = Path(os.path.realpath(root))
    resolved = Path(candidate).resolve(strict=True)
    if resolved != resolved_root and not resolved.is_relative_to(resolved_root):
        raise PathEscapeError(candidate, root, resolved)
    return resolved


def is_inside(candidate: str | Path, root: str | Path) -> bool:
    """Non-raising variant of :func:`assert_inside`."""
    try:
        assert_inside(candidate, root)
    except (PathEscapeError, OSError, RuntimeError):
        return False
    return True
