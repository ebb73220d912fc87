"""Project-level ignore rules.

Asks git which untracked paths under the project root are ignored by the
project's ``.gitignore`` / exclude configuration. Projects outside a git
repository, or machines without git, simply have no extra rules.
"""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path

from apphost.utils import print_debug


@dataclass(frozen=True)
class IgnoreRules:
    """Snapshot of git-ignored paths, relative to the project root (POSIX)."""

    ignored_files: frozenset[str]
    ignored_dirs: frozenset[str]

    def is_ignored(self, relative_path: str) -> bool:
        if relative_path in self.ignored_files or relative_path in self.ignored_dirs:
            return True
        parts = relative_path.split("/")
        for depth in range(1, len(parts)):
            if "/".join(parts[:depth]) in self.ignored_dirs:
                return True
        return False


EMPTY_RULES = IgnoreRules(ignored_files=frozenset(), ignored_dirs=frozenset())


async def _run_git(*args: str, cwd: Path, timeout: float) -> bytes | None:
    """Run a git command and return stdout, or ``None`` on any failure."""
    try:
        process = await asyncio.create_subprocess_exec(
            "git",
            *args,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError:
        return None

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return None

    if process.returncode != 0:
        return None
    return stdout


def parse_ls_files_output(raw: bytes) -> IgnoreRules:
    """Parse ``git ls-files -z --others -i --exclude-standard --directory`` output."""
    files: set[str] = set()
    directories: set[str] = set()
    for chunk in raw.split(b"\x00"):
        if not chunk:
            continue
        relative = chunk.decode("utf-8", errors="surrogateescape")
        if relative.endswith("/"):
            relative = relative.rstrip("/")
            if relative:
                directories.add(relative)
        else:
            files.add(relative)
    return IgnoreRules(ignored_files=frozenset(files), ignored_dirs=frozenset(directories))


async def load_ignore_rules(project_root: Path, timeout: float = 10.0) -> IgnoreRules:
    """Return the git ignore snapshot for *project_root*.

    Returns ``EMPTY_RULES`` when git is unavailable or the project is not
    inside a repository.
    """
    if shutil.which("git") is None:
        return EMPTY_RULES

    inside = await _run_git("rev-parse", "--is-inside-work-tree", cwd=project_root, timeout=timeout)
    if inside is None or inside.strip() != b"true":
        return EMPTY_RULES

    raw = await _run_git(
        "ls-files",
        "-z",
        "--others",
        "-i",
        "--exclude-standard",
        "--directory",
        cwd=project_root,
        timeout=timeout,
    )
    if raw is None:
        print_debug("git ls-files failed; ignoring project ignore rules", root=str(project_root))
        return EMPTY_RULES
    return parse_ls_files_output(raw)
