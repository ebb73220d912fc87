"""Overlay synchronization between the project and the runtime directory.

Keeps every project file mirrored into the runtime directory, where it
shadows the template's file at the same relative path. The project tree is
watched directory by directory; bursts of change notifications are debounced
and coalesced into synchronization passes that never overlap.

Pass state machine::

    IDLE --sync()--> SYNCING --pass done--> IDLE
                        |  ^
             sync() --> |  | pass done, run again
                        v  |
                SYNCING_WITH_PENDING
"""

from __future__ import annotations

import asyncio
import errno
import os
import shutil
import stat
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from apphost.runtime.containment import PathEscapeError, assert_inside
from apphost.runtime.ignore import EMPTY_RULES, IgnoreRules, load_ignore_rules
from apphost.runtime.preparer import IGNORED_DIRECTORIES
from apphost.runtime.watcher import WatchdogDirectoryWatcher, WatchHandle
from apphost.utils import print_debug, print_error

DEBOUNCE_SECONDS = 0.05

IGNORED_PROJECT_FILES = frozenset(
    {
        "package.json",
        "pnpm-lock.yaml",
        "package-lock.json",
        "yarn.lock",
        "bun.lockb",
    }
)

# Skipped at any depth; the rest of IGNORED_DIRECTORIES only at the top level.
NESTED_IGNORED_DIRECTORIES = frozenset({"node_modules", ".git"})


class SyncState(Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    SYNCING_WITH_PENDING = "syncing-with-pending"


class EntryKind(Enum):
    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    OTHER = "other"


class LinkResult(Enum):
    HARD_LINK = "hard-link"
    COPY = "copy"


def classify_entry(entry: os.DirEntry) -> EntryKind:
    if entry.is_symlink():
        return EntryKind.SYMLINK
    if entry.is_dir(follow_symlinks=False):
        return EntryKind.DIRECTORY
    if entry.is_file(follow_symlinks=False):
        return EntryKind.FILE
    return EntryKind.OTHER


def should_ignore(relative_path: str, is_directory: bool) -> bool:
    """Return whether a project entry is excluded from the overlay."""
    segments = relative_path.split("/")
    if is_directory:
        return segments[0] in IGNORED_DIRECTORIES or segments[-1] in NESTED_IGNORED_DIRECTORIES
    return segments[-1] in IGNORED_PROJECT_FILES


def link_or_copy(source: Path, target: Path) -> LinkResult:
    """Hard-link *source* to *target*, copying instead across devices.

    Any error other than a cross-device link failure propagates.
    """
    try:
        os.link(source, target)
        return LinkResult.HARD_LINK
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise
    print_debug("Cross-device link, copying instead", source=str(source))
    shutil.copy2(source, target)
    return LinkResult.COPY


def _shares_storage(target: os.stat_result, source: os.stat_result) -> bool:
    if (target.st_dev, target.st_ino) == (source.st_dev, source.st_ino):
        return True
    # A cross-device copy can never share an inode; an unchanged copy keeps
    # the source's size and mtime.
    return (
        target.st_dev != source.st_dev
        and target.st_size == source.st_size
        and target.st_mtime_ns == source.st_mtime_ns
    )


def _remove_entry(path: Path, existing: os.stat_result) -> None:
    if stat.S_ISDIR(existing.st_mode):
        shutil.rmtree(path)
    else:
        path.unlink()


# ---------------------------------------------------------------------------
# Project scanning
# ---------------------------------------------------------------------------


@dataclass
class ProjectScan:
    """Everything one walk of the project tree found."""

    directories: list[Path] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)


def scan_project(project_root: Path, rules: IgnoreRules = EMPTY_RULES) -> ProjectScan:
    """Walk *project_root* depth-first and collect override candidates.

    Subdirectories are scanned before the files of their parent are added.
    Symbolic links become candidates only when they resolve to a regular
    file inside the project; links that escape are listed in ``rejected``.
    """
    scan = ProjectScan()
    _scan_directory(project_root, "", rules, scan)
    return scan


def _scan_directory(root: Path, relative_dir: str, rules: IgnoreRules, scan: ProjectScan) -> None:
    absolute = root / relative_dir if relative_dir else root
    try:
        with os.scandir(absolute) as iterator:
            entries = sorted(iterator, key=lambda entry: entry.name)
    except FileNotFoundError:
        if not relative_dir:
            raise
        return
    scan.directories.append(absolute)

    files: list[str] = []
    for entry in entries:
        relative = f"{relative_dir}/{entry.name}" if relative_dir else entry.name
        kind = classify_entry(entry)

        if kind is EntryKind.DIRECTORY:
            if should_ignore(relative, True) or rules.is_ignored(relative):
                continue
            _scan_directory(root, relative, rules, scan)
        elif kind is EntryKind.FILE:
            if should_ignore(relative, False) or rules.is_ignored(relative):
                continue
            files.append(relative)
        elif kind is EntryKind.SYMLINK:
            if should_ignore(relative, False) or rules.is_ignored(relative):
                continue
            try:
                resolved = assert_inside(entry.path, root)
            except (PathEscapeError, OSError, RuntimeError):
                scan.rejected.append(relative)
                continue
            if resolved.is_file():
                files.append(relative)

    scan.files.extend(files)


# ---------------------------------------------------------------------------
# Synchronizer
# ---------------------------------------------------------------------------


class OverlaySynchronizer:
    """Mirrors project files over the template inside the runtime directory.

    Attributes:
        state: Current ``SyncState``.
        pass_count: Number of full passes started.
        mutation_count: Link, copy and delete operations performed so far.
    """

    def __init__(
        self,
        project_root: str | Path,
        runtime_directory: str | Path,
        *,
        watcher: Any | None = None,
        respect_gitignore: bool = True,
        ignore_loader: Callable[[Path], Any] | None = None,
    ):
        self.project_root = Path(project_root).resolve()
        self.runtime_directory = Path(runtime_directory)
        self.watcher = watcher if watcher is not None else WatchdogDirectoryWatcher()
        self.respect_gitignore = respect_gitignore
        self._ignore_loader = ignore_loader or load_ignore_rules

        self.state = SyncState.IDLE
        self.pass_count = 0
        self.mutation_count = 0

        self._records: set[str] = set()
        self._handles: dict[Path, WatchHandle] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._stopped = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Run one full pass; watching is live once it returns."""
        self._loop = asyncio.get_running_loop()
        self._stopped = False
        await self.sync()

    def stop(self) -> None:
        """Close every watch handle. An in-flight pass is allowed to finish."""
        self._stopped = True
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        for handle in self._handles.values():
            self.watcher.close(handle)
        self._handles.clear()
        self.watcher.stop()

    def layered_paths(self) -> list[str]:
        return sorted(self._records)

    def watched_directories(self) -> list[Path]:
        return sorted(self._handles)

    @property
    def has_scheduled_sync(self) -> bool:
        return self._debounce_handle is not None

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def notify_change(self) -> None:
        """Watch callback; safe to call from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self.schedule_sync)
        except RuntimeError:
            # Loop shut down between the check and the call.
            pass

    def schedule_sync(self) -> None:
        """Debounce a pass; a second request while one is pending is a no-op."""
        if self._stopped or self._debounce_handle is not None:
            return
        loop = self._loop or asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(DEBOUNCE_SECONDS, self._fire_scheduled_sync)

    def _fire_scheduled_sync(self) -> None:
        self._debounce_handle = None
        loop = self._loop or asyncio.get_running_loop()
        task = loop.create_task(self._run_scheduled_sync())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_scheduled_sync(self) -> None:
        try:
            await self.sync()
        except Exception as exc:
            print_error(f"Failed to synchronize app layers: {exc}")

    async def wait_idle(self) -> None:
        """Wait for scheduled and running passes to settle."""
        while self._debounce_handle is not None or self._tasks:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
            else:
                await asyncio.sleep(DEBOUNCE_SECONDS)

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def sync(self) -> None:
        """Run a pass now, or mark one pending if a pass is already running."""
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        if self.state is not SyncState.IDLE:
            self.state = SyncState.SYNCING_WITH_PENDING
            return

        self.state = SyncState.SYNCING
        try:
            await self._run_pass()
            while self.state is SyncState.SYNCING_WITH_PENDING:
                self.state = SyncState.SYNCING
                await self._run_pass()
        finally:
            missed = self.state is SyncState.SYNCING_WITH_PENDING
            self.state = SyncState.IDLE
            if missed:
                self.schedule_sync()

    async def _run_pass(self) -> None:
        self.pass_count += 1
        loop = asyncio.get_running_loop()

        rules = await self._ignore_loader(self.project_root) if self.respect_gitignore else EMPTY_RULES
        scan = await loop.run_in_executor(None, scan_project, self.project_root, rules)

        for directory in scan.directories:
            self._ensure_watch(directory)
        for relative_path in scan.rejected:
            print_debug("Skipping link outside the project", path=relative_path)

        valid: set[str] = set()
        for relative_path in scan.files:
            try:
                await self.ensure_file_override(relative_path)
            except PathEscapeError as exc:
                print_debug("Skipping override outside the project", path=relative_path, reason=str(exc))
                continue
            except FileNotFoundError:
                print_debug("Project file vanished during sync", path=relative_path)
                continue
            valid.add(relative_path)

        await self._remove_obsolete_layers(valid)
        self._close_obsolete_watches(set(scan.directories))

    async def ensure_file_override(self, relative_path: str) -> bool:
        """Materialize one project file in the runtime directory.

        Returns:
            ``True`` if anything on disk changed.

        Raises:
            PathEscapeError: If the project file resolves outside the project.
        """
        loop = asyncio.get_running_loop()
        mutations = await loop.run_in_executor(None, self._apply_override, relative_path)
        self.mutation_count += mutations
        self._records.add(relative_path)
        return mutations > 0

    def _apply_override(self, relative_path: str) -> int:
        source = self.project_root / relative_path
        target = self.runtime_directory / relative_path

        # Links are materialized as their target file, never copied as links.
        resolved = assert_inside(source, self.project_root)
        source_stat = resolved.stat()

        try:
            existing: os.stat_result | None = target.lstat()
        except (FileNotFoundError, NotADirectoryError):
            existing = None

        if existing is not None and stat.S_ISREG(existing.st_mode) and _shares_storage(existing, source_stat):
            return 0

        mutations = 0
        if existing is not None:
            _remove_entry(target, existing)
            mutations += 1
        mutations += self._ensure_parent_directory(target)

        link_or_copy(resolved, target)
        return mutations + 1

    def _ensure_parent_directory(self, target: Path) -> int:
        """Create *target*'s parent, removing template files in the way."""
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            return 0
        except (FileExistsError, NotADirectoryError):
            pass

        removed = 0
        relative_parent = target.parent.relative_to(self.runtime_directory)
        current = self.runtime_directory
        for part in relative_parent.parts:
            current = current / part
            if current.is_symlink() or (current.exists() and not current.is_dir()):
                current.unlink()
                removed += 1
        target.parent.mkdir(parents=True, exist_ok=True)
        return removed

    async def _remove_obsolete_layers(self, valid: set[str]) -> None:
        loop = asyncio.get_running_loop()
        for relative_path in sorted(self._records - valid):
            # The template's original file is not restored.
            await loop.run_in_executor(None, self._remove_layer, relative_path)
            self._records.discard(relative_path)
            self.mutation_count += 1

    def _remove_layer(self, relative_path: str) -> None:
        target = self.runtime_directory / relative_path
        try:
            existing = target.lstat()
        except (FileNotFoundError, NotADirectoryError):
            return
        _remove_entry(target, existing)

    # ------------------------------------------------------------------
    # Watch handles
    # ------------------------------------------------------------------

    def _ensure_watch(self, directory: Path) -> None:
        if self._stopped or directory in self._handles:
            return
        try:
            self._handles[directory] = self.watcher.watch(directory, self.notify_change)
        except OSError as exc:
            print_debug("Failed to watch directory", directory=str(directory), reason=str(exc))

    def _close_obsolete_watches(self, live_directories: set[Path]) -> None:
        for directory in list(self._handles):
            if directory in live_directories:
                continue
            self.watcher.close(self._handles.pop(directory))
