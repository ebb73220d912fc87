"""Shared pytest fixtures for the apphost test suite.

Provides reusable fixtures for:
- A project with an installed Next.js app template under node_modules
- Manifest writers
- A fake directory watcher that records watch handles
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import pytest

from apphost.runtime.watcher import WatchHandle
from apphost.utils import set_debug

TEMPLATE_NAME = "@renoun/blog"


def write_manifest(path: Path, data: dict[str, Any]) -> Path:
    """Write *data* as a ``package.json`` at *path* (a directory or file path)."""
    manifest = path / "package.json" if path.suffix != ".json" else path
    manifest.parent.mkdir(parents=True, exist_ok=True)
    manifest.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    return manifest


def write_file(path: Path, content: str = "") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------


@dataclass
class AppProject:
    root: Path
    template_root: Path

    @property
    def node_modules(self) -> Path:
        return self.root / "node_modules"

    def install_package(self, name: str, manifest: dict[str, Any]) -> Path:
        package_root = self.node_modules / name
        write_manifest(package_root, {"name": name, **manifest})
        return package_root


@pytest.fixture
def app_project(tmp_path: Path) -> AppProject:
    """A project depending on a Next.js template that is configured for export.

    Layout::

        project/
          package.json                      (depends on @renoun/blog)
          node_modules/@renoun/blog/        (the template)
          node_modules/next/package.json    (framework with a bin entry)
          node_modules/renoun/package.json
    """
    root = tmp_path / "project"
    root.mkdir()
    write_manifest(
        root,
        {
            "name": "docs",
            "private": True,
            "dependencies": {TEMPLATE_NAME: "^1.0.0", "renoun": "^10.0.0"},
        },
    )

    template_root = root / "node_modules" / "@renoun" / "blog"
    write_manifest(
        template_root,
        {
            "name": TEMPLATE_NAME,
            "version": "1.0.0",
            "dependencies": {"renoun": "^10.0.0", "next": "15.0.0", "react": "19.0.0"},
        },
    )
    write_file(template_root / "next.config.ts", "export default {\n  output: 'export',\n}\n")
    write_file(template_root / "app" / "page.tsx", "export default function Page() {}\n")
    write_file(template_root / "components" / "Box.tsx", "export const Box = 'template'\n")
    write_file(template_root / "tsconfig.json", "{}\n")

    project = AppProject(root=root, template_root=template_root)
    project.install_package("next", {"version": "15.0.0", "bin": {"next": "dist/bin/next"}})
    write_file(project.node_modules / "next" / "dist" / "bin" / "next", "#!/usr/bin/env node\n")
    project.install_package("renoun", {"version": "10.0.0"})
    return project


@pytest.fixture
def manifest_writer() -> Callable[[Path, dict[str, Any]], Path]:
    return write_manifest


@pytest.fixture
def file_writer() -> Callable[..., Path]:
    return write_file


# ---------------------------------------------------------------------------
# Watching
# ---------------------------------------------------------------------------


class FakeWatcher:
    """Directory watcher double; ``fire()`` simulates a change notification."""

    def __init__(self) -> None:
        self.callbacks: dict[Path, Callable[[], None]] = {}
        self.closed: list[Path] = []
        self.stopped = False
        self.fail_on: set[Path] = set()

    def watch(self, directory: Path, callback: Callable[[], None]) -> WatchHandle:
        if directory in self.fail_on:
            raise OSError(f"cannot watch {directory}")
        self.callbacks[directory] = callback
        return WatchHandle(directory=directory, token=directory)

    def close(self, handle: WatchHandle) -> None:
        self.callbacks.pop(handle.directory, None)
        self.closed.append(handle.directory)

    def stop(self) -> None:
        self.stopped = True

    @property
    def watched(self) -> set[Path]:
        return set(self.callbacks)

    def fire(self, directory: Path | None = None) -> None:
        targets = [self.callbacks[directory]] if directory is not None else list(self.callbacks.values())
        for callback in targets:
            callback()


@pytest.fixture
def fake_watcher() -> FakeWatcher:
    return FakeWatcher()


@pytest.fixture(autouse=True)
def _reset_debug():
    """Keep debug output off between tests."""
    set_debug(False)
    yield
    set_debug(False)
