"""Runtime directory preparation.

Seeds a disposable runtime directory from the app template, attaches the
installed dependency graph, and merges the project and template manifests.
The runtime directory is deleted and recreated on every run.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from apphost.runtime.containment import PathEscapeError, assert_inside
from apphost.runtime.template import DEPENDENCY_SECTIONS, TemplatePackage
from apphost.utils import load_json, print_debug, print_warning, sanitize_name, write_json

IGNORED_DIRECTORIES = frozenset(
    {
        "node_modules",
        ".git",
        ".next",
        ".turbo",
        ".output",
        ".runtime",
        "dist",
        "out",
    }
)

VIRTUAL_STORE_NAME = ".pnpm"


@dataclass(frozen=True)
class DependencyConflict:
    """One dependency declared with different specifiers by project and template."""

    name: str
    section: str
    project_spec: str
    template_spec: str


@dataclass
class ManifestMerge:
    """Result of merging project and template dependency sections."""

    sections: dict[str, dict[str, str]] = field(default_factory=dict)
    conflicts: list[DependencyConflict] = field(default_factory=list)

    def apply_to(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of *manifest* with the merged sections substituted."""
        merged = dict(manifest)
        for section, entries in self.sections.items():
            merged[section] = dict(entries)
        return merged


def merge_manifests(
    project_manifest: dict[str, Any], template_manifest: dict[str, Any]
) -> ManifestMerge:
    """Combine dependency sections, template entries winning on conflict.

    The installed dependency graph reflects the template's versions, so a
    differing project specifier is recorded as a conflict rather than used.
    """
    result = ManifestMerge()
    for section in DEPENDENCY_SECTIONS:
        project_entries = project_manifest.get(section)
        template_entries = template_manifest.get(section)
        project_entries = project_entries if isinstance(project_entries, dict) else {}
        template_entries = template_entries if isinstance(template_entries, dict) else {}
        if not project_entries and not template_entries:
            continue

        merged: dict[str, str] = dict(project_entries)
        for name, spec in template_entries.items():
            existing = merged.get(name)
            if existing is not None and existing != spec:
                result.conflicts.append(
                    DependencyConflict(
                        name=name,
                        section=section,
                        project_spec=str(existing),
                        template_spec=str(spec),
                    )
                )
            merged[name] = spec
        result.sections[section] = merged
    return result


def copy_template_tree(source: Path, destination: Path, *, root: Path | None = None) -> int:
    """Recursively copy *source* into *destination*, skipping ignored directories.

    Files are always copied byte-for-byte, never linked: some bundlers do not
    follow links when resolving static assets or dynamic imports. Symbolic
    links are followed only when they resolve to a regular file inside
    *root* (defaults to *source*).

    Returns:
        Number of files copied.
    """
    root = root if root is not None else source
    destination.mkdir(parents=True, exist_ok=True)
    copied = 0

    with os.scandir(source) as entries:
        for entry in entries:
            source_path = Path(entry.path)
            target_path = destination / entry.name

            if entry.is_symlink():
                try:
                    resolved = assert_inside(source_path, root)
                except (PathEscapeError, OSError, RuntimeError) as exc:
                    print_debug("Skipping template link", path=str(source_path), reason=str(exc))
                    continue
                if not resolved.is_file():
                    print_debug("Skipping non-file template link", path=str(source_path))
                    continue
                shutil.copyfile(resolved, target_path)
                copied += 1
            elif entry.is_dir(follow_symlinks=False):
                if entry.name in IGNORED_DIRECTORIES:
                    continue
                copied += copy_template_tree(source_path, target_path, root=root)
            elif entry.is_file(follow_symlinks=False):
                shutil.copyfile(source_path, target_path)
                copied += 1

    return copied


def find_dependency_directory(template_root: Path, project_root: Path) -> Path | None:
    """Locate the installed package graph reachable from the template.

    Strategies, in order:

    1. The package-manager virtual store the template lives in. An install
       such as ``node_modules/.pnpm/<pkg>@<ver>/node_modules/<pkg>`` keeps
       the template's dependencies as siblings in that inner ``node_modules``.
    2. The template's own ``node_modules``.
    3. The project's ``node_modules``.
    """
    resolved = template_root.resolve()
    for ancestor in resolved.parents:
        if ancestor.name == "node_modules" and VIRTUAL_STORE_NAME in ancestor.parts:
            return ancestor

    local = template_root / "node_modules"
    if local.is_dir():
        return local

    project = project_root / "node_modules"
    if project.is_dir():
        return project

    return None


class RuntimePreparer:
    """Builds the runtime directory for one (project, template) pair."""

    def __init__(
        self,
        project_root: str | Path,
        template: TemplatePackage,
        runtime_dir_name: str = ".runtime",
    ):
        self.project_root = Path(project_root).resolve()
        self.template = template
        self.runtime_dir_name = runtime_dir_name

    @property
    def runtime_directory(self) -> Path:
        return self.project_root / self.runtime_dir_name / "app" / sanitize_name(self.template.name)

    def prepare(self, project_manifest: dict[str, Any] | None = None) -> Path:
        """Recreate the runtime directory and return its path."""
        runtime = self.runtime_directory
        if runtime.is_symlink():
            runtime.unlink()
        elif runtime.exists():
            shutil.rmtree(runtime)
        runtime.mkdir(parents=True)

        copied = copy_template_tree(self.template.root_directory, runtime)
        print_debug("Copied template tree", files=copied, runtime=str(runtime))

        self.link_dependencies(runtime)
        if project_manifest is not None:
            self.write_merged_manifest(runtime, project_manifest)
        return runtime

    def link_dependencies(self, runtime: Path) -> Path | None:
        """Attach the dependency graph as ``<runtime>/node_modules``."""
        dependency_dir = find_dependency_directory(self.template.root_directory, self.project_root)
        if dependency_dir is None:
            print_warning(
                f'No installed dependencies found for "{self.template.name}". '
                "Run your package manager's install command in the project root."
            )
            return None

        link_path = runtime / "node_modules"
        os.symlink(dependency_dir.resolve(), link_path, target_is_directory=True)
        print_debug("Linked dependencies", source=str(dependency_dir), link=str(link_path))
        return link_path

    def write_merged_manifest(self, runtime: Path, project_manifest: dict[str, Any]) -> ManifestMerge:
        template_manifest = load_json(self.template.manifest_path)
        merge = merge_manifests(project_manifest, template_manifest)
        if merge.conflicts:
            details = ", ".join(
                f"{conflict.name} ({conflict.project_spec} -> {conflict.template_spec})"
                for conflict in merge.conflicts
            )
            print_warning(
                f"Project and {self.template.name} declare different versions; "
                f"using the template's: {details}"
            )
        write_json(merge.apply_to(template_manifest), runtime / "package.json")
        return merge
