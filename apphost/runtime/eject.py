"""Template eject.

Copies an installed app template into the project so it can be owned and
edited directly, then drops the template dependency from the project's
``package.json``. Files the project already has are kept.
"""

from __future__ import annotations

import json
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from apphost.runtime.overlay import IGNORED_PROJECT_FILES
from apphost.runtime.preparer import IGNORED_DIRECTORIES
from apphost.runtime.template import TemplateResolver, depends_on
from apphost.utils import load_json, log, print_debug, print_success, write_json

PROJECT_DEPENDENCY_SECTIONS = ("dependencies", "devDependencies")


class EjectError(Exception):
    """Raised when a template cannot be located or ejected."""

    def __init__(self, message: str, package: str | None = None):
        self.package = package
        super().__init__(message)


@dataclass
class EjectReport:
    """What an eject changed in the project."""

    package: str
    target_directory: Path
    copied: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)
    added_dependencies: list[str] = field(default_factory=list)
    runtime_removed: bool = False


def read_project_manifest(project_root: Path) -> dict[str, Any]:
    """Load ``<project_root>/package.json``.

    Raises:
        EjectError: If the manifest is missing or is not a JSON object.
    """
    manifest_path = project_root / "package.json"
    if not manifest_path.is_file():
        raise EjectError(f"No package.json found in {project_root}.")
    try:
        return load_json(manifest_path)
    except (json.JSONDecodeError, ValueError) as exc:
        raise EjectError(f"Failed to parse {manifest_path}: {exc}") from exc


def find_installed_template(
    project_root: Path, manifest: dict[str, Any], toolkit: str = "renoun"
) -> str | None:
    """Return the first direct dependency whose manifest depends on *toolkit*."""
    resolver = TemplateResolver(project_root, toolkit_package=toolkit)
    seen: set[str] = set()
    for section in PROJECT_DEPENDENCY_SECTIONS:
        entries = manifest.get(section)
        if not isinstance(entries, dict):
            continue
        for name in entries:
            if name in seen:
                continue
            seen.add(name)
            manifest_path = resolver.find_manifest(name)
            if manifest_path is None:
                continue
            try:
                candidate = load_json(manifest_path)
            except (json.JSONDecodeError, ValueError):
                print_debug("Skipping unreadable manifest", path=str(manifest_path))
                continue
            if depends_on(candidate, toolkit):
                return name
    return None


def locate_template_root(
    project_root: Path, manifest: dict[str, Any], app_name: str | None, toolkit: str
) -> tuple[str, Path]:
    """Return ``(name, root_directory)`` of the template to operate on.

    Raises:
        EjectError: If no template is installed or *app_name* cannot be found.
    """
    name = app_name or find_installed_template(project_root, manifest, toolkit)
    if not name:
        raise EjectError(
            f"Could not find an app template depending on {toolkit}. "
            "Install one or name it explicitly with --app."
        )
    manifest_path = TemplateResolver(project_root, toolkit_package=toolkit).find_manifest(name)
    if manifest_path is None:
        raise EjectError(f'Could not find package "{name}". Is it installed?', package=name)
    return name, manifest_path.parent


def _copy_template_entries(template_root: Path, target: Path, report: EjectReport) -> None:
    for entry in sorted(template_root.iterdir(), key=lambda path: path.name):
        if entry.name in IGNORED_DIRECTORIES or entry.name in IGNORED_PROJECT_FILES:
            continue

        destination = target / entry.name
        if destination.exists() or destination.is_symlink():
            log(f"  Keeping existing: {entry.name}")
            report.kept.append(entry.name)
            continue

        if entry.is_dir():
            shutil.copytree(entry, destination)
            log(f"  Copied directory: {entry.name}/")
        elif entry.is_file():
            shutil.copy2(entry, destination)
            log(f"  Copied file: {entry.name}")
        else:
            continue
        report.copied.append(entry.name)


def _rewrite_manifest(
    manifest: dict[str, Any],
    package: str,
    template_manifest: dict[str, Any],
    toolkit: str,
) -> tuple[dict[str, Any], list[str]]:
    updated = dict(manifest)
    for section in PROJECT_DEPENDENCY_SECTIONS:
        entries = updated.get(section)
        if isinstance(entries, dict):
            updated[section] = {name: spec for name, spec in entries.items() if name != package}

    added: list[str] = []
    template_dependencies = template_manifest.get("dependencies")
    if isinstance(template_dependencies, dict) and template_dependencies:
        current = updated.get("dependencies")
        current = dict(current) if isinstance(current, dict) else {}
        for name, spec in template_dependencies.items():
            if name != toolkit and name not in current:
                current[name] = spec
                added.append(name)
        updated["dependencies"] = current
    return updated, added


def eject_template(
    project_root: str | Path,
    app_name: str | None = None,
    target_directory: str | Path | None = None,
    *,
    toolkit: str = "renoun",
    runtime_dir_name: str = ".runtime",
) -> EjectReport:
    """Move the installed template into the project.

    Raises:
        EjectError: If the project manifest or the template cannot be found.
    """
    root = Path(project_root).resolve()
    manifest = read_project_manifest(root)
    package, template_root = locate_template_root(root, manifest, app_name, toolkit)
    target = Path(target_directory).resolve() if target_directory is not None else root

    log(f"Ejecting {package}...")
    report = EjectReport(package=package, target_directory=target)
    target.mkdir(parents=True, exist_ok=True)
    _copy_template_entries(template_root, target, report)

    template_manifest = load_json(template_root / "package.json")
    updated, report.added_dependencies = _rewrite_manifest(manifest, package, template_manifest, toolkit)
    write_json(updated, root / "package.json")
    log("  Updated package.json")

    runtime_root = root / runtime_dir_name
    if runtime_root.is_dir():
        shutil.rmtree(runtime_root, ignore_errors=True)
        report.runtime_removed = not runtime_root.exists()
        if report.runtime_removed:
            log(f"  Cleaned up {runtime_dir_name}/ directory")
        else:
            log(f"  Note: could not remove {runtime_dir_name}/ directory")

    print_success(f"Ejected {package}. Run your package manager's install command to update dependencies.")
    return report
