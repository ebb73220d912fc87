"""Copy individual template files into the project for customization.

A lighter alternative to ejecting: the copied files become project files and
shadow the template's versions through the overlay.
"""

from __future__ import annotations

import shutil
from pathlib import Path

from apphost.runtime.containment import PathEscapeError, assert_inside
from apphost.runtime.eject import EjectError, locate_template_root, read_project_manifest
from apphost.utils import log, pluralize, print_debug, print_success


class OverrideError(EjectError):
    """Raised when no template file matches the override pattern, or a match
    would be written outside the project."""

    def __init__(self, message: str, package: str | None = None, pattern: str = ""):
        self.pattern = pattern
        super().__init__(message, package=package)


def _nearest_existing(path: Path) -> Path:
    while not path.exists() and not path.is_symlink() and path != path.parent:
        path = path.parent
    return path


def override_files(
    project_root: str | Path,
    pattern: str,
    app_name: str | None = None,
    *,
    toolkit: str = "renoun",
) -> list[str]:
    """Copy template files matching *pattern* into the project.

    Existing project files at the same relative path are overwritten.

    Returns:
        The copied paths, relative to the project root (POSIX style).

    Raises:
        OverrideError: If nothing in the template matches *pattern*, or a
            match would land outside the project.
        EjectError: If the project manifest or the template cannot be found.
    """
    root = Path(project_root).resolve()
    manifest = read_project_manifest(root)
    package, template_root = locate_template_root(root, manifest, app_name, toolkit)

    matches: list[tuple[Path, str]] = []
    for path in sorted(template_root.glob(pattern)):
        relative = path.relative_to(template_root)
        try:
            if ".." in relative.parts:
                raise PathEscapeError(path, template_root)
            resolved = assert_inside(path, template_root)
        except (PathEscapeError, OSError, RuntimeError) as exc:
            print_debug("Skipping match outside the template", path=str(path), reason=str(exc))
            continue
        if resolved.is_file():
            matches.append((resolved, relative.as_posix()))
    if not matches:
        raise OverrideError(
            f'No files matching "{pattern}" found in {package}.', package=package, pattern=pattern
        )

    copied: list[str] = []
    for source, relative in matches:
        target = root / relative
        try:
            assert_inside(_nearest_existing(target), root)
        except PathEscapeError as exc:
            raise OverrideError(
                f"Refusing to write {relative}: {exc}", package=package, pattern=pattern
            ) from exc
        existed = target.exists()
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        log(f"  {'Overwrote' if existed else 'Created'}: {relative}")
        copied.append(relative)

    print_success(f"Copied {pluralize(len(copied), 'file')} from {package}.")
    return copied
