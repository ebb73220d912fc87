"""Build output relocation.

After a successful ``build`` the framework's static output lives in the
runtime directory, which is disposable. Copy it back to the project root so
it can be deployed.
"""

from __future__ import annotations

import shutil
from pathlib import Path

from apphost.runtime.template import Framework
from apphost.utils import log, print_debug

FRAMEWORK_OUTPUT_DIRECTORIES: dict[Framework, str] = {
    Framework.NEXT: "out",
    Framework.VITE: "dist",
    Framework.WAKU: "dist",
}

# Deployment tooling for Next.js reads the routes manifest from .next/.
NEXT_METADATA_DIRECTORY = ".next"


def _replace_directory(source: Path, target: Path) -> None:
    if target.is_symlink() or target.is_file():
        target.unlink()
    elif target.exists():
        shutil.rmtree(target)
    shutil.copytree(source, target, symlinks=True)


def copy_build_output(runtime_directory: Path, project_root: Path, framework: Framework) -> list[Path]:
    """Copy build artifacts from *runtime_directory* into *project_root*.

    Returns:
        The project-side directories that were written, empty when the
        framework produced no output directory.
    """
    output_name = FRAMEWORK_OUTPUT_DIRECTORIES[framework]
    source = runtime_directory / output_name
    if not source.is_dir():
        print_debug("No build output directory found", source=str(source))
        return []

    target = project_root / output_name
    _replace_directory(source, target)
    log(f"Build output copied to ./{output_name}/")
    copied = [target]

    if framework is Framework.NEXT:
        metadata_source = runtime_directory / NEXT_METADATA_DIRECTORY
        if metadata_source.is_dir():
            metadata_target = project_root / NEXT_METADATA_DIRECTORY
            _replace_directory(metadata_source, metadata_target)
            log(f"Build metadata copied to ./{NEXT_METADATA_DIRECTORY}/")
            copied.append(metadata_target)

    return copied
