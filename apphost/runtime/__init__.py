"""apphost runtime module.

Everything needed to run an app template against a project: resolving the
template, preparing the runtime directory, overlaying project files, and
supervising the framework process.

Key classes:
    TemplateResolver      - Finds the installed template and its framework
    RuntimePreparer       - Seeds the runtime directory from the template
    OverlaySynchronizer   - Mirrors project files over the template, live
    SubprocessSupervisor  - Runs the framework's dev/build command
"""

from .containment import PathEscapeError, assert_inside, is_inside
from .eject import EjectError, EjectReport, eject_template, find_installed_template
from .overlay import LinkResult, OverlaySynchronizer, SyncState, link_or_copy
from .override import OverrideError, override_files
from .preparer import RuntimePreparer, copy_template_tree, find_dependency_directory, merge_manifests
from .relocator import FRAMEWORK_OUTPUT_DIRECTORIES, copy_build_output
from .supervisor import SubprocessSession, SubprocessSupervisor, SupervisorError
from .template import (
    Framework,
    TemplatePackage,
    TemplateResolutionError,
    TemplateResolver,
    validate_static_export,
)

__all__ = [
    # Containment
    "PathEscapeError",
    "assert_inside",
    "is_inside",
    # Template resolution
    "Framework",
    "TemplatePackage",
    "TemplateResolutionError",
    "TemplateResolver",
    "validate_static_export",
    # Runtime preparation
    "RuntimePreparer",
    "copy_template_tree",
    "find_dependency_directory",
    "merge_manifests",
    # Overlay
    "OverlaySynchronizer",
    "SyncState",
    "LinkResult",
    "link_or_copy",
    # Supervision
    "SubprocessSupervisor",
    "SubprocessSession",
    "SupervisorError",
    # Build output
    "FRAMEWORK_OUTPUT_DIRECTORIES",
    "copy_build_output",
    # Eject / override
    "EjectError",
    "EjectReport",
    "eject_template",
    "find_installed_template",
    "OverrideError",
    "override_files",
]
