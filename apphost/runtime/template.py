"""App template resolution.

Finds the one installed template package that participates in app mode: it
must depend on the toolkit package and target exactly one supported
framework. Also validates that the template is configured for static output,
since the runtime directory only exists while apphost is running.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from apphost.utils import print_debug, print_warning

DEPENDENCY_SECTIONS = (
    "dependencies",
    "devDependencies",
    "optionalDependencies",
    "peerDependencies",
)


class Framework(str, Enum):
    NEXT = "next"
    VITE = "vite"
    WAKU = "waku"


FRAMEWORK_HINTS: dict[Framework, tuple[str, ...]] = {
    Framework.NEXT: ("next",),
    Framework.VITE: ("vite",),
    Framework.WAKU: ("waku",),
}

NEXT_CONFIG_FILES = (
    "next.config.ts",
    "next.config.mts",
    "next.config.js",
    "next.config.mjs",
)

WAKU_CONFIG_FILES = ("waku.config.ts", "waku.config.js")

STATIC_EXPORT_PATTERN = re.compile(r"""output\s*[:=]\s*['"`]export['"`]""")


@dataclass(frozen=True)
class TemplatePackage:
    """An installed app template, identified once per run."""

    name: str
    manifest_path: Path
    root_directory: Path
    framework: Framework


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TemplateResolutionError(Exception):
    """Raised when no usable app template can be determined."""

    def __init__(self, message: str, package: str | None = None):
        self.package = package
        super().__init__(message)


class TemplateNotFoundError(TemplateResolutionError):
    """An explicitly requested template is not installed."""


class TemplateNotCompatibleError(TemplateResolutionError):
    """A template does not depend on the toolkit or on a supported framework."""


class AmbiguousFrameworkError(TemplateResolutionError):
    """A template declares more than one supported framework."""


class StaticExportConfigError(TemplateResolutionError):
    """A template is not configured to produce a static export."""

    def __init__(self, message: str, package: str | None = None, config_path: Path | None = None):
        self.config_path = config_path
        super().__init__(message, package=package)


# ---------------------------------------------------------------------------
# Manifest helpers
# ---------------------------------------------------------------------------


def dependency_names(manifest: dict[str, Any]) -> list[str]:
    """Return every dependency name across all sections, first occurrence wins."""
    names: list[str] = []
    seen: set[str] = set()
    for section in DEPENDENCY_SECTIONS:
        entries = manifest.get(section)
        if not isinstance(entries, dict):
            continue
        for name in entries:
            if name not in seen:
                seen.add(name)
                names.append(name)
    return names


def depends_on(manifest: dict[str, Any], package: str) -> bool:
    return package in dependency_names(manifest)


def determine_framework(
    manifest: dict[str, Any],
    *,
    package_name: str,
    explicit: bool,
) -> Framework | None:
    """Match the manifest's dependencies against ``FRAMEWORK_HINTS``.

    Returns ``None`` when nothing matches and the candidate was discovered
    rather than requested.

    Raises:
        TemplateNotCompatibleError: No framework matched an explicit candidate.
        AmbiguousFrameworkError: More than one framework matched.
    """
    names = set(dependency_names(manifest))
    matches = [
        framework
        for framework, hints in FRAMEWORK_HINTS.items()
        if any(hint in names for hint in hints)
    ]

    if not matches:
        if explicit:
            raise TemplateNotCompatibleError(
                f'Package "{package_name}" does not declare a supported framework dependency. '
                "Install Next.js, Vite, or Waku to continue.",
                package=package_name,
            )
        return None

    if len(matches) > 1:
        listed = ", ".join(framework.value for framework in matches)
        raise AmbiguousFrameworkError(
            f'Package "{package_name}" declares multiple framework dependencies ({listed}). '
            "App mode requires exactly one framework.",
            package=package_name,
        )

    return matches[0]


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


@dataclass
class PackageLookupCache:
    """Memoised ``node_modules`` manifest lookups for one resolver."""

    entries: dict[str, Path | None] = field(default_factory=dict)

    def clear(self) -> None:
        self.entries.clear()


class TemplateResolver:
    """Resolves the app template a project should run against.

    Package manifests are looked up Node-style: ``node_modules/<name>/package.json``
    in the project root and then in each ancestor directory.
    """

    def __init__(
        self,
        project_root: str | Path,
        toolkit_package: str = "renoun",
        cache: PackageLookupCache | None = None,
    ):
        self.project_root = Path(project_root).resolve()
        self.toolkit_package = toolkit_package
        self.cache = cache if cache is not None else PackageLookupCache()

    def find_manifest(self, name: str) -> Path | None:
        """Return the installed ``package.json`` for *name*, or ``None``."""
        if name in self.cache.entries:
            return self.cache.entries[name]

        found: Path | None = None
        for directory in (self.project_root, *self.project_root.parents):
            candidate = directory / "node_modules" / name / "package.json"
            if candidate.is_file():
                found = candidate
                break

        self.cache.entries[name] = found
        return found

    def read_manifest(self, manifest_path: Path) -> dict[str, Any] | None:
        try:
            parsed = json.loads(manifest_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise TemplateResolutionError(f"Failed to parse {manifest_path}: {exc}") from exc
        return parsed if isinstance(parsed, dict) else None

    def candidates(
        self, project_manifest: dict[str, Any], explicit_name: str | None = None
    ) -> list[tuple[str, bool]]:
        """Return ``(name, explicit)`` pairs in evaluation order, de-duplicated."""
        ordered: list[tuple[str, bool]] = []
        seen: set[str] = set()
        if explicit_name:
            ordered.append((explicit_name, True))
            seen.add(explicit_name)
        for name in dependency_names(project_manifest):
            if name not in seen:
                seen.add(name)
                ordered.append((name, False))
        return ordered

    def resolve(
        self, project_manifest: dict[str, Any], explicit_name: str | None = None
    ) -> TemplatePackage:
        """Return the first candidate that passes every check.

        Raises:
            TemplateResolutionError: (or a subclass) when no candidate
                qualifies or an explicit candidate is unusable.
        """
        for name, explicit in self.candidates(project_manifest, explicit_name):
            manifest_path = self.find_manifest(name)
            if manifest_path is None:
                if explicit:
                    raise TemplateNotFoundError(
                        f'Could not find the app package "{name}". '
                        "Ensure it is installed before running app mode.",
                        package=name,
                    )
                continue

            manifest = self.read_manifest(manifest_path)
            if manifest is None:
                continue

            if not depends_on(manifest, self.toolkit_package):
                if explicit:
                    raise TemplateNotCompatibleError(
                        f'App package "{name}" must list {self.toolkit_package} as a dependency '
                        "to participate in app mode.",
                        package=name,
                    )
                continue

            framework = determine_framework(manifest, package_name=name, explicit=explicit)
            if framework is None:
                continue

            print_debug("Resolved app template", name=name, framework=framework.value)
            return TemplatePackage(
                name=name,
                manifest_path=manifest_path,
                root_directory=manifest_path.parent,
                framework=framework,
            )

        raise TemplateResolutionError(
            "\n".join(
                [
                    "Could not determine which app package to use for app mode.",
                    "",
                    "How to fix:",
                    f"  - Install an app package that depends on {self.toolkit_package} "
                    "and list it in your dependencies.",
                    "  - Or run `apphost dev <package-name>` to select an installed app explicitly.",
                    "",
                    f"Current working directory: {self.project_root}",
                ]
            )
        )


# ---------------------------------------------------------------------------
# Static export validation
# ---------------------------------------------------------------------------


def _first_existing(root: Path, names: tuple[str, ...]) -> Path | None:
    for name in names:
        candidate = root / name
        if candidate.is_file():
            return candidate
    return None


def validate_static_export(template: TemplatePackage) -> None:
    """Ensure *template* produces fully static output.

    The check is textual: the Next.js config must contain ``output: 'export'``
    (or an ``output = 'export'`` assignment). Vite is static by default. Waku
    configures rendering per page, which cannot be verified here, so only a
    notice is printed.

    Raises:
        StaticExportConfigError: If a Next.js template has no config file or
            its config does not request a static export.
    """
    if template.framework is Framework.NEXT:
        _validate_next(template)
    elif template.framework is Framework.WAKU:
        _validate_waku(template)


def _validate_next(template: TemplatePackage) -> None:
    config_path = _first_existing(template.root_directory, NEXT_CONFIG_FILES)
    if config_path is None:
        raise StaticExportConfigError(
            f'Could not find a Next.js configuration file in "{template.name}".\n\n'
            "App mode requires the app to have a next.config.ts (or .js/.mjs) file "
            "with `output: 'export'` configured for static site generation.\n\n"
            f"Expected one of: {', '.join(NEXT_CONFIG_FILES)}",
            package=template.name,
        )

    content = config_path.read_text(encoding="utf-8")
    if STATIC_EXPORT_PATTERN.search(content):
        return

    raise StaticExportConfigError(
        f'App "{template.name}" is not configured for static export.\n\n'
        "App mode requires static site generation because the runtime directory only "
        "exists while apphost runs. Dynamic rendering would fail once deployed.\n\n"
        "To fix this, add `output: 'export'` to your Next.js configuration:\n\n"
        f"  // {config_path.name}\n"
        "  export default {\n"
        "    output: 'export',\n"
        "    // ... other options\n"
        "  }\n",
        package=template.name,
        config_path=config_path,
    )


def _validate_waku(template: TemplatePackage) -> None:
    if _first_existing(template.root_directory, WAKU_CONFIG_FILES) is None:
        print_warning(
            f'Could not find a Waku configuration file in "{template.name}". '
            "App mode requires all pages to use `render: 'static'` in their getConfig."
        )
        return
    print_warning(
        f'Waku uses per-page render configuration. Ensure all pages in "{template.name}" '
        "export getConfig with `render: 'static'`."
    )
