"""Unit tests for template resolution (apphost.runtime.template).

Tests cover:
- Framework detection from manifest dependencies
- Candidate ordering (explicit name first, then dependency order)
- Errors for explicit, missing and incompatible templates
- Node-style manifest lookup through ancestor directories
- Static export validation for Next.js, Vite and Waku
"""

from __future__ import annotations

from pathlib import Path

import pytest

from apphost.runtime.template import (
    AmbiguousFrameworkError,
    Framework,
    PackageLookupCache,
    StaticExportConfigError,
    TemplateNotCompatibleError,
    TemplateNotFoundError,
    TemplatePackage,
    TemplateResolutionError,
    TemplateResolver,
    dependency_names,
    determine_framework,
    validate_static_export,
)
from conftest import TEMPLATE_NAME, write_file, write_manifest


# ---------------------------------------------------------------------------
# Manifest helpers
# ---------------------------------------------------------------------------


class TestDependencyNames:
    @pytest.mark.unit
    def test_collects_all_sections_in_order(self):
        manifest = {
            "dependencies": {"a": "1", "b": "1"},
            "devDependencies": {"c": "1", "a": "2"},
            "peerDependencies": {"d": "1"},
        }
        assert dependency_names(manifest) == ["a", "b", "c", "d"]

    @pytest.mark.unit
    def test_ignores_malformed_sections(self):
        assert dependency_names({"dependencies": ["not", "a", "dict"]}) == []


class TestDetermineFramework:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "dependency,expected",
        [("next", Framework.NEXT), ("vite", Framework.VITE), ("waku", Framework.WAKU)],
    )
    def test_single_framework(self, dependency: str, expected: Framework):
        manifest = {"dependencies": {dependency: "1.0.0"}}
        assert determine_framework(manifest, package_name="t", explicit=False) is expected

    @pytest.mark.unit
    def test_no_framework_discovered_returns_none(self):
        assert determine_framework({"dependencies": {"react": "1"}}, package_name="t", explicit=False) is None

    @pytest.mark.unit
    def test_no_framework_explicit_raises(self):
        with pytest.raises(TemplateNotCompatibleError, match="supported framework"):
            determine_framework({"dependencies": {"react": "1"}}, package_name="t", explicit=True)

    @pytest.mark.unit
    def test_multiple_frameworks_raise(self):
        manifest = {"dependencies": {"next": "1"}, "devDependencies": {"vite": "1"}}
        with pytest.raises(AmbiguousFrameworkError, match="next, vite"):
            determine_framework(manifest, package_name="t", explicit=False)


# ---------------------------------------------------------------------------
# TemplateResolver
# ---------------------------------------------------------------------------


class TestTemplateResolver:
    @pytest.mark.unit
    def test_resolves_discovered_template(self, app_project):
        resolver = TemplateResolver(app_project.root)
        manifest = {"dependencies": {"react": "19", TEMPLATE_NAME: "^1.0.0"}}
        template = resolver.resolve(manifest)

        assert template.name == TEMPLATE_NAME
        assert template.framework is Framework.NEXT
        assert template.root_directory == app_project.template_root.resolve()

    @pytest.mark.unit
    def test_template_package_is_immutable(self, app_project):
        template = TemplateResolver(app_project.root).resolve({"dependencies": {TEMPLATE_NAME: "1"}})
        with pytest.raises(AttributeError):
            template.name = "other"

    @pytest.mark.unit
    def test_explicit_name_is_tried_first(self, app_project):
        app_project.install_package(
            "@renoun/docs", {"dependencies": {"renoun": "10", "vite": "5"}}
        )
        resolver = TemplateResolver(app_project.root)
        template = resolver.resolve({"dependencies": {TEMPLATE_NAME: "1"}}, explicit_name="@renoun/docs")
        assert template.name == "@renoun/docs"
        assert template.framework is Framework.VITE

    @pytest.mark.unit
    def test_explicit_missing_package_raises(self, app_project):
        resolver = TemplateResolver(app_project.root)
        with pytest.raises(TemplateNotFoundError) as exc_info:
            resolver.resolve({"dependencies": {TEMPLATE_NAME: "1"}}, explicit_name="@renoun/missing")
        assert exc_info.value.package == "@renoun/missing"

    @pytest.mark.unit
    def test_explicit_package_without_toolkit_raises(self, app_project):
        app_project.install_package("plain-site", {"dependencies": {"next": "15"}})
        resolver = TemplateResolver(app_project.root)
        with pytest.raises(TemplateNotCompatibleError, match="must list renoun"):
            resolver.resolve({}, explicit_name="plain-site")

    @pytest.mark.unit
    def test_discovered_incompatible_packages_are_skipped(self, app_project):
        app_project.install_package("plain-site", {"dependencies": {"next": "15"}})
        app_project.install_package("renoun-plugin", {"dependencies": {"renoun": "10"}})
        manifest = {
            "dependencies": {
                "not-installed": "1",
                "plain-site": "1",
                "renoun-plugin": "1",
                TEMPLATE_NAME: "1",
            }
        }
        template = TemplateResolver(app_project.root).resolve(manifest)
        assert template.name == TEMPLATE_NAME

    @pytest.mark.unit
    def test_no_candidate_raises_remediation_message(self, app_project):
        resolver = TemplateResolver(app_project.root)
        with pytest.raises(TemplateResolutionError) as exc_info:
            resolver.resolve({"dependencies": {"react": "19"}})
        message = str(exc_info.value)
        assert "How to fix" in message
        assert str(app_project.root.resolve()) in message

    @pytest.mark.unit
    def test_custom_toolkit_package(self, app_project):
        app_project.install_package("site-kit-app", {"dependencies": {"site-kit": "1", "waku": "0.21"}})
        resolver = TemplateResolver(app_project.root, toolkit_package="site-kit")
        template = resolver.resolve({"dependencies": {TEMPLATE_NAME: "1", "site-kit-app": "1"}})
        assert template.name == "site-kit-app"
        assert template.framework is Framework.WAKU

    @pytest.mark.unit
    def test_finds_manifest_in_ancestor_node_modules(self, tmp_path: Path):
        write_manifest(tmp_path / "node_modules" / "hoisted", {"name": "hoisted"})
        nested = tmp_path / "packages" / "docs"
        nested.mkdir(parents=True)
        found = TemplateResolver(nested).find_manifest("hoisted")
        assert found == (tmp_path / "node_modules" / "hoisted" / "package.json").resolve()

    @pytest.mark.unit
    def test_lookup_cache_is_explicit_state(self, app_project):
        cache = PackageLookupCache()
        resolver = TemplateResolver(app_project.root, cache=cache)
        assert resolver.find_manifest("late-package") is None
        app_project.install_package("late-package", {})
        assert resolver.find_manifest("late-package") is None

        cache.clear()
        assert resolver.find_manifest("late-package") is not None

    @pytest.mark.unit
    def test_invalid_manifest_json_raises(self, app_project):
        broken = app_project.node_modules / "broken" / "package.json"
        write_file(broken, "{not json")
        with pytest.raises(TemplateResolutionError, match="Failed to parse"):
            TemplateResolver(app_project.root).resolve({"dependencies": {"broken": "1"}})


# ---------------------------------------------------------------------------
# Static export validation
# ---------------------------------------------------------------------------


def _template(root: Path, framework: Framework) -> TemplatePackage:
    return TemplatePackage(
        name="t", manifest_path=root / "package.json", root_directory=root, framework=framework
    )


class TestValidateStaticExport:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "content",
        [
            "export default { output: 'export' }",
            'module.exports = { output: "export" }',
            "nextConfig.output = `export`",
        ],
    )
    def test_next_export_markers_accepted(self, tmp_path: Path, content: str):
        write_file(tmp_path / "next.config.mjs", content)
        validate_static_export(_template(tmp_path, Framework.NEXT))

    @pytest.mark.unit
    def test_next_without_config_raises(self, tmp_path: Path):
        with pytest.raises(StaticExportConfigError, match="Could not find a Next.js configuration"):
            validate_static_export(_template(tmp_path, Framework.NEXT))

    @pytest.mark.unit
    def test_next_without_export_raises(self, tmp_path: Path):
        config = write_file(tmp_path / "next.config.ts", "export default { output: 'standalone' }")
        with pytest.raises(StaticExportConfigError) as exc_info:
            validate_static_export(_template(tmp_path, Framework.NEXT))
        assert exc_info.value.config_path == config
        assert "output: 'export'" in str(exc_info.value)

    @pytest.mark.unit
    def test_vite_needs_no_config(self, tmp_path: Path):
        validate_static_export(_template(tmp_path, Framework.VITE))

    @pytest.mark.unit
    def test_waku_only_warns(self, tmp_path: Path, capsys):
        validate_static_export(_template(tmp_path, Framework.WAKU))
        assert "render: 'static'" in capsys.readouterr().err
