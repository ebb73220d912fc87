"""Unit tests for Config (apphost.config).

Tests cover:
- Config defaults and validation
- Derived paths (properties)
- Config.from_env and keyword overrides
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from apphost.config import Config


# ---------------------------------------------------------------------------
# Defaults & validation
# ---------------------------------------------------------------------------


class TestConfigDefaults:
    @pytest.mark.unit
    def test_defaults(self, tmp_path: Path):
        config = Config(project_root=tmp_path)
        assert config.toolkit_package == "renoun"
        assert config.runtime_dir_name == ".runtime"
        assert config.node_binary == "node"
        assert config.debug is False

    @pytest.mark.unit
    def test_project_root_defaults_to_cwd(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert Config().project_root == tmp_path

    @pytest.mark.unit
    @pytest.mark.parametrize("name", ["a/b", "..", ".", "x\\y"])
    def test_runtime_dir_name_must_be_single_component(self, name: str):
        with pytest.raises(ValidationError):
            Config(runtime_dir_name=name)

    @pytest.mark.unit
    def test_empty_toolkit_rejected(self):
        with pytest.raises(ValidationError):
            Config(toolkit_package="")


# ---------------------------------------------------------------------------
# Derived paths
# ---------------------------------------------------------------------------


class TestConfigPaths:
    @pytest.mark.unit
    def test_manifest_path(self, tmp_path: Path):
        assert Config(project_root=tmp_path).manifest_path == tmp_path / "package.json"

    @pytest.mark.unit
    def test_runtime_root(self, tmp_path: Path):
        config = Config(project_root=tmp_path, runtime_dir_name=".apps")
        assert config.runtime_root == tmp_path / ".apps" / "app"


# ---------------------------------------------------------------------------
# from_env
# ---------------------------------------------------------------------------


class TestConfigFromEnv:
    @pytest.mark.unit
    def test_reads_environment(self, tmp_path: Path):
        env = {
            "APPHOST_PROJECT_ROOT": str(tmp_path),
            "APPHOST_TOOLKIT": "site-kit",
            "APPHOST_NODE": "/opt/node/bin/node",
            "APPHOST_DEBUG": "true",
        }
        with patch.dict("os.environ", env, clear=True):
            config = Config.from_env()
        assert config.project_root == tmp_path
        assert config.toolkit_package == "site-kit"
        assert config.node_binary == "/opt/node/bin/node"
        assert config.debug is True

    @pytest.mark.unit
    @pytest.mark.parametrize("value,expected", [("1", True), ("yes", True), ("0", False), ("", False)])
    def test_debug_flag_values(self, value: str, expected: bool):
        with patch.dict("os.environ", {"APPHOST_DEBUG": value}, clear=True):
            assert Config.from_env().debug is expected

    @pytest.mark.unit
    def test_overrides_win(self, tmp_path: Path):
        with patch.dict("os.environ", {"APPHOST_TOOLKIT": "site-kit"}, clear=True):
            config = Config.from_env(project_root=tmp_path, toolkit_package="renoun")
        assert config.project_root == tmp_path
        assert config.toolkit_package == "renoun"

    @pytest.mark.unit
    def test_none_overrides_are_ignored(self):
        with patch.dict("os.environ", {"APPHOST_NODE": "nodejs"}, clear=True):
            config = Config.from_env(node_binary=None, debug=None)
        assert config.node_binary == "nodejs"
        assert config.debug is False
