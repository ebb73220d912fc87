"""apphost configuration.

Typed configuration for an app-mode run. Settings use Pydantic v2 models so
they are validated at construction time and can be built from environment
variables without boiler-plate.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator


def _env_flag(value: str | None) -> bool:
    return (value or "").strip().lower() in {"1", "true", "yes", "on"}


class Config(BaseModel):
    """Global apphost configuration.

    Created once by the CLI entry point and passed to ``AppRunner``. The
    overlay debounce delay is intentionally absent: it is a fixed constant of
    the synchronizer.
    """

    project_root: Path = Field(default_factory=Path.cwd)
    toolkit_package: str = Field(
        default="renoun",
        min_length=1,
        description="Package an app template must depend on to be eligible",
    )
    runtime_dir_name: str = Field(default=".runtime", min_length=1)
    node_binary: str = Field(default="node", min_length=1)
    debug: bool = Field(default=False)

    @field_validator("runtime_dir_name")
    @classmethod
    def _no_path_separators(cls, value: str) -> str:
        if "/" in value or "\\" in value or value in {".", ".."}:
            raise ValueError(f"runtime_dir_name must be a single directory name, got {value!r}")
        return value

    # ------------------------------------------------------------------
    # Derived paths (read-only properties)
    # ------------------------------------------------------------------

    @property
    def manifest_path(self) -> Path:
        """The project's ``package.json``."""
        return self.project_root / "package.json"

    @property
    def runtime_root(self) -> Path:
        """Parent of every per-template runtime directory."""
        return self.project_root / self.runtime_dir_name / "app"

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls, **overrides: Any) -> "Config":
        """Build a ``Config`` from environment variables.

        Recognised variables (all optional):
            APPHOST_PROJECT_ROOT, APPHOST_TOOLKIT, APPHOST_NODE, APPHOST_DEBUG.

        Keyword *overrides* that are not ``None`` win over the environment.
        """
        kwargs: dict[str, Any] = {}
        if os.environ.get("APPHOST_PROJECT_ROOT"):
            kwargs["project_root"] = Path(os.environ["APPHOST_PROJECT_ROOT"])
        if os.environ.get("APPHOST_TOOLKIT"):
            kwargs["toolkit_package"] = os.environ["APPHOST_TOOLKIT"]
        if os.environ.get("APPHOST_NODE"):
            kwargs["node_binary"] = os.environ["APPHOST_NODE"]
        if "APPHOST_DEBUG" in os.environ:
            kwargs["debug"] = _env_flag(os.environ["APPHOST_DEBUG"])

        kwargs.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**kwargs)
