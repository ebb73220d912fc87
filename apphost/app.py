"""App-mode orchestration and the ``apphost`` command line.

``apphost dev`` / ``apphost build`` resolve the installed app template,
materialise it into a runtime directory, overlay the project's files on top,
and run the template framework's command against the merged tree until it
exits or the user interrupts it.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import re
import signal
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Sequence

from apphost.config import Config
from apphost.coordination import CoordinationServer
from apphost.runtime.eject import EjectError, eject_template
from apphost.runtime.overlay import OverlaySynchronizer
from apphost.runtime.override import override_files
from apphost.runtime.preparer import RuntimePreparer
from apphost.runtime.relocator import copy_build_output
from apphost.runtime.supervisor import SubprocessSupervisor, SupervisorError
from apphost.runtime.template import (
    TemplatePackage,
    TemplateResolutionError,
    TemplateResolver,
    validate_static_export,
)
from apphost.utils import (
    load_json,
    log,
    pluralize,
    print_debug,
    print_error,
    set_debug,
    summarize_layered_paths,
)

APP_NAME_PATTERN = re.compile(r"^[@a-zA-Z]")

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)

FRAMEWORK_COMMANDS = ("dev", "build")

AUTO_DETECT_FLAG = "--auto-detect"


@dataclass
class ParsedAppArgs:
    app_name: str | None = None
    forwarded_args: list[str] = field(default_factory=list)


def parse_app_args(args: Sequence[str], auto_detect: bool = False) -> ParsedAppArgs:
    """Split CLI arguments into an optional template name and framework args.

    Unless *auto_detect* is set, the first value that is not a flag and
    starts with ``@`` or a letter names the template. Everything else is
    forwarded to the framework untouched, in order.
    """
    parsed = ParsedAppArgs()
    for value in args:
        if not value:
            continue
        if (
            not auto_detect
            and parsed.app_name is None
            and not value.startswith("-")
            and APP_NAME_PATTERN.match(value)
        ):
            parsed.app_name = value
            continue
        parsed.forwarded_args.append(value)
    return parsed


class AppRunner:
    """Runs one ``dev`` or ``build`` session for a project.

    Usage::

        runner = AppRunner(Config(project_root=Path("./docs")))
        exit_code = await runner.run("dev", ["--port", "4000"])
    """

    def __init__(
        self,
        config: Config,
        *,
        watcher: Any = None,
        server_factory: Callable[[str], CoordinationServer] = CoordinationServer,
        supervisor_factory: Callable[..., SubprocessSupervisor] = SubprocessSupervisor,
    ):
        self.config = config
        self._watcher = watcher
        self._server_factory = server_factory
        self._supervisor_factory = supervisor_factory

        self.template: TemplatePackage | None = None
        self.runtime_directory: Path | None = None
        self.synchronizer: OverlaySynchronizer | None = None
        self.server: CoordinationServer | None = None
        self.supervisor: SubprocessSupervisor | None = None
        self.exit_code: int | None = None

        self._previous_cwd: str | None = None
        self._torn_down = False
        self._installed_signals: list[signal.Signals] = []

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    def read_project_manifest(self) -> dict[str, Any]:
        manifest_path = self.config.manifest_path
        if not manifest_path.is_file():
            raise TemplateResolutionError(f"No package.json found in {self.config.project_root}.")
        try:
            return load_json(manifest_path)
        except (json.JSONDecodeError, ValueError) as exc:
            raise TemplateResolutionError(f"Failed to parse {manifest_path}: {exc}") from exc

    async def run(self, command: str, args: Sequence[str] = (), auto_detect: bool = False) -> int:
        """Run *command* (``dev`` or ``build``) and return the exit code.

        Raises:
            TemplateResolutionError: If no usable template can be resolved.
            SupervisorError: If the framework process cannot be started.
        """
        parsed = parse_app_args(args, auto_detect)
        manifest = self.read_project_manifest()
        project_root = self.config.project_root.resolve()

        resolver = TemplateResolver(project_root, toolkit_package=self.config.toolkit_package)
        template = resolver.resolve(manifest, parsed.app_name)
        validate_static_export(template)
        self.template = template

        loop = asyncio.get_running_loop()
        preparer = RuntimePreparer(project_root, template, self.config.runtime_dir_name)
        runtime = await loop.run_in_executor(None, preparer.prepare, manifest)
        self.runtime_directory = runtime

        log(f"Running {template.name} ({template.framework.value}) {command} script...")
        log(f"Runtime directory ready at {runtime}")

        previous_handler = loop.get_exception_handler()
        try:
            self.synchronizer = OverlaySynchronizer(project_root, runtime, watcher=self._watcher)
            await self.synchronizer.start()
            self._report_layers(self.synchronizer.layered_paths())

            self._previous_cwd = os.getcwd()
            os.chdir(runtime)
            self._install_handlers(loop)

            self.server = self._server_factory(str(runtime))
            await self.server.start()
            if self._torn_down:
                # Interrupted while starting; teardown ran before the server listened.
                self.server.cleanup()
                return self.exit_code if self.exit_code is not None else 1

            env = {"APPHOST_RUNTIME_DIRECTORY": str(runtime), **self.server.env()}
            self.supervisor = self._supervisor_factory(
                runtime,
                template.framework,
                command,
                parsed.forwarded_args,
                env_extra=env,
                node_binary=self.config.node_binary,
            )
            await self.supervisor.spawn()
            if self._torn_down:
                self.supervisor.terminate()
            session = await self.supervisor.wait()

            if command == "build" and session.exit_code == 0 and not self._torn_down:
                await loop.run_in_executor(
                    None, copy_build_output, runtime, project_root, template.framework
                )
            self.teardown(session.exit_code if session.exit_code is not None else 1)
        except BaseException:
            self.teardown(1)
            raise
        finally:
            self._remove_handlers(loop)
            loop.set_exception_handler(previous_handler)

        return self.exit_code if self.exit_code is not None else 1

    def _report_layers(self, layered: list[str]) -> None:
        if layered:
            log(f"Applied {pluralize(len(layered), 'layer')}: {summarize_layered_paths(layered)}")
        else:
            log("No project layers detected; using template defaults")

    # ------------------------------------------------------------------
    # Signals and loop errors
    # ------------------------------------------------------------------

    def _install_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for signum in HANDLED_SIGNALS:
            try:
                loop.add_signal_handler(signum, self._on_signal, signum)
            except (NotImplementedError, RuntimeError):
                print_debug("Signal handlers unavailable on this loop", signal=signum.name)
                continue
            self._installed_signals.append(signum)
        loop.set_exception_handler(self._on_loop_exception)

    def _remove_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for signum in self._installed_signals:
            loop.remove_signal_handler(signum)
        self._installed_signals.clear()

    def _on_signal(self, signum: signal.Signals) -> None:
        print_debug("Received signal", signal=signum.name)
        self.teardown(0)

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        exc = context.get("exception")
        print_error(f"Unexpected error: {exc if exc is not None else context.get('message')}")
        self.teardown(1)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def teardown(self, code: int) -> None:
        """Release every resource of the session. Only the first call acts."""
        if self._torn_down:
            return
        self._torn_down = True
        self.exit_code = code
        print_debug(
            "App cleanup initiated",
            exit_code=code,
            has_subprocess=self.supervisor is not None,
            runtime=str(self.runtime_directory),
        )

        if self.synchronizer is not None:
            self.synchronizer.stop()
        if self.server is not None:
            self.server.cleanup()
        if self.supervisor is not None:
            self.supervisor.terminate()
        if self._previous_cwd is not None:
            os.chdir(self._previous_cwd)
            self._previous_cwd = None


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="apphost",
        description="Run an installed app template against your project files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  apphost dev\n"
            "  apphost dev @renoun/blog --port 4000\n"
            "  apphost build\n"
            "  apphost override 'ui/*.tsx'\n"
            "  apphost eject --app @renoun/blog\n"
        ),
    )
    parser.add_argument(
        "--project",
        default=None,
        help="Project root (default: current directory)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Print debug diagnostics",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    for name, summary in (
        ("dev", "Start the template's development server"),
        ("build", "Build the template and copy its output into the project"),
    ):
        subparsers.add_parser(
            name,
            help=summary,
            add_help=False,
            formatter_class=argparse.RawDescriptionHelpFormatter,
            description=(
                f"apphost {name} [--auto-detect] [PACKAGE] [FRAMEWORK ARGS...]\n\n"
                "Everything after the command is forwarded to the framework, except an\n"
                "optional leading template package name. --auto-detect as the first\n"
                "argument disables the package name and forwards everything."
            ),
        )

    eject = subparsers.add_parser("eject", help="Copy the template into the project and drop the dependency")
    eject.add_argument("--app", default=None, help="Template package name (auto-detected if omitted)")
    eject.add_argument("--target", default=None, help="Directory to eject into (default: project root)")

    override = subparsers.add_parser("override", help="Copy template files into the project")
    override.add_argument("pattern", help='File or glob pattern, e.g. "tsconfig.json" or "ui/*.tsx"')
    override.add_argument("--app", default=None, help="Template package name (auto-detected if omitted)")

    return parser


def split_framework_args(argv: Sequence[str]) -> tuple[list[str], list[str]]:
    """Separate apphost's own arguments from those forwarded to the framework.

    Everything after a ``dev`` or ``build`` command word is passed through
    untouched, including flags argparse would otherwise reject.
    """
    expects_value = False
    for index, value in enumerate(argv):
        if expects_value:
            expects_value = False
            continue
        if value == "--project":
            expects_value = True
            continue
        if value in FRAMEWORK_COMMANDS:
            return list(argv[: index + 1]), list(argv[index + 1 :])
        if not value.startswith("-"):
            break
    return list(argv), []


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point for ``apphost``."""
    own_args, forwarded = split_framework_args(sys.argv[1:] if argv is None else list(argv))
    parser = build_parser()
    args = parser.parse_args(own_args)

    config = Config.from_env(
        project_root=Path(args.project) if args.project else None,
        debug=True if args.debug else None,
    )
    set_debug(config.debug)

    try:
        if args.command in FRAMEWORK_COMMANDS:
            auto_detect = bool(forwarded) and forwarded[0] == AUTO_DETECT_FLAG
            if auto_detect:
                forwarded = forwarded[1:]
            runner = AppRunner(config)
            return asyncio.run(runner.run(args.command, forwarded, auto_detect=auto_detect))
        if args.command == "eject":
            eject_template(
                config.project_root,
                app_name=args.app,
                target_directory=args.target,
                toolkit=config.toolkit_package,
                runtime_dir_name=config.runtime_dir_name,
            )
            return 0
        if args.command == "override":
            override_files(
                config.project_root,
                args.pattern,
                app_name=args.app,
                toolkit=config.toolkit_package,
            )
            return 0
    except (TemplateResolutionError, SupervisorError, EjectError) as exc:
        print_error(str(exc))
        return 1

    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    sys.exit(main())
