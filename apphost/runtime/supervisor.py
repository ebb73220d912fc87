"""Framework process supervision.

Spawns the template framework's ``dev`` or ``build`` binary inside the
runtime directory, forwards its output to the parent's streams, and watches
that output for fatal memory failures and the first announced URL.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import re
import signal
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Sequence

from apphost.runtime.template import Framework
from apphost.utils import format_duration, load_json, log, print_debug, print_error

FATAL_PATTERN = re.compile(r"(FATAL ERROR|Allocation failed|heap limit)", re.IGNORECASE)
URL_PATTERN = re.compile(r"(https?://[^\s]+)", re.IGNORECASE)

FRAMEWORK_PACKAGES: dict[Framework, str] = {
    Framework.NEXT: "next",
    Framework.VITE: "vite",
    Framework.WAKU: "waku",
}

CHUNK_SIZE = 64 * 1024

# Characters of previous output rescanned with each new chunk.
SCAN_CARRY = 256

SUPPORTED_COMMANDS = ("dev", "build")


@dataclass
class SubprocessSession:
    """State of one spawned framework process."""

    pid: int | None = None
    exit_code: int | None = None
    signal: str | None = None
    announced_url: str | None = None
    fatal_detected: bool = False
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.signal is None and not self.fatal_detected


class SupervisorError(Exception):
    """Raised when the framework process cannot be started."""

    def __init__(self, message: str, command: str = ""):
        self.command = command
        super().__init__(message)


def resolve_framework_bin(runtime_directory: Path, framework: Framework) -> Path:
    """Return the framework's CLI entry file from its installed manifest.

    Raises:
        SupervisorError: If the framework package or its ``bin`` entry is missing.
    """
    package = FRAMEWORK_PACKAGES[framework]
    manifest_path = runtime_directory / "node_modules" / package / "package.json"
    if not manifest_path.is_file():
        raise SupervisorError(
            f'Could not find the "{package}" package under {runtime_directory / "node_modules"}. '
            "Install the app's dependencies and try again."
        )

    bin_field = load_json(manifest_path).get("bin")
    relative: str | None = None
    if isinstance(bin_field, str):
        relative = bin_field
    elif isinstance(bin_field, dict) and bin_field:
        relative = bin_field.get(package) or next(iter(bin_field.values()))

    if not relative:
        raise SupervisorError(f'Package "{package}" does not declare a CLI entry in {manifest_path}.')
    return (manifest_path.parent / relative).resolve()


def _signal_name(number: int) -> str:
    try:
        return signal.Signals(number).name
    except ValueError:
        return f"SIG{number}"


class SubprocessSupervisor:
    """Runs one framework command and reports how it ended.

    The child inherits stdin. Its stdout and stderr are piped, scanned, and
    written through to *stdout* / *stderr* (the parent's binary streams by
    default).
    """

    def __init__(
        self,
        runtime_directory: str | Path,
        framework: Framework,
        command: str,
        forwarded_args: Sequence[str] = (),
        *,
        env_extra: dict[str, str] | None = None,
        node_binary: str = "node",
        stdout: BinaryIO | None = None,
        stderr: BinaryIO | None = None,
    ):
        if command not in SUPPORTED_COMMANDS:
            raise SupervisorError(f"Unsupported framework command: {command!r}", command=command)
        self.runtime_directory = Path(runtime_directory)
        self.framework = framework
        self.command = command
        self.forwarded_args = list(forwarded_args)
        self.env_extra = dict(env_extra or {})
        self.node_binary = node_binary
        self.stdout = stdout if stdout is not None else sys.stdout.buffer
        self.stderr = stderr if stderr is not None else sys.stderr.buffer

        self.session = SubprocessSession()
        self.process: asyncio.subprocess.Process | None = None
        self._pumps: list[asyncio.Task] = []
        self._started_at = 0.0

    @property
    def label(self) -> str:
        return f"{self.framework.value} {self.command}"

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def build_command(self) -> list[str]:
        bin_path = resolve_framework_bin(self.runtime_directory, self.framework)
        return [self.node_binary, str(bin_path), self.command, *self.forwarded_args]

    async def spawn(self) -> SubprocessSession:
        """Start the framework process and begin forwarding its output.

        Raises:
            SupervisorError: If the binary cannot be resolved or executed.
        """
        cmd = self.build_command()
        cmd_str = " ".join(cmd)
        env = {**os.environ, **self.env_extra}

        try:
            self.process = await asyncio.create_subprocess_exec(
                *cmd,
                cwd=str(self.runtime_directory),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise SupervisorError(
                f"Node binary not found: '{self.node_binary}'. Ensure Node.js is installed and in PATH.",
                command=cmd_str,
            )
        except PermissionError:
            raise SupervisorError(
                f"Permission denied executing: '{self.node_binary}'. Check file permissions.",
                command=cmd_str,
            )

        self._started_at = time.monotonic()
        self.session.pid = self.process.pid
        print_debug("App subprocess spawned", pid=self.process.pid, command=self.label)
        log(f"Starting {self.label}. Awaiting framework output...")

        self._pumps = [
            asyncio.create_task(self._pump(self.process.stdout, self.stdout, "stdout")),
            asyncio.create_task(self._pump(self.process.stderr, self.stderr, "stderr")),
        ]
        return self.session

    async def _pump(self, stream: asyncio.StreamReader | None, sink: BinaryIO, channel: str) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        carry = ""
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            if not chunk:
                break
            carry = self._inspect(carry + decoder.decode(chunk), channel)
            sink.write(chunk)
            sink.flush()
        self._inspect(carry + decoder.decode(b"", final=True), channel, final=True)

    def _inspect(self, text: str, channel: str, final: bool = False) -> str:
        """Scan output for fatal errors and the first URL.

        Returns the trailing text to prepend to the next chunk, so that a
        marker split across two reads is still seen whole.
        """
        if channel == "stderr" and not self.session.fatal_detected and FATAL_PATTERN.search(text):
            self.session.fatal_detected = True
            print_error(f"Detected a fatal error in {self.label} output; killing the process.")
            self.kill()

        if self.session.announced_url is None:
            match = URL_PATTERN.search(text)
            if match is not None:
                pending = len(text) - match.start()
                if match.end() == len(text) and not final and pending < CHUNK_SIZE:
                    # The URL may continue in the next chunk.
                    return text[match.start():]
                self.session.announced_url = match.group(1)
                log(f"Framework reported server at {self.session.announced_url}")
        return text[-SCAN_CARRY:]

    def kill(self) -> None:
        """Force-kill the child (SIGKILL)."""
        if self.running:
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

    def terminate(self) -> None:
        """Ask a still-running child to exit (SIGTERM)."""
        if self.running:
            print_debug("Terminating app subprocess", pid=self.session.pid)
            try:
                self.process.terminate()
            except ProcessLookupError:
                pass

    async def wait(self) -> SubprocessSession:
        """Wait for exit and for both output streams to close."""
        if self.process is None:
            raise SupervisorError("Framework process has not been spawned.", command=self.label)

        returncode = await self.process.wait()
        if self._pumps:
            await asyncio.gather(*self._pumps)
        self._record_exit(returncode)
        return self.session

    def _record_exit(self, returncode: int) -> None:
        session = self.session
        session.duration_seconds = time.monotonic() - self._started_at

        if returncode < 0:
            session.signal = _signal_name(-returncode)
            session.exit_code = 128 - returncode
        else:
            session.exit_code = returncode
        if session.fatal_detected and session.exit_code == 0:
            session.exit_code = 1

        print_debug(
            "App subprocess exit",
            pid=session.pid,
            exit_code=session.exit_code,
            signal=session.signal,
        )

        if session.exit_code != 0:
            signal_text = f" (signal: {session.signal})" if session.signal else ""
            print_error(
                f"{self.label} exited with code {session.exit_code}{signal_text} after "
                f"{format_duration(session.duration_seconds)}. See framework logs above for details."
            )
        elif session.announced_url is None:
            log(
                f"{self.label} finished without reporting a URL. "
                "Check the framework output above for access details."
            )
