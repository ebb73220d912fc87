"""Local coordination server.

A loopback TCP endpoint the framework process can reach through
``APPHOST_SERVER_PORT``. Clients authenticate by sending the server id
(``APPHOST_SERVER_ID``) as their first line; after that every line is a
request answered with one line of JSON.
"""

from __future__ import annotations

import asyncio
import json
import uuid

from apphost.utils import print_debug

HOST = "127.0.0.1"


class CoordinationServer:
    """Newline-delimited JSON server bound to a random loopback port."""

    def __init__(self, runtime_directory: str = "") -> None:
        self.id = uuid.uuid4().hex
        self.runtime_directory = runtime_directory
        self.port: int | None = None
        self._server: asyncio.AbstractServer | None = None
        self._writers: set[asyncio.StreamWriter] = set()

    @property
    def running(self) -> bool:
        return self._server is not None

    async def start(self) -> int:
        self._server = await asyncio.start_server(self._handle_client, HOST, 0)
        self.port = self._server.sockets[0].getsockname()[1]
        print_debug("Coordination server listening", port=self.port)
        return self.port

    def env(self) -> dict[str, str]:
        """Environment variables handed to the framework process."""
        return {
            "APPHOST_SERVER_PORT": str(self.port),
            "APPHOST_SERVER_ID": self.id,
        }

    def handle_request(self, line: str) -> dict[str, object]:
        request = line.strip()
        if request == "ping":
            return {"ok": True, "result": "pong"}
        if request == "runtime":
            return {"ok": True, "result": self.runtime_directory}
        return {"ok": False, "error": f"Unknown request: {request}"}

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._writers.add(writer)
        try:
            token = (await reader.readline()).decode("utf-8", errors="replace").strip()
            if token != self.id:
                print_debug("Rejected coordination client with a bad id")
                return
            while True:
                line = await reader.readline()
                if not line:
                    break
                response = self.handle_request(line.decode("utf-8", errors="replace"))
                writer.write(json.dumps(response).encode("utf-8") + b"\n")
                await writer.drain()
        except ConnectionError as exc:
            print_debug("Coordination client disconnected", reason=str(exc))
        finally:
            self._writers.discard(writer)
            writer.close()

    def cleanup(self) -> None:
        """Stop accepting clients and drop open connections. Safe to call twice."""
        if self._server is None:
            return
        self._server.close()
        for writer in list(self._writers):
            writer.close()
        self._writers.clear()
        self._server = None
