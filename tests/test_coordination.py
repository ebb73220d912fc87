"""Unit tests for the coordination server (apphost.coordination)."""

from __future__ import annotations

import asyncio
import json

import pytest

from apphost.coordination import CoordinationServer


async def _request(server: CoordinationServer, token: str, *lines: str) -> list[dict]:
    reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
    writer.write(f"{token}\n".encode())
    responses = []
    for line in lines:
        writer.write(f"{line}\n".encode())
        await writer.drain()
        raw = await asyncio.wait_for(reader.readline(), timeout=5)
        responses.append(json.loads(raw) if raw else {})
    writer.close()
    return responses


class TestCoordinationServer:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_start_assigns_port_and_env(self):
        server = CoordinationServer("/tmp/runtime")
        port = await server.start()
        try:
            assert port > 0
            assert server.running is True
            assert server.env() == {"APPHOST_SERVER_PORT": str(port), "APPHOST_SERVER_ID": server.id}
        finally:
            server.cleanup()

    @pytest.mark.unit
    def test_ids_are_unique(self):
        assert CoordinationServer().id != CoordinationServer().id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_authenticated_requests(self):
        server = CoordinationServer("/tmp/runtime")
        await server.start()
        try:
            ping, runtime, unknown = await _request(server, server.id, "ping", "runtime", "explode")
        finally:
            server.cleanup()

        assert ping == {"ok": True, "result": "pong"}
        assert runtime == {"ok": True, "result": "/tmp/runtime"}
        assert unknown["ok"] is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_wrong_id_is_disconnected(self):
        server = CoordinationServer()
        await server.start()
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
            writer.write(b"not-the-id\n")
            await writer.drain()
            remaining = await asyncio.wait_for(reader.read(), timeout=5)
            writer.close()
        finally:
            server.cleanup()
        assert remaining == b""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cleanup_is_idempotent(self):
        server = CoordinationServer()
        await server.start()
        server.cleanup()
        server.cleanup()
        assert server.running is False
