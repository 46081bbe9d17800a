"""
Integration tests for StreamServer

Runs uvicorn on an ephemeral port and talks to it with httpx to check the
streaming contract, bind failures and the graceful shutdown deadline.
"""

import asyncio
import json
import socket
import time
from typing import Any, Dict, List

import httpx
import pytest

from shared.models import ServerConfig
from filter_stream.filter_handler import FILTER_PATH
from filter_stream.stream_server import (
    BindError,
    ServerError,
    ServerState,
    ShutdownTimeoutError,
    StreamServer,
    split_host_port,
)


def base_url(server: StreamServer) -> str:
    host, port = server.bound_address
    return f"http://{host}:{port}"


async def read_lines(url: str, track: str, count: int) -> Dict[str, Any]:
    """Open a filter stream and return its headers and first lines."""
    lines: List[str] = []
    async with httpx.AsyncClient(timeout=10) as client:
        async with client.stream("POST", url + FILTER_PATH, data={"track": track}) as response:
            async for line in response.aiter_lines():
                lines.append(line)
                if len(lines) >= count:
                    break
            return {"status": response.status_code, "headers": response.headers, "lines": lines}


async def hold_stream(url: str, first_line: asyncio.Event) -> List[str]:
    """Read a filter stream until the server ends it."""
    lines: List[str] = []
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            async with client.stream("POST", url + FILTER_PATH, data={"track": "go"}) as response:
                async for line in response.aiter_lines():
                    lines.append(line)
                    first_line.set()
    except httpx.HTTPError:
        pass
    return lines


class TestSplitHostPort:
    """Test suite for listen address parsing."""

    @pytest.mark.parametrize("addr, expected", [
        (":8080", ("", 8080)),
        ("127.0.0.1:9000", ("127.0.0.1", 9000)),
        ("localhost:0", ("localhost", 0)),
        ("[::1]:8080", ("::1", 8080)),
        ("localhost:", ("localhost", 0)),
    ])
    def test_valid_addresses(self, addr: str, expected) -> None:
        assert split_host_port(addr) == expected

    @pytest.mark.parametrize("addr", ["localhost", "::1:80", "host:99999", "host:nosuchservice"])
    def test_invalid_addresses(self, addr: str) -> None:
        with pytest.raises(BindError):
            split_host_port(addr)


class TestStreamServer:
    """Test suite for StreamServer."""

    @pytest.fixture
    def config(self) -> ServerConfig:
        return ServerConfig(addr="127.0.0.1:0", tweet_delays=(0.01,), shutdown_timeout=2.0)

    @pytest.mark.asyncio
    async def test_streams_json_lines(self, config: ServerConfig) -> None:
        """Test an end-to-end filter stream over a real socket."""
        server = StreamServer(config)
        serve_task = asyncio.create_task(server.serve())
        await server.wait_started()
        assert server.state is ServerState.SERVING

        result = await read_lines(base_url(server), "cats,dogs", 5)

        assert result["status"] == 200
        assert result["headers"]["content-type"] == "application/json"
        assert len(result["lines"]) == 5
        for line in result["lines"]:
            assert json.loads(line)["text"] in ("Someone just mentioned cats", "Someone just mentioned dogs")

        await server.shutdown()
        await asyncio.wait_for(serve_task, timeout=5)
        assert server.state is ServerState.TERMINATED

    @pytest.mark.asyncio
    async def test_rejects_get(self, config: ServerConfig) -> None:
        server = StreamServer(config)
        serve_task = asyncio.create_task(server.serve())
        await server.wait_started()

        async with httpx.AsyncClient(timeout=5) as client:
            response = await client.get(base_url(server) + FILTER_PATH)

        assert response.status_code == 405
        assert response.text == "Method not allowed\n"

        await server.shutdown()
        await asyncio.wait_for(serve_task, timeout=5)

    @pytest.mark.asyncio
    async def test_shutdown_ends_open_streams_promptly(self) -> None:
        """Test that open streams close and serve returns before the deadline."""
        server = StreamServer(ServerConfig(addr="127.0.0.1:0", tweet_delays=(1, 2, 3)))
        serve_task = asyncio.create_task(server.serve())
        await server.wait_started()

        first_line = asyncio.Event()
        clients = [asyncio.create_task(hold_stream(base_url(server), first_line)) for _ in range(3)]
        await asyncio.wait_for(first_line.wait(), timeout=5)

        started = time.monotonic()
        await server.shutdown(2.0)
        await asyncio.wait_for(serve_task, timeout=1)
        results = await asyncio.wait_for(asyncio.gather(*clients), timeout=2)

        assert time.monotonic() - started < 2.0
        assert any(results)
        assert server.state is ServerState.TERMINATED

    @pytest.mark.asyncio
    async def test_stops_accepting_after_shutdown(self, config: ServerConfig) -> None:
        server = StreamServer(config)
        serve_task = asyncio.create_task(server.serve())
        await server.wait_started()
        url = base_url(server)

        await server.shutdown()
        await asyncio.wait_for(serve_task, timeout=5)

        async with httpx.AsyncClient(timeout=2) as client:
            with pytest.raises(httpx.ConnectError):
                await client.post(url + FILTER_PATH, data={"track": "go"})

    @pytest.mark.asyncio
    async def test_shutdown_deadline_force_closes(self) -> None:
        """Test that a stream ignoring shutdown is force-closed at the deadline."""
        async def stubborn_app(scope: Dict[str, Any], receive: Any, send: Any) -> None:
            gone = asyncio.Event()

            async def watch_disconnect() -> None:
                while (await receive())["type"] != "http.disconnect":
                    pass
                gone.set()

            watcher = asyncio.create_task(watch_disconnect())
            await send({"type": "http.response.start", "status": 200, "headers": []})
            while not gone.is_set():
                await send({"type": "http.response.body", "body": b"{}\n", "more_body": True})
                await asyncio.sleep(0.05)
            await watcher

        server = StreamServer(ServerConfig(addr="127.0.0.1:0", shutdown_timeout=0.3), app=stubborn_app)
        serve_task = asyncio.create_task(server.serve())
        await server.wait_started()

        first_line = asyncio.Event()
        client = asyncio.create_task(hold_stream(base_url(server), first_line))
        await asyncio.wait_for(first_line.wait(), timeout=5)

        started = time.monotonic()
        with pytest.raises(ShutdownTimeoutError):
            await server.shutdown()

        assert time.monotonic() - started < 1.0
        assert server.state is ServerState.TERMINATED
        await asyncio.wait_for(asyncio.gather(serve_task, client, return_exceptions=True), timeout=5)

    @pytest.mark.asyncio
    async def test_bind_failure(self) -> None:
        """Test that an address already in use raises BindError."""
        with socket.create_server(("127.0.0.1", 0)) as blocker:
            port = blocker.getsockname()[1]
            server = StreamServer(ServerConfig(addr=f"127.0.0.1:{port}"))

            with pytest.raises(BindError):
                await server.serve()

    @pytest.mark.asyncio
    async def test_invalid_address(self) -> None:
        with pytest.raises(BindError, match="missing port"):
            await StreamServer(ServerConfig(addr="localhost")).serve()

    @pytest.mark.asyncio
    async def test_shutdown_before_serve(self, config: ServerConfig) -> None:
        """Test that serve returns at once after an early shutdown."""
        server = StreamServer(config)

        await server.shutdown()
        await asyncio.wait_for(server.serve(), timeout=1)

        assert server.state is ServerState.TERMINATED
        assert server.bound_address is None

    @pytest.mark.asyncio
    async def test_serve_twice_rejected(self, config: ServerConfig) -> None:
        server = StreamServer(config)
        serve_task = asyncio.create_task(server.serve())
        await server.wait_started()

        with pytest.raises(ServerError, match="already started"):
            await server.serve()

        await server.shutdown()
        await asyncio.wait_for(serve_task, timeout=5)
