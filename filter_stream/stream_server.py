"""
HTTP Server Host

Runs the filter stream application on uvicorn and adds the two-phase
graceful shutdown the mock needs: stop accepting, let open streams drain
until a deadline, then force-close whatever is left.
"""

import asyncio
import contextlib
import socket
from enum import Enum
from typing import Any, Iterator, Optional, Tuple

import structlog
import uvicorn

from shared.models import ServerConfig
from filter_stream.filter_handler import create_app


class ServerError(Exception):
    """Raised when the server stops for any reason other than shutdown."""


class BindError(ServerError):
    """Raised when the listen address is invalid or cannot be bound."""


class ShutdownTimeoutError(ServerError):
    """Raised when open streams did not drain before the deadline."""


class ServerState(Enum):
    UNSTARTED = "unstarted"
    SERVING = "serving"
    DRAINING = "draining"
    TERMINATED = "terminated"


def split_host_port(addr: str) -> Tuple[str, int]:
    """Split a ``host:port`` address.

    An empty host means every interface, an empty port an ephemeral
    one. IPv6 hosts must be bracketed and named ports are looked up in
    the services database.

    Raises:
        BindError: If the address is malformed
    """
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise BindError(f"Address {addr}: missing port in address")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    elif ":" in host:
        raise BindError(f"Address {addr}: too many colons in address")

    if not port:
        return host, 0
    if port.isdigit():
        number = int(port)
    else:
        try:
            number = socket.getservbyname(port, "tcp")
        except OSError:
            raise BindError(f"Address {addr}: unknown port")
    if number > 65535:
        raise BindError(f"Address {addr}: invalid port")
    return host, number


def bind_socket(host: str, port: int) -> socket.socket:
    """Open a listening TCP socket.

    Raises:
        BindError: If the address cannot be resolved or bound
    """
    try:
        if not host:
            if socket.has_dualstack_ipv6():
                return socket.create_server(("", port), family=socket.AF_INET6, dualstack_ipv6=True)
            return socket.create_server(("", port))
        family = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE)[0][0]
        return socket.create_server((host, port), family=family)
    except OSError as e:
        raise BindError(f"Failed to bind {host}:{port}: {e}")


class _UvicornServer(uvicorn.Server):
    """Uvicorn server leaving signal handling to the supervisor."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class StreamServer:
    """Hosts the filter stream endpoint.

    Lifecycle: UNSTARTED -> SERVING -> DRAINING -> TERMINATED. ``serve``
    returns normally once ``shutdown`` has completed.
    """

    def __init__(self, config: Optional[ServerConfig] = None, app: Any = None) -> None:
        """Initialize the server.

        Args:
            config: Server configuration, defaults when omitted
            app: ASGI application, the filter stream app when omitted. A
                custom app must end its streams when ``shutdown_event`` is set.
        """
        self.config = config or ServerConfig()
        self.shutdown_event = asyncio.Event()
        self.app = app or create_app(self.shutdown_event, delays=self.config.tweet_delays)

        self.state = ServerState.UNSTARTED
        self.logger = structlog.get_logger(__name__)

        self._server: Optional[_UvicornServer] = None
        self._socket: Optional[socket.socket] = None
        self._bound_address: Optional[Tuple[str, int]] = None
        self._started = asyncio.Event()
        self._stopped = asyncio.Event()

    @property
    def bound_address(self) -> Optional[Tuple[str, int]]:
        """Host and port actually bound, once serving."""
        return self._bound_address

    async def wait_started(self) -> None:
        """Wait until the listening socket is bound."""
        await self._started.wait()

    async def serve(self) -> None:
        """Bind the configured address and serve until shut down.

        Raises:
            BindError: If the address cannot be bound
            ServerError: If serving stops without a shutdown request
        """
        if self.state is ServerState.TERMINATED:
            return
        if self.state is not ServerState.UNSTARTED:
            raise ServerError("Server already started")

        host, port = split_host_port(self.config.addr)
        self._socket = bind_socket(host, port)
        self._bound_address = self._socket.getsockname()[:2]

        uvicorn_config = uvicorn.Config(
            self.app,
            host=host or "0.0.0.0",
            port=self._bound_address[1],
            lifespan="off",
            access_log=False,
            log_config=None,
            timeout_graceful_shutdown=self.config.shutdown_timeout
        )
        self._server = _UvicornServer(uvicorn_config)

        log = self.logger.bind(component="stream_server", address=self._bound_address)
        self.state = ServerState.SERVING
        self._started.set()
        log.debug("Listening")

        try:
            await self._server.serve(sockets=[self._socket])
        finally:
            self._socket.close()
            self._stopped.set()

        if self.state is ServerState.SERVING:
            self.state = ServerState.TERMINATED
            raise ServerError("Server stopped without a shutdown request")

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop accepting and drain open streams.

        Args:
            timeout: Grace period in seconds, the configured one by default

        Raises:
            ShutdownTimeoutError: If streams were still open at the deadline;
                they are force-closed before raising
        """
        if timeout is None:
            timeout = self.config.shutdown_timeout

        if self.state is ServerState.UNSTARTED:
            self.state = ServerState.TERMINATED
            return
        if self.state is ServerState.TERMINATED:
            return

        log = self.logger.bind(component="stream_server", timeout=timeout)
        self.state = ServerState.DRAINING
        self.shutdown_event.set()
        self._server.should_exit = True

        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=timeout)
            log.debug("All streams drained")
        except asyncio.TimeoutError:
            closed = self._force_close()
            log.error("Grace period exceeded, connections force-closed", connections=closed)
            raise ShutdownTimeoutError(f"Open streams did not drain within {timeout}s")
        finally:
            self.state = ServerState.TERMINATED

    def _force_close(self) -> int:
        self._server.force_exit = True
        connections = list(self._server.server_state.connections)
        for connection in connections:
            transport = getattr(connection, "transport", None)
            if transport is not None:
                transport.close()
        return len(connections)
