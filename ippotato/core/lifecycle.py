"""
Server lifecycle: bind, serve, and drain on shutdown.

The controller owns the listening socket for its whole life span. It binds
the socket itself so a bad address fails fast, runs the uvicorn serve loop
on its own task, then waits for whichever comes first: the shutdown event
or the serve loop ending by itself. Only the first of the two is acted on.

    Starting -> Serving -> ShuttingDown -> Closed
                        \\-> Failed
"""

import asyncio
import contextlib
import socket
from enum import Enum
from typing import Any, Iterator

from uvicorn import Config, Server

from ..exceptions import ListenError, ServeError, ShutdownTimeoutError
from ..utils.config import DEFAULT_SHUTDOWN_TIMEOUT
from ..utils.logging import get_logger

logger = get_logger(__name__)

# Same as uvicorn's default backlog
DEFAULT_BACKLOG = 2048


class ServerState(str, Enum):
    """Lifecycle states of the listening service."""

    STARTING = "starting"
    SERVING = "serving"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"
    FAILED = "failed"


def parse_listen_address(address: str) -> tuple[str, int]:
    """
    Split a "host:port" listen address.

    IPv6 hosts must be bracketed ("[::1]:8080"). An empty host (":8080")
    means every interface.

    Raises:
        ListenError: If the port is missing or not a valid port number.
    """
    host, sep, port_text = address.rpartition(":")
    if not sep:
        raise ListenError(f"missing port in listen address {address!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_text)
    except ValueError as e:
        raise ListenError(f"invalid port in listen address {address!r}") from e
    if not 0 <= port <= 65535:
        raise ListenError(f"port out of range in listen address {address!r}")
    return host, port


def bind_socket(address: str, backlog: int = DEFAULT_BACKLOG) -> socket.socket:
    """
    Create a listening TCP socket for a "host:port" address.

    Raises:
        ListenError: If the address cannot be resolved or bound.
    """
    host, port = parse_listen_address(address)
    try:
        family, sock_type, proto, _, sockaddr = socket.getaddrinfo(
            host or None, port, type=socket.SOCK_STREAM, flags=socket.AI_PASSIVE
        )[0]
        sock = socket.socket(family, sock_type, proto)
    except OSError as e:
        raise ListenError(f"cannot listen on {address}: {e}") from e

    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(sockaddr)
        sock.listen(backlog)
    except OSError as e:
        sock.close()
        raise ListenError(f"cannot listen on {address}: {e}") from e
    return sock


class _ControlledServer(Server):
    """uvicorn server that leaves signal handling to the lifecycle controller."""

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class LifecycleController:
    """
    Runs an ASGI app on a listen address until told to stop.

    Collaborators:
        - uvicorn.Server: accepts connections and runs requests
        - asyncio.Event: the single shutdown signal, set by the caller
    """

    def __init__(
        self,
        app: Any,
        listen_address: str,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        log_level: str = "info",
        access_log: bool = True,
    ) -> None:
        self.app = app
        self.listen_address = listen_address
        self.shutdown_timeout = shutdown_timeout
        self.log_level = log_level
        self.access_log = access_log
        self.state = ServerState.STARTING
        self.sockets: list[socket.socket] = []
        self.server: Server | None = None
        # Bound port, known once the socket is listening
        self.port: int | None = None

    async def run(self, shutdown_event: asyncio.Event) -> ServerState:
        """
        Serve until shutdown_event is set or the serve loop dies.

        Returns:
            ServerState.CLOSED after a graceful shutdown.

        Raises:
            ListenError: The address could not be bound.
            ServeError: The serve loop stopped without being asked to.
            ShutdownTimeoutError: In-flight requests outlived the shutdown
                                  timeout and were force-closed.
        """
        try:
            self.sockets = [bind_socket(self.listen_address)]
        except ListenError:
            self.state = ServerState.FAILED
            raise
        self.port = self.sockets[0].getsockname()[1]

        config = Config(
            app=self.app,
            log_level=self.log_level,
            access_log=self.access_log,
            # Proxy headers are interpreted by the app, not folded into the peer address
            proxy_headers=False,
        )
        self.server = _ControlledServer(config)

        serve_task = asyncio.create_task(self._serve())
        signal_task = asyncio.create_task(shutdown_event.wait())
        self.state = ServerState.SERVING
        logger.info("Server successfully started", addr=self.listen_address, port=self.port)

        try:
            done, _ = await asyncio.wait(
                {serve_task, signal_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if serve_task in done:
                self.state = ServerState.FAILED
                error = serve_task.exception()
                if isinstance(error, ServeError):
                    raise error
                if error is not None:
                    raise ServeError(f"server on {self.listen_address} crashed: {error}") from error
                raise ServeError(f"server on {self.listen_address} stopped unexpectedly")

            return await self._shutdown(serve_task)
        finally:
            signal_task.cancel()
            if not serve_task.done():
                serve_task.cancel()
            self._close_listeners()

    async def _serve(self) -> None:
        assert self.server is not None
        try:
            await self.server.serve(sockets=self.sockets)
        except SystemExit as e:
            # uvicorn exits the process when application startup fails
            raise ServeError(
                f"server on {self.listen_address} exited during startup (status {e.code})"
            ) from e

    def _close_listeners(self) -> None:
        # uvicorn skips its own shutdown when asked to exit mid-startup
        if self.server is not None:
            for server in getattr(self.server, "servers", []):
                server.close()
        for sock in self.sockets:
            sock.close()

    async def _shutdown(self, serve_task: asyncio.Task) -> ServerState:
        """Drain in-flight requests, forcing them closed after the timeout."""
        assert self.server is not None
        self.state = ServerState.SHUTTING_DOWN
        logger.info(
            "Triggering graceful shutdown of the http server",
            timeout=self.shutdown_timeout,
        )
        self.server.should_exit = True

        done, _ = await asyncio.wait({serve_task}, timeout=self.shutdown_timeout)
        if serve_task in done:
            self._raise_if_crashed(serve_task)
            self.state = ServerState.CLOSED
            logger.info("Server closed gracefully")
            return self.state

        remaining = self._force_close()
        await serve_task
        self.state = ServerState.CLOSED
        raise ShutdownTimeoutError(self.shutdown_timeout, remaining)

    def _force_close(self) -> int:
        assert self.server is not None
        self.server.force_exit = True
        connections = list(self.server.server_state.connections)
        for connection in connections:
            transport = getattr(connection, "transport", None)
            if transport is not None:
                transport.abort()
        logger.warning("Force-closed lingering connections", count=len(connections))
        return len(connections)

    def _raise_if_crashed(self, serve_task: asyncio.Task) -> None:
        error = serve_task.exception()
        if error is not None:
            self.state = ServerState.FAILED
            if isinstance(error, ServeError):
                raise error
            raise ServeError(f"server on {self.listen_address} crashed during shutdown: {error}") from error


async def listen_and_serve(
    app: Any,
    listen_address: str,
    shutdown_event: asyncio.Event,
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
) -> ServerState:
    """Run app on listen_address until shutdown_event is set."""
    controller = LifecycleController(app, listen_address, shutdown_timeout=shutdown_timeout)
    return await controller.run(shutdown_event)
