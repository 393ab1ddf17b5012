"""Tests for the server lifecycle controller."""

import asyncio
import socket
from contextlib import asynccontextmanager

import httpx
import pytest
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from ippotato.core.lifecycle import (
    LifecycleController,
    ServerState,
    _ControlledServer,
    bind_socket,
    listen_and_serve,
    parse_listen_address,
)
from ippotato.exceptions import ListenError, ServeError, ShutdownTimeoutError
from ippotato.web.api import create_app


def _slow_app(started: asyncio.Event, release: asyncio.Event) -> FastAPI:
    app = FastAPI()

    @app.get("/slow")
    async def slow():
        started.set()
        await release.wait()
        return PlainTextResponse("finished\n")

    return app


def _client(controller: LifecycleController) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url=f"http://127.0.0.1:{controller.port}", trust_env=False)


async def _wait_until_serving(controller: LifecycleController) -> None:
    for _ in range(500):
        if controller.server is not None and controller.server.started:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("server did not start")


# ── address handling ─────────────────────────────────────────────────────────


def test_parse_listen_address():
    assert parse_listen_address("localhost:8080") == ("localhost", 8080)
    assert parse_listen_address(":9000") == ("", 9000)
    assert parse_listen_address("[::1]:8080") == ("::1", 8080)


@pytest.mark.parametrize("address", ["localhost", "localhost:http", "localhost:70000", ""])
def test_parse_listen_address_rejects_bad_ports(address):
    with pytest.raises(ListenError):
        parse_listen_address(address)


def test_bind_socket_listens_on_ephemeral_port():
    sock = bind_socket("127.0.0.1:0")
    try:
        host, port = sock.getsockname()[:2]
        assert host == "127.0.0.1"
        assert port > 0
    finally:
        sock.close()


# ── startup failures ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_bind_failure_is_fatal():
    blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    blocker.bind(("127.0.0.1", 0))
    blocker.listen()
    port = blocker.getsockname()[1]
    try:
        controller = LifecycleController(create_app(), f"127.0.0.1:{port}")
        with pytest.raises(ListenError):
            await controller.run(asyncio.Event())
        assert controller.state is ServerState.FAILED
    finally:
        blocker.close()


@pytest.mark.asyncio
async def test_serve_loop_exiting_on_its_own_is_an_error():
    @asynccontextmanager
    async def broken_lifespan(app):
        raise RuntimeError("startup blew up")
        yield

    controller = LifecycleController(FastAPI(lifespan=broken_lifespan), "127.0.0.1:0")
    with pytest.raises(ServeError):
        await asyncio.wait_for(controller.run(asyncio.Event()), timeout=5)
    assert controller.state is ServerState.FAILED


@pytest.mark.asyncio
async def test_server_process_exit_becomes_serve_error(monkeypatch):
    async def exiting_serve(self, sockets=None):
        raise SystemExit(3)

    monkeypatch.setattr(_ControlledServer, "serve", exiting_serve)
    controller = LifecycleController(create_app(), "127.0.0.1:0")
    with pytest.raises(ServeError) as exc_info:
        await asyncio.wait_for(controller.run(asyncio.Event()), timeout=5)
    assert isinstance(exc_info.value.__cause__, SystemExit)
    assert controller.state is ServerState.FAILED


# ── serving and shutdown ─────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_serves_requests_then_closes_gracefully():
    shutdown_event = asyncio.Event()
    controller = LifecycleController(create_app(), "127.0.0.1:0", access_log=False)
    run_task = asyncio.create_task(controller.run(shutdown_event))
    await _wait_until_serving(controller)
    assert controller.state is ServerState.SERVING

    async with _client(controller) as client:
        response = await client.get("/", headers={"Accept": "text/plain"})
    assert response.text == "127.0.0.1\n"

    shutdown_event.set()
    assert await asyncio.wait_for(run_task, timeout=5) is ServerState.CLOSED
    assert controller.state is ServerState.CLOSED


@pytest.mark.asyncio
async def test_in_flight_request_completes_within_grace_window():
    started, release = asyncio.Event(), asyncio.Event()
    shutdown_event = asyncio.Event()
    controller = LifecycleController(
        _slow_app(started, release), "127.0.0.1:0", shutdown_timeout=5, access_log=False
    )
    run_task = asyncio.create_task(controller.run(shutdown_event))
    await _wait_until_serving(controller)

    async with _client(controller) as client:
        request_task = asyncio.create_task(client.get("/slow"))
        await asyncio.wait_for(started.wait(), timeout=5)

        shutdown_event.set()
        await asyncio.sleep(0.2)
        assert controller.state is ServerState.SHUTTING_DOWN
        assert not run_task.done()

        release.set()
        response = await asyncio.wait_for(request_task, timeout=5)

    assert response.status_code == 200
    assert response.text == "finished\n"
    assert await asyncio.wait_for(run_task, timeout=5) is ServerState.CLOSED


@pytest.mark.asyncio
async def test_in_flight_request_is_force_closed_after_timeout():
    started, release = asyncio.Event(), asyncio.Event()
    shutdown_event = asyncio.Event()
    controller = LifecycleController(
        _slow_app(started, release), "127.0.0.1:0", shutdown_timeout=0.3, access_log=False
    )
    run_task = asyncio.create_task(controller.run(shutdown_event))
    await _wait_until_serving(controller)

    try:
        async with _client(controller) as client:
            request_task = asyncio.create_task(client.get("/slow"))
            await asyncio.wait_for(started.wait(), timeout=5)

            shutdown_event.set()
            with pytest.raises(ShutdownTimeoutError) as exc_info:
                await asyncio.wait_for(run_task, timeout=5)
            assert exc_info.value.remaining == 1

            with pytest.raises(httpx.TransportError):
                await asyncio.wait_for(request_task, timeout=5)
    finally:
        release.set()

    assert controller.state is ServerState.CLOSED


@pytest.mark.asyncio
async def test_new_connections_refused_after_shutdown():
    shutdown_event = asyncio.Event()
    controller = LifecycleController(create_app(), "127.0.0.1:0", access_log=False)
    run_task = asyncio.create_task(controller.run(shutdown_event))
    await _wait_until_serving(controller)
    port = controller.port

    shutdown_event.set()
    await asyncio.wait_for(run_task, timeout=5)

    async with httpx.AsyncClient(trust_env=False) as client:
        with pytest.raises(httpx.ConnectError):
            await client.get(f"http://127.0.0.1:{port}/")


@pytest.mark.asyncio
async def test_listen_and_serve_reports_bad_address():
    with pytest.raises(ListenError):
        await listen_and_serve(create_app(), "no-port-here", asyncio.Event())
