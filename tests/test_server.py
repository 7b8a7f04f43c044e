"""
Lifecycle tests running a real uvicorn server on localhost.
"""

import asyncio
import contextlib
import os
import signal
import threading
from unittest.mock import MagicMock

import httpx
import pytest
from fastapi import FastAPI

from gox.errors import ConfigurationError, ServerStartError, ShutdownTimeoutError
from gox.rest.options import DEFAULT_GRACEFUL_SHUTDOWN_SEC, with_graceful_shutdown, with_logger, with_port
from gox.rest.server import HttpServer, ServerState, run_http_server, serve_until_signalled


def setup_routes(app: FastAPI) -> FastAPI:
    @app.get("/hello")
    async def hello():
        return {"hello": "world"}

    @app.get("/slow")
    async def slow():
        await asyncio.sleep(0.1)
        return {"done": True}

    @app.get("/stuck")
    async def stuck():
        await asyncio.sleep(2)
        return {"done": True}

    return app


@contextlib.asynccontextmanager
async def broken_lifespan(app):
    raise RuntimeError("database unavailable")
    yield


def setup_failing_startup(app: FastAPI) -> FastAPI:
    app.router.lifespan_context = broken_lifespan
    return app


async def wait_until_serving(base_url: str, attempts: int = 100) -> None:
    async with httpx.AsyncClient(base_url=base_url) as client:
        for _ in range(attempts):
            try:
                await client.get("/hello")
                return
            except httpx.TransportError:
                await asyncio.sleep(0.05)
    raise AssertionError(f"server at {base_url} never came up")


@pytest.mark.asyncio
async def test_unregistered_path_returns_404():
    server = HttpServer(setup_routes, with_port("0"))
    await server.start()
    stop = asyncio.Event()
    serving = asyncio.create_task(server.serve_until(stop))
    base_url = f"http://127.0.0.1:{server.port}"

    try:
        await wait_until_serving(base_url)
        async with httpx.AsyncClient(base_url=base_url) as client:
            missing = await client.get("/does-not-exist")
            hello = await client.get("/hello")
        assert server.state is ServerState.RUNNING
    finally:
        stop.set()
        await serving
        await server.shutdown()

    assert missing.status_code == 404
    assert hello.json() == {"hello": "world"}
    assert hello.headers["x-frame-options"] == "deny"
    assert server.state is ServerState.STOPPED


@pytest.mark.asyncio
async def test_cancel_drains_in_flight_request(free_port):
    stop = asyncio.Event()
    serving = asyncio.create_task(run_http_server(stop, setup_routes, with_port(str(free_port))))
    base_url = f"http://127.0.0.1:{free_port}"
    await wait_until_serving(base_url)

    async with httpx.AsyncClient(base_url=base_url) as client:
        in_flight = asyncio.create_task(client.get("/slow"))
        await asyncio.sleep(0.03)
        stop.set()
        response = await in_flight

    assert response.status_code == 200
    assert response.json() == {"done": True}
    await asyncio.wait_for(serving, timeout=DEFAULT_GRACEFUL_SHUTDOWN_SEC)


@pytest.mark.asyncio
async def test_no_new_connections_after_shutdown(free_port):
    stop = asyncio.Event()
    serving = asyncio.create_task(run_http_server(stop, setup_routes, with_port(str(free_port))))
    base_url = f"http://127.0.0.1:{free_port}"
    await wait_until_serving(base_url)

    stop.set()
    await serving

    async with httpx.AsyncClient(base_url=base_url) as client:
        with pytest.raises(httpx.ConnectError):
            await client.get("/hello")


@pytest.mark.asyncio
async def test_shutdown_timeout_is_reported():
    server = HttpServer(setup_routes, with_port("0"), with_graceful_shutdown(0.2))
    await server.start()
    base_url = f"http://127.0.0.1:{server.port}"
    await wait_until_serving(base_url)

    async with httpx.AsyncClient(base_url=base_url) as client:
        in_flight = asyncio.create_task(client.get("/stuck"))
        await asyncio.sleep(0.05)

        with pytest.raises(ShutdownTimeoutError) as exc_info:
            await server.shutdown()

        in_flight.cancel()
        with contextlib.suppress(asyncio.CancelledError, httpx.HTTPError):
            await in_flight

    assert exc_info.value.grace_period == 0.2
    assert server.state is ServerState.STOPPED


@pytest.mark.asyncio
async def test_bind_failure_raises(busy_port):
    server = HttpServer(setup_routes, with_port(str(busy_port)))

    with pytest.raises(ServerStartError):
        await server.start()

    assert server.state is ServerState.NEW


@pytest.mark.asyncio
async def test_run_http_server_bind_failure(busy_port):
    with pytest.raises(ServerStartError):
        await run_http_server(asyncio.Event(), setup_routes, with_port(str(busy_port)))


@pytest.mark.asyncio
async def test_invalid_option_raises_before_serving():
    factory = MagicMock()
    with pytest.raises(ConfigurationError):
        await run_http_server(asyncio.Event(), factory, with_port("http"))
    factory.assert_not_called()


@pytest.mark.asyncio
async def test_failed_startup_raises():
    with pytest.raises(ServerStartError):
        await asyncio.wait_for(
            run_http_server(asyncio.Event(), setup_failing_startup, with_port("0")),
            timeout=DEFAULT_GRACEFUL_SHUTDOWN_SEC,
        )


@pytest.mark.asyncio
async def test_failed_startup_does_not_exit_process():
    server = HttpServer(setup_failing_startup, with_port("0"))
    await server.start()

    with pytest.raises(ServerStartError) as exc_info:
        await asyncio.wait_for(server.serve_until(asyncio.Event()), timeout=DEFAULT_GRACEFUL_SHUTDOWN_SEC)

    assert not isinstance(exc_info.value.__cause__, SystemExit)
    assert server.state is ServerState.STOPPED


@pytest.mark.asyncio
async def test_cancelling_caller_shuts_server_down(free_port):
    serving = asyncio.create_task(run_http_server(asyncio.Event(), setup_routes, with_port(str(free_port))))
    base_url = f"http://127.0.0.1:{free_port}"
    await wait_until_serving(base_url)

    serving.cancel()
    with pytest.raises(asyncio.CancelledError):
        await serving

    async with httpx.AsyncClient(base_url=base_url) as client:
        with pytest.raises(httpx.ConnectError):
            await client.get("/hello")


@pytest.mark.asyncio
async def test_lifecycle_is_logged(free_port):
    logger = MagicMock()
    stop = asyncio.Event()
    serving = asyncio.create_task(
        run_http_server(stop, setup_routes, with_port(str(free_port)), with_logger(logger))
    )
    base_url = f"http://127.0.0.1:{free_port}"
    await wait_until_serving(base_url)

    stop.set()
    await serving

    messages = [c.args[0] for c in logger.info.call_args_list]
    assert messages[0] == "Start http server"
    assert "Http Server received a shutdown signal" in messages
    assert messages[-1] == "Http Server exited properly"
    assert "request handled: GET /hello" in messages


def test_serve_until_signalled(free_port):
    timer = threading.Timer(0.5, os.kill, args=(os.getpid(), signal.SIGUSR1))
    timer.start()
    try:
        serve_until_signalled(setup_routes, with_port(str(free_port)), signals=(signal.SIGUSR1,))
    finally:
        timer.cancel()
