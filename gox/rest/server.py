"""
HTTP server bootstrap with graceful shutdown.

`run_http_server` builds a FastAPI application with the default middleware,
lets the caller register routes on it, serves it with uvicorn in a background
task and returns once the stop event is set and in-flight requests drained:

    async def main():
        stop = asyncio.Event()
        ...
        await run_http_server(stop, setup_routes, with_port("9090"), with_logger(logger))

Infrastructure failures (bind errors, the server dying early, an exhausted
grace period) are raised to the caller; deciding to exit the process is left
to it.
"""

import asyncio
import contextlib
import signal
import socket
from enum import Enum
from typing import Callable, Optional, Sequence

import uvicorn
from fastapi import FastAPI
from starlette.middleware import Middleware
from starlette.middleware.trustedhost import TrustedHostMiddleware
from starlette.types import ASGIApp

from gox.errors import RequestDecodeError, ServerStartError, ShutdownTimeoutError
from gox.logging import get_logger, new_nop_logger
from gox.rest.codec import default_bad_request_handler
from gox.rest.middleware import RequestLoggerMiddleware, default_cors_options, default_middlewares
from gox.rest.options import Option, ServerConfig, apply_options

HandlerFactory = Callable[[FastAPI], ASGIApp]

logger = get_logger("gox.rest.server")


class ServerState(Enum):
    NEW = "new"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class _Server(uvicorn.Server):
    """uvicorn server that leaves signal handling to the caller."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def build_app(cfg: ServerConfig) -> FastAPI:
    """Create the application with the middleware `cfg` asks for, outermost first."""
    middleware = list(cfg.middlewares) if cfg.middlewares else default_middlewares()

    if cfg.allowed_hosts:
        middleware.append(Middleware(TrustedHostMiddleware, allowed_hosts=cfg.allowed_hosts))

    cors = cfg.cors_options if cfg.set_cors else default_cors_options()
    middleware.append(cors.middleware())

    if cfg.has_logger:
        middleware.append(Middleware(RequestLoggerMiddleware, logger=cfg.logger))

    return FastAPI(
        middleware=middleware,
        exception_handlers={RequestDecodeError: default_bad_request_handler},
    )


def bind_socket(port: str) -> socket.socket:
    """Listen on `port` on all interfaces."""
    try:
        return socket.create_server(("", int(port)), backlog=2048)
    except OSError as e:
        raise ServerStartError(f"Start HTTP server failed: {e}", {"port": port}) from e


class HttpServer:
    """A uvicorn-served application driven through start, serve and shutdown."""

    def __init__(self, create_handler: HandlerFactory, *options: Option):
        self.config = apply_options(options)
        if self.config.has_logger:
            self.logger = self.config.logger
        else:
            logger.warning("no logger is set")
            self.logger = new_nop_logger()

        self.app = build_app(self.config)
        self.handler = create_handler(self.app)
        self.state = ServerState.NEW

        self._socket: Optional[socket.socket] = None
        self._bound_port: Optional[int] = None
        self._server: Optional[_Server] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def port(self) -> Optional[int]:
        """Port actually bound, once started."""
        return self._bound_port

    async def start(self) -> None:
        """Bind the listening socket and start serving in the background."""
        if self.state is not ServerState.NEW:
            raise ServerStartError(f"http server already {self.state.value}")

        self._socket = bind_socket(self.config.port)
        self._bound_port = self._socket.getsockname()[1]
        config = uvicorn.Config(
            self.handler,
            host="0.0.0.0",
            port=self.port,
            lifespan="auto",
            log_config=None,
            access_log=False,
        )
        self._server = _Server(config)
        self._task = asyncio.create_task(self._serve())
        self.state = ServerState.RUNNING
        self.logger.info("Start http server", port=self.config.port)

    async def _serve(self) -> None:
        # uvicorn exits the process when lifespan startup fails
        try:
            await self._server.serve(sockets=[self._socket])
        except SystemExit as e:
            raise ServerStartError("Start HTTP server failed", {"exit_code": e.code}) from None

    async def serve_until(self, stop: asyncio.Event) -> None:
        """Suspend until `stop` is set.

        Raises ServerStartError when serving ends before that.
        """
        stop_task = asyncio.create_task(stop.wait())
        try:
            done, _ = await asyncio.wait({stop_task, self._task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not stop_task.done():
                stop_task.cancel()

        if self._task in done and not stop.is_set():
            self.state = ServerState.STOPPED
            self._close_socket()
            cause = None if self._task.cancelled() else self._task.exception()
            self.logger.error("Start HTTP server failed", error=str(cause) if cause else None)
            raise ServerStartError("http server stopped before shutdown was requested") from cause

    async def shutdown(self) -> None:
        """Stop accepting connections and drain in-flight requests.

        Raises ShutdownTimeoutError when requests are still running once the
        grace period elapses; they are abandoned.
        """
        grace = self.config.graceful_shutdown_sec
        self.state = ServerState.SHUTTING_DOWN
        self.logger.info("Http Server received a shutdown signal", graceful_shutdown_sec=grace)

        self._server.should_exit = True
        try:
            await asyncio.wait_for(self._task, timeout=grace)
        except asyncio.TimeoutError:
            self.logger.error("http server shutdown failed", graceful_shutdown_sec=grace)
            raise ShutdownTimeoutError(grace) from None
        finally:
            self.state = ServerState.STOPPED
            self._close_socket()

        self.logger.info("Http Server exited properly")

    def _close_socket(self) -> None:
        if self._socket is not None:
            self._socket.close()


async def run_http_server(stop: asyncio.Event, create_handler: HandlerFactory, *options: Option) -> None:
    """Serve the application built by `create_handler` until `stop` is set.

    Blocks the calling task for the lifetime of the server. Cancelling the
    calling task shuts the server down before the cancellation propagates.
    Options are applied in order; the first invalid one raises
    ConfigurationError before anything is bound.
    """
    server = HttpServer(create_handler, *options)
    await server.start()
    try:
        await server.serve_until(stop)
    except asyncio.CancelledError:
        await server.shutdown()
        raise
    await server.shutdown()


def serve_until_signalled(create_handler: HandlerFactory, *options: Option,
                          signals: Sequence[signal.Signals] = (signal.SIGINT, signal.SIGTERM)) -> None:
    """Run `run_http_server` on a fresh event loop, stopping on `signals`."""
    async def main() -> None:
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in signals:
            loop.add_signal_handler(sig, stop.set)
        try:
            await run_http_server(stop, create_handler, *options)
        finally:
            for sig in signals:
                loop.remove_signal_handler(sig)

    asyncio.run(main())
