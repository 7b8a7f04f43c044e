"""
Server configuration and the options that build it.

An option is a callable taking the `ServerConfig` being assembled; it mutates
the config and raises ConfigurationError when its input is invalid.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from starlette.middleware import Middleware

from gox.errors import ConfigurationError
from gox.rest.middleware import CorsOptions

DEFAULT_GRACEFUL_SHUTDOWN_SEC = 5

DEFAULT_PORT = "8080"


@dataclass
class ServerConfig:
    """Settings accumulated by options before the server starts."""

    port: str = DEFAULT_PORT
    middlewares: List[Middleware] = field(default_factory=list)

    allowed_hosts: List[str] = field(default_factory=list)

    set_cors: bool = False
    cors_options: Optional[CorsOptions] = None

    has_logger: bool = False
    logger: Any = None

    graceful_shutdown_sec: float = DEFAULT_GRACEFUL_SHUTDOWN_SEC


Option = Callable[[ServerConfig], None]


def apply_options(options: Sequence[Option]) -> ServerConfig:
    """Build a config from defaults and `options`, applied in order.

    The first ConfigurationError propagates and later options are not applied.
    """
    cfg = ServerConfig()
    for option in options:
        option(cfg)
    return cfg


def with_port(port: str) -> Option:
    def option(c: ServerConfig) -> None:
        port_str = str(port)
        if not port_str.isdigit() or not 0 <= int(port_str) <= 65535:
            raise ConfigurationError(f"invalid port: {port!r}", {"port": port})
        c.port = port_str
    return option


def with_middlewares(middlewares: Sequence[Middleware]) -> Option:
    """Replace the default middleware chain entirely."""
    def option(c: ServerConfig) -> None:
        for m in middlewares:
            if not isinstance(m, Middleware):
                raise ConfigurationError(f"not a middleware entry: {m!r}")
        c.middlewares = list(middlewares)
    return option


def with_allowed_hosts(allowed_hosts: Sequence[str]) -> Option:
    def option(c: ServerConfig) -> None:
        c.allowed_hosts = list(allowed_hosts)
    return option


def with_cors_options(cors_options: CorsOptions) -> Option:
    def option(c: ServerConfig) -> None:
        if not isinstance(cors_options, CorsOptions):
            raise ConfigurationError(f"not a CorsOptions value: {cors_options!r}")
        c.cors_options = cors_options
        c.set_cors = True
    return option


def with_logger(logger: Any) -> Option:
    """Use `logger` for lifecycle events and request logging."""
    def option(c: ServerConfig) -> None:
        if logger is None:
            raise ConfigurationError("logger must not be None")
        c.logger = logger
        c.has_logger = True
    return option


def with_graceful_shutdown(seconds: float) -> Option:
    def option(c: ServerConfig) -> None:
        if seconds <= 0:
            raise ConfigurationError(f"graceful shutdown must be positive, got {seconds}")
        c.graceful_shutdown_sec = seconds
    return option
