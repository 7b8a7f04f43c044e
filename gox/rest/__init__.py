"""
HTTP server scaffolding: lifecycle, default middleware and JSON helpers.
"""

from gox.rest.codec import (
    DEFAULT_MAX_BODY_SIZE,
    Message,
    default_bad_request_handler,
    error_code_from_status,
    read_json,
    write_error,
    write_json,
    write_message,
)
from gox.rest.middleware import (
    CorsOptions,
    RequestLoggerMiddleware,
    default_cors_options,
    default_middlewares,
)
from gox.rest.options import (
    DEFAULT_GRACEFUL_SHUTDOWN_SEC,
    DEFAULT_PORT,
    ServerConfig,
    with_allowed_hosts,
    with_cors_options,
    with_graceful_shutdown,
    with_logger,
    with_middlewares,
    with_port,
)
from gox.rest.server import HttpServer, ServerState, run_http_server, serve_until_signalled

__all__ = [
    "DEFAULT_GRACEFUL_SHUTDOWN_SEC",
    "DEFAULT_MAX_BODY_SIZE",
    "DEFAULT_PORT",
    "CorsOptions",
    "HttpServer",
    "Message",
    "RequestLoggerMiddleware",
    "ServerConfig",
    "ServerState",
    "default_bad_request_handler",
    "default_cors_options",
    "default_middlewares",
    "error_code_from_status",
    "read_json",
    "run_http_server",
    "serve_until_signalled",
    "with_allowed_hosts",
    "with_cors_options",
    "with_graceful_shutdown",
    "with_logger",
    "with_middlewares",
    "with_port",
    "write_error",
    "write_json",
    "write_message",
]
