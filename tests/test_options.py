"""
Tests for server options and application assembly.
"""

from unittest.mock import MagicMock

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware
from structlog.testing import capture_logs

from gox.errors import ConfigurationError
from gox.rest.codec import read_json
from gox.rest.middleware import (
    CorsOptions,
    RequestLoggerMiddleware,
    SetHeaderMiddleware,
    TimeoutMiddleware,
)
from gox.rest.options import (
    DEFAULT_GRACEFUL_SHUTDOWN_SEC,
    DEFAULT_PORT,
    apply_options,
    with_allowed_hosts,
    with_cors_options,
    with_graceful_shutdown,
    with_logger,
    with_middlewares,
    with_port,
)
from gox.rest.server import HttpServer, ServerState, build_app


def middleware_classes(app):
    return [m.cls for m in app.user_middleware]


def test_defaults():
    cfg = apply_options([])
    assert cfg.port == DEFAULT_PORT == "8080"
    assert cfg.middlewares == []
    assert cfg.allowed_hosts == []
    assert cfg.set_cors is False
    assert cfg.has_logger is False
    assert cfg.graceful_shutdown_sec == DEFAULT_GRACEFUL_SHUTDOWN_SEC == 5


def test_options_applied_in_order():
    cfg = apply_options([with_port("9090"), with_port("9091")])
    assert cfg.port == "9091"


@pytest.mark.parametrize("port", ["abc", "-1", "70000", ""])
def test_invalid_port(port):
    with pytest.raises(ConfigurationError):
        apply_options([with_port(port)])


def test_first_failing_option_stops_application():
    later = MagicMock()
    with pytest.raises(ConfigurationError):
        apply_options([with_port("9090"), with_port("nope"), later])
    later.assert_not_called()


def test_with_middlewares_rejects_plain_callables():
    with pytest.raises(ConfigurationError):
        apply_options([with_middlewares([lambda app: app])])


def test_with_logger_sets_presence_flag():
    logger = MagicMock()
    cfg = apply_options([with_logger(logger)])
    assert cfg.has_logger is True
    assert cfg.logger is logger


def test_with_logger_rejects_none():
    with pytest.raises(ConfigurationError):
        apply_options([with_logger(None)])


def test_with_graceful_shutdown():
    assert apply_options([with_graceful_shutdown(1.5)]).graceful_shutdown_sec == 1.5
    with pytest.raises(ConfigurationError):
        apply_options([with_graceful_shutdown(0)])


def test_with_cors_options_rejects_other_types():
    with pytest.raises(ConfigurationError):
        apply_options([with_cors_options({"allowed_origins": ["*"]})])


def test_default_chain_attached():
    app = build_app(apply_options([]))
    classes = middleware_classes(app)
    assert classes[0] is TimeoutMiddleware
    assert CORSMiddleware in classes
    assert RequestLoggerMiddleware not in classes


def test_custom_middlewares_replace_defaults():
    custom = Middleware(SetHeaderMiddleware, name="X-Service", value="orders")
    app = build_app(apply_options([with_middlewares([custom])]))

    @app.get("/ok")
    async def ok():
        return {"status": "ok"}

    response = TestClient(app).get("/ok")

    assert response.headers["x-service"] == "orders"
    assert "x-frame-options" not in response.headers
    assert TimeoutMiddleware not in middleware_classes(app)


def test_explicit_cors_policy_replaces_default():
    policy = CorsOptions(allowed_origins=["https://only.example"], allowed_methods=["GET"])
    app = build_app(apply_options([with_cors_options(policy)]))

    cors = [m for m in app.user_middleware if m.cls is CORSMiddleware]
    assert len(cors) == 1

    @app.get("/ok")
    async def ok():
        return {"status": "ok"}

    response = TestClient(app).get("/ok", headers={"Origin": "https://only.example"})
    assert response.headers["access-control-allow-origin"] == "https://only.example"


def test_allowed_hosts():
    app = build_app(apply_options([with_allowed_hosts(["api.example.com"])]))
    assert TrustedHostMiddleware in middleware_classes(app)

    @app.get("/ok")
    async def ok():
        return {"status": "ok"}

    client = TestClient(app)
    assert client.get("/ok").status_code == 400
    assert client.get("/ok", headers={"Host": "api.example.com"}).status_code == 200


def test_logger_attaches_request_logging():
    logger = MagicMock()
    app = build_app(apply_options([with_logger(logger)]))
    assert middleware_classes(app)[-1] is RequestLoggerMiddleware


def test_decode_errors_answered_with_message():
    app = build_app(apply_options([]))

    @app.post("/items")
    async def create(request: Request):
        return await read_json(request, dict)

    response = TestClient(app).post("/items", content=b"")

    assert response.status_code == 400
    assert response.json() == {"code": "ErrBadRequest", "message": "request body must not be empty"}


def test_server_without_logger_warns():
    with capture_logs() as logs:
        server = HttpServer(lambda app: app)

    assert server.state is ServerState.NEW
    assert any(e["event"] == "no logger is set" and e["log_level"] == "warning" for e in logs)


def test_server_calls_handler_factory_with_app():
    factory = MagicMock(side_effect=lambda app: app)
    server = HttpServer(factory, with_port("9090"))

    factory.assert_called_once_with(server.app)
    assert server.handler is server.app


def test_server_invalid_option_skips_handler_factory():
    factory = MagicMock()
    with pytest.raises(ConfigurationError):
        HttpServer(factory, with_port("not-a-port"))
    factory.assert_not_called()
