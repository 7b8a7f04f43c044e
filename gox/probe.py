"""
Readiness and aliveness probe endpoints.

    app = probe.new(
        probe.with_probe(ProbeType.READINESS, check_database),
        probe.with_probe(ProbeType.ALIVENESS, lambda: None),
    )

A check takes no arguments and fails by raising; it may also be a coroutine
function. Checks run on every request, in registration order.
"""

import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Sequence, Union

import uvicorn
from fastapi import APIRouter, FastAPI
from fastapi.responses import JSONResponse

Check = Callable[[], Any]
Router = Union[FastAPI, APIRouter]

READ_HEADER_TIMEOUT = 5


class ProbeType(Enum):
    READINESS = "readiness"
    ALIVENESS = "aliveness"


@dataclass(frozen=True)
class Probe:
    probe: ProbeType
    handler: Check


def with_probe(probe_type: ProbeType, handler: Check) -> Probe:
    return Probe(probe=probe_type, handler=handler)


async def check_probes(probes: Sequence[Probe], probe_type: ProbeType) -> Optional[Exception]:
    """Run the checks of one kind and return the first failure, if any."""
    for p in probes:
        if p.probe is not probe_type:
            continue

        # Run the check and fail fast
        try:
            result = p.handler()
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            return e
    return None


def _status_endpoint(probes: Sequence[Probe], probe_type: ProbeType, ok_status: str):
    async def endpoint() -> JSONResponse:
        err = await check_probes(probes, probe_type)
        if err is not None:
            return JSONResponse(status_code=500, content={"status": str(err)})
        return JSONResponse(status_code=200, content={"status": ok_status})
    return endpoint


def new(*probes: Probe, router: Optional[Router] = None) -> Router:
    """Register /ready and /alive on `router`, or on a new FastAPI app."""
    if router is None:
        router = FastAPI()

    registered = tuple(probes)
    router.add_api_route("/ready", _status_endpoint(registered, ProbeType.READINESS, "ready"), methods=["GET"])
    router.add_api_route("/alive", _status_endpoint(registered, ProbeType.ALIVENESS, "alive"), methods=["GET"])
    return router


def run(port: str, app: FastAPI) -> None:
    """Serve `app` on `port` until the process is signalled."""
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=int(port),
        timeout_keep_alive=READ_HEADER_TIMEOUT,
        log_config=None,
    )
