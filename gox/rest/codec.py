"""
JSON request and response helpers.

Every message written by these helpers uses the `Message` envelope
`{"code": ..., "message": ...}`. `read_json` turns any decoding problem into a
`RequestDecodeError` carrying a client-facing message and a 400 status.
"""

import dataclasses
import functools
import json
import types
import typing
from collections.abc import Mapping, Sequence
from typing import Annotated, Any, Dict, Optional, Union

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, TypeAdapter, ValidationError
from starlette.requests import ClientDisconnect
from starlette.responses import Response

from gox.errors import RequestDecodeError

UnionType = getattr(types, "UnionType", None)

DEFAULT_MAX_BODY_SIZE = 1 << 20

INTERNAL_SERVER_ERROR_TEXT = "Internal Server Error"

ERROR_CODES = {
    400: "ErrBadRequest",
    401: "ErrUnauthorized",
    403: "ErrForbidden",
    409: "ErrAlreadyExist",
    500: "ErrInternalServer",
}


class Message(BaseModel):
    """General model for server messages."""

    code: str
    message: str


def error_code_from_status(status_code: int) -> str:
    """Map an HTTP status to its message code."""
    return ERROR_CODES.get(status_code, "ErrInternalServer")


def write_json(status_code: int, value: Any) -> Response:
    """Serialize `value` as a JSON response with the given status.

    A value that cannot be serialized still produces a response with the
    requested status; its body is the error text.
    """
    try:
        body = json.dumps(jsonable_encoder(value), allow_nan=False) + "\n"
    except (TypeError, ValueError) as e:
        body = f"{e}\n"
    return Response(content=body, status_code=status_code, media_type="application/json")


def write_message(code: str, message: str) -> Response:
    return write_json(200, Message(code=code, message=message))


def write_error(status_code: int, message: str) -> Response:
    return write_json(status_code, Message(code=error_code_from_status(status_code), message=message))


async def default_bad_request_handler(request: Request, exc: RequestDecodeError) -> Response:
    """Exception handler answering decode failures with an error message."""
    return write_error(exc.status_code, exc.message)


@functools.lru_cache(maxsize=None)
def _adapter(target: Any) -> TypeAdapter:
    return TypeAdapter(target)


async def _read_body(request: Request, max_body_size: Optional[int]) -> bytes:
    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if max_body_size is not None and size > max_body_size:
            raise RequestDecodeError("request body too large")
        chunks.append(chunk)
    return b"".join(chunks)


def _skip_whitespace(text: str, pos: int) -> int:
    while pos < len(text) and text[pos] in " \t\n\r":
        pos += 1
    return pos


def _is_truncated(text: str, err: json.JSONDecodeError) -> bool:
    return err.pos >= len(text.rstrip()) or err.msg.startswith("Unterminated string")


def _position_of(text: str, loc: Sequence[Any], start: int) -> int:
    """Best-effort offset of the key path `loc` inside the raw body."""
    pos = start
    for part in loc:
        if not isinstance(part, str):
            continue
        found = text.find(json.dumps(part), pos)
        if found == -1:
            break
        pos = found
    return pos


def _field_types(target: Any) -> Optional[Dict[str, Any]]:
    """Accepted keys of a model or dataclass target mapped to their types.

    None when `target` takes arbitrary keys.
    """
    if isinstance(target, type) and issubclass(target, BaseModel):
        if target.model_config.get("extra") == "allow":
            return None
        fields = {}
        for name, field in target.model_fields.items():
            fields[name] = field.annotation
            for alias in (field.alias, field.validation_alias):
                if isinstance(alias, str):
                    fields[alias] = field.annotation
        return fields

    if isinstance(target, type) and dataclasses.is_dataclass(target):
        config = getattr(target, "__pydantic_config__", None) or {}
        if config.get("extra") == "allow":
            return None
        try:
            hints = typing.get_type_hints(target)
        except (NameError, TypeError):
            hints = {}
        return {f.name: hints.get(f.name, Any) for f in dataclasses.fields(target) if f.init}

    return None


def _unknown_field(target: Any, data: Any) -> Optional[str]:
    """First key in `data` that `target`, or any type nested in it, does not declare."""
    origin = typing.get_origin(target)
    args = typing.get_args(target)

    if origin is Annotated:
        return _unknown_field(args[0], data)

    if origin is Union or (UnionType is not None and origin is UnionType):
        found = [_unknown_field(arg, data) for arg in args if arg is not type(None)]
        if not found or None in found:
            return None
        return found[0]

    if isinstance(data, list) and origin in (list, tuple, set, frozenset, Sequence):
        if origin is tuple and not (len(args) == 2 and args[1] is Ellipsis):
            pairs = zip(args, data)
        else:
            pairs = ((args[0] if args else Any, item) for item in data)
        for item_type, item in pairs:
            unknown = _unknown_field(item_type, item)
            if unknown is not None:
                return unknown
        return None

    if isinstance(data, dict) and origin in (dict, Mapping):
        value_type = args[1] if len(args) == 2 else Any
        for value in data.values():
            unknown = _unknown_field(value_type, value)
            if unknown is not None:
                return unknown
        return None

    if not isinstance(data, dict):
        return None

    fields = _field_types(target)
    if fields is None:
        return None

    for key, value in data.items():
        if key not in fields:
            return key
        unknown = _unknown_field(fields[key], value)
        if unknown is not None:
            return unknown
    return None


def _classify(text: str, start: int, err: ValidationError) -> RequestDecodeError:
    first = err.errors()[0]
    loc = first.get("loc", ())
    field = ".".join(str(part) for part in loc)

    if first["type"] == "extra_forbidden":
        return RequestDecodeError(f"request body contains unknown field {json.dumps(str(loc[-1]))}")
    if first["type"] == "missing":
        return RequestDecodeError(INTERNAL_SERVER_ERROR_TEXT)
    return RequestDecodeError(
        f"request body contains an invalid value for the {json.dumps(field)} field "
        f"(at position {_position_of(text, loc, start)})"
    )


async def read_json(request: Request, target: Any, max_body_size: Optional[int] = DEFAULT_MAX_BODY_SIZE) -> Any:
    """Decode exactly one JSON value from the request body into `target`.

    `target` is anything pydantic can validate: a model class, a dataclass or
    a typing construct such as `List[int]`. Validation is strict; model and
    dataclass targets reject unknown fields at any depth. Returns the decoded value; raises
    RequestDecodeError (status 400) otherwise.
    """
    try:
        text = (await _read_body(request, max_body_size)).decode("utf-8")
    except (UnicodeDecodeError, ClientDisconnect):
        raise RequestDecodeError(INTERNAL_SERVER_ERROR_TEXT) from None

    start = _skip_whitespace(text, 0)
    if start == len(text):
        raise RequestDecodeError("request body must not be empty")

    try:
        data, end = json.JSONDecoder().raw_decode(text, start)
    except json.JSONDecodeError as e:
        if _is_truncated(text, e):
            raise RequestDecodeError("request body contains badly-formed JSON") from None
        raise RequestDecodeError(f"request body contains badly-formed JSON (at position {e.pos})") from None

    unknown = _unknown_field(target, data)
    if unknown is not None:
        raise RequestDecodeError(f"request body contains unknown field {json.dumps(unknown)}")

    try:
        value = _adapter(target).validate_json(text[start:end], strict=True)
    except ValidationError as e:
        raise _classify(text, start, e) from None
    except (TypeError, ValueError):
        raise RequestDecodeError(INTERNAL_SERVER_ERROR_TEXT) from None

    if _skip_whitespace(text, end) != len(text):
        raise RequestDecodeError("request body must only contain a single JSON object")

    return value
