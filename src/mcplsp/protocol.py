"""
JSON-RPC message model.

Traffic in both directions is one of three shapes: :class:`Request`,
:class:`Notification` or :class:`Response`.  For every method that
``lsprotocol`` knows about, params and results are structured into the typed
``lsprotocol.types`` classes; anything else (vendor extensions, methods newer
than the installed ``lsprotocol``) is carried as the raw JSON value so it can
still be routed and answered.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Union

from lsprotocol import converters
from lsprotocol import types as lsp

from mcplsp.errors import ParseError

logger = logging.getLogger(__name__)

JSONRPC_VERSION = '2.0'

# JSON-RPC / LSP error codes used by the client side.
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603
REQUEST_CANCELLED = -32800

CANCEL_REQUEST = '$/cancelRequest'

MessageId = Union[int, str]

_converter = converters.get_converter()


# ---------------------------------------------------------------------------
# Message shapes
# ---------------------------------------------------------------------------

@dataclass
class Request:
    id: MessageId
    method: str
    params: Any = None


@dataclass
class Notification:
    method: str
    params: Any = None


@dataclass
class RpcError:
    code: int
    message: str
    data: Any = None


@dataclass
class Response:
    id: MessageId | None
    result: Any = None
    error: RpcError | None = None


Message = Union[Request, Notification, Response]


# ---------------------------------------------------------------------------
# Typed payload lookup
# ---------------------------------------------------------------------------

def params_type(method: str) -> type | None:
    """Return the ``lsprotocol`` params class for *method*, or None if unknown."""
    entry = lsp.METHOD_TO_TYPES.get(method)
    return entry[2] if entry else None


def response_type(method: str) -> type | None:
    """Return the ``lsprotocol`` response class for *method*, or None."""
    entry = lsp.METHOD_TO_TYPES.get(method)
    return entry[1] if entry else None


def structure_params(method: str, raw: Any) -> Any:
    """Convert raw *params* into the typed class for *method* where possible.

    Falls back to the raw value for unknown methods, and for known methods
    whose payload does not match the schema (some analyzers send extra or
    loosely typed fields).
    """
    cls = params_type(method)
    if cls is None or raw is None:
        return raw
    try:
        return _converter.structure(raw, cls)
    except Exception:
        logger.warning('could not structure params for %s; keeping raw payload', method,
                       exc_info=logger.isEnabledFor(logging.DEBUG))
        return raw


def structure_result(method: str, raw: Any) -> Any:
    """Convert a raw response *result* for *method* into its typed form."""
    cls = response_type(method)
    if cls is None:
        return raw
    envelope = {'jsonrpc': JSONRPC_VERSION, 'id': 0, 'result': raw}
    try:
        return _converter.structure(envelope, cls).result
    except Exception as e:
        raise ParseError(f'unexpected result shape for {method}: {e}') from e


def unstructure(value: Any) -> Any:
    """Turn typed ``lsprotocol`` objects (or plain JSON values) into JSON values."""
    return _converter.unstructure(value)


# ---------------------------------------------------------------------------
# Wire encoding
# ---------------------------------------------------------------------------

def encode(message: Message) -> dict:
    """Return the JSON-RPC object for *message*."""
    if isinstance(message, Request):
        out = {'jsonrpc': JSONRPC_VERSION, 'id': message.id, 'method': message.method}
        if message.params is not None:
            out['params'] = unstructure(message.params)
        return out
    if isinstance(message, Notification):
        out = {'jsonrpc': JSONRPC_VERSION, 'method': message.method}
        if message.params is not None:
            out['params'] = unstructure(message.params)
        return out
    if isinstance(message, Response):
        out = {'jsonrpc': JSONRPC_VERSION, 'id': message.id}
        if message.error is not None:
            err = {'code': message.error.code, 'message': message.error.message}
            if message.error.data is not None:
                err['data'] = message.error.data
            out['error'] = err
        else:
            out['result'] = unstructure(message.result)
        return out
    raise TypeError(f'not a JSON-RPC message: {message!r}')


def decode(payload: Any) -> Message:
    """Classify a parsed JSON value as a Request, Notification or Response.

    Params of known notifications and requests are structured eagerly;
    response results stay raw because only the issuer knows which method
    they answer.
    """
    if not isinstance(payload, dict):
        raise ParseError(f'JSON-RPC message must be an object, got {type(payload).__name__}')

    method = payload.get('method')
    if method is not None:
        if not isinstance(method, str):
            raise ParseError(f'method must be a string, got {method!r}')
        params = structure_params(method, payload.get('params'))
        if 'id' in payload:
            return Request(id=payload['id'], method=method, params=params)
        return Notification(method=method, params=params)

    if 'id' in payload:
        raw_err = payload.get('error')
        if raw_err is not None:
            if not isinstance(raw_err, dict):
                raise ParseError(f'malformed error object: {raw_err!r}')
            try:
                code = int(raw_err.get('code', INTERNAL_ERROR))
            except (TypeError, ValueError):
                raise ParseError(f'non-numeric error code in {raw_err!r}') from None
            error = RpcError(
                code=code,
                message=str(raw_err.get('message', '')),
                data=raw_err.get('data'),
            )
            return Response(id=payload['id'], error=error)
        return Response(id=payload['id'], result=payload.get('result'))

    raise ParseError('message has neither method nor id')


def describe(message: Message) -> str:
    """One-line summary of *message* for log output."""
    if isinstance(message, Request):
        return f'request {message.method} (id={message.id})'
    if isinstance(message, Notification):
        return f'notification {message.method}'
    status = 'error' if message.error is not None else 'result'
    return f'response id={message.id} ({status})'
