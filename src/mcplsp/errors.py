"""
Error kinds surfaced by the bridge.

Every tool operation either returns a result or raises exactly one of the
exceptions below, so the caller can tell a retryable failure (``RequestTimeout``)
from a fatal one (``TransportClosed``) or a caller mistake (``InvalidState``).
A query that simply has no answer is *not* an error; see
:class:`mcplsp.tools.NotFound`.
"""
from __future__ import annotations


class BridgeError(Exception):
    """Base class for every error raised by mcplsp."""


class TransportClosed(BridgeError):
    """The analyzer's stream is gone; the owning session is unusable."""


class ConnectionClosed(TransportClosed):
    """A pending request was abandoned because the connection shut down."""


class RequestTimeout(BridgeError, TimeoutError):
    """A single request exceeded its deadline. The session is still usable."""

    def __init__(self, method: str, timeout: float):
        super().__init__(f'{method} timed out after {timeout:g}s')
        self.method = method
        self.timeout = timeout


class InvalidState(BridgeError):
    """An operation was attempted while the session is not ``Ready``."""


class ParseError(BridgeError):
    """A wire frame could not be decoded."""


class ResponseError(BridgeError):
    """The analyzer answered a request with a JSON-RPC error object."""

    def __init__(self, code: int, message: str, data=None):
        super().__init__(f'{message} (code {code})')
        self.code = code
        self.message = message
        self.data = data


class AnalyzerStartError(BridgeError):
    """The analyzer process could not be launched."""


class ConflictDetected(BridgeError):
    """A file changed on disk after the edit plan was computed."""

    def __init__(self, message: str, uris: list[str] | None = None):
        super().__init__(message)
        self.uris = list(uris or [])


class ConflictingEdits(BridgeError):
    """Two edits in one request touch overlapping line ranges."""


class UnsupportedEdit(BridgeError):
    """A workspace edit carries resource operations (create/rename/delete)."""


class InvalidEdit(BridgeError, ValueError):
    """A line edit addresses lines outside the document or an inverted range."""
