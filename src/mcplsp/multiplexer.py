"""
Request/response correlation over one :class:`~mcplsp.transport.Transport`.

Outgoing requests get a fresh integer id and a future in the pending table.
A single read-loop task routes every incoming frame: responses resolve the
matching future, server-to-client requests are answered by registered
handlers, and notifications are published on the
:class:`~mcplsp.bus.NotificationBus`.

Each pending entry leaves the table exactly once: on its response, on its
timeout, or when the connection closes (then it fails with
:class:`~mcplsp.errors.ConnectionClosed`).
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from mcplsp.bus import NotificationBus
from mcplsp.errors import ConnectionClosed, RequestTimeout, ResponseError, TransportClosed
from mcplsp.protocol import (
    CANCEL_REQUEST,
    INTERNAL_ERROR,
    METHOD_NOT_FOUND,
    MessageId,
    Notification,
    Request,
    Response,
    RpcError,
)
from mcplsp.transport import Transport

logger = logging.getLogger(__name__)

RequestHandler = Callable[[Any], Any]


@dataclass
class PendingRequest:
    id: MessageId
    method: str
    sent_at: float
    future: asyncio.Future = field(repr=False)


class RequestMultiplexer:
    def __init__(self, transport: Transport, bus: NotificationBus, *, default_timeout: float = 30.0):
        self._transport = transport
        self._bus = bus
        self._default_timeout = default_timeout
        self._pending: dict[MessageId, PendingRequest] = {}
        self._next_id = 0
        self._handlers: dict[str, RequestHandler] = {}
        self._read_task: asyncio.Task | None = None
        self._done = asyncio.Event()
        self._close_reason: BaseException | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._read_task is None:
            self._read_task = asyncio.create_task(self._read_loop(), name='mcplsp-read-loop')

    @property
    def closed(self) -> bool:
        return self._done.is_set()

    @property
    def close_reason(self) -> BaseException | None:
        return self._close_reason

    def pending(self) -> list[PendingRequest]:
        """Snapshot of in-flight requests, oldest first."""
        return sorted(self._pending.values(), key=lambda p: p.sent_at)

    async def wait_closed(self) -> BaseException | None:
        """Wait for the read loop to end; return why it ended."""
        await self._done.wait()
        return self._close_reason

    async def close(self, reason: str = 'connection closed by client') -> None:
        """Stop reading and fail every pending request with ``ConnectionClosed``."""
        self._finish(ConnectionClosed(reason))
        task, self._read_task = self._read_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._transport.close()

    def _finish(self, reason: BaseException) -> None:
        if self._done.is_set():
            return
        self._close_reason = reason
        self._done.set()
        self._fail_pending(str(reason))
        self._bus.close()

    def _fail_pending(self, reason: str) -> None:
        while self._pending:
            request_id, pending = self._pending.popitem()
            if not pending.future.done():
                pending.future.set_exception(
                    ConnectionClosed(f'{pending.method} (id={request_id}) abandoned: {reason}'))

    # ------------------------------------------------------------------
    # Outgoing
    # ------------------------------------------------------------------

    def on_request(self, method: str, handler: RequestHandler) -> None:
        """Answer server-to-client *method* requests with *handler(params)*."""
        self._handlers[method] = handler

    async def request(self, method: str, params: Any = None, *, timeout: float | None = None) -> Any:
        """Send a request and wait for its raw result.

        Raises :class:`RequestTimeout` when no answer arrives in time,
        :class:`ResponseError` for an error response and
        :class:`ConnectionClosed` if the connection goes away first.
        """
        if self.closed:
            raise ConnectionClosed(f'cannot send {method}: {self._close_reason}')
        self._next_id += 1
        request_id = self._next_id
        loop = asyncio.get_running_loop()
        pending = PendingRequest(id=request_id, method=method, sent_at=loop.time(),
                                 future=loop.create_future())
        self._pending[request_id] = pending

        try:
            await self._transport.send(Request(id=request_id, method=method, params=params))
        except TransportClosed as e:
            self._pending.pop(request_id, None)
            raise ConnectionClosed(f'cannot send {method}: {e}') from e

        limit = self._default_timeout if timeout is None else timeout
        try:
            done, _ = await asyncio.wait({pending.future}, timeout=limit)
        except asyncio.CancelledError:
            if self._pending.pop(request_id, None) is not None:
                await self._send_cancel(request_id)
            raise

        if not done:
            if self._pending.pop(request_id, None) is not None:
                logger.warning('%s (id=%s) timed out after %gs', method, request_id, limit)
                await self._send_cancel(request_id)
                raise RequestTimeout(method, limit)
        return pending.future.result()

    async def notify(self, method: str, params: Any = None) -> None:
        if self.closed:
            raise ConnectionClosed(f'cannot send {method}: {self._close_reason}')
        try:
            await self._transport.send(Notification(method=method, params=params))
        except TransportClosed as e:
            raise ConnectionClosed(f'cannot send {method}: {e}') from e

    async def _send_cancel(self, request_id: MessageId) -> None:
        # Best effort: the analyzer may already be gone.
        try:
            await self._transport.send(Notification(method=CANCEL_REQUEST, params={'id': request_id}))
        except TransportClosed:
            logger.debug('could not send cancel for id=%s', request_id)

    # ------------------------------------------------------------------
    # Incoming
    # ------------------------------------------------------------------

    async def _read_loop(self) -> None:
        reason: BaseException = ConnectionClosed('read loop stopped')
        try:
            async for message in self._transport.receive():
                if isinstance(message, Response):
                    self._resolve(message)
                elif isinstance(message, Request):
                    await self._answer(message)
                else:
                    self._bus.publish(message)
        except TransportClosed as e:
            logger.info('analyzer connection closed: %s', e)
            reason = e
        except Exception as e:
            logger.exception('read loop crashed')
            reason = TransportClosed(f'read loop crashed: {e}')
        finally:
            self._finish(reason)

    def _resolve(self, response: Response) -> None:
        pending = self._pending.pop(response.id, None)
        if pending is None and isinstance(response.id, str) and response.id.isdigit():
            pending = self._pending.pop(int(response.id), None)
        if pending is None:
            logger.debug('response for unknown or expired id=%s', response.id)
            return
        if pending.future.done():
            return
        if response.error is not None:
            pending.future.set_exception(
                ResponseError(response.error.code, response.error.message, response.error.data))
        else:
            pending.future.set_result(response.result)

    async def _answer(self, request: Request) -> None:
        handler = self._handlers.get(request.method)
        if handler is None:
            logger.debug('no handler for server request %s', request.method)
            reply = Response(id=request.id, error=RpcError(
                code=METHOD_NOT_FOUND, message=f'method not supported: {request.method}'))
        else:
            try:
                result = handler(request.params)
                if inspect.isawaitable(result):
                    result = await result
                reply = Response(id=request.id, result=result)
            except Exception as e:
                logger.exception('handler for %s failed', request.method)
                reply = Response(id=request.id, error=RpcError(code=INTERNAL_ERROR, message=str(e)))
        try:
            await self._transport.send(reply)
        except TransportClosed:
            logger.debug('could not answer %s: transport closed', request.method)
