"""
Content-Length framed JSON-RPC over a byte stream.

The transport knows nothing about processes: it wraps any
``asyncio.StreamReader`` plus a writer exposing ``write()`` / ``drain()``
(an ``asyncio.StreamWriter`` in production, an in-memory pipe in tests).

Framing follows the LSP base protocol::

    Content-Length: <n>\\r\\n
    [other headers]\\r\\n
    \\r\\n
    <n bytes of UTF-8 JSON>
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator

from mcplsp.errors import ParseError, TransportClosed
from mcplsp.protocol import Message, decode, describe, encode

logger = logging.getLogger(__name__)

_HEADER_LIMIT = 8192


class Transport:
    """Frame and unframe JSON-RPC messages on one reader/writer pair."""

    def __init__(self, reader: asyncio.StreamReader, writer, *, max_parse_failures: int = 3):
        self._reader = reader
        self._writer = writer
        self._write_lock = asyncio.Lock()
        self._max_parse_failures = max_parse_failures
        self._parse_failures = 0
        self._closed = False
        self._pushback: bytes | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Outgoing
    # ------------------------------------------------------------------

    async def send(self, message: Message) -> None:
        """Serialize *message* and write it as a single frame."""
        if self._closed:
            raise TransportClosed('transport is closed')
        body = json.dumps(encode(message), separators=(',', ':')).encode('utf-8')
        frame = b'Content-Length: %d\r\n\r\n' % len(body) + body
        logger.debug('-> %s', describe(message))
        logger.debug('-> %s', body.decode('utf-8', errors='replace'))
        async with self._write_lock:
            try:
                self._writer.write(frame)
                await self._writer.drain()
            except (ConnectionError, RuntimeError) as e:
                self._closed = True
                raise TransportClosed(f'write failed: {e}') from e

    # ------------------------------------------------------------------
    # Incoming
    # ------------------------------------------------------------------

    async def receive(self) -> AsyncIterator[Message]:
        """Yield decoded messages until the stream ends.

        Raises :class:`TransportClosed` at EOF or once too many consecutive
        frames failed to parse.  A single bad frame is logged and skipped.
        """
        while True:
            try:
                message = await self._read_frame()
            except ParseError as e:
                self._parse_failures += 1
                logger.warning('dropping malformed frame (%d/%d): %s',
                               self._parse_failures, self._max_parse_failures, e)
                if self._parse_failures >= self._max_parse_failures:
                    self._closed = True
                    raise TransportClosed(
                        f'{self._parse_failures} consecutive malformed frames') from e
                continue
            self._parse_failures = 0
            logger.debug('<- %s', describe(message))
            yield message

    async def _read_frame(self) -> Message:
        try:
            length = await self._read_length()
        except ParseError:
            await self._resync()
            raise

        try:
            body = await self._reader.readexactly(length)
        except asyncio.IncompleteReadError as e:
            self._closed = True
            raise TransportClosed('stream ended inside a message body') from e

        logger.debug('<- %s', body.decode('utf-8', errors='replace'))
        try:
            payload = json.loads(body.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ParseError(f'invalid JSON body: {e}') from e
        return decode(payload)

    async def _read_length(self) -> int:
        headers = await self._read_headers()
        raw_length = headers.get('content-length')
        if raw_length is None:
            raise ParseError(f'missing Content-Length header in {headers!r}')
        try:
            length = int(raw_length)
        except ValueError:
            raise ParseError(f'invalid Content-Length {raw_length!r}') from None
        if length < 0:
            raise ParseError(f'invalid Content-Length {raw_length!r}')
        return length

    async def _next_line(self) -> bytes:
        if self._pushback is not None:
            line, self._pushback = self._pushback, None
            return line
        try:
            return await self._reader.readline()
        except ValueError as e:
            raise ParseError(f'header line too long: {e}') from None

    async def _read_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        size = 0
        while True:
            line = await self._next_line()
            if not line:
                self._closed = True
                raise TransportClosed('stream ended')
            size += len(line)
            if size > _HEADER_LIMIT:
                raise ParseError('header block too large')
            text = line.decode('ascii', errors='replace').strip()
            if not text:
                if headers:
                    return headers
                # Tolerate stray blank lines between frames.
                continue
            name, sep, value = text.partition(':')
            if not sep:
                raise ParseError(f'malformed header line {text!r}')
            headers[name.strip().lower()] = value.strip()

    async def _resync(self) -> None:
        """Discard input up to the next ``Content-Length`` header.

        Whatever followed the bad header block (usually its body) is
        skipped without being parsed, so it never counts as another
        malformed frame.  A body without a trailing newline shares its
        line with the next frame's header; the header part is kept.
        """
        skipped = 0
        while True:
            try:
                line = await self._reader.readline()
            except ValueError:
                # Over the stream limit; the oversized chunk is already gone.
                continue
            if not line:
                break
            index = line.lower().find(b'content-length:')
            if index >= 0:
                self._pushback = line[index:]
                skipped += index
                break
            skipped += len(line)
        logger.debug('skipped %d byte(s) to resynchronize', skipped)

    async def close(self) -> None:
        """Close the writing side; the reader drains to EOF on its own."""
        if self._closed:
            return
        self._closed = True
        close = getattr(self._writer, 'close', None)
        if close is None:
            return
        try:
            close()
            wait_closed = getattr(self._writer, 'wait_closed', None)
            if wait_closed is not None:
                await wait_closed()
        except (ConnectionError, RuntimeError) as e:
            logger.debug('error closing transport writer: %s', e)
