"""Shared helpers: in-memory pipes and the fake analyzer configuration."""
from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import pytest

from mcplsp.config import BridgeConfig, load_config
from mcplsp.transport import Transport

FAKE_ANALYZER = Path(__file__).with_name('fake_analyzer.py')


class PipeWriter:
    """Writer half of an in-memory pipe; whatever is written shows up on *reader*."""

    def __init__(self, reader: asyncio.StreamReader):
        self.reader = reader
        self.closed = False

    def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError('pipe closed')
        self.reader.feed_data(data)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.reader.feed_eof()

    async def wait_closed(self) -> None:
        pass


def frame(payload) -> bytes:
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode('utf-8')
    return b'Content-Length: %d\r\n\r\n' % len(body) + body


class Peer:
    """The analyzer end of an in-memory connection, scripted by a test.

    Must be created inside a running event loop.
    """

    def __init__(self, max_parse_failures: int = 3):
        client_in = asyncio.StreamReader()
        self.incoming = asyncio.StreamReader()
        self.to_client = PipeWriter(client_in)
        self.transport = Transport(client_in, PipeWriter(self.incoming),
                                   max_parse_failures=max_parse_failures)

    def send(self, payload) -> None:
        self.to_client.write(frame(payload))

    def send_raw(self, data: bytes) -> None:
        self.to_client.write(data)

    async def read(self, timeout: float = 2.0) -> dict:
        """Next message the client wrote."""
        async def _read():
            length = None
            while True:
                line = (await self.incoming.readline()).decode('ascii').strip()
                if not line and length is not None:
                    break
                if line.lower().startswith('content-length:'):
                    length = int(line.split(':', 1)[1])
            return json.loads(await self.incoming.readexactly(length))
        return await asyncio.wait_for(_read(), timeout)

    def hang_up(self) -> None:
        self.to_client.close()


def analyzer_config(workspace: Path, **options) -> BridgeConfig:
    """Configuration that launches ``fake_analyzer.py`` in *workspace*."""
    return load_config(
        workspace,
        command=sys.executable,
        args=['-u', str(FAKE_ANALYZER)],
        request_timeout=5.0,
        shutdown_grace=2.0,
        debounce=0.05,
        initialization_options=options or None,
    )


@pytest.fixture
def workspace(tmp_path):
    root = tmp_path / 'ws'
    root.mkdir()
    return root.resolve()
