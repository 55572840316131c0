"""Tests for mcplsp.diagnostics: the push-fed diagnostics cache."""
from __future__ import annotations

import asyncio

import pytest
from lsprotocol import types as lsp

from mcplsp.bus import NotificationBus
from mcplsp.diagnostics import DiagnosticsCache
from mcplsp.protocol import Notification

URI = 'file:///work/a.py'


def _diag(message: str, line: int = 0) -> lsp.Diagnostic:
    return lsp.Diagnostic(
        range=lsp.Range(start=lsp.Position(line=line, character=0),
                        end=lsp.Position(line=line, character=1)),
        message=message,
        severity=lsp.DiagnosticSeverity.Warning,
    )


def _push(uri: str, *messages: str) -> Notification:
    return Notification(method=DiagnosticsCache.METHOD, params=lsp.PublishDiagnosticsParams(
        uri=uri, diagnostics=[_diag(m, i) for i, m in enumerate(messages)]))


class TestDiagnosticsCache:
    def test_unknown_uri_is_empty_without_timestamp(self):
        entry = DiagnosticsCache().get(URI)
        assert entry.empty
        assert entry.received_at is None

    def test_latest_push_replaces_earlier(self):
        cache = DiagnosticsCache()
        cache.handle(_push(URI, 'one', 'two'))
        cache.handle(_push(URI, 'three'))
        entry = cache.get(URI)
        assert [d.message for d in entry.diagnostics] == ['three']
        assert entry.received_at is not None

    def test_empty_push_clears(self):
        cache = DiagnosticsCache()
        cache.handle(_push(URI, 'one'))
        cache.handle(_push(URI))
        entry = cache.get(URI)
        assert entry.empty
        assert entry.received_at is not None

    def test_uris_are_independent(self):
        cache = DiagnosticsCache()
        cache.handle(_push(URI, 'a'))
        cache.handle(_push('file:///work/b.py', 'b'))
        assert cache.uris() == ['file:///work/a.py', 'file:///work/b.py']
        assert [d.message for d in cache.get(URI).diagnostics] == ['a']

    def test_raw_payload_is_structured(self):
        cache = DiagnosticsCache()
        cache.handle(Notification(method=DiagnosticsCache.METHOD, params={
            'uri': URI, 'version': 4, 'diagnostics': [{
                'range': {'start': {'line': 2, 'character': 0}, 'end': {'line': 2, 'character': 3}},
                'message': 'raw'}]}))
        entry = cache.get(URI)
        assert entry.version == 4
        assert entry.diagnostics[0].message == 'raw'

    def test_malformed_payload_is_dropped(self):
        cache = DiagnosticsCache()
        assert cache.handle(Notification(method=DiagnosticsCache.METHOD, params={'bogus': 1})) is None
        assert cache.uris() == []

    def test_snapshots_are_immutable(self):
        cache = DiagnosticsCache()
        cache.handle(_push(URI, 'one'))
        before = cache.get(URI)
        cache.handle(_push(URI, 'two'))
        assert [d.message for d in before.diagnostics] == ['one']

    @pytest.mark.asyncio
    async def test_run_consumes_bus_until_closed(self):
        bus = NotificationBus()
        cache = DiagnosticsCache()
        task = asyncio.create_task(cache.run(bus.subscribe(DiagnosticsCache.METHOD)))
        bus.publish(_push(URI, 'first'))
        bus.publish(_push(URI, 'second'))
        bus.close()
        await asyncio.wait_for(task, 1.0)
        assert [d.message for d in cache.get(URI).diagnostics] == ['second']
