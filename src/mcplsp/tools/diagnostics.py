"""Diagnostics lookup: cached pushes first, a pull request as fallback."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from lsprotocol import types as lsp

from mcplsp.diagnostics import DiagnosticsCache
from mcplsp.document import normalize_uri
from mcplsp.session import Session
from mcplsp.tools.common import identifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiagnosticsReport:
    uri: str
    diagnostics: tuple[lsp.Diagnostic, ...] = ()
    # True when the analyzer has not reported anything for this document yet.
    no_data_yet: bool = False
    source: str = 'push'


async def _wait_for_push(session: Session, uri: str, subscription, timeout: float):
    try:
        async with asyncio.timeout(timeout):
            async for note in subscription:
                params = note.params
                if isinstance(params, lsp.PublishDiagnosticsParams) and normalize_uri(params.uri) == uri:
                    return params
    except TimeoutError:
        logger.debug('no diagnostics pushed for %s within %gs', uri, timeout)
    return None


async def diagnostics(session: Session, uri: str, *, wait: float = 0.0,
                      pull: bool = True) -> DiagnosticsReport:
    """Diagnostics for *uri*, opening it on the analyzer if needed.

    With *wait* > 0 and nothing cached, waits at most that long for the
    analyzer's first push.  Never blocks longer than that.
    """
    uri = normalize_uri(uri)
    subscription = session.bus.subscribe(DiagnosticsCache.METHOD)
    try:
        await session.ensure_open(uri)
        cached = session.diagnostics.get(uri)
        if cached.received_at is not None:
            return DiagnosticsReport(uri, cached.diagnostics)

        if pull and session.supports('diagnostic_provider'):
            report = await session.request(lsp.TEXT_DOCUMENT_DIAGNOSTIC, lsp.DocumentDiagnosticParams(
                text_document=identifier(uri)))
            items = getattr(report, 'items', None)
            if items is not None:
                return DiagnosticsReport(uri, tuple(items), source='pull')

        if wait > 0:
            pushed = await _wait_for_push(session, uri, subscription, wait)
            if pushed is not None:
                return DiagnosticsReport(uri, tuple(pushed.diagnostics))
    finally:
        subscription.close()
    return DiagnosticsReport(uri, no_data_yet=True)
