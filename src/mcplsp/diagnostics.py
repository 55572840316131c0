"""
Latest-known diagnostics per document.

The cache is fed only by ``textDocument/publishDiagnostics`` pushes taken
from the notification bus.  Every push replaces the uri's entry wholesale;
readers get immutable :class:`DiagnosticSet` snapshots and never wait for a
fresh push.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from lsprotocol import types as lsp

from mcplsp.bus import Subscription
from mcplsp.document import normalize_uri
from mcplsp.protocol import Notification, structure_params

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiagnosticSet:
    uri: str
    diagnostics: tuple[lsp.Diagnostic, ...] = ()
    # None until the analyzer has pushed anything for this uri.
    received_at: float | None = None
    version: int | None = None

    def __len__(self) -> int:
        return len(self.diagnostics)

    @property
    def empty(self) -> bool:
        return not self.diagnostics


class DiagnosticsCache:
    METHOD = 'textDocument/publishDiagnostics'

    def __init__(self):
        self._sets: dict[str, DiagnosticSet] = {}

    def get(self, uri: str) -> DiagnosticSet:
        uri = normalize_uri(uri)
        return self._sets.get(uri) or DiagnosticSet(uri=uri)

    def uris(self) -> list[str]:
        return sorted(self._sets)

    def update(self, params: lsp.PublishDiagnosticsParams) -> DiagnosticSet:
        uri = normalize_uri(params.uri)
        entry = DiagnosticSet(uri=uri, diagnostics=tuple(params.diagnostics),
                              received_at=time.time(), version=params.version)
        self._sets[uri] = entry
        logger.debug('%d diagnostic(s) for %s', len(entry), uri)
        return entry

    def handle(self, notification: Notification) -> DiagnosticSet | None:
        params = notification.params
        if not isinstance(params, lsp.PublishDiagnosticsParams):
            params = structure_params(self.METHOD, params)
        if not isinstance(params, lsp.PublishDiagnosticsParams):
            logger.warning('dropping malformed %s payload', self.METHOD)
            return None
        return self.update(params)

    async def run(self, subscription: Subscription) -> None:
        """Consume pushes from *subscription* until the bus closes."""
        async for notification in subscription:
            self.handle(notification)
        logger.debug('diagnostics subscription ended')
