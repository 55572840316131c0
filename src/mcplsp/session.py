"""
LSP session lifecycle.

A :class:`Session` drives one analyzer connection through::

    Uninitialized -> Initializing -> Ready -> ShuttingDown -> Exited
                          |            |
                          +-> Failed <-+   (error, timeout or process exit)

Feature requests and document sync are accepted only while ``Ready``.
``Failed`` and ``Exited`` are terminal; recovering means building a new
Session around a new process.

The Session also owns the document table.  Every open/change/close goes
through a single sync task, so notifications for a uri reach the analyzer
in order and its version numbers only ever grow, across re-opens too.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import os
from dataclasses import dataclass
from typing import Any

from lsprotocol import types as lsp

from mcplsp import __version__
from mcplsp.bus import NotificationBus, Subscription
from mcplsp.config import BridgeConfig
from mcplsp.diagnostics import DiagnosticsCache
from mcplsp.document import (
    Document,
    OpenState,
    detect_language_id,
    normalize_uri,
    read_text,
    to_path,
    to_uri,
)
from mcplsp.errors import BridgeError, ConnectionClosed, InvalidState
from mcplsp.multiplexer import RequestMultiplexer
from mcplsp.protocol import structure_result
from mcplsp.supervisor import ProcessSupervisor
from mcplsp.transport import Transport

logger = logging.getLogger(__name__)


class SessionState(enum.Enum):
    UNINITIALIZED = 'uninitialized'
    INITIALIZING = 'initializing'
    READY = 'ready'
    SHUTTING_DOWN = 'shutting-down'
    EXITED = 'exited'
    FAILED = 'failed'

    @property
    def terminal(self) -> bool:
        return self in (SessionState.EXITED, SessionState.FAILED)


class DocumentEventKind(enum.Enum):
    OPEN = 'open'
    CHANGE = 'change'
    CLOSE = 'close'


@dataclass(frozen=True)
class DocumentEvent:
    """A request to bring the analyzer's view of *uri* in line with disk."""
    kind: DocumentEventKind
    uri: str


# ---------------------------------------------------------------------------
# Client side of the initialize handshake
# ---------------------------------------------------------------------------

def client_capabilities() -> lsp.ClientCapabilities:
    return lsp.ClientCapabilities(
        workspace=lsp.WorkspaceClientCapabilities(
            apply_edit=False,
            workspace_edit=lsp.WorkspaceEditClientCapabilities(document_changes=True),
            configuration=True,
            workspace_folders=True,
        ),
        text_document=lsp.TextDocumentClientCapabilities(
            synchronization=lsp.TextDocumentSyncClientCapabilities(did_save=True),
            hover=lsp.HoverClientCapabilities(
                content_format=[lsp.MarkupKind.Markdown, lsp.MarkupKind.PlainText]),
            definition=lsp.DefinitionClientCapabilities(link_support=True),
            references=lsp.ReferenceClientCapabilities(),
            rename=lsp.RenameClientCapabilities(prepare_support=False),
            publish_diagnostics=lsp.PublishDiagnosticsClientCapabilities(
                related_information=True, version_support=True),
            diagnostic=lsp.DiagnosticClientCapabilities(related_document_support=False),
        ),
        window=lsp.WindowClientCapabilities(work_done_progress=True),
    )


def _configuration_items(params: Any) -> int:
    if isinstance(params, lsp.ConfigurationParams):
        return len(params.items)
    if isinstance(params, dict):
        return len(params.get('items') or [])
    return 0


_LOG_LEVELS = {
    lsp.MessageType.Error: logging.ERROR,
    lsp.MessageType.Warning: logging.WARNING,
    lsp.MessageType.Info: logging.INFO,
    lsp.MessageType.Log: logging.DEBUG,
}


class Session:
    """One LSP conversation with one analyzer process."""

    def __init__(self, config: BridgeConfig, *, supervisor: ProcessSupervisor | None = None,
                 bus: NotificationBus | None = None,
                 diagnostics: DiagnosticsCache | None = None):
        self.config = config
        self.bus = bus or NotificationBus()
        self.diagnostics = diagnostics or DiagnosticsCache()
        self.server_capabilities: lsp.ServerCapabilities | None = None
        self.server_info: lsp.ServerInfo | None = None
        self._supervisor = supervisor
        self._multiplexer: RequestMultiplexer | None = None
        self._state = SessionState.UNINITIALIZED
        self._failure: BaseException | None = None
        self._terminated = asyncio.Event()

        self._documents: dict[str, Document] = {}
        # Highest version ever sent per uri; survives close so re-opens keep counting up.
        self._versions: dict[str, int] = {}
        self._sync_queue: asyncio.Queue = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._monitor_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def failure(self) -> BaseException | None:
        """Why the session failed, if it did."""
        return self._failure

    def _transition(self, new: SessionState) -> None:
        if self._state.terminal:
            return
        logger.info('session %s -> %s', self._state.value, new.value)
        self._state = new
        if new.terminal:
            self._terminated.set()

    def _fail(self, reason: BaseException) -> None:
        if self._state.terminal:
            return
        logger.error('session failed: %s', reason)
        self._failure = reason
        self._transition(SessionState.FAILED)

    def _require_ready(self, operation: str) -> None:
        if (self._state is SessionState.READY and self._monitor_task is not None
                and self._multiplexer.closed):
            # The connection dropped but the monitor has not run yet.
            reason = self._multiplexer.close_reason
            self._fail(reason or ConnectionClosed('connection to the analyzer closed'))
        if self._state is not SessionState.READY:
            raise InvalidState(f'{operation} requires a ready session (state is {self._state.value})')

    async def wait_terminated(self) -> SessionState:
        """Wait until the session reaches ``Exited`` or ``Failed``."""
        await self._terminated.wait()
        return self._state

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def start(self) -> 'Session':
        """Spawn the configured analyzer and run the initialize handshake."""
        if self._state is not SessionState.UNINITIALIZED:
            raise InvalidState(f'cannot start a session in state {self._state.value}')
        if self._supervisor is None:
            self._supervisor = ProcessSupervisor(max_parse_failures=self.config.max_parse_failures)
        transport = await self._supervisor.start(self.config.command, self.config.args,
                                                 working_dir=self.config.workspace,
                                                 env=self.config.env)
        await self.connect(transport)
        return self

    async def connect(self, transport: Transport) -> None:
        """Run the session over an already established *transport*."""
        self._multiplexer = RequestMultiplexer(transport, self.bus,
                                               default_timeout=self.config.request_timeout)
        self._register_handlers(self._multiplexer)
        self._tasks = [
            asyncio.create_task(self.diagnostics.run(
                self.bus.subscribe(DiagnosticsCache.METHOD)), name='mcplsp-diagnostics'),
            asyncio.create_task(self._log_messages(
                self.bus.subscribe('window/logMessage', 'window/showMessage')), name='mcplsp-log'),
            asyncio.create_task(self._sync_loop(), name='mcplsp-sync'),
        ]
        self._multiplexer.start()
        self._monitor_task = asyncio.create_task(self._monitor(), name='mcplsp-monitor')
        try:
            await self.initialize()
        except BaseException:
            await self.close()
            raise

    async def initialize(self) -> lsp.InitializeResult:
        if self._state is not SessionState.UNINITIALIZED:
            raise InvalidState(f'initialize sent twice (state is {self._state.value})')
        self._transition(SessionState.INITIALIZING)
        workspace = self.config.workspace
        params = lsp.InitializeParams(
            process_id=os.getpid(),
            client_info=lsp.ClientInfo(name='mcplsp', version=__version__),
            root_path=str(workspace),
            root_uri=to_uri(workspace),
            workspace_folders=[lsp.WorkspaceFolder(uri=to_uri(root), name=root.name)
                               for root in self.config.watch_roots],
            capabilities=client_capabilities(),
            initialization_options=self.config.initialization_options,
        )
        try:
            raw = await self._multiplexer.request('initialize', params)
            result = structure_result('initialize', raw)
            await self._multiplexer.notify('initialized', lsp.InitializedParams())
        except (BridgeError, TimeoutError) as e:
            self._fail(e)
            raise

        self.server_capabilities = result.capabilities
        self.server_info = result.server_info
        if result.server_info is not None:
            logger.info('connected to %s %s', result.server_info.name,
                        result.server_info.version or '')
        self._transition(SessionState.READY)
        return result

    def _register_handlers(self, mux: RequestMultiplexer) -> None:
        mux.on_request('workspace/configuration', lambda params: [{}] * _configuration_items(params))
        mux.on_request('workspace/workspaceFolders', lambda params: [
            lsp.WorkspaceFolder(uri=to_uri(root), name=root.name) for root in self.config.watch_roots])
        mux.on_request('client/registerCapability', lambda params: None)
        mux.on_request('client/unregisterCapability', lambda params: None)
        mux.on_request('window/workDoneProgress/create', lambda params: None)
        mux.on_request('window/showMessageRequest', lambda params: None)
        mux.on_request('workspace/applyEdit', lambda params: lsp.ApplyWorkspaceEditResult(
            applied=False, failure_reason='edits are applied by the client tools only'))

    async def _log_messages(self, subscription: Subscription) -> None:
        async for note in subscription:
            params = note.params
            if isinstance(params, (lsp.LogMessageParams, lsp.ShowMessageParams)):
                logger.log(_LOG_LEVELS.get(params.type, logging.INFO), 'analyzer: %s', params.message)
            else:
                logger.debug('analyzer %s: %r', note.method, params)

    async def _monitor(self) -> None:
        waiters = [asyncio.create_task(self._multiplexer.wait_closed())]
        if self._supervisor is not None and self._supervisor.pid is not None:
            waiters.append(asyncio.create_task(self._supervisor.wait()))
        try:
            done, _ = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        if self._state in (SessionState.SHUTTING_DOWN, SessionState.EXITED):
            return
        reason = self._multiplexer.close_reason
        if reason is None:
            reason = ConnectionClosed(f'analyzer exited unexpectedly (pid={self._supervisor.pid})')
        self._fail(reason)
        await self._multiplexer.close(f'analyzer gone: {reason}')

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def supports(self, capability: str) -> bool:
        """Whether the analyzer advertised the server capability *capability*."""
        caps = self.server_capabilities
        return caps is not None and getattr(caps, capability, None) not in (None, False)

    async def request(self, method: str, params: Any = None, *, timeout: float | None = None) -> Any:
        """Send a feature request and return its typed result."""
        self._require_ready(method)
        raw = await self._multiplexer.request(method, params, timeout=timeout)
        return structure_result(method, raw)

    async def notify(self, method: str, params: Any = None) -> None:
        self._require_ready(method)
        await self._multiplexer.notify(method, params)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def document(self, uri: str) -> Document | None:
        """The latest snapshot of *uri*, open or closed."""
        return self._documents.get(normalize_uri(uri))

    def open_uris(self) -> list[str]:
        return sorted(uri for uri, doc in self._documents.items() if doc.is_open)

    def is_open(self, uri: str) -> bool:
        doc = self.document(uri)
        return doc is not None and doc.is_open

    async def open_document(self, uri: str, content: str | None = None) -> Document:
        """Open *uri* on the analyzer, reading it from disk unless *content* is given."""
        return await self._submit(DocumentEventKind.OPEN, uri, content)

    async def change_document(self, uri: str, content: str | None = None) -> Document:
        """Send the full new *content* of *uri*; a no-op if nothing changed."""
        return await self._submit(DocumentEventKind.CHANGE, uri, content)

    async def close_document(self, uri: str) -> Document | None:
        return await self._submit(DocumentEventKind.CLOSE, uri, None)

    async def ensure_open(self, uri: str) -> Document:
        doc = self.document(uri)
        if doc is not None and doc.is_open:
            return doc
        return await self.open_document(uri)

    async def sync(self, event: DocumentEvent) -> Document | None:
        """Apply a watcher event, reading the current content from disk."""
        return await self._submit(event.kind, event.uri, None)

    async def _submit(self, kind: DocumentEventKind, uri: str, content: str | None):
        self._require_ready(f'{kind.value} {uri}')
        future = asyncio.get_running_loop().create_future()
        self._sync_queue.put_nowait((kind, normalize_uri(uri), content, future))
        return await future

    async def _sync_loop(self) -> None:
        current = None
        try:
            while True:
                kind, uri, content, current = await self._sync_queue.get()
                if current.done():
                    continue
                try:
                    result = await self._apply(kind, uri, content)
                except Exception as e:
                    if not current.done():
                        current.set_exception(e)
                    else:
                        logger.warning('%s %s failed after its caller left: %s', kind.value, uri, e)
                else:
                    if not current.done():
                        current.set_result(result)
        finally:
            if current is not None and not current.done():
                current.set_exception(InvalidState('session closed during document sync'))
            while not self._sync_queue.empty():
                _, uri, _, future = self._sync_queue.get_nowait()
                if not future.done():
                    future.set_exception(InvalidState(f'session closed before {uri} was synced'))

    def _next_version(self, uri: str) -> int:
        version = self._versions.get(uri, 0) + 1
        self._versions[uri] = version
        return version

    async def _apply(self, kind: DocumentEventKind, uri: str, content: str | None) -> Document | None:
        doc = self._documents.get(uri)
        if kind is DocumentEventKind.CLOSE:
            if doc is None or not doc.is_open:
                return doc
            await self._multiplexer.notify('textDocument/didClose', lsp.DidCloseTextDocumentParams(
                text_document=lsp.TextDocumentIdentifier(uri=uri)))
            closed = doc.closed()
            self._documents[uri] = closed
            logger.debug('closed %s', uri)
            return closed

        if content is None:
            content = read_text(to_path(uri))

        if doc is not None and doc.is_open:
            if content == doc.content:
                return doc
            updated = doc.with_content(content, self._next_version(uri))
            await self._multiplexer.notify('textDocument/didChange', lsp.DidChangeTextDocumentParams(
                text_document=lsp.VersionedTextDocumentIdentifier(uri=uri, version=updated.version),
                content_changes=[lsp.TextDocumentContentChangeWholeDocument(text=content)],
            ))
            self._documents[uri] = updated
            logger.debug('changed %s (version %d)', uri, updated.version)
            return updated

        opened = Document(uri=uri, language_id=detect_language_id(to_path(uri)),
                          version=self._next_version(uri), content=content,
                          open_state=OpenState.OPEN)
        await self._multiplexer.notify('textDocument/didOpen', lsp.DidOpenTextDocumentParams(
            text_document=lsp.TextDocumentItem(uri=uri, language_id=opened.language_id,
                                               version=opened.version, text=content)))
        self._documents[uri] = opened
        logger.debug('opened %s (version %d)', uri, opened.version)
        return opened

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Close every open document, then shut the analyzer down cleanly.

        Outside ``Ready`` this only releases resources.
        """
        if self._state is SessionState.READY:
            for uri in self.open_uris():
                try:
                    await self.close_document(uri)
                except ConnectionClosed as e:
                    logger.warning('could not close %s: %s', uri, e)
                    break
            self._transition(SessionState.SHUTTING_DOWN)
            try:
                await self._multiplexer.request('shutdown', timeout=self.config.shutdown_grace)
                await self._multiplexer.notify('exit')
            except (BridgeError, TimeoutError) as e:
                logger.warning('analyzer did not shut down cleanly: %s', e)
        await self.close()

    async def close(self) -> None:
        """Release the process and every task; the session ends up terminal."""
        await _cancel(self._monitor_task)
        self._monitor_task = None
        if self._supervisor is not None and self._supervisor.pid is not None:
            await self._supervisor.terminate(self.config.shutdown_grace)
        if self._multiplexer is not None:
            await self._multiplexer.close('session closed')
        for task in self._tasks:
            await _cancel(task)
        self._tasks = []
        self.bus.close()
        if not self._state.terminal:
            self._transition(SessionState.EXITED)

    async def __aenter__(self) -> 'Session':
        return await self.start()

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()


async def _cancel(task: asyncio.Task | None) -> None:
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
