"""
Workspace watcher.

Filesystem events from :mod:`watchdog` arrive on the observer's thread and
are handed to the event loop, where they pass through a bounded queue.  The
watcher then:

- drops paths outside every root and paths the root's
  :class:`~mcplsp.ignore.IgnoreMatcher` filters out;
- debounces per path, so a burst of writes to one file becomes a single
  document event once the path has been quiet for the debounce window;
- looks at the settled disk state and asks the session to open, change or
  close the document.

If the queue fills up, the backlog is discarded and a full rescan of the
roots is scheduled instead, reconciling the open documents with disk.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from mcplsp.config import BridgeConfig
from mcplsp.document import to_path, to_uri
from mcplsp.errors import BridgeError, InvalidState
from mcplsp.ignore import IgnoreMatcher
from mcplsp.session import DocumentEvent, DocumentEventKind, Session

logger = logging.getLogger(__name__)

# File timestamps come from a coarser clock than time.time().
_MTIME_SLACK = 1.0


class WatchKind(enum.Enum):
    CREATED = 'created'
    MODIFIED = 'modified'
    REMOVED = 'removed'
    RENAMED = 'renamed'


@dataclass(frozen=True)
class WatchEvent:
    path: Path
    kind: WatchKind
    timestamp: float = field(default_factory=time.time)
    # Only set for RENAMED.
    dest_path: Path | None = None
    is_directory: bool = False


_KINDS = {
    EVENT_TYPE_CREATED: WatchKind.CREATED,
    EVENT_TYPE_MODIFIED: WatchKind.MODIFIED,
    EVENT_TYPE_DELETED: WatchKind.REMOVED,
    EVENT_TYPE_MOVED: WatchKind.RENAMED,
}


class _Handler(FileSystemEventHandler):
    """Runs on the observer thread; only converts and forwards."""

    def __init__(self, watcher: 'WorkspaceWatcher'):
        super().__init__()
        self._watcher = watcher

    def on_any_event(self, event: FileSystemEvent) -> None:
        kind = _KINDS.get(event.event_type)
        if kind is None:
            return
        dest = getattr(event, 'dest_path', None) if kind is WatchKind.RENAMED else None
        self._watcher.post(WatchEvent(
            path=Path(os.fsdecode(event.src_path)),
            kind=kind,
            dest_path=Path(os.fsdecode(dest)) if dest else None,
            is_directory=event.is_directory,
        ))


class WorkspaceWatcher:
    def __init__(self, roots: list[str | Path], session: Session, *,
                 debounce: float = 0.2, queue_size: int = 1024,
                 observer_factory: Callable | None = Observer):
        self.roots = [Path(r).resolve() for r in roots]
        self.debounce = debounce
        self._session = session
        self._observer_factory = observer_factory
        self._observer = None
        self._matchers: list[IgnoreMatcher] = []
        self._queue: asyncio.Queue | None = None
        self._queue_size = queue_size
        self._loop: asyncio.AbstractEventLoop | None = None
        self._consumer: asyncio.Task | None = None
        self._pending: dict[Path, asyncio.Task] = {}
        self._rescan_task: asyncio.Task | None = None
        self._overflow_since: float | None = None
        self.overflows = 0

    @classmethod
    def from_config(cls, config: BridgeConfig, session: Session, **kwargs) -> 'WorkspaceWatcher':
        return cls(config.watch_roots, session, debounce=config.debounce,
                   queue_size=config.watch_queue_size, **kwargs)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        # Longest root first so nested roots claim their own paths.
        self._matchers = sorted((IgnoreMatcher.from_root(root) for root in self.roots),
                                key=lambda m: len(m.root.parts), reverse=True)
        self._consumer = asyncio.create_task(self._consume(), name='mcplsp-watcher')
        if self._observer_factory is not None:
            self._observer = self._observer_factory()
            handler = _Handler(self)
            for root in self.roots:
                self._observer.schedule(handler, str(root), recursive=True)
            self._observer.start()
        logger.info('watching %s', ', '.join(str(r) for r in self.roots))

    async def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            await self._loop.run_in_executor(None, self._observer.join)
            self._observer = None
        tasks = [self._consumer, self._rescan_task, *self._pending.values()]
        self._pending.clear()
        self._consumer = self._rescan_task = None
        for task in tasks:
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(*(t for t in tasks if t is not None), return_exceptions=True)
        logger.info('watcher stopped')

    async def __aenter__(self) -> 'WorkspaceWatcher':
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    def post(self, event: WatchEvent) -> None:
        """Thread-safe entry point used by the observer thread."""
        try:
            self._loop.call_soon_threadsafe(self.feed, event)
        except RuntimeError:
            logger.debug('event loop closed; dropping %s %s', event.kind.value, event.path)

    def feed(self, event: WatchEvent) -> None:
        """Queue a raw event; must be called on the event loop."""
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self._overflow(event.timestamp)

    def _overflow(self, timestamp: float) -> None:
        earliest = timestamp
        while not self._queue.empty():
            earliest = min(earliest, self._queue.get_nowait().timestamp)
            self._queue.task_done()
        self.overflows += 1
        if self._overflow_since is None or earliest < self._overflow_since:
            self._overflow_since = earliest
        logger.warning('watch queue overflowed; rescanning %d root(s)', len(self.roots))
        if self._rescan_task is not None:
            self._rescan_task.cancel()
        self._rescan_task = asyncio.ensure_future(self._debounced_rescan())

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                self._route(event)
            finally:
                self._queue.task_done()

    def _matcher_for(self, path: Path) -> IgnoreMatcher | None:
        for matcher in self._matchers:
            if matcher.contains(path):
                return matcher
        return None

    def _route(self, event: WatchEvent) -> None:
        if event.kind is WatchKind.RENAMED:
            self._route(WatchEvent(event.path, WatchKind.REMOVED, event.timestamp,
                                   is_directory=event.is_directory))
            if event.dest_path is not None:
                self._route(WatchEvent(event.dest_path, WatchKind.CREATED, event.timestamp,
                                       is_directory=event.is_directory))
            return

        path = event.path if event.path.is_absolute() else event.path.absolute()
        matcher = self._matcher_for(path)
        if matcher is None:
            logger.debug('outside watched roots: %s', path)
            return
        if matcher.is_ignored(path, is_dir=event.is_directory):
            return

        if event.is_directory:
            if event.kind is WatchKind.REMOVED:
                for uri in self._session.open_uris():
                    doc_path = to_path(uri)
                    if doc_path.is_relative_to(path):
                        self._schedule(doc_path)
            elif event.kind is WatchKind.CREATED:
                # A directory moved in brings no events for its contents.
                for file in self._walk(matcher, path):
                    self._schedule(file)
            return
        self._schedule(path)

    def _schedule(self, path: Path) -> None:
        """Cancel any pending dispatch for *path* and start a new debounce window."""
        existing = self._pending.pop(path, None)
        if existing is not None:
            existing.cancel()
        task = asyncio.ensure_future(self._debounced_dispatch(path))
        self._pending[path] = task

    async def _debounced_dispatch(self, path: Path) -> None:
        await asyncio.sleep(self.debounce)
        if self._pending.get(path) is asyncio.current_task():
            del self._pending[path]
        await self._dispatch(path)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, path: Path) -> None:
        uri = to_uri(path)
        is_open = self._session.is_open(uri)
        if not path.is_file():
            kind = DocumentEventKind.CLOSE if is_open else None
        elif is_open:
            kind = DocumentEventKind.CHANGE
        else:
            kind = DocumentEventKind.OPEN
        if kind is None:
            return
        try:
            await self._session.sync(DocumentEvent(kind, uri))
        except InvalidState as e:
            logger.debug('session not ready; dropped %s %s: %s', kind.value, path, e)
        except (OSError, BridgeError) as e:
            logger.warning('could not %s %s: %s', kind.value, path, e)

    def _walk(self, matcher: IgnoreMatcher, top: Path):
        for dirpath, dirnames, filenames in os.walk(top):
            current = Path(dirpath)
            dirnames[:] = sorted(d for d in dirnames
                                 if not matcher.is_ignored(current / d, is_dir=True))
            for name in sorted(filenames):
                path = current / name
                if not matcher.is_ignored(path):
                    yield path

    async def _debounced_rescan(self) -> None:
        await asyncio.sleep(self.debounce)
        await self.rescan()

    async def rescan(self) -> None:
        """Reconcile open documents with disk after events were lost.

        Open documents whose files are gone are closed and the rest are
        refreshed; files modified since the overflow began are opened.
        """
        since, self._overflow_since = self._overflow_since, None
        for uri in self._session.open_uris():
            path = to_path(uri)
            if self._matcher_for(path) is not None:
                await self._dispatch(path)
        if since is None:
            return
        threshold = since - _MTIME_SLACK
        for matcher in self._matchers:
            for path in self._walk(matcher, matcher.root):
                if self._matcher_for(path) is not matcher:
                    continue
                try:
                    modified = path.stat().st_mtime
                except OSError:
                    continue
                if modified >= threshold and not self._session.is_open(to_uri(path)):
                    await self._dispatch(path)
        logger.info('rescan complete; %d document(s) open', len(self._session.open_uris()))

    async def settled(self) -> None:
        """Wait until every queued event has been dispatched."""
        while True:
            await self._queue.join()
            tasks = [t for t in (*self._pending.values(), self._rescan_task)
                     if t is not None and not t.done()]
            if not tasks:
                if self._queue.empty():
                    return
                continue
            await asyncio.wait(tasks)
