"""Tests for mcplsp.watcher: debouncing, ignore filtering and rescans."""
from __future__ import annotations

import asyncio
import shutil

import pytest
from watchdog.observers.polling import PollingObserver

from mcplsp.document import read_text, to_path, to_uri
from mcplsp.session import DocumentEventKind
from mcplsp.watcher import WatchEvent, WatchKind, WorkspaceWatcher

OPEN, CHANGE, CLOSE = DocumentEventKind.OPEN, DocumentEventKind.CHANGE, DocumentEventKind.CLOSE


class RecordingSession:
    """Stands in for a Session: keeps an open set and records every sync."""

    def __init__(self):
        self.open: dict[str, str] = {}
        self.events: list[tuple[DocumentEventKind, str]] = []

    def is_open(self, uri: str) -> bool:
        return uri in self.open

    def open_uris(self) -> list[str]:
        return sorted(self.open)

    async def sync(self, event):
        self.events.append((event.kind, event.uri))
        if event.kind is CLOSE:
            self.open.pop(event.uri, None)
        else:
            self.open[event.uri] = read_text(to_path(event.uri))


async def _watcher(workspace, session, **kwargs) -> WorkspaceWatcher:
    kwargs.setdefault('debounce', 0.05)
    kwargs.setdefault('observer_factory', None)
    watcher = WorkspaceWatcher([workspace], session, **kwargs)
    await watcher.start()
    return watcher


class TestMapping:
    @pytest.mark.asyncio
    async def test_burst_of_modifications_becomes_one_change(self, workspace):
        path = workspace / 'a.py'
        path.write_text('x = 1\n')
        session = RecordingSession()
        session.open[to_uri(path)] = 'x = 0\n'
        watcher = await _watcher(workspace, session)
        try:
            for _ in range(50):
                watcher.feed(WatchEvent(path, WatchKind.MODIFIED))
            await watcher.settled()
            assert session.events == [(CHANGE, to_uri(path))]
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_created_file_is_opened(self, workspace):
        path = workspace / 'new.py'
        path.write_text('pass\n')
        session = RecordingSession()
        watcher = await _watcher(workspace, session)
        try:
            watcher.feed(WatchEvent(path, WatchKind.CREATED))
            watcher.feed(WatchEvent(path, WatchKind.MODIFIED))
            await watcher.settled()
            assert session.events == [(OPEN, to_uri(path))]
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_removed_open_file_is_closed(self, workspace):
        path = workspace / 'gone.py'
        session = RecordingSession()
        session.open[to_uri(path)] = 'old\n'
        watcher = await _watcher(workspace, session)
        try:
            watcher.feed(WatchEvent(path, WatchKind.REMOVED))
            watcher.feed(WatchEvent(workspace / 'never_open.py', WatchKind.REMOVED))
            await watcher.settled()
            assert session.events == [(CLOSE, to_uri(path))]
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_rename_is_close_then_open(self, workspace):
        old, new = workspace / 'old.py', workspace / 'new.py'
        new.write_text('moved\n')
        session = RecordingSession()
        session.open[to_uri(old)] = 'moved\n'
        watcher = await _watcher(workspace, session)
        try:
            watcher.feed(WatchEvent(old, WatchKind.RENAMED, dest_path=new))
            await watcher.settled()
            assert set(session.events) == {(CLOSE, to_uri(old)), (OPEN, to_uri(new))}
            assert session.open_uris() == [to_uri(new)]
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_last_settled_state_wins(self, workspace):
        path = workspace / 'flip.py'
        session = RecordingSession()
        watcher = await _watcher(workspace, session)
        try:
            path.write_text('1\n')
            watcher.feed(WatchEvent(path, WatchKind.CREATED))
            path.unlink()
            watcher.feed(WatchEvent(path, WatchKind.REMOVED))
            await watcher.settled()
            assert session.events == []
        finally:
            await watcher.stop()


class TestFiltering:
    @pytest.mark.asyncio
    async def test_ignored_paths_produce_nothing(self, workspace):
        (workspace / '.gitignore').write_text('*.log\n')
        (workspace / 'debug.log').write_text('x\n')
        (workspace / '.git').mkdir()
        (workspace / '.git' / 'HEAD').write_text('ref\n')
        session = RecordingSession()
        watcher = await _watcher(workspace, session)
        try:
            watcher.feed(WatchEvent(workspace / 'debug.log', WatchKind.CREATED))
            watcher.feed(WatchEvent(workspace / '.git' / 'HEAD', WatchKind.MODIFIED))
            watcher.feed(WatchEvent(workspace / 'a.py~', WatchKind.CREATED))
            await watcher.settled()
            assert session.events == []
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_nested_override_is_not_filtered(self, workspace):
        (workspace / '.gitignore').write_text('*.log\n')
        (workspace / 'keep').mkdir()
        (workspace / 'keep' / '.gitignore').write_text('!wanted.log\n')
        path = workspace / 'keep' / 'wanted.log'
        path.write_text('x\n')
        session = RecordingSession()
        watcher = await _watcher(workspace, session)
        try:
            watcher.feed(WatchEvent(path, WatchKind.CREATED))
            await watcher.settled()
            assert session.events == [(OPEN, to_uri(path))]
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_events_outside_roots_are_dropped(self, workspace, tmp_path):
        outside = tmp_path / 'outside.py'
        outside.write_text('x\n')
        session = RecordingSession()
        watcher = await _watcher(workspace, session)
        try:
            watcher.feed(WatchEvent(outside, WatchKind.CREATED))
            await watcher.settled()
            assert session.events == []
        finally:
            await watcher.stop()


class TestDirectories:
    @pytest.mark.asyncio
    async def test_removed_directory_closes_documents_beneath(self, workspace):
        sub = workspace / 'pkg'
        sub.mkdir()
        a, b = sub / 'a.py', sub / 'b.py'
        session = RecordingSession()
        session.open[to_uri(a)] = ''
        session.open[to_uri(b)] = ''
        session.open[to_uri(workspace / 'top.py')] = ''
        (workspace / 'top.py').write_text('')
        watcher = await _watcher(workspace, session)
        try:
            shutil.rmtree(sub)
            watcher.feed(WatchEvent(sub, WatchKind.REMOVED, is_directory=True))
            await watcher.settled()
            assert sorted(session.events) == sorted([(CLOSE, to_uri(a)), (CLOSE, to_uri(b))])
        finally:
            await watcher.stop()

    @pytest.mark.asyncio
    async def test_directory_moved_in_opens_its_files(self, workspace):
        sub = workspace / 'incoming'
        (sub / 'deep').mkdir(parents=True)
        (sub / 'one.py').write_text('1\n')
        (sub / 'deep' / 'two.py').write_text('2\n')
        (sub / '__pycache__').mkdir()
        (sub / '__pycache__' / 'one.pyc').write_bytes(b'\0')
        session = RecordingSession()
        watcher = await _watcher(workspace, session)
        try:
            watcher.feed(WatchEvent(sub, WatchKind.CREATED, is_directory=True))
            await watcher.settled()
            assert sorted(session.events) == sorted([
                (OPEN, to_uri(sub / 'one.py')), (OPEN, to_uri(sub / 'deep' / 'two.py'))])
        finally:
            await watcher.stop()


class TestOverflow:
    @pytest.mark.asyncio
    async def test_overflow_rescan_reconciles_open_documents(self, workspace):
        gone, kept, fresh = workspace / 'gone.py', workspace / 'kept.py', workspace / 'fresh.py'
        kept.write_text('new content\n')
        fresh.write_text('brand new\n')
        session = RecordingSession()
        session.open[to_uri(gone)] = 'old\n'
        session.open[to_uri(kept)] = 'old content\n'
        watcher = await _watcher(workspace, session, queue_size=2)
        try:
            watcher.feed(WatchEvent(gone, WatchKind.REMOVED))
            watcher.feed(WatchEvent(kept, WatchKind.MODIFIED))
            watcher.feed(WatchEvent(fresh, WatchKind.CREATED))
            assert watcher.overflows == 1
            await watcher.settled()
            assert sorted(session.events) == sorted([
                (CLOSE, to_uri(gone)), (CHANGE, to_uri(kept)), (OPEN, to_uri(fresh))])
            assert session.open[to_uri(kept)] == 'new content\n'
        finally:
            await watcher.stop()


class TestObserver:
    @pytest.mark.asyncio
    async def test_polling_observer_feeds_events(self, workspace):
        session = RecordingSession()
        watcher = await _watcher(workspace, session,
                                 observer_factory=lambda: PollingObserver(timeout=0.1))
        try:
            await asyncio.sleep(0.3)
            path = workspace / 'seen.py'
            path.write_text('hello\n')
            for _ in range(100):
                if (OPEN, to_uri(path)) in session.events:
                    break
                await asyncio.sleep(0.05)
            assert (OPEN, to_uri(path)) in session.events
        finally:
            await watcher.stop()
