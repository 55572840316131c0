"""Tests for mcplsp.document: snapshots, URIs and file IO."""
from __future__ import annotations

import os
import stat

import pytest

from mcplsp.document import (
    Document,
    OpenState,
    content_checksum,
    detect_language_id,
    discard,
    normalize_uri,
    read_text,
    stage_text,
    to_path,
    to_uri,
    write_text,
)


class TestLanguageId:
    @pytest.mark.parametrize('name, expected', [
        ('main.rs', 'rust'),
        ('app.PY', 'python'),
        ('index.tsx', 'typescriptreact'),
        ('Makefile', 'plaintext'),
        ('notes.xyz', 'plaintext'),
    ])
    def test_detect(self, name, expected):
        assert detect_language_id(name) == expected


class TestUris:
    def test_round_trip(self, workspace):
        path = workspace / 'sub dir' / 'a.py'
        uri = to_uri(path)
        assert uri.startswith('file://')
        assert '%20' in uri
        assert to_path(uri) == path

    def test_normalize_accepts_path_or_uri(self, workspace):
        path = workspace / 'a.py'
        assert normalize_uri(path) == normalize_uri(str(path)) == normalize_uri(to_uri(path))


class TestFileIo:
    def test_read_keeps_line_endings(self, tmp_path):
        path = tmp_path / 'crlf.txt'
        path.write_bytes(b'a\r\nb\r\n')
        assert read_text(path) == 'a\r\nb\r\n'

    def test_read_replaces_bad_bytes(self, tmp_path):
        path = tmp_path / 'bad.txt'
        path.write_bytes(b'ok \xff\n')
        assert read_text(path) == 'ok �\n'

    def test_write_replaces_and_keeps_mode(self, tmp_path):
        path = tmp_path / 'script.sh'
        path.write_text('old\n')
        os.chmod(path, 0o755)
        write_text(path, 'new\r\n')
        assert path.read_bytes() == b'new\r\n'
        assert stat.S_IMODE(path.stat().st_mode) == 0o755
        assert [p.name for p in tmp_path.iterdir()] == ['script.sh']

    def test_write_new_file(self, tmp_path):
        write_text(tmp_path / 'fresh.txt', 'x')
        assert (tmp_path / 'fresh.txt').read_text() == 'x'

    def test_staged_text_leaves_target_alone(self, tmp_path):
        path = tmp_path / 'a.py'
        path.write_text('old\n')
        tmp = stage_text(path, 'new\n')
        assert tmp.parent == tmp_path
        assert path.read_text() == 'old\n'
        assert tmp.read_text() == 'new\n'
        discard(tmp)
        discard(tmp)
        assert [p.name for p in tmp_path.iterdir()] == ['a.py']


class TestDocument:
    def test_checksum_computed(self):
        doc = Document(uri='file:///a.py', language_id='python', version=1, content='x = 1\n')
        assert doc.checksum == content_checksum('x = 1\n')
        assert doc.is_open

    def test_with_content_is_a_new_snapshot(self):
        doc = Document(uri='file:///a.py', language_id='python', version=1, content='a')
        newer = doc.with_content('b', 2)
        assert (doc.content, doc.version) == ('a', 1)
        assert (newer.content, newer.version) == ('b', 2)
        assert newer.checksum == content_checksum('b')

    def test_closed(self):
        doc = Document(uri='file:///a.py', language_id='python', version=3, content='a').closed()
        assert doc.open_state is OpenState.CLOSED
        assert not doc.is_open
        assert doc.version == 3
