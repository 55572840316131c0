"""
Document snapshots and path/URI helpers.

Each document the session has opened on the analyzer is held as an
immutable :class:`Document`.  A content change never mutates a snapshot; the
session swaps in a new one with the next version, so readers holding an
older snapshot keep seeing a consistent (if stale) view.
"""
from __future__ import annotations

import enum
import hashlib
import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path

from pygls import uris

LANGUAGE_IDS = {
    '.c': 'c',
    '.h': 'c',
    '.cc': 'cpp',
    '.cpp': 'cpp',
    '.cxx': 'cpp',
    '.hpp': 'cpp',
    '.cs': 'csharp',
    '.css': 'css',
    '.go': 'go',
    '.html': 'html',
    '.java': 'java',
    '.js': 'javascript',
    '.jsx': 'javascriptreact',
    '.json': 'json',
    '.kt': 'kotlin',
    '.lua': 'lua',
    '.md': 'markdown',
    '.php': 'php',
    '.py': 'python',
    '.pyi': 'python',
    '.rb': 'ruby',
    '.rs': 'rust',
    '.scala': 'scala',
    '.sh': 'shellscript',
    '.sql': 'sql',
    '.swift': 'swift',
    '.toml': 'toml',
    '.ts': 'typescript',
    '.tsx': 'typescriptreact',
    '.yaml': 'yaml',
    '.yml': 'yaml',
    '.zig': 'zig',
}


def detect_language_id(path: str | Path) -> str:
    """Return the LSP language id for *path* based on its extension."""
    return LANGUAGE_IDS.get(Path(path).suffix.lower(), 'plaintext')


def to_uri(path: str | Path) -> str:
    uri = uris.from_fs_path(str(Path(path).absolute()))
    if uri is None:
        raise ValueError(f'cannot convert {path!r} to a URI')
    return uri


def to_path(uri: str) -> Path:
    path = uris.to_fs_path(uri)
    if path is None:
        raise ValueError(f'not a file URI: {uri!r}')
    return Path(path)


def normalize_uri(uri_or_path: str | Path) -> str:
    """Accept either a ``file://`` URI or a filesystem path; return a URI."""
    if isinstance(uri_or_path, str) and uri_or_path.startswith('file:'):
        return to_uri(to_path(uri_or_path))
    return to_uri(uri_or_path)


def read_text(path: str | Path) -> str:
    """Read *path* as UTF-8 keeping its line endings; undecodable bytes are replaced."""
    with open(path, encoding='utf-8', errors='replace', newline='') as f:
        return f.read()


def stage_text(path: str | Path, content: str) -> Path:
    """Write *content* to a temporary sibling of *path* and return it.

    The sibling carries *path*'s permission bits; ``os.replace`` moves it
    into place.
    """
    path = Path(path)
    fd, tmp = tempfile.mkstemp(prefix=f'.{path.name}.', suffix='.tmp', dir=path.parent)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8', newline='') as f:
            f.write(content)
        if path.exists():
            os.chmod(tmp, path.stat().st_mode & 0o7777)
    except BaseException:
        os.unlink(tmp)
        raise
    return Path(tmp)


def discard(tmp: Path) -> None:
    try:
        os.unlink(tmp)
    except FileNotFoundError:
        pass


def write_text(path: str | Path, content: str) -> None:
    """Replace *path* with *content* via a temporary sibling and ``os.replace``."""
    tmp = stage_text(path, content)
    try:
        os.replace(tmp, path)
    except BaseException:
        discard(tmp)
        raise


def content_checksum(content: str) -> str:
    return hashlib.sha256(content.encode('utf-8', errors='surrogatepass')).hexdigest()


class OpenState(enum.Enum):
    CLOSED = 'closed'
    OPEN = 'open'


@dataclass(frozen=True)
class Document:
    uri: str
    language_id: str
    version: int
    content: str
    open_state: OpenState = OpenState.OPEN
    checksum: str = field(default='', compare=False)

    def __post_init__(self):
        if not self.checksum:
            object.__setattr__(self, 'checksum', content_checksum(self.content))

    @property
    def path(self) -> Path:
        return to_path(self.uri)

    @property
    def is_open(self) -> bool:
        return self.open_state is OpenState.OPEN

    def with_content(self, content: str, version: int) -> 'Document':
        return replace(self, content=content, version=version, checksum='')

    def closed(self) -> 'Document':
        return replace(self, open_state=OpenState.CLOSED)
