"""
Gitignore-style path filtering for the workspace watcher.

An :class:`IgnoreMatcher` is built once per watched root from the root's
``.gitignore`` and every nested one below it.  Rules are evaluated in order,
root file first and deeper files after their ancestors, and the last rule
that matches decides.  ``!pattern`` re-includes a path, but nothing under an
ignored directory can be re-included.

A handful of paths are ignored no matter what the rules say: VCS and
tool directories, and editor backup files.
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

IGNORE_FILENAME = '.gitignore'
ALWAYS_IGNORED_DIRS = frozenset({'.git', 'node_modules', '.venv', '__pycache__'})
BACKUP_SUFFIXES = ('~', '.swp', '.bak')


def always_ignored(parts: tuple[str, ...] | list[str]) -> bool:
    if any(part in ALWAYS_IGNORED_DIRS for part in parts):
        return True
    return bool(parts) and parts[-1].endswith(BACKUP_SUFFIXES)


# ---------------------------------------------------------------------------
# Pattern translation
# ---------------------------------------------------------------------------

def _translate(pattern: str) -> str:
    """Translate the glob part of a gitignore pattern to a regex body."""
    out = []
    i, n = 0, len(pattern)
    while i < n:
        if pattern.startswith('**/', i) and (i == 0 or pattern[i - 1] == '/'):
            out.append('(?:.*/)?')
            i += 3
        elif pattern.startswith('**', i) and i + 2 == n and (i == 0 or pattern[i - 1] == '/'):
            out.append('.*')
            i += 2
        elif pattern[i] == '*':
            out.append('[^/]*')
            i += 1
        elif pattern[i] == '?':
            out.append('[^/]')
            i += 1
        elif pattern[i] == '[':
            j = pattern.find(']', i + 2 if pattern.startswith('[!', i) or pattern.startswith('[^', i) else i + 1)
            if j == -1:
                out.append(re.escape('['))
                i += 1
                continue
            body = pattern[i + 1:j]
            if body[:1] in ('!', '^'):
                body = '^' + body[1:]
            out.append('[' + body.replace('\\', '\\\\') + ']')
            i = j + 1
        elif pattern[i] == '\\' and i + 1 < n:
            out.append(re.escape(pattern[i + 1]))
            i += 2
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return ''.join(out)


@dataclass(frozen=True)
class IgnoreRule:
    pattern: str
    # Directory (relative to the matcher root, '/'-separated) holding the ignore file.
    base: str
    regex: re.Pattern
    negated: bool = False
    dir_only: bool = False

    @classmethod
    def parse(cls, line: str, base: str = '') -> 'IgnoreRule | None':
        """Parse one ignore-file line; blank lines and comments give None."""
        text = line.rstrip('\n').rstrip('\r')
        if not text.endswith('\\ '):
            text = text.rstrip()
        if not text or text.startswith('#'):
            return None
        negated = False
        if text.startswith('!'):
            negated = True
            text = text[1:]
        elif text.startswith(('\\!', '\\#')):
            text = text[1:]
        dir_only = text.endswith('/')
        text = text.rstrip('/')
        if not text:
            return None
        anchored = '/' in text
        body = _translate(text.lstrip('/'))
        if not anchored:
            body = '(?:.*/)?' + body
        return cls(pattern=line.strip(), base=base, regex=re.compile(body + r'\Z'),
                   negated=negated, dir_only=dir_only)

    def matches(self, rel: str, is_dir: bool) -> bool:
        if self.dir_only and not is_dir:
            return False
        if self.base:
            if not rel.startswith(self.base + '/'):
                return False
            rel = rel[len(self.base) + 1:]
        return self.regex.match(rel) is not None


def _decide(rules, rel: str, is_dir: bool) -> bool:
    ignored = False
    for rule in rules:
        if rule.matches(rel, is_dir):
            ignored = not rule.negated
    return ignored


def _ignored(rules, parts: tuple[str, ...], is_dir: bool) -> bool:
    if always_ignored(parts):
        return True
    for depth in range(1, len(parts)):
        if _decide(rules, '/'.join(parts[:depth]), True):
            return True
    return _decide(rules, '/'.join(parts), is_dir)


def _read_rules(path: Path, base: str) -> list[IgnoreRule]:
    try:
        with open(path, encoding='utf-8', errors='replace') as f:
            lines = f.readlines()
    except OSError as e:
        logger.warning('cannot read %s: %s', path, e)
        return []
    rules = [rule for rule in (IgnoreRule.parse(line, base) for line in lines) if rule is not None]
    logger.debug('%d ignore rule(s) from %s', len(rules), path)
    return rules


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IgnoreMatcher:
    root: Path
    rules: tuple[IgnoreRule, ...] = ()

    @classmethod
    def from_lines(cls, root: str | Path, lines, base: str = '') -> 'IgnoreMatcher':
        rules = [rule for rule in (IgnoreRule.parse(line, base) for line in lines) if rule is not None]
        return cls(root=Path(root).resolve(), rules=tuple(rules))

    @classmethod
    def from_root(cls, root: str | Path) -> 'IgnoreMatcher':
        """Collect ``.gitignore`` files under *root*, parents before children.

        Directories already ignored are not descended into, so their ignore
        files never apply.
        """
        root = Path(root).resolve()
        rules: list[IgnoreRule] = []
        for dirpath, dirnames, filenames in os.walk(root):
            rel_dir = Path(dirpath).relative_to(root)
            parts = rel_dir.parts
            base = '/'.join(parts)
            if IGNORE_FILENAME in filenames:
                rules.extend(_read_rules(Path(dirpath) / IGNORE_FILENAME, base))
            dirnames[:] = sorted(d for d in dirnames if not _ignored(rules, parts + (d,), True))
        return cls(root=root, rules=tuple(rules))

    def relative_parts(self, path: str | Path) -> tuple[str, ...] | None:
        """*path* relative to the root, or None when it lies outside it."""
        path = Path(path)
        if not path.is_absolute():
            return path.parts
        for candidate in (path, path.resolve()):
            try:
                return candidate.relative_to(self.root).parts
            except ValueError:
                continue
        return None

    def contains(self, path: str | Path) -> bool:
        return self.relative_parts(path) is not None

    def is_ignored(self, path: str | Path, is_dir: bool = False) -> bool:
        """Whether *path* (absolute, or relative to the root) is filtered out.

        Paths outside the root are reported as ignored.
        """
        parts = self.relative_parts(path)
        if parts is None:
            return True
        if not parts:
            return False
        return _ignored(self.rules, parts, is_dir)
