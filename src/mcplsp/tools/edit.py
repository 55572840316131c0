"""
Line-based file edits.

``edit_file`` takes edits addressed by the caller's *original* 1-based line
numbers.  Overlapping ranges are rejected before anything happens; the rest
are applied bottom-up so earlier edits never shift the lines of later ones.
The result is written to disk and sent to the analyzer as one ``didChange``.

A :class:`LineEdit` with ``end_line == start_line - 1`` is a pure insertion
before ``start_line``.
"""
from __future__ import annotations

import difflib
import logging
from dataclasses import dataclass

from mcplsp.document import normalize_uri, to_path, write_text
from mcplsp.errors import ConflictingEdits, InvalidEdit
from mcplsp.session import Session

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineEdit:
    start_line: int
    end_line: int
    new_text: str

    def __post_init__(self):
        if self.start_line < 1:
            raise InvalidEdit(f'start_line must be >= 1, got {self.start_line}')
        if self.end_line < self.start_line - 1:
            raise InvalidEdit(f'end_line {self.end_line} is before start_line {self.start_line}')

    @property
    def is_insertion(self) -> bool:
        return self.end_line == self.start_line - 1


@dataclass(frozen=True)
class EditResult:
    uri: str
    applied: int
    version: int
    content: str


def check_overlaps(edits: list[LineEdit]) -> list[LineEdit]:
    """Return *edits* sorted by start line; raise if any two overlap."""
    ordered = sorted(edits, key=lambda e: (e.start_line, e.end_line))
    for prev, cur in zip(ordered, ordered[1:]):
        if cur.start_line <= max(prev.end_line, prev.start_line):
            raise ConflictingEdits(
                f'edit at lines {cur.start_line}-{cur.end_line} overlaps '
                f'edit at lines {prev.start_line}-{prev.end_line}')
    return ordered


def _newline(content: str) -> str:
    return '\r\n' if '\r\n' in content else '\n'


def _terminated(line: str) -> bool:
    return line.endswith(('\n', '\r'))


def apply_line_edits(content: str, edits: list[LineEdit]) -> str:
    """Apply *edits* to *content* and return the new text.

    Replacement text lacking a line break gets one when the last line it
    replaces ended with one, and always when it is inserted before an
    existing line.  Whether the file ends with a newline is therefore kept:
    text appended after a last line without a line break stays unterminated
    too.
    """
    ordered = check_overlaps(edits)
    lines = content.splitlines(keepends=True)
    total = len(lines)
    newline = _newline(content)
    for edit in reversed(ordered):
        if edit.start_line > total + 1 or edit.end_line > total:
            raise InvalidEdit(f'lines {edit.start_line}-{edit.end_line} are outside the '
                              f'{total}-line document')
        if not edit.is_insertion:
            terminate = _terminated(lines[edit.end_line - 1])
        elif edit.start_line <= total:
            terminate = True
        elif lines and not _terminated(lines[-1]):
            # Appending after an unterminated last line: break it first.
            lines[-1] += newline
            terminate = False
        else:
            terminate = bool(lines)
        text = edit.new_text
        if text and terminate and not _terminated(text):
            text += newline
        lines[edit.start_line - 1:edit.end_line] = text.splitlines(keepends=True)
    return ''.join(lines)


def derive_edits(old: str, new: str) -> list[LineEdit]:
    """Line edits that turn *old* into *new*; empty when they are equal.

    Line edits keep an existing final newline, so when *old* ends with one
    and *new* does not, applying the result gives *new* plus that newline.
    """
    if old == new:
        return []
    old_lines = old.splitlines(keepends=True)
    new_lines = new.splitlines(keepends=True)
    matcher = difflib.SequenceMatcher(None, old_lines, new_lines, autojunk=False)
    edits = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == 'equal':
            continue
        edits.append(LineEdit(start_line=i1 + 1, end_line=i2, new_text=''.join(new_lines[j1:j2])))
    return edits


async def edit_file(session: Session, uri: str, edits: list[LineEdit]) -> EditResult:
    uri = normalize_uri(uri)
    doc = await session.ensure_open(uri)
    content = apply_line_edits(doc.content, edits)
    if content == doc.content:
        return EditResult(uri=uri, applied=0, version=doc.version, content=content)

    write_text(to_path(uri), content)
    updated = await session.change_document(uri, content)
    logger.info('applied %d edit(s) to %s (version %d)', len(edits), uri, updated.version)
    return EditResult(uri=uri, applied=len(edits), version=updated.version, content=content)
