"""
Symbol rename with all-or-nothing application.

Before the rename request is sent a :class:`Baseline` is taken: the time,
and the version of every open document.  The analyzer's workspace edit is
then turned into a :class:`RenamePlan`: for each target file, the snapshot
the edit applies to (its checksum, and its version if the file is open)
plus the resulting text.  A target that changed after the baseline, or
that changes between planning and application, aborts the whole rename
with :class:`~mcplsp.errors.ConflictDetected` and no file is touched.

Application stages every new file next to its target first, then moves
them all into place.  If one move fails the files already replaced are
restored, so the workspace ends up either fully renamed or unchanged.
Each open document then gets a single ``didChange``.
"""
from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from pathlib import Path

from lsprotocol import types as lsp
from pygls.workspace import TextDocument

from mcplsp.document import (
    content_checksum,
    discard,
    normalize_uri,
    read_text,
    stage_text,
    to_path,
    write_text,
)
from mcplsp.errors import ConflictDetected, ConflictingEdits, UnsupportedEdit
from mcplsp.session import Session
from mcplsp.tools.common import NotFound, identifier

logger = logging.getLogger(__name__)

# File timestamps come from a coarse kernel clock that can trail time.time_ns().
_MTIME_SLACK_NS = 10_000_000


@dataclass(frozen=True)
class Baseline:
    """Workspace state just before the rename request went out."""
    taken_ns: int
    versions: dict[str, int] = field(default_factory=dict)

    @classmethod
    def capture(cls, session: Session) -> 'Baseline':
        versions = {}
        for uri in session.open_uris():
            versions[uri] = session.document(uri).version
        return cls(taken_ns=time.time_ns(), versions=versions)

    def modified_since(self, path: Path) -> bool:
        try:
            mtime = path.stat().st_mtime_ns
        except OSError:
            return True
        return mtime > self.taken_ns - _MTIME_SLACK_NS


@dataclass(frozen=True)
class FilePlan:
    uri: str
    path: Path
    checksum: str
    # Set when the file was open: the version the edit was computed against.
    version: int | None
    original: str = field(repr=False)
    new_content: str = field(repr=False)
    edit_count: int


@dataclass(frozen=True)
class RenamePlan:
    files: tuple[FilePlan, ...]

    @property
    def edit_count(self) -> int:
        return sum(f.edit_count for f in self.files)


@dataclass(frozen=True)
class RenameResult:
    files: tuple[str, ...]
    edit_count: int

    @property
    def file_count(self) -> int:
        return len(self.files)


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

def _sort_key(edit) -> tuple[int, int, int, int]:
    start, end = edit.range.start, edit.range.end
    return start.line, start.character, end.line, end.character


def _before(a: lsp.Position, b: lsp.Position) -> bool:
    return (a.line, a.character) < (b.line, b.character)


def apply_text_edits(uri: str, content: str, edits) -> str:
    """Apply LSP text edits (UTF-16 positions) to *content*.

    Edits are applied back to front, so every range refers to the original
    text as LSP requires.  Overlapping ranges raise ``ConflictingEdits``.
    """
    ordered = sorted(edits, key=_sort_key)
    for prev, cur in zip(ordered, ordered[1:]):
        if _before(cur.range.start, prev.range.end):
            raise ConflictingEdits(f'overlapping edits in {uri}')
    doc = TextDocument(uri, source=content)
    for edit in reversed(ordered):
        doc.apply_change(lsp.TextDocumentContentChangePartial(range=edit.range, text=edit.new_text))
    return doc.source


def collect_edits(edit: lsp.WorkspaceEdit) -> dict[str, tuple[list, int | None]]:
    """Group a workspace edit's text edits by uri, with any expected version."""
    grouped: dict[str, tuple[list, int | None]] = {}
    for uri, edits in (edit.changes or {}).items():
        grouped.setdefault(normalize_uri(uri), ([], None))[0].extend(edits)
    for change in edit.document_changes or []:
        if not isinstance(change, lsp.TextDocumentEdit):
            raise UnsupportedEdit(f'{type(change).__name__} operations are not supported')
        uri = normalize_uri(change.text_document.uri)
        entry = grouped.setdefault(uri, ([], change.text_document.version))
        if entry[1] is None and change.text_document.version is not None:
            grouped[uri] = entry = (entry[0], change.text_document.version)
        for item in change.edits:
            if getattr(item, 'new_text', None) is None:
                raise UnsupportedEdit(f'{type(item).__name__} edits are not supported')
            entry[0].append(item)
    return grouped


def _changed_since(session: Session, baseline: Baseline, uri: str, path: Path) -> bool:
    if uri in baseline.versions:
        doc = session.document(uri)
        return doc is None or not doc.is_open or doc.version != baseline.versions[uri]
    return baseline.modified_since(path)


def plan_workspace_edit(session: Session, edit: lsp.WorkspaceEdit,
                        baseline: Baseline | None = None) -> RenamePlan:
    """Compute new file contents for *edit* against the current snapshots.

    With a *baseline*, every target that was edited after it was taken is a
    conflict: the analyzer may have computed its edits from older text.
    """
    files = []
    stale = []
    for uri, (edits, expected_version) in collect_edits(edit).items():
        path = to_path(uri)
        if baseline is not None and _changed_since(session, baseline, uri, path):
            logger.warning('%s changed while the rename was in flight', path)
            stale.append(uri)
            continue
        doc = session.document(uri)
        if doc is not None and doc.is_open:
            if expected_version is not None and expected_version != doc.version:
                raise ConflictDetected(
                    f'{path} is at version {doc.version}, edit expects {expected_version}', [uri])
            base, version = doc.content, doc.version
        else:
            try:
                base = read_text(path)
            except OSError as e:
                raise ConflictDetected(f'cannot read {path}: {e}', [uri]) from e
            version = None
        files.append(FilePlan(uri=uri, path=path, checksum=content_checksum(base), version=version,
                              original=base, new_content=apply_text_edits(uri, base, edits),
                              edit_count=len(edits)))
    if stale:
        names = ', '.join(str(to_path(uri)) for uri in stale)
        raise ConflictDetected(f'rename aborted; modified during the request: {names}', stale)
    return RenamePlan(files=tuple(files))


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def find_conflicts(session: Session, plan: RenamePlan) -> list[str]:
    """URIs whose disk content or open version no longer matches the plan."""
    conflicts = []
    for item in plan.files:
        try:
            current = content_checksum(read_text(item.path))
        except OSError:
            current = None
        if current != item.checksum:
            logger.warning('%s changed on disk since the rename was planned', item.path)
            conflicts.append(item.uri)
            continue
        if item.version is not None:
            doc = session.document(item.uri)
            if doc is None or not doc.is_open or doc.version != item.version:
                logger.warning('%s changed in the session since the rename was planned', item.path)
                conflicts.append(item.uri)
    return conflicts


def _restore(replaced: list[FilePlan]) -> None:
    for item in reversed(replaced):
        try:
            write_text(item.path, item.original)
        except OSError as e:
            logger.error('could not restore %s after a failed rename: %s', item.path, e)


def write_plan(plan: RenamePlan) -> None:
    """Replace every file in *plan*, or none of them.

    All new contents are staged before the first file is replaced.  When a
    replacement fails, the files already replaced get their original text
    back and the error propagates.
    """
    staged: list[tuple[FilePlan, Path]] = []
    try:
        for item in plan.files:
            staged.append((item, stage_text(item.path, item.new_content)))
    except BaseException:
        for _, tmp in staged:
            discard(tmp)
        raise

    replaced: list[FilePlan] = []
    try:
        for item, tmp in staged:
            os.replace(tmp, item.path)
            replaced.append(item)
    except BaseException:
        logger.warning('rename failed after replacing %d of %d file(s); restoring',
                       len(replaced), len(staged))
        _restore(replaced)
        for _, tmp in staged:
            discard(tmp)
        raise


async def apply_plan(session: Session, plan: RenamePlan) -> RenameResult:
    conflicts = find_conflicts(session, plan)
    if conflicts:
        names = ', '.join(str(to_path(uri)) for uri in conflicts)
        raise ConflictDetected(f'rename aborted; modified since planning: {names}', conflicts)

    write_plan(plan)
    for item in plan.files:
        if session.is_open(item.uri):
            await session.change_document(item.uri, item.new_content)
    logger.info('rename applied %d edit(s) across %d file(s)', plan.edit_count, len(plan.files))
    return RenameResult(files=tuple(f.uri for f in plan.files), edit_count=plan.edit_count)


async def rename_symbol(session: Session, uri: str, position: lsp.Position,
                        new_name: str) -> RenameResult | NotFound:
    uri = normalize_uri(uri)
    await session.ensure_open(uri)
    baseline = Baseline.capture(session)
    edit = await session.request(lsp.TEXT_DOCUMENT_RENAME, lsp.RenameParams(
        text_document=identifier(uri), position=position, new_name=new_name))
    if edit is None or not (edit.changes or edit.document_changes):
        return NotFound('rename', uri, position)
    plan = plan_workspace_edit(session, edit, baseline)
    return await apply_plan(session, plan)
