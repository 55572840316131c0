"""Result shapes and small helpers shared by the tool functions."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from lsprotocol import types as lsp

from mcplsp.document import detect_language_id, read_text, to_path
from mcplsp.session import Session


@dataclass(frozen=True)
class NotFound:
    """A well-formed query that the analyzer had no answer for."""
    tool: str
    uri: str
    position: lsp.Position | None = None

    def __bool__(self) -> bool:
        return False

    def __str__(self) -> str:
        where = to_path(self.uri)
        if self.position is not None:
            where = f'{where}:{self.position.line + 1}:{self.position.character + 1}'
        return f'{self.tool}: nothing found at {where}'


@dataclass(frozen=True)
class LocationMatch:
    location: lsp.Location
    # Source lines covered by the location's range, newline-joined.
    snippet: str
    language_id: str

    @property
    def uri(self) -> str:
        return self.location.uri

    @property
    def path(self) -> Path:
        return to_path(self.location.uri)

    @property
    def line(self) -> int:
        """1-based start line."""
        return self.location.range.start.line + 1

    @property
    def column(self) -> int:
        return self.location.range.start.character + 1


def identifier(uri: str) -> lsp.TextDocumentIdentifier:
    return lsp.TextDocumentIdentifier(uri=uri)


def source_of(session: Session, uri: str) -> str | None:
    """Current text of *uri*: the open document if there is one, else disk."""
    doc = session.document(uri)
    if doc is not None and doc.is_open:
        return doc.content
    try:
        return read_text(to_path(uri))
    except OSError:
        return None


def source_lines(session: Session, uri: str) -> list[str]:
    text = source_of(session, uri)
    return text.splitlines() if text is not None else []


def snippet(lines: list[str], rng: lsp.Range) -> str:
    return '\n'.join(lines[rng.start.line:rng.end.line + 1])


def to_locations(result) -> list[lsp.Location]:
    """Flatten a definition-style result into plain Locations."""
    if result is None:
        return []
    if not isinstance(result, (list, tuple)):
        result = [result]
    out = []
    for item in result:
        if isinstance(item, lsp.LocationLink):
            out.append(lsp.Location(uri=item.target_uri, range=item.target_selection_range))
        elif isinstance(item, lsp.Location):
            out.append(item)
    return out


def with_snippets(session: Session, locations: list[lsp.Location]) -> list[LocationMatch]:
    cache: dict[str, list[str]] = {}
    matches = []
    for loc in locations:
        if loc.uri not in cache:
            cache[loc.uri] = source_lines(session, loc.uri)
        matches.append(LocationMatch(location=loc, snippet=snippet(cache[loc.uri], loc.range),
                                     language_id=detect_language_id(to_path(loc.uri))))
    return matches
