"""
Single-request navigation tools: definition, references and hover.

Each opens the queried document if needed, issues one LSP request and maps
an empty or null answer to :class:`~mcplsp.tools.common.NotFound`.
Transport, timeout and state errors propagate unchanged.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from lsprotocol import types as lsp

from mcplsp.document import normalize_uri
from mcplsp.session import Session
from mcplsp.tools.common import (
    LocationMatch,
    NotFound,
    identifier,
    to_locations,
    with_snippets,
)

logger = logging.getLogger(__name__)


async def definition(session: Session, uri: str, position: lsp.Position) -> list[LocationMatch] | NotFound:
    uri = normalize_uri(uri)
    await session.ensure_open(uri)
    logger.debug('definition %s %d:%d', uri, position.line, position.character)
    result = await session.request(lsp.TEXT_DOCUMENT_DEFINITION, lsp.DefinitionParams(
        text_document=identifier(uri), position=position))
    locations = to_locations(result)
    if not locations:
        return NotFound('definition', uri, position)
    return with_snippets(session, locations)


async def references(session: Session, uri: str, position: lsp.Position, *,
                     include_declaration: bool = True) -> list[LocationMatch] | NotFound:
    uri = normalize_uri(uri)
    await session.ensure_open(uri)
    logger.debug('references %s %d:%d', uri, position.line, position.character)
    result = await session.request(lsp.TEXT_DOCUMENT_REFERENCES, lsp.ReferenceParams(
        text_document=identifier(uri), position=position,
        context=lsp.ReferenceContext(include_declaration=include_declaration)))
    locations = to_locations(result)
    if not locations:
        return NotFound('references', uri, position)
    return with_snippets(session, locations)


@dataclass(frozen=True)
class HoverResult:
    uri: str
    position: lsp.Position
    text: str
    range: lsp.Range | None = None


def _marked_string(item) -> str:
    if isinstance(item, str):
        return item
    language = getattr(item, 'language', None)
    if language is not None:
        return f'```{language}\n{item.value}\n```'
    return getattr(item, 'value', '')


def hover_text(contents) -> str:
    """Flatten hover contents (markup, marked string or a list of them) to text."""
    if contents is None:
        return ''
    if isinstance(contents, lsp.MarkupContent):
        return contents.value
    if isinstance(contents, (list, tuple)):
        return '\n\n'.join(part for part in (_marked_string(c) for c in contents) if part)
    return _marked_string(contents)


async def hover(session: Session, uri: str, position: lsp.Position) -> HoverResult | NotFound:
    uri = normalize_uri(uri)
    await session.ensure_open(uri)
    result = await session.request(lsp.TEXT_DOCUMENT_HOVER, lsp.HoverParams(
        text_document=identifier(uri), position=position))
    text = hover_text(result.contents).strip() if result is not None else ''
    if not text:
        return NotFound('hover', uri, position)
    return HoverResult(uri=uri, position=position, text=text, range=result.range)
