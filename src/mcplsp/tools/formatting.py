"""
Plain-text rendering of tool results, as shown to an agent or on the CLI.
"""
from __future__ import annotations

from collections import defaultdict
from pathlib import Path

from lsprotocol import types as lsp

from mcplsp.document import to_path
from mcplsp.tools.common import LocationMatch, NotFound
from mcplsp.tools.diagnostics import DiagnosticsReport
from mcplsp.tools.edit import EditResult
from mcplsp.tools.navigation import HoverResult
from mcplsp.tools.rename import RenameResult

NO_HOVER = 'No hover information available at this position.'

_SEVERITY = {
    lsp.DiagnosticSeverity.Error: 'Error',
    lsp.DiagnosticSeverity.Warning: 'Warning',
    lsp.DiagnosticSeverity.Information: 'Info',
    lsp.DiagnosticSeverity.Hint: 'Hint',
}


def parse_location(text: str) -> tuple[Path, lsp.Position]:
    """Parse ``path:line:column`` (both 1-based) into a path and LSP position."""
    parts = text.rsplit(':', 2)
    if len(parts) != 3 or not parts[0]:
        raise ValueError(f"location must look like 'path:line:column', got {text!r}")
    path, line, column = parts
    try:
        line_no, col_no = int(line), int(column)
    except ValueError:
        raise ValueError(f'line and column must be integers in {text!r}') from None
    return Path(path), lsp.Position(line=max(line_no - 1, 0), character=max(col_no - 1, 0))


def code_block(code: str, language: str) -> str:
    return f'```{language}\n{code}\n```'


def render_not_found(result: NotFound) -> str:
    if result.tool == 'hover':
        return NO_HOVER
    return f'No {result.tool} results found.' if result.position is None else str(result)


def render_locations(matches: list[LocationMatch] | NotFound, label: str = 'Definition') -> str:
    if isinstance(matches, NotFound):
        return render_not_found(matches)
    blocks = []
    for match in matches:
        blocks.append(f'{label} found in {match.path}:{match.line}:{match.column}\n\n'
                      f'{code_block(match.snippet, match.language_id)}\n')
    return '\n'.join(blocks)


def render_references(matches: list[LocationMatch] | NotFound, query: str = 'symbol') -> str:
    if isinstance(matches, NotFound):
        return render_not_found(matches)
    by_file: dict[Path, list[LocationMatch]] = defaultdict(list)
    for match in matches:
        by_file[match.path].append(match)
    out = [f"Found {len(matches)} references to '{query}' in {len(by_file)} files:\n"]
    for path in sorted(by_file):
        out.append(f'File: {path}')
        for match in sorted(by_file[path], key=lambda m: (m.line, m.column)):
            first_line = match.snippet.split('\n', 1)[0]
            prefix = f'  Line {match.line}: '
            out.append(prefix + first_line)
            out.append(' ' * (len(prefix) + match.column - 1) + '^')
        out.append('')
    return '\n'.join(out)


def render_hover(result: HoverResult | NotFound) -> str:
    if isinstance(result, NotFound):
        return NO_HOVER
    return result.text


def _pointer(line: str, rng: lsp.Range, line_no: int) -> str:
    start = rng.start.character if line_no == rng.start.line else 0
    end = rng.end.character if line_no == rng.end.line else len(line)
    return ' ' * start + '^' * max(end - start, 1)


def render_diagnostics(report: DiagnosticsReport, content: str | None = None, *,
                       context_lines: int = 2, show_line_numbers: bool = True) -> str:
    """Render each diagnostic with surrounding source and a caret marker."""
    path = to_path(report.uri)
    if report.no_data_yet:
        return f'No diagnostics reported yet for {path}'
    if not report.diagnostics:
        return f'No diagnostics found for {path}'

    lines = content.splitlines() if content is not None else []
    out = [f'Diagnostics for {path}:\n']
    for i, diag in enumerate(report.diagnostics):
        if i:
            out.append('\n---\n')
        severity = _SEVERITY.get(diag.severity, 'Unknown')
        code = f' [{diag.code}]' if diag.code is not None else ''
        out.append(f'{severity}{code}: {diag.message}')
        if not lines:
            continue
        first = max(diag.range.start.line - context_lines, 0)
        last = min(diag.range.end.line + context_lines, len(lines) - 1)
        out.append('\nCode context:')
        for n in range(first, last + 1):
            text = lines[n]
            out.append(f'{n + 1:5} | {text}' if show_line_numbers else text)
            if diag.range.start.line <= n <= diag.range.end.line:
                prefix = '      | ' if show_line_numbers else ''
                out.append(prefix + _pointer(text, diag.range, n))
    return '\n'.join(out) + '\n'


def render_edit(result: EditResult) -> str:
    return f'Successfully applied {result.applied} edits to {to_path(result.uri)}'


def render_rename(result: RenameResult | NotFound) -> str:
    if isinstance(result, NotFound):
        return 'No rename edits returned for this position.'
    return f'Applied {result.edit_count} edits across {result.file_count} files'
