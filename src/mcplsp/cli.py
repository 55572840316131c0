"""
mcplsp – run one tool call against a language server from the command line.

Usage
-----
    mcplsp --workspace . --lsp pyright-langserver definition src/app.py:12:8 -- --stdio
    mcplsp --workspace . --lsp gopls references main.go:30:6
    mcplsp --workspace . --lsp gopls diagnostics main.go --wait 2
    mcplsp --workspace . --lsp rust-analyzer rename src/lib.rs:4:8 new_name

Everything after ``--`` is passed to the language server.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from mcplsp.config import LOG_ENV_VAR, load_config, log_level
from mcplsp.document import read_text, to_uri
from mcplsp.errors import BridgeError
from mcplsp.session import Session
from mcplsp.tools import (
    LineEdit,
    definition,
    diagnostics,
    edit_file,
    hover,
    references,
    rename_symbol,
)
from mcplsp.tools.formatting import (
    parse_location,
    render_diagnostics,
    render_edit,
    render_hover,
    render_locations,
    render_references,
    render_rename,
)
from mcplsp.watcher import WorkspaceWatcher

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog='mcplsp',
        description='Ask a language server about a workspace, one tool call at a time.',
    )
    p.add_argument('--workspace', metavar='DIR', default='.',
                   help='Workspace root handed to the language server (default: .)')
    p.add_argument('--lsp', metavar='COMMAND',
                   help='Language server executable to launch')
    p.add_argument('--timeout', metavar='SECONDS', type=float, default=None,
                   help='Per-request timeout (default: 30, or request_timeout in .mcplsp.toml)')
    p.add_argument('--no-watch', dest='watch', action='store_false',
                   help='Do not watch the workspace for file changes')
    p.add_argument('--version', action='store_true', default=False,
                   help='Print the mcplsp version and exit')
    p.add_argument('--log-level', metavar='LEVEL', default=None,
                   choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                   help=f'Logging level written to stderr (default: ${LOG_ENV_VAR} or WARNING)')

    tools = p.add_subparsers(dest='tool', metavar='TOOL')
    for name, help_text in (('definition', 'Show where the symbol is defined'),
                            ('references', 'List every reference to the symbol'),
                            ('hover', 'Show hover documentation for the symbol')):
        sub = tools.add_parser(name, help=help_text)
        sub.add_argument('location', metavar='PATH:LINE:COL')

    sub = tools.add_parser('diagnostics', help='Show diagnostics for a file')
    sub.add_argument('path', metavar='PATH')
    sub.add_argument('--context', type=int, default=2, help='Context lines around each diagnostic')
    sub.add_argument('--no-line-numbers', dest='line_numbers', action='store_false')
    sub.add_argument('--wait', metavar='SECONDS', type=float, default=2.0,
                     help='How long to wait for the first diagnostics push (default: 2)')

    sub = tools.add_parser('rename', help='Rename the symbol across the workspace')
    sub.add_argument('location', metavar='PATH:LINE:COL')
    sub.add_argument('new_name', metavar='NEW_NAME')

    sub = tools.add_parser('edit', help='Replace lines START..END of a file (1-based, inclusive)')
    sub.add_argument('path', metavar='PATH')
    sub.add_argument('start', type=int)
    sub.add_argument('end', type=int)
    sub.add_argument('--text', default=None, help='Replacement text (default: read stdin)')
    return p


def _split_lsp_args(argv: list[str]) -> tuple[list[str], list[str]]:
    if '--' in argv:
        i = argv.index('--')
        return argv[:i], argv[i + 1:]
    return argv, []


def _resolve(path: str | Path, workspace: Path) -> Path:
    path = Path(path)
    if path.is_absolute():
        return path
    if not path.exists() and (workspace / path).exists():
        return workspace / path
    return path.absolute()


async def _call_tool(args, session: Session, workspace: Path) -> str:
    if args.tool in ('definition', 'references', 'hover', 'rename'):
        path, position = parse_location(args.location)
        uri = to_uri(_resolve(path, workspace))
        if args.tool == 'definition':
            return render_locations(await definition(session, uri, position))
        if args.tool == 'references':
            return render_references(await references(session, uri, position), args.location)
        if args.tool == 'hover':
            return render_hover(await hover(session, uri, position))
        return render_rename(await rename_symbol(session, uri, position, args.new_name))

    path = _resolve(args.path, workspace)
    uri = to_uri(path)
    if args.tool == 'diagnostics':
        report = await diagnostics(session, uri, wait=args.wait)
        return render_diagnostics(report, read_text(path), context_lines=args.context,
                                  show_line_numbers=args.line_numbers)
    text = args.text if args.text is not None else sys.stdin.read()
    result = await edit_file(session, uri, [LineEdit(args.start, args.end, text)])
    return render_edit(result)


async def _run(args, lsp_args: list[str]) -> str:
    config = load_config(args.workspace, command=args.lsp, args=lsp_args or None,
                         request_timeout=args.timeout, log_level=args.log_level)
    if config.log_level:
        logging.getLogger().setLevel(log_level(config.log_level))
    if not config.command:
        raise BridgeError('no language server given; pass --lsp or set command in .mcplsp.toml')

    session = Session(config)
    await session.start()
    watcher = WorkspaceWatcher.from_config(config, session) if args.watch else None
    try:
        if watcher is not None:
            await watcher.start()
        return await _call_tool(args, session, config.workspace)
    finally:
        if watcher is not None:
            await watcher.stop()
        await session.shutdown()


def main(argv: list[str] | None = None) -> int:
    """Entry point for the ``mcplsp`` command."""
    own_args, lsp_args = _split_lsp_args(sys.argv[1:] if argv is None else argv)
    parser = _build_parser()
    args = parser.parse_args(own_args)
    logging.basicConfig(
        level=log_level(args.log_level or os.environ.get(LOG_ENV_VAR)),
        format='%(levelname)s %(name)s: %(message)s',
        stream=sys.stderr,
    )

    if args.version:
        from mcplsp import __version__
        print(f'mcplsp {__version__}')
        return 0
    if args.tool is None:
        parser.error('a TOOL is required')

    try:
        output = asyncio.run(_run(args, lsp_args))
    except ValueError as e:
        parser.error(str(e))
    except (BridgeError, OSError) as e:
        print(f'Error: {e}', file=sys.stderr)
        return 1
    print(output)
    return 0


if __name__ == '__main__':
    sys.exit(main())
