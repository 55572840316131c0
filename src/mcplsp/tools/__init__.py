"""tools/__init__.py: re-export the tool operations for convenience."""
from .common import LocationMatch, NotFound
from .diagnostics import DiagnosticsReport, diagnostics
from .edit import EditResult, LineEdit, apply_line_edits, derive_edits, edit_file
from .navigation import HoverResult, definition, hover, references
from .rename import RenameResult, apply_plan, plan_workspace_edit, rename_symbol

__all__ = [
    'DiagnosticsReport', 'EditResult', 'HoverResult', 'LineEdit', 'LocationMatch', 'NotFound',
    'RenameResult', 'apply_line_edits', 'apply_plan', 'definition', 'derive_edits',
    'diagnostics', 'edit_file', 'hover', 'plan_workspace_edit', 'references', 'rename_symbol',
]
