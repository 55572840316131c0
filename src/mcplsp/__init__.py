"""mcplsp – LSP client engine and workspace sync for tool-calling agents."""
from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version('mcplsp')
except PackageNotFoundError:
    __version__ = '0.0.0.dev0'
