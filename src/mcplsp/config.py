"""
Configuration for one bridge instance.

Settings are resolved in this order (later wins):

1. Built-in defaults.
2. A ``.mcplsp.toml`` file in the workspace root.
3. Explicit overrides (command-line flags, or keyword arguments from an
   embedding server).

The log level additionally honours the ``MCPLSP_LOG`` environment variable
when neither the file nor an override sets it.
"""
from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_FILENAME = '.mcplsp.toml'
LOG_ENV_VAR = 'MCPLSP_LOG'


@dataclass
class BridgeConfig:
    workspace: Path
    command: str = ''
    args: list[str] = field(default_factory=list)
    # Extra directories watched alongside the workspace.
    roots: list[Path] = field(default_factory=list)
    request_timeout: float = 30.0
    debounce: float = 0.2
    max_parse_failures: int = 3
    watch_queue_size: int = 1024
    shutdown_grace: float = 2.0
    initialization_options: dict | None = None
    env: dict[str, str] = field(default_factory=dict)
    log_level: str | None = None

    def __post_init__(self):
        self.workspace = Path(self.workspace).resolve()
        self.roots = [Path(r).resolve() for r in self.roots]

    @property
    def watch_roots(self) -> list[Path]:
        """The workspace plus any extra roots, without duplicates."""
        out = [self.workspace]
        for r in self.roots:
            if r not in out:
                out.append(r)
        return out


_FLOAT_KEYS = {'request_timeout', 'debounce', 'shutdown_grace'}
_INT_KEYS = {'max_parse_failures', 'watch_queue_size'}


def _read_project_config(workspace: Path) -> dict:
    """Parse ``.mcplsp.toml`` in *workspace*; missing file means no settings."""
    path = workspace / CONFIG_FILENAME
    if not path.is_file():
        return {}
    try:
        return tomllib.loads(path.read_text(encoding='utf-8'))
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning('ignoring unreadable %s: %s', path, e)
        return {}


def _coerce(key: str, value):
    if key in _FLOAT_KEYS:
        value = float(value)
        if value < 0:
            raise ValueError(f'{key} must not be negative')
    elif key in _INT_KEYS:
        value = int(value)
        if value < 1:
            raise ValueError(f'{key} must be at least 1')
    elif key == 'args':
        value = [str(a) for a in value]
    elif key == 'roots':
        value = [Path(r) for r in value]
    elif key == 'env':
        value = {str(k): str(v) for k, v in dict(value).items()}
    return value


def load_config(workspace: str | Path, **overrides) -> BridgeConfig:
    """Build a :class:`BridgeConfig` for *workspace* from file and *overrides*.

    Overrides whose value is None are treated as "not given".
    """
    workspace = Path(workspace).resolve()
    known = {f.name for f in fields(BridgeConfig)} - {'workspace'}

    settings: dict = {}
    for key, value in _read_project_config(workspace).items():
        if key not in known:
            logger.warning('unknown setting %r in %s', key, CONFIG_FILENAME)
            continue
        try:
            settings[key] = _coerce(key, value)
        except (TypeError, ValueError) as e:
            logger.warning('ignoring setting %r in %s: %s', key, CONFIG_FILENAME, e)

    for key, value in overrides.items():
        if key not in known:
            raise TypeError(f'unknown configuration key {key!r}')
        if value is not None:
            settings[key] = _coerce(key, value)

    # Relative extra roots are relative to the workspace, not the CWD.
    if 'roots' in settings:
        settings['roots'] = [r if r.is_absolute() else workspace / r for r in settings['roots']]

    if not settings.get('log_level'):
        settings['log_level'] = os.environ.get(LOG_ENV_VAR) or None

    return BridgeConfig(workspace=workspace, **settings)


def log_level(raw: str | None, default: int = logging.WARNING) -> int:
    """Map a level name such as ``'debug'`` to a :mod:`logging` constant."""
    if not raw:
        return default
    level = getattr(logging, raw.strip().upper(), None)
    return level if isinstance(level, int) else default
