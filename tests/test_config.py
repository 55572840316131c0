"""Tests for mcplsp.config."""
from __future__ import annotations

import logging

import pytest

from mcplsp.config import CONFIG_FILENAME, LOG_ENV_VAR, load_config, log_level


class TestLoadConfig:
    def test_defaults(self, workspace, monkeypatch):
        monkeypatch.delenv(LOG_ENV_VAR, raising=False)
        config = load_config(workspace)
        assert config.workspace == workspace
        assert config.request_timeout == 30.0
        assert config.debounce == 0.2
        assert config.max_parse_failures == 3
        assert config.log_level is None
        assert config.watch_roots == [workspace]

    def test_project_file(self, workspace):
        (workspace / CONFIG_FILENAME).write_text(
            'command = "gopls"\n'
            'args = ["serve"]\n'
            'request_timeout = 5\n'
            'roots = ["vendor", "vendor"]\n'
            '[initialization_options]\n'
            'strict = true\n'
        )
        config = load_config(workspace)
        assert config.command == 'gopls'
        assert config.args == ['serve']
        assert config.request_timeout == 5.0
        assert config.initialization_options == {'strict': True}
        assert config.watch_roots == [workspace, workspace / 'vendor']

    def test_overrides_win_and_none_is_ignored(self, workspace):
        (workspace / CONFIG_FILENAME).write_text('command = "gopls"\ndebounce = 1.0\n')
        config = load_config(workspace, command='pyright', debounce=None)
        assert config.command == 'pyright'
        assert config.debounce == 1.0

    def test_bad_file_values_are_skipped(self, workspace, caplog):
        (workspace / CONFIG_FILENAME).write_text('debounce = -1\nbogus = 3\nmax_parse_failures = 5\n')
        with caplog.at_level(logging.WARNING, logger='mcplsp.config'):
            config = load_config(workspace)
        assert config.debounce == 0.2
        assert config.max_parse_failures == 5
        assert 'bogus' in caplog.text

    def test_unreadable_file_is_ignored(self, workspace):
        (workspace / CONFIG_FILENAME).write_text('not = [valid\n')
        assert load_config(workspace).command == ''

    def test_bad_override_raises(self, workspace):
        with pytest.raises(TypeError):
            load_config(workspace, colour='blue')
        with pytest.raises(ValueError):
            load_config(workspace, watch_queue_size=0)

    def test_log_level_from_environment(self, workspace, monkeypatch):
        monkeypatch.setenv(LOG_ENV_VAR, 'debug')
        assert load_config(workspace).log_level == 'debug'
        assert load_config(workspace, log_level='ERROR').log_level == 'ERROR'


class TestLogLevel:
    @pytest.mark.parametrize('raw, expected', [
        ('debug', logging.DEBUG),
        (' INFO ', logging.INFO),
        (None, logging.WARNING),
        ('loud', logging.WARNING),
    ])
    def test_names(self, raw, expected):
        assert log_level(raw) == expected
