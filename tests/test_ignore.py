"""Tests for mcplsp.ignore: gitignore-style precedence."""
from __future__ import annotations

import pytest

from mcplsp.ignore import IgnoreMatcher, IgnoreRule


def _matcher(tmp_path, files: dict[str, str]) -> IgnoreMatcher:
    for rel, text in files.items():
        path = tmp_path / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
    return IgnoreMatcher.from_root(tmp_path)


class TestPrecedence:
    def test_nested_negation_overrides_root_rule(self, tmp_path):
        m = _matcher(tmp_path, {
            '.gitignore': '*.log\n',
            'sub/.gitignore': '!keep.log\n',
        })
        assert not m.is_ignored(tmp_path / 'sub' / 'keep.log')
        assert m.is_ignored(tmp_path / 'sub' / 'other.log')
        assert m.is_ignored(tmp_path / 'keep.log')

    def test_root_rule_alone_filters(self, tmp_path):
        m = _matcher(tmp_path, {'.gitignore': 'build/\n'})
        assert m.is_ignored(tmp_path / 'build' / 'out.o')
        assert not m.is_ignored(tmp_path / 'src' / 'main.c')

    def test_last_rule_wins(self, tmp_path):
        m = _matcher(tmp_path, {'.gitignore': '*.txt\n!important.txt\n'})
        assert not m.is_ignored(tmp_path / 'important.txt')
        m = _matcher(tmp_path, {'.gitignore': '!important.txt\n*.txt\n'})
        assert m.is_ignored(tmp_path / 'important.txt')

    def test_nested_rule_only_applies_below_its_directory(self, tmp_path):
        m = _matcher(tmp_path, {'pkg/.gitignore': '*.gen.py\n'})
        assert m.is_ignored(tmp_path / 'pkg' / 'deep' / 'a.gen.py')
        assert not m.is_ignored(tmp_path / 'a.gen.py')

    def test_cannot_reinclude_inside_ignored_directory(self, tmp_path):
        m = _matcher(tmp_path, {'.gitignore': 'vendor/\n!vendor/keep.py\n'})
        assert m.is_ignored(tmp_path / 'vendor' / 'keep.py')

    def test_ignored_directory_hides_its_ignore_file(self, tmp_path):
        m = _matcher(tmp_path, {
            '.gitignore': 'out/\n',
            'out/.gitignore': '!*\n',
        })
        assert all(rule.base != 'out' for rule in m.rules)


class TestPatterns:
    @pytest.mark.parametrize('pattern,path,is_dir,expected', [
        ('*.pyc', 'a/b/c.pyc', False, True),
        ('/top.txt', 'top.txt', False, True),
        ('/top.txt', 'sub/top.txt', False, False),
        ('docs/*.md', 'docs/a.md', False, True),
        ('docs/*.md', 'docs/x/a.md', False, False),
        ('**/cache', 'a/b/cache', True, True),
        ('logs/**', 'logs/a/b.txt', False, True),
        ('a/**/z', 'a/z', False, True),
        ('a/**/z', 'a/b/c/z', False, True),
        ('tmp/', 'tmp', False, False),
        ('tmp/', 'tmp', True, True),
        ('file?.c', 'file1.c', False, True),
        ('file?.c', 'file10.c', False, False),
        ('[ab].c', 'b.c', False, True),
        ('[!ab].c', 'b.c', False, False),
        ('\\#hash', '#hash', False, True),
    ])
    def test_pattern(self, tmp_path, pattern, path, is_dir, expected):
        m = IgnoreMatcher.from_lines(tmp_path, [pattern])
        assert m.is_ignored(path, is_dir=is_dir) is expected

    def test_comments_and_blank_lines(self):
        assert IgnoreRule.parse('# comment') is None
        assert IgnoreRule.parse('   ') is None
        assert IgnoreRule.parse('!') is None


class TestAlwaysIgnored:
    @pytest.mark.parametrize('rel', [
        '.git/config', 'node_modules/x/index.js', '.venv/lib/site.py',
        'pkg/__pycache__/m.pyc', 'notes.txt~', 'a.py.swp', 'old.bak',
    ])
    def test_builtin(self, tmp_path, rel):
        assert IgnoreMatcher(root=tmp_path.resolve()).is_ignored(tmp_path / rel)

    def test_outside_root(self, tmp_path):
        m = IgnoreMatcher(root=(tmp_path / 'ws').resolve())
        assert not m.contains(tmp_path / 'elsewhere.py')
        assert m.is_ignored(tmp_path / 'elsewhere.py')

    def test_root_itself_is_not_ignored(self, tmp_path):
        assert not IgnoreMatcher(root=tmp_path.resolve()).is_ignored(tmp_path.resolve())
