"""
Path classification and glob matching for policy checks.

FilesystemPathChecker resolves arguments against the real filesystem
(following symlinks); InMemoryPathChecker only normalizes strings and
can be given a fake symlink table for tests.
"""

import os
import fnmatch
import posixpath
from abc import ABC, abstractmethod
from typing import Optional, Dict, Iterable


class PathChecker(ABC):
    """Decides whether an argument is a path and whether it hits a glob."""

    def looks_like_path(self, argument: str) -> bool:
        """Arguments containing a separator or starting with '.' are paths."""
        return '/' in argument or '\\' in argument or argument.startswith('.')

    @abstractmethod
    def resolve(self, path: str, cwd: Optional[str] = None) -> str:
        """Absolute, normalized form of ``path`` relative to ``cwd``."""

    def matches(self, path: str, pattern: str) -> bool:
        """
        Glob match, or exact/prefix directory match for plain patterns.

        ``/root`` matches ``/root`` and ``/root/.bashrc`` but not ``/rootfs``.
        """
        if any(ch in pattern for ch in '*?['):
            return fnmatch.fnmatchcase(path, pattern)
        pattern = pattern.rstrip('/') or '/'
        if pattern == '/':
            return path.startswith('/')
        return path == pattern or path.startswith(pattern + '/')

    def matches_any(self, path: str, patterns: Iterable[str]) -> Optional[str]:
        """First pattern in ``patterns`` matching ``path``, if any."""
        for pattern in patterns:
            if self.matches(path, pattern):
                return pattern
        return None


class FilesystemPathChecker(PathChecker):
    """Resolves paths through the real filesystem."""

    def resolve(self, path: str, cwd: Optional[str] = None) -> str:
        expanded = os.path.expanduser(path)
        if not os.path.isabs(expanded):
            expanded = os.path.join(cwd or os.getcwd(), expanded)
        return os.path.realpath(expanded)


class InMemoryPathChecker(PathChecker):
    """Pure string normalization with an optional fake symlink table."""

    def __init__(self, symlinks: Optional[Dict[str, str]] = None,
                 home: str = '/home/user', cwd: str = '/workspace'):
        self.symlinks = dict(symlinks or {})
        self.home = home
        self.cwd = cwd

    def resolve(self, path: str, cwd: Optional[str] = None) -> str:
        if path == '~' or path.startswith('~/'):
            path = self.home + path[1:]
        path = path.replace('\\', '/')
        if not path.startswith('/'):
            path = posixpath.join(cwd or self.cwd, path)
        resolved = posixpath.normpath(path)
        for link, target in self.symlinks.items():
            if resolved == link or resolved.startswith(link + '/'):
                resolved = posixpath.normpath(target + resolved[len(link):])
                break
        return resolved
