"""
Parsing context discovery.

Project type and git state are read straight from marker files so that
context building never spawns a process.
"""

import os
import sys
import logging
from pathlib import Path
from typing import Optional, Dict, List

from .models import ParsingContext, GitState, UserPreferences

logger = logging.getLogger(__name__)

# Checked in order; first marker found wins
PROJECT_MARKERS = [
    ('package.json', 'node'),
    ('Cargo.toml', 'rust'),
    ('go.mod', 'go'),
    ('pyproject.toml', 'python'),
    ('requirements.txt', 'python'),
    ('setup.py', 'python'),
]


def detect_project_type(directory: str) -> Optional[str]:
    """Return 'node', 'rust', 'go' or 'python' based on marker files."""
    base = Path(directory)
    for marker, project_type in PROJECT_MARKERS:
        if (base / marker).exists():
            return project_type
    return None


def _find_git_dir(directory: str) -> Optional[Path]:
    current = Path(directory).absolute()
    while True:
        candidate = current / '.git'
        if candidate.is_dir():
            return candidate
        if current.parent == current:
            return None
        current = current.parent


def detect_git_state(directory: str) -> GitState:
    """
    Read branch information from ``.git/HEAD``.

    ``has_changes`` is left unknown because answering it requires running git.
    """
    git_dir = _find_git_dir(directory)
    if git_dir is None:
        return GitState(is_repository=False)

    branch = None
    try:
        head = (git_dir / 'HEAD').read_text().strip()
        if head.startswith('ref: refs/heads/'):
            branch = head[len('ref: refs/heads/'):]
        elif head:
            branch = head[:8]  # Detached HEAD
    except OSError as e:
        logger.debug(f"Could not read git HEAD in {git_dir}: {e}")

    return GitState(is_repository=True, current_branch=branch)


def build_parsing_context(directory: str,
                          environment: Optional[Dict[str, str]] = None,
                          recent_commands: Optional[List[str]] = None,
                          preferences: Optional[UserPreferences] = None) -> ParsingContext:
    """Assemble a ParsingContext for ``directory``."""
    return ParsingContext(
        current_directory=directory,
        platform=sys.platform,
        shell_type=os.path.basename(os.environ.get('SHELL', 'bash')),
        environment=dict(environment or {}),
        project_type=detect_project_type(directory),
        git_repository=detect_git_state(directory),
        recent_commands=list(recent_commands or []),
        preferences=preferences or UserPreferences(),
    )
