"""
Pytest configuration and shared fixtures for shellwise tests.
"""

import pytest
from datetime import datetime, timedelta
from typing import List, Optional

from shellwise.execution.path_checker import InMemoryPathChecker
from shellwise.execution.process_runner import FakeProcessRunner
from shellwise.execution.policy_executor import SecurityPolicyExecutor
from shellwise.execution.security_policy import default_security_policy
from shellwise.interpreter.command_interpreter import CommandInterpreter
from shellwise.interpreter.models import ParsingContext, UserPreferences
from shellwise.learning.history_types import HistoryEntry
from shellwise.llm.completion_service import CompletionService


class ScriptedCompletionService(CompletionService):
    """Completion service returning canned responses in order."""

    def __init__(self, responses: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.responses = list(responses or [])
        self.error = error
        self.prompts: List[str] = []

    def complete(self, prompt_text, context=None):
        self.prompts.append(prompt_text)
        if self.error is not None:
            raise self.error
        return self.responses.pop(0) if self.responses else ""


@pytest.fixture
def fake_runner():
    """In-memory process runner; every call is recorded."""
    return FakeProcessRunner()


@pytest.fixture
def path_checker():
    return InMemoryPathChecker(home='/home/user', cwd='/workspace')


@pytest.fixture
def executor(fake_runner, path_checker):
    """Executor with the stock policy and a short kill grace period."""
    return SecurityPolicyExecutor(
        default_security_policy(),
        runner=fake_runner,
        path_checker=path_checker,
        kill_grace_period=0.05,
    )


@pytest.fixture
def completion_service():
    return ScriptedCompletionService()


@pytest.fixture
def interpreter(completion_service):
    return CommandInterpreter(completion_service)


@pytest.fixture
def parsing_context():
    return ParsingContext(
        current_directory='/workspace/project',
        platform='linux',
        shell_type='bash',
        preferences=UserPreferences(),
    )


@pytest.fixture
def make_entry():
    """Factory for HistoryEntry with sensible defaults and explicit timing."""
    base = datetime(2024, 3, 4, 9, 0, 0)

    def _make(command: str, args=(), offset: float = 0.0, duration: float = 1.0,
              success: bool = True, session_id: str = "s1", **fields) -> HistoryEntry:
        started = base + timedelta(seconds=offset)
        return HistoryEntry(
            session_id=session_id,
            command=command,
            args=tuple(args),
            started_at=started,
            completed_at=started + timedelta(seconds=duration),
            exit_code=0 if success else 1,
            duration=duration,
            success=success,
            working_directory=fields.pop('working_directory', '/workspace/project'),
            **fields
        )

    return _make


@pytest.fixture(autouse=True)
def reset_logging():
    """Reset logging configuration before each test."""
    import logging
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)
    logging.root.setLevel(logging.WARNING)
    yield


# Pytest markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (fast, no external dependencies)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (spawn real POSIX processes)"
    )
    config.addinivalue_line(
        "markers", "providers: LLM provider tests (external clients mocked)"
    )
    config.addinivalue_line(
        "markers", "slow: Slow tests (can be skipped with -m 'not slow')"
    )
