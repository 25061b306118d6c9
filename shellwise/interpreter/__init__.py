"""
Command Interpreter Module for shellwise.

Turns natural language into risk-scored commands:
- models: Command, ParsedCommand, RiskLevel and context types
- rules: Built-in first-match-wins pattern rules
- context: Project type and git state discovery
- command_interpreter: Rule matching with completion-service fallback
"""

from .models import (
    RiskLevel, CommandCategory, Command, ParsedCommand, ParseSource,
    UserPreferences, GitState, ParsingContext,
)
from .rules import InterpreterRule, default_rules
from .context import detect_project_type, detect_git_state, build_parsing_context
from .command_interpreter import CommandInterpreter

__all__ = [
    'RiskLevel',
    'CommandCategory',
    'Command',
    'ParsedCommand',
    'ParseSource',
    'UserPreferences',
    'GitState',
    'ParsingContext',
    'InterpreterRule',
    'default_rules',
    'detect_project_type',
    'detect_git_state',
    'build_parsing_context',
    'CommandInterpreter',
]
