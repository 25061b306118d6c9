"""
Command Execution Module for shellwise.

This module validates and runs commands under a declarative security policy:
- Allow/block lists, path globs and dangerous pattern rules
- Timeout with graceful-then-forceful termination
- Output size limits
- Cancellation tokens
- Append-only audit log

Components:
- security_policy: Policy data, violation types and rule loading
- policy_executor: Validation and bounded execution
- process_runner: Process-execution boundary (real and fake)
- path_checker: Path classification and glob matching (real and fake)
"""

from .cancellation import CancellationToken
from .security_policy import (
    SecurityPolicy, SecurityViolation, ViolationType, Severity,
    DangerousPatternRule, PatternScope, default_security_policy,
    load_security_policy, load_dangerous_patterns,
)
from .process_runner import (
    ProcessRunner, AsyncioProcessRunner, FakeProcessRunner, ScriptedProcess,
    ProcessSpec, ProcessOutcome, KillReason,
)
from .path_checker import PathChecker, FilesystemPathChecker, InMemoryPathChecker
from .policy_executor import (
    SecurityPolicyExecutor, SecurityError, OutputLimitExceeded,
    ExecutionRequest, ExecutionResult, AuditRecord, ErrorCategory,
)

__all__ = [
    'CancellationToken',
    'SecurityPolicy',
    'SecurityViolation',
    'ViolationType',
    'Severity',
    'DangerousPatternRule',
    'PatternScope',
    'default_security_policy',
    'load_security_policy',
    'load_dangerous_patterns',
    'ProcessRunner',
    'AsyncioProcessRunner',
    'FakeProcessRunner',
    'ScriptedProcess',
    'ProcessSpec',
    'ProcessOutcome',
    'KillReason',
    'PathChecker',
    'FilesystemPathChecker',
    'InMemoryPathChecker',
    'SecurityPolicyExecutor',
    'SecurityError',
    'OutputLimitExceeded',
    'ExecutionRequest',
    'ExecutionResult',
    'AuditRecord',
    'ErrorCategory',
]
