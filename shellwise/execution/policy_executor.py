"""
Security Policy Executor.

Validates a candidate command against a SecurityPolicy and runs it as a
bounded subprocess:
- Allow/block lists for command names
- Elevation blocking (sudo, su, doas)
- Path glob checks on path-like arguments
- Dangerous regex pattern library
- Restricted environment variables
- Timeout with SIGTERM then SIGKILL escalation
- Output size cap
- Append-only audit log
"""

import os
import time
import logging
from collections import deque
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from .cancellation import CancellationToken
from .path_checker import PathChecker, FilesystemPathChecker
from .process_runner import ProcessRunner, AsyncioProcessRunner, ProcessSpec, KillReason
from .security_policy import (
    SecurityPolicy, SecurityViolation, ViolationType, Severity, PatternScope,
    ELEVATION_COMMANDS, NETWORK_COMMANDS, WRITE_COMMANDS, default_security_policy,
)

logger = logging.getLogger(__name__)


class SecurityError(Exception):
    """Raised when a command fails policy validation. Nothing was spawned."""

    def __init__(self, message: str, violations: List[SecurityViolation]):
        super().__init__(message)
        self.violations = list(violations)


class OutputLimitExceeded(SecurityError):
    """Raised after a process was killed for exceeding the output cap."""

    def __init__(self, message: str, violations: List[SecurityViolation], result: "ExecutionResult"):
        super().__init__(message, violations)
        self.result = result


class ErrorCategory(Enum):
    """Categories of execution errors."""
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    SYNTAX_ERROR = "syntax_error"
    RUNTIME_ERROR = "runtime_error"
    RESOURCE_LIMIT = "resource_limit"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


@dataclass
class ExecutionRequest:
    """A validated-then-spawned program invocation."""
    program: str
    args: Tuple[str, ...] = ()
    working_directory: Optional[str] = None
    environment: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None
    cancel_token: Optional[CancellationToken] = None

    @property
    def command_line(self) -> str:
        return " ".join((self.program,) + tuple(self.args))


@dataclass
class ExecutionResult:
    """Result of one finished (or administratively killed) process."""
    program: str
    args: Tuple[str, ...]
    exit_code: int
    stdout: str
    stderr: str
    started_at: datetime
    ended_at: datetime
    duration: float
    working_directory: Optional[str] = None
    pid: Optional[int] = None
    signal: Optional[str] = None
    killed: bool = False
    kill_reason: Optional[KillReason] = None
    error_category: Optional[ErrorCategory] = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.killed

    @property
    def output_size(self) -> int:
        return len(self.stdout) + len(self.stderr)

    @property
    def command_line(self) -> str:
        return " ".join((self.program,) + tuple(self.args))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            'command': self.command_line,
            'exit_code': self.exit_code,
            'stdout': self.stdout[:1000] if self.stdout else "",  # Preview only
            'stderr': self.stderr[:1000] if self.stderr else "",
            'started_at': self.started_at.isoformat(),
            'ended_at': self.ended_at.isoformat(),
            'duration': self.duration,
            'success': self.success,
            'signal': self.signal,
            'killed': self.killed,
            'kill_reason': self.kill_reason.value if self.kill_reason else None,
            'error_category': self.error_category.value if self.error_category else None,
            'cwd': self.working_directory,
            'pid': self.pid,
            'output_size': self.output_size,
        }


@dataclass
class AuditRecord:
    """One audit log line, written for refused and executed commands alike."""
    audit_id: str
    timestamp: datetime
    program: str
    args: Tuple[str, ...]
    working_directory: Optional[str]
    exit_code: Optional[int]
    duration: float
    success: bool
    violations: List[SecurityViolation]
    output_size: int
    pid: Optional[int] = None
    killed: bool = False


class SecurityPolicyExecutor:
    """
    Validates commands against a policy and runs them as bounded subprocesses.

    Validation is fail-closed: every check runs, violations accumulate, and
    any violation refuses the command before a process is spawned.
    """

    def __init__(self,
                 policy: Optional[SecurityPolicy] = None,
                 runner: Optional[ProcessRunner] = None,
                 path_checker: Optional[PathChecker] = None,
                 kill_grace_period: float = 5.0,
                 audit_log_size: int = 10000,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Initialize the executor.

        Args:
            policy: Default policy (stock policy when None)
            runner: Process runner (real asyncio runner when None)
            path_checker: Path resolver (real filesystem when None)
            kill_grace_period: Seconds between SIGTERM and SIGKILL
            audit_log_size: Maximum audit records kept
            clock: Source of wall-clock timestamps
        """
        self.policy = policy or default_security_policy()
        self.runner = runner or AsyncioProcessRunner()
        self.path_checker = path_checker or FilesystemPathChecker()
        self.kill_grace_period = kill_grace_period
        self._clock = clock
        self._audit_log: deque = deque(maxlen=audit_log_size)
        self._audit_counter = 0

        logger.info(f"SecurityPolicyExecutor initialized:")
        logger.info(f"  Max execution time: {self.policy.max_execution_time}s")
        logger.info(f"  Max output size: {self.policy.max_output_size / (1024*1024):.1f}MB")
        logger.info(f"  Dangerous patterns: {len(self.policy.dangerous_patterns)}")
        logger.info(f"  Kill grace period: {kill_grace_period}s")

    def get_security_policy(self) -> SecurityPolicy:
        return self.policy

    def update_security_policy(self, overrides: Mapping[str, Any]) -> SecurityPolicy:
        """Merge ``overrides`` into the default policy and return the result."""
        self.policy = self.policy.merged(overrides)
        logger.info(f"Security policy updated: {sorted(overrides)}")
        return self.policy

    def effective_policy(self, policy: Optional[SecurityPolicy] = None,
                         overrides: Optional[Mapping[str, Any]] = None) -> SecurityPolicy:
        return (policy or self.policy).merged(overrides)

    def validate(self, request: ExecutionRequest,
                 policy: Optional[SecurityPolicy] = None) -> List[SecurityViolation]:
        """
        Run every policy check against ``request``.

        Returns:
            All violations found; empty means the command may run
        """
        policy = policy or self.policy
        violations: List[SecurityViolation] = []
        violations.extend(self._check_command_name(request, policy))
        violations.extend(self._check_elevation(request, policy))
        violations.extend(self._check_capabilities(request, policy))
        violations.extend(self._check_paths(request, policy))
        violations.extend(self._check_dangerous_patterns(request, policy))
        violations.extend(self._check_environment(request, policy))
        return violations

    def _check_command_name(self, request: ExecutionRequest,
                            policy: SecurityPolicy) -> List[SecurityViolation]:
        name = os.path.basename(request.program.strip())
        if not name:
            return [SecurityViolation(
                ViolationType.BLOCKED_COMMAND, Severity.HIGH,
                "Empty command",
                "Provide a program to run"
            )]

        violations = []
        if name in policy.blocked_commands:
            violations.append(SecurityViolation(
                ViolationType.BLOCKED_COMMAND, Severity.HIGH,
                f"Command '{name}' is blocked by security policy",
                "Use an alternative command or request policy modification"
            ))
        if policy.allowed_commands is not None and name not in policy.allowed_commands:
            violations.append(SecurityViolation(
                ViolationType.BLOCKED_COMMAND, Severity.MEDIUM,
                f"Command '{name}' is not in the allowed commands list",
                "Add the command to the allowed list or use an alternative"
            ))
        return violations

    def _check_elevation(self, request: ExecutionRequest,
                         policy: SecurityPolicy) -> List[SecurityViolation]:
        name = os.path.basename(request.program.strip())
        if name in ELEVATION_COMMANDS and not policy.allow_elevation:
            return [SecurityViolation(
                ViolationType.ELEVATION_ATTEMPT, Severity.CRITICAL,
                f"Privilege elevation via '{name}' is not allowed",
                "Run the command without elevated privileges"
            )]
        return []

    def _check_capabilities(self, request: ExecutionRequest,
                            policy: SecurityPolicy) -> List[SecurityViolation]:
        name = os.path.basename(request.program.strip())
        violations = []
        if not policy.allow_process_spawn:
            violations.append(SecurityViolation(
                ViolationType.PROCESS_SPAWN, Severity.CRITICAL,
                "Process spawning is disabled by security policy",
                "Enable allow_process_spawn to run commands"
            ))
        if not policy.allow_network_access and name in NETWORK_COMMANDS:
            violations.append(SecurityViolation(
                ViolationType.NETWORK_ACCESS, Severity.HIGH,
                f"Network access via '{name}' is disabled by security policy",
                "Enable allow_network_access or work offline"
            ))
        if not policy.allow_file_system_write and name in WRITE_COMMANDS:
            violations.append(SecurityViolation(
                ViolationType.FILE_WRITE_ATTEMPT, Severity.HIGH,
                f"File system writes via '{name}' are disabled by security policy",
                "Enable allow_file_system_write or use a read-only command"
            ))
        return violations

    def _check_paths(self, request: ExecutionRequest,
                     policy: SecurityPolicy) -> List[SecurityViolation]:
        candidates = [arg for arg in request.args if self.path_checker.looks_like_path(arg)]
        if request.working_directory:
            candidates.append(request.working_directory)

        violations = []
        for candidate in candidates:
            forms = {candidate, self.path_checker.resolve(candidate, request.working_directory)}

            blocked = None
            for form in forms:
                blocked = self.path_checker.matches_any(form, policy.blocked_paths)
                if blocked:
                    break
            if blocked:
                violations.append(SecurityViolation(
                    ViolationType.BLOCKED_PATH, Severity.HIGH,
                    f"Access to path '{candidate}' is blocked ({blocked})",
                    "Use a different path or request access permission"
                ))
                continue

            if policy.allowed_paths is not None and not any(
                self.path_checker.matches_any(form, policy.allowed_paths) for form in forms
            ):
                violations.append(SecurityViolation(
                    ViolationType.BLOCKED_PATH, Severity.MEDIUM,
                    f"Path '{candidate}' is not in the allowed paths list",
                    "Use a path within allowed directories"
                ))
        return violations

    def _check_dangerous_patterns(self, request: ExecutionRequest,
                                  policy: SecurityPolicy) -> List[SecurityViolation]:
        command_line = request.command_line
        violations = []
        for rule in policy.dangerous_patterns:
            if rule.scope is PatternScope.COMMAND_LINE:
                hit = rule.matches(command_line)
            else:
                hit = any(rule.matches(arg) for arg in request.args)
            if hit:
                violations.append(SecurityViolation(
                    ViolationType.DANGEROUS_PATTERN, rule.severity,
                    f"Dangerous pattern detected: {rule.description}",
                    rule.recommendation,
                    rule_id=rule.rule_id,
                ))
        return violations

    def _check_environment(self, request: ExecutionRequest,
                           policy: SecurityPolicy) -> List[SecurityViolation]:
        return [
            SecurityViolation(
                ViolationType.RESTRICTED_ENVIRONMENT, Severity.MEDIUM,
                f"Modification of restricted environment variable '{name}'",
                "Avoid modifying system environment variables"
            )
            for name in request.environment
            if name in policy.restricted_environment_vars
        ]

    def refuse(self, request: ExecutionRequest,
               violations: List[SecurityViolation]) -> SecurityError:
        """Audit a refused request and build the SecurityError describing it."""
        self._audit(request, violations=violations)
        logger.warning(f"Command refused: {request.command_line}")
        for violation in violations:
            logger.warning(f"  [{violation.severity.value}] {violation.description}")
        return SecurityError(
            f"Command blocked by security policy: "
            f"{'; '.join(v.description for v in violations)}",
            violations
        )

    async def execute(self, request: ExecutionRequest,
                      policy: Optional[SecurityPolicy] = None,
                      policy_overrides: Optional[Mapping[str, Any]] = None) -> ExecutionResult:
        """
        Validate and run a command.

        Args:
            request: What to run
            policy: Policy to apply instead of the executor default
            policy_overrides: Fields shallow-merged over the policy for this call

        Returns:
            ExecutionResult, also for non-zero exits and timeouts

        Raises:
            SecurityError: If validation produced any violation
            OutputLimitExceeded: If stdout exceeded ``max_output_size``
        """
        policy = self.effective_policy(policy, policy_overrides)
        violations = self.validate(request, policy)
        if violations:
            raise self.refuse(request, violations)

        timeout = policy.max_execution_time
        if request.timeout is not None:
            timeout = min(request.timeout, timeout)

        exec_env = os.environ.copy()
        exec_env.update(request.environment)

        logger.info(f"Executing command: {request.command_line}")
        logger.info(f"  CWD: {request.working_directory or os.getcwd()}")
        logger.info(f"  Timeout: {timeout}s")

        spec = ProcessSpec(
            program=request.program,
            args=tuple(request.args),
            cwd=request.working_directory,
            env=exec_env,
            timeout=timeout,
            cancel_token=request.cancel_token,
            max_output_size=policy.max_output_size,
            kill_grace_period=self.kill_grace_period,
        )

        started_at = self._clock()
        start_time = time.monotonic()
        try:
            outcome = await self.runner.run(spec)
        except OSError as e:
            duration = time.monotonic() - start_time
            logger.error(f"Failed to start {request.program}: {e}")
            not_found = isinstance(e, FileNotFoundError)
            result = ExecutionResult(
                program=request.program,
                args=tuple(request.args),
                exit_code=127 if not_found else 126,
                stdout="",
                stderr=str(e),
                started_at=started_at,
                ended_at=self._clock(),
                duration=duration,
                working_directory=request.working_directory,
                error_category=ErrorCategory.NOT_FOUND if not_found else ErrorCategory.PERMISSION,
            )
            self._audit(request, result=result)
            return result

        duration = time.monotonic() - start_time
        result = ExecutionResult(
            program=request.program,
            args=tuple(request.args),
            exit_code=outcome.exit_code,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
            started_at=started_at,
            ended_at=self._clock(),
            duration=duration,
            working_directory=request.working_directory,
            pid=outcome.pid,
            signal=outcome.signal,
            killed=outcome.killed,
            kill_reason=outcome.kill_reason,
        )
        if not result.success:
            result.error_category = self._categorize_error(result)

        if outcome.kill_reason is KillReason.OUTPUT_LIMIT:
            violation = SecurityViolation(
                ViolationType.OUTPUT_SIZE_EXCEEDED, Severity.HIGH,
                f"Output exceeded {policy.max_output_size} bytes; process killed",
                "Narrow the command's output or raise max_output_size"
            )
            self._audit(request, result=result, violations=[violation])
            logger.warning(f"Output limit exceeded by {request.command_line}")
            raise OutputLimitExceeded(violation.description, [violation], result)

        if outcome.kill_reason is KillReason.TIMEOUT:
            self._audit(request, result=result, violations=[SecurityViolation(
                ViolationType.TIMEOUT_EXCEEDED, Severity.MEDIUM,
                f"Command exceeded its {timeout}s time limit; process killed",
                "Raise the timeout or narrow the command"
            )])
        else:
            self._audit(request, result=result)
        if result.success:
            logger.info(f"✓ Command succeeded in {duration:.2f}s")
        else:
            logger.warning(
                f"Command failed: exit_code={result.exit_code}, "
                f"category={result.error_category.value}"
            )
        return result

    def _categorize_error(self, result: ExecutionResult) -> ErrorCategory:
        """
        Categorize a failed result by kill reason, then by output text.

        Args:
            result: A result whose ``success`` is False

        Returns:
            ErrorCategory enum
        """
        if result.kill_reason is KillReason.TIMEOUT:
            return ErrorCategory.TIMEOUT
        if result.kill_reason is KillReason.CANCELLED:
            return ErrorCategory.CANCELLED
        if result.kill_reason is KillReason.OUTPUT_LIMIT:
            return ErrorCategory.RESOURCE_LIMIT

        error_text = (result.stderr + result.stdout).lower()

        if 'permission denied' in error_text or 'access denied' in error_text:
            return ErrorCategory.PERMISSION

        if 'command not found' in error_text or 'no such file' in error_text:
            return ErrorCategory.NOT_FOUND

        if 'syntax error' in error_text or 'invalid syntax' in error_text:
            return ErrorCategory.SYNTAX_ERROR

        if 'connection refused' in error_text or 'network' in error_text:
            return ErrorCategory.NETWORK_ERROR

        if 'out of memory' in error_text or 'disk full' in error_text:
            return ErrorCategory.RESOURCE_LIMIT

        if result.exit_code != 0:
            return ErrorCategory.RUNTIME_ERROR

        return ErrorCategory.UNKNOWN

    def _audit(self, request: ExecutionRequest,
               result: Optional[ExecutionResult] = None,
               violations: Optional[List[SecurityViolation]] = None) -> AuditRecord:
        self._audit_counter += 1
        record = AuditRecord(
            audit_id=f"audit_{self._audit_counter:06d}",
            timestamp=self._clock(),
            program=request.program,
            args=tuple(request.args),
            working_directory=request.working_directory,
            exit_code=result.exit_code if result else None,
            duration=result.duration if result else 0.0,
            success=result.success if result else False,
            violations=list(violations or []),
            output_size=result.output_size if result else 0,
            pid=result.pid if result else None,
            killed=result.killed if result else False,
        )
        self._audit_log.append(record)
        return record

    def get_audit_log(self, limit: Optional[int] = None) -> List[AuditRecord]:
        """Audit records, oldest first; the last ``limit`` when given."""
        records = list(self._audit_log)
        return records[-limit:] if limit else records

    def get_statistics(self) -> Dict[str, Any]:
        records = list(self._audit_log)
        return {
            'total_requests': len(records),
            'refused': sum(1 for r in records if r.violations and r.exit_code is None),
            'succeeded': sum(1 for r in records if r.success),
            'killed': sum(1 for r in records if r.killed),
        }
