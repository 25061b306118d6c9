"""
Declarative security policy for command execution.

A SecurityPolicy is plain data: command allow/block lists, path globs,
restricted environment variable names, resource caps and a library of
dangerous regex rules. Policies compose by shallow merge where the
override wins, so callers can tighten or relax a single field per call.

Rules can be loaded from YAML:

    dangerous_patterns:
      - id: curl_pipe_shell
        pattern: 'curl\\s+[^|]*\\|\\s*(ba|z)?sh\\b'
        severity: critical
        scope: command_line
        description: Piping downloaded content into a shell
"""

import re
import logging
import dataclasses
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple, Mapping
from dataclasses import dataclass, field
from enum import Enum

import yaml

logger = logging.getLogger(__name__)


class ViolationType(Enum):
    """Kinds of policy check failures."""
    BLOCKED_COMMAND = "blocked_command"
    BLOCKED_PATH = "blocked_path"
    ELEVATION_ATTEMPT = "elevation_attempt"
    NETWORK_ACCESS = "network_access"
    FILE_WRITE_ATTEMPT = "file_write_attempt"
    PROCESS_SPAWN = "process_spawn"
    TIMEOUT_EXCEEDED = "timeout_exceeded"
    OUTPUT_SIZE_EXCEEDED = "output_size_exceeded"
    DANGEROUS_PATTERN = "dangerous_pattern"
    RESTRICTED_ENVIRONMENT = "restricted_environment"


class Severity(Enum):
    """Violation severity, ordered low to critical."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


class PatternScope(Enum):
    """What a dangerous pattern rule is matched against."""
    ARGUMENT = "argument"
    COMMAND_LINE = "command_line"


@dataclass
class SecurityViolation:
    """A single failed policy check."""
    type: ViolationType
    severity: Severity
    description: str
    recommendation: str = ""
    rule_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': self.type.value,
            'severity': self.severity.value,
            'description': self.description,
            'recommendation': self.recommendation,
            'rule_id': self.rule_id,
        }


@dataclass
class DangerousPatternRule:
    """Regex rule flagging a dangerous construct."""
    rule_id: str
    pattern: str
    severity: Severity
    description: str
    scope: PatternScope = PatternScope.ARGUMENT
    recommendation: str = "Review the command for potentially dangerous operations"
    regex: "re.Pattern" = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        self.regex = re.compile(self.pattern, re.IGNORECASE)

    def matches(self, text: str) -> bool:
        return self.regex.search(text) is not None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DangerousPatternRule":
        return cls(
            rule_id=data['id'],
            pattern=data['pattern'],
            severity=Severity(data.get('severity', 'high')),
            description=data.get('description', data['id']),
            scope=PatternScope(data.get('scope', 'argument')),
            recommendation=data.get(
                'recommendation',
                "Review the command for potentially dangerous operations"
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.rule_id,
            'pattern': self.pattern,
            'severity': self.severity.value,
            'description': self.description,
            'scope': self.scope.value,
            'recommendation': self.recommendation,
        }


DEFAULT_DANGEROUS_PATTERNS: Tuple[DangerousPatternRule, ...] = (
    # Per-argument rules
    DangerousPatternRule("recursive_root", r"--recursive.*/$", Severity.HIGH,
                         "Recursive operation targeting a root path"),
    DangerousPatternRule("force_recursive", r"--force.*--recursive", Severity.HIGH,
                         "Forced recursive operation"),
    DangerousPatternRule("rf_root_argument", r"-rf\s*/$", Severity.HIGH,
                         "Recursive force flag aimed at the filesystem root"),
    DangerousPatternRule("null_redirect", r">\s*/dev/null.*2>&1", Severity.HIGH,
                         "Output and errors discarded"),
    DangerousPatternRule("pipe_to_shell", r"\|\s*(ba|z)?sh$", Severity.HIGH,
                         "Argument pipes into a shell"),
    DangerousPatternRule("command_substitution", r"\$\(.*\)", Severity.HIGH,
                         "Command substitution",
                         recommendation="Pass literal values instead of $(...) substitutions"),
    DangerousPatternRule("backtick_substitution", r"`.*`", Severity.HIGH,
                         "Backtick command substitution",
                         recommendation="Pass literal values instead of backtick substitutions"),
    # Full command line rules
    DangerousPatternRule("curl_pipe_shell", r"\bcurl\s+[^|]*\|\s*(ba|z)?sh\b", Severity.CRITICAL,
                         "Piping downloaded content into a shell", PatternScope.COMMAND_LINE,
                         "Download the script, inspect it, then run it explicitly"),
    DangerousPatternRule("wget_pipe_shell", r"\bwget\s+[^|]*\|\s*(ba|z)?sh\b", Severity.CRITICAL,
                         "Piping downloaded content into a shell", PatternScope.COMMAND_LINE,
                         "Download the script, inspect it, then run it explicitly"),
    DangerousPatternRule("rm_rf_root", r"\brm\s+-(rf|fr)\s+/(\*|\s|$)", Severity.CRITICAL,
                         "Recursive deletion of the filesystem root", PatternScope.COMMAND_LINE,
                         "Never delete the root filesystem"),
    DangerousPatternRule("fork_bomb", r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:", Severity.CRITICAL,
                         "Fork bomb", PatternScope.COMMAND_LINE,
                         "Remove the self-replicating function definition"),
    DangerousPatternRule("background_null_redirect", r"/dev/null.*2>&1.*&$", Severity.MEDIUM,
                         "Background process with discarded output", PatternScope.COMMAND_LINE,
                         "Run the process in the foreground or keep its output"),
    DangerousPatternRule("reverse_shell", r"\bnc\s+.*-l.*-e", Severity.CRITICAL,
                         "Netcat listener executing a program (reverse shell)",
                         PatternScope.COMMAND_LINE, "Do not expose a shell over the network"),
)

ELEVATION_COMMANDS = frozenset({'sudo', 'su', 'doas'})

NETWORK_COMMANDS = frozenset({
    'curl', 'wget', 'nc', 'ncat', 'ssh', 'scp', 'sftp', 'rsync', 'ftp',
    'telnet', 'ping', 'nslookup', 'dig',
})

WRITE_COMMANDS = frozenset({
    'mkdir', 'touch', 'cp', 'mv', 'rm', 'rmdir', 'chmod', 'chown', 'ln',
    'dd', 'tee', 'truncate', 'install',
})


@dataclass(frozen=True)
class SecurityPolicy:
    """
    Declarative rule set applied before every execution.

    allowed_commands of None means no allow-list is enforced; an empty
    tuple allows nothing. Times are seconds, sizes are bytes.
    """
    allowed_commands: Optional[Tuple[str, ...]] = None
    blocked_commands: Tuple[str, ...] = ()
    allowed_paths: Optional[Tuple[str, ...]] = None
    blocked_paths: Tuple[str, ...] = ()
    restricted_environment_vars: Tuple[str, ...] = ()
    dangerous_patterns: Tuple[DangerousPatternRule, ...] = DEFAULT_DANGEROUS_PATTERNS
    max_execution_time: float = 300.0
    max_output_size: int = 10 * 1024 * 1024
    allow_elevation: bool = False
    allow_network_access: bool = True
    allow_file_system_write: bool = True
    allow_process_spawn: bool = True

    def merged(self, overrides: Optional[Mapping[str, Any]] = None) -> "SecurityPolicy":
        """Return a copy with ``overrides`` shallow-merged over this policy."""
        if not overrides:
            return self
        known = {f.name for f in dataclasses.fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown security policy fields: {sorted(unknown)}")
        return dataclasses.replace(self, **_normalize_fields(overrides))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SecurityPolicy":
        return cls().merged(data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'allowed_commands': list(self.allowed_commands) if self.allowed_commands is not None else None,
            'blocked_commands': list(self.blocked_commands),
            'allowed_paths': list(self.allowed_paths) if self.allowed_paths is not None else None,
            'blocked_paths': list(self.blocked_paths),
            'restricted_environment_vars': list(self.restricted_environment_vars),
            'dangerous_patterns': [rule.to_dict() for rule in self.dangerous_patterns],
            'max_execution_time': self.max_execution_time,
            'max_output_size': self.max_output_size,
            'allow_elevation': self.allow_elevation,
            'allow_network_access': self.allow_network_access,
            'allow_file_system_write': self.allow_file_system_write,
            'allow_process_spawn': self.allow_process_spawn,
        }


def _normalize_fields(values: Mapping[str, Any]) -> Dict[str, Any]:
    """Coerce YAML/JSON friendly values into policy field types."""
    normalized = {}
    for key, value in values.items():
        if key == 'dangerous_patterns' and value is not None:
            value = tuple(
                rule if isinstance(rule, DangerousPatternRule) else DangerousPatternRule.from_dict(rule)
                for rule in value
            )
        elif isinstance(value, list):
            value = tuple(value)
        normalized[key] = value
    return normalized


def default_security_policy() -> SecurityPolicy:
    """The stock policy: conservative allow-list, system paths blocked."""
    return SecurityPolicy(
        allowed_commands=(
            'ls', 'cat', 'head', 'tail', 'grep', 'find', 'which', 'echo', 'pwd', 'whoami',
            'git', 'npm', 'yarn', 'pnpm', 'node', 'python', 'python3', 'pip', 'cargo',
            'rustc', 'go', 'make', 'mkdir', 'touch', 'cp', 'mv', 'chmod', 'chown', 'ps',
            'top', 'df', 'du', 'free', 'uptime', 'date', 'curl', 'wget', 'ping',
            'nslookup', 'dig', 'kill', 'wc', 'sort', 'uniq', 'pytest',
        ),
        blocked_commands=(
            'rm', 'rmdir', 'dd', 'fdisk', 'mkfs', 'format', 'sudo', 'su', 'passwd',
            'chpasswd', 'iptables', 'ufw', 'firewall-cmd', 'systemctl', 'service',
            'init', 'crontab', 'at', 'batch', 'mount', 'umount', 'fsck', 'reboot',
            'shutdown', 'halt', 'poweroff',
        ),
        blocked_paths=(
            '/etc/passwd', '/etc/shadow', '/etc/sudoers', '/boot', '/sys', '/proc',
            '/dev/sd*', '/dev/hd*', '/dev/nvme*', '/.ssh', '/root',
        ),
        restricted_environment_vars=(
            'PATH', 'LD_LIBRARY_PATH', 'LD_PRELOAD', 'PYTHONPATH', 'HOME', 'USER', 'SUDO_USER',
        ),
    )


def load_dangerous_patterns(rules_path: Path) -> Tuple[DangerousPatternRule, ...]:
    """
    Load dangerous pattern rules from a YAML file.

    Args:
        rules_path: YAML file with a top-level ``dangerous_patterns`` list

    Returns:
        Tuple of rules, or the built-in rules when the file is missing
    """
    rules_path = Path(rules_path)
    if not rules_path.exists():
        logger.warning(f"Pattern rules not found at {rules_path}, using built-in rules")
        return DEFAULT_DANGEROUS_PATTERNS

    with open(rules_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    rules = tuple(DangerousPatternRule.from_dict(entry) for entry in data.get('dangerous_patterns', []))
    logger.info(f"Loaded {len(rules)} dangerous pattern rules from {rules_path}")
    return rules


def load_security_policy(policy_path: Optional[Path] = None,
                         overrides: Optional[Mapping[str, Any]] = None) -> SecurityPolicy:
    """
    Build a policy from the defaults, an optional YAML file and overrides.

    The YAML file holds policy fields at the top level; a
    ``dangerous_patterns_file`` key points at a separate rule file.
    """
    policy = default_security_policy()

    if policy_path is not None and Path(policy_path).exists():
        with open(policy_path, 'r') as f:
            data = yaml.safe_load(f) or {}
        rules_file = data.pop('dangerous_patterns_file', None)
        if rules_file:
            data['dangerous_patterns'] = load_dangerous_patterns(Path(policy_path).parent / rules_file)
        policy = policy.merged(data)
        logger.info(f"Loaded security policy from {policy_path}")
    elif policy_path is not None:
        logger.warning(f"Security policy not found at {policy_path}, using defaults")

    return policy.merged(overrides)


def highest_severity(violations: List[SecurityViolation]) -> Optional[Severity]:
    """Most severe level among ``violations``."""
    if not violations:
        return None
    return max((v.severity for v in violations), key=lambda s: s.rank)
