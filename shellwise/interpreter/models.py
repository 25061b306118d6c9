"""
Command data model shared by the interpreter, orchestrator and learning code.
"""

import uuid
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple, Iterable
from dataclasses import dataclass, field, fields
from enum import Enum


class RiskLevel(Enum):
    """Risk classification, totally ordered safe < low < medium < high < critical."""
    SAFE = "safe"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    def __lt__(self, other):
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, RiskLevel):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def highest(cls, levels: Iterable["RiskLevel"]) -> "RiskLevel":
        return max(levels, default=cls.SAFE)

    @classmethod
    def parse(cls, value: Any, default: "RiskLevel" = None) -> "RiskLevel":
        """Lenient conversion; unknown values fall back to ``default`` (MEDIUM)."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return default if default is not None else cls.MEDIUM


_RISK_ORDER = [RiskLevel.SAFE, RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class CommandCategory(Enum):
    """What area of the system a command touches."""
    FILE_MANAGEMENT = "file_management"
    PROCESS_MANAGEMENT = "process_management"
    PACKAGE_MANAGEMENT = "package_management"
    GIT = "git"
    DEVELOPMENT = "development"
    SYSTEM_INFO = "system_info"
    NETWORK = "network"
    TEXT_PROCESSING = "text_processing"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: Any) -> "CommandCategory":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.CUSTOM


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class Command:
    """A single concrete command produced by the interpreter. Immutable."""
    program: str
    args: Tuple[str, ...] = ()
    description: str = ""
    category: CommandCategory = CommandCategory.CUSTOM
    risk_level: RiskLevel = RiskLevel.MEDIUM
    requires_elevation: bool = False
    timeout: float = 30.0
    working_directory: Optional[str] = None
    environment: Dict[str, str] = field(default_factory=dict)
    success_criteria: Tuple[str, ...] = ()
    failure_criteria: Tuple[str, ...] = ()
    expected_output: Optional[str] = None
    alternatives: Tuple[str, ...] = ()
    id: str = field(default_factory=lambda: new_id("cmd"))

    @property
    def command_line(self) -> str:
        return " ".join((self.program,) + tuple(self.args))

    @property
    def requires_confirmation(self) -> bool:
        return self.risk_level >= RiskLevel.HIGH or self.requires_elevation

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'program': self.program,
            'args': list(self.args),
            'description': self.description,
            'category': self.category.value,
            'risk_level': self.risk_level.value,
            'requires_elevation': self.requires_elevation,
            'timeout': self.timeout,
            'working_directory': self.working_directory,
            'environment': dict(self.environment),
            'success_criteria': list(self.success_criteria),
            'failure_criteria': list(self.failure_criteria),
            'expected_output': self.expected_output,
            'alternatives': list(self.alternatives),
        }


class ParseSource(Enum):
    """Where a ParsedCommand came from."""
    PATTERN = "pattern"
    COMPLETION = "completion"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class ParsedCommand:
    """Interpretation of one natural-language query. Never mutated."""
    original_query: str
    commands: Tuple[Command, ...]
    confidence: float
    requires_confirmation: bool
    source: ParseSource
    warnings: Tuple[str, ...] = ()
    explanation: str = ""
    estimated_duration: float = 0.0
    id: str = field(default_factory=lambda: new_id("parse"))

    @property
    def overall_risk_level(self) -> RiskLevel:
        return RiskLevel.highest(c.risk_level for c in self.commands)

    @classmethod
    def build(cls, query: str, commands: Iterable[Command], confidence: float,
              source: ParseSource, warnings: Iterable[str] = (), explanation: str = "",
              estimated_duration: float = 0.0, force_confirmation: bool = False) -> "ParsedCommand":
        """Construct with confirmation derived from the commands' risk."""
        commands = tuple(commands)
        return cls(
            original_query=query,
            commands=commands,
            confidence=max(0.0, min(1.0, confidence)),
            requires_confirmation=force_confirmation or any(c.requires_confirmation for c in commands),
            source=source,
            warnings=tuple(warnings),
            explanation=explanation,
            estimated_duration=estimated_duration,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'original_query': self.original_query,
            'commands': [c.to_dict() for c in self.commands],
            'confidence': self.confidence,
            'overall_risk_level': self.overall_risk_level.value,
            'requires_confirmation': self.requires_confirmation,
            'source': self.source.value,
            'warnings': list(self.warnings),
            'explanation': self.explanation,
            'estimated_duration': self.estimated_duration,
        }


@dataclass
class UserPreferences:
    """Per-session user preferences."""
    confirm_destructive_commands: bool = True
    preferred_package_manager: str = "npm"
    default_editor: str = "code"
    allow_elevation: bool = False
    default_timeout: float = 30.0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserPreferences":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class GitState:
    """Git repository facts for the current directory."""
    is_repository: bool = False
    current_branch: Optional[str] = None
    has_changes: Optional[bool] = None


@dataclass
class ParsingContext:
    """Everything the interpreter knows about where the query was asked."""
    current_directory: str
    platform: str = "linux"
    shell_type: str = "bash"
    environment: Dict[str, str] = field(default_factory=dict)
    project_type: Optional[str] = None
    git_repository: GitState = field(default_factory=GitState)
    recent_commands: List[str] = field(default_factory=list)
    preferences: UserPreferences = field(default_factory=UserPreferences)
    timestamp: datetime = field(default_factory=datetime.now)
