"""
Data structures for command history and what is learned from it.

Every type round-trips through plain dicts (``to_dict`` / ``from_dict``)
so history can be exported as JSON and imported back unchanged.
"""

from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass, field
from enum import Enum

from shellwise.interpreter.models import RiskLevel, new_id


def _dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass(frozen=True)
class HistoryEntry:
    """Immutable record of one executed command."""
    session_id: str
    command: str
    started_at: datetime
    args: Tuple[str, ...] = ()
    original_query: str = ""
    working_directory: str = ""
    completed_at: Optional[datetime] = None
    exit_code: Optional[int] = None
    output: str = ""
    error: str = ""
    duration: float = 0.0
    risk_level: RiskLevel = RiskLevel.SAFE
    user_approved: bool = False
    success: bool = False
    category: str = "custom"
    project_type: Optional[str] = None
    id: str = field(default_factory=lambda: new_id("hist"))

    @property
    def command_line(self) -> str:
        return " ".join((self.command,) + tuple(self.args))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'session_id': self.session_id,
            'original_query': self.original_query,
            'command': self.command,
            'args': list(self.args),
            'working_directory': self.working_directory,
            'started_at': _dt(self.started_at),
            'completed_at': _dt(self.completed_at),
            'exit_code': self.exit_code,
            'output': self.output,
            'error': self.error,
            'duration': self.duration,
            'risk_level': self.risk_level.value,
            'user_approved': self.user_approved,
            'success': self.success,
            'category': self.category,
            'project_type': self.project_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            id=data['id'],
            session_id=data['session_id'],
            original_query=data.get('original_query', ""),
            command=data['command'],
            args=tuple(data.get('args', ())),
            working_directory=data.get('working_directory', ""),
            started_at=_parse_dt(data['started_at']),
            completed_at=_parse_dt(data.get('completed_at')),
            exit_code=data.get('exit_code'),
            output=data.get('output', ""),
            error=data.get('error', ""),
            duration=data.get('duration', 0.0),
            risk_level=RiskLevel.parse(data.get('risk_level'), RiskLevel.SAFE),
            user_approved=data.get('user_approved', False),
            success=data.get('success', False),
            category=data.get('category', "custom"),
            project_type=data.get('project_type'),
        )


@dataclass
class CommandPattern:
    """Recurring fixed-length command subsequence."""
    id: str
    name: str
    commands: List[str]
    frequency: int
    last_used: datetime
    success_rate: float
    avg_duration: float
    contexts: List[str] = field(default_factory=list)
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'commands': list(self.commands),
            'frequency': self.frequency,
            'last_used': _dt(self.last_used),
            'success_rate': self.success_rate,
            'avg_duration': self.avg_duration,
            'contexts': list(self.contexts),
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CommandPattern":
        return cls(
            id=data['id'],
            name=data['name'],
            commands=list(data['commands']),
            frequency=data['frequency'],
            last_used=_parse_dt(data['last_used']),
            success_rate=data['success_rate'],
            avg_duration=data['avg_duration'],
            contexts=list(data.get('contexts', [])),
            description=data.get('description', ""),
        )


@dataclass
class WorkflowPattern:
    """Recurring group of time-proximate commands treated as one task."""
    id: str
    name: str
    steps: List[str]
    frequency: int
    last_used: datetime
    success_rate: float
    avg_duration: float
    triggers: List[str] = field(default_factory=list)
    contexts: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'steps': list(self.steps),
            'frequency': self.frequency,
            'last_used': _dt(self.last_used),
            'success_rate': self.success_rate,
            'avg_duration': self.avg_duration,
            'triggers': list(self.triggers),
            'contexts': list(self.contexts),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowPattern":
        return cls(
            id=data['id'],
            name=data['name'],
            steps=list(data['steps']),
            frequency=data['frequency'],
            last_used=_parse_dt(data['last_used']),
            success_rate=data['success_rate'],
            avg_duration=data['avg_duration'],
            triggers=list(data.get('triggers', [])),
            contexts=list(data.get('contexts', [])),
        )


@dataclass
class TrendData:
    """Usage of one command type in the latest period of a granularity."""
    period: str
    command_type: str
    usage: int
    previous_usage: int
    change: float
    prediction: int


class SuggestionType(Enum):
    PATTERN = "pattern"
    WORKFLOW = "workflow"
    OPTIMIZATION = "optimization"
    LEARNING = "learning"


class SuggestionPriority(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {'low': 0, 'medium': 1, 'high': 2}[self.value]


@dataclass
class IntelligentSuggestion:
    """A ranked hint derived from history."""
    type: SuggestionType
    title: str
    description: str
    priority: SuggestionPriority
    confidence: float
    reasoning: str
    commands: List[str] = field(default_factory=list)
    estimated_time_saving: float = 0.0
    contexts: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: new_id("sugg"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type.value,
            'title': self.title,
            'description': self.description,
            'priority': self.priority.value,
            'confidence': self.confidence,
            'reasoning': self.reasoning,
            'commands': list(self.commands),
            'estimated_time_saving': self.estimated_time_saving,
            'contexts': list(self.contexts),
        }


@dataclass
class LearningData:
    """What has been learned about the user's command habits."""
    preferred_commands: Dict[str, float] = field(default_factory=dict)
    failure_counts: Dict[str, int] = field(default_factory=dict)
    avoided_commands: List[str] = field(default_factory=list)
    optimization_opportunities: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'preferred_commands': dict(self.preferred_commands),
            'failure_counts': dict(self.failure_counts),
            'avoided_commands': list(self.avoided_commands),
            'optimization_opportunities': [dict(o) for o in self.optimization_opportunities],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LearningData":
        return cls(
            preferred_commands=dict(data.get('preferred_commands', {})),
            failure_counts=dict(data.get('failure_counts', {})),
            avoided_commands=list(data.get('avoided_commands', [])),
            optimization_opportunities=[dict(o) for o in data.get('optimization_opportunities', [])],
        )


@dataclass
class PerformanceMetrics:
    total_commands: int = 0
    success_rate: float = 0.0
    error_rate: float = 0.0
    average_duration: float = 0.0
    most_used_commands: List[Tuple[str, int]] = field(default_factory=list)
    productivity_score: float = 0.0


@dataclass
class HistoryAnalysis:
    """Result of analyzing one session's (or all) history."""
    patterns: List[CommandPattern]
    workflows: List[WorkflowPattern]
    trends: Dict[str, List[TrendData]]
    suggestions: List[IntelligentSuggestion]
    insights: List[str]
    performance: PerformanceMetrics
    generated_at: datetime = field(default_factory=datetime.now)
