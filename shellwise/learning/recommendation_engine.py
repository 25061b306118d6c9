"""
RecommendationEngine - turns mined history into ranked suggestions.

Four sources feed the ranking:
- Pattern suggestions: reliable, frequently repeated command sequences
- Workflow suggestions: recurring multi-step tasks
- Optimization suggestions: alias candidates and faster replacements
- Learning suggestions: recurring errors and under-used common commands
"""

import logging
from collections import Counter, defaultdict
from typing import List, Dict, Any, Optional

from .history_types import (
    HistoryEntry, CommandPattern, WorkflowPattern, IntelligentSuggestion,
    SuggestionType, SuggestionPriority, LearningData,
)

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 10
SLOW_COMMAND_SECONDS = 30.0
SLOW_COMMAND_MIN_OBSERVATIONS = 3
MIN_TIME_SAVING = 1.0
HIGH_PRIORITY_SAVING = 10.0
COMMON_COMMANDS = ('ls', 'cd', 'git', 'npm', 'code', 'cat', 'grep', 'find')


def suggest_command_optimization(command_line: str) -> Optional[str]:
    """Faster or friendlier equivalent of a slow command, if one is known."""
    parts = command_line.split()
    if not parts:
        return None
    program = parts[0]
    if program == 'find' and '-type' not in parts:
        return command_line + " -type f"
    if program == 'grep':
        return " ".join(['rg'] + [p for p in parts[1:] if p not in ('-r', '-R')])
    if program == 'ls' and '--color=auto' not in parts:
        return command_line + " --color=auto"
    return None


def _within(path: str, directory: str) -> bool:
    """True if ``path`` is ``directory`` or lies below it."""
    directory = directory.rstrip('/')
    return path.rstrip('/') == directory or path.startswith(directory + '/')


def alias_name(commands: List[str]) -> str:
    return "".join(cmd.split()[0][0] for cmd in commands if cmd.split())


class RecommendationEngine:
    """
    Stateless suggestion builder.

    Thresholds are constructor arguments so tests and configuration can
    tune them; defaults follow the values the suggestions were designed for.
    """

    def __init__(self, max_suggestions: int = MAX_SUGGESTIONS,
                 slow_command_seconds: float = SLOW_COMMAND_SECONDS):
        self.max_suggestions = max_suggestions
        self.slow_command_seconds = slow_command_seconds

    def filter_by_context(self, entries: List[HistoryEntry],
                          context: Optional[Dict[str, Any]] = None) -> List[HistoryEntry]:
        """Entries relevant to ``context`` (``current_directory``, ``project_type``)."""
        if not context:
            return list(entries)
        directory = context.get('current_directory')
        project_type = context.get('project_type')
        filtered = []
        for entry in entries:
            if directory and entry.working_directory and not (
                    _within(directory, entry.working_directory)
                    or _within(entry.working_directory, directory)):
                continue
            if project_type and entry.project_type and entry.project_type != project_type:
                continue
            filtered.append(entry)
        return filtered

    def pattern_suggestions(self, patterns: List[CommandPattern]) -> List[IntelligentSuggestion]:
        reliable = [p for p in patterns if p.success_rate > 0.7 and p.frequency > 3][:3]
        return [
            IntelligentSuggestion(
                type=SuggestionType.PATTERN,
                title=f"Repeat sequence: {' -> '.join(p.commands)}",
                description=f"You frequently run these {len(p.commands)} commands together",
                priority=SuggestionPriority.MEDIUM,
                confidence=min(p.success_rate + p.frequency / 10, 1.0),
                reasoning=f"Used {p.frequency} times with {p.success_rate:.0%} success rate",
                commands=list(p.commands),
                contexts=list(p.contexts),
            )
            for p in reliable
        ]

    def workflow_suggestions(self, workflows: List[WorkflowPattern]) -> List[IntelligentSuggestion]:
        reliable = [w for w in workflows if w.success_rate > 0.8 and w.frequency > 2][:2]
        return [
            IntelligentSuggestion(
                type=SuggestionType.WORKFLOW,
                title=f"Run workflow: {w.name}",
                description=f"{len(w.steps)}-step workflow you repeat regularly",
                priority=SuggestionPriority.HIGH,
                confidence=w.success_rate * min(w.frequency / 5, 1.0),
                reasoning=f"Completed {w.frequency} times with {w.success_rate:.0%} success rate",
                commands=list(w.steps),
                estimated_time_saving=w.avg_duration * 0.3,
                contexts=list(w.contexts),
            )
            for w in reliable
        ]

    def find_optimization_opportunities(self, entries: List[HistoryEntry],
                                        patterns: List[CommandPattern]) -> List[Dict[str, Any]]:
        """Alias candidates for repeated sequences and replacements for slow commands."""
        opportunities: List[Dict[str, Any]] = []

        for pattern in patterns:
            if len(pattern.commands) < 3:
                continue
            name = alias_name(pattern.commands)
            opportunities.append({
                'type': 'alias',
                'commands': list(pattern.commands),
                'suggestion': f"alias {name}='{' && '.join(pattern.commands)}'",
                'estimated_saving': pattern.avg_duration * 0.7,
                'frequency': pattern.frequency,
            })

        durations = defaultdict(list)
        for entry in entries:
            if entry.duration > self.slow_command_seconds:
                durations[entry.command_line].append(entry.duration)
        for command_line, observed in durations.items():
            if len(observed) < SLOW_COMMAND_MIN_OBSERVATIONS:
                continue
            replacement = suggest_command_optimization(command_line)
            if replacement is None:
                continue
            average = sum(observed) / len(observed)
            opportunities.append({
                'type': 'replacement',
                'commands': [command_line],
                'suggestion': replacement,
                'estimated_saving': average * 0.5,
                'frequency': len(observed),
            })

        return opportunities

    def optimization_suggestions(self, opportunities: List[Dict[str, Any]]) -> List[IntelligentSuggestion]:
        worthwhile = sorted(
            (o for o in opportunities if o['estimated_saving'] > MIN_TIME_SAVING),
            key=lambda o: o['estimated_saving'],
            reverse=True
        )[:3]
        suggestions = []
        for opportunity in worthwhile:
            saving = opportunity['estimated_saving']
            if opportunity['type'] == 'alias':
                title = "Create an alias for a repeated sequence"
            else:
                title = f"Faster alternative to {opportunity['commands'][0]}"
            suggestions.append(IntelligentSuggestion(
                type=SuggestionType.OPTIMIZATION,
                title=title,
                description=opportunity['suggestion'],
                priority=SuggestionPriority.HIGH if saving > HIGH_PRIORITY_SAVING else SuggestionPriority.MEDIUM,
                confidence=0.7,
                reasoning=f"Could save about {saving:.1f}s each time "
                          f"(seen {opportunity['frequency']} times)",
                commands=[opportunity['suggestion']],
                estimated_time_saving=saving,
            ))
        return suggestions

    def learning_suggestions(self, entries: List[HistoryEntry],
                             learning: Optional[LearningData] = None) -> List[IntelligentSuggestion]:
        suggestions = []

        failures = Counter(e.command_line for e in entries if not e.success)
        recurring = [cmd for cmd, count in failures.most_common() if count >= 2]
        if recurring:
            suggestions.append(IntelligentSuggestion(
                type=SuggestionType.LEARNING,
                title="Command Error Analysis",
                description=f"You've had issues with: {', '.join(recurring[:3])}",
                priority=SuggestionPriority.MEDIUM,
                confidence=0.8,
                reasoning="Learning from past errors can improve success rate",
                commands=recurring[:3],
            ))

        if entries:
            usage = Counter(e.command for e in entries)
            avoided = set(learning.avoided_commands) if learning else set()
            underused = [cmd for cmd in COMMON_COMMANDS if usage[cmd] < 2 and cmd not in avoided]
            if underused:
                suggestions.append(IntelligentSuggestion(
                    type=SuggestionType.LEARNING,
                    title="Explore New Commands",
                    description=f"Consider trying: {', '.join(underused[:3])}",
                    priority=SuggestionPriority.LOW,
                    confidence=0.6,
                    reasoning="These commands might be useful for your workflow",
                    commands=underused[:3],
                ))

        return suggestions

    def rank(self, suggestions: List[IntelligentSuggestion]) -> List[IntelligentSuggestion]:
        """Priority first, then confidence; capped at ``max_suggestions``."""
        ranked = sorted(suggestions, key=lambda s: (-s.priority.rank, -s.confidence))
        return ranked[:self.max_suggestions]

    def build_suggestions(self, entries: List[HistoryEntry], patterns: List[CommandPattern],
                          workflows: List[WorkflowPattern],
                          learning: Optional[LearningData] = None) -> List[IntelligentSuggestion]:
        suggestions: List[IntelligentSuggestion] = []
        suggestions.extend(self.pattern_suggestions(patterns))
        suggestions.extend(self.workflow_suggestions(workflows))
        suggestions.extend(self.optimization_suggestions(
            self.find_optimization_opportunities(entries, patterns)
        ))
        suggestions.extend(self.learning_suggestions(entries, learning))
        logger.debug(f"Built {len(suggestions)} candidate suggestions")
        return self.rank(suggestions)
