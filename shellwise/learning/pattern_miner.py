"""
Pattern, workflow and trend mining over the command history log.

All functions are pure: they take a chronological list of HistoryEntry
records and return freshly built results. Nothing is merged across runs.
"""

import hashlib
import logging
from collections import Counter
from datetime import datetime
from typing import List, Dict, Iterable, Optional

from .history_types import HistoryEntry, CommandPattern, WorkflowPattern, TrendData

logger = logging.getLogger(__name__)

PATTERN_WINDOW = 3
WORKFLOW_MAX_GAP = 600.0  # seconds between consecutive commands
MIN_FREQUENCY = 2
TREND_PERIODS = ('hour', 'day', 'week', 'month')


def signature_id(prefix: str, commands: Iterable[str]) -> str:
    """Stable id for a command sequence (sha256 of the joined signature)."""
    signature = " -> ".join(commands)
    return f"{prefix}_{hashlib.sha256(signature.encode()).hexdigest()[:16]}"


def chronological(entries: Iterable[HistoryEntry]) -> List[HistoryEntry]:
    return sorted(entries, key=lambda e: e.started_at)


def _window_stats(window: List[HistoryEntry]):
    success = sum(1 for e in window if e.success) / len(window)
    duration = sum(e.duration for e in window)
    return success, duration


def mine_patterns(entries: List[HistoryEntry], window: int = PATTERN_WINDOW,
                  min_frequency: int = MIN_FREQUENCY) -> List[CommandPattern]:
    """
    Slide a fixed window over ``entries`` and count repeated sequences.

    Success rate and duration are rolling averages updated on each repeat.
    Patterns seen fewer than ``min_frequency`` times are dropped.
    """
    entries = chronological(entries)
    patterns: Dict[str, CommandPattern] = {}

    for start in range(len(entries) - window + 1):
        chunk = entries[start:start + window]
        commands = [e.command_line for e in chunk]
        pattern_id = signature_id("pattern", commands)
        success, duration = _window_stats(chunk)
        last = chunk[-1]

        existing = patterns.get(pattern_id)
        if existing is None:
            patterns[pattern_id] = CommandPattern(
                id=pattern_id,
                name=f"Pattern: {' -> '.join(commands)}",
                commands=commands,
                frequency=1,
                last_used=last.started_at,
                success_rate=success,
                avg_duration=duration,
                contexts=[last.working_directory] if last.working_directory else [],
                description=f"Sequence of {window} commands",
            )
            continue

        existing.frequency += 1
        existing.last_used = max(existing.last_used, last.started_at)
        existing.success_rate = (existing.success_rate + success) / 2
        existing.avg_duration = (existing.avg_duration + duration) / 2
        if last.working_directory and last.working_directory not in existing.contexts:
            existing.contexts.append(last.working_directory)

    mined = [p for p in patterns.values() if p.frequency >= min_frequency]
    mined.sort(key=lambda p: p.frequency, reverse=True)
    return mined


def group_by_time_proximity(entries: List[HistoryEntry],
                            max_gap: float = WORKFLOW_MAX_GAP) -> List[List[HistoryEntry]]:
    """Split ``entries`` wherever the gap since the previous command ends exceeds ``max_gap``."""
    groups: List[List[HistoryEntry]] = []
    current: List[HistoryEntry] = []
    previous: Optional[HistoryEntry] = None

    for entry in chronological(entries):
        if previous is not None:
            previous_end = previous.completed_at or previous.started_at
            if (entry.started_at - previous_end).total_seconds() > max_gap:
                groups.append(current)
                current = []
        current.append(entry)
        previous = entry

    if current:
        groups.append(current)
    return groups


def mine_workflows(entries: List[HistoryEntry], max_gap: float = WORKFLOW_MAX_GAP,
                   min_frequency: int = MIN_FREQUENCY) -> List[WorkflowPattern]:
    """Recurring time-proximate groups of two or more commands."""
    workflows: Dict[str, WorkflowPattern] = {}

    for group in group_by_time_proximity(entries, max_gap):
        if len(group) < 2:
            continue
        steps = [e.command_line for e in group]
        workflow_id = signature_id("workflow", steps)
        success, duration = _window_stats(group)
        last = group[-1]

        existing = workflows.get(workflow_id)
        if existing is None:
            workflows[workflow_id] = WorkflowPattern(
                id=workflow_id,
                name=f"Workflow: {steps[0]} ... {steps[-1]}",
                steps=steps,
                frequency=1,
                last_used=last.started_at,
                success_rate=success,
                avg_duration=duration,
                triggers=[group[0].command],
                contexts=[last.working_directory] if last.working_directory else [],
            )
            continue

        existing.frequency += 1
        existing.last_used = max(existing.last_used, last.started_at)
        existing.success_rate = (existing.success_rate + success) / 2
        existing.avg_duration = (existing.avg_duration + duration) / 2
        if last.working_directory and last.working_directory not in existing.contexts:
            existing.contexts.append(last.working_directory)

    mined = [w for w in workflows.values() if w.frequency >= min_frequency]
    mined.sort(key=lambda w: w.frequency, reverse=True)
    return mined


def period_index(moment: datetime, period: str) -> int:
    """Consecutive integer index of the period containing ``moment``."""
    if period == 'hour':
        return moment.toordinal() * 24 + moment.hour
    if period == 'day':
        return moment.toordinal()
    if period == 'week':
        return (moment.toordinal() - 1) // 7  # weeks start on Monday
    if period == 'month':
        return moment.year * 12 + moment.month - 1
    raise ValueError(f"Unknown trend period: {period}")


def analyze_trends(entries: List[HistoryEntry],
                   periods: Iterable[str] = TREND_PERIODS) -> Dict[str, List[TrendData]]:
    """
    Per-period usage trends by command type.

    The current period is the one holding the most recent entry; change is
    measured against the period right before it, and the prediction
    extrapolates that difference one period ahead.
    """
    trends: Dict[str, List[TrendData]] = {}
    if not entries:
        return {period: [] for period in periods}

    reference = max(e.started_at for e in entries)
    for period in periods:
        current = period_index(reference, period)
        counts = Counter((e.command, period_index(e.started_at, period)) for e in entries)
        period_trends = []
        for command_type in sorted({e.command for e in entries}):
            usage = counts[(command_type, current)]
            previous = counts[(command_type, current - 1)]
            if usage == 0 and previous == 0:
                continue
            if previous:
                change = (usage - previous) / previous * 100.0
            else:
                change = 100.0
            period_trends.append(TrendData(
                period=period,
                command_type=command_type,
                usage=usage,
                previous_usage=previous,
                change=round(change, 2),
                prediction=max(0, usage + (usage - previous)),
            ))
        period_trends.sort(key=lambda t: t.usage, reverse=True)
        trends[period] = period_trends
    return trends
