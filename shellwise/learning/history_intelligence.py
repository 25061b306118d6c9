"""
History Intelligence.

Consumes the append-only execution log, mines repeating command
sequences and workflows, tracks per-command preference scores, and
produces ranked suggestions. The log round-trips through plain dicts
via export_history / import_history.
"""

import asyncio
import logging
from collections import deque, Counter
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable, Deque

from .history_types import (
    HistoryEntry, CommandPattern, WorkflowPattern, LearningData,
    HistoryAnalysis, PerformanceMetrics, IntelligentSuggestion,
)
from .pattern_miner import mine_patterns, mine_workflows, analyze_trends, chronological
from .recommendation_engine import RecommendationEngine

logger = logging.getLogger(__name__)

GLOBAL_KEY = "__global__"
EXPORT_VERSION = 1


class HistoryIntelligence:
    """
    Learns from executed commands.

    Args:
        max_entries_per_session: Log size bound per session (oldest dropped)
        engine: Suggestion builder
        avoid_after_failures: Cumulative failures before a command is avoided
        pattern_interval: Seconds between background pattern rebuilds
        learning_interval: Seconds between background learning refreshes
        clock: Source of wall-clock timestamps
    """

    def __init__(self,
                 max_entries_per_session: int = 10000,
                 engine: Optional[RecommendationEngine] = None,
                 avoid_after_failures: int = 3,
                 pattern_interval: float = 3600.0,
                 learning_interval: float = 1800.0,
                 clock: Callable[[], datetime] = datetime.now):
        self.max_entries_per_session = max_entries_per_session
        self.engine = engine or RecommendationEngine()
        self.avoid_after_failures = avoid_after_failures
        self.pattern_interval = pattern_interval
        self.learning_interval = learning_interval
        self._clock = clock

        self._history: Dict[str, Deque[HistoryEntry]] = {}
        self._cache: Dict[str, HistoryAnalysis] = {}
        self._patterns: List[CommandPattern] = []
        self._workflows: List[WorkflowPattern] = []
        self.learning = LearningData()
        self._jobs: List[asyncio.Task] = []

        logger.info(f"HistoryIntelligence initialized:")
        logger.info(f"  Max entries per session: {max_entries_per_session}")
        logger.info(f"  Avoid after failures: {avoid_after_failures}")

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def add_entry(self, entry: HistoryEntry) -> None:
        """Append ``entry``, invalidate affected caches and update learning."""
        log = self._history.get(entry.session_id)
        if log is None:
            log = self._history[entry.session_id] = deque(maxlen=self.max_entries_per_session)
        log.append(entry)

        self._cache.pop(entry.session_id, None)
        self._cache.pop(GLOBAL_KEY, None)
        self._update_learning(entry)

    def _update_learning(self, entry: HistoryEntry) -> None:
        key = entry.command_line
        preferred = self.learning.preferred_commands
        if entry.success:
            preferred[key] = preferred.get(key, 0.0) + 1.0
            return

        preferred[key] = max(0.0, preferred.get(key, 0.0) - 0.5)
        failures = self.learning.failure_counts.get(key, 0) + 1
        self.learning.failure_counts[key] = failures
        if failures >= self.avoid_after_failures and key not in self.learning.avoided_commands:
            self.learning.avoided_commands.append(key)
            logger.info(f"Avoiding '{key}' after {failures} failures")

    def get_entries(self, session_id: Optional[str] = None) -> List[HistoryEntry]:
        """Chronological snapshot of one session's log, or of all sessions."""
        if session_id is not None:
            return chronological(self._history.get(session_id, ()))
        return chronological(e for log in list(self._history.values()) for e in list(log))

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze_history(self, session_id: Optional[str] = None) -> HistoryAnalysis:
        """Full analysis for one session or all sessions, cached until new entries arrive."""
        key = session_id or GLOBAL_KEY
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        entries = self.get_entries(session_id)
        patterns = mine_patterns(entries)
        workflows = mine_workflows(entries)
        analysis = HistoryAnalysis(
            patterns=patterns,
            workflows=workflows,
            trends=analyze_trends(entries),
            suggestions=self.engine.build_suggestions(entries, patterns, workflows, self.learning),
            insights=self._insights(entries),
            performance=self.get_performance_metrics(session_id),
            generated_at=self._clock(),
        )
        self._cache[key] = analysis
        logger.debug(f"Analyzed {len(entries)} entries for {key}: "
                     f"{len(patterns)} patterns, {len(workflows)} workflows")
        return analysis

    def get_intelligent_suggestions(self, context: Optional[Dict[str, Any]] = None) -> List[IntelligentSuggestion]:
        """
        Ranked suggestions for a context.

        Args:
            context: Optional ``session_id``, ``current_directory`` and ``project_type``

        Returns:
            At most ten suggestions, highest priority first
        """
        context = context or {}
        entries = self.engine.filter_by_context(self.get_entries(context.get('session_id')), context)
        patterns = mine_patterns(entries)
        workflows = mine_workflows(entries)
        return self.engine.build_suggestions(entries, patterns, workflows, self.learning)

    def get_performance_metrics(self, session_id: Optional[str] = None) -> PerformanceMetrics:
        entries = self.get_entries(session_id)
        if not entries:
            return PerformanceMetrics()

        total = len(entries)
        successes = sum(1 for e in entries if e.success)
        success_rate = successes / total
        average_duration = sum(e.duration for e in entries) / total
        speed = 1.0 - min(average_duration / 60.0, 1.0)

        return PerformanceMetrics(
            total_commands=total,
            success_rate=success_rate,
            error_rate=1.0 - success_rate,
            average_duration=average_duration,
            most_used_commands=Counter(e.command for e in entries).most_common(5),
            productivity_score=round(success_rate * 70 + speed * 30, 1),
        )

    def _insights(self, entries: List[HistoryEntry]) -> List[str]:
        insights = []
        runs = Counter(e.command_line for e in entries)
        failures = Counter(e.command_line for e in entries if not e.success)
        for command_line, count in runs.most_common():
            if count >= 3 and failures[command_line] / count >= 0.5:
                insights.append(f"'{command_line}' fails {failures[command_line] / count:.0%} of the time")

        if entries:
            hour, _ = Counter(e.started_at.hour for e in entries).most_common(1)[0]
            insights.append(f"Most active hour: {hour:02d}:00")

        if self.learning.avoided_commands:
            insights.append(f"Avoiding {len(self.learning.avoided_commands)} command(s) after repeated failures")
        return insights

    # ------------------------------------------------------------------
    # Periodic rebuilds
    # ------------------------------------------------------------------

    def rebuild_patterns(self) -> None:
        """Re-mine patterns and workflows from the full log."""
        entries = self.get_entries()
        self._patterns = mine_patterns(entries)
        self._workflows = mine_workflows(entries)
        logger.info(f"Pattern rebuild: {len(self._patterns)} patterns, "
                    f"{len(self._workflows)} workflows from {len(entries)} entries")

    def refresh_learning(self) -> None:
        """Recompute optimization opportunities from the full log."""
        entries = self.get_entries()
        patterns = self._patterns or mine_patterns(entries)
        self.learning.optimization_opportunities = self.engine.find_optimization_opportunities(
            entries, patterns
        )
        logger.info(f"Learning refresh: {len(self.learning.optimization_opportunities)} "
                    f"optimization opportunities")

    def get_patterns(self) -> List[CommandPattern]:
        return list(self._patterns)

    def get_workflows(self) -> List[WorkflowPattern]:
        return list(self._workflows)

    def start_background_jobs(self) -> None:
        """Schedule the hourly rebuild and 30-minute learning refresh on the running loop."""
        if self._jobs:
            return
        self._jobs = [
            asyncio.create_task(self._run_periodically(self.pattern_interval, self.rebuild_patterns)),
            asyncio.create_task(self._run_periodically(self.learning_interval, self.refresh_learning)),
        ]
        logger.info("History background jobs started")

    async def stop_background_jobs(self) -> None:
        jobs, self._jobs = self._jobs, []
        for job in jobs:
            job.cancel()
        await asyncio.gather(*jobs, return_exceptions=True)

    async def _run_periodically(self, interval: float, job: Callable[[], None]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                job()
            except Exception as e:
                logger.error(f"Background job {job.__name__} failed: {e}")

    # ------------------------------------------------------------------
    # Persistence boundary
    # ------------------------------------------------------------------

    def export_history(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Plain-data snapshot of the log, patterns, workflows and learning data.

        With ``session_id`` only that session's entries are included.
        """
        data: Dict[str, Any] = {
            'version': EXPORT_VERSION,
            'exported_at': self._clock().isoformat(),
            'patterns': [p.to_dict() for p in self._patterns],
            'workflows': [w.to_dict() for w in self._workflows],
            'learning_data': self.learning.to_dict(),
        }
        if session_id is not None:
            data['session_id'] = session_id
            data['entries'] = [e.to_dict() for e in self._history.get(session_id, ())]
        else:
            data['sessions'] = {
                sid: [e.to_dict() for e in log] for sid, log in self._history.items()
            }
        return data

    def import_history(self, data: Dict[str, Any]) -> None:
        """
        Load an export produced by ``export_history``.

        A full export replaces all state; a single-session export replaces
        that session's log. Learning data is replayed from the entries when
        the export carries none.
        """
        if 'sessions' in data:
            sessions = data['sessions']
            self._history = {}
        elif 'session_id' in data:
            sessions = {data['session_id']: data.get('entries', [])}
        else:
            raise ValueError("History export must contain 'sessions' or 'session_id'")

        for session_id, raw_entries in sessions.items():
            log: Deque[HistoryEntry] = deque(maxlen=self.max_entries_per_session)
            log.extend(HistoryEntry.from_dict(raw) for raw in raw_entries)
            self._history[session_id] = log

        if 'learning_data' in data:
            self.learning = LearningData.from_dict(data['learning_data'])
        else:
            self.learning = LearningData()
            for entry in self.get_entries():
                self._update_learning(entry)

        if 'patterns' in data or 'workflows' in data:
            self._patterns = [CommandPattern.from_dict(p) for p in data.get('patterns', [])]
            self._workflows = [WorkflowPattern.from_dict(w) for w in data.get('workflows', [])]
        else:
            self.rebuild_patterns()

        self._cache.clear()
        logger.info(f"Imported history: {sum(len(v) for v in sessions.values())} entries "
                    f"across {len(sessions)} session(s)")

    def clear_history(self, session_id: Optional[str] = None) -> None:
        if session_id is None:
            self._history.clear()
            self._patterns = []
            self._workflows = []
            self.learning = LearningData()
        else:
            self._history.pop(session_id, None)
        self._cache.clear()
