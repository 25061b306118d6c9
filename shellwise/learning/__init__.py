"""
Learning Module for shellwise.

Mines the command history log for repeated sequences and workflows and
turns them into ranked suggestions:
- history_types: HistoryEntry and mined result types
- pattern_miner: Sliding-window patterns, proximity workflows, trends
- recommendation_engine: Suggestion building and ranking
- history_intelligence: Log ownership, learning scores, export/import
"""

from .history_types import (
    HistoryEntry, CommandPattern, WorkflowPattern, TrendData,
    IntelligentSuggestion, SuggestionType, SuggestionPriority,
    LearningData, PerformanceMetrics, HistoryAnalysis,
)
from .pattern_miner import mine_patterns, mine_workflows, analyze_trends, group_by_time_proximity
from .recommendation_engine import RecommendationEngine
from .history_intelligence import HistoryIntelligence

__all__ = [
    'HistoryEntry',
    'CommandPattern',
    'WorkflowPattern',
    'TrendData',
    'IntelligentSuggestion',
    'SuggestionType',
    'SuggestionPriority',
    'LearningData',
    'PerformanceMetrics',
    'HistoryAnalysis',
    'mine_patterns',
    'mine_workflows',
    'analyze_trends',
    'group_by_time_proximity',
    'RecommendationEngine',
    'HistoryIntelligence',
]
