"""
Output Analysis Module for shellwise.

Turns raw process output into structured findings using a
priority-ordered matcher table plus per-category analyzers.
"""

from .matchers import OutputMatcher, ANALYZERS, default_matchers, load_matchers
from .output_analyzer import (
    OutputAnalyzer, OutputAnalysis, AnalysisRequest, AnalysisSeverity,
)

__all__ = [
    'OutputMatcher',
    'ANALYZERS',
    'default_matchers',
    'load_matchers',
    'OutputAnalyzer',
    'OutputAnalysis',
    'AnalysisRequest',
    'AnalysisSeverity',
]
