"""
Output Analyzer.

Classifies raw process output into structured findings. The highest
priority matcher that matches is merged over a base analysis, a
category-specific analyzer is layered on top, and a non-zero exit code
always forces an error verdict. Analysis never raises.
"""

import re
import logging
from collections import deque, Counter
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable, Deque
from dataclasses import dataclass, field
from enum import Enum

from .matchers import OutputMatcher, default_matchers, follow_up

logger = logging.getLogger(__name__)

SUMMARY_LINE_LIMIT = 100


class AnalysisSeverity(Enum):
    """Overall verdict of an analysis."""
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class AnalysisRequest:
    """Output of one finished command."""
    command: str
    args: List[str] = field(default_factory=list)
    exit_code: int = 0
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    category: Optional[str] = None
    expected_output: Optional[str] = None
    killed: bool = False
    signal: Optional[str] = None

    @classmethod
    def from_result(cls, result, category: Optional[str] = None,
                    expected_output: Optional[str] = None) -> "AnalysisRequest":
        """Build from an ExecutionResult-shaped object."""
        return cls(
            command=result.program,
            args=list(result.args),
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            duration=result.duration,
            category=category,
            expected_output=expected_output,
            killed=result.killed,
            signal=result.signal,
        )


@dataclass
class OutputAnalysis:
    """Structured interpretation of a command's output."""
    summary: str
    severity: AnalysisSeverity
    confidence: float
    error_detected: bool = False
    warnings_detected: bool = False
    success_indicators: List[str] = field(default_factory=list)
    failure_indicators: List[str] = field(default_factory=list)
    key_findings: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    follow_up_commands: List[Dict[str, Any]] = field(default_factory=list)
    extracted_data: Dict[str, Any] = field(default_factory=dict)
    performance_metrics: Dict[str, Any] = field(default_factory=dict)
    matched_rule: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'summary': self.summary,
            'severity': self.severity.value,
            'confidence': self.confidence,
            'error_detected': self.error_detected,
            'warnings_detected': self.warnings_detected,
            'success_indicators': list(self.success_indicators),
            'failure_indicators': list(self.failure_indicators),
            'key_findings': list(self.key_findings),
            'recommendations': list(self.recommendations),
            'follow_up_commands': list(self.follow_up_commands),
            'extracted_data': dict(self.extracted_data),
            'performance_metrics': dict(self.performance_metrics),
            'matched_rule': self.matched_rule,
            'timestamp': self.timestamp.isoformat(),
        }


_LIST_FIELDS = ('success_indicators', 'failure_indicators', 'key_findings',
                'recommendations', 'follow_up_commands')
_DICT_FIELDS = ('extracted_data', 'performance_metrics')


def _merge(analysis: OutputAnalysis, partial: Dict[str, Any]) -> None:
    """Lists extend, dicts update, everything else replaces."""
    for key, value in partial.items():
        if value is None:
            continue
        if key in _LIST_FIELDS:
            getattr(analysis, key).extend(value)
        elif key in _DICT_FIELDS:
            getattr(analysis, key).update(value)
        elif key == 'severity':
            analysis.severity = AnalysisSeverity(value)
        else:
            setattr(analysis, key, value)


def _analyze_git(output: str) -> Dict[str, Any]:
    git_info: Dict[str, Any] = {}
    branch = re.search(r"On branch (.+)", output)
    if branch:
        git_info['branch'] = branch.group(1).strip()
    commit = re.search(r"commit ([a-f0-9]{7,})", output)
    if commit:
        git_info['commit'] = commit.group(1)

    follow_ups = []
    if 'Changes not staged' in output or 'Changes to be committed' in output:
        git_info['changes'] = len(re.findall(r"modified:|new file:|deleted:", output))
    if git_info.get('changes'):
        follow_ups.append(follow_up('git', ['add', '.'], 'Stage all changes',
                                    'Prepare changes for commit', 'git', 'medium'))
    if 'nothing to commit' in output:
        follow_ups.append(follow_up('git', ['pull'], 'Pull latest changes',
                                    'Stay up to date with remote repository', 'git', 'low'))

    return {'extracted_data': {'git': git_info}, 'follow_up_commands': follow_ups}


def _analyze_package_management(output: str) -> Dict[str, Any]:
    recommendations = []
    success_indicators = []
    vulnerabilities = re.search(r"(\d+) vulnerabilit(?:y|ies)", output)
    if vulnerabilities and int(vulnerabilities.group(1)) > 0:
        recommendations.append(
            f"Found {vulnerabilities.group(1)} vulnerabilities - run security audit"
        )
    if re.search(r"packages? installed|Successfully installed|added \d+ package", output):
        success_indicators.append('Package installation completed')
        recommendations.append('Consider running tests to verify installation')
    return {'recommendations': recommendations, 'success_indicators': success_indicators}


def _analyze_development(output: str) -> Dict[str, Any]:
    key_findings = []
    if 'compilation error' in output.lower() or 'syntax error' in output.lower():
        key_findings.append('Compilation errors detected')

    test_counts = re.findall(r"(\d+) (passing|failing|passed|failed)", output)
    if test_counts:
        key_findings.append("Test results: " + ", ".join(f"{n} {label}" for n, label in test_counts))

    extracted = {}
    failed = sum(int(n) for n, label in test_counts if label in ('failing', 'failed'))
    passed = sum(int(n) for n, label in test_counts if label in ('passing', 'passed'))
    if test_counts:
        extracted['tests'] = {'passed': passed, 'failed': failed}
    return {'key_findings': key_findings, 'extracted_data': extracted}


_LS_LONG_LINE = re.compile(
    r"^[-dlcbps][rwxsStT-]{9}[.@+]?\s+\d+\s+\S+\s+\S+\s+\d+\s+\w+\s+\d+\s+[\d:]+\s+(.+)$",
    re.MULTILINE
)


def _analyze_file_management(output: str) -> Dict[str, Any]:
    entries = _LS_LONG_LINE.findall(output)
    if not entries:
        return {}
    return {
        'extracted_data': {'file_paths': entries},
        'summary': f"Listed {len(entries)} items",
    }


CATEGORY_ANALYZERS: Dict[str, Callable[[str], Dict[str, Any]]] = {
    'git': _analyze_git,
    'package_management': _analyze_package_management,
    'development': _analyze_development,
    'file_management': _analyze_file_management,
}


class OutputAnalyzer:
    """
    Rule-table driven output classifier.

    Args:
        matchers: Matcher table (built-in table when None)
        history_size: Analyses kept per command type
    """

    def __init__(self, matchers: Optional[List[OutputMatcher]] = None, history_size: int = 50):
        self.matchers: List[OutputMatcher] = list(matchers) if matchers is not None else default_matchers()
        self.history_size = history_size
        self._history: Dict[str, Deque[OutputAnalysis]] = {}

        logger.info(f"OutputAnalyzer initialized:")
        logger.info(f"  Matchers: {len(self.matchers)}")
        logger.info(f"  History per command: {history_size}")

    def add_matcher(self, matcher: OutputMatcher) -> None:
        self.matchers.append(matcher)

    def remove_matcher(self, rule_id: str) -> bool:
        before = len(self.matchers)
        self.matchers = [m for m in self.matchers if m.rule_id != rule_id]
        return len(self.matchers) < before

    def analyze(self, request: AnalysisRequest) -> OutputAnalysis:
        """
        Analyze a command's output.

        Never raises; internal failures produce a degraded generic analysis.
        """
        try:
            analysis = self._analyze(request)
        except Exception as e:
            logger.error(f"Output analysis failed for {request.command}: {e}")
            analysis = OutputAnalysis(
                summary=self._smart_summary(request),
                severity=AnalysisSeverity.ERROR if request.exit_code != 0 else AnalysisSeverity.INFO,
                confidence=0.0,
                error_detected=request.exit_code != 0,
                failure_indicators=[f"Analysis failed: {e}"],
            )
        self._record(request.command, analysis)
        return analysis

    def _best_match(self, output: str):
        """Highest-priority matcher that matches; table order breaks ties."""
        best = None
        for matcher in self.matchers:
            match = matcher.regex.search(output)
            if match and (best is None or matcher.priority > best[0].priority):
                best = (matcher, match)
        return best

    def _analyze(self, request: AnalysisRequest) -> OutputAnalysis:
        output = "\n".join(part for part in (request.stdout, request.stderr) if part)
        failed = request.exit_code != 0 or request.killed

        analysis = OutputAnalysis(
            summary="Command completed",
            severity=AnalysisSeverity.ERROR if failed else AnalysisSeverity.SUCCESS,
            confidence=0.5,
            performance_metrics={
                'duration': request.duration,
                'output_size': len(output),
                'lines_of_output': len(output.splitlines()),
            },
        )

        if not output.strip():
            analysis.summary = "Command completed with no output"
            analysis.confidence = 0.8
        else:
            best = self._best_match(output)
            if best is not None:
                matcher, match = best
                _merge(analysis, matcher.analyzer(match, output))
                analysis.confidence = 0.9
                analysis.matched_rule = matcher.rule_id
            else:
                analysis.summary = self._smart_summary(request)

        category_analyzer = CATEGORY_ANALYZERS.get(request.category or "")
        if category_analyzer is not None and output:
            _merge(analysis, category_analyzer(output))

        if request.expected_output:
            if request.expected_output in output:
                analysis.success_indicators.append(f"Expected output found: {request.expected_output}")
            else:
                analysis.key_findings.append(f"Expected output not found: {request.expected_output}")

        if failed:
            analysis.error_detected = True
            analysis.severity = AnalysisSeverity.ERROR
            if request.killed:
                analysis.failure_indicators.append(
                    f"Process was terminated{f' by {request.signal}' if request.signal else ''}"
                )
            else:
                analysis.failure_indicators.append(f"Exit code {request.exit_code}")
            analysis.recommendations.extend([
                'Check the command syntax and arguments',
                'Verify required files and permissions exist',
            ])
            if analysis.summary in ("Command completed", "Command completed with no output"):
                analysis.summary = f"Command failed with exit code {request.exit_code}"

        return analysis

    def _smart_summary(self, request: AnalysisRequest) -> str:
        output = (request.stdout or request.stderr or "").strip()
        if not output:
            return "Command completed with no output"
        lines = output.splitlines()
        if len(lines) == 1:
            line = lines[0]
            return line if len(line) <= SUMMARY_LINE_LIMIT else line[:SUMMARY_LINE_LIMIT] + "..."
        return f"Command output ({len(lines)} lines, {len(output)} characters)"

    def _record(self, command: str, analysis: OutputAnalysis) -> None:
        key = command.split()[0] if command.strip() else "unknown"
        history = self._history.setdefault(key, deque(maxlen=self.history_size))
        history.append(analysis)

    def get_analysis_history(self, command: Optional[str] = None) -> List[OutputAnalysis]:
        """Recorded analyses for one command type, or for all of them."""
        if command is not None:
            return list(self._history.get(command, []))
        return [a for history in self._history.values() for a in history]

    def get_analysis_stats(self) -> Dict[str, Any]:
        analyses = self.get_analysis_history()
        severities = Counter(a.severity.value for a in analyses)
        return {
            'total_analyses': len(analyses),
            'command_types': {key: len(history) for key, history in self._history.items()},
            'severity_counts': dict(severities),
            'error_rate': severities.get('error', 0) / len(analyses) if analyses else 0.0,
            'average_confidence': (sum(a.confidence for a in analyses) / len(analyses)
                                   if analyses else 0.0),
        }
