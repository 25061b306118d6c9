"""
Unit tests for output analysis.
"""

import pytest
from pathlib import Path
from types import SimpleNamespace

from shellwise.analysis import (
    OutputAnalyzer, AnalysisRequest, AnalysisSeverity, OutputMatcher,
    default_matchers, load_matchers,
)

CONFIG_DIR = Path(__file__).resolve().parents[2] / 'config'


@pytest.fixture
def analyzer():
    return OutputAnalyzer()


@pytest.mark.unit
class TestMatchers:
    """Tests for matcher selection."""

    def test_git_clone(self, analyzer):
        analysis = analyzer.analyze(AnalysisRequest(
            'git', ['clone', 'https://example.com/repo.git'],
            stderr="Cloning into 'repo'...\n"
        ))

        assert analysis.matched_rule == 'git_clone'
        assert analysis.summary == "Successfully cloned repository to repo"
        assert analysis.severity is AnalysisSeverity.SUCCESS
        assert analysis.confidence == pytest.approx(0.9)
        assert analysis.follow_up_commands[0]['program'] == 'ls'
        assert analysis.follow_up_commands[0]['args'] == ['-la', 'repo']

    def test_error_matcher_outranks_others(self, analyzer):
        analysis = analyzer.analyze(AnalysisRequest(
            'git', exit_code=128,
            stderr="Cloning into 'x'...\nfatal: repository not found\n"
        ))

        assert analysis.matched_rule == 'error'
        assert analysis.summary == "Detected 1 error(s)"
        assert analysis.error_detected
        assert analysis.severity is AnalysisSeverity.ERROR
        assert 'fatal: repository not found' in analysis.failure_indicators
        assert 'Exit code 128' in analysis.failure_indicators

    def test_custom_matcher_with_higher_priority_wins(self, analyzer):
        analyzer.add_matcher(OutputMatcher(
            'custom', r'error', lambda m, out: {'summary': 'custom wins'}, 500
        ))

        analysis = analyzer.analyze(AnalysisRequest('make', stdout='error: nope'))

        assert analysis.matched_rule == 'custom'
        assert analysis.summary == 'custom wins'
        assert analyzer.remove_matcher('custom')
        assert not analyzer.remove_matcher('custom')

    def test_grep_matches(self, analyzer):
        analysis = analyzer.analyze(AnalysisRequest(
            'grep', ['-rn', 'foo', '.'],
            stdout="src/a.py:3:foo\nsrc/b.py:9:foo()\nsrc/a.py:10:foo = 1\n"
        ))

        assert analysis.summary == "Found 3 matches in 2 file(s)"
        assert analysis.extracted_data['file_paths'] == ['src/a.py', 'src/b.py']

    def test_npm_install_with_category(self, analyzer):
        analysis = analyzer.analyze(AnalysisRequest(
            'npm', ['install'], category='package_management',
            stdout="added 120 packages, and audited 121 packages in 3.2s\n"
        ))

        assert analysis.matched_rule == 'npm_install'
        assert analysis.performance_metrics['tool_reported_time'] == pytest.approx(3.2)
        assert [f['program'] for f in analysis.follow_up_commands] == ['npm', 'npm']
        assert 'Package installation completed' in analysis.success_indicators

    def test_load_matchers_from_config(self):
        matchers = load_matchers(CONFIG_DIR / 'output_matchers.yaml')
        analyzer = OutputAnalyzer(default_matchers() + matchers)

        analysis = analyzer.analyze(AnalysisRequest(
            'cargo', ['build'],
            stderr="   Compiling app v0.1.0\n    Finished dev [unoptimized + debuginfo] target(s) in 2.31s\n"
        ))

        assert [m.rule_id for m in matchers] == ['cargo_build', 'vite_ready']
        assert analysis.matched_rule == 'cargo_build'
        assert analysis.summary == 'Build completed successfully'

    def test_load_matchers_rejects_unknown_analyzer(self, tmp_path):
        path = tmp_path / 'matchers.yaml'
        path.write_text("matchers:\n  - id: x\n    pattern: x\n    analyzer: nope\n")

        with pytest.raises(ValueError, match="nope"):
            load_matchers(path)


@pytest.mark.unit
class TestVerdicts:
    """Tests for severity, summaries and failure handling."""

    def test_no_output(self, analyzer):
        analysis = analyzer.analyze(AnalysisRequest('true'))

        assert analysis.summary == "Command completed with no output"
        assert analysis.confidence == pytest.approx(0.8)
        assert analysis.severity is AnalysisSeverity.SUCCESS

    def test_nonzero_exit_forces_error(self, analyzer):
        analysis = analyzer.analyze(AnalysisRequest('false', exit_code=2))

        assert analysis.error_detected
        assert analysis.severity is AnalysisSeverity.ERROR
        assert analysis.summary == "Command failed with exit code 2"
        assert 'Check the command syntax and arguments' in analysis.recommendations

    def test_killed_process(self, analyzer):
        analysis = analyzer.analyze(AnalysisRequest('sleep', exit_code=-15, killed=True, signal='SIGTERM'))

        assert analysis.error_detected
        assert "Process was terminated by SIGTERM" in analysis.failure_indicators

    def test_single_line_summary(self, analyzer):
        analysis = analyzer.analyze(AnalysisRequest('echo', stdout='hello world\n'))
        assert analysis.summary == 'hello world'

    def test_long_line_summary_is_truncated(self, analyzer):
        analysis = analyzer.analyze(AnalysisRequest('echo', stdout='x' * 150))

        assert analysis.summary == 'x' * 100 + '...'

    def test_multi_line_summary(self, analyzer):
        analysis = analyzer.analyze(AnalysisRequest('cat', stdout='a\nb\nc\n'))
        assert analysis.summary == "Command output (3 lines, 5 characters)"

    def test_git_category_extracts_state(self, analyzer):
        analysis = analyzer.analyze(AnalysisRequest(
            'git', ['status'], category='git',
            stdout="On branch main\nChanges not staged for commit:\n\tmodified:   app.py\n"
        ))

        assert analysis.extracted_data['git'] == {'branch': 'main', 'changes': 1}
        assert analysis.follow_up_commands[0]['args'] == ['add', '.']

    def test_development_category_counts_tests(self, analyzer):
        analysis = analyzer.analyze(AnalysisRequest(
            'pytest', category='development', exit_code=1,
            stdout="===== 10 passed, 2 failed in 1.2s =====\n"
        ))

        assert analysis.extracted_data['tests'] == {'passed': 10, 'failed': 2}
        assert analysis.severity is AnalysisSeverity.ERROR

    def test_expected_output(self, analyzer):
        found = analyzer.analyze(AnalysisRequest('echo', stdout='ready', expected_output='ready'))
        missing = analyzer.analyze(AnalysisRequest('echo', stdout='starting', expected_output='ready'))

        assert "Expected output found: ready" in found.success_indicators
        assert "Expected output not found: ready" in missing.key_findings

    def test_broken_analyzer_never_raises(self, analyzer):
        def broken(match, output):
            raise RuntimeError("kaboom")

        analyzer.add_matcher(OutputMatcher('broken', r'.', broken, 1000))

        analysis = analyzer.analyze(AnalysisRequest('echo', stdout='hi'))

        assert analysis.confidence == 0.0
        assert analysis.summary == 'hi'
        assert "Analysis failed: kaboom" in analysis.failure_indicators

    def test_from_result(self):
        result = SimpleNamespace(program='ls', args=('-la',), exit_code=0, stdout='x', stderr='',
                                 duration=0.2, killed=False, signal=None)

        request = AnalysisRequest.from_result(result, category='file_management')

        assert request.command == 'ls'
        assert request.args == ['-la']
        assert request.category == 'file_management'


@pytest.mark.unit
class TestHistory:
    """Tests for per-command analysis history."""

    def test_history_and_stats(self, analyzer):
        analyzer.analyze(AnalysisRequest('git', stdout='ok'))
        analyzer.analyze(AnalysisRequest('git', exit_code=1))
        analyzer.analyze(AnalysisRequest('ls', stdout='a'))

        assert len(analyzer.get_analysis_history('git')) == 2
        assert len(analyzer.get_analysis_history()) == 3

        stats = analyzer.get_analysis_stats()
        assert stats['total_analyses'] == 3
        assert stats['command_types'] == {'git': 2, 'ls': 1}
        assert stats['error_rate'] == pytest.approx(1 / 3)

    def test_history_is_bounded(self):
        analyzer = OutputAnalyzer(history_size=2)
        for _ in range(5):
            analyzer.analyze(AnalysisRequest('ls'))

        assert len(analyzer.get_analysis_history('ls')) == 2

    def test_empty_stats(self, analyzer):
        stats = analyzer.get_analysis_stats()
        assert stats['total_analyses'] == 0
        assert stats['error_rate'] == 0.0
