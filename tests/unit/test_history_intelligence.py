"""
Unit tests for HistoryIntelligence.
"""

import json
import asyncio
import pytest
from datetime import datetime

from shellwise.learning import HistoryIntelligence, SuggestionType


FIXED_NOW = datetime(2024, 3, 5, 12, 0, 0)


@pytest.fixture
def intelligence():
    return HistoryIntelligence(clock=lambda: FIXED_NOW)


def _workday(make_entry, session_id="s1"):
    """Two mornings of the same routine plus a stray command."""
    entries = []
    for day_offset in (0, 5000):
        for i, (cmd, args) in enumerate([('git', ['pull']), ('npm', ['test']), ('git', ['push'])]):
            entries.append(make_entry(cmd, args, offset=day_offset + i * 30, session_id=session_id))
    entries.append(make_entry('ls', offset=9000, session_id=session_id))
    return entries


@pytest.mark.unit
class TestLearning:
    """Tests for preference scores and avoidance."""

    def test_third_failure_marks_command_avoided(self, intelligence, make_entry):
        for i in range(2):
            intelligence.add_entry(make_entry('foo', ['--bad'], offset=i, success=False))
        assert intelligence.learning.avoided_commands == []

        intelligence.add_entry(make_entry('foo', ['--bad'], offset=3, success=False))

        assert intelligence.learning.avoided_commands == ['foo --bad']
        assert intelligence.learning.failure_counts['foo --bad'] == 3

    def test_avoided_once(self, intelligence, make_entry):
        for i in range(5):
            intelligence.add_entry(make_entry('foo', offset=i, success=False))

        assert intelligence.learning.avoided_commands == ['foo']

    def test_preference_scores(self, intelligence, make_entry):
        intelligence.add_entry(make_entry('ls', offset=0))
        intelligence.add_entry(make_entry('ls', offset=1))
        intelligence.add_entry(make_entry('ls', offset=2, success=False))
        intelligence.add_entry(make_entry('rm', offset=3, success=False))

        assert intelligence.learning.preferred_commands['ls'] == pytest.approx(1.5)
        assert intelligence.learning.preferred_commands['rm'] == 0.0

    def test_session_log_is_bounded(self, make_entry):
        intelligence = HistoryIntelligence(max_entries_per_session=3)
        for i in range(5):
            intelligence.add_entry(make_entry(f"cmd{i}", offset=i))

        assert [e.command for e in intelligence.get_entries('s1')] == ['cmd2', 'cmd3', 'cmd4']

    def test_entries_merge_sessions_chronologically(self, intelligence, make_entry):
        intelligence.add_entry(make_entry('b', offset=10, session_id='s2'))
        intelligence.add_entry(make_entry('a', offset=0, session_id='s1'))

        assert [e.command for e in intelligence.get_entries()] == ['a', 'b']
        assert [e.command for e in intelligence.get_entries('s2')] == ['b']
        assert intelligence.get_entries('missing') == []


@pytest.mark.unit
class TestAnalysis:
    """Tests for cached analysis, metrics and insights."""

    def test_analysis_is_cached_until_new_entry(self, intelligence, make_entry):
        for entry in _workday(make_entry):
            intelligence.add_entry(entry)

        first = intelligence.analyze_history('s1')
        assert intelligence.analyze_history('s1') is first
        assert first.generated_at == FIXED_NOW
        assert [p.commands for p in first.patterns][0] == ['git pull', 'npm test', 'git push']
        assert first.workflows[0].steps == ['git pull', 'npm test', 'git push']

        intelligence.add_entry(make_entry('ls', offset=9500))
        assert intelligence.analyze_history('s1') is not first

    def test_other_session_keeps_its_cache(self, intelligence, make_entry):
        intelligence.add_entry(make_entry('ls', session_id='s1'))
        cached = intelligence.analyze_history('s1')

        intelligence.add_entry(make_entry('ls', session_id='s2'))

        assert intelligence.analyze_history('s1') is cached

    def test_performance_metrics(self, intelligence, make_entry):
        for i, success in enumerate([True, True, True, False]):
            intelligence.add_entry(make_entry('make', offset=i, success=success))

        metrics = intelligence.get_performance_metrics()

        assert metrics.total_commands == 4
        assert metrics.success_rate == pytest.approx(0.75)
        assert metrics.error_rate == pytest.approx(0.25)
        assert metrics.most_used_commands == [('make', 4)]
        assert metrics.productivity_score == pytest.approx(82.0)

    def test_empty_metrics(self, intelligence):
        assert intelligence.get_performance_metrics().total_commands == 0

    def test_insights(self, intelligence, make_entry):
        for i in range(3):
            intelligence.add_entry(make_entry('foo', ['--bad'], offset=i, success=False))

        insights = intelligence.analyze_history().insights

        assert "'foo --bad' fails 100% of the time" in insights
        assert "Most active hour: 09:00" in insights
        assert "Avoiding 1 command(s) after repeated failures" in insights

    def test_suggestions_for_context(self, intelligence, make_entry):
        for _ in range(2):
            intelligence.add_entry(make_entry('cargo', ['build'], success=False,
                                              working_directory='/workspace/rust-app'))
        intelligence.add_entry(make_entry('npm', ['test'], success=False, working_directory='/srv/web'))

        suggestions = intelligence.get_intelligent_suggestions({'current_directory': '/workspace/rust-app'})

        errors = [s for s in suggestions if s.title == "Command Error Analysis"]
        assert errors[0].commands == ['cargo build']
        assert len(suggestions) <= 10


@pytest.mark.unit
class TestExportImport:
    """Tests for the persistence boundary."""

    def test_full_round_trip(self, intelligence, make_entry):
        for entry in _workday(make_entry) + _workday(make_entry, session_id='s2'):
            intelligence.add_entry(entry)
        intelligence.rebuild_patterns()
        intelligence.refresh_learning()

        exported = json.loads(json.dumps(intelligence.export_history()))
        restored = HistoryIntelligence(clock=lambda: FIXED_NOW)
        restored.import_history(exported)

        assert restored.export_history() == exported
        assert restored.get_entries() == intelligence.get_entries()

    def test_session_export_replaces_only_that_session(self, intelligence, make_entry):
        intelligence.add_entry(make_entry('ls', session_id='s1'))
        intelligence.add_entry(make_entry('pwd', session_id='s2'))
        exported = intelligence.export_history('s2')

        assert exported['session_id'] == 's2'
        assert [e['command'] for e in exported['entries']] == ['pwd']

        other = HistoryIntelligence()
        other.add_entry(make_entry('whoami', session_id='s1'))
        other.import_history(exported)

        assert [e.command for e in other.get_entries('s1')] == ['whoami']
        assert [e.command for e in other.get_entries('s2')] == ['pwd']

    def test_import_without_learning_data_replays_entries(self, intelligence, make_entry):
        for i in range(3):
            intelligence.add_entry(make_entry('foo', offset=i, success=False))
        exported = intelligence.export_history()
        del exported['learning_data']
        del exported['patterns']
        del exported['workflows']

        restored = HistoryIntelligence()
        restored.import_history(exported)

        assert restored.learning.avoided_commands == ['foo']

    def test_import_rejects_unknown_shape(self, intelligence):
        with pytest.raises(ValueError):
            intelligence.import_history({'version': 1})

    def test_clear_history(self, intelligence, make_entry):
        intelligence.add_entry(make_entry('ls', session_id='s1'))
        intelligence.add_entry(make_entry('ls', session_id='s2'))

        intelligence.clear_history('s1')
        assert intelligence.get_entries('s1') == []
        assert len(intelligence.get_entries()) == 1

        intelligence.clear_history()
        assert intelligence.get_entries() == []
        assert intelligence.learning.preferred_commands == {}


@pytest.mark.unit
class TestBackgroundJobs:
    """Tests for periodic rebuilds."""

    @pytest.mark.asyncio
    async def test_jobs_rebuild_patterns(self, make_entry):
        intelligence = HistoryIntelligence(pattern_interval=0.01, learning_interval=0.01)
        for entry in _workday(make_entry):
            intelligence.add_entry(entry)

        intelligence.start_background_jobs()
        await asyncio.sleep(0.1)
        await intelligence.stop_background_jobs()

        assert intelligence.get_patterns()
        assert intelligence.get_workflows()
        assert any(o['type'] == 'alias' for o in intelligence.learning.optimization_opportunities)

    @pytest.mark.asyncio
    async def test_failing_job_keeps_running(self, make_entry, monkeypatch):
        intelligence = HistoryIntelligence(pattern_interval=0.01, learning_interval=10)
        calls = []

        def broken():
            calls.append(1)
            raise RuntimeError("boom")

        broken.__name__ = 'rebuild_patterns'
        monkeypatch.setattr(intelligence, 'rebuild_patterns', broken)

        intelligence.start_background_jobs()
        await asyncio.sleep(0.1)
        await intelligence.stop_background_jobs()

        assert len(calls) >= 2

    def test_suggestion_types(self, intelligence, make_entry):
        intelligence.add_entry(make_entry('ls'))
        types = {s.type for s in intelligence.get_intelligent_suggestions()}
        assert types <= set(SuggestionType)
