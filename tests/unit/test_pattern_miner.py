"""
Unit tests for pattern, workflow and trend mining.
"""

import pytest
from datetime import datetime

from shellwise.learning import mine_patterns, mine_workflows, analyze_trends, group_by_time_proximity
from shellwise.learning.pattern_miner import signature_id, period_index


@pytest.mark.unit
class TestPatterns:
    """Tests for sliding-window pattern mining."""

    def test_repeated_window_becomes_pattern(self, make_entry):
        entries = [make_entry(cmd, offset=i * 10) for i, cmd in enumerate(['a', 'b', 'c', 'a', 'b', 'c'])]

        patterns = mine_patterns(entries)

        assert len(patterns) == 1
        pattern = patterns[0]
        assert pattern.commands == ['a', 'b', 'c']
        assert pattern.frequency == 2
        assert pattern.success_rate == pytest.approx(1.0)
        assert pattern.avg_duration == pytest.approx(3.0)
        assert pattern.contexts == ['/workspace/project']
        assert pattern.last_used == entries[5].started_at

    def test_args_are_part_of_the_signature(self, make_entry):
        entries = [
            make_entry('git', ['status'], offset=0), make_entry('git', ['add', '.'], offset=1),
            make_entry('git', ['status'], offset=2), make_entry('git', ['add', '-p'], offset=3),
        ]

        assert mine_patterns(entries, window=2) == []

    def test_unsorted_input_is_ordered_by_start(self, make_entry):
        entries = [make_entry('b', offset=10), make_entry('a', offset=0),
                   make_entry('b', offset=30), make_entry('a', offset=20)]

        patterns = mine_patterns(entries, window=2)

        assert [p.commands for p in patterns] == [['a', 'b']]

    def test_success_rate_is_rolling_average(self, make_entry):
        entries = [
            make_entry('a', offset=0), make_entry('b', offset=1),
            make_entry('a', offset=2), make_entry('b', offset=3, success=False),
        ]

        pattern = mine_patterns(entries, window=2)[0]

        assert pattern.frequency == 2
        assert pattern.success_rate == pytest.approx(0.75)

    def test_too_few_entries(self, make_entry):
        assert mine_patterns([make_entry('a'), make_entry('b', offset=1)]) == []

    def test_signature_id_is_stable(self):
        first = signature_id('pattern', ['git status', 'git add .'])

        assert first == signature_id('pattern', ['git status', 'git add .'])
        assert first != signature_id('pattern', ['git add .', 'git status'])
        assert first.startswith('pattern_')
        assert len(first) == len('pattern_') + 16


@pytest.mark.unit
class TestWorkflows:
    """Tests for time-proximity grouping and workflow mining."""

    def test_groups_split_on_gap(self, make_entry):
        entries = [make_entry('a', offset=0), make_entry('b', offset=100),
                   make_entry('c', offset=1000), make_entry('d', offset=1200)]

        groups = group_by_time_proximity(entries, max_gap=600)

        assert [[e.command for e in g] for g in groups] == [['a', 'b'], ['c', 'd']]

    def test_gap_is_measured_from_previous_completion(self, make_entry):
        entries = [make_entry('build', offset=0, duration=900), make_entry('deploy', offset=1000)]

        groups = group_by_time_proximity(entries, max_gap=600)

        assert len(groups) == 1

    def test_recurring_workflow(self, make_entry):
        entries = [
            make_entry('git', ['status'], offset=0), make_entry('git', ['add', '.'], offset=10),
            make_entry('git', ['status'], offset=2000), make_entry('git', ['add', '.'], offset=2010, success=False),
            make_entry('ls', offset=4000),
        ]

        workflows = mine_workflows(entries)

        assert len(workflows) == 1
        workflow = workflows[0]
        assert workflow.steps == ['git status', 'git add .']
        assert workflow.frequency == 2
        assert workflow.triggers == ['git']
        assert workflow.name == "Workflow: git status ... git add ."
        assert workflow.success_rate == pytest.approx(0.75)

    def test_single_command_groups_are_not_workflows(self, make_entry):
        entries = [make_entry('ls', offset=0), make_entry('ls', offset=5000)]
        assert mine_workflows(entries) == []


@pytest.mark.unit
class TestTrends:
    """Tests for per-period usage trends."""

    @pytest.fixture
    def entries(self, make_entry):
        # Base time is Monday 2024-03-04 09:00; the first three run on Sunday
        return [
            make_entry('git', offset=-86400), make_entry('git', offset=-86000),
            make_entry('ls', offset=-85000),
            make_entry('git', offset=0), make_entry('git', offset=100), make_entry('git', offset=200),
        ]

    def test_day_trend(self, entries):
        day = analyze_trends(entries)['day']

        assert [t.command_type for t in day] == ['git', 'ls']
        git, ls = day
        assert (git.usage, git.previous_usage, git.change, git.prediction) == (3, 2, 50.0, 4)
        assert (ls.usage, ls.previous_usage, ls.change, ls.prediction) == (0, 1, -100.0, 0)

    def test_hour_skips_idle_types(self, entries):
        hour = analyze_trends(entries)['hour']

        assert len(hour) == 1
        assert hour[0].command_type == 'git'
        assert hour[0].change == 100.0
        assert hour[0].prediction == 6

    def test_week_boundary_is_monday(self, entries):
        week = {t.command_type: t for t in analyze_trends(entries)['week']}

        assert week['git'].usage == 3
        assert week['git'].previous_usage == 2

    def test_month(self, entries):
        month = {t.command_type: t for t in analyze_trends(entries)['month']}

        assert month['git'].usage == 5
        assert month['ls'].usage == 1

    def test_empty(self):
        assert analyze_trends([]) == {'hour': [], 'day': [], 'week': [], 'month': []}

    def test_period_index(self):
        moment = datetime(2024, 3, 4, 9, 30)

        assert period_index(moment, 'day') - period_index(datetime(2024, 3, 3), 'day') == 1
        assert period_index(moment, 'month') == 2024 * 12 + 2
        with pytest.raises(ValueError):
            period_index(moment, 'fortnight')
