"""
Unit tests for the SessionOrchestrator: sessions, approval, execution and learning.

All processes go through FakeProcessRunner, so nothing is actually spawned.
"""

import asyncio
import pytest

from shellwise.communication import (
    SessionOrchestrator, MessageType, CommandState, CommandExecution, ExecutionOptions,
    SessionNotFoundError, SessionBusyError, InvalidStateTransition, SessionStatus,
)
from shellwise.execution import KillReason, SecurityPolicy
from shellwise.interpreter import Command, RiskLevel, UserPreferences
from shellwise.learning import HistoryIntelligence


@pytest.fixture
def intelligence():
    return HistoryIntelligence()


@pytest.fixture
def orchestrator(interpreter, executor, intelligence):
    return SessionOrchestrator(interpreter, executor, intelligence=intelligence, approval_timeout=1.0)


@pytest.fixture
def session(orchestrator):
    return orchestrator.create_session('test', working_directory='/workspace/project')


def _safe(program, *args, **fields):
    return Command(program, tuple(args), risk_level=RiskLevel.SAFE, **fields)


def _events(session):
    return [e.message_type for e in session.channel.drain_events()]


async def _wait_for(predicate):
    for _ in range(200):
        if predicate():
            return
        await asyncio.sleep(0.005)
    raise AssertionError("condition never became true")


async def _approval_request(session):
    while True:
        event = await session.channel.next_event(timeout=1.0)
        if event.message_type is MessageType.APPROVAL_REQUEST:
            return event


@pytest.mark.unit
class TestSessions:
    """Tests for session lifecycle."""

    def test_create_session(self, orchestrator, session):
        assert orchestrator.get_session(session.id) is session
        assert session.working_directory == '/workspace/project'
        assert orchestrator.list_sessions() == [session]
        assert _events(session) == [MessageType.SESSION_CREATED]

    def test_unknown_session(self, orchestrator):
        with pytest.raises(SessionNotFoundError):
            orchestrator.get_session('missing')

    @pytest.mark.asyncio
    async def test_destroy_session(self, orchestrator, session):
        await orchestrator.destroy_session(session.id)

        assert orchestrator.list_sessions() == []
        with pytest.raises(SessionNotFoundError):
            orchestrator.get_session(session.id)

    @pytest.mark.asyncio
    async def test_destroy_cancels_running_execution(self, orchestrator, session, fake_runner):
        fake_runner.script('make', duration=5.0)
        task = asyncio.create_task(orchestrator.execute_commands(session.id, [_safe('make')]))
        await _wait_for(lambda: fake_runner.calls)

        await orchestrator.destroy_session(session.id)
        executions = await task

        assert executions[0].state is CommandState.CANCELLED
        assert not orchestrator.is_busy(session.id)

    def test_export_and_health(self, orchestrator, session):
        exported = orchestrator.export_session(session.id)
        health = orchestrator.get_service_health()

        assert exported['session']['name'] == 'test'
        assert exported['history'] == []
        assert health['sessions'] == 1
        assert health['active_executions'] == 0
        assert health['completion_service'] is True
        assert health['history_intelligence'] is True

    @pytest.mark.asyncio
    async def test_export_import_round_trip(self, orchestrator, session, interpreter, executor):
        session.environment['PROJECT_MODE'] = 'dev'
        session.preferences.preferred_package_manager = 'pnpm'
        await orchestrator.execute_commands(session.id, [_safe('echo', 'one'), _safe('ls', '-la')])
        exported = orchestrator.export_session(session.id)

        restored_orchestrator = SessionOrchestrator(interpreter, executor)
        restored = restored_orchestrator.import_session(exported)

        assert restored.id == session.id
        assert restored.status is SessionStatus.ACTIVE
        assert restored.preferences.preferred_package_manager == 'pnpm'
        assert [e.command for e in restored.history] == ['echo', 'ls']
        assert restored_orchestrator.export_session(session.id) == exported
        assert _events(restored) == [MessageType.SESSION_CREATED]

    def test_import_rejects_duplicate_and_malformed(self, orchestrator, session):
        exported = orchestrator.export_session(session.id)

        with pytest.raises(ValueError, match="already exists"):
            orchestrator.import_session(exported)
        with pytest.raises(ValueError):
            orchestrator.import_session({'history': []})

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_session(self, orchestrator, session, fake_runner):
        with pytest.raises(ValueError):
            await orchestrator.execute_commands(
                session.id, [_safe('ls')], ExecutionOptions(policy_overrides={'no_such_field': 1})
            )

        assert session.status is SessionStatus.ERROR
        assert not orchestrator.is_busy(session.id)
        assert fake_runner.calls == []

        await orchestrator.execute_commands(session.id, [_safe('ls')])
        assert session.status is SessionStatus.ACTIVE


@pytest.mark.unit
class TestQueryFlow:
    """Tests for parse-then-execute."""

    @pytest.mark.asyncio
    async def test_show_recent_branches(self, orchestrator, session, fake_runner, intelligence):
        fake_runner.script('git', stdout='* main\n  feature/login\n')

        parsed, executions = await orchestrator.run_query(session.id, 'show recent branches')

        assert parsed.commands[0].args == ('branch', '--sort=-committerdate', '-a')
        assert len(executions) == 1
        execution = executions[0]
        assert execution.state is CommandState.COMPLETED
        assert execution.result.stdout == '* main\n  feature/login\n'
        assert execution.analysis is not None
        assert fake_runner.calls[0].program == 'git'

        entry = session.history[0]
        assert entry.command_line == 'git branch --sort=-committerdate -a'
        assert entry.original_query == 'show recent branches'
        assert entry.success
        assert intelligence.get_entries(session.id) == [entry]

        assert _events(session) == [
            MessageType.SESSION_CREATED,
            MessageType.COMMAND_PARSED,
            MessageType.COMMAND_STARTED,
            MessageType.COMMAND_COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_empty_parse_runs_nothing(self, orchestrator, session, fake_runner, completion_service):
        completion_service.responses = ['not json']

        parsed, executions = await orchestrator.run_query(session.id, 'ponder the meaning of life')

        assert parsed.commands == ()
        assert executions == []
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_recent_commands_reach_the_interpreter(self, orchestrator, session, completion_service):
        await orchestrator.execute_commands(session.id, [_safe('ls', '-la')])
        completion_service.responses = ['[]']

        await orchestrator.process_natural_language(session.id, 'what next')

        assert 'ls -la' in completion_service.prompts[0]

    @pytest.mark.asyncio
    async def test_avoided_commands_are_flagged(self, orchestrator, session, intelligence):
        intelligence.learning.avoided_commands.append('git branch --sort=-committerdate -a')

        parsed = await orchestrator.process_natural_language(session.id, 'show recent branches')

        assert "'git branch --sort=-committerdate -a' has failed repeatedly before" in parsed.warnings


@pytest.mark.unit
class TestApproval:
    """Tests for the approval gate."""

    def test_requires_approval(self, orchestrator):
        prefs = UserPreferences()
        relaxed = UserPreferences(confirm_destructive_commands=False)

        assert orchestrator.requires_approval(Command('kill', risk_level=RiskLevel.HIGH), prefs)
        assert orchestrator.requires_approval(Command('x', risk_level=RiskLevel.CRITICAL), relaxed)
        assert orchestrator.requires_approval(Command('npm', risk_level=RiskLevel.MEDIUM), prefs)
        assert not orchestrator.requires_approval(Command('npm', risk_level=RiskLevel.MEDIUM), relaxed)
        assert not orchestrator.requires_approval(_safe('ls'), prefs)

        elevated = Command('apt', risk_level=RiskLevel.LOW, requires_elevation=True)
        assert orchestrator.requires_approval(elevated, relaxed)
        assert not orchestrator.requires_approval(elevated, relaxed, SecurityPolicy(allow_elevation=True))

    @pytest.mark.asyncio
    async def test_approved_command_runs(self, orchestrator, session):
        command = Command('kill', ('-15', '4242'), risk_level=RiskLevel.HIGH)
        task = asyncio.create_task(orchestrator.execute_commands(session.id, [command]))

        request = await _approval_request(session)
        assert request.content['command_id'] == command.id
        assert orchestrator.respond_to_approval(session.id, command.id, True)
        executions = await task

        execution = executions[0]
        assert execution.state is CommandState.COMPLETED
        assert execution.user_approved
        assert [state for state, _ in execution.transitions] == [
            CommandState.APPROVAL_REQUESTED, CommandState.APPROVED,
            CommandState.RUNNING, CommandState.COMPLETED,
        ]
        assert session.history[0].user_approved

    @pytest.mark.asyncio
    async def test_rejection_halts_sequence(self, orchestrator, session, fake_runner):
        commands = [Command('kill', ('-15', '4242'), risk_level=RiskLevel.HIGH), _safe('echo', 'after')]
        task = asyncio.create_task(orchestrator.execute_commands(session.id, commands))

        await _approval_request(session)
        orchestrator.respond_to_approval(session.id, commands[0].id, False)
        executions = await task

        assert len(executions) == 1
        assert executions[0].state is CommandState.REJECTED
        assert executions[0].error == "Command rejected"
        assert fake_runner.calls == []
        assert len(session.history) == 0

    @pytest.mark.asyncio
    async def test_approval_timeout_rejects(self, interpreter, executor, fake_runner):
        orchestrator = SessionOrchestrator(interpreter, executor, approval_timeout=0.05)
        session = orchestrator.create_session()

        executions = await orchestrator.execute_commands(
            session.id, [Command('kill', ('1234',), risk_level=RiskLevel.HIGH)]
        )

        assert executions[0].state is CommandState.REJECTED
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_auto_approve(self, orchestrator, session, fake_runner):
        executions = await orchestrator.execute_commands(
            session.id, [Command('kill', ('1234',), risk_level=RiskLevel.HIGH)],
            ExecutionOptions(auto_approve=True)
        )

        assert executions[0].state is CommandState.COMPLETED
        assert executions[0].user_approved
        assert MessageType.APPROVAL_REQUEST not in _events(session)


@pytest.mark.unit
class TestExecution:
    """Tests for execution semantics."""

    @pytest.mark.asyncio
    async def test_security_refusal_never_spawns(self, orchestrator, session, fake_runner, executor):
        executions = await orchestrator.execute_commands(
            session.id, [Command('rm', ('-rf', 'build'), risk_level=RiskLevel.LOW)]
        )

        execution = executions[0]
        assert execution.state is CommandState.FAILED
        assert execution.violations
        assert 'blocked by security policy' in execution.error
        assert fake_runner.calls == []
        assert len(session.history) == 0
        assert executor.get_audit_log()[-1].program == 'rm'
        assert MessageType.COMMAND_FAILED in _events(session)

    @pytest.mark.asyncio
    async def test_policy_overrides_apply_per_call(self, orchestrator, session, fake_runner):
        options = ExecutionOptions(policy_overrides={'allowed_commands': None, 'blocked_commands': []})

        executions = await orchestrator.execute_commands(session.id, [_safe('rm', 'build.log')], options)

        assert executions[0].state is CommandState.COMPLETED
        assert fake_runner.calls[0].program == 'rm'

    @pytest.mark.asyncio
    async def test_failure_halts_sequence(self, orchestrator, session, fake_runner):
        fake_runner.script('make', exit_code=2, stderr='make: *** No rule to make target')

        executions = await orchestrator.execute_commands(session.id, [_safe('make'), _safe('echo', 'done')])

        assert [e.state for e in executions] == [CommandState.FAILED]
        assert len(fake_runner.calls) == 1

    @pytest.mark.asyncio
    async def test_continue_on_error(self, orchestrator, session, fake_runner):
        fake_runner.script('make', exit_code=2)

        executions = await orchestrator.execute_commands(
            session.id, [_safe('make'), _safe('echo', 'done')], ExecutionOptions(continue_on_error=True)
        )

        assert [e.state for e in executions] == [CommandState.FAILED, CommandState.COMPLETED]
        assert [e.success for e in session.history] == [False, True]

    @pytest.mark.asyncio
    async def test_dry_run(self, orchestrator, session, fake_runner):
        command = Command('kill', ('-15', '4242'), risk_level=RiskLevel.HIGH)

        executions = await orchestrator.execute_commands(session.id, [command], ExecutionOptions(dry_run=True))

        execution = executions[0]
        assert execution.state is CommandState.COMPLETED
        assert execution.result.stdout == "[DRY RUN] Would execute: kill -15 4242"
        assert fake_runner.calls == []
        assert len(session.history) == 0
        assert MessageType.APPROVAL_REQUEST not in _events(session)

    @pytest.mark.asyncio
    async def test_environment_and_directory_layering(self, orchestrator, fake_runner):
        session = orchestrator.create_session(working_directory='/workspace/project',
                                              environment={'A': '1', 'B': '1'})
        command = _safe('echo', 'x', environment={'B': '2'}, working_directory='/workspace/other')

        await orchestrator.execute_commands(session.id, [command], ExecutionOptions(environment={'C': '3'}))

        spec = fake_runner.calls[0]
        assert (spec.env['A'], spec.env['B'], spec.env['C']) == ('1', '2', '3')
        assert spec.cwd == '/workspace/other'

        await orchestrator.execute_commands(session.id, [command],
                                            ExecutionOptions(working_directory='/workspace/override'))
        assert fake_runner.calls[1].cwd == '/workspace/override'

    @pytest.mark.asyncio
    async def test_timeout_option(self, orchestrator, session, fake_runner):
        fake_runner.script('make', duration=5.0)

        executions = await orchestrator.execute_commands(session.id, [_safe('make')], ExecutionOptions(timeout=0.05))

        execution = executions[0]
        assert execution.state is CommandState.FAILED
        assert execution.result.kill_reason is KillReason.TIMEOUT
        assert "Retry with a longer timeout" in execution.follow_up_suggestions

    @pytest.mark.asyncio
    async def test_missing_program_hint(self, orchestrator, session, fake_runner):
        fake_runner.script('make', spawn_error=FileNotFoundError(2, 'No such file or directory', 'make'))

        executions = await orchestrator.execute_commands(session.id, [_safe('make')])

        assert executions[0].result.exit_code == 127
        assert "Check that 'make' is installed and on PATH" in executions[0].follow_up_suggestions

    @pytest.mark.asyncio
    async def test_output_limit_fails_command(self, orchestrator, session, fake_runner):
        fake_runner.script('cat', stdout='x' * 100)

        executions = await orchestrator.execute_commands(
            session.id, [_safe('cat', 'big.log')], ExecutionOptions(policy_overrides={'max_output_size': 10})
        )

        execution = executions[0]
        assert execution.state is CommandState.FAILED
        assert execution.violations[0].type.value == 'output_size_exceeded'
        assert len(execution.result.stdout) == 10
        assert len(session.history) == 1


@pytest.mark.unit
class TestConcurrency:
    """Tests for per-session exclusivity and cancellation."""

    @pytest.mark.asyncio
    async def test_busy_session_and_cancel(self, orchestrator, session, fake_runner):
        fake_runner.script('make', duration=5.0)
        task = asyncio.create_task(
            orchestrator.execute_commands(session.id, [_safe('make'), _safe('echo', 'after')])
        )
        await _wait_for(lambda: fake_runner.calls)

        assert orchestrator.is_busy(session.id)
        with pytest.raises(SessionBusyError):
            await orchestrator.execute_commands(session.id, [_safe('ls')])

        assert await orchestrator.cancel_execution(session.id)
        executions = await task

        assert len(executions) == 1
        assert executions[0].state is CommandState.CANCELLED
        assert executions[0].result.kill_reason is KillReason.CANCELLED
        assert not orchestrator.is_busy(session.id)
        assert len(fake_runner.calls) == 1

    @pytest.mark.asyncio
    async def test_cancel_idle_session(self, orchestrator, session):
        assert not await orchestrator.cancel_execution(session.id)

    @pytest.mark.asyncio
    async def test_cancel_while_awaiting_approval(self, orchestrator, session, fake_runner):
        task = asyncio.create_task(orchestrator.execute_commands(
            session.id, [Command('kill', ('1',), risk_level=RiskLevel.HIGH)]
        ))
        await _approval_request(session)

        await orchestrator.cancel_execution(session.id)
        executions = await task

        assert executions[0].state is CommandState.CANCELLED
        assert fake_runner.calls == []

    @pytest.mark.asyncio
    async def test_sessions_run_in_parallel(self, orchestrator, fake_runner):
        fake_runner.script('make', duration=0.2)
        first = orchestrator.create_session()
        second = orchestrator.create_session()

        results = await asyncio.gather(
            orchestrator.execute_commands(first.id, [_safe('make')]),
            orchestrator.execute_commands(second.id, [_safe('make')]),
        )

        assert all(r[0].state is CommandState.COMPLETED for r in results)


@pytest.mark.unit
class TestStateMachine:
    """Tests for the command lifecycle."""

    def test_illegal_transition(self):
        execution = CommandExecution(command=_safe('ls'))

        with pytest.raises(InvalidStateTransition):
            execution.transition(CommandState.RUNNING)

    def test_terminal_states_are_final(self):
        execution = CommandExecution(command=_safe('ls'))
        execution.transition(CommandState.APPROVED)
        execution.transition(CommandState.RUNNING)
        execution.transition(CommandState.COMPLETED)

        with pytest.raises(InvalidStateTransition):
            execution.transition(CommandState.FAILED)
        assert execution.succeeded
