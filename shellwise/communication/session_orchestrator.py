"""
Session Orchestrator for shellwise.

Owns sessions and drives one query through its whole lifecycle:
- Natural language -> ParsedCommand via the CommandInterpreter
- Approval through the session's SessionChannel
- Policy validation and bounded execution via the SecurityPolicyExecutor
- Output analysis, session history and learning after each command

Each session runs at most one execution at a time; separate sessions run
in parallel.
"""

import time
import asyncio
import logging
from collections import deque
from datetime import datetime
from enum import Enum
from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Any, List, Tuple, Union, Sequence, Callable, Deque

from .message_types import MessageType
from .session_channel import SessionChannel
from shellwise.analysis.output_analyzer import OutputAnalyzer, AnalysisRequest, OutputAnalysis
from shellwise.execution.cancellation import CancellationToken
from shellwise.execution.policy_executor import (
    SecurityPolicyExecutor, ExecutionRequest, ExecutionResult, SecurityError,
    OutputLimitExceeded, ErrorCategory,
)
from shellwise.execution.process_runner import KillReason
from shellwise.execution.security_policy import SecurityPolicy, SecurityViolation
from shellwise.interpreter.command_interpreter import CommandInterpreter
from shellwise.interpreter.context import build_parsing_context, detect_project_type
from shellwise.interpreter.models import (
    Command, ParsedCommand, RiskLevel, UserPreferences, new_id,
)
from shellwise.learning.history_intelligence import HistoryIntelligence
from shellwise.learning.history_types import HistoryEntry

logger = logging.getLogger(__name__)

SESSION_HISTORY_SIZE = 1000
RECENT_HISTORY_SIZE = 50
RECENT_COMMANDS_IN_CONTEXT = 10
HISTORY_OUTPUT_LIMIT = 10000
MAX_FOLLOW_UPS = 3


class SessionNotFoundError(KeyError):
    """Raised for an unknown session id."""


class SessionBusyError(RuntimeError):
    """Raised when a session already has an execution in progress."""


class InvalidStateTransition(RuntimeError):
    """Raised on a command state change the lifecycle does not allow."""


class SessionStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


class CommandState(Enum):
    """Lifecycle of one command inside an execution."""
    PENDING = "pending"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVED = "approved"
    REJECTED = "rejected"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# approved -> completed is the dry-run path; approved -> failed is a policy refusal
_TRANSITIONS = {
    CommandState.PENDING: {CommandState.APPROVAL_REQUESTED, CommandState.APPROVED,
                           CommandState.CANCELLED},
    CommandState.APPROVAL_REQUESTED: {CommandState.APPROVED, CommandState.REJECTED,
                                      CommandState.CANCELLED},
    CommandState.APPROVED: {CommandState.RUNNING, CommandState.COMPLETED,
                            CommandState.FAILED, CommandState.CANCELLED},
    CommandState.RUNNING: {CommandState.COMPLETED, CommandState.FAILED,
                           CommandState.CANCELLED},
    CommandState.REJECTED: set(),
    CommandState.COMPLETED: set(),
    CommandState.FAILED: set(),
    CommandState.CANCELLED: set(),
}


@dataclass
class ExecutionOptions:
    """Per-call execution settings."""
    dry_run: bool = False
    continue_on_error: bool = False
    timeout: Optional[float] = None
    working_directory: Optional[str] = None
    environment: Dict[str, str] = field(default_factory=dict)
    policy_overrides: Dict[str, Any] = field(default_factory=dict)
    auto_approve: bool = False


@dataclass
class CommandExecution:
    """Mutable tracker for one command as it moves through its states."""
    command: Command
    state: CommandState = CommandState.PENDING
    user_approved: bool = False
    result: Optional[ExecutionResult] = None
    analysis: Optional[OutputAnalysis] = None
    violations: List[SecurityViolation] = field(default_factory=list)
    error: Optional[str] = None
    history_entry: Optional[HistoryEntry] = None
    follow_up_suggestions: List[str] = field(default_factory=list)
    transitions: List[Tuple[CommandState, float]] = field(default_factory=list)

    def transition(self, new_state: CommandState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidStateTransition(
                f"Command {self.command.id}: {self.state.value} -> {new_state.value}"
            )
        self.state = new_state
        self.transitions.append((new_state, time.time()))

    @property
    def succeeded(self) -> bool:
        return self.state is CommandState.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'command': self.command.to_dict(),
            'state': self.state.value,
            'user_approved': self.user_approved,
            'result': self.result.to_dict() if self.result else None,
            'analysis': self.analysis.to_dict() if self.analysis else None,
            'violations': [v.to_dict() for v in self.violations],
            'error': self.error,
            'follow_up_suggestions': list(self.follow_up_suggestions),
        }


@dataclass
class Session:
    """A user's working context: directory, environment, preferences and history."""
    id: str
    name: str
    working_directory: str
    channel: SessionChannel
    environment: Dict[str, str] = field(default_factory=dict)
    preferences: UserPreferences = field(default_factory=UserPreferences)
    status: SessionStatus = SessionStatus.ACTIVE
    created_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)
    history: Deque[HistoryEntry] = field(
        default_factory=lambda: deque(maxlen=SESSION_HISTORY_SIZE), repr=False
    )

    @property
    def recent_history(self) -> List[HistoryEntry]:
        return list(self.history)[-RECENT_HISTORY_SIZE:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'working_directory': self.working_directory,
            'environment': dict(self.environment),
            'preferences': self.preferences.to_dict(),
            'status': self.status.value,
            'created_at': self.created_at.isoformat(),
            'last_activity': self.last_activity.isoformat(),
            'history_size': len(self.history),
        }


@dataclass
class _ActiveExecution:
    token: CancellationToken
    done: asyncio.Event


class SessionOrchestrator:
    """
    Coordinates sessions, interpretation, approval, execution and learning.

    The orchestrator never spawns processes itself; everything goes through
    the executor, which validates before it runs.
    """

    def __init__(self,
                 interpreter: CommandInterpreter,
                 executor: SecurityPolicyExecutor,
                 analyzer: Optional[OutputAnalyzer] = None,
                 intelligence: Optional[HistoryIntelligence] = None,
                 approval_timeout: float = 30.0,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Initialize the orchestrator.

        Args:
            interpreter: Natural language -> commands
            executor: Policy validation and process execution
            analyzer: Output analysis (stock matchers when None)
            intelligence: Learning sink; history is only kept per session when None
            approval_timeout: Seconds to wait for an approval before rejecting
            clock: Source of wall-clock timestamps
        """
        self.interpreter = interpreter
        self.executor = executor
        self.analyzer = analyzer or OutputAnalyzer()
        self.intelligence = intelligence
        self.approval_timeout = approval_timeout
        self._clock = clock

        self._sessions: Dict[str, Session] = {}
        self._active: Dict[str, _ActiveExecution] = {}
        self._started_at = clock()

        logger.info(f"SessionOrchestrator initialized:")
        logger.info(f"  Approval timeout: {approval_timeout}s")
        logger.info(f"  History intelligence: {'enabled' if intelligence else 'disabled'}")

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, name: Optional[str] = None,
                       working_directory: Optional[str] = None,
                       environment: Optional[Dict[str, str]] = None,
                       preferences: Optional[UserPreferences] = None) -> Session:
        session_id = new_id("session")
        now = self._clock()
        session = Session(
            id=session_id,
            name=name or session_id,
            working_directory=working_directory or ".",
            channel=SessionChannel(session_id),
            environment=dict(environment or {}),
            preferences=preferences or UserPreferences(),
            created_at=now,
            last_activity=now,
        )
        self._sessions[session_id] = session
        session.channel.publish(MessageType.SESSION_CREATED, session.to_dict())
        logger.info(f"Session created: {session_id} ({session.name}) in {session.working_directory}")
        return session

    def get_session(self, session_id: str) -> Session:
        """
        Raises:
            SessionNotFoundError: If no such session exists
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(self) -> List[Session]:
        return list(self._sessions.values())

    async def destroy_session(self, session_id: str) -> None:
        """Cancel any running execution, wait for it to finish and drop the session."""
        session = self.get_session(session_id)
        active = self._active.get(session_id)
        if active is not None:
            active.token.cancel("session destroyed")

        session.channel.publish(MessageType.SESSION_DESTROYED, {'session_id': session_id})
        session.channel.close()
        if active is not None:
            await active.done.wait()

        session.status = SessionStatus.INACTIVE
        del self._sessions[session_id]
        logger.info(f"Session destroyed: {session_id}")

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._active

    # ------------------------------------------------------------------
    # Interpretation
    # ------------------------------------------------------------------

    async def process_natural_language(self, session_id: str, query: str) -> ParsedCommand:
        """Interpret ``query`` in the session's context."""
        session = self.get_session(session_id)
        session.last_activity = self._clock()

        recent = [entry.command_line for entry in session.recent_history][-RECENT_COMMANDS_IN_CONTEXT:]
        context = build_parsing_context(
            session.working_directory,
            environment=session.environment,
            recent_commands=recent,
            preferences=session.preferences,
        )
        parsed = await self.interpreter.parse(query, context)
        parsed = self._flag_avoided_commands(parsed)

        session.channel.publish(MessageType.COMMAND_PARSED, parsed.to_dict())
        logger.info(f"[{session_id}] Parsed '{query}' -> {len(parsed.commands)} command(s), "
                    f"confidence {parsed.confidence:.2f} ({parsed.source.value})")
        return parsed

    def _flag_avoided_commands(self, parsed: ParsedCommand) -> ParsedCommand:
        if self.intelligence is None:
            return parsed
        avoided = set(self.intelligence.learning.avoided_commands)
        warnings = [
            f"'{command.command_line}' has failed repeatedly before"
            for command in parsed.commands
            if command.command_line in avoided
        ]
        if not warnings:
            return parsed
        return replace(parsed, warnings=parsed.warnings + tuple(warnings))

    # ------------------------------------------------------------------
    # Approval
    # ------------------------------------------------------------------

    def requires_approval(self, command: Command, preferences: UserPreferences,
                          policy: Optional[SecurityPolicy] = None) -> bool:
        """Whether ``command`` must be confirmed by the user before it runs."""
        policy = policy or self.executor.get_security_policy()
        if command.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL):
            return True
        if command.requires_elevation and not policy.allow_elevation:
            return True
        if command.risk_level is RiskLevel.MEDIUM and preferences.confirm_destructive_commands:
            return True
        return False

    def respond_to_approval(self, session_id: str, command_id: str, approved: bool) -> bool:
        return self.get_session(session_id).channel.respond(command_id, approved)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_commands(self, session_id: str,
                               commands: Union[ParsedCommand, Sequence[Command]],
                               options: Optional[ExecutionOptions] = None) -> List[CommandExecution]:
        """
        Run commands strictly in order.

        Returns:
            One CommandExecution per command that was reached

        Raises:
            SessionNotFoundError: If the session does not exist
            SessionBusyError: If the session already has an execution running
        """
        session = self.get_session(session_id)
        options = options or ExecutionOptions()
        if isinstance(commands, ParsedCommand):
            query = commands.original_query
            command_list = list(commands.commands)
        else:
            query = ""
            command_list = list(commands)

        if session_id in self._active:
            raise SessionBusyError(f"Session {session_id} already has an execution in progress")

        active = _ActiveExecution(token=CancellationToken(), done=asyncio.Event())
        self._active[session_id] = active
        executions: List[CommandExecution] = []
        try:
            policy = self.executor.effective_policy(overrides=options.policy_overrides)
            for command in command_list:
                execution = CommandExecution(command=command)
                executions.append(execution)

                if active.token.cancelled:
                    execution.error = "Execution cancelled before start"
                    execution.transition(CommandState.CANCELLED)
                    self._publish_state(session, execution)
                    break

                await self._run_command(session, execution, query, options, policy, active.token)

                if execution.state is CommandState.CANCELLED:
                    break
                if not execution.succeeded and not options.continue_on_error:
                    logger.info(f"[{session_id}] Halting sequence after {execution.state.value} "
                                f"command: {command.command_line}")
                    break
            session.status = SessionStatus.ACTIVE
        except Exception as e:
            session.status = SessionStatus.ERROR
            logger.error(f"[{session_id}] Execution aborted: {e}")
            raise
        finally:
            del self._active[session_id]
            active.done.set()
            session.last_activity = self._clock()

        return executions

    async def _run_command(self, session: Session, execution: CommandExecution, query: str,
                           options: ExecutionOptions, policy: SecurityPolicy,
                           token: CancellationToken) -> None:
        command = execution.command

        if not await self._approve(session, execution, options, policy, token):
            return

        if options.dry_run:
            now = self._clock()
            execution.result = ExecutionResult(
                program=command.program,
                args=tuple(command.args),
                exit_code=0,
                stdout=f"[DRY RUN] Would execute: {command.command_line}",
                stderr="",
                started_at=now,
                ended_at=now,
                duration=0.0,
                working_directory=self._working_directory(session, command, options),
            )
            execution.transition(CommandState.COMPLETED)
            self._publish_state(session, execution)
            return

        request = ExecutionRequest(
            program=command.program,
            args=tuple(command.args),
            working_directory=self._working_directory(session, command, options),
            environment={**session.environment, **command.environment, **options.environment},
            timeout=options.timeout if options.timeout is not None else command.timeout,
            cancel_token=token,
        )

        violations = self.executor.validate(request, policy)
        if violations:
            error = self.executor.refuse(request, violations)
            execution.violations = error.violations
            execution.error = str(error)
            execution.transition(CommandState.FAILED)
            self._publish_state(session, execution)
            return

        execution.transition(CommandState.RUNNING)
        session.channel.publish(MessageType.COMMAND_STARTED, {
            'session_id': session.id,
            'command_id': command.id,
            'command': command.command_line,
        })

        try:
            result = await self.executor.execute(request, policy)
        except OutputLimitExceeded as e:
            result = e.result
            execution.violations = e.violations
            execution.error = str(e)
        except SecurityError as e:
            execution.violations = e.violations
            execution.error = str(e)
            execution.transition(CommandState.FAILED)
            self._publish_state(session, execution)
            return

        execution.result = result
        if result.kill_reason is KillReason.CANCELLED:
            execution.transition(CommandState.CANCELLED)
        elif result.success and not execution.violations:
            execution.transition(CommandState.COMPLETED)
        else:
            execution.transition(CommandState.FAILED)

        self._record(session, execution, query)
        self._publish_state(session, execution)

    async def _approve(self, session: Session, execution: CommandExecution,
                       options: ExecutionOptions, policy: SecurityPolicy,
                       token: CancellationToken) -> bool:
        command = execution.command
        needs_approval = not options.dry_run and (
            self.requires_approval(command, session.preferences, policy)
            or command.requires_confirmation
        )
        if not needs_approval:
            execution.transition(CommandState.APPROVED)
            return True

        if options.auto_approve:
            execution.user_approved = True
            execution.transition(CommandState.APPROVED)
            return True

        execution.transition(CommandState.APPROVAL_REQUESTED)
        approved = await session.channel.request_approval(
            command.to_dict(), command.id, self.approval_timeout, cancel_token=token
        )
        if token.cancelled:
            execution.error = "Execution cancelled while awaiting approval"
            execution.transition(CommandState.CANCELLED)
            self._publish_state(session, execution)
            return False
        if not approved:
            execution.error = "Command rejected"
            execution.transition(CommandState.REJECTED)
            self._publish_state(session, execution)
            logger.info(f"[{session.id}] Rejected: {command.command_line}")
            return False

        execution.user_approved = True
        execution.transition(CommandState.APPROVED)
        return True

    def _working_directory(self, session: Session, command: Command,
                           options: ExecutionOptions) -> str:
        return options.working_directory or command.working_directory or session.working_directory

    def _publish_state(self, session: Session, execution: CommandExecution) -> None:
        message_type = {
            CommandState.COMPLETED: MessageType.COMMAND_COMPLETED,
            CommandState.FAILED: MessageType.COMMAND_FAILED,
            CommandState.REJECTED: MessageType.COMMAND_REJECTED,
            CommandState.CANCELLED: MessageType.COMMAND_CANCELLED,
        }.get(execution.state)
        if message_type is not None:
            session.channel.publish(message_type, {
                'session_id': session.id,
                'command_id': execution.command.id,
                'execution': execution.to_dict(),
            })

    def _record(self, session: Session, execution: CommandExecution, query: str) -> None:
        """History entry, analysis and learning for an executed command."""
        command = execution.command
        result = execution.result
        entry = HistoryEntry(
            session_id=session.id,
            command=command.program,
            args=tuple(command.args),
            original_query=query,
            working_directory=result.working_directory or session.working_directory,
            started_at=result.started_at,
            completed_at=result.ended_at,
            exit_code=result.exit_code,
            output=result.stdout[:HISTORY_OUTPUT_LIMIT],
            error=result.stderr[:HISTORY_OUTPUT_LIMIT],
            duration=result.duration,
            risk_level=command.risk_level,
            user_approved=execution.user_approved,
            success=execution.succeeded,
            category=command.category.value,
            project_type=detect_project_type(result.working_directory or session.working_directory),
        )
        session.history.append(entry)
        execution.history_entry = entry

        try:
            execution.analysis = self.analyzer.analyze(AnalysisRequest.from_result(
                result, category=command.category.value, expected_output=command.expected_output
            ))
        except Exception as e:
            logger.error(f"Output analysis failed for {command.command_line}: {e}")
        execution.follow_up_suggestions = self._follow_up_suggestions(execution)

        if self.intelligence is not None:
            self.intelligence.add_entry(entry)

    def _follow_up_suggestions(self, execution: CommandExecution) -> List[str]:
        suggestions = []
        if execution.analysis is not None:
            for follow in execution.analysis.follow_up_commands:
                line = " ".join([follow['program']] + list(follow.get('args', [])))
                if line not in suggestions:
                    suggestions.append(line)

        result = execution.result
        if result is not None and not result.success:
            hints = {
                ErrorCategory.NOT_FOUND: f"Check that '{execution.command.program}' is installed and on PATH",
                ErrorCategory.PERMISSION: "Check file permissions for the paths involved",
                ErrorCategory.TIMEOUT: "Retry with a longer timeout",
                ErrorCategory.NETWORK_ERROR: "Check your network connection and retry",
            }
            hint = hints.get(result.error_category)
            if hint:
                suggestions.append(hint)
        return suggestions[:MAX_FOLLOW_UPS]

    async def run_query(self, session_id: str, query: str,
                        options: Optional[ExecutionOptions] = None) -> Tuple[ParsedCommand, List[CommandExecution]]:
        """Parse ``query`` and execute the result; nothing runs for an empty parse."""
        parsed = await self.process_natural_language(session_id, query)
        if not parsed.commands:
            return parsed, []
        return parsed, await self.execute_commands(session_id, parsed, options)

    async def cancel_execution(self, session_id: str) -> bool:
        """
        Cancel the session's running execution.

        Returns:
            False if nothing was running
        """
        self.get_session(session_id)
        active = self._active.get(session_id)
        if active is None:
            return False
        active.token.cancel("cancelled by user")
        logger.info(f"[{session_id}] Cancellation requested")
        await active.done.wait()
        return True

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def export_session(self, session_id: str) -> Dict[str, Any]:
        session = self.get_session(session_id)
        return {
            'session': session.to_dict(),
            'history': [entry.to_dict() for entry in session.history],
        }

    def import_session(self, data: Dict[str, Any]) -> Session:
        """
        Rebuild a session from ``export_session`` output.

        The restored session starts active with a fresh channel; its history
        is not replayed into HistoryIntelligence.

        Raises:
            ValueError: If the data is malformed or the session id is already in use
        """
        try:
            info = data['session']
            session_id = info['id']
            session = Session(
                id=session_id,
                name=info.get('name') or session_id,
                working_directory=info.get('working_directory') or ".",
                channel=SessionChannel(session_id),
                environment=dict(info.get('environment') or {}),
                preferences=UserPreferences.from_dict(info.get('preferences') or {}),
                created_at=datetime.fromisoformat(info['created_at']),
                last_activity=datetime.fromisoformat(info['last_activity']),
            )
            session.history.extend(HistoryEntry.from_dict(entry) for entry in data.get('history', []))
        except (KeyError, TypeError, ValueError) as e:
            raise ValueError(f"Invalid session export: {e}") from e

        if session_id in self._sessions:
            raise ValueError(f"Session {session_id} already exists")

        self._sessions[session_id] = session
        session.channel.publish(MessageType.SESSION_CREATED, session.to_dict())
        logger.info(f"Session imported: {session_id} ({len(session.history)} history entries)")
        return session

    def get_service_health(self) -> Dict[str, Any]:
        return {
            'status': 'healthy',
            'uptime': (self._clock() - self._started_at).total_seconds(),
            'sessions': len(self._sessions),
            'active_executions': len(self._active),
            'completion_service': self.interpreter.completion_service is not None,
            'history_intelligence': self.intelligence is not None,
            'executor': self.executor.get_statistics(),
        }
