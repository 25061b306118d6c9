"""
Communication Module for shellwise.

Sessions, approval messaging and the end-to-end execution flow:
- message_types: MessageType and Message
- session_channel: Per-session event stream and approval request/response
- session_orchestrator: Session lifecycle, command state machine and execution
"""

from .message_types import Message, MessageType
from .session_channel import SessionChannel
from .session_orchestrator import (
    SessionOrchestrator, Session, SessionStatus, CommandState, CommandExecution,
    ExecutionOptions, SessionNotFoundError, SessionBusyError, InvalidStateTransition,
)

__all__ = [
    'Message',
    'MessageType',
    'SessionChannel',
    'SessionOrchestrator',
    'Session',
    'SessionStatus',
    'CommandState',
    'CommandExecution',
    'ExecutionOptions',
    'SessionNotFoundError',
    'SessionBusyError',
    'InvalidStateTransition',
]
