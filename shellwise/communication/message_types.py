"""
Message types and structures for the shellwise session channels.

Defines the message types and Message dataclass exchanged between the
session orchestrator and whatever presentation layer listens to it.
"""

import uuid
from enum import Enum
from typing import Dict, Any, Optional
from dataclasses import dataclass, field


class MessageType(Enum):
    """Types of messages on a session channel."""
    SESSION_CREATED = "session_created"
    SESSION_DESTROYED = "session_destroyed"
    COMMAND_PARSED = "command_parsed"
    # Approval request/response pair, linked by correlation_id
    APPROVAL_REQUEST = "approval_request"
    APPROVAL_RESPONSE = "approval_response"
    COMMAND_STARTED = "command_started"
    COMMAND_COMPLETED = "command_completed"
    COMMAND_FAILED = "command_failed"
    COMMAND_REJECTED = "command_rejected"
    COMMAND_CANCELLED = "command_cancelled"


@dataclass
class Message:
    """Message published on a session channel."""
    session_id: str
    message_type: MessageType
    content: Dict[str, Any]
    timestamp: float
    correlation_id: Optional[str] = None
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))
