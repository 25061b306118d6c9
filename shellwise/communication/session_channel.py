"""
Per-session message channel.

Outbound events go to a bounded queue that a UI consumes with
``next_event``. Approvals are a request/response pair: the orchestrator
awaits ``request_approval`` and the UI answers with ``respond``; the
correlation id ties the two together and a timeout resolves to rejection.
"""

import time
import uuid
import asyncio
import logging
from typing import Dict, Any, Optional, List, Tuple

from .message_types import Message, MessageType
from shellwise.execution.cancellation import CancellationToken

logger = logging.getLogger(__name__)


class SessionChannel:
    """Typed event stream plus approval request/response for one session."""

    def __init__(self, session_id: str, max_queued_events: int = 1000):
        self.session_id = session_id
        self._events: asyncio.Queue = asyncio.Queue(maxsize=max_queued_events)
        self._pending: Dict[str, Tuple[str, asyncio.Future]] = {}
        self.closed = False

    def publish(self, message_type: MessageType, content: Dict[str, Any],
                correlation_id: Optional[str] = None) -> Optional[Message]:
        """Queue an event; the oldest event is dropped when the queue is full."""
        if self.closed:
            return None
        message = Message(
            session_id=self.session_id,
            message_type=message_type,
            content=content,
            timestamp=time.time(),
            correlation_id=correlation_id,
        )
        if self._events.full():
            dropped = self._events.get_nowait()
            logger.debug(f"Channel {self.session_id} full, dropped {dropped.message_type.value}")
        self._events.put_nowait(message)
        return message

    async def next_event(self, timeout: Optional[float] = None) -> Message:
        """
        Wait for the next event.

        Raises:
            asyncio.TimeoutError: If nothing arrives within ``timeout``
        """
        if timeout is None:
            return await self._events.get()
        return await asyncio.wait_for(self._events.get(), timeout)

    def drain_events(self) -> List[Message]:
        """All queued events, without waiting."""
        events = []
        while not self._events.empty():
            events.append(self._events.get_nowait())
        return events

    async def request_approval(self, command: Dict[str, Any], command_id: str, timeout: float,
                               cancel_token: Optional[CancellationToken] = None) -> bool:
        """
        Emit an approval request and wait for the answer.

        Returns:
            True only on an explicit approval; timeout, cancellation and
            channel closure all count as rejection
        """
        if self.closed:
            return False

        correlation_id = str(uuid.uuid4())
        future = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = (command_id, future)
        self.publish(MessageType.APPROVAL_REQUEST, {
            'session_id': self.session_id,
            'command': command,
            'command_id': command_id,
            'timeout_ms': int(timeout * 1000),
        }, correlation_id=correlation_id)

        waiters = {future}
        cancel_waiter = None
        if cancel_token is not None:
            cancel_waiter = asyncio.ensure_future(cancel_token.wait())
            waiters.add(cancel_waiter)
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if future.done():
                return future.result()
            if cancel_token is not None and cancel_token.cancelled:
                logger.info(f"Approval for {command_id} abandoned: execution cancelled")
            else:
                logger.warning(f"Approval for {command_id} timed out after {timeout}s, rejecting")
            return False
        finally:
            self._pending.pop(correlation_id, None)
            if cancel_waiter is not None:
                cancel_waiter.cancel()

    def respond(self, command_id: str, approved: bool,
                correlation_id: Optional[str] = None) -> bool:
        """
        Answer a pending approval request.

        Returns:
            False if no request for ``command_id`` (or ``correlation_id``) is pending
        """
        for pending_id, (pending_command, future) in list(self._pending.items()):
            if correlation_id is not None and pending_id != correlation_id:
                continue
            if correlation_id is None and pending_command != command_id:
                continue
            if future.done():
                return False
            future.set_result(bool(approved))
            self.publish(MessageType.APPROVAL_RESPONSE, {
                'session_id': self.session_id,
                'command_id': pending_command,
                'approved': bool(approved),
            }, correlation_id=pending_id)
            return True
        logger.debug(f"No pending approval for {command_id} on {self.session_id}")
        return False

    def handle_message(self, message: Message) -> bool:
        """Accept an ``approval_response`` message from the UI side."""
        if message.message_type is not MessageType.APPROVAL_RESPONSE:
            return False
        return self.respond(
            message.content.get('command_id', ''),
            bool(message.content.get('approved', False)),
            correlation_id=message.correlation_id,
        )

    @property
    def pending_approvals(self) -> List[str]:
        return [command_id for command_id, _ in self._pending.values()]

    def close(self) -> None:
        """Reject every pending approval and stop accepting events."""
        for command_id, future in self._pending.values():
            if not future.done():
                future.set_result(False)
        self.closed = True
