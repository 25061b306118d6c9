"""Cooperative cancellation token shared between a session and its subprocess."""

import asyncio
from typing import Optional


class CancellationToken:
    """
    One-shot cancellation flag.

    The orchestrator checks ``cancelled`` between commands; process
    runners await ``wait()`` alongside the child process and terminate it
    when the token fires.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()
