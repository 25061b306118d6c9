"""
Process execution boundary.

ProcessRunner is the only place raw OS processes are touched. The asyncio
runner spawns real children in their own process group so a timeout or
cancellation can signal the whole tree; the fake runner replays scripted
outcomes for tests without spawning anything.
"""

import os
import signal
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional, Dict, List, Tuple, Set
from dataclasses import dataclass, field
from enum import Enum

from .cancellation import CancellationToken

logger = logging.getLogger(__name__)

_READ_CHUNK = 64 * 1024


class KillReason(Enum):
    """Why a process was terminated administratively."""
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    OUTPUT_LIMIT = "output_limit"


@dataclass
class ProcessSpec:
    """What to spawn and the limits to enforce while it runs."""
    program: str
    args: Tuple[str, ...] = ()
    cwd: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    timeout: Optional[float] = None
    cancel_token: Optional[CancellationToken] = None
    max_output_size: Optional[int] = None
    kill_grace_period: float = 5.0


@dataclass
class ProcessOutcome:
    """How a spawned process ended."""
    exit_code: int
    stdout: str
    stderr: str
    pid: Optional[int] = None
    signal: Optional[str] = None
    killed: bool = False
    kill_reason: Optional[KillReason] = None


class ProcessRunner(ABC):
    """Spawns a program and waits for it under the limits in a ProcessSpec."""

    @abstractmethod
    async def run(self, spec: ProcessSpec) -> ProcessOutcome:
        """
        Run ``spec`` to completion.

        Raises:
            OSError: If the program cannot be started at all
        """


def _signal_name(exit_code: Optional[int]) -> Optional[str]:
    if exit_code is None or exit_code >= 0:
        return None
    try:
        return signal.Signals(-exit_code).name
    except ValueError:
        return None


class AsyncioProcessRunner(ProcessRunner):
    """Real runner on top of ``asyncio.create_subprocess_exec``."""

    async def run(self, spec: ProcessSpec) -> ProcessOutcome:
        process = await asyncio.create_subprocess_exec(
            spec.program, *spec.args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=spec.cwd,
            env=spec.env,
            start_new_session=os.name != 'nt',  # Unix: new process group
        )
        logger.debug(f"Spawned {spec.program} (pid {process.pid})")

        stdout_buffer = bytearray()
        stderr_buffer = bytearray()
        limit_hit = asyncio.Event()

        readers = [
            asyncio.create_task(self._pump(process.stdout, stdout_buffer, spec.max_output_size, limit_hit)),
            asyncio.create_task(self._pump(process.stderr, stderr_buffer, None, None)),
        ]
        exit_task = asyncio.create_task(process.wait())
        watchers: Set[asyncio.Task] = {exit_task, asyncio.create_task(limit_hit.wait())}
        if spec.cancel_token is not None:
            watchers.add(asyncio.create_task(spec.cancel_token.wait()))

        loop = asyncio.get_running_loop()
        deadline = loop.time() + spec.timeout if spec.timeout is not None else None

        kill_reason = None
        try:
            done, _ = await asyncio.wait(watchers, timeout=spec.timeout,
                                         return_when=asyncio.FIRST_COMPLETED)
            if limit_hit.is_set():
                kill_reason = KillReason.OUTPUT_LIMIT
                self._send_signal(process, signal.SIGKILL)
            elif exit_task in done:
                pass
            elif spec.cancel_token is not None and spec.cancel_token.cancelled:
                kill_reason = KillReason.CANCELLED
            else:
                kill_reason = KillReason.TIMEOUT

            if kill_reason in (KillReason.TIMEOUT, KillReason.CANCELLED):
                logger.warning(f"Terminating {spec.program} (pid {process.pid}): {kill_reason.value}")
                await self._terminate(process, exit_task, spec.kill_grace_period)

            await exit_task

            if kill_reason is None:
                remaining = max(0.0, deadline - loop.time()) if deadline is not None else None
                drained = await self._drain(readers, remaining, spec.cancel_token)
            else:
                drained = await self._drain(readers, spec.kill_grace_period, None)

            if not drained:
                # Descendants of the child still hold the output pipes open
                if kill_reason is None:
                    kill_reason = (KillReason.CANCELLED
                                   if spec.cancel_token is not None and spec.cancel_token.cancelled
                                   else KillReason.TIMEOUT)
                logger.warning(f"Killing process group of {spec.program} (pid {process.pid}): "
                               f"output still open after exit ({kill_reason.value})")
                self._kill_group(process)
                await self._drain(readers, spec.kill_grace_period, None)
        except BaseException:
            self._kill_group(process)
            raise
        finally:
            for task in watchers | set(readers):
                if not task.done():
                    task.cancel()

        # Output can cross the cap after the process already exited
        if kill_reason is None and limit_hit.is_set():
            kill_reason = KillReason.OUTPUT_LIMIT

        return ProcessOutcome(
            exit_code=process.returncode,
            stdout=stdout_buffer.decode(errors='replace'),
            stderr=stderr_buffer.decode(errors='replace'),
            pid=process.pid,
            signal=_signal_name(process.returncode),
            killed=kill_reason is not None,
            kill_reason=kill_reason,
        )

    @staticmethod
    async def _pump(stream: asyncio.StreamReader, buffer: bytearray,
                    limit: Optional[int], limit_hit: Optional[asyncio.Event]) -> None:
        """Drain ``stream`` into ``buffer``, keeping at most ``limit`` bytes."""
        while True:
            chunk = await stream.read(_READ_CHUNK)
            if not chunk:
                return
            if limit_hit is not None and limit_hit.is_set():
                continue
            buffer.extend(chunk)
            if limit is not None and len(buffer) > limit:
                del buffer[limit:]
                limit_hit.set()

    @staticmethod
    async def _drain(readers: List[asyncio.Task], timeout: Optional[float],
                     cancel_token: Optional[CancellationToken]) -> bool:
        """Wait for both pumps to reach EOF. False if they are still open."""
        pumps = asyncio.gather(*readers)
        waiters = {pumps}
        if cancel_token is not None:
            waiters.add(asyncio.ensure_future(cancel_token.wait()))
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters - {pumps}:
                if not waiter.done():
                    waiter.cancel()
        if pumps.done():
            pumps.result()
            return True
        return False

    async def _terminate(self, process: asyncio.subprocess.Process,
                         exit_task: asyncio.Task, grace_period: float) -> None:
        """SIGTERM, then SIGKILL if still alive after ``grace_period``."""
        self._send_signal(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(asyncio.shield(exit_task), timeout=grace_period)
        except asyncio.TimeoutError:
            logger.warning(f"pid {process.pid} ignored SIGTERM for {grace_period}s, sending SIGKILL")
            self._send_signal(process, signal.SIGKILL)

    @staticmethod
    def _send_signal(process: asyncio.subprocess.Process, sig: int) -> None:
        if process.returncode is not None:
            return
        try:
            if os.name != 'nt':
                os.killpg(process.pid, sig)
            else:
                process.send_signal(sig)
        except ProcessLookupError:
            pass

    @staticmethod
    def _kill_group(process: asyncio.subprocess.Process) -> None:
        """SIGKILL every process left in the child's group, even after the leader exited."""
        try:
            if os.name != 'nt':
                os.killpg(process.pid, signal.SIGKILL)
            elif process.returncode is None:
                process.kill()
        except ProcessLookupError:
            pass


@dataclass
class ScriptedProcess:
    """Canned behaviour for one command in FakeProcessRunner."""
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    duration: float = 0.0
    ignores_terminate: bool = False
    spawn_error: Optional[OSError] = None


class FakeProcessRunner(ProcessRunner):
    """
    In-memory runner replaying scripted outcomes.

    Scripts are looked up by full command line first, then by program
    name. Every spec passed to ``run`` is recorded in ``calls`` so tests
    can assert that nothing was spawned.
    """

    def __init__(self, default: Optional[ScriptedProcess] = None):
        self.default = default or ScriptedProcess()
        self.scripts: Dict[str, ScriptedProcess] = {}
        self.calls: List[ProcessSpec] = []
        self._next_pid = 1000

    def script(self, command: str, **behaviour) -> ScriptedProcess:
        scripted = ScriptedProcess(**behaviour)
        self.scripts[command] = scripted
        return scripted

    def _lookup(self, spec: ProcessSpec) -> ScriptedProcess:
        command_line = " ".join((spec.program,) + tuple(spec.args))
        return self.scripts.get(command_line) or self.scripts.get(spec.program) or self.default

    async def run(self, spec: ProcessSpec) -> ProcessOutcome:
        self.calls.append(spec)
        scripted = self._lookup(spec)
        if scripted.spawn_error is not None:
            raise scripted.spawn_error

        self._next_pid += 1
        pid = self._next_pid

        encoded = scripted.stdout.encode()
        if spec.max_output_size is not None and len(encoded) > spec.max_output_size:
            return ProcessOutcome(
                exit_code=-signal.SIGKILL,
                stdout=encoded[:spec.max_output_size].decode(errors='replace'),
                stderr=scripted.stderr,
                pid=pid,
                signal=signal.SIGKILL.name,
                killed=True,
                kill_reason=KillReason.OUTPUT_LIMIT,
            )

        sleeper = asyncio.create_task(asyncio.sleep(scripted.duration))
        watchers = {sleeper}
        if spec.cancel_token is not None:
            watchers.add(asyncio.create_task(spec.cancel_token.wait()))
        try:
            await asyncio.wait(watchers, timeout=spec.timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in watchers:
                if not task.done():
                    task.cancel()

        if sleeper.done() and not sleeper.cancelled():
            return ProcessOutcome(scripted.exit_code, scripted.stdout, scripted.stderr, pid=pid)

        reason = (KillReason.CANCELLED
                  if spec.cancel_token is not None and spec.cancel_token.cancelled
                  else KillReason.TIMEOUT)
        sig = signal.SIGTERM
        if scripted.ignores_terminate:
            await asyncio.sleep(spec.kill_grace_period)
            sig = signal.SIGKILL
        return ProcessOutcome(
            exit_code=-sig,
            stdout=scripted.stdout,
            stderr=scripted.stderr,
            pid=pid,
            signal=sig.name,
            killed=True,
            kill_reason=reason,
        )
