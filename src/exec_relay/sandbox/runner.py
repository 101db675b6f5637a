"""Sandbox runner: one isolated process invocation per run."""

import asyncio
import contextlib
import logging
import os
import shutil
import signal
import subprocess
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from exec_relay.adapters.base import CommandPlan, LanguageAdapter
from exec_relay.config import settings
from exec_relay.core.events import EventStream
from exec_relay.core.exceptions import SandboxUnavailableError
from exec_relay.models.events import EventKind, Lifecycle
from exec_relay.models.session import ResourceLimits
from exec_relay.sandbox.isolation import Isolation

if TYPE_CHECKING:
    from exec_relay.core.session import Session

logger = logging.getLogger(__name__)

# Longest line buffered before it is relayed in pieces
STREAM_LIMIT = 256 * 1024


class StopReason(str, Enum):
    """Why the runner stopped a process before it exited on its own."""

    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    OUTPUT_LIMIT = "output_limit"


@dataclass
class RunOutcome:
    """What happened to a finished run."""

    exit_code: int | None
    stop_reason: StopReason | None = None
    memory_exceeded: bool = False
    truncated: bool = False


class RunHandle:
    """Live state of one run inside the sandbox."""

    def __init__(
        self,
        session_id: str,
        adapter: LanguageAdapter,
        plan: CommandPlan,
        limits: ResourceLimits,
        scratch_dir: Path,
        deadline: float,
    ):
        self.session_id = session_id
        self.adapter = adapter
        self.plan = plan
        self.limits = limits
        self.scratch_dir = scratch_dir
        self.deadline = deadline

        self.process: asyncio.subprocess.Process | None = None
        self.step = 0
        self.stop_reason: StopReason | None = None
        self.memory_exceeded = False
        self.truncated = False
        self.output_bytes = 0
        self.finished = False
        self._escalation: asyncio.Task[None] | None = None

    def request_stop(self, reason: StopReason) -> bool:
        """Record a stop reason. The first one wins."""
        if self.stop_reason is not None:
            return False
        self.stop_reason = reason
        return True

    @property
    def on_last_step(self) -> bool:
        return self.step == len(self.plan.steps) - 1

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None


class SandboxRunner:
    """Runs command plans as isolated OS processes and relays their output.

    Every process gets its own process group, so signals reach anything it
    forks. Output is read line by line from both pipes concurrently and
    published to the session's event stream as it arrives.
    """

    def __init__(
        self,
        isolation: Isolation | None = None,
        scratch_root: Path | None = None,
        grace_seconds: float | None = None,
    ):
        self._isolation = isolation or Isolation(settings.isolation, settings.allow_network)
        self._scratch_root = scratch_root or settings.scratch_root
        self._grace_seconds = (
            grace_seconds if grace_seconds is not None else settings.cancel_grace_seconds
        )

    @property
    def isolation(self) -> Isolation:
        return self._isolation

    async def start(self, session: "Session") -> RunHandle:
        """Write the source to a scratch directory and spawn the first step.

        Raises:
            SandboxUnavailableError: If the process could not be started
        """
        if not self._isolation.available:
            raise SandboxUnavailableError(self._isolation.error or "isolation unavailable")

        self._scratch_root.mkdir(parents=True, exist_ok=True)
        scratch_dir = Path(tempfile.mkdtemp(prefix=f"{session.id}-", dir=self._scratch_root))
        adapter = session.adapter

        try:
            source_path = scratch_dir / adapter.source_filename
            source_path.write_text(session.source, encoding="utf-8")
            plan = adapter.build_plan(source_path, session.limits)

            loop = asyncio.get_running_loop()
            handle = RunHandle(
                session_id=session.id,
                adapter=adapter,
                plan=plan,
                limits=session.limits,
                scratch_dir=scratch_dir,
                deadline=loop.time() + session.limits.wall_timeout_seconds,
            )
            handle.process = await self._spawn(handle, plan.steps[0])
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            shutil.rmtree(scratch_dir, ignore_errors=True)
            raise SandboxUnavailableError(
                str(e), {"language": adapter.language.value, "session_id": session.id}
            ) from e

        logger.info(f"Session {session.id}: spawned pid {handle.pid} ({self._isolation.mode.value})")
        return handle

    async def wait(self, handle: RunHandle, stream: EventStream) -> RunOutcome:
        """Relay output of every step until the run ends.

        Args:
            handle: Handle returned by start()
            stream: Stream the output is published to

        Returns:
            Exit code of the last process plus why it was stopped, if it was
        """
        exit_code: int | None = None
        try:
            for index, command in enumerate(handle.plan.steps):
                if index > 0:
                    if handle.stop_reason is not None:
                        break
                    handle.step = index
                    handle.process = await self._spawn(handle, command)
                    if handle.stop_reason is not None:
                        # stopped while this step was being spawned
                        self._signal(handle, signal.SIGKILL)

                exit_code = await self._supervise(handle, stream)
                if exit_code != 0 or handle.stop_reason is not None:
                    break
        finally:
            handle.finished = True

        stderr = [e.payload for e in stream.events if e.kind == EventKind.STDERR]
        handle.memory_exceeded = handle.adapter.detects_memory_exhaustion(stderr)
        return RunOutcome(
            exit_code=exit_code,
            stop_reason=handle.stop_reason,
            memory_exceeded=handle.memory_exceeded,
            truncated=handle.truncated,
        )

    async def terminate(self, handle: RunHandle, reason: StopReason = StopReason.CANCELLED) -> bool:
        """Ask a run to stop: SIGTERM now, SIGKILL after the grace period.

        Returns:
            True if this call stopped the run, False if it had already
            finished or another stop reason came first
        """
        process = handle.process
        if handle.finished or process is None:
            return False
        if process.returncode is not None and handle.on_last_step:
            return False
        if not handle.request_stop(reason):
            return False

        logger.info(f"Session {handle.session_id}: stopping pid {process.pid} ({reason.value})")
        self._signal(handle, signal.SIGTERM)
        handle._escalation = asyncio.create_task(self._escalate(handle, process))
        return True

    def kill(self, handle: RunHandle) -> None:
        """Kill the process group immediately."""
        self._signal(handle, signal.SIGKILL)

    async def cleanup(self, handle: RunHandle) -> None:
        """Kill leftovers and remove the scratch directory."""
        if handle._escalation and not handle._escalation.done():
            handle._escalation.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await handle._escalation
        self._signal(handle, signal.SIGKILL)
        await asyncio.to_thread(shutil.rmtree, handle.scratch_dir, True)

    async def _spawn(self, handle: RunHandle, command: list[str]) -> asyncio.subprocess.Process:
        scratch = handle.scratch_dir
        return await asyncio.create_subprocess_exec(
            *self._isolation.wrap(command, scratch),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(scratch),
            env=self._isolation.environment(scratch, handle.plan.env),
            preexec_fn=self._isolation.preexec(handle.limits, handle.plan.limit_address_space),
            start_new_session=True,
            limit=STREAM_LIMIT,
        )

    async def _supervise(self, handle: RunHandle, stream: EventStream) -> int | None:
        """Wait for the current process while both pipes are relayed."""
        process = handle.process
        assert process is not None
        assert process.stdout is not None and process.stderr is not None

        readers = [
            asyncio.create_task(self._pump(handle, process.stdout, EventKind.STDOUT, stream)),
            asyncio.create_task(self._pump(handle, process.stderr, EventKind.STDERR, stream)),
        ]

        remaining = handle.deadline - asyncio.get_running_loop().time()
        try:
            await asyncio.wait_for(process.wait(), timeout=max(remaining, 0))
        except asyncio.TimeoutError:
            if handle.request_stop(StopReason.TIMED_OUT):
                logger.info(
                    f"Session {handle.session_id}: wall clock limit "
                    f"{handle.limits.wall_timeout_seconds}s exceeded"
                )
            self._signal(handle, signal.SIGKILL)
            await process.wait()

        # Children that outlived the leader would keep the pipes open
        self._signal(handle, signal.SIGKILL)

        done, pending = await asyncio.wait(readers, timeout=self._grace_seconds + 1.0)
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        for task in done:
            task.result()

        return process.returncode

    async def _pump(
        self,
        handle: RunHandle,
        reader: asyncio.StreamReader,
        kind: EventKind,
        stream: EventStream,
    ) -> None:
        """Publish one pipe line by line until EOF."""
        while True:
            try:
                chunk = await reader.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                chunk = e.partial
                if not chunk:
                    return
            except asyncio.LimitOverrunError as e:
                chunk = await reader.read(max(e.consumed, 1))
            self._relay(handle, kind, chunk, stream)

    def _relay(self, handle: RunHandle, kind: EventKind, chunk: bytes, stream: EventStream) -> None:
        if handle.truncated or stream.closed:
            # past the output cap or cancelled before start: keep draining, drop everything
            return

        # the cap counts payload bytes, line terminators excluded
        payload = chunk
        if payload.endswith(b"\n"):
            payload = payload[:-1]
            if payload.endswith(b"\r"):
                payload = payload[:-1]

        if handle.output_bytes + len(payload) > handle.limits.output_bytes:
            handle.truncated = True
            stream.publish(EventKind.LIFECYCLE, Lifecycle.TRUNCATED)
            if handle.request_stop(StopReason.OUTPUT_LIMIT):
                logger.info(
                    f"Session {handle.session_id}: output limit "
                    f"{handle.limits.output_bytes} bytes exceeded"
                )
            self._signal(handle, signal.SIGKILL)
            return

        handle.output_bytes += len(payload)
        stream.publish(kind, payload.decode("utf-8", errors="replace"))

    async def _escalate(self, handle: RunHandle, process: asyncio.subprocess.Process) -> None:
        try:
            await asyncio.wait_for(process.wait(), timeout=self._grace_seconds)
        except asyncio.TimeoutError:
            logger.info(
                f"Session {handle.session_id}: pid {process.pid} ignored SIGTERM, killing"
            )
            self._signal(handle, signal.SIGKILL)

    @staticmethod
    def _signal(handle: RunHandle, sig: signal.Signals) -> None:
        process = handle.process
        if process is None:
            return
        # start_new_session makes the pid the process group id
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, sig)
