"""Run session lifecycle and the per-workspace session registry."""

import asyncio
import contextlib
import logging
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from enum import Enum

from exec_relay.adapters.base import LanguageAdapter
from exec_relay.adapters.factory import create_adapter
from exec_relay.config import settings
from exec_relay.core.diagnostics import DiagnosticsCollector
from exec_relay.core.events import EventStream
from exec_relay.core.exceptions import (
    BadRequestError,
    InvalidSessionStateError,
    PersistenceError,
    SandboxUnavailableError,
    SessionAlreadyTerminalError,
    SessionNotFoundError,
    WorkspaceBusyError,
)
from exec_relay.models.events import EventKind, Lifecycle
from exec_relay.models.problems import Problem, Severity
from exec_relay.models.session import LimitsOverride, ResourceLimits, SessionInfo
from exec_relay.persistence.runs import ArchivedRun, RunArchive
from exec_relay.sandbox.runner import RunHandle, RunOutcome, SandboxRunner, StopReason

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Possible session states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


TERMINAL_STATES = frozenset(
    {
        SessionState.SUCCEEDED,
        SessionState.FAILED,
        SessionState.CANCELLED,
        SessionState.TIMED_OUT,
    }
)

_VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.QUEUED: {SessionState.RUNNING, SessionState.CANCELLED},
    SessionState.RUNNING: {
        SessionState.SUCCEEDED,
        SessionState.FAILED,
        SessionState.CANCELLED,
        SessionState.TIMED_OUT,
    },
}


def new_session_id() -> str:
    """Session id whose prefix sorts by creation time."""
    return f"run_{time.time_ns() // 1_000_000:011x}{uuid.uuid4().hex[:6]}"


class Session:
    """A single run of one source file.

    All state changes go through the per-session lock, so a cancel racing
    a process that is finishing on its own produces exactly one terminal
    state and one terminal event.
    """

    def __init__(
        self,
        session_id: str,
        workspace_id: str,
        adapter: LanguageAdapter,
        source: str,
        limits: ResourceLimits,
    ):
        self.id = session_id
        self.workspace_id = workspace_id
        self.adapter = adapter
        self.language = adapter.language.value
        self.source = source
        self.limits = limits

        self._state = SessionState.QUEUED
        self._state_lock = asyncio.Lock()
        self._done = asyncio.Event()

        self.created_at = datetime.now(timezone.utc)
        self.started_at: datetime | None = None
        self.ended_at: datetime | None = None
        self.exit_code: int | None = None
        self.failure_reason: str | None = None
        self.internal_error = False

        self.stream = EventStream(session_id)
        self.problems: list[Problem] = []
        self.handle: RunHandle | None = None
        self.released = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def truncated(self) -> bool:
        return self.handle.truncated if self.handle else False

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.ended_at is None:
            return None
        return int((self.ended_at - self.started_at).total_seconds() * 1000)

    def _transition(self, new_state: SessionState) -> None:
        """Apply a transition; the caller holds the state lock."""
        allowed = _VALID_TRANSITIONS.get(self._state, set())
        if new_state not in allowed:
            raise InvalidSessionStateError(
                self.id,
                self._state.value,
                [s.value for s in allowed],
            )
        self._state = new_state
        logger.info(f"Session {self.id}: state -> {new_state.value}")

    def _finish(self, state: SessionState, exit_code: int | None = None) -> None:
        """Record the terminal state and close the stream; lock held."""
        self._transition(state)
        self.exit_code = exit_code
        self.ended_at = datetime.now(timezone.utc)
        self.stream.close()
        self._done.set()

    async def mark_running(self) -> bool:
        """Move to RUNNING once the runner confirmed the process started.

        Returns:
            False if the session was cancelled while it was queued
        """
        async with self._state_lock:
            if self._state != SessionState.QUEUED:
                return False
            self._transition(SessionState.RUNNING)
            self.started_at = datetime.now(timezone.utc)
            self.stream.publish(EventKind.LIFECYCLE, Lifecycle.STARTED)
            return True

    async def request_cancel(self) -> SessionState:
        """Cancel a queued session or flag a running one for termination.

        Returns:
            The state the session was in when the cancel arrived

        Raises:
            SessionAlreadyTerminalError: If the session already finished
        """
        async with self._state_lock:
            previous = self._state
            if previous in TERMINAL_STATES:
                raise SessionAlreadyTerminalError(self.id, previous.value)
            if previous == SessionState.QUEUED:
                self.stream.publish(EventKind.LIFECYCLE, Lifecycle.CANCELLED)
                self._finish(SessionState.CANCELLED)
            return previous

    async def complete(self, outcome: RunOutcome, collector: DiagnosticsCollector) -> None:
        """Turn the runner's outcome into the terminal state.

        Publishes diagnostics, the cause marker and ``Exited(code)`` in
        that order, then closes the stream. A session that already
        reached a terminal state is left untouched.
        """
        async with self._state_lock:
            if self.is_terminal:
                return

            scratch_dir = self.handle.scratch_dir if self.handle else None
            stderr = [e for e in self.stream.events if e.kind == EventKind.STDERR]
            problems = collector.extract(
                stderr, self.language, self.adapter.source_filename, scratch_dir
            )
            for problem in problems:
                self.stream.publish(EventKind.DIAGNOSTIC, problem.render())

            markers: list[str] = []
            state = SessionState.FAILED
            if outcome.stop_reason == StopReason.TIMED_OUT:
                state = SessionState.TIMED_OUT
                markers.append(Lifecycle.TIMED_OUT)
            elif outcome.stop_reason == StopReason.CANCELLED:
                state = SessionState.CANCELLED
                markers.append(Lifecycle.CANCELLED)
            elif outcome.stop_reason == StopReason.OUTPUT_LIMIT:
                # the Truncated marker was published when the cap was hit
                self.failure_reason = "output_limit"
            elif outcome.memory_exceeded and outcome.exit_code != 0:
                self.failure_reason = "memory_limit"
                memory = Problem(
                    session_id=self.id,
                    severity=Severity.ERROR,
                    message=f"memory limit of {self.limits.memory_bytes} bytes exceeded",
                    file=self.adapter.source_filename,
                    line=0,
                )
                self.stream.publish(EventKind.DIAGNOSTIC, memory.render())
                problems.append(memory)
                markers.append(Lifecycle.MEMORY_LIMIT_EXCEEDED)
            elif outcome.exit_code == 0:
                state = SessionState.SUCCEEDED
            else:
                self.failure_reason = f"exit_{outcome.exit_code}"

            for marker in markers:
                self.stream.publish(EventKind.LIFECYCLE, marker)
            exit_code = outcome.exit_code if outcome.exit_code is not None else -1
            self.stream.publish(EventKind.LIFECYCLE, Lifecycle.exited(exit_code))

            self.problems = problems
            self._finish(state, outcome.exit_code)

    async def fail_internal(self, detail: str) -> None:
        """Fail the session because the platform broke, not the program."""
        async with self._state_lock:
            if self.is_terminal:
                return
            self.internal_error = True
            self.failure_reason = "internal_error"
            self.stream.publish(EventKind.LIFECYCLE, Lifecycle.internal_error(detail))
            self._finish(SessionState.FAILED)

    async def wait(self, timeout: float | None = None) -> SessionState:
        """Wait until the session reaches a terminal state."""
        await asyncio.wait_for(self._done.wait(), timeout=timeout)
        return self._state

    def to_info(self) -> SessionInfo:
        """Convert to API response model."""
        return SessionInfo(
            id=self.id,
            workspace_id=self.workspace_id,
            language=self.language,
            state=self._state.value,
            limits=self.limits,
            created_at=self.created_at,
            started_at=self.started_at,
            ended_at=self.ended_at,
            exit_code=self.exit_code,
            duration_ms=self.duration_ms,
            failure_reason=self.failure_reason,
            internal_error=self.internal_error,
            truncated=self.truncated,
            last_seq=self.stream.last_seq,
        )

    def to_archived(self) -> ArchivedRun:
        """Snapshot of a finished session for the archive."""
        return ArchivedRun(
            session=self.to_info(),
            source=self.source,
            events=self.stream.events,
            problems=list(self.problems),
            archived_at=datetime.now(timezone.utc),
        )


class SessionRegistry:
    """Admits, tracks and cancels run sessions.

    At most one session per workspace is queued or running; further
    submissions are refused with ``busy`` rather than queued. Finished
    sessions stay queryable until they fall out of the per-workspace
    history window.
    """

    def __init__(
        self,
        runner: SandboxRunner | None = None,
        collector: DiagnosticsCollector | None = None,
        archive: RunArchive | None = None,
        history_per_workspace: int | None = None,
    ):
        self._sessions: dict[str, Session] = {}
        self._active: dict[str, str] = {}
        self._latest: dict[str, str] = {}
        self._history: dict[str, deque[str]] = {}
        self._supervisors: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()

        self._runner = runner or SandboxRunner()
        self._collector = collector or DiagnosticsCollector()
        if archive is None and settings.archive_enabled:
            archive = RunArchive(keep_per_workspace=settings.archive_keep_per_workspace)
        self._archive = archive
        self._history_limit = history_per_workspace or settings.history_per_workspace

    @property
    def runner(self) -> SandboxRunner:
        return self._runner

    @property
    def archive(self) -> RunArchive | None:
        return self._archive

    async def start(self) -> None:
        """Prepare scratch and archive directories."""
        settings.ensure_directories()
        logger.info(
            f"SessionRegistry started (isolation: {self._runner.isolation.mode.value}, "
            f"history: {self._history_limit} per workspace)"
        )

    async def stop(self) -> None:
        """Cancel every live run and wait for the supervisors to finish."""
        for session_id in list(self._active.values()):
            with contextlib.suppress(SessionNotFoundError, SessionAlreadyTerminalError):
                await self.cancel(session_id)

        supervisors = list(self._supervisors.values())
        if supervisors:
            _, pending = await asyncio.wait(supervisors, timeout=settings.cancel_grace_seconds + 5)
            for task in pending:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        logger.info("SessionRegistry stopped")

    async def submit(
        self,
        workspace_id: str,
        language: str,
        source: str,
        limits: LimitsOverride | ResourceLimits | None = None,
    ) -> Session:
        """Admit a run and start it.

        Raises:
            UnsupportedLanguageError: Unknown language
            BadRequestError: Empty/oversized source, bad workspace or limits
            SandboxUnavailableError: Toolchain missing or spawn failed
            WorkspaceBusyError: The workspace already has an active run
        """
        adapter = create_adapter(language)
        if not workspace_id or not workspace_id.strip():
            raise BadRequestError("workspace_id must not be empty")
        self._validate_source(source)
        resolved = self._resolve_limits(limits)
        if not self._runner.isolation.available:
            raise SandboxUnavailableError(
                self._runner.isolation.error or "isolation unavailable",
                {"isolation": self._runner.isolation.strategy},
            )
        if not adapter.is_available():
            raise SandboxUnavailableError(
                f"'{adapter.default_executable}' is not installed",
                {"language": adapter.language.value},
            )

        async with self._lock:
            active_id = self._active.get(workspace_id)
            active = self._sessions.get(active_id) if active_id else None
            # a finished run still waiting for its supervisor to release it doesn't count
            if active is not None and not active.is_terminal:
                logger.warning(f"Rejected run for busy workspace {workspace_id}")
                raise WorkspaceBusyError(workspace_id, active.id)

            session = Session(
                session_id=new_session_id(),
                workspace_id=workspace_id,
                adapter=adapter,
                source=source,
                limits=resolved,
            )
            previous_latest = self._latest.get(workspace_id)
            self._sessions[session.id] = session
            self._active[workspace_id] = session.id
            self._latest[workspace_id] = session.id
            logger.info(f"Admitted session {session.id} ({session.language}) for {workspace_id}")

        try:
            handle = await self._runner.start(session)
        except SandboxUnavailableError:
            async with self._lock:
                # a cancel during the spawn already released and archived it
                if session.released:
                    raise
                self._sessions.pop(session.id, None)
                if self._active.get(workspace_id) == session.id:
                    del self._active[workspace_id]
                if previous_latest is not None:
                    self._latest[workspace_id] = previous_latest
                else:
                    self._latest.pop(workspace_id, None)
            logger.warning(f"Session {session.id}: sandbox failed to start")
            raise

        session.handle = handle
        if not await session.mark_running():
            await self._runner.terminate(handle, StopReason.CANCELLED)

        self._supervisors[session.id] = asyncio.create_task(
            self._supervise(session, handle), name=f"supervise-{session.id}"
        )
        return session

    async def cancel(self, session_id: str) -> Session:
        """Cancel a queued or running session.

        Raises:
            SessionNotFoundError: Unknown session
            SessionAlreadyTerminalError: The session already finished
        """
        session = await self.get(session_id)
        previous = await session.request_cancel()

        if previous == SessionState.QUEUED:
            logger.info(f"Session {session_id}: cancelled before start")
            await self._release(session)
        elif session.handle is not None:
            await self._runner.terminate(session.handle, StopReason.CANCELLED)
        return session

    async def get(self, session_id: str) -> Session:
        """Get a session by ID."""
        async with self._lock:
            session = self._sessions.get(session_id)
            if not session:
                raise SessionNotFoundError(session_id)
            return session

    async def list_sessions(self, workspace_id: str | None = None) -> list[Session]:
        """Sessions still held in memory, oldest first."""
        async with self._lock:
            sessions = list(self._sessions.values())
        if workspace_id is not None:
            sessions = [s for s in sessions if s.workspace_id == workspace_id]
        return sorted(sessions, key=lambda s: s.created_at)

    async def problems(self, session_id: str) -> list[Problem]:
        """Problems of one run (empty until it finishes)."""
        session = await self.get(session_id)
        return list(session.problems)

    async def workspace_problems(self, workspace_id: str) -> list[Problem]:
        """Problems of the workspace's most recent run.

        A new run supersedes the previous run's problems as soon as it
        is admitted.
        """
        async with self._lock:
            session_id = self._latest.get(workspace_id)
            session = self._sessions.get(session_id) if session_id else None
        return list(session.problems) if session else []

    async def history(self, workspace_id: str) -> list[ArchivedRun]:
        """Archived runs of a workspace, including ones evicted from memory."""
        if self._archive is None:
            return []
        return await self._archive.list_workspace(workspace_id)

    def active_session_id(self, workspace_id: str) -> str | None:
        return self._active.get(workspace_id)

    def latest_session_id(self, workspace_id: str) -> str | None:
        return self._latest.get(workspace_id)

    @property
    def active_count(self) -> int:
        """Number of queued or running sessions."""
        sessions = (self._sessions.get(sid) for sid in self._active.values())
        return sum(1 for s in sessions if s is not None and not s.is_terminal)

    async def _supervise(self, session: Session, handle: RunHandle) -> None:
        """Wait for the run and record its outcome."""
        try:
            outcome = await self._runner.wait(handle, session.stream)
            await session.complete(outcome, self._collector)
        except asyncio.CancelledError:
            self._runner.kill(handle)
            await session.fail_internal("supervisor cancelled")
            raise
        except Exception as e:
            logger.exception(f"Session {session.id}: sandbox failed before reporting an exit code")
            self._runner.kill(handle)
            await session.fail_internal(f"{type(e).__name__}: {e}")
        finally:
            await self._release(session)
            await self._runner.cleanup(handle)
            self._supervisors.pop(session.id, None)

    async def _release(self, session: Session) -> None:
        """Free the workspace, apply retention and archive the run once."""
        async with self._lock:
            if session.released:
                return
            session.released = True

            workspace_id = session.workspace_id
            if self._active.get(workspace_id) == session.id:
                del self._active[workspace_id]

            history = self._history.setdefault(workspace_id, deque())
            history.append(session.id)
            while len(history) > self._history_limit:
                evicted = history.popleft()
                self._sessions.pop(evicted, None)
                logger.debug(f"Session {evicted}: evicted from history")

        logger.info(
            f"Session {session.id}: finished {session.state.value} "
            f"(exit {session.exit_code}, {session.stream.last_seq} events)"
        )

        if self._archive is not None:
            try:
                await self._archive.save(session.to_archived())
            except PersistenceError as e:
                logger.warning(f"Failed to archive session {session.id}: {e.message}")

    @staticmethod
    def _validate_source(source: str) -> None:
        if not source or not source.strip():
            raise BadRequestError("source must not be empty")
        size = len(source.encode("utf-8"))
        if size > settings.max_source_bytes:
            raise BadRequestError(
                f"source is {size} bytes, the maximum is {settings.max_source_bytes}",
                {"size": size, "max_source_bytes": settings.max_source_bytes},
            )

    @staticmethod
    def _resolve_limits(limits: LimitsOverride | ResourceLimits | None) -> ResourceLimits:
        """Fill missing limits from settings and reject values above the maxima."""
        requested = limits.model_dump(exclude_none=True) if limits is not None else {}
        resolved = ResourceLimits(
            wall_timeout_seconds=requested.get(
                "wall_timeout_seconds", settings.default_timeout_seconds
            ),
            memory_bytes=requested.get("memory_bytes", settings.default_memory_bytes),
            output_bytes=requested.get("output_bytes", settings.default_output_bytes),
        )

        maxima = {
            "wall_timeout_seconds": settings.max_timeout_seconds,
            "memory_bytes": settings.max_memory_bytes,
            "output_bytes": settings.max_output_bytes,
        }
        for name, maximum in maxima.items():
            value = getattr(resolved, name)
            if value > maximum:
                raise BadRequestError(
                    f"{name} of {value} exceeds the maximum of {maximum}",
                    {"limit": name, "value": value, "maximum": maximum},
                )
        return resolved
