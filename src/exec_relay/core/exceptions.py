"""Custom exception hierarchy for the execution relay."""

from typing import Any


class ExecRelayError(Exception):
    """Base exception for all execution relay errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)


class AdmissionError(ExecRelayError):
    """A run request was refused before any session was created."""

    pass


class WorkspaceBusyError(AdmissionError):
    """The workspace already has a queued or running session."""

    def __init__(self, workspace_id: str, active_session_id: str):
        super().__init__(
            code="busy",
            message=f"Workspace '{workspace_id}' already has an active run",
            details={"workspace_id": workspace_id, "active_session_id": active_session_id},
        )


class UnsupportedLanguageError(AdmissionError):
    """Raised when a language is not supported."""

    def __init__(self, language: str, supported: list[str] | None = None):
        super().__init__(
            code="invalid_language",
            message=f"Language '{language}' is not supported",
            details={"language": language, "supported": supported or []},
        )


class BadRequestError(AdmissionError):
    """The request is malformed (empty source, limits out of range, ...)."""

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        super().__init__(
            code="bad_request",
            message=reason,
            details=details or {},
        )


class SandboxUnavailableError(AdmissionError):
    """The toolchain is missing or the sandbox could not start the process."""

    def __init__(self, reason: str, details: dict[str, Any] | None = None):
        super().__init__(
            code="sandbox_unavailable",
            message=f"Sandbox unavailable: {reason}",
            details=details or {},
        )


class SessionError(ExecRelayError):
    """Session-related errors."""

    pass


class SessionNotFoundError(SessionError):
    """Session with given ID does not exist."""

    def __init__(self, session_id: str):
        super().__init__(
            code="not_found",
            message=f"Session '{session_id}' not found",
            details={"session_id": session_id},
        )


class SessionAlreadyTerminalError(SessionError):
    """The session already finished; it can no longer be cancelled."""

    def __init__(self, session_id: str, state: str):
        super().__init__(
            code="already_terminal",
            message=f"Session '{session_id}' already finished with state '{state}'",
            details={"session_id": session_id, "state": state},
        )


class InvalidSessionStateError(SessionError):
    """Operation not valid in current session state."""

    def __init__(self, session_id: str, current_state: str, required_states: list[str]):
        super().__init__(
            code="invalid_state",
            message=f"Session '{session_id}' is in state '{current_state}', "
            f"but operation requires: {required_states}",
            details={
                "session_id": session_id,
                "current_state": current_state,
                "required_states": required_states,
            },
        )


class PersistenceError(ExecRelayError):
    """Persistence layer errors."""

    pass
