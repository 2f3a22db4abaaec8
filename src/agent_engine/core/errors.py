"""Error taxonomy for the turn engine."""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Machine-readable failure reasons shared by tool calls, turns and events."""

    VALIDATION_ERROR = "validation-error"
    TOOL_NOT_FOUND = "tool-not-found"
    PERMISSION_DENIED = "permission-denied"
    TOOL_TIMEOUT = "tool-timeout"
    TOOL_EXECUTION_ERROR = "tool-execution-error"
    PROVIDER_TRANSIENT_ERROR = "provider-transient-error"
    PROVIDER_FATAL_ERROR = "provider-fatal-error"
    ROUND_LIMIT_EXCEEDED = "round-limit-exceeded"
    PERSISTENCE_ERROR = "persistence-error"
    TURN_IN_PROGRESS = "turn-in-progress"
    CANCELLED = "cancelled"

    def __str__(self) -> str:
        return self.value


class EngineError(Exception):
    """Base class for errors raised by the engine."""

    code: ErrorCode = ErrorCode.TOOL_EXECUTION_ERROR

    def __init__(self, message: str, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class ProviderError(EngineError):
    """A provider request failed."""

    code = ErrorCode.PROVIDER_FATAL_ERROR
    transient = False


class ProviderTransientError(ProviderError):
    """Timeouts, rate limiting and 5xx responses. Safe to retry the request."""

    code = ErrorCode.PROVIDER_TRANSIENT_ERROR
    transient = True


class ProviderFatalError(ProviderError):
    """Authentication failures, malformed requests and anything unrecognised."""

    code = ErrorCode.PROVIDER_FATAL_ERROR


class RoundLimitExceeded(EngineError):
    """The model kept requesting tools past the configured round limit."""

    code = ErrorCode.ROUND_LIMIT_EXCEEDED


class TurnInProgressError(EngineError):
    """A second turn was started on a session that already has one running."""

    code = ErrorCode.TURN_IN_PROGRESS


class PersistenceError(EngineError):
    """The session store could not record a message."""

    code = ErrorCode.PERSISTENCE_ERROR


class InvalidTransitionError(EngineError):
    """A ToolCall was asked to move backwards through its state machine."""

    code = ErrorCode.VALIDATION_ERROR


class PermissionResolveError(EngineError):
    """Resolve() targeted an unknown or already-resolved request."""

    code = ErrorCode.VALIDATION_ERROR
