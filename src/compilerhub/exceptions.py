"""Exception hierarchy for compilerhub.

All exceptions inherit from CompilerHubError.

Hierarchy:
    CompilerHubError (base)
    ├── InputValidationError (caller bug, rejected before a job exists)
    │   ├── UnknownLanguageError
    │   ├── EmptySourceError
    │   ├── SourceTooLargeError
    │   └── InvalidOptionError
    ├── ToolchainUnavailableError     ← compiler/runtime missing on host
    ├── SandboxLimitExceededError     ← stage forcibly terminated
    ├── ParseFailureError             ← toolchain output not understood
    ├── NotFoundError
    │   ├── JobNotFoundError          ← unknown / evicted job id
    │   └── StageNotFoundError        ← stage that never ran
    └── InternalFaultError (hard failure of the orchestration layer)
        ├── ScratchDirError
        ├── CacheCorruptionError
        └── IllegalTransitionError

Only InternalFaultError and its subclasses escape the Pipeline as hard
failures. Toolchain, sandbox-limit and parse problems are folded into
StageRecords and job state.
"""

from __future__ import annotations

from typing import Any


class CompilerHubError(Exception):
    """Base exception for all compilerhub errors with structured context.

    Attributes:
        message: Human-readable error message
        context: Dictionary of structured error context for logging/debugging
    """

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


# =============================================================================
# Input validation (HTTP 400 equivalent)
# =============================================================================


class InputValidationError(CompilerHubError):
    """Base for input validation errors.

    The request never becomes a CompileJob and no sandbox is started.
    """


class UnknownLanguageError(InputValidationError):
    """The requested language has no registered adapter."""


class EmptySourceError(InputValidationError):
    """Source code is empty or whitespace-only."""


class SourceTooLargeError(InputValidationError):
    """Source code exceeds the configured size limit."""


class InvalidOptionError(InputValidationError):
    """An option (optimization level, export format, step action...) is not recognized."""


# =============================================================================
# Stage-level errors (recovered into StageRecords)
# =============================================================================


class ToolchainUnavailableError(CompilerHubError):
    """A binary required by the language adapter is not installed.

    Attributes:
        missing: Names of the binaries that could not be resolved
    """

    def __init__(self, message: str, missing: list[str], context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.update({"missing": missing})
        super().__init__(message, ctx)
        self.missing = missing


class SandboxLimitExceededError(CompilerHubError):
    """A sandboxed command was terminated for exceeding a resource limit.

    The sandbox itself reports limit breaches as data (SandboxResult.resource_exceeded);
    this exception is used by callers that want to turn such a result into an error.

    Attributes:
        limits: Names of the exceeded limits ("cpu", "memory", "time")
    """

    def __init__(self, message: str, limits: list[str], context: dict[str, Any] | None = None):
        ctx = context or {}
        ctx.update({"limits": limits})
        super().__init__(message, ctx)
        self.limits = limits


class ParseFailureError(CompilerHubError):
    """Toolchain output could not be interpreted by a stage parser."""


class NotFoundError(CompilerHubError):
    """Requested job or part of a job does not exist (HTTP 404 equivalent)."""


class JobNotFoundError(NotFoundError):
    """No completed job with the given id is held by the result store."""


class StageNotFoundError(NotFoundError):
    """The job exists but the requested stage never ran."""


# =============================================================================
# Internal faults (HTTP 500 equivalent)
# =============================================================================


class InternalFaultError(CompilerHubError):
    """Unexpected failure in the orchestration layer itself.

    Partial StageRecords of the affected job are not trusted.
    """


class ScratchDirError(InternalFaultError):
    """Sandbox scratch directory could not be created or prepared."""


class CacheCorruptionError(InternalFaultError):
    """Result store indices disagree with each other."""


class IllegalTransitionError(InternalFaultError):
    """A CompileJob status or record update violated the job state machine."""
