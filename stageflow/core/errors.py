"""
Stageflow - Errors
==================

Exception hierarchy. Four families:

- transient infrastructure (retried, invisible on success)
- agent/execution failures (recorded on the StageExecution as failed)
- validation (rejected synchronously, never retried)
- migration failures (fatal to opening a database)
"""

from typing import Optional


class StageflowError(Exception):
    """Base class for all stageflow errors."""


# ==========================================================================
# Transient Infrastructure
# ==========================================================================

class TransientStoreError(StageflowError):
    """Store lock contention outlasted the retry budget."""


class IssueTrackerError(StageflowError):
    """Issue tracker returned an error payload."""


class IssueTrackerHTTPError(IssueTrackerError):
    """Non-2xx response from the issue tracker."""

    def __init__(self, message: str, status: int):
        super().__init__(message)
        self.status = status


# ==========================================================================
# Agent / Execution
# ==========================================================================

class AgentExecutionError(StageflowError):
    """The agent runner reported a terminal error."""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class MalformedOutputError(StageflowError):
    """Agent output does not match the stage's output format."""


# ==========================================================================
# Validation
# ==========================================================================

class ValidationError(StageflowError):
    """Rejected input. Surfaced immediately, not retried."""


class GateViolationError(ValidationError):
    """The user's decision does not satisfy the stage's gate rule."""


class InvalidTransitionError(ValidationError):
    """A status change not allowed by the transition table."""

    def __init__(self, kind: str, current: str, target: str):
        super().__init__(f"Cannot move {kind} from {current} to {target}")
        self.kind = kind
        self.current = current
        self.target = target


class InvalidCredentialsError(ValidationError):
    """Credentials were rejected (HTTP 401)."""


class NotFoundError(ValidationError):
    """Referenced record does not exist."""


# ==========================================================================
# Migrations
# ==========================================================================

class MigrationError(StageflowError):
    """A migration body raised. The database must not be used."""

    def __init__(self, version: int, name: str, cause: BaseException):
        super().__init__(f"Migration {version} ({name}) failed: {cause}")
        self.version = version
        self.name = name
        self.cause = cause


class DatabaseNotReadyError(StageflowError):
    """Operation attempted before migrations completed."""
