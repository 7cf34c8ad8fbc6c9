"""Error types and helpers for the governance engine."""

from __future__ import annotations

import re
from enum import StrEnum

import click


class ErrorCode(StrEnum):
    """Business-level outcomes returned to callers as typed results."""

    INVALID_TRANSITION = "InvalidTransition"
    ACTOR_NOT_ALLOWED = "ActorNotAllowed"
    MISSING_ARTIFACT = "MissingArtifact"
    ALREADY_TERMINAL = "AlreadyTerminal"
    ALREADY_DECIDED = "AlreadyDecided"
    APPROVAL_EXPIRED = "ApprovalExpired"
    POLICY_BLOCKED = "PolicyBlocked"
    BUDGET_EXCEEDED = "BudgetExceeded"
    # Never returned to a caller; recorded on alerts and forced transitions.
    LOOP_DETECTED = "LoopDetected"


class GovernanceError(Exception):
    """Base class for governance failures raised to callers that want exceptions."""

    code: ErrorCode | None = None

    def __init__(self, message: str, *, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class InvalidTransitionError(GovernanceError):
    code = ErrorCode.INVALID_TRANSITION


class ActorNotAllowedError(GovernanceError):
    code = ErrorCode.ACTOR_NOT_ALLOWED


class MissingArtifactError(GovernanceError):
    code = ErrorCode.MISSING_ARTIFACT


class AlreadyTerminalError(GovernanceError):
    code = ErrorCode.ALREADY_TERMINAL


class AlreadyDecidedError(GovernanceError):
    code = ErrorCode.ALREADY_DECIDED


class ApprovalExpiredError(GovernanceError):
    code = ErrorCode.APPROVAL_EXPIRED


class PolicyBlockedError(GovernanceError):
    code = ErrorCode.POLICY_BLOCKED


class BudgetExceededError(GovernanceError):
    code = ErrorCode.BUDGET_EXCEEDED


ERROR_TYPES: dict[ErrorCode, type[GovernanceError]] = {
    ErrorCode.INVALID_TRANSITION: InvalidTransitionError,
    ErrorCode.ACTOR_NOT_ALLOWED: ActorNotAllowedError,
    ErrorCode.MISSING_ARTIFACT: MissingArtifactError,
    ErrorCode.ALREADY_TERMINAL: AlreadyTerminalError,
    ErrorCode.ALREADY_DECIDED: AlreadyDecidedError,
    ErrorCode.APPROVAL_EXPIRED: ApprovalExpiredError,
    ErrorCode.POLICY_BLOCKED: PolicyBlockedError,
    ErrorCode.BUDGET_EXCEEDED: BudgetExceededError,
}


def error_for(code: ErrorCode, message: str) -> GovernanceError:
    """Build the exception matching an error code."""
    return ERROR_TYPES.get(code, GovernanceError)(message, code=code)


class NotFoundError(LookupError):
    """Raised when a referenced record does not exist."""


class TaskNotFoundError(NotFoundError):
    pass


class AgentNotFoundError(NotFoundError):
    pass


class ApprovalNotFoundError(NotFoundError):
    pass


class StatusWriteError(RuntimeError):
    """Raised when Task.status is written outside the state machine."""


class SchemaNotInitializedError(click.ClickException):
    """Raised when the database schema/migrations have not been applied."""


_PG_MISSING_RELATION_RE = re.compile(r'relation "(?P<table>[^"]+)" does not exist', re.IGNORECASE)
_SQLITE_MISSING_TABLE_RE = re.compile(r"no such table:\s*(?P<table>[A-Za-z0-9_]+)", re.IGNORECASE)


def _unwrap_exception_chain(exc: BaseException) -> list[BaseException]:
    chain: list[BaseException] = []
    current: BaseException | None = exc
    while current is not None and current not in chain:
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def missing_table_name(exc: BaseException) -> str | None:
    """Best-effort extraction of the missing table name from a DB exception."""
    for e in _unwrap_exception_chain(exc):
        message = str(e)
        match = _PG_MISSING_RELATION_RE.search(message) or _SQLITE_MISSING_TABLE_RE.search(message)
        if match:
            return match.group("table")
    return None


def is_schema_missing_error(exc: BaseException) -> bool:
    """Return True if the exception looks like a missing-table / missing-schema error."""
    if missing_table_name(exc):
        return True

    # Fallback for drivers that don't format errors consistently.
    for e in _unwrap_exception_chain(exc):
        message = str(e).lower()
        if "undefinedtableerror" in message:
            return True
        if "does not exist" in message and "relation" in message:
            return True
    return False


def schema_not_initialized_message(exc: BaseException) -> str:
    table = missing_table_name(exc)
    table_hint = f" (missing table `{table}`)" if table else ""

    lines: list[str] = [
        f"Database schema is not initialized{table_hint}.",
        "Run: `uv run alembic upgrade head`",
        "Or validate with: `uv run governor schema-check`",
    ]
    return "\n".join(lines)
