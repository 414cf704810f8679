"""Exception hierarchy for flowline.

Every exception carries a ``kind`` naming the error category used by the
retry policy, the Control API and the CLI exit codes.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import httpx


class FlowlineError(Exception):
    """Base class for all flowline errors."""

    kind = "error"
    retriable = False

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(FlowlineError):
    """Input or definition failed validation."""

    kind = "validation"

    def __init__(self, message: str, problems: Optional[List[str]] = None) -> None:
        super().__init__(message, {"problems": list(problems or [])})
        self.problems = list(problems or [])

    def __str__(self) -> str:
        if not self.problems:
            return self.message
        return self.message + ": " + "; ".join(self.problems)


class ExpressionError(ValidationError):
    """An expression could not be parsed or evaluated."""

    kind = "expression"


class NotFound(FlowlineError):
    kind = "not_found"


class Conflict(FlowlineError):
    """Optimistic version mismatch or duplicate key."""

    kind = "conflict"


class AlreadyTerminal(FlowlineError):
    kind = "already_terminal"


class InvalidTransition(FlowlineError):
    kind = "invalid_transition"


class NoBranchMatch(FlowlineError):
    kind = "no_branch_match"


class StepTimeout(FlowlineError):
    kind = "timeout"
    retriable = True


class RetriableError(FlowlineError):
    """Transient failure of an external collaborator."""

    kind = "transient"
    retriable = True

    def __init__(
        self, message: str = "", kind: Optional[str] = None, details: Optional[Dict[str, Any]] = None
    ) -> None:
        super().__init__(message, details)
        if kind:
            self.kind = kind


class FatalError(FlowlineError):
    """Non-retriable failure of an external collaborator."""

    kind = "fatal"


class QueueFull(FlowlineError):
    kind = "queue_full"
    retriable = True


class Unauthorized(FlowlineError):
    kind = "unauthorized"


class IdempotencyMismatch(FlowlineError):
    kind = "idempotency_mismatch"


def classify_error(exc: BaseException) -> str:
    """Return the error kind used by retry policies for ``exc``."""

    if isinstance(exc, FlowlineError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return "timeout"
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status >= 500 or status == 429:
            return "5xx"
        return "fatal"
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return "network"
    return "error"


def error_message(exc: BaseException) -> str:
    text = str(exc)
    return text or type(exc).__name__
