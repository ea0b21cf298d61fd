"""
Stage engine errors.

Each error carries a structured code, the HTTP status the API maps it to,
and whether the caller may retry the whole operation.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    BAD_REQUEST = "BAD_REQUEST"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    STEPS_INCOMPLETE = "STEPS_INCOMPLETE"
    TERMINAL_STAGE = "TERMINAL_STAGE"
    NOT_FOUND = "NOT_FOUND"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    UNAUTHORIZED = "UNAUTHORIZED"


class StageEngineError(Exception):
    """Base class; never raised directly."""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR
    http_status: int = 400
    retryable: bool = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def extra(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "retryable": self.retryable,
                **self.extra(),
            }
        }


class BadRequestError(StageEngineError):
    """Malformed request: missing field, unknown action, bad body shape."""

    code = ErrorCode.BAD_REQUEST
    http_status = 400

    def __init__(self, message: str, problems: Optional[list[str]] = None):
        self.problems = list(problems or [])
        super().__init__(message)

    def extra(self) -> dict[str, Any]:
        return {"problems": self.problems} if self.problems else {}


class ValidationError(StageEngineError):
    """Unknown stage/step id, a step outside the allowed stages, or a backward move."""

    code = ErrorCode.VALIDATION_ERROR
    http_status = 422


class StepsIncompleteError(StageEngineError):
    code = ErrorCode.STEPS_INCOMPLETE
    http_status = 409

    def __init__(self, stage: str, incomplete_steps: list[str]):
        self.stage = stage
        self.incomplete_steps = list(incomplete_steps)
        super().__init__(
            f"Cannot advance from {stage}: required steps not completed "
            f"({', '.join(self.incomplete_steps)})"
        )

    def extra(self) -> dict[str, Any]:
        return {"stage": self.stage, "incomplete_steps": self.incomplete_steps}


class TerminalStageError(StageEngineError):
    code = ErrorCode.TERMINAL_STAGE
    http_status = 409

    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"Job is already at the final stage ({stage})")


class NotFoundError(StageEngineError):
    code = ErrorCode.NOT_FOUND
    http_status = 404

    def __init__(self, kind: str, ident: Optional[str]):
        self.kind = kind
        self.ident = ident
        super().__init__(f"{kind} not found: {ident}")


class ConcurrencyConflict(StageEngineError):
    """The record changed between read and write; retry the whole operation."""

    code = ErrorCode.CONCURRENCY_CONFLICT
    http_status = 409
    retryable = True

    def __init__(self, job_id: str, expected_version: int):
        self.job_id = job_id
        self.expected_version = expected_version
        super().__init__(
            f"Job {job_id} was modified concurrently (expected version {expected_version})"
        )


class AuthorizationError(StageEngineError):
    code = ErrorCode.UNAUTHORIZED
    http_status = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)
