"""
Canopy Error Taxonomy

Business rejections (no edge, limit hit, terminal stage, ...) are expected
outcomes and travel back to callers as ``Outcome`` values so they can branch
on ``rejection.code``. Exceptions are kept for faults: corrupt stored data
(IntegrityViolation) and lock/transaction contention (ConcurrencyConflict).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

T = TypeVar("T")


# ── Codes ──────────────────────────────────────────────────────────────────


class ErrorCode(str, Enum):
    NOT_FOUND = "not_found"
    INVALID_TRANSITION = "invalid_transition"
    TERMINAL_STAGE_VIOLATION = "terminal_stage_violation"
    APPROVAL_REQUIRED = "approval_required"
    PRECONDITION_FAILED = "precondition_failed"
    LIMIT_EXCEEDED = "limit_exceeded"
    CYCLE_DETECTED = "cycle_detected"
    INTEGRITY_VIOLATION = "integrity_violation"
    VALIDATION_FAILED = "validation_failed"
    INVALID_STATE = "invalid_state"
    CONCURRENCY_CONFLICT = "concurrency_conflict"
    DUPLICATE_KEY = "duplicate_key"


class LimitScope(str, Enum):
    """Which propagation cap a request ran into."""

    DAILY = "daily"
    WEEKLY = "weekly"
    PER_MOTHER = "per_mother"


# ── Result container ──────────────────────────────────────────────────────


@dataclass
class Rejection:
    code: ErrorCode
    message: str
    scope: LimitScope | None = None
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class Outcome(Generic[T]):
    """Standardized return from every core operation that can be refused."""

    value: T | None = None
    rejection: Rejection | None = None

    @property
    def ok(self) -> bool:
        return self.rejection is None

    @property
    def code(self) -> ErrorCode | None:
        return self.rejection.code if self.rejection else None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(
        cls,
        code: ErrorCode,
        message: str,
        scope: LimitScope | None = None,
        **details: Any,
    ) -> "Outcome[T]":
        return cls(rejection=Rejection(code=code, message=message, scope=scope, details=details))


# ── Faults ────────────────────────────────────────────────────────────────


class CultivationError(Exception):
    code: ErrorCode = ErrorCode.INTEGRITY_VIOLATION

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context


class IntegrityViolation(CultivationError):
    """Stored data breaks an invariant. Surfaced for manual investigation, never repaired."""

    code = ErrorCode.INTEGRITY_VIOLATION


class ConcurrencyConflict(CultivationError):
    """Lock or transaction contention. Safe to retry."""

    code = ErrorCode.CONCURRENCY_CONFLICT
