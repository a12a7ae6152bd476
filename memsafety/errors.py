# memsafety/errors.py
"""
Engine error types.

Errors in this module are *not* memory-rule violations.  Violations are
data: they are classified, stored by the :class:`DiagnosticReporter` and the
simulation carries on.  The exceptions below signal that the operation
stream itself is unusable (an id that was never issued, a frame popped out
of order, a call driven through an illegal state transition, a malformed
operation record, an invalid function signature).

Error Codes:
────────────
Each error carries a code of the form ``MS-NNNN``:

  - 1000-1999: lookup errors (unknown frame / binding / heap object / call)
  - 2000-2999: ordering and state-machine errors
  - 3000-3999: malformed operation records and configuration
  - 4000-4999: function signature errors
"""

from __future__ import annotations

from enum import Enum, auto, unique
from typing import Any, Optional


@unique
class ErrorCategory(Enum):
    """Coarse grouping used for filtering and statistics."""

    LOOKUP = auto()
    ORDERING = auto()
    STATE = auto()
    MALFORMED = auto()
    CONFIG = auto()
    SIGNATURE = auto()


class ErrorCode:
    """
    Structured error code.

    Codes follow the pattern ``MS-NNNN``; see the module docstring for the
    number ranges.
    """

    __slots__ = ("prefix", "number", "category")

    def __init__(self, number: int, category: ErrorCategory, prefix: str = "MS") -> None:
        self.prefix = prefix
        self.number = number
        self.category = category

    @property
    def code(self) -> str:
        """Get the full error code string."""
        return f"{self.prefix}-{self.number:04d}"

    def __str__(self) -> str:
        return self.code

    def __repr__(self) -> str:
        return f"ErrorCode({self.code}, {self.category.name})"

    def __hash__(self) -> int:
        return hash((self.prefix, self.number))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ErrorCode):
            return NotImplemented
        return (self.prefix, self.number) == (other.prefix, other.number)


class ErrorCodes:
    """Registry of every engine error code."""

    UNKNOWN_ENTITY = ErrorCode(1001, ErrorCategory.LOOKUP)
    FRAME_ORDER = ErrorCode(2001, ErrorCategory.ORDERING)
    CALL_STATE = ErrorCode(2101, ErrorCategory.STATE)
    MALFORMED_OPERATION = ErrorCode(3001, ErrorCategory.MALFORMED)
    CONFIG = ErrorCode(3501, ErrorCategory.CONFIG)
    SIGNATURE = ErrorCode(4001, ErrorCategory.SIGNATURE)
    INTERNAL = ErrorCode(9001, ErrorCategory.STATE)


class MemSafetyError(Exception):
    """
    Base exception for all engine errors.

    Carries a structured :class:`ErrorCode` and an optional hint that the
    CLI prints below the message.
    """

    default_code: ErrorCode = ErrorCodes.INTERNAL

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        hint: str = "",
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.hint = hint
        self.cause = cause

    def with_hint(self, hint: str) -> "MemSafetyError":
        self.hint = hint
        return self

    def to_dict(self) -> dict:
        result = {"code": self.code.code, "message": self.message}
        if self.hint:
            result["hint"] = self.hint
        return result

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class UnknownEntityError(MemSafetyError, LookupError):
    """An identifier that the memory space never issued."""

    default_code = ErrorCodes.UNKNOWN_ENTITY

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"Unknown {entity} id {entity_id!r}")
        self.entity = entity
        self.entity_id = entity_id


class FrameOrderError(MemSafetyError):
    """A frame was popped (or a call returned) while it was not on top."""

    default_code = ErrorCodes.FRAME_ORDER


class CallStateError(MemSafetyError):
    """A call was driven through an illegal state transition."""

    default_code = ErrorCodes.CALL_STATE


class MalformedOperationError(MemSafetyError, ValueError):
    """An operation record is missing fields or carries the wrong shape."""

    default_code = ErrorCodes.MALFORMED_OPERATION


class ConfigError(MalformedOperationError):
    """Invalid engine configuration."""

    default_code = ErrorCodes.CONFIG


class SignatureError(MemSafetyError, ValueError):
    """Invalid function signature (e.g. a non-trailing default parameter)."""

    default_code = ErrorCodes.SIGNATURE


__all__ = [
    "ErrorCategory",
    "ErrorCode",
    "ErrorCodes",
    "MemSafetyError",
    "UnknownEntityError",
    "FrameOrderError",
    "CallStateError",
    "MalformedOperationError",
    "ConfigError",
    "SignatureError",
]
