"""
Trace harness errors.

Raised while decoding or interpreting a trace file.  They extend the engine
error hierarchy so the CLI reports both kinds the same way; codes use the
``MT-`` prefix.
"""

from __future__ import annotations

from typing import Optional

from memsafety.errors import ErrorCategory, ErrorCode, MemSafetyError


class TraceErrorCodes:
    """Registry of every trace harness error code."""

    TRACE = ErrorCode(5001, ErrorCategory.MALFORMED, prefix="MT")
    SYNTAX = ErrorCode(5101, ErrorCategory.MALFORMED, prefix="MT")
    NAME = ErrorCode(5201, ErrorCategory.LOOKUP, prefix="MT")


class TraceError(MemSafetyError):
    """A trace that cannot be interpreted (e.g. ``return`` outside a call)."""

    default_code = TraceErrorCodes.TRACE

    def __init__(
        self,
        message: str,
        filename: str = "<trace>",
        line: int = 0,
        column: int = 0,
        source_line: str = "",
    ) -> None:
        super().__init__(message)
        self.filename = filename
        self.line = line
        self.column = column
        self.source_line = source_line

    @property
    def location(self) -> str:
        if not self.line:
            return self.filename
        if not self.column:
            return f"{self.filename}:{self.line}"
        return f"{self.filename}:{self.line}:{self.column}"

    def render(self) -> str:
        """Message plus the offending source line with a caret."""
        text = str(self)
        if self.source_line:
            text += f"\n    {self.source_line}"
            if self.column:
                text += "\n    " + " " * (self.column - 1) + "^"
        return text

    def to_dict(self) -> dict:
        result = super().to_dict()
        result.update(file=self.filename, line=self.line, column=self.column)
        return result

    def __str__(self) -> str:
        return f"{self.location}: [{self.code}] {self.message}"


class TraceSyntaxError(TraceError):
    """A line that does not match the trace grammar."""

    default_code = TraceErrorCodes.SYNTAX


class TraceNameError(TraceError, LookupError):
    """A name that is not declared in any visible scope."""

    default_code = TraceErrorCodes.NAME

    def __init__(self, name: str, filename: str = "<trace>", line: int = 0,
                 source_line: str = "", hint: Optional[str] = None) -> None:
        super().__init__(f"'{name}' is not declared", filename, line, 0, source_line)
        self.name = name
        if hint:
            self.hint = hint


__all__ = [
    "TraceErrorCodes",
    "TraceError",
    "TraceSyntaxError",
    "TraceNameError",
]
