"""
memsafety/diagnostics.py
════════════════════════

Diagnostic model and the reporter sink.

The reporter takes no decisions: engine components detect violations and
hand them over with :meth:`DiagnosticReporter.report`; the reporter stamps
the current operation index, default severity and CWE number, applies
kind-level suppression and keeps the records in emission order.

  ┌──────────────────────────────────────────────────────┐
  │  AllocationManager │ BindingAliasTracker │ CallReturn │
  └─────────┬────────────────────┬──────────────┬────────┘
            │   report(kind, ids, message)      │
  ┌─────────▼───────────────────────────────────▼────────┐
  │               DiagnosticReporter                     │
  │   operation index │ severity/CWE table │ suppression │
  └─────────┬────────────────────────────────────────────┘
            │
     Diagnostic records  →  dict / JSON lines / text
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
)

_log = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 — DIAGNOSTIC MODEL
# ═════════════════════════════════════════════════════════════════════════

class DiagnosticSeverity(Enum):
    """Severity levels, compatible with cppcheck's addon protocol."""
    ERROR = "error"
    WARNING = "warning"
    STYLE = "style"
    INFORMATION = "information"


class ViolationKind(Enum):
    """Every classification the engine can assign to an operation."""
    DOUBLE_FREE = "DoubleFree"
    MISMATCHED_RELEASE = "MismatchedRelease"
    INVALID_FREE = "InvalidFree"
    LEAK = "Leak"
    UNBOUND_REFERENCE = "UnboundReference"
    INVALID_REFERENCE_SOURCE = "InvalidReferenceSource"
    REFERENCE_REBIND = "ReferenceRebind"
    POINTER_TO_REFERENCE_FORBIDDEN = "PointerToReferenceForbidden"
    ARRAY_OF_REFERENCES_FORBIDDEN = "ArrayOfReferencesForbidden"
    REFERENCE_COLLAPSE = "ReferenceCollapse"
    DANGLING_ACCESS = "DanglingAccess"
    DANGLING_RETURN = "DanglingReturn"
    OVERLOAD_AMBIGUOUS = "OverloadAmbiguous"
    NO_MATCHING_OVERLOAD = "NoMatchingOverload"
    NULL_DEREFERENCE = "NullDereference"
    INDETERMINATE_READ = "IndeterminateRead"
    OUT_OF_BOUNDS = "OutOfBounds"

    @classmethod
    def parse(cls, text: str) -> "ViolationKind":
        """Accept either the display name (``DoubleFree``) or the member name."""
        for kind in cls:
            if text in (kind.value, kind.name):
                return kind
        raise ValueError(f"unknown violation kind {text!r}")

    def __str__(self) -> str:
        return self.value


# (default severity, CWE) per kind; CWE 0 = none
VIOLATION_TABLE: Dict[ViolationKind, Tuple[DiagnosticSeverity, int]] = {
    ViolationKind.DOUBLE_FREE:                    (DiagnosticSeverity.ERROR, 415),
    ViolationKind.MISMATCHED_RELEASE:             (DiagnosticSeverity.ERROR, 762),
    ViolationKind.INVALID_FREE:                   (DiagnosticSeverity.ERROR, 590),
    ViolationKind.LEAK:                           (DiagnosticSeverity.WARNING, 401),
    ViolationKind.UNBOUND_REFERENCE:              (DiagnosticSeverity.ERROR, 0),
    ViolationKind.INVALID_REFERENCE_SOURCE:       (DiagnosticSeverity.ERROR, 0),
    ViolationKind.REFERENCE_REBIND:               (DiagnosticSeverity.WARNING, 0),
    ViolationKind.POINTER_TO_REFERENCE_FORBIDDEN: (DiagnosticSeverity.ERROR, 0),
    ViolationKind.ARRAY_OF_REFERENCES_FORBIDDEN:  (DiagnosticSeverity.ERROR, 0),
    ViolationKind.REFERENCE_COLLAPSE:             (DiagnosticSeverity.INFORMATION, 0),
    ViolationKind.DANGLING_ACCESS:                (DiagnosticSeverity.ERROR, 416),
    ViolationKind.DANGLING_RETURN:                (DiagnosticSeverity.ERROR, 562),
    ViolationKind.OVERLOAD_AMBIGUOUS:             (DiagnosticSeverity.ERROR, 0),
    ViolationKind.NO_MATCHING_OVERLOAD:           (DiagnosticSeverity.ERROR, 0),
    ViolationKind.NULL_DEREFERENCE:               (DiagnosticSeverity.ERROR, 476),
    ViolationKind.INDETERMINATE_READ:             (DiagnosticSeverity.WARNING, 457),
    ViolationKind.OUT_OF_BOUNDS:                  (DiagnosticSeverity.ERROR, 787),
}


@dataclass(frozen=True)
class Diagnostic:
    """
    A single classified violation.

    Attributes
    ----------
    violation_kind  : ViolationKind
    operation_index : Index of the operation that caused it
    involved_ids    : Frame / binding / heap object / call ids involved
    message         : Human-readable description
    severity        : DiagnosticSeverity
    cwe             : CWE identifier (0 = none)
    evidence        : Machine-readable context for downstream tooling
    """
    violation_kind: ViolationKind
    operation_index: int
    involved_ids: Tuple[int, ...]
    message: str
    severity: DiagnosticSeverity = DiagnosticSeverity.ERROR
    cwe: int = 0
    evidence: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the external diagnostic record shape."""
        result: Dict[str, Any] = {
            "violationKind": self.violation_kind.value,
            "operationIndex": self.operation_index,
            "involvedIds": list(self.involved_ids),
            "message": self.message,
            "severity": self.severity.value,
        }
        if self.cwe:
            result["cwe"] = self.cwe
        if self.evidence:
            result["evidence"] = {k: _jsonable(v) for k, v in self.evidence.items()}
        return result

    def to_json_str(self) -> str:
        """Single-line JSON string."""
        return json.dumps(self.to_dict())

    def __str__(self) -> str:
        return (f"op {self.operation_index}: {self.severity.value}: "
                f"{self.message} [{self.violation_kind.value}]")


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return repr(value)


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 — REPORTER
# ═════════════════════════════════════════════════════════════════════════

class DiagnosticReporter:
    """
    Sink for diagnostics emitted by the engine components.

    Usage
    -----
    >>> reporter = DiagnosticReporter()
    >>> idx = reporter.begin_operation()
    >>> diag = reporter.report(ViolationKind.DOUBLE_FREE, (3,), "heap#3 released twice")
    >>> reporter.count(ViolationKind.DOUBLE_FREE)
    1
    """

    def __init__(
        self,
        suppressed_kinds: Iterable[ViolationKind] = (),
        severity_overrides: Optional[Mapping[ViolationKind, DiagnosticSeverity]] = None,
    ) -> None:
        self._diagnostics: List[Diagnostic] = []
        self._suppressed: List[Diagnostic] = []
        self._suppressed_kinds: FrozenSet[ViolationKind] = frozenset(suppressed_kinds)
        self._severity_overrides: Dict[ViolationKind, DiagnosticSeverity] = dict(
            severity_overrides or {}
        )
        self._operation_index: int = -1

    # ── Operation bookkeeping ────────────────────────────────────────

    @property
    def operation_index(self) -> int:
        """Index of the operation currently being processed (-1 before the first)."""
        return self._operation_index

    def begin_operation(self) -> int:
        """Advance to the next operation and return its index."""
        self._operation_index += 1
        return self._operation_index

    # ── Emission ─────────────────────────────────────────────────────

    def report(
        self,
        kind: ViolationKind,
        involved_ids: Iterable[int],
        message: str,
        **evidence: Any,
    ) -> Diagnostic:
        """Record one diagnostic for the current operation and return it."""
        severity, cwe = VIOLATION_TABLE[kind]
        severity = self._severity_overrides.get(kind, severity)
        diag = Diagnostic(
            violation_kind=kind,
            operation_index=max(self._operation_index, 0),
            involved_ids=tuple(involved_ids),
            message=message,
            severity=severity,
            cwe=cwe,
            evidence=dict(evidence),
        )
        if kind in self._suppressed_kinds:
            _log.debug("Suppressed %s at op %d", kind.value, diag.operation_index)
            self._suppressed.append(diag)
        else:
            _log.debug("op %d: %s", diag.operation_index, diag.message)
            self._diagnostics.append(diag)
        return diag

    # ── Queries ──────────────────────────────────────────────────────

    @property
    def diagnostics(self) -> List[Diagnostic]:
        return list(self._diagnostics)

    @property
    def suppressed(self) -> List[Diagnostic]:
        return list(self._suppressed)

    def since(self, start: int) -> List[Diagnostic]:
        """Diagnostics emitted after the first *start* ones."""
        return self._diagnostics[start:]

    def by_kind(self, kind: ViolationKind) -> List[Diagnostic]:
        return [d for d in self._diagnostics if d.violation_kind == kind]

    def by_operation(self, index: int) -> List[Diagnostic]:
        return [d for d in self._diagnostics if d.operation_index == index]

    def by_severity(self, severity: DiagnosticSeverity) -> List[Diagnostic]:
        return [d for d in self._diagnostics if d.severity == severity]

    def count(self, kind: Optional[ViolationKind] = None) -> int:
        if kind is None:
            return len(self._diagnostics)
        return sum(1 for d in self._diagnostics if d.violation_kind == kind)

    @property
    def error_count(self) -> int:
        return len(self.by_severity(DiagnosticSeverity.ERROR))

    @property
    def warning_count(self) -> int:
        return len(self.by_severity(DiagnosticSeverity.WARNING))

    def to_json_lines(self) -> str:
        return "\n".join(d.to_json_str() for d in self._diagnostics)

    def to_text(self) -> str:
        return "\n".join(str(d) for d in self._diagnostics)

    def summary(self) -> str:
        """Human-readable summary."""
        lines = [
            f"{len(self._diagnostics)} diagnostic(s) "
            f"({self.error_count} errors, {self.warning_count} warnings)"
        ]
        counts = Counter(d.violation_kind for d in self._diagnostics)
        for kind in ViolationKind:
            if counts[kind]:
                lines.append(f"  {kind.value}: {counts[kind]}")
        if self._suppressed:
            lines.append(f"  ({len(self._suppressed)} suppressed)")
        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self._diagnostics)

    def __repr__(self) -> str:
        return (f"DiagnosticReporter(op={self._operation_index}, "
                f"diagnostics={len(self._diagnostics)})")


__all__ = [
    "DiagnosticSeverity",
    "ViolationKind",
    "VIOLATION_TABLE",
    "Diagnostic",
    "DiagnosticReporter",
]
