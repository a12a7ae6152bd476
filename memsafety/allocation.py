"""
memsafety/allocation.py
═══════════════════════

Heap allocation and release discipline.

Rules
─────
  * every heap object is released at most once           → DoubleFree
  * the release operator must match the allocation kind  → MismatchedRelease
  * only addresses produced by an allocation, pointing at
    element 0, may be released                            → InvalidFree
  * releasing the null address is a no-op                 (no diagnostic)
  * live objects at termination are leaks, once each      → Leak

A rejected release leaves the heap object untouched, so replaying the same
release produces the same diagnostic and a later matching release still
succeeds.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Set

from memsafety.diagnostics import Diagnostic, DiagnosticReporter, ViolationKind
from memsafety.errors import MalformedOperationError
from memsafety.memory_space import MemorySpace
from memsafety.model import INDETERMINATE, INVALID, Address, Binding, HeapKind

_log = logging.getLogger(__name__)

ALLOCATE_OPERATOR: Dict[HeapKind, str] = {
    HeapKind.SCALAR: "new",
    HeapKind.ARRAY: "new[]",
}

# Matching table: the only release operator accepted for each allocation kind
RELEASE_MATCH: Dict[HeapKind, str] = {
    HeapKind.SCALAR: "delete",
    HeapKind.ARRAY: "delete[]",
}


class AllocationManager:
    """
    Performs heap allocation and release and detects leaks.

    Usage
    -----
    >>> manager = AllocationManager(space, reporter)
    >>> h = manager.allocate_array("int", 5)
    >>> manager.release_scalar(Address.of_heap(h))     # MismatchedRelease
    False
    >>> manager.release_array(Address.of_heap(h))
    True
    """

    def __init__(self, space: MemorySpace, reporter: DiagnosticReporter) -> None:
        self._space = space
        self._reporter = reporter
        self._releases: Counter = Counter()          # heap id → successful releases
        self._leaks_reported: Set[int] = set()

    # ── Allocation ───────────────────────────────────────────────────

    def allocate_scalar(self, element_type: Optional[str] = None) -> int:
        return self._space.heap_allocate(
            HeapKind.SCALAR, 1, element_type, op_index=self._reporter.operation_index
        )

    def allocate_array(self, element_type: Optional[str], count: int) -> int:
        if not isinstance(count, int) or isinstance(count, bool) or count < 0:
            raise MalformedOperationError(f"array count must be a non-negative int, got {count!r}")
        return self._space.heap_allocate(
            HeapKind.ARRAY, count, element_type, op_index=self._reporter.operation_index
        )

    def allocate(self, kind: HeapKind, element_type: Optional[str] = None, count: int = 1) -> int:
        if kind == HeapKind.ARRAY:
            return self.allocate_array(element_type, count)
        return self.allocate_scalar(element_type)

    # ── Release ──────────────────────────────────────────────────────

    def release_scalar(self, address: Any) -> bool:
        return self.release(address, HeapKind.SCALAR)

    def release_array(self, address: Any) -> bool:
        return self.release(address, HeapKind.ARRAY)

    def release(self, address: Any, kind: HeapKind) -> bool:
        """
        Release the heap object at *address* with the operator for *kind*.

        Returns True only for a successful release.  A null address is a
        legal no-op and returns False without a diagnostic.
        """
        operator = RELEASE_MATCH[kind]
        if address is None or (isinstance(address, Address) and address.is_null):
            _log.debug("%s null: no-op", operator)
            return False
        if address is INDETERMINATE:
            self._reporter.report(
                ViolationKind.INVALID_FREE, (),
                f"{operator} of an indeterminate pointer value",
                operator=operator,
            )
            return False
        if not isinstance(address, Address):
            raise MalformedOperationError(f"{operator} expects an address, got {address!r}")

        target = self._space.resolve(address)
        if isinstance(target, Binding):
            self._reporter.report(
                ViolationKind.INVALID_FREE, (target.id,),
                f"{operator} of '{target.label}', which is stack storage and was "
                f"never heap-allocated",
                operator=operator,
            )
            return False
        if target is INVALID:
            self._reporter.report(
                ViolationKind.INVALID_FREE, (address.target_id,),
                f"{operator} of {address!r}, which no allocation produced",
                operator=operator,
            )
            return False

        obj = target
        if obj.is_destroyed:
            self._reporter.report(
                ViolationKind.DOUBLE_FREE, (obj.id,),
                f"{operator} of {obj.label}, already released at op {obj.released_at}",
                operator=operator, released_at=obj.released_at,
            )
            return False
        if address.index != 0:
            self._reporter.report(
                ViolationKind.INVALID_FREE, (obj.id,),
                f"{operator} of interior address {address!r} of {obj.label}",
                operator=operator, index=address.index,
            )
            return False
        if obj.kind != kind:
            expected = RELEASE_MATCH[obj.kind]
            self._reporter.report(
                ViolationKind.MISMATCHED_RELEASE, (obj.id,),
                f"{obj.label} allocated with {ALLOCATE_OPERATOR[obj.kind]} but "
                f"released with {operator} (expected {expected})",
                operator=operator, expected=expected,
            )
            return False

        self._space.release_heap(obj.id, self._reporter.operation_index)
        self._releases[obj.id] += 1
        return True

    def release_count(self, heap_id: int) -> int:
        """Number of successful releases of *heap_id* (0 or 1)."""
        return self._releases[heap_id]

    # ── Termination ──────────────────────────────────────────────────

    def live_objects(self) -> List[int]:
        return [obj.id for obj in self._space.heap_objects() if obj.is_live]

    def scan_leaks(self) -> List[Diagnostic]:
        """
        Report every live heap object as a leak.

        Runs only on explicit request.  Each allocation id is reported at
        most once, however often the scan runs.
        """
        found: List[Diagnostic] = []
        for obj in self._space.heap_objects():
            if not obj.is_live or obj.id in self._leaks_reported:
                continue
            self._leaks_reported.add(obj.id)
            found.append(self._reporter.report(
                ViolationKind.LEAK, (obj.id,),
                f"{obj.label} allocated at op {obj.allocated_at} with "
                f"{ALLOCATE_OPERATOR[obj.kind]} is never released",
                allocated_at=obj.allocated_at,
            ))
        _log.info("Leak scan: %d new leak(s), %d object(s) on the heap",
                  len(found), len(self._space.heap_objects()))
        return found

    def __repr__(self) -> str:
        return f"AllocationManager(live={len(self.live_objects())})"


__all__ = ["AllocationManager", "ALLOCATE_OPERATOR", "RELEASE_MATCH"]
