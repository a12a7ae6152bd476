"""
aliasing.py — Binding & Alias Tracker
=====================================

Manages references (aliases) and pointers to stack and heap storage.

Alias graph
-----------
  * reference edges:  ref binding ──alias_target──▶ Address   (immutable)
  * pointer edges:    ptr binding ──content──────▶ Address    (re-targetable)

Both kinds are indexed in reverse (target → dependents) so that when the
memory space destroys a binding or releases a heap object, every dependent
pointer/reference can be marked dangling.  Marking is bookkeeping only: the
``DanglingAccess`` diagnostic is produced by the *next dereference*, once
per dereference, never at destruction time.

Declarators
-----------
Declarations are described as data (a sequence of :class:`Declarator`
read outermost first) so that constructs a real compiler rejects outright
can still be represented and classified:

    []                        int x          value
    [POINTER]                 int *p         pointer
    [REFERENCE]               int &r         reference
    [REFERENCE, POINTER]      int *&rp       reference to pointer
    [POINTER, REFERENCE]      int &*pr       PointerToReferenceForbidden
    [ARRAY, REFERENCE]        int &a[3]      ArrayOfReferencesForbidden
    [REFERENCE, REFERENCE]    int & &rr      collapses to a single reference
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import (
    Any,
    DefaultDict,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from memsafety.config import EngineConfig
from memsafety.diagnostics import DiagnosticReporter, ViolationKind
from memsafety.errors import MalformedOperationError
from memsafety.memory_space import MemorySpace
from memsafety.model import (
    INDETERMINATE,
    INVALID,
    Address,
    AddressSpace,
    Binding,
    BindingKind,
    Declarator,
    HeapObject,
    RValue,
    Validity,
)

_log = logging.getLogger(__name__)

_TargetKey = Tuple[AddressSpace, int]


# ---------------------------------------------------------------------------
# Declarator classification (pure)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DeclaratorCheck:
    """Outcome of classifying a declarator chain."""
    kind: Optional[BindingKind]
    violation: Optional[ViolationKind] = None
    collapsed: bool = False
    is_array: bool = False


def classify_declarator(declarator: Iterable[Declarator]) -> DeclaratorCheck:
    """
    Classify a declarator chain (outermost constructor first).

    Adjacent reference layers collapse into one.  A pointer or array layer
    directly enclosing a reference layer is forbidden.
    """
    normalized: List[Declarator] = []
    collapsed = False
    for op in declarator:
        if op == Declarator.REFERENCE and normalized and normalized[-1] == Declarator.REFERENCE:
            collapsed = True
            continue
        normalized.append(op)

    for outer, inner in zip(normalized, normalized[1:]):
        if inner != Declarator.REFERENCE:
            continue
        if outer == Declarator.POINTER:
            return DeclaratorCheck(None, ViolationKind.POINTER_TO_REFERENCE_FORBIDDEN, collapsed)
        if outer == Declarator.ARRAY:
            return DeclaratorCheck(None, ViolationKind.ARRAY_OF_REFERENCES_FORBIDDEN, collapsed)

    if not normalized:
        return DeclaratorCheck(BindingKind.VALUE)
    head = normalized[0]
    if head == Declarator.REFERENCE:
        return DeclaratorCheck(BindingKind.REFERENCE, collapsed=collapsed)
    if head == Declarator.POINTER:
        return DeclaratorCheck(BindingKind.POINTER)
    return DeclaratorCheck(BindingKind.VALUE, is_array=True)


def plain_value(value: Any) -> Any:
    """Strip the RValue wrapper off a value operand."""
    return value.value if isinstance(value, RValue) else value


def _key(address: Address) -> _TargetKey:
    return (address.space, address.target_id)


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

class BindingAliasTracker:
    """
    Enforces binding-time and immutability rules for references, pointer
    re-targeting, and dangling-access detection on every dereference.
    """

    def __init__(
        self,
        space: MemorySpace,
        reporter: DiagnosticReporter,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self._space = space
        self._reporter = reporter
        self._config = config or EngineConfig()
        # target → bindings (references and pointers) that currently refer to it
        self._dependents: DefaultDict[_TargetKey, Set[int]] = defaultdict(set)
        # pointer binding → key it is indexed under
        self._pointer_edges: Dict[int, _TargetKey] = {}
        # dependent binding → operation index at which its target died
        self._dangling_since: Dict[int, int] = {}
        space.add_destruction_listener(self._on_destroyed)

    # -- Declarations --------------------------------------------------------

    def declare(
        self,
        frame_id: int,
        declarator: Sequence[Declarator] = (),
        initial: Any = INDETERMINATE,
        name: Optional[str] = None,
        type_name: Optional[str] = None,
        count: Optional[int] = None,
        tags: Sequence[str] = (),
    ) -> Optional[int]:
        """
        Declare a binding described by *declarator*.

        For references *initial* is the binding target (an Address, an
        RValue or None).  Returns the new binding id, or None when the
        declaration is rejected.
        """
        check = classify_declarator(declarator)
        label = name or "<anonymous>"
        if check.violation is not None:
            shape = "pointer to reference" if (
                check.violation == ViolationKind.POINTER_TO_REFERENCE_FORBIDDEN
            ) else "array of references"
            self._reporter.report(
                check.violation, (frame_id,),
                f"'{label}' declares a {shape}, which is not a valid storage kind",
                declarator=[d.value for d in declarator],
            )
            return None

        if check.kind == BindingKind.REFERENCE:
            bid = self.bind_reference(frame_id, initial, name=name, type_name=type_name, tags=tags)
            if bid is not None and check.collapsed:
                self._space.tag_binding(bid, "reference-collapse")
                if self._config.report_reference_collapse:
                    self._reporter.report(
                        ViolationKind.REFERENCE_COLLAPSE, (bid,),
                        f"reference to reference '{label}' collapses to a reference "
                        f"to the ultimate referent",
                    )
            return bid

        if check.kind == BindingKind.POINTER:
            if initial is None:
                initial = INDETERMINATE
            if initial is not INDETERMINATE and not isinstance(initial, Address):
                raise MalformedOperationError(
                    f"pointer '{label}' must be initialised with an address, got {initial!r}"
                )
            bid = self._space.declare_binding(
                frame_id, BindingKind.POINTER, initial, name=name,
                type_name=type_name, tags=tags,
            )
            if isinstance(initial, Address) and not initial.is_null:
                self._index_pointer(bid, initial)
            return bid

        value = INDETERMINATE if initial is None else plain_value(initial)
        if check.is_array and value is INDETERMINATE and count:
            value = [INDETERMINATE] * count
        return self._space.declare_binding(
            frame_id, BindingKind.VALUE, value, name=name, type_name=type_name, tags=tags,
        )

    def bind_reference(
        self,
        frame_id: int,
        target: Any,
        name: Optional[str] = None,
        type_name: Optional[str] = None,
        tags: Sequence[str] = (),
    ) -> Optional[int]:
        """
        Create a reference binding aliasing *target* for its whole lifetime.

        References to references alias the ultimate referent.
        """
        label = name or "<anonymous>"
        if target is None or target is INDETERMINATE or (
            isinstance(target, Address) and target.is_null
        ):
            self._reporter.report(
                ViolationKind.UNBOUND_REFERENCE, (frame_id,),
                f"reference '{label}' declared without a target",
            )
            return None
        if isinstance(target, RValue):
            self._reporter.report(
                ViolationKind.INVALID_REFERENCE_SOURCE, (frame_id,),
                f"reference '{label}' cannot bind to {target.origin} value "
                f"{target.value!r}: it is not an addressable storage location",
                origin=target.origin,
            )
            return None
        if not isinstance(target, Address):
            raise MalformedOperationError(f"reference target must be an Address, got {target!r}")

        address = self.ultimate_address(target)
        resolved = self._space.resolve(address)
        if resolved is INVALID:
            self._reporter.report(
                ViolationKind.INVALID_REFERENCE_SOURCE, (frame_id,),
                f"reference '{label}' cannot bind to {address!r}: no such storage",
            )
            return None

        bid = self._space.declare_binding(
            frame_id, BindingKind.REFERENCE, name=name, type_name=type_name,
            alias_target=address, tags=tags,
        )
        if resolved.validity == Validity.DESTROYED:
            self._dangling_since[bid] = self._reporter.operation_index
            self._reporter.report(
                ViolationKind.DANGLING_ACCESS, (bid, resolved.id),
                f"reference '{label}' binds to destroyed storage {resolved.label}",
            )
        else:
            self._dependents[_key(address)].add(bid)
        return bid

    # -- Addresses -----------------------------------------------------------

    def ultimate_address(self, address: Address) -> Address:
        """Follow reference bindings until a non-reference location."""
        while address.is_stack:
            target = self._space.resolve(address)
            if not isinstance(target, Binding) or target.kind != BindingKind.REFERENCE:
                break
            assert target.alias_target is not None
            address = target.alias_target.element(address.index)
        return address

    def take_address(self, binding_id: int) -> Address:
        """
        ``&x``.  The address of a reference is the address of its referent.
        Taking an address never dereferences, so it never reports.
        """
        binding = self._space.binding(binding_id)
        if binding.kind == BindingKind.REFERENCE:
            assert binding.alias_target is not None
            return binding.alias_target
        return binding.address

    def target_of(self, binding_id: int) -> Any:
        """Current target of a reference or pointer binding."""
        binding = self._space.binding(binding_id)
        if binding.kind == BindingKind.REFERENCE:
            return binding.alias_target
        if binding.kind == BindingKind.POINTER:
            return binding.content
        raise MalformedOperationError(f"'{binding.label}' is neither a pointer nor a reference")

    def dependents_of(self, address: Address) -> Set[int]:
        """Bindings whose reference or pointer edge designates *address*'s storage."""
        return set(self._dependents.get(_key(address), ()))

    def is_dangling(self, binding_id: int) -> bool:
        """Whether a reference/pointer currently designates destroyed storage."""
        target = self.target_of(binding_id)
        if not isinstance(target, Address) or target.is_null:
            return False
        resolved = self._space.resolve(target)
        return resolved is INVALID or resolved.validity == Validity.DESTROYED

    def dangling_bindings(self) -> List[int]:
        """Live references/pointers whose target has been destroyed."""
        return sorted(
            bid for bid in self._dangling_since
            if self._space.binding(bid).validity != Validity.DESTROYED
            and self.is_dangling(bid)
        )

    # -- Reads ---------------------------------------------------------------

    def read(self, binding_id: int) -> Any:
        """Read a binding by name (through the alias for references)."""
        binding = self._space.binding(binding_id)
        if binding.kind == BindingKind.REFERENCE:
            if binding.is_destroyed:
                self._report_dangling(binding, binding)
                return INVALID
            assert binding.alias_target is not None
            return self._read_at(binding.alias_target, via=binding)
        if binding.is_destroyed:
            self._report_dangling(binding, binding)
            return INVALID
        self._check_determinate(binding.content, binding, binding)
        return binding.content

    def load(self, binding_id: int, index: Optional[int] = None) -> Any:
        """Dereference a pointer or reference (``*p``, ``p[i]``)."""
        binding = self._space.binding(binding_id)
        address = self._deref_address(binding)
        if address is None:
            return INVALID
        if index:
            address = address.element(index)
        return self._read_at(address, via=binding)

    # -- Writes --------------------------------------------------------------

    def assign(self, binding_id: int, value: Any) -> bool:
        """``x = value``, routed by the binding's kind."""
        binding = self._space.binding(binding_id)
        if binding.kind == BindingKind.REFERENCE:
            return self.assign_through_reference(binding_id, value)
        if binding.kind == BindingKind.POINTER:
            return self.assign_pointer(binding_id, value)
        if binding.is_destroyed:
            self._report_dangling(binding, binding)
            return False
        self._space.write_binding(binding_id, plain_value(value))
        return True

    def assign_through_reference(self, binding_id: int, value: Any) -> bool:
        """Write *value* into the referent; the alias relation never changes."""
        binding = self._space.binding(binding_id)
        if binding.kind != BindingKind.REFERENCE:
            raise MalformedOperationError(f"'{binding.label}' is not a reference")
        if binding.is_destroyed:
            self._report_dangling(binding, binding)
            return False
        assert binding.alias_target is not None
        return self._write_at(binding.alias_target, plain_value(value), via=binding)

    def assign_pointer(self, binding_id: int, new_target: Any) -> bool:
        """
        Re-target a pointer.

        On a reference this is a rebind attempt: the value stored at
        *new_target* is written through the reference instead, and the
        alias relation stays as it was.
        """
        binding = self._space.binding(binding_id)
        if binding.kind == BindingKind.REFERENCE:
            return self._reroute_rebind(binding, new_target)
        if binding.kind != BindingKind.POINTER:
            raise MalformedOperationError(f"'{binding.label}' is not a pointer")
        if binding.is_destroyed:
            self._report_dangling(binding, binding)
            return False
        if new_target is None:
            new_target = self._null()
        if new_target is not INDETERMINATE and not isinstance(new_target, Address):
            raise MalformedOperationError(
                f"pointer '{binding.label}' can only hold an address, got {new_target!r}"
            )
        self._set_content(binding, new_target)
        return True

    def store(self, binding_id: int, value: Any, index: Optional[int] = None) -> bool:
        """Write through a pointer or reference (``*p = v``, ``p[i] = v``)."""
        binding = self._space.binding(binding_id)
        address = self._deref_address(binding)
        if address is None:
            return False
        if index:
            address = address.element(index)
        return self._write_at(address, plain_value(value), via=binding)

    def move(self, source_id: int, dest_id: int) -> bool:
        """
        Transfer the content of *source_id* into *dest_id* and mark the
        source storage MOVED_OUT.
        """
        value = self.read(source_id)
        if value is INVALID:
            return False
        if not self.assign(dest_id, value):
            return False
        source = self._space.resolve(self.ultimate_address(self.take_address(source_id)))
        if isinstance(source, Binding):
            self._space.mark_moved_out(source.id)
            self._drop_pointer_edge(source.id)
        return True

    # -- Internals -----------------------------------------------------------

    @staticmethod
    def _null() -> Address:
        return Address(AddressSpace.NULL)

    def _reroute_rebind(self, binding: Binding, new_target: Any) -> bool:
        if self._config.report_rebind_attempts:
            self._reporter.report(
                ViolationKind.REFERENCE_REBIND, (binding.id,),
                f"assignment to reference '{binding.label}' writes its referent; "
                f"references cannot be re-bound",
            )
        if isinstance(new_target, Address):
            value = self._read_at(new_target, via=binding)
            if value is INVALID:
                return False
        else:
            value = plain_value(new_target)
        _log.debug("rebind of %s re-routed to a write through the reference", binding.label)
        return self.assign_through_reference(binding.id, value)

    def _deref_address(self, binding: Binding) -> Optional[Address]:
        """Address designated by a pointer/reference, or None after reporting."""
        if binding.kind == BindingKind.VALUE and not isinstance(binding.content, list):
            raise MalformedOperationError(f"cannot dereference value binding '{binding.label}'")
        if binding.is_destroyed:
            self._report_dangling(binding, binding)
            return None
        if binding.kind == BindingKind.REFERENCE:
            return binding.alias_target
        if binding.kind == BindingKind.VALUE:
            # A stack array decays to the address of its first element.
            return binding.address
        pointer = binding.content
        if pointer is INDETERMINATE:
            self._reporter.report(
                ViolationKind.INDETERMINATE_READ, (binding.id,),
                f"dereference of indeterminate pointer '{binding.label}'",
            )
            return None
        return pointer

    def _locate(self, address: Address, via: Binding) -> Any:
        """
        Resolve *address* for a dereference through *via*.

        Returns the Binding/HeapObject, or INVALID after reporting.
        """
        address = self.ultimate_address(address)
        if address.is_null:
            self._reporter.report(
                ViolationKind.NULL_DEREFERENCE, (via.id,),
                f"dereference of null through '{via.label}'",
            )
            return INVALID
        target = self._space.resolve(address)
        if target is INVALID:
            self._reporter.report(
                ViolationKind.DANGLING_ACCESS, (via.id,),
                f"'{via.label}' designates {address!r}, which is not storage",
            )
            return INVALID
        if target.validity == Validity.DESTROYED:
            self._report_dangling(via, target)
            return INVALID
        size = self.cell_count(target)
        if not 0 <= address.index < size:
            self._reporter.report(
                ViolationKind.OUT_OF_BOUNDS, (via.id, target.id),
                f"element {address.index} of {target.label} is outside [0, {size})",
                index=address.index, size=size,
            )
            return INVALID
        return target

    @staticmethod
    def cell_count(target: Any) -> int:
        """Number of addressable elements in a Binding or HeapObject."""
        if isinstance(target, HeapObject):
            return target.count
        if isinstance(target.content, list):
            return len(target.content)
        return 1

    def _read_at(self, address: Address, via: Binding) -> Any:
        address = self.ultimate_address(address)
        target = self._locate(address, via)
        if target is INVALID:
            return INVALID
        if isinstance(target, HeapObject):
            value = target.cells[address.index]
        elif isinstance(target.content, list):
            value = target.content[address.index]
        else:
            value = target.content
        self._check_determinate(value, target, via)
        return value

    def _write_at(self, address: Address, value: Any, via: Binding) -> bool:
        address = self.ultimate_address(address)
        target = self._locate(address, via)
        if target is INVALID:
            return False
        if isinstance(target, HeapObject):
            self._space.write_heap_cell(target.id, address.index, value)
        elif isinstance(target.content, list):
            cells = list(target.content)
            cells[address.index] = value
            self._space.write_binding(target.id, cells)
        else:
            self._set_content(target, value)
        return True

    def _set_content(self, binding: Binding, value: Any) -> None:
        self._space.write_binding(binding.id, value)
        if binding.kind == BindingKind.POINTER:
            self._drop_pointer_edge(binding.id)
            if isinstance(value, Address) and not value.is_null:
                self._index_pointer(binding.id, value)

    def _index_pointer(self, binding_id: int, address: Address) -> None:
        key = _key(self.ultimate_address(address))
        self._pointer_edges[binding_id] = key
        self._dangling_since.pop(binding_id, None)
        resolved = self._space.resolve(address)
        if resolved is not INVALID and resolved.validity == Validity.DESTROYED:
            self._dangling_since[binding_id] = self._reporter.operation_index
        else:
            self._dependents[key].add(binding_id)

    def _drop_pointer_edge(self, binding_id: int) -> None:
        key = self._pointer_edges.pop(binding_id, None)
        if key is not None and key in self._dependents:
            self._dependents[key].discard(binding_id)
        self._dangling_since.pop(binding_id, None)

    def _check_determinate(self, value: Any, target: Any, via: Binding) -> None:
        if not self._config.report_indeterminate_reads:
            return
        moved = isinstance(target, Binding) and target.validity == Validity.MOVED_OUT
        if value is INDETERMINATE or moved:
            state = "moved-out" if moved else "indeterminate"
            ids = (via.id,) if via is target else (via.id, target.id)
            self._reporter.report(
                ViolationKind.INDETERMINATE_READ, ids,
                f"read of {state} content of {target.label}",
            )

    def _report_dangling(self, via: Binding, target: Any) -> None:
        if via is target:
            message = f"access to '{via.label}' after its frame was popped"
        else:
            message = (f"'{via.label}' dereferences destroyed storage {target.label}")
        self._reporter.report(ViolationKind.DANGLING_ACCESS, (via.id, target.id), message)

    def _on_destroyed(
        self,
        space: MemorySpace,
        binding_ids: Sequence[int],
        heap_ids: Sequence[int],
    ) -> None:
        keys = [(AddressSpace.STACK, bid) for bid in binding_ids]
        keys += [(AddressSpace.HEAP, hid) for hid in heap_ids]
        op_index = self._reporter.operation_index
        for key in keys:
            for dependent in self._dependents.get(key, ()):
                if space.binding(dependent).validity == Validity.DESTROYED:
                    continue
                self._dangling_since.setdefault(dependent, op_index)
                _log.debug("%s now dangling (target %s#%d destroyed)",
                           space.binding(dependent).label, key[0].value, key[1])
            self._dependents.pop(key, None)
        for bid in binding_ids:
            binding = space.binding(bid)
            if binding.kind == BindingKind.REFERENCE and binding.alias_target is not None:
                referents = self._dependents.get(_key(binding.alias_target))
                if referents is not None:
                    referents.discard(bid)
            self._drop_pointer_edge(bid)

    def __repr__(self) -> str:
        edges = sum(len(v) for v in self._dependents.values())
        return f"BindingAliasTracker(edges={edges}, dangling={len(self._dangling_since)})"


__all__ = [
    "DeclaratorCheck",
    "classify_declarator",
    "plain_value",
    "BindingAliasTracker",
]
