"""
memory_space.py — Ground truth of the simulated memory
======================================================

Owns the stack-frame stack and the heap object table.  Every mutation of a
:class:`~memsafety.model.Binding`, :class:`~memsafety.model.HeapObject` or
:class:`~memsafety.model.StackFrame` record goes through this class; the
other components only hold a reference to it and call its operations.

Usage
-----
    space = MemorySpace()
    frame = space.push_frame("main")
    x = space.declare_binding(frame, BindingKind.VALUE, 5, name="x")
    space.resolve(Address.of_binding(x))      # -> Binding(x, value, live)
    space.pop_frame(frame)                    # x is now DESTROYED

Destruction listeners
---------------------
``pop_frame`` and ``release_heap`` notify every registered listener with
the ids that just became DESTROYED, so alias bookkeeping can mark
dependent pointers and references as dangling.
"""

from __future__ import annotations

import itertools
import logging
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Optional,
    Sequence,
    Union,
)

from memsafety.errors import FrameOrderError, MalformedOperationError, UnknownEntityError
from memsafety.model import (
    INDETERMINATE,
    INVALID,
    Address,
    AddressSpace,
    Binding,
    BindingKind,
    HeapKind,
    HeapObject,
    StackFrame,
    Validity,
)

_log = logging.getLogger(__name__)

# Called as listener(space, binding_ids, heap_ids)
DestructionListener = Callable[["MemorySpace", Sequence[int], Sequence[int]], None]

Resolved = Union[Binding, HeapObject, Any]   # Any = the INVALID sentinel


class MemorySpace:
    """
    Arena of frames, bindings and heap objects addressed by integer ids.

    One shared counter issues ids for every record kind (and for calls, via
    :meth:`new_id`), so an id is unambiguous across the whole simulation.
    """

    def __init__(self) -> None:
        self._ids: Iterator[int] = itertools.count(1)
        self._frames: Dict[int, StackFrame] = {}
        self._stack: List[int] = []
        self._bindings: Dict[int, Binding] = {}
        self._heap: Dict[int, HeapObject] = {}
        self._listeners: List[DestructionListener] = []

    # -- Identifiers ---------------------------------------------------------

    def new_id(self) -> int:
        """Issue a fresh arena id."""
        return next(self._ids)

    # -- Listeners -----------------------------------------------------------

    def add_destruction_listener(self, listener: DestructionListener) -> None:
        self._listeners.append(listener)

    def _notify(self, binding_ids: Sequence[int], heap_ids: Sequence[int]) -> None:
        for listener in self._listeners:
            listener(self, binding_ids, heap_ids)

    # -- Frames --------------------------------------------------------------

    def push_frame(self, label: Optional[str] = None, call_id: Optional[int] = None) -> int:
        frame = StackFrame(id=self.new_id(), label=label, call_id=call_id)
        self._frames[frame.id] = frame
        self._stack.append(frame.id)
        _log.debug("push %r (depth %d)", frame, len(self._stack))
        return frame.id

    def pop_frame(self, frame_id: int) -> StackFrame:
        """
        Pop the top frame and destroy every binding it owns.

        Only the top frame can be popped; anything else is an ordering error
        in the operation stream.
        """
        frame = self.frame(frame_id)
        if frame.popped:
            raise FrameOrderError(f"frame {frame_id} was already popped")
        if not self._stack or self._stack[-1] != frame_id:
            top = self._stack[-1] if self._stack else None
            raise FrameOrderError(
                f"frame {frame_id} is not on top of the stack (top is {top})"
            )
        self._stack.pop()
        frame.popped = True
        for bid in frame.bindings:
            self._bindings[bid].validity = Validity.DESTROYED
        _log.debug("pop %r: %d binding(s) destroyed", frame, len(frame.bindings))
        self._notify(tuple(frame.bindings), ())
        return frame

    def frame(self, frame_id: int) -> StackFrame:
        try:
            return self._frames[frame_id]
        except KeyError:
            raise UnknownEntityError("frame", frame_id) from None

    @property
    def top_frame(self) -> Optional[int]:
        return self._stack[-1] if self._stack else None

    @property
    def frames(self) -> List[int]:
        """Ids of the frames currently on the stack, bottom first."""
        return list(self._stack)

    @property
    def depth(self) -> int:
        return len(self._stack)

    def owner_frame(self, binding_id: int) -> int:
        return self.binding(binding_id).frame_id

    # -- Bindings ------------------------------------------------------------

    def declare_binding(
        self,
        frame_id: int,
        kind: BindingKind,
        initial: Any = INDETERMINATE,
        name: Optional[str] = None,
        type_name: Optional[str] = None,
        alias_target: Optional[Address] = None,
        tags: Sequence[str] = (),
    ) -> int:
        """
        Create a binding in *frame_id* and return its id.

        Without *initial* the binding's content is INDETERMINATE and the
        binding is tagged ``"indeterminate"``.  References carry their
        *alias_target* instead of content.
        """
        frame = self.frame(frame_id)
        if frame.popped:
            raise FrameOrderError(f"cannot declare into popped frame {frame_id}")
        if kind == BindingKind.REFERENCE and alias_target is None:
            raise MalformedOperationError("a reference binding needs an alias target")
        binding = Binding(
            id=self.new_id(),
            frame_id=frame_id,
            kind=kind,
            name=name,
            type_name=type_name,
            content=None if kind == BindingKind.REFERENCE else initial,
            alias_target=alias_target if kind == BindingKind.REFERENCE else None,
            tags=set(tags),
        )
        if binding.is_indeterminate:
            binding.tags.add("indeterminate")
        self._bindings[binding.id] = binding
        frame.bindings.append(binding.id)
        _log.debug("declare %r in frame %d", binding, frame_id)
        return binding.id

    def binding(self, binding_id: int) -> Binding:
        try:
            return self._bindings[binding_id]
        except KeyError:
            raise UnknownEntityError("binding", binding_id) from None

    def write_binding(self, binding_id: int, value: Any) -> None:
        """Overwrite the content of a value or pointer binding."""
        binding = self.binding(binding_id)
        if binding.kind == BindingKind.REFERENCE:
            raise MalformedOperationError(
                f"{binding.label} is a reference; write its referent instead"
            )
        binding.content = value
        if value is not INDETERMINATE:
            binding.tags.discard("indeterminate")
            if binding.validity == Validity.MOVED_OUT:
                binding.validity = Validity.LIVE

    def mark_moved_out(self, binding_id: int) -> None:
        binding = self.binding(binding_id)
        binding.validity = Validity.MOVED_OUT
        binding.content = INDETERMINATE

    def tag_binding(self, binding_id: int, tag: str) -> None:
        self.binding(binding_id).tags.add(tag)

    def bindings(self) -> List[Binding]:
        return list(self._bindings.values())

    # -- Heap ----------------------------------------------------------------

    def heap_allocate(
        self,
        kind: HeapKind,
        count: int = 1,
        element_type: Optional[str] = None,
        op_index: int = 0,
    ) -> int:
        obj = HeapObject(
            id=self.new_id(),
            kind=kind,
            count=count,
            element_type=element_type,
            cells=[INDETERMINATE] * count,
            allocated_at=op_index,
        )
        self._heap[obj.id] = obj
        _log.debug("allocate %r", obj)
        return obj.id

    def release_heap(self, heap_id: int, op_index: int) -> None:
        """Mark a heap object DESTROYED.  Callers enforce the release rules."""
        obj = self.heap_object(heap_id)
        obj.released_at = op_index
        _log.debug("release %r", obj)
        self._notify((), (heap_id,))

    def write_heap_cell(self, heap_id: int, index: int, value: Any) -> None:
        self.heap_object(heap_id).cells[index] = value

    def heap_object(self, heap_id: int) -> HeapObject:
        try:
            return self._heap[heap_id]
        except KeyError:
            raise UnknownEntityError("heap object", heap_id) from None

    def heap_objects(self) -> List[HeapObject]:
        return list(self._heap.values())

    # -- Resolution ----------------------------------------------------------

    def resolve(self, address: Address) -> Resolved:
        """
        Map an address to the record it designates.

        Returns INVALID for the null address and for ids this space never
        issued; destroyed records are returned as-is (their validity tells
        the caller the address is dangling).
        """
        if address.space == AddressSpace.STACK:
            return self._bindings.get(address.target_id, INVALID)
        if address.space == AddressSpace.HEAP:
            return self._heap.get(address.target_id, INVALID)
        return INVALID

    def __repr__(self) -> str:
        return (f"MemorySpace(depth={len(self._stack)}, "
                f"bindings={len(self._bindings)}, heap={len(self._heap)})")


__all__ = ["MemorySpace", "DestructionListener"]
