"""
model.py — Records of the simulated memory
==========================================

Layered data model shared by every engine component:

  Layer 0: identifiers and addresses (``Address``, ``NULL_ADDRESS``)
  Layer 1: storage records (``Binding``, ``HeapObject``, ``StackFrame``)
  Layer 2: call records (``ParamSpec``, ``FunctionSignature``,
           ``CallFrameLink``)

Every record is addressed by a stable integer identifier drawn from the
arena counter of :class:`~memsafety.memory_space.MemorySpace`.  No record
holds a host-language reference to another record; relations (alias edges,
pointer targets, frame ownership) are stored as identifiers so that a
dangling state is a flag flip on the target, never an actual stale object.

Usage
-----
    from memsafety.model import Address, BindingKind, NULL_ADDRESS

    addr = Address.of_binding(7)
    assert addr.is_stack
    assert NULL_ADDRESS.is_null
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, List, Optional, Set, Tuple

from memsafety.errors import SignatureError


# ---------------------------------------------------------------------------
# 0. Kinds and sentinels
# ---------------------------------------------------------------------------

class BindingKind(enum.Enum):
    """Declared kind of a named storage location."""
    VALUE       = "value"        # Owns its data
    POINTER     = "pointer"      # Holds an Address; re-targetable, nullable
    REFERENCE   = "reference"    # Permanent alias to one target


class Validity(enum.Enum):
    """Lifecycle state of a binding or heap object."""
    LIVE        = "live"
    MOVED_OUT   = "moved-out"    # Content transferred away; storage still exists
    DESTROYED   = "destroyed"    # Frame popped / heap object released


class HeapKind(enum.Enum):
    """Element kind of a heap allocation."""
    SCALAR      = "scalar"       # new T      / delete
    ARRAY       = "array"        # new T[n]   / delete[]


class AddressSpace(enum.Enum):
    """Which arena an Address points into."""
    STACK       = "stack"
    HEAP        = "heap"
    NULL        = "null"


class Declarator(enum.Enum):
    """One type constructor of a declaration, read outermost first."""
    POINTER     = "*"
    REFERENCE   = "&"
    ARRAY       = "[]"


class PassMode(enum.Enum):
    """Parameter passing mode."""
    VALUE       = "value"
    REFERENCE   = "reference"
    POINTER     = "pointer"


class ReturnMode(enum.Enum):
    """Return mode of a function signature."""
    VALUE       = "value"
    POINTER     = "pointer"
    REFERENCE   = "reference"
    VOID        = "void"


class _Sentinel:
    """Named singleton marker; compared by identity."""

    __slots__ = ("_name",)

    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name

    def __reduce__(self) -> str:
        return self._name.strip("<>").upper().replace("-", "_")


INDETERMINATE = _Sentinel("<indeterminate>")
INVALID = _Sentinel("<invalid>")
NO_DEFAULT = _Sentinel("<no-default>")

# Argument kind of a null pointer literal; accepted by every pointer parameter
NULLPTR_KIND = "nullptr_t"


# ---------------------------------------------------------------------------
# 1. Addresses and non-addressable values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Address:
    """
    A pointer value.

    ``target_id`` is a binding id (STACK) or heap object id (HEAP); ``index``
    selects an element of an array heap object.  Addresses are immutable and
    hashable so they can key the alias graph.
    """
    space: AddressSpace
    target_id: int = 0
    index: int = 0

    @classmethod
    def of_binding(cls, binding_id: int) -> "Address":
        return cls(AddressSpace.STACK, binding_id)

    @classmethod
    def of_heap(cls, heap_id: int, index: int = 0) -> "Address":
        return cls(AddressSpace.HEAP, heap_id, index)

    def element(self, index: int) -> "Address":
        """Return the address of element *index* relative to this one."""
        return Address(self.space, self.target_id, self.index + index)

    @property
    def is_null(self) -> bool:
        return self.space == AddressSpace.NULL

    @property
    def is_heap(self) -> bool:
        return self.space == AddressSpace.HEAP

    @property
    def is_stack(self) -> bool:
        return self.space == AddressSpace.STACK

    def __repr__(self) -> str:
        if self.is_null:
            return "Addr(null)"
        suffix = f"[{self.index}]" if self.index else ""
        return f"Addr({self.space.value}#{self.target_id}{suffix})"


NULL_ADDRESS = Address(AddressSpace.NULL)


@dataclass(frozen=True)
class RValue:
    """
    A value with no storage location: a literal or an arithmetic result.

    Accepted wherever a plain value is expected; rejected as the source of a
    reference binding.
    """
    value: Any
    type_name: Optional[str] = None
    origin: str = "literal"          # "literal" | "expression" | "temporary"

    def __repr__(self) -> str:
        return f"RValue({self.value!r}, {self.origin})"


# ---------------------------------------------------------------------------
# 2. Storage records
# ---------------------------------------------------------------------------

@dataclass
class Binding:
    """
    A named storage location owned by one stack frame.

    ``alias_target`` is only set for references, once, at creation; the
    memory space exposes no operation that changes it.
    """
    id: int
    frame_id: int
    kind: BindingKind
    name: Optional[str] = None
    type_name: Optional[str] = None
    content: Any = INDETERMINATE
    validity: Validity = Validity.LIVE
    alias_target: Optional[Address] = None
    tags: Set[str] = field(default_factory=set)

    @property
    def is_live(self) -> bool:
        return self.validity == Validity.LIVE

    @property
    def is_destroyed(self) -> bool:
        return self.validity == Validity.DESTROYED

    @property
    def is_indeterminate(self) -> bool:
        return self.content is INDETERMINATE

    @property
    def address(self) -> Address:
        return Address.of_binding(self.id)

    @property
    def label(self) -> str:
        return self.name or f"binding#{self.id}"

    def __repr__(self) -> str:
        extra = f" -> {self.alias_target!r}" if self.alias_target else ""
        return (f"Binding({self.label}, {self.kind.value}, "
                f"{self.validity.value}{extra})")


@dataclass
class HeapObject:
    """
    Metadata and cells for one heap allocation.
    """
    id: int
    kind: HeapKind
    count: int
    element_type: Optional[str] = None
    cells: List[Any] = field(default_factory=list)
    allocated_at: int = 0                       # Operation index
    released_at: Optional[int] = None           # Operation index of the matching release

    @property
    def validity(self) -> Validity:
        return Validity.LIVE if self.released_at is None else Validity.DESTROYED

    @property
    def is_live(self) -> bool:
        return self.released_at is None

    @property
    def is_destroyed(self) -> bool:
        return self.released_at is not None

    @property
    def label(self) -> str:
        return f"heap#{self.id}"

    def __repr__(self) -> str:
        shape = f"[{self.count}]" if self.kind == HeapKind.ARRAY else ""
        return (f"HeapObject({self.label}{shape}, "
                f"status={self.validity.value}, alloc@{self.allocated_at})")


@dataclass
class StackFrame:
    """
    One activation record (or plain block scope) on the simulated stack.
    """
    id: int
    label: Optional[str] = None
    call_id: Optional[int] = None               # Owning call, None for block frames
    bindings: List[int] = field(default_factory=list)
    popped: bool = False

    def __repr__(self) -> str:
        return (f"Frame({self.label or self.id}, "
                f"bindings={len(self.bindings)}, popped={self.popped})")


# ---------------------------------------------------------------------------
# 3. Call records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ParamSpec:
    """One parameter of a function signature."""
    type_name: str
    mode: PassMode = PassMode.VALUE
    name: Optional[str] = None
    default: Any = NO_DEFAULT

    @property
    def has_default(self) -> bool:
        return self.default is not NO_DEFAULT

    def accepts(self, arg_kind: str) -> bool:
        """Whether an argument of kind *arg_kind* can bind to this parameter."""
        if self.mode == PassMode.POINTER:
            return arg_kind in (f"{self.type_name}*", NULLPTR_KIND)
        return arg_kind == self.type_name

    def __str__(self) -> str:
        suffix = {PassMode.VALUE: "", PassMode.REFERENCE: "&", PassMode.POINTER: "*"}[self.mode]
        text = f"{self.type_name}{suffix}"
        if self.name:
            text += f" {self.name}"
        if self.has_default:
            text += f" = {self.default!r}"
        return text


@dataclass(frozen=True)
class FunctionSignature:
    """
    Name, ordered parameters and return mode of a callable.

    Default values are only allowed on trailing parameters.
    """
    name: str
    params: Tuple[ParamSpec, ...] = ()
    return_mode: ReturnMode = ReturnMode.VALUE
    return_type: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "params", tuple(self.params))
        seen_default = False
        for i, param in enumerate(self.params):
            if param.has_default:
                seen_default = True
            elif seen_default:
                raise SignatureError(
                    f"{self.name}: parameter {i} ({param}) follows a defaulted "
                    f"parameter but has no default"
                ).with_hint("default arguments must be trailing")

    @property
    def arity(self) -> int:
        return len(self.params)

    @property
    def required_count(self) -> int:
        return sum(1 for p in self.params if not p.has_default)

    def __str__(self) -> str:
        params = ", ".join(str(p) for p in self.params)
        return f"{self.name}({params}) -> {self.return_mode.value}"


@dataclass(frozen=True)
class CallFrameLink:
    """Which caller storage was passed into which callee parameter."""
    call_id: int
    param_index: int
    callee_binding_id: int
    mode: PassMode
    caller_binding_id: Optional[int] = None     # None for rvalue / default arguments


__all__ = [
    "BindingKind",
    "Validity",
    "HeapKind",
    "AddressSpace",
    "Declarator",
    "PassMode",
    "ReturnMode",
    "INDETERMINATE",
    "INVALID",
    "NO_DEFAULT",
    "NULLPTR_KIND",
    "Address",
    "NULL_ADDRESS",
    "RValue",
    "Binding",
    "HeapObject",
    "StackFrame",
    "ParamSpec",
    "FunctionSignature",
    "CallFrameLink",
]
