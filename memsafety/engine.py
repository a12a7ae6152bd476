"""
memsafety/engine.py
═══════════════════

Operation records and the :class:`Simulation` façade.

A simulation owns one :class:`MemorySpace` and the engines that share it.
Clients feed it :class:`Operation` records (or their external dict shape)
one at a time; every operation is stamped with a running index, routed to
the engine responsible for it, and returns an :class:`OperationResult`
with whatever diagnostics it produced.

    sim = Simulation()
    frame = sim.push_frame("main")
    h = sim.allocate(HeapKind.SCALAR, "int")
    sim.free(h)
    sim.free(h)                       # DoubleFree at op 3
    sim.finish()                      # leak scan
    for diag in sim.diagnostics:
        print(diag)

External operation shape
────────────────────────
``Operation.from_dict`` accepts camelCase keys::

    {"kind": "free", "targetAddress": {"space": "heap", "targetId": 3},
     "heapKind": "array"}

Addresses are ``{"space", "targetId", "index"}`` objects or ``"null"``;
``{"rvalue": v}`` wraps a non-addressable value.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Union,
)

from memsafety.aliasing import BindingAliasTracker
from memsafety.allocation import AllocationManager
from memsafety.calls import Argument, CallRecord, CallReturnSimulator, ReturnResult
from memsafety.config import EngineConfig
from memsafety.diagnostics import Diagnostic, DiagnosticReporter
from memsafety.errors import CallStateError, FrameOrderError, MalformedOperationError
from memsafety.memory_space import MemorySpace
from memsafety.model import (
    INVALID,
    NO_DEFAULT,
    NULL_ADDRESS,
    Address,
    AddressSpace,
    Declarator,
    FunctionSignature,
    HeapKind,
    ParamSpec,
    PassMode,
    ReturnMode,
    RValue,
)

_log = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 — OPERATION RECORDS
# ═════════════════════════════════════════════════════════════════════════

class OperationKind(enum.Enum):
    PUSH_FRAME = "push_frame"
    POP_FRAME = "pop_frame"
    DECLARE = "declare"
    ASSIGN = "assign"
    ASSIGN_POINTER = "assign_pointer"
    ALLOCATE = "allocate"
    FREE = "free"
    BIND_REFERENCE = "bind_reference"
    TAKE_ADDRESS = "take_address"
    READ = "read"
    LOAD = "load"
    STORE = "store"
    MOVE = "move"
    REGISTER_FUNCTION = "register_function"
    CALL = "call"
    RETURN = "return"
    END = "end"

    @classmethod
    def parse(cls, text: str) -> "OperationKind":
        """Accept ``push_frame``, ``PUSH_FRAME``, ``pushFrame`` or ``PushFrame``."""
        folded = text.replace("_", "").replace("-", "").lower()
        for kind in cls:
            if kind.value.replace("_", "") == folded:
                return kind
        raise MalformedOperationError(f"unknown operation kind {text!r}")


@dataclass(frozen=True)
class Operation:
    """
    One abstract memory operation.

    Field use per kind
    ------------------
    PUSH_FRAME        name (frame label)
    POP_FRAME         frame_id (default: top frame)
    DECLARE           frame_id, declarator, name, type_name, value (initial),
                      target (reference target), count (array length)
    ASSIGN            binding_id, value or target
    ASSIGN_POINTER    binding_id, target
    ALLOCATE          heap_kind, type_name, count, binding_id (pointer to set)
    FREE              heap_kind, target or binding_id (pointer to read)
    BIND_REFERENCE    frame_id, name, type_name, target or source_id or value
    TAKE_ADDRESS      binding_id, index
    READ              binding_id
    LOAD / STORE      binding_id, index, value (STORE)
    MOVE              source_id, binding_id (destination)
    REGISTER_FUNCTION signature
    CALL              frame_id (caller), function, arguments
    RETURN            call_id, binding_id or value or target
    END               (no fields)
    """
    kind: OperationKind
    frame_id: Optional[int] = None
    binding_id: Optional[int] = None
    source_id: Optional[int] = None
    call_id: Optional[int] = None
    target: Any = None
    value: Any = None
    heap_kind: Optional[HeapKind] = None
    count: Optional[int] = None
    name: Optional[str] = None
    type_name: Optional[str] = None
    declarator: Tuple[Declarator, ...] = ()
    index: Optional[int] = None
    function: Optional[str] = None
    arguments: Tuple[Argument, ...] = ()
    signature: Optional[FunctionSignature] = None

    # ── External shape ───────────────────────────────────────────────

    _KEYS = {
        "kind": "kind",
        "frameId": "frame_id",
        "bindingId": "binding_id",
        "sourceId": "source_id",
        "callId": "call_id",
        "targetAddress": "target",
        "value": "value",
        "heapKind": "heap_kind",
        "count": "count",
        "name": "name",
        "typeName": "type_name",
        "declarator": "declarator",
        "index": "index",
        "function": "function",
        "arguments": "arguments",
        "signature": "signature",
    }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Operation":
        """Decode the external camelCase operation shape."""
        unknown = set(data) - set(cls._KEYS)
        if unknown:
            raise MalformedOperationError(
                f"unknown operation field(s): {', '.join(sorted(unknown))}"
            )
        if "kind" not in data:
            raise MalformedOperationError("operation record has no 'kind'")

        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            kwargs[cls._KEYS[key]] = value

        kind = kwargs["kind"]
        kwargs["kind"] = kind if isinstance(kind, OperationKind) else OperationKind.parse(kind)
        if "target" in kwargs:
            kwargs["target"] = address_from(kwargs["target"])
        if "value" in kwargs:
            kwargs["value"] = _decode_value(kwargs["value"])
        if kwargs.get("heap_kind") is not None:
            kwargs["heap_kind"] = _enum(HeapKind, kwargs["heap_kind"], "heapKind")
        if "declarator" in kwargs:
            kwargs["declarator"] = tuple(
                _enum(Declarator, d, "declarator") for d in kwargs["declarator"] or ()
            )
        if "arguments" in kwargs:
            kwargs["arguments"] = tuple(_argument_from(a) for a in kwargs["arguments"] or ())
        if kwargs.get("signature") is not None:
            kwargs["signature"] = signature_from(kwargs["signature"])
        return cls(**kwargs)


def address_from(value: Any) -> Optional[Address]:
    """Decode an external address (dict, ``"null"``, None or Address)."""
    if value is None or isinstance(value, Address):
        return value
    if value == "null":
        return NULL_ADDRESS
    if isinstance(value, Mapping):
        try:
            space = _enum(AddressSpace, value["space"], "space")
            return Address(space, int(value.get("targetId", 0)), int(value.get("index", 0)))
        except KeyError as exc:
            raise MalformedOperationError(f"address {value!r} has no {exc}") from exc
    raise MalformedOperationError(f"cannot decode address {value!r}")


def _decode_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        if "space" in value:
            return address_from(value)
        if "rvalue" in value:
            return RValue(value["rvalue"], value.get("typeName"), value.get("origin", "literal"))
    return value


def _enum(enum_cls: Any, value: Any, field_name: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    for member in enum_cls:
        if value in (member.value, member.name):
            return member
    raise MalformedOperationError(f"invalid {field_name} {value!r}")


def _argument_from(data: Any) -> Argument:
    if isinstance(data, Argument):
        return data
    if not isinstance(data, Mapping) or "kind" not in data:
        raise MalformedOperationError(f"argument {data!r} needs a 'kind'")
    return Argument(data["kind"], data.get("bindingId"), _decode_value(data.get("value")))


def signature_from(data: Any) -> FunctionSignature:
    """
    Decode ``{"name", "params": [{"type", "mode", "name", "default"}],
    "returnMode", "returnType"}``.
    """
    if isinstance(data, FunctionSignature):
        return data
    try:
        params = tuple(
            ParamSpec(
                type_name=p["type"],
                mode=_enum(PassMode, p.get("mode", "value"), "mode"),
                name=p.get("name"),
                default=_decode_value(p["default"]) if "default" in p else NO_DEFAULT,
            )
            for p in data.get("params", ())
        )
        return FunctionSignature(
            name=data["name"],
            params=params,
            return_mode=_enum(ReturnMode, data.get("returnMode", "value"), "returnMode"),
            return_type=data.get("returnType"),
        )
    except (KeyError, TypeError, AttributeError) as exc:
        raise MalformedOperationError(f"malformed signature {data!r}: {exc}") from exc


@dataclass(frozen=True)
class OperationResult:
    """What one applied operation produced."""
    index: int
    kind: OperationKind
    result: Any = None
    diagnostics: Tuple[Diagnostic, ...] = field(default_factory=tuple)

    @property
    def clean(self) -> bool:
        return not self.diagnostics


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 — SIMULATION
# ═════════════════════════════════════════════════════════════════════════

class Simulation:
    """
    One independent run of the rule engine.

    Usage
    -----
    >>> sim = Simulation()
    >>> f = sim.push_frame("F")
    >>> b = sim.declare("b", type_name="int", value=1)
    >>> p = sim.declare("p", (Declarator.POINTER,), type_name="int*",
    ...                 value=sim.take_address(b))
    >>> sim.pop_frame(f)
    >>> sim.load(p)
    <invalid>
    """

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        self.config = config or EngineConfig()
        self.reporter = DiagnosticReporter(
            self.config.suppressed_kinds, self.config.severity_overrides
        )
        self.space = MemorySpace()
        self.allocator = AllocationManager(self.space, self.reporter)
        self.tracker = BindingAliasTracker(self.space, self.reporter, self.config)
        self.calls = CallReturnSimulator(self.space, self.tracker, self.reporter, self.config)
        self._finished = False
        self._handlers: Dict[OperationKind, Callable[[Operation], Any]] = {
            OperationKind.PUSH_FRAME: self._op_push_frame,
            OperationKind.POP_FRAME: self._op_pop_frame,
            OperationKind.DECLARE: self._op_declare,
            OperationKind.ASSIGN: self._op_assign,
            OperationKind.ASSIGN_POINTER: self._op_assign_pointer,
            OperationKind.ALLOCATE: self._op_allocate,
            OperationKind.FREE: self._op_free,
            OperationKind.BIND_REFERENCE: self._op_bind_reference,
            OperationKind.TAKE_ADDRESS: self._op_take_address,
            OperationKind.READ: self._op_read,
            OperationKind.LOAD: self._op_load,
            OperationKind.STORE: self._op_store,
            OperationKind.MOVE: self._op_move,
            OperationKind.REGISTER_FUNCTION: self._op_register,
            OperationKind.CALL: self._op_call,
            OperationKind.RETURN: self._op_return,
            OperationKind.END: self._op_end,
        }

    # ── Driving ──────────────────────────────────────────────────────

    def apply(self, op: Union[Operation, Mapping[str, Any]]) -> OperationResult:
        """Apply one operation and return what it produced."""
        if not isinstance(op, Operation):
            op = Operation.from_dict(op)
        start = len(self.reporter)
        index = self.reporter.begin_operation()
        _log.debug("op %d: %s", index, op.kind.value)
        result = self._handlers[op.kind](op)
        return OperationResult(index, op.kind, result, tuple(self.reporter.since(start)))

    def run(self, ops: Iterable[Union[Operation, Mapping[str, Any]]]) -> List[OperationResult]:
        return [self.apply(op) for op in ops]

    def finish(self) -> List[Diagnostic]:
        """Scan for leaks.  Repeated calls never report an allocation twice."""
        self._finished = True
        return self.allocator.scan_leaks()

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def diagnostics(self) -> List[Diagnostic]:
        return self.reporter.diagnostics

    # ── Convenience ──────────────────────────────────────────────────

    def push_frame(self, label: Optional[str] = None) -> int:
        return self.apply(Operation(OperationKind.PUSH_FRAME, name=label)).result

    def pop_frame(self, frame_id: Optional[int] = None) -> None:
        self.apply(Operation(OperationKind.POP_FRAME, frame_id=frame_id))

    def declare(
        self,
        name: Optional[str] = None,
        declarator: Sequence[Declarator] = (),
        type_name: Optional[str] = None,
        value: Any = None,
        frame_id: Optional[int] = None,
        count: Optional[int] = None,
    ) -> Optional[int]:
        op = Operation(OperationKind.DECLARE, frame_id=frame_id, name=name,
                       declarator=tuple(declarator), type_name=type_name,
                       value=value, count=count)
        return self.apply(op).result

    def assign(self, binding_id: int, value: Any) -> bool:
        return self.apply(Operation(OperationKind.ASSIGN, binding_id=binding_id, value=value)).result

    def assign_pointer(self, binding_id: int, target: Optional[Address]) -> bool:
        op = Operation(OperationKind.ASSIGN_POINTER, binding_id=binding_id,
                       target=NULL_ADDRESS if target is None else target)
        return self.apply(op).result

    def allocate(
        self,
        heap_kind: HeapKind = HeapKind.SCALAR,
        type_name: Optional[str] = None,
        count: int = 1,
        binding_id: Optional[int] = None,
    ) -> Address:
        op = Operation(OperationKind.ALLOCATE, heap_kind=heap_kind, type_name=type_name,
                       count=count, binding_id=binding_id)
        return self.apply(op).result

    def free(
        self,
        target: Optional[Address] = None,
        heap_kind: HeapKind = HeapKind.SCALAR,
        binding_id: Optional[int] = None,
    ) -> bool:
        op = Operation(OperationKind.FREE, target=target, heap_kind=heap_kind,
                       binding_id=binding_id)
        return self.apply(op).result

    def bind_reference(
        self,
        name: Optional[str],
        target: Any,
        type_name: Optional[str] = None,
        frame_id: Optional[int] = None,
    ) -> Optional[int]:
        """Bind a reference to *target*: an Address, a binding id, an RValue or None."""
        if isinstance(target, int) and not isinstance(target, bool):
            op = Operation(OperationKind.BIND_REFERENCE, frame_id=frame_id, name=name,
                           type_name=type_name, source_id=target)
        elif isinstance(target, RValue):
            op = Operation(OperationKind.BIND_REFERENCE, frame_id=frame_id, name=name,
                           type_name=type_name, value=target)
        else:
            op = Operation(OperationKind.BIND_REFERENCE, frame_id=frame_id, name=name,
                           type_name=type_name, target=target)
        return self.apply(op).result

    def take_address(self, binding_id: int, index: Optional[int] = None) -> Address:
        op = Operation(OperationKind.TAKE_ADDRESS, binding_id=binding_id, index=index)
        return self.apply(op).result

    def read(self, binding_id: int) -> Any:
        return self.apply(Operation(OperationKind.READ, binding_id=binding_id)).result

    def load(self, binding_id: int, index: Optional[int] = None) -> Any:
        return self.apply(Operation(OperationKind.LOAD, binding_id=binding_id, index=index)).result

    def store(self, binding_id: int, value: Any, index: Optional[int] = None) -> bool:
        op = Operation(OperationKind.STORE, binding_id=binding_id, value=value, index=index)
        return self.apply(op).result

    def move(self, source_id: int, dest_id: int) -> bool:
        op = Operation(OperationKind.MOVE, source_id=source_id, binding_id=dest_id)
        return self.apply(op).result

    def register_function(self, signature: FunctionSignature) -> None:
        self.apply(Operation(OperationKind.REGISTER_FUNCTION, signature=signature))

    def call(
        self,
        function: str,
        arguments: Sequence[Argument] = (),
        frame_id: Optional[int] = None,
    ) -> Optional[CallRecord]:
        op = Operation(OperationKind.CALL, frame_id=frame_id, function=function,
                       arguments=tuple(arguments))
        return self.apply(op).result

    def return_from(
        self,
        call_id: int,
        binding_id: Optional[int] = None,
        value: Any = None,
    ) -> ReturnResult:
        op = Operation(OperationKind.RETURN, call_id=call_id, binding_id=binding_id, value=value)
        return self.apply(op).result

    def end(self) -> List[Diagnostic]:
        return self.apply(Operation(OperationKind.END)).result

    # ── Handlers ─────────────────────────────────────────────────────

    def _frame(self, op: Operation) -> int:
        if op.frame_id is not None:
            return op.frame_id
        top = self.space.top_frame
        if top is None:
            raise FrameOrderError(f"{op.kind.value} needs a frame but the stack is empty")
        return top

    @staticmethod
    def _need(op: Operation, attr: str) -> Any:
        value = getattr(op, attr)
        if value is None:
            raise MalformedOperationError(f"{op.kind.value} operation needs '{attr}'")
        return value

    def _op_push_frame(self, op: Operation) -> int:
        return self.space.push_frame(op.name)

    def _op_pop_frame(self, op: Operation) -> int:
        frame_id = self._frame(op)
        frame = self.space.frame(frame_id)
        if frame.call_id is not None:
            raise CallStateError(
                f"frame {frame_id} belongs to call {frame.call_id} and cannot be popped directly"
            ).with_hint("use a RETURN operation to leave a call frame")
        self.space.pop_frame(frame_id)
        return frame_id

    def _op_declare(self, op: Operation) -> Optional[int]:
        initial = op.target if op.target is not None else op.value
        return self.tracker.declare(
            self._frame(op), op.declarator, initial,
            name=op.name, type_name=op.type_name, count=op.count,
        )

    def _op_assign(self, op: Operation) -> bool:
        value = op.target if op.target is not None else op.value
        return self.tracker.assign(self._need(op, "binding_id"), value)

    def _op_assign_pointer(self, op: Operation) -> bool:
        return self.tracker.assign_pointer(self._need(op, "binding_id"), op.target)

    def _op_allocate(self, op: Operation) -> Address:
        heap_id = self.allocator.allocate(
            op.heap_kind or HeapKind.SCALAR, op.type_name,
            1 if op.count is None else op.count,
        )
        address = Address.of_heap(heap_id)
        if op.binding_id is not None:
            self.tracker.assign(op.binding_id, address)
        return address

    def _op_free(self, op: Operation) -> bool:
        address = op.target
        if address is None and op.binding_id is not None:
            address = self.tracker.read(op.binding_id)
            if address is INVALID:
                return False
        return self.allocator.release(address, op.heap_kind or HeapKind.SCALAR)

    def _op_bind_reference(self, op: Operation) -> Optional[int]:
        if op.target is not None:
            target = op.target
        elif op.source_id is not None:
            target = self.tracker.take_address(op.source_id)
        elif op.value is not None:
            value = op.value
            target = value if isinstance(value, (RValue, Address)) else RValue(value, op.type_name)
        else:
            target = None
        return self.tracker.bind_reference(self._frame(op), target, name=op.name,
                                           type_name=op.type_name)

    def _op_take_address(self, op: Operation) -> Address:
        address = self.tracker.take_address(self._need(op, "binding_id"))
        return address.element(op.index) if op.index else address

    def _op_read(self, op: Operation) -> Any:
        return self.tracker.read(self._need(op, "binding_id"))

    def _op_load(self, op: Operation) -> Any:
        return self.tracker.load(self._need(op, "binding_id"), op.index)

    def _op_store(self, op: Operation) -> bool:
        return self.tracker.store(self._need(op, "binding_id"), op.value, op.index)

    def _op_move(self, op: Operation) -> bool:
        return self.tracker.move(self._need(op, "source_id"), self._need(op, "binding_id"))

    def _op_register(self, op: Operation) -> None:
        self.calls.register(self._need(op, "signature"))

    def _op_call(self, op: Operation) -> Optional[CallRecord]:
        return self.calls.call(self._frame(op), self._need(op, "function"), op.arguments)

    def _op_return(self, op: Operation) -> ReturnResult:
        value = op.target if op.target is not None else op.value
        return self.calls.return_from(self._need(op, "call_id"), op.binding_id, value)

    def _op_end(self, op: Operation) -> List[Diagnostic]:
        return self.finish()

    def __repr__(self) -> str:
        return (f"Simulation(ops={self.reporter.operation_index + 1}, "
                f"diagnostics={len(self.reporter)})")


__all__ = [
    "OperationKind",
    "Operation",
    "OperationResult",
    "Simulation",
    "address_from",
    "signature_from",
]
