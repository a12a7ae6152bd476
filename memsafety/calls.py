"""
calls.py — Call/Return Simulator
================================

Pushes and pops call frames, binds parameters per passing mode, fills
trailing default arguments, resolves overloads and validates returns.

Call state machine
------------------

    INVOKED ──▶ PARAMETERS_BOUND ──▶ BODY_EXECUTING ──▶ RETURNING ──▶ FRAME_POPPED

``call()`` drives a call from INVOKED to BODY_EXECUTING; ``return_from()``
drives it from BODY_EXECUTING to FRAME_POPPED.  Any other transition raises
:class:`~memsafety.errors.CallStateError`.

Return rules
------------
  by value      always legal (the value is copied out before the pop)
  by pointer    legal for null, heap, or stack storage outside the callee frame
  by reference  same, after collapsing references to their ultimate referent

An illegal return reports ``DanglingReturn`` and yields an invalid result
carrying ``INVALID``, never the destroyed binding's last value.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from memsafety.aliasing import BindingAliasTracker, plain_value
from memsafety.config import EngineConfig
from memsafety.diagnostics import DiagnosticReporter, ViolationKind
from memsafety.errors import CallStateError, FrameOrderError, UnknownEntityError
from memsafety.memory_space import MemorySpace
from memsafety.model import (
    INDETERMINATE,
    INVALID,
    NULL_ADDRESS,
    Address,
    Binding,
    BindingKind,
    CallFrameLink,
    Declarator,
    FunctionSignature,
    ParamSpec,
    PassMode,
    ReturnMode,
    RValue,
    Validity,
)

_log = logging.getLogger(__name__)


class CallState(enum.Enum):
    INVOKED = "invoked"
    PARAMETERS_BOUND = "parameters-bound"
    BODY_EXECUTING = "body-executing"
    RETURNING = "returning"
    FRAME_POPPED = "frame-popped"


_TRANSITIONS: Dict[CallState, CallState] = {
    CallState.INVOKED: CallState.PARAMETERS_BOUND,
    CallState.PARAMETERS_BOUND: CallState.BODY_EXECUTING,
    CallState.BODY_EXECUTING: CallState.RETURNING,
    CallState.RETURNING: CallState.FRAME_POPPED,
}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Argument:
    """
    One call argument.

    ``kind`` is the argument's type kind as seen by overload resolution
    (``"int"``, ``"int*"``, ``"nullptr_t"``...).  An argument names caller
    storage through ``binding_id``, or carries a plain ``value`` (a literal,
    an :class:`RValue` or an :class:`Address`).
    """
    kind: str
    binding_id: Optional[int] = None
    value: Any = None

    @property
    def is_lvalue(self) -> bool:
        return self.binding_id is not None


@dataclass(frozen=True)
class OverloadResolution:
    signature: Optional[FunctionSignature]
    violation: Optional[ViolationKind] = None
    candidates: Tuple[FunctionSignature, ...] = ()

    @property
    def ok(self) -> bool:
        return self.signature is not None


@dataclass(frozen=True)
class ReturnResult:
    """
    Outcome of a return.

    ``value`` is the returned content (INVALID when ``valid`` is False);
    ``address`` is the designated storage for pointer and reference returns.
    """
    call_id: int
    valid: bool
    value: Any = None
    address: Optional[Address] = None


@dataclass
class CallRecord:
    id: int
    signature: FunctionSignature
    caller_frame: int
    frame_id: Optional[int] = None
    state: CallState = CallState.INVOKED
    links: List[CallFrameLink] = field(default_factory=list)
    result: Optional[ReturnResult] = None

    @property
    def is_active(self) -> bool:
        return self.state != CallState.FRAME_POPPED

    def __repr__(self) -> str:
        return f"Call#{self.id}({self.signature.name}, {self.state.value})"


# ---------------------------------------------------------------------------
# Overload resolution (pure)
# ---------------------------------------------------------------------------

def _matches(signature: FunctionSignature, arg_kinds: Sequence[str]) -> bool:
    if not signature.required_count <= len(arg_kinds) <= signature.arity:
        return False
    return all(p.accepts(k) for p, k in zip(signature.params, arg_kinds))


def resolve_overload(
    signatures: Sequence[FunctionSignature],
    arg_kinds: Sequence[str],
    exact_arity_precedence: bool = True,
) -> OverloadResolution:
    """
    Pick the single signature that accepts *arg_kinds*.

    With *exact_arity_precedence*, candidates whose arity equals the
    argument count win over candidates that need default arguments filled.
    """
    matching = [s for s in signatures if _matches(s, arg_kinds)]
    if exact_arity_precedence:
        exact = [s for s in matching if s.arity == len(arg_kinds)]
        if exact:
            matching = exact
    if len(matching) == 1:
        return OverloadResolution(matching[0], candidates=tuple(matching))
    if matching:
        return OverloadResolution(None, ViolationKind.OVERLOAD_AMBIGUOUS, tuple(matching))
    return OverloadResolution(None, ViolationKind.NO_MATCHING_OVERLOAD, tuple(signatures))


# ---------------------------------------------------------------------------
# Simulator
# ---------------------------------------------------------------------------

class CallReturnSimulator:
    """Drives calls and returns over the shared memory space."""

    def __init__(
        self,
        space: MemorySpace,
        tracker: BindingAliasTracker,
        reporter: DiagnosticReporter,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self._space = space
        self._tracker = tracker
        self._reporter = reporter
        self._config = config or EngineConfig()
        self._signatures: Dict[str, List[FunctionSignature]] = {}
        self._calls: Dict[int, CallRecord] = {}

    # -- Signatures ----------------------------------------------------------

    def register(self, signature: FunctionSignature) -> None:
        overloads = self._signatures.setdefault(signature.name, [])
        if signature not in overloads:
            overloads.append(signature)
        _log.debug("register %s (%d overload(s))", signature, len(overloads))

    def signatures(self, name: str) -> List[FunctionSignature]:
        return list(self._signatures.get(name, ()))

    # -- Calls ---------------------------------------------------------------

    def call(
        self,
        caller_frame: int,
        name: str,
        arguments: Sequence[Argument] = (),
    ) -> Optional[CallRecord]:
        """
        Resolve *name* against *arguments*, push the callee frame and bind
        the parameters.  Returns None when overload resolution fails.
        """
        self._space.frame(caller_frame)
        kinds = [a.kind for a in arguments]
        resolution = resolve_overload(
            self.signatures(name), kinds, self._config.exact_arity_precedence
        )
        if not resolution.ok:
            assert resolution.violation is not None
            shown = ", ".join(str(s) for s in resolution.candidates) or "none"
            if resolution.violation == ViolationKind.OVERLOAD_AMBIGUOUS:
                message = f"call {name}({', '.join(kinds)}) is ambiguous between {shown}"
            else:
                message = f"no overload of {name} accepts ({', '.join(kinds)}); candidates: {shown}"
            self._reporter.report(
                resolution.violation, (caller_frame,), message,
                function=name, argument_kinds=kinds,
            )
            return None

        signature = resolution.signature
        assert signature is not None
        record = CallRecord(id=self._space.new_id(), signature=signature, caller_frame=caller_frame)
        self._calls[record.id] = record
        _log.debug("%r invoked from frame %d", record, caller_frame)

        # Arguments are evaluated in the caller's context, before the push.
        evaluated = [self._evaluate(param, arg) for param, arg in zip(signature.params, arguments)]
        record.frame_id = self._space.push_frame(signature.name, call_id=record.id)

        for index, param in enumerate(signature.params):
            if index < len(arguments):
                callee = self._bind_parameter(record, param, evaluated[index])
                caller_binding = arguments[index].binding_id
            else:
                callee = self._bind_default(record, param)
                caller_binding = None
            if callee is not None:
                record.links.append(CallFrameLink(
                    call_id=record.id,
                    param_index=index,
                    callee_binding_id=callee,
                    mode=param.mode,
                    caller_binding_id=caller_binding,
                ))
        self._advance(record, CallState.PARAMETERS_BOUND)
        self._advance(record, CallState.BODY_EXECUTING)
        return record

    def _evaluate(self, param: ParamSpec, arg: Argument) -> Any:
        if param.mode == PassMode.REFERENCE:
            if arg.is_lvalue:
                return self._tracker.take_address(arg.binding_id)
            if isinstance(arg.value, (Address, RValue)):
                return arg.value
            return RValue(arg.value, arg.kind)
        if arg.is_lvalue:
            return self._tracker.read(arg.binding_id)
        if param.mode == PassMode.POINTER and arg.value is None:
            return NULL_ADDRESS
        return plain_value(arg.value)

    def _bind_parameter(self, record: CallRecord, param: ParamSpec, value: Any) -> Optional[int]:
        assert record.frame_id is not None
        tags = ("parameter",)
        if param.mode == PassMode.REFERENCE:
            return self._tracker.bind_reference(
                record.frame_id, value, name=param.name, type_name=param.type_name, tags=tags,
            )
        if param.mode == PassMode.POINTER:
            if not isinstance(value, Address):
                value = INDETERMINATE
            return self._tracker.declare(
                record.frame_id, (Declarator.POINTER,), value,
                name=param.name, type_name=f"{param.type_name}*", tags=tags,
            )
        if value is INVALID:
            value = INDETERMINATE
        return self._tracker.declare(
            record.frame_id, (), value, name=param.name, type_name=param.type_name, tags=tags,
        )

    def _bind_default(self, record: CallRecord, param: ParamSpec) -> Optional[int]:
        assert record.frame_id is not None
        tags = ("parameter", "default-argument")
        default = param.default
        if param.mode == PassMode.REFERENCE:
            # A default bound to a reference parameter lives in a temporary
            # owned by the callee frame.
            temp = self._space.declare_binding(
                record.frame_id, BindingKind.VALUE,
                plain_value(default), name=f"{param.name or 'arg'}.tmp",
                type_name=param.type_name, tags=("temporary",),
            )
            return self._tracker.bind_reference(
                record.frame_id, Address.of_binding(temp),
                name=param.name, type_name=param.type_name, tags=tags,
            )
        if param.mode == PassMode.POINTER:
            address = default if isinstance(default, Address) else NULL_ADDRESS
            return self._tracker.declare(
                record.frame_id, (Declarator.POINTER,), address,
                name=param.name, type_name=f"{param.type_name}*", tags=tags,
            )
        return self._tracker.declare(
            record.frame_id, (), plain_value(default),
            name=param.name, type_name=param.type_name, tags=tags,
        )

    # -- Returns -------------------------------------------------------------

    def return_from(
        self,
        call_id: int,
        binding_id: Optional[int] = None,
        value: Any = None,
    ) -> ReturnResult:
        """
        Return from *call_id* and pop its frame.

        The returned operand is either callee storage (*binding_id*) or a
        plain *value* (an Address for pointer/reference returns).
        """
        record = self.call_record(call_id)
        if record.state != CallState.BODY_EXECUTING:
            raise CallStateError(
                f"{record!r} cannot return from state {record.state.value}"
            )
        if self._space.top_frame != record.frame_id:
            raise FrameOrderError(
                f"{record!r} returns while frame {self._space.top_frame} is on top"
            ).with_hint("pop block frames pushed inside the callee before returning")
        self._advance(record, CallState.RETURNING)

        mode = record.signature.return_mode
        if mode == ReturnMode.VOID:
            result = ReturnResult(record.id, True)
        elif mode == ReturnMode.VALUE:
            returned = self._tracker.read(binding_id) if binding_id is not None else plain_value(value)
            result = ReturnResult(record.id, returned is not INVALID, returned)
        elif mode == ReturnMode.POINTER:
            result = self._return_pointer(record, binding_id, value)
        else:
            result = self._return_reference(record, binding_id, value)

        assert record.frame_id is not None
        self._space.pop_frame(record.frame_id)
        self._advance(record, CallState.FRAME_POPPED)
        record.links.clear()
        record.result = result
        return result

    def _return_pointer(
        self, record: CallRecord, binding_id: Optional[int], value: Any,
    ) -> ReturnResult:
        address = self._tracker.read(binding_id) if binding_id is not None else value
        if address is None:
            address = NULL_ADDRESS
        if not isinstance(address, Address):
            return ReturnResult(record.id, address is not INVALID, address)
        address = self._tracker.ultimate_address(address)
        if self._is_callee_local(record, address):
            return self._dangling(record, address, "a pointer")
        return ReturnResult(record.id, True, address, address)

    def _return_reference(
        self, record: CallRecord, binding_id: Optional[int], value: Any,
    ) -> ReturnResult:
        if binding_id is not None:
            address = self._tracker.take_address(binding_id)
        elif isinstance(value, Address):
            address = value
        else:
            self._reporter.report(
                ViolationKind.DANGLING_RETURN, (record.id,),
                f"{record.signature.name} returns a reference to a temporary",
            )
            return ReturnResult(record.id, False, INVALID)
        address = self._tracker.ultimate_address(address)
        if address.is_null or self._is_callee_local(record, address):
            return self._dangling(record, address, "a reference")
        target = self._space.resolve(address)
        if target is INVALID or target.validity == Validity.DESTROYED:
            return ReturnResult(record.id, True, INVALID, address)
        size = self._tracker.cell_count(target)
        if not 0 <= address.index < size:
            self._reporter.report(
                ViolationKind.OUT_OF_BOUNDS, (record.id, target.id),
                f"{record.signature.name} returns a reference to element {address.index} "
                f"of {target.label}, which is outside [0, {size})",
                index=address.index, size=size,
            )
            return ReturnResult(record.id, False, INVALID)
        if not isinstance(target, Binding):
            current = target.cells[address.index]
        elif isinstance(target.content, list):
            current = target.content[address.index]
        else:
            current = target.content
        return ReturnResult(record.id, True, current, address)

    def _is_callee_local(self, record: CallRecord, address: Address) -> bool:
        if not address.is_stack:
            return False
        target = self._space.resolve(address)
        return isinstance(target, Binding) and target.frame_id == record.frame_id

    def _dangling(self, record: CallRecord, address: Address, what: str) -> ReturnResult:
        target = self._space.resolve(address)
        label = target.label if target is not INVALID else repr(address)
        self._reporter.report(
            ViolationKind.DANGLING_RETURN, (record.id, address.target_id),
            f"{record.signature.name} returns {what} to '{label}', which is destroyed "
            f"when its frame is popped",
        )
        return ReturnResult(record.id, False, INVALID)

    # -- Lookups -------------------------------------------------------------

    def call_record(self, call_id: int) -> CallRecord:
        try:
            return self._calls[call_id]
        except KeyError:
            raise UnknownEntityError("call", call_id) from None

    def active_calls(self) -> List[int]:
        return [cid for cid, rec in self._calls.items() if rec.is_active]

    def links(self, call_id: int) -> List[CallFrameLink]:
        """Parameter links of a call; empty once its frame is popped."""
        return list(self.call_record(call_id).links)

    # -- State machine -------------------------------------------------------

    def _advance(self, record: CallRecord, new_state: CallState) -> None:
        if _TRANSITIONS.get(record.state) != new_state:
            raise CallStateError(
                f"{record!r}: illegal transition {record.state.value} -> {new_state.value}"
            )
        record.state = new_state
        _log.debug("%r", record)


__all__ = [
    "CallState",
    "Argument",
    "OverloadResolution",
    "ReturnResult",
    "CallRecord",
    "resolve_overload",
    "CallReturnSimulator",
]
