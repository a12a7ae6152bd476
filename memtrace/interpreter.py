"""
interpreter.py — Trace statements → engine operations
=====================================================

Maps trace names to engine identifiers and drives a
:class:`~memsafety.engine.Simulation`.  The interpreter makes no rule
decisions: every diagnostic comes from the engine.

Scopes
------
An implicit global frame is pushed before the first statement.  ``push``
opens a block frame, ``call`` opens a call frame whose parameters are the
names visible in it, ``pop`` closes a block frame and ``return`` closes the
innermost call frame.  Names resolve innermost scope first.

Operation lines
---------------
Every engine operation applied while executing a statement is mapped to the
statement's source line (:attr:`TraceInterpreter.op_lines`) so diagnostics
can be reported as ``file:line``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from memsafety.calls import Argument, CallRecord
from memsafety.config import EngineConfig
from memsafety.diagnostics import Diagnostic
from memsafety.engine import Simulation
from memsafety.model import (
    INVALID,
    NO_DEFAULT,
    NULL_ADDRESS,
    Address,
    BindingKind,
    Declarator,
    FunctionSignature,
    HeapKind,
    ParamSpec,
    PassMode,
    ReturnMode,
    RValue,
)
from memtrace.errors import TraceError, TraceNameError
from memtrace.parser import Expr, Literal, ParamDecl, Statement, TypeSpec, parse_trace

_log = logging.getLogger(__name__)


@dataclass
class _Scope:
    frame_id: int
    label: str
    names: Dict[str, int] = field(default_factory=dict)
    call: Optional[CallRecord] = None


@dataclass
class _PendingCall:
    record: CallRecord
    dest: Optional[str]
    line: int


class TraceInterpreter:
    """
    Executes parsed trace statements against one simulation.

    Usage
    -----
    >>> interp = TraceInterpreter()
    >>> interp.run_source("let x: int = 5\\nread x")
    >>> interp.simulation.read(interp.lookup("x"))
    5
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        filename: str = "<trace>",
        simulation: Optional[Simulation] = None,
    ) -> None:
        self.simulation = simulation or Simulation(config)
        self.filename = filename
        self.op_lines: Dict[int, int] = {}
        self._kinds: Dict[int, str] = {}        # binding id → argument kind
        self._pending: List[_PendingCall] = []
        self._statement: Optional[Statement] = None
        global_frame = self.simulation.push_frame("<global>")
        self._scopes: List[_Scope] = [_Scope(global_frame, "<global>")]
        self._dispatch = {
            "fn": self._exec_fn,
            "push": self._exec_push,
            "pop": self._exec_pop,
            "end": self._exec_end,
            "let": self._exec_let,
            "read": self._exec_read,
            "move": self._exec_move,
            "delete": self._exec_delete,
            "call": self._exec_call,
            "return": self._exec_return,
            "assign": self._exec_assign,
        }

    # ── Driving ──────────────────────────────────────────────────────

    def run_source(self, source: str) -> None:
        self.run(parse_trace(source, self.filename))

    def run(self, statements: Sequence[Statement]) -> None:
        for statement in statements:
            self.execute(statement)

    def execute(self, statement: Statement) -> Any:
        reporter = self.simulation.reporter
        first = reporter.operation_index + 1
        self._statement = statement
        try:
            result = self._dispatch[statement.keyword](statement)
        finally:
            for index in range(first, reporter.operation_index + 1):
                self.op_lines[index] = statement.line
            self._statement = None
        return result

    @property
    def diagnostics(self) -> List[Diagnostic]:
        return self.simulation.diagnostics

    def line_of(self, diagnostic: Diagnostic) -> int:
        """Source line of the statement that produced *diagnostic* (0 if none)."""
        return self.op_lines.get(diagnostic.operation_index, 0)

    # ── Names ────────────────────────────────────────────────────────

    def lookup(self, name: str) -> int:
        for scope in reversed(self._scopes):
            if name in scope.names:
                return scope.names[name]
        line = self._statement.line if self._statement else 0
        text = self._statement.text if self._statement else ""
        raise TraceNameError(name, self.filename, line, text)

    def _bind_name(self, name: str, binding_id: int, kind: str) -> None:
        self._scopes[-1].names[name] = binding_id
        self._kinds[binding_id] = kind

    def _error(self, message: str) -> TraceError:
        statement = self._statement
        return TraceError(message, self.filename, statement.line if statement else 0,
                          0, statement.text if statement else "")

    def _binding_kind(self, binding_id: int) -> BindingKind:
        return self.simulation.space.binding(binding_id).kind

    # ── Operand evaluation ───────────────────────────────────────────

    def _value_of(self, expr: Expr) -> Any:
        """Evaluate *expr* as an rvalue (reads are engine operations)."""
        sim = self.simulation
        if expr.kind == "literal":
            assert expr.literal is not None
            return NULL_ADDRESS if expr.literal.is_null else expr.literal.value
        if expr.kind == "address":
            return self._address_of(expr)
        if expr.kind == "name":
            return sim.read(self.lookup(expr.name))
        if expr.kind == "deref":
            return sim.load(self.lookup(expr.name))
        if expr.kind == "element":
            return sim.load(self.lookup(expr.name), expr.index)
        raise self._error(f"'{expr}' cannot be used as a value")

    def _address_of(self, expr: Expr) -> Any:
        """``&name`` or ``&name[i]``."""
        binding_id = self.lookup(expr.name)
        if expr.index is None:
            return self.simulation.take_address(binding_id)
        if self._binding_kind(binding_id) == BindingKind.POINTER:
            base = self.simulation.read(binding_id)
            return base.element(expr.index) if isinstance(base, Address) else base
        return self.simulation.take_address(binding_id, expr.index)

    def _designated(self, expr: Expr) -> Any:
        """Storage an lvalue expression designates (reference initializers)."""
        if expr.kind == "name":
            return self.simulation.take_address(self.lookup(expr.name))
        if expr.kind in ("deref", "element"):
            binding_id = self.lookup(expr.name)
            if self._binding_kind(binding_id) == BindingKind.POINTER:
                base = self.simulation.read(binding_id)
            else:
                base = self.simulation.take_address(binding_id)
            if isinstance(base, Address) and expr.index:
                return base.element(expr.index)
            return base
        if expr.kind == "literal":
            assert expr.literal is not None
            if expr.literal.is_null:
                return None
            return RValue(expr.literal.value, expr.literal.kind)
        return RValue(self._value_of(expr), origin="expression")

    def _argument(self, expr: Expr) -> Argument:
        if expr.kind == "name":
            binding_id = self.lookup(expr.name)
            return Argument(self._kinds.get(binding_id, "?"), binding_id=binding_id)
        if expr.kind == "literal":
            assert expr.literal is not None
            lit = expr.literal
            if lit.is_null:
                return Argument(lit.kind, value=NULL_ADDRESS)
            return Argument(lit.kind, value=RValue(lit.value, lit.kind))
        if expr.kind == "address":
            binding_id = self.lookup(expr.name)
            kind = self._kinds.get(binding_id, "?")
            if expr.index is not None and kind.endswith("*"):
                kind = kind[:-1]
            return Argument(kind + "*", value=self._address_of(expr))
        # *p and p[i] are passed as the loaded value
        binding_id = self.lookup(expr.name)
        kind = self._kinds.get(binding_id, "?")
        kind = kind[:-1] if kind.endswith("*") else kind
        return Argument(kind, value=RValue(self._value_of(expr), kind, origin="expression"))

    # ── Statements ───────────────────────────────────────────────────

    def _exec_fn(self, stmt: Statement) -> FunctionSignature:
        assert stmt.name is not None
        signature = FunctionSignature(
            name=stmt.name,
            params=tuple(self._param_spec(p) for p in stmt.params),
            return_mode=ReturnMode(stmt.return_mode) if stmt.return_mode else ReturnMode.VOID,
        )
        self.simulation.register_function(signature)
        return signature

    @staticmethod
    def _param_spec(param: ParamDecl) -> ParamSpec:
        spec = param.type_spec
        declarators = spec.declarators
        inner = TypeSpec(spec.base, declarators[1:]).argument_kind
        if declarators and declarators[0] == Declarator.REFERENCE:
            mode, type_name = PassMode.REFERENCE, inner
        elif declarators and declarators[0] in (Declarator.POINTER, Declarator.ARRAY):
            mode, type_name = PassMode.POINTER, inner
        else:
            mode, type_name = PassMode.VALUE, spec.base
        default: Any = NO_DEFAULT
        if param.default is not None:
            default = NULL_ADDRESS if param.default.is_null else param.default.value
        return ParamSpec(type_name, mode, param.name, default)

    def _exec_push(self, stmt: Statement) -> int:
        label = stmt.name or f"block@{stmt.line}"
        frame_id = self.simulation.push_frame(label)
        self._scopes.append(_Scope(frame_id, label))
        return frame_id

    def _exec_pop(self, stmt: Statement) -> int:
        scope = self._scopes[-1]
        if len(self._scopes) == 1:
            raise self._error("cannot pop the global frame")
        if scope.call is not None:
            raise self._error(
                f"frame of call {scope.call.signature.name} must be left with 'return'"
            )
        self.simulation.pop_frame(scope.frame_id)
        self._scopes.pop()
        return scope.frame_id

    def _exec_end(self, stmt: Statement) -> List[Diagnostic]:
        return self.simulation.end()

    def _exec_let(self, stmt: Statement) -> Optional[int]:
        spec = stmt.type_spec
        assert spec is not None and stmt.name is not None
        sim = self.simulation
        head = spec.declarators[0] if spec.declarators else None
        initial: Any = None
        init = stmt.expr
        if init is not None:
            if init.kind == "new":
                heap_kind = HeapKind.ARRAY if init.array else HeapKind.SCALAR
                initial = sim.allocate(heap_kind, init.name, init.index if init.array else 1)
            elif head == Declarator.REFERENCE:
                initial = self._designated(init)
            else:
                initial = self._value_of(init)
                if initial is INVALID:
                    initial = None
        binding_id = sim.declare(stmt.name, spec.declarators, type_name=spec.text,
                                 value=initial, count=spec.count)
        if binding_id is not None:
            self._bind_name(stmt.name, binding_id, spec.argument_kind)
        return binding_id

    def _exec_read(self, stmt: Statement) -> Any:
        assert stmt.expr is not None
        if stmt.expr.kind not in ("name", "deref", "element"):
            raise self._error(f"read expects a name, *name or name[i], got '{stmt.expr}'")
        return self._value_of(stmt.expr)

    def _exec_move(self, stmt: Statement) -> bool:
        assert stmt.name is not None and stmt.dest is not None
        return self.simulation.move(self.lookup(stmt.name), self.lookup(stmt.dest))

    def _exec_delete(self, stmt: Statement) -> bool:
        expr = stmt.expr
        assert expr is not None
        heap_kind = HeapKind.ARRAY if stmt.array else HeapKind.SCALAR
        sim = self.simulation
        if expr.kind == "literal":
            assert expr.literal is not None
            if not expr.literal.is_null:
                raise self._error(f"cannot delete literal '{expr}'")
            return sim.free(NULL_ADDRESS, heap_kind)
        if expr.kind == "name":
            return sim.free(heap_kind=heap_kind, binding_id=self.lookup(expr.name))
        target = self._value_of(expr)
        if target is INVALID:
            return False
        return sim.free(target, heap_kind)

    def _exec_assign(self, stmt: Statement) -> bool:
        target, expr = stmt.target, stmt.expr
        assert target is not None and expr is not None
        sim = self.simulation
        binding_id = self.lookup(target.name)
        if target.kind == "deref":
            return sim.store(binding_id, self._value_of(expr))
        if target.kind == "element":
            return sim.store(binding_id, self._value_of(expr), target.index)
        if expr.kind == "address" and self._binding_kind(binding_id) == BindingKind.REFERENCE:
            # r = &y on a reference: a re-targeting attempt
            return sim.assign_pointer(binding_id, self._address_of(expr))
        value = self._value_of(expr)
        if value is INVALID:
            return False
        return sim.assign(binding_id, value)

    def _exec_call(self, stmt: Statement) -> Optional[CallRecord]:
        assert stmt.name is not None
        arguments = [self._argument(arg) for arg in stmt.args]
        record = self.simulation.call(stmt.name, arguments)
        if record is None:
            return None
        assert record.frame_id is not None
        scope = _Scope(record.frame_id, stmt.name, call=record)
        self._scopes.append(scope)
        params = record.signature.params
        for link in record.links:
            param = params[link.param_index]
            if param.name:
                kind = param.type_name + ("*" if param.mode == PassMode.POINTER else "")
                self._bind_name(param.name, link.callee_binding_id, kind)
        self._pending.append(_PendingCall(record, stmt.dest, stmt.line))
        return record

    def _exec_return(self, stmt: Statement) -> Any:
        if not self._pending:
            raise self._error("return outside of a call")
        pending = self._pending[-1]
        record = pending.record
        mode = record.signature.return_mode
        expr = stmt.expr
        binding_id: Optional[int] = None
        value: Any = None
        if expr is not None:
            if expr.kind == "name":
                binding_id = self.lookup(expr.name)
            elif mode == ReturnMode.REFERENCE:
                value = self._designated(expr)
            else:
                value = self._value_of(expr)

        result = self.simulation.return_from(record.id, binding_id, value)
        self._scopes.pop()
        self._pending.pop()

        if pending.dest is not None and mode != ReturnMode.VOID:
            if not result.valid:
                _log.debug("return of %s is invalid; %s left unchanged",
                           record.signature.name, pending.dest)
            else:
                self.simulation.assign(self.lookup(pending.dest), result.value)
        return result

    # ── Introspection ────────────────────────────────────────────────

    @property
    def depth(self) -> int:
        return len(self._scopes)

    def visible_names(self) -> List[str]:
        seen: Dict[str, None] = {}
        for scope in reversed(self._scopes):
            for name in scope.names:
                seen.setdefault(name, None)
        return list(seen)


def run_trace(
    source: str,
    config: Optional[EngineConfig] = None,
    filename: str = "<trace>",
) -> TraceInterpreter:
    """Parse and execute *source*; returns the interpreter for inspection."""
    interpreter = TraceInterpreter(config, filename)
    interpreter.run_source(source)
    return interpreter


__all__ = ["TraceInterpreter", "run_trace"]
