"""
parser.py — Trace source → statement records
============================================

Usage::

    from memtrace.parser import parse_trace

    statements = parse_trace('''
        push F
        let b: int = 1
        let p: int* = &b
        pop
        read *p
    ''', filename="dangling.mt")

Each non-empty line becomes one :class:`Statement`.  Syntax errors raise
:class:`~memtrace.errors.TraceSyntaxError` carrying the file name, line and
column of the failure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Tuple, Union

from parsimonious.exceptions import ParseError, VisitationError
from parsimonious.nodes import NodeVisitor

from memsafety.model import NULLPTR_KIND, Declarator
from memtrace.errors import TraceSyntaxError
from memtrace.grammar import TRACE_GRAMMAR

_log = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════
#  PART 1 — STATEMENT RECORDS
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Literal:
    """A literal with the argument kind overload resolution sees."""
    kind: str
    value: Any

    @property
    def is_null(self) -> bool:
        return self.kind == NULLPTR_KIND


@dataclass(frozen=True)
class TypeSpec:
    """
    A declared type: base name plus declarator chain (outermost first).

    ``count`` is the length of the outermost array layer, if any.
    """
    base: str
    declarators: Tuple[Declarator, ...] = ()
    count: Optional[int] = None

    @property
    def argument_kind(self) -> str:
        """Kind used for overload resolution; references are transparent
        and arrays decay to pointers."""
        depth = sum(1 for d in self.declarators if d != Declarator.REFERENCE)
        return self.base + "*" * depth

    @property
    def text(self) -> str:
        out = self.base
        for d in reversed(self.declarators):
            if d == Declarator.ARRAY:
                out += f"[{self.count}]" if self.count is not None else "[]"
            else:
                out += d.value
        return out

    def __str__(self) -> str:
        return self.text


@dataclass(frozen=True)
class Expr:
    """
    Operand of a statement.

    kind:  "name" | "address" | "deref" | "element" | "literal" | "new"
    """
    kind: str
    name: Optional[str] = None
    index: Optional[int] = None
    literal: Optional[Literal] = None
    array: bool = False

    def __str__(self) -> str:
        if self.kind == "literal":
            assert self.literal is not None
            return repr(self.literal.value) if not self.literal.is_null else "null"
        if self.kind == "new":
            return f"new {self.name}" + (f"[{self.index}]" if self.array else "")
        text = f"{self.name}[{self.index}]" if self.index is not None else str(self.name)
        return {"address": "&", "deref": "*"}.get(self.kind, "") + text


@dataclass(frozen=True)
class ParamDecl:
    type_spec: TypeSpec
    name: Optional[str] = None
    default: Optional[Literal] = None


@dataclass
class Statement:
    """
    One trace line.

    keyword: fn | push | pop | end | let | read | move | delete | call |
             return | assign
    """
    keyword: str
    name: Optional[str] = None                  # declared / called / frame name
    type_spec: Optional[TypeSpec] = None
    expr: Optional[Expr] = None                 # initializer, operand or right-hand side
    target: Optional[Expr] = None               # left-hand side of an assignment
    dest: Optional[str] = None                  # move / call destination
    args: List[Expr] = field(default_factory=list)
    params: List[ParamDecl] = field(default_factory=list)
    return_mode: Optional[str] = None
    array: bool = False                         # delete[]
    line: int = 0
    text: str = ""


# ═══════════════════════════════════════════════════════════════════
#  PART 2 — VISITOR (Parse Tree → Statement)
# ═══════════════════════════════════════════════════════════════════

def _opt(visited: Any) -> Any:
    """Value of an optional ``x?`` node, or None."""
    return visited[0] if visited else None


class TraceBuilder(NodeVisitor):
    """Transforms a parsimonious parse tree of one line into a Statement."""

    def generic_visit(self, node, visited_children):
        return visited_children

    # ── Line ─────────────────────────────────────────────────────────

    def visit_line(self, node, visited_children):
        _, statement, _, _ = visited_children
        return _opt(statement)

    def visit_statement(self, node, visited_children):
        return visited_children[0]

    # ── Signatures ───────────────────────────────────────────────────

    def visit_fn_decl(self, node, visited_children):
        _, _, name, _, _, _, params, _, _, returns = visited_children
        return Statement("fn", name=name, params=_opt(params) or [], return_mode=_opt(returns))

    def visit_returns(self, node, visited_children):
        return visited_children[3]

    def visit_return_mode(self, node, visited_children):
        return node.text

    def visit_param_list(self, node, visited_children):
        first, rest = visited_children
        return [first] + [item[3] for item in rest]

    def visit_param(self, node, visited_children):
        type_spec, name, default = visited_children
        return ParamDecl(type_spec, _opt(name), _opt(default))

    def visit_param_name(self, node, visited_children):
        return visited_children[1]

    def visit_param_default(self, node, visited_children):
        return visited_children[3]

    # ── Frames ───────────────────────────────────────────────────────

    def visit_push_stmt(self, node, visited_children):
        _, label = visited_children
        return Statement("push", name=_opt(label))

    def visit_frame_label(self, node, visited_children):
        return visited_children[1]

    def visit_pop_stmt(self, node, visited_children):
        return Statement("pop")

    def visit_end_stmt(self, node, visited_children):
        return Statement("end")

    # ── Declarations and memory operations ───────────────────────────

    def visit_let_stmt(self, node, visited_children):
        _, _, name, _, _, _, type_spec, init = visited_children
        return Statement("let", name=name, type_spec=type_spec, expr=_opt(init))

    def visit_initializer(self, node, visited_children):
        return visited_children[3]

    def visit_init_expr(self, node, visited_children):
        return visited_children[0]

    def visit_new_expr(self, node, visited_children):
        _, _, type_name, count = visited_children
        count = _opt(count)
        return Expr("new", name=type_name, index=count, array=count is not None)

    def visit_array_count(self, node, visited_children):
        return visited_children[3]

    def visit_read_stmt(self, node, visited_children):
        return Statement("read", expr=visited_children[2])

    def visit_move_stmt(self, node, visited_children):
        _, _, source, _, _, _, dest = visited_children
        return Statement("move", name=source, dest=dest)

    def visit_delete_stmt(self, node, visited_children):
        _, marker, _, operand = visited_children
        return Statement("delete", expr=operand, array=bool(marker))

    def visit_array_marker(self, node, visited_children):
        return True

    def visit_assign_stmt(self, node, visited_children):
        target, _, _, _, value = visited_children
        return Statement("assign", target=target, expr=value)

    # ── Calls ────────────────────────────────────────────────────────

    def visit_call_stmt(self, node, visited_children):
        _, _, name, _, _, _, args, _, _, dest = visited_children
        return Statement("call", name=name, args=_opt(args) or [], dest=_opt(dest))

    def visit_arg_list(self, node, visited_children):
        first, rest = visited_children
        return [first] + [item[3] for item in rest]

    def visit_call_dest(self, node, visited_children):
        return visited_children[3]

    def visit_return_stmt(self, node, visited_children):
        _, value = visited_children
        return Statement("return", expr=_opt(value))

    def visit_return_value(self, node, visited_children):
        return visited_children[1]

    # ── Expressions ──────────────────────────────────────────────────

    def visit_lvalue(self, node, visited_children):
        return visited_children[0]

    def visit_expr(self, node, visited_children):
        child = visited_children[0]
        if isinstance(child, Literal):
            return Expr("literal", literal=child)
        return child

    def visit_address_of(self, node, visited_children):
        inner = visited_children[2]
        return Expr("address", name=inner.name, index=inner.index)

    def visit_addressable(self, node, visited_children):
        return visited_children[0]

    def visit_deref(self, node, visited_children):
        return Expr("deref", name=visited_children[2])

    def visit_element(self, node, visited_children):
        name, _, _, _, index, _, _ = visited_children
        return Expr("element", name=name, index=index)

    def visit_name_ref(self, node, visited_children):
        return Expr("name", name=node.text)

    # ── Types ────────────────────────────────────────────────────────

    def visit_type_spec(self, node, visited_children):
        base, suffixes = visited_children
        # Suffixes read left to right are innermost first.
        outermost_first = list(reversed(suffixes))
        count = next((c for d, c in outermost_first if d == Declarator.ARRAY), None)
        return TypeSpec(base, tuple(d for d, _ in outermost_first), count)

    def visit_type_suffix(self, node, visited_children):
        _, (suffix,) = visited_children
        return suffix

    def visit_pointer_suffix(self, node, visited_children):
        return (Declarator.POINTER, None)

    def visit_reference_suffix(self, node, visited_children):
        return (Declarator.REFERENCE, None)

    def visit_array_suffix(self, node, visited_children):
        _, _, count, _, _ = visited_children
        return (Declarator.ARRAY, _opt(count))

    # ── Literals ─────────────────────────────────────────────────────

    def visit_literal(self, node, visited_children):
        child = visited_children[0]
        if isinstance(child, Literal):
            return child
        if isinstance(child, int):
            return Literal("int", child)
        return Literal("string", child)

    def visit_null_lit(self, node, visited_children):
        return Literal(NULLPTR_KIND, None)

    def visit_bool_lit(self, node, visited_children):
        return Literal("bool", node.text == "true")

    def visit_integer(self, node, visited_children):
        return int(node.text)

    def visit_string(self, node, visited_children):
        return node.text[1:-1]

    def visit_name(self, node, visited_children):
        return node.text


# ═══════════════════════════════════════════════════════════════════
#  PART 3 — ENTRY POINTS
# ═══════════════════════════════════════════════════════════════════

def parse_line(text: str, filename: str = "<trace>", line: int = 0) -> Optional[Statement]:
    """Parse one line; returns None for blank and comment-only lines."""
    try:
        tree = TRACE_GRAMMAR.parse(text)
    except ParseError as exc:
        pos = max(exc.pos, 0)
        column = pos + 1
        raise TraceSyntaxError(
            f"cannot parse statement near {text[pos:pos + 12]!r}"
            if pos < len(text.rstrip()) else "incomplete statement",
            filename, line, column, text.rstrip(),
        ) from exc
    try:
        statement = TraceBuilder().visit(tree)
    except VisitationError as exc:
        raise TraceSyntaxError(
            f"malformed statement: {exc.original_class.__name__}",
            filename, line, 1, text.rstrip(),
        ) from exc
    if statement is not None:
        statement.line = line
        statement.text = text.strip()
    return statement


def parse_trace(source: str, filename: str = "<trace>") -> List[Statement]:
    """Parse a whole trace into statements, in source order."""
    statements: List[Statement] = []
    for lineno, text in enumerate(source.splitlines(), start=1):
        statement = parse_line(text, filename, lineno)
        if statement is not None:
            statements.append(statement)
    _log.debug("Parsed %d statement(s) from %s", len(statements), filename)
    return statements


def load_trace_file(path: Union[str, Path]) -> List[Statement]:
    """Read and parse a trace file."""
    p = Path(path)
    return parse_trace(p.read_text(encoding="utf-8"), filename=str(p))


__all__ = [
    "Literal",
    "TypeSpec",
    "Expr",
    "ParamDecl",
    "Statement",
    "TraceBuilder",
    "parse_line",
    "parse_trace",
    "load_trace_file",
]
