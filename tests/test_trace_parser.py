# tests/test_trace_parser.py
"""
Tests for the memtrace grammar and the parse-tree visitor that builds
Statement records.
"""

import pytest
from parsimonious.exceptions import ParseError

from memsafety.model import Declarator
from memtrace.errors import TraceSyntaxError
from memtrace.grammar import KEYWORDS, TRACE_GRAMMAR
from memtrace.parser import Expr, Literal, TypeSpec, load_trace_file, parse_line, parse_trace


class TestGrammarWellFormed:

    def test_key_rules_exist(self):
        for rule in ("line", "statement", "fn_decl", "let_stmt", "call_stmt",
                     "type_spec", "expr", "literal"):
            assert rule in TRACE_GRAMMAR, f"Rule {rule!r} missing"

    def test_integer_rule(self):
        for lit in ("0", "42", "-3"):
            assert TRACE_GRAMMAR["integer"].parse(lit).text == lit

    def test_keywords_are_not_names_prefixes(self):
        with pytest.raises(ParseError):
            TRACE_GRAMMAR["kw_let"].parse("letter")

    def test_keyword_set(self):
        assert {"let", "delete", "null"} <= KEYWORDS


class TestTypes:

    def _type(self, text):
        return parse_line(f"let v: {text}").type_spec

    def test_plain(self):
        assert self._type("int") == TypeSpec("int")

    def test_pointer_to_pointer(self):
        spec = self._type("int**")
        assert spec.declarators == (Declarator.POINTER, Declarator.POINTER)
        assert spec.argument_kind == "int**"

    def test_reference_to_pointer(self):
        spec = self._type("int*&")
        assert spec.declarators == (Declarator.REFERENCE, Declarator.POINTER)
        assert spec.argument_kind == "int*"

    def test_pointer_to_reference(self):
        assert self._type("int&*").declarators == (Declarator.POINTER, Declarator.REFERENCE)

    def test_array_with_count(self):
        spec = self._type("int[3]")
        assert spec.declarators == (Declarator.ARRAY,)
        assert spec.count == 3
        assert spec.argument_kind == "int*"
        assert spec.text == "int[3]"

    def test_spaces_between_suffixes(self):
        assert self._type("int & &").declarators == (Declarator.REFERENCE, Declarator.REFERENCE)


class TestStatements:

    def test_blank_and_comment_lines(self):
        assert parse_line("") is None
        assert parse_line("   # just a note") is None

    def test_let_with_initializer(self):
        stmt = parse_line("let x: int = 5  # five")
        assert stmt.keyword == "let"
        assert stmt.name == "x"
        assert stmt.expr == Expr("literal", literal=Literal("int", 5))

    def test_let_without_initializer(self):
        assert parse_line("let p: int*").expr is None

    def test_let_new_array(self):
        stmt = parse_line("let h: int* = new int[5]")
        assert stmt.expr == Expr("new", name="int", index=5, array=True)

    def test_let_new_scalar(self):
        assert parse_line("let h: int* = new int").expr == Expr("new", name="int")

    def test_fn_declaration(self):
        stmt = parse_line("fn f(int a, bool& b, int* p = null) -> reference")
        assert stmt.keyword == "fn"
        assert [p.name for p in stmt.params] == ["a", "b", "p"]
        assert stmt.params[1].type_spec.declarators == (Declarator.REFERENCE,)
        assert stmt.params[2].default.is_null
        assert stmt.return_mode == "reference"

    def test_fn_without_params_or_mode(self):
        stmt = parse_line("fn g()")
        assert stmt.params == []
        assert stmt.return_mode is None

    def test_push_pop_end(self):
        assert parse_line("push F").name == "F"
        assert parse_line("push").name is None
        assert parse_line("pop").keyword == "pop"
        assert parse_line("end").keyword == "end"

    @pytest.mark.parametrize("text, target, value", [
        ("x = 7", Expr("name", name="x"), Expr("literal", literal=Literal("int", 7))),
        ("p = &y", Expr("name", name="p"), Expr("address", name="y")),
        ("*p = 4", Expr("deref", name="p"), Expr("literal", literal=Literal("int", 4))),
        ("p[2] = q", Expr("element", name="p", index=2), Expr("name", name="q")),
        ("q = &a[1]", Expr("name", name="q"), Expr("address", name="a", index=1)),
    ])
    def test_assignments(self, text, target, value):
        stmt = parse_line(text)
        assert stmt.keyword == "assign"
        assert stmt.target == target
        assert stmt.expr == value

    def test_literals(self):
        assert parse_line("x = true").expr.literal == Literal("bool", True)
        assert parse_line('x = "hi"').expr.literal == Literal("string", "hi")
        assert parse_line("p = nullptr").expr.literal.is_null

    def test_read_forms(self):
        assert parse_line("read x").expr == Expr("name", name="x")
        assert parse_line("read *p").expr == Expr("deref", name="p")
        assert parse_line("read p[3]").expr == Expr("element", name="p", index=3)

    def test_move(self):
        stmt = parse_line("move x -> y")
        assert (stmt.name, stmt.dest) == ("x", "y")

    def test_delete(self):
        assert not parse_line("delete h").array
        assert parse_line("delete[] h").array
        assert parse_line("delete null").expr.literal.is_null

    def test_call(self):
        stmt = parse_line("call f(x, 3, &y) -> z")
        assert stmt.name == "f"
        assert [a.kind for a in stmt.args] == ["name", "literal", "address"]
        assert stmt.dest == "z"

    def test_call_without_args(self):
        stmt = parse_line("call g()")
        assert stmt.args == []
        assert stmt.dest is None

    def test_return_forms(self):
        assert parse_line("return").expr is None
        assert parse_line("return x").expr == Expr("name", name="x")
        assert parse_line("return &x").expr == Expr("address", name="x")

    def test_names_starting_with_keywords(self):
        stmt = parse_line("popular = 1")
        assert stmt.keyword == "assign"
        assert stmt.target.name == "popular"


class TestErrors:

    def test_syntax_error_location(self):
        with pytest.raises(TraceSyntaxError) as exc_info:
            parse_trace("let x: int = 1\nlet = 5\n", filename="bad.mt")
        err = exc_info.value
        assert err.filename == "bad.mt"
        assert err.line == 2
        assert err.column >= 1
        assert "bad.mt:2" in str(err)

    def test_render_has_caret(self):
        with pytest.raises(TraceSyntaxError) as exc_info:
            parse_line("read", line=1)
        assert "^" in exc_info.value.render()

    def test_keyword_cannot_be_a_name(self):
        with pytest.raises(TraceSyntaxError):
            parse_line("let pop: int", line=1)
        with pytest.raises(TraceSyntaxError):
            parse_line("let = 5", line=1)

    def test_code(self):
        with pytest.raises(TraceSyntaxError) as exc_info:
            parse_line("x ==", line=1)
        assert exc_info.value.code.code == "MT-5101"


class TestParseTrace:

    def test_line_numbers(self):
        stmts = parse_trace("# header\n\nlet x: int = 1\nread x\n")
        assert [s.line for s in stmts] == [3, 4]
        assert stmts[1].text == "read x"

    def test_load_trace_file(self, trace_file):
        path = trace_file("""
            push F
            pop
        """)
        stmts = load_trace_file(path)
        assert [s.keyword for s in stmts] == ["push", "pop"]
