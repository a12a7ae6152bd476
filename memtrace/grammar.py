"""
grammar.py — PEG grammar of the memtrace notation
=================================================

One trace statement per line; ``#`` starts a comment.  Keywords (see
:data:`KEYWORDS`) are reserved and cannot be used as names.  Lines are parsed
independently, so line numbers in errors are exact and a statement never
spans lines.

Type suffixes are written the way a C++ declarator reads left to right and
are applied innermost first: ``int&*`` is a pointer to a reference (the
``*`` is the outermost constructor), ``int*&`` a reference to a pointer.
"""

from __future__ import annotations

from parsimonious.grammar import Grammar

TRACE_GRAMMAR = Grammar(r'''
    # ─────────────────────────────────────────────────────────────
    # Line structure
    # ─────────────────────────────────────────────────────────────

    line                = ws statement? ws comment?
    statement           = fn_decl / push_stmt / pop_stmt / end_stmt / let_stmt
                        / read_stmt / move_stmt / delete_stmt / call_stmt
                        / return_stmt / assign_stmt

    # ─────────────────────────────────────────────────────────────
    # Function signatures
    # ─────────────────────────────────────────────────────────────

    fn_decl             = kw_fn ws1 name ws "(" ws param_list? ws ")" returns?
    returns             = ws "->" ws return_mode
    return_mode         = ~r"(value|pointer|reference|void)\b"
    param_list          = param (ws "," ws param)*
    param               = type_spec param_name? param_default?
    param_name          = ws1 name
    param_default       = ws "=" ws literal

    # ─────────────────────────────────────────────────────────────
    # Frames
    # ─────────────────────────────────────────────────────────────

    push_stmt           = kw_push frame_label?
    frame_label         = ws1 name
    pop_stmt            = ~r"pop\b"
    end_stmt            = ~r"end\b"

    # ─────────────────────────────────────────────────────────────
    # Declarations and memory operations
    # ─────────────────────────────────────────────────────────────

    let_stmt            = kw_let ws1 name ws ":" ws type_spec initializer?
    initializer         = ws "=" ws init_expr
    init_expr           = new_expr / expr
    new_expr            = kw_new ws1 name array_count?
    array_count         = ws "[" ws integer ws "]"

    read_stmt           = kw_read ws1 expr
    move_stmt           = kw_move ws1 name ws "->" ws name
    delete_stmt         = kw_delete array_marker? ws1 expr
    array_marker        = "[]"
    assign_stmt         = lvalue ws "=" ws expr

    # ─────────────────────────────────────────────────────────────
    # Calls
    # ─────────────────────────────────────────────────────────────

    call_stmt           = kw_call ws1 name ws "(" ws arg_list? ws ")" call_dest?
    arg_list            = expr (ws "," ws expr)*
    call_dest           = ws "->" ws name
    return_stmt         = kw_return return_value?
    return_value        = ws1 expr

    # ─────────────────────────────────────────────────────────────
    # Expressions
    # ─────────────────────────────────────────────────────────────

    lvalue              = deref / element / name_ref
    expr                = address_of / deref / literal / element / name_ref
    address_of          = "&" ws addressable
    addressable         = element / name_ref
    deref               = "*" ws name
    element             = name ws "[" ws integer ws "]"
    name_ref            = ~r"(?!(fn|push|pop|end|let|new|read|move|delete|call|return|null|nullptr|true|false)\b)[A-Za-z_][A-Za-z0-9_]*"

    # ─────────────────────────────────────────────────────────────
    # Types
    # ─────────────────────────────────────────────────────────────

    type_spec           = name type_suffix*
    type_suffix         = ws (pointer_suffix / reference_suffix / array_suffix)
    pointer_suffix      = "*"
    reference_suffix    = "&"
    array_suffix        = "[" ws integer? ws "]"

    # ─────────────────────────────────────────────────────────────
    # Literals and terminals
    # ─────────────────────────────────────────────────────────────

    literal             = null_lit / bool_lit / integer / string
    null_lit            = ~r"(null|nullptr)\b"
    bool_lit            = ~r"(true|false)\b"
    integer             = ~r"-?[0-9]+"
    string              = ~r'"[^"\n]*"'

    kw_fn               = ~r"fn\b"
    kw_push             = ~r"push\b"
    kw_let              = ~r"let\b"
    kw_new              = ~r"new\b"
    kw_read             = ~r"read\b"
    kw_move             = ~r"move\b"
    kw_delete           = ~r"delete\b"
    kw_call             = ~r"call\b"
    kw_return           = ~r"return\b"

    name                = ~r"(?!(fn|push|pop|end|let|new|read|move|delete|call|return|null|nullptr|true|false)\b)[A-Za-z_][A-Za-z0-9_]*"
    comment             = ~r"#[^\n]*"
    ws                  = ~r"[ \t]*"
    ws1                 = ~r"[ \t]+"
''')

KEYWORDS = frozenset({
    "fn", "push", "pop", "end", "let", "new", "read", "move", "delete",
    "call", "return", "null", "nullptr", "true", "false",
})

__all__ = ["TRACE_GRAMMAR", "KEYWORDS"]
