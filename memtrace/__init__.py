"""
memtrace — Trace harness for the memsafety rule engine
======================================================

A small line-oriented notation for sequences of memory operations,
its parser, an interpreter that drives a :class:`memsafety.Simulation`,
and the ``memtrace`` command-line tool.

Example trace::

    let p: int*
    push F
    let b: int = 1
    p = &b
    pop
    read *p           # DanglingAccess
    end

Modules
-------
grammar
    parsimonious PEG grammar of the notation.
parser
    Parse tree → :class:`~memtrace.parser.Statement` records.
interpreter
    Statement execution against a simulation.
main
    argparse CLI (``memtrace run|check|kinds|info``).
"""

from __future__ import annotations

from memtrace.errors import TraceError, TraceNameError, TraceSyntaxError
from memtrace.interpreter import TraceInterpreter, run_trace
from memtrace.parser import Statement, load_trace_file, parse_trace

__all__ = [
    "TraceError",
    "TraceSyntaxError",
    "TraceNameError",
    "Statement",
    "parse_trace",
    "load_trace_file",
    "TraceInterpreter",
    "run_trace",
]
