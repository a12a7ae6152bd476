#!/usr/bin/env python3
"""memtrace/main.py — CLI entry-point for the memtrace harness.

Usage examples
--------------
    # Run a trace and print diagnostics as file:line records
    python -m memtrace run dangling.mt

    # Same, as JSON lines, with leaks suppressed
    python -m memtrace run dangling.mt --format json --suppress Leak

    # Load engine policy from a JSON file
    python -m memtrace run calls.mt --config strict.json

    # Parse a trace without executing it
    python -m memtrace check dangling.mt

    # List the violation kinds with their default severity and CWE
    python -m memtrace kinds

    # Engine metadata
    python -m memtrace info

Exit codes
----------
    0   Success (no diagnostics with severity ERROR).
    1   One or more diagnostics with severity ERROR were emitted.
    2   Infrastructure failure (missing file, syntax error, bad config,
        malformed operation).

The module doubles as ``python -m memtrace`` via the companion
``memtrace/__main__.py`` which simply calls :func:`main`.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import sys
import textwrap
from pathlib import Path
from typing import List, Optional, Sequence, TextIO

from termcolor import colored

import memsafety
from memsafety.config import EngineConfig
from memsafety.diagnostics import (
    VIOLATION_TABLE,
    Diagnostic,
    DiagnosticSeverity,
    ViolationKind,
)
from memsafety.errors import ConfigError, MemSafetyError
from memtrace.errors import TraceError
from memtrace.interpreter import TraceInterpreter
from memtrace.parser import load_trace_file

_log = logging.getLogger("memtrace")

# Exit codes ----------------------------------------------------------------

EXIT_OK: int = 0
EXIT_ERROR: int = 1
EXIT_INFRA: int = 2

_SEVERITY_COLOR = {
    DiagnosticSeverity.ERROR: "red",
    DiagnosticSeverity.WARNING: "yellow",
    DiagnosticSeverity.STYLE: "magenta",
    DiagnosticSeverity.INFORMATION: "cyan",
}


# ===========================================================================
# Utility helpers
# ===========================================================================

def _configure_logging(verbosity: int) -> None:
    """Set up the ``memtrace`` and ``memsafety`` loggers.

    Parameters
    ----------
    verbosity:
        0 → WARNING, 1 → INFO, 2+ → DEBUG.
    """
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    for name in ("memtrace", "memsafety"):
        root = logging.getLogger(name)
        root.setLevel(level)
        # one handler per logger, however often main() runs in a process
        root.handlers[:] = [handler]


def _resolve_path(raw: str, label: str = "file") -> Path:
    """Resolve *raw* to an absolute ``Path``, raising on missing files."""
    p = Path(raw).expanduser().resolve()
    if not p.exists():
        _log.error("%s not found: %s", label, p)
        raise SystemExit(EXIT_INFRA)
    return p


def _open_output(dest: Optional[str]) -> TextIO:
    """Return a writable text stream.

    *dest* ``None`` or ``"-"`` → ``sys.stdout``; otherwise open the path
    for writing (creating parent directories as needed).
    """
    if dest is None or dest == "-":
        return sys.stdout
    p = Path(dest).expanduser().resolve()
    p.parent.mkdir(parents=True, exist_ok=True)
    return open(p, "w", encoding="utf-8")


def _emit_diagnostics(
    interpreter: TraceInterpreter,
    fmt: str,
    stream: TextIO,
    color: bool = False,
) -> int:
    """Write the run's diagnostics to *stream* in the chosen format.

    Returns the count of ERROR-severity diagnostics.
    """
    diagnostics: List[Diagnostic] = interpreter.diagnostics
    error_count = 0
    for diag in diagnostics:
        if diag.severity == DiagnosticSeverity.ERROR:
            error_count += 1
        line = interpreter.line_of(diag)

        if fmt == "json":
            record = diag.to_dict()
            record["file"] = interpreter.filename
            record["line"] = line
            stream.write(json.dumps(record) + "\n")
        elif fmt == "text":
            # file:line: severity: message [Kind]
            location = f"{interpreter.filename}:{line}"
            severity = diag.severity.value
            if color:
                location = colored(location, attrs=["bold"], force_color=True)
                severity = colored(severity, _SEVERITY_COLOR[diag.severity],
                                   attrs=["bold"], force_color=True)
            stream.write(f"{location}: {severity}: "
                         f"{diag.message} [{diag.violation_kind.value}]\n")

    if fmt == "summary":
        stream.write(interpreter.simulation.reporter.summary() + "\n")
    return error_count


def _load_config(args: argparse.Namespace) -> EngineConfig:
    config = EngineConfig()
    if args.config:
        config = EngineConfig.from_file(_resolve_path(args.config, "config file"))
    if args.suppress:
        config = config.with_suppressed(args.suppress)
    if args.report_indeterminate:
        config = dataclasses.replace(config, report_indeterminate_reads=True)
    return config


# ===========================================================================
# Sub-command implementations
# ===========================================================================

# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------

def cmd_run(args: argparse.Namespace) -> int:
    """Execute a trace file and report every classified violation."""
    trace_path = _resolve_path(args.trace_file, "trace file")
    try:
        config = _load_config(args)
        statements = load_trace_file(trace_path)
    except ConfigError as exc:
        _log.error("%s", exc)
        return EXIT_INFRA
    except TraceError as exc:
        sys.stderr.write(exc.render() + "\n")
        return EXIT_INFRA

    interpreter = TraceInterpreter(config, filename=args.trace_file)
    try:
        interpreter.run(statements)
        if not args.no_leak_scan and not interpreter.simulation.finished:
            interpreter.simulation.finish()
    except TraceError as exc:
        sys.stderr.write(exc.render() + "\n")
        return EXIT_INFRA
    except MemSafetyError as exc:
        _log.error("Engine rejected an operation: %s", exc)
        if exc.hint:
            _log.error("hint: %s", exc.hint)
        return EXIT_INFRA

    _log.info("%d statement(s), %d operation(s)", len(statements),
              interpreter.simulation.reporter.operation_index + 1)

    out = _open_output(args.output)
    try:
        color = args.color == "always" or (args.color == "auto" and out.isatty())
        error_count = _emit_diagnostics(interpreter, args.format, out, color)
    finally:
        if out is not sys.stdout:
            out.close()
    return EXIT_ERROR if error_count > 0 else EXIT_OK


# ---------------------------------------------------------------------------
# check (parse only)
# ---------------------------------------------------------------------------

def cmd_check(args: argparse.Namespace) -> int:
    """Parse a trace file and report syntax errors without running it."""
    trace_path = _resolve_path(args.trace_file, "trace file")
    try:
        statements = load_trace_file(trace_path)
    except TraceError as exc:
        sys.stderr.write(exc.render() + "\n")
        return EXIT_INFRA
    sys.stdout.write(f"{args.trace_file}: {len(statements)} statement(s) OK\n")
    return EXIT_OK


# ---------------------------------------------------------------------------
# kinds
# ---------------------------------------------------------------------------

def cmd_kinds(args: argparse.Namespace) -> int:
    """List every violation kind with its default severity and CWE."""
    out = _open_output(args.output)
    try:
        for kind in ViolationKind:
            severity, cwe = VIOLATION_TABLE[kind]
            cwe_text = f"CWE-{cwe}" if cwe else "-"
            out.write(f"  {kind.value:<30} {severity.value:<12} {cwe_text}\n")
        out.write(f"\n{len(ViolationKind)} violation kind(s).\n")
    finally:
        if out is not sys.stdout:
            out.close()
    return EXIT_OK


# ---------------------------------------------------------------------------
# info
# ---------------------------------------------------------------------------

def cmd_info(args: argparse.Namespace) -> int:
    """Print engine metadata as JSON."""
    sys.stdout.write(json.dumps(memsafety.engine_info(), indent=2) + "\n")
    return EXIT_OK


# ===========================================================================
# Argument parser construction
# ===========================================================================

def _build_parser() -> argparse.ArgumentParser:
    """Construct the full CLI argument parser with subcommands."""

    # --- Top-level parser --------------------------------------------------
    parser = argparse.ArgumentParser(
        prog="memtrace",
        description=(
            "memtrace — run memory operation traces through the memsafety\n"
            "rule engine and report dangling accesses, double frees,\n"
            "mismatched releases, invalid references and leaks."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              memtrace run dangling.mt
              memtrace run calls.mt --format json --suppress Leak
              memtrace check dangling.mt
        """),
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {memsafety.__version__}",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug).",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        metavar="<command>",
    )

    # --- run -----------------------------------------------------------------
    p_run = subparsers.add_parser(
        "run",
        help="Execute a trace and report violations.",
        description="Execute a trace file and report every classified violation.",
    )
    p_run.add_argument(
        "trace_file",
        metavar="TRACE",
        help="Path to the .mt trace file.",
    )
    p_run.add_argument(
        "--format", "-f",
        choices=["text", "json", "summary"],
        default="text",
        help="Diagnostic output format (default: text).",
    )
    p_run.add_argument(
        "--config", "-c",
        metavar="FILE",
        default=None,
        help="JSON file with engine policy settings.",
    )
    p_run.add_argument(
        "--suppress",
        metavar="KIND",
        action="append",
        default=[],
        help="Suppress a violation kind (repeatable).",
    )
    p_run.add_argument(
        "--report-indeterminate",
        action="store_true",
        help="Report reads of indeterminate or moved-out values.",
    )
    p_run.add_argument(
        "--no-leak-scan",
        action="store_true",
        help="Skip the leak scan when the trace has no 'end' statement.",
    )
    p_run.add_argument(
        "--color",
        choices=["auto", "always", "never"],
        default="auto",
        help="Colourise text output (default: auto, when writing to a terminal).",
    )
    p_run.add_argument(
        "-o", "--output",
        metavar="FILE",
        default=None,
        help="Write diagnostics to FILE instead of stdout.",
    )
    p_run.set_defaults(func=cmd_run)

    # --- check ---------------------------------------------------------------
    p_check = subparsers.add_parser(
        "check",
        help="Parse a trace without executing it.",
    )
    p_check.add_argument(
        "trace_file",
        metavar="TRACE",
        help="Path to the .mt trace file.",
    )
    p_check.set_defaults(func=cmd_check)

    # --- kinds ---------------------------------------------------------------
    p_kinds = subparsers.add_parser(
        "kinds",
        help="List violation kinds.",
    )
    p_kinds.add_argument(
        "-o", "--output",
        metavar="FILE",
        default=None,
        help="Write the list to FILE instead of stdout.",
    )
    p_kinds.set_defaults(func=cmd_kinds)

    # --- info ----------------------------------------------------------------
    p_info = subparsers.add_parser(
        "info",
        help="Show engine metadata.",
    )
    p_info.set_defaults(func=cmd_info)

    return parser


# ===========================================================================
# Main entry point
# ===========================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the memtrace CLI.

    Parameters
    ----------
    argv:
        Command-line arguments.  ``None`` → ``sys.argv[1:]``.

    Returns
    -------
    int
        Exit code (see module docstring for semantics).
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    _configure_logging(args.verbose)

    # No subcommand given → print help.
    if not hasattr(args, "func"):
        parser.print_help(sys.stderr)
        return EXIT_INFRA

    try:
        return args.func(args)
    except KeyboardInterrupt:
        _log.info("Interrupted by user.")
        return 130  # Standard UNIX convention for SIGINT
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else EXIT_INFRA
    except Exception as exc:
        _log.error("Unhandled exception: %s", exc, exc_info=True)
        return EXIT_INFRA


# ---------------------------------------------------------------------------
# Module execution support
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    raise SystemExit(main())
