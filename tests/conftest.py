# tests/conftest.py
"""
Shared fixtures for the memsafety and memtrace test suites.
"""

import os
import sys
import textwrap

import pytest

# Make the packages importable from a source checkout
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from memsafety.config import EngineConfig
from memsafety.diagnostics import DiagnosticReporter
from memsafety.engine import Simulation
from memsafety.memory_space import MemorySpace


@pytest.fixture
def space():
    return MemorySpace()


@pytest.fixture
def reporter():
    """A reporter already positioned on operation 0."""
    rep = DiagnosticReporter()
    rep.begin_operation()
    return rep


@pytest.fixture
def frame(space):
    return space.push_frame("main")


@pytest.fixture
def sim():
    """A simulation with a 'main' frame on the stack."""
    s = Simulation()
    s.push_frame("main")
    return s


@pytest.fixture
def strict_config():
    return EngineConfig(
        report_indeterminate_reads=True,
        report_rebind_attempts=True,
        report_reference_collapse=True,
    )


@pytest.fixture
def strict_sim(strict_config):
    s = Simulation(strict_config)
    s.push_frame("main")
    return s


@pytest.fixture
def kinds():
    """Return the violation kind names of a list of diagnostics."""
    def _kinds(diagnostics):
        return [d.violation_kind.value for d in diagnostics]
    return _kinds


@pytest.fixture
def trace_file(tmp_path):
    """Write a dedented trace to a temporary .mt file and return its path."""
    def _write(source, name="trace.mt"):
        path = tmp_path / name
        path.write_text(textwrap.dedent(source).lstrip("\n"), encoding="utf-8")
        return path
    return _write
