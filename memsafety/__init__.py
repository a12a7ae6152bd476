"""
memsafety — Memory and Alias Rule Engine
========================================

A simulator of stack frames and heap objects that tracks the validity of
every pointer and reference over time and classifies each abstract memory
operation as legal or as a memory-safety violation (dangling access,
double free, mismatched release, invalid reference binding, leak...).

Core modules
------------
model
    Records of the simulated memory: addresses, bindings, heap objects,
    frames, signatures.
memory_space
    Ground truth of frames, bindings and heap objects.
allocation
    Heap allocation/release discipline and leak scan.
aliasing
    References, pointers, declarator checks and dangling detection.
calls
    Call/return state machine, parameter binding, overload resolution.
diagnostics
    Diagnostic records and the reporter sink.
config
    Policy switches of a run.
engine
    Operation records and the ``Simulation`` façade.

Quick start
-----------
>>> from memsafety import Simulation, HeapKind
>>> sim = Simulation()
>>> frame = sim.push_frame("main")
>>> h = sim.allocate(HeapKind.ARRAY, "int", 5)
>>> sim.free(h, HeapKind.SCALAR)
False
>>> [d.violation_kind.value for d in sim.diagnostics]
['MismatchedRelease']

Package layout
--------------
::

    memsafety/
    ├── __init__.py            ← this file
    ├── errors.py
    ├── model.py
    ├── memory_space.py
    ├── allocation.py
    ├── aliasing.py
    ├── calls.py
    ├── diagnostics.py
    ├── config.py
    └── engine.py
"""

from __future__ import annotations

import importlib
import logging
import sys
from typing import TYPE_CHECKING, List

# ---------------------------------------------------------------------------
# Package metadata
# ---------------------------------------------------------------------------

__version__ = "0.1.0"
__license__ = "MIT"
__all__: List[str] = []          # populated incrementally below

_log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Internal registry: (module_name, list_of_names_to_import)
# ---------------------------------------------------------------------------

_CORE_MODULES = {
    "errors": [
        "MemSafetyError",
        "UnknownEntityError",
        "FrameOrderError",
        "CallStateError",
        "MalformedOperationError",
        "ConfigError",
        "SignatureError",
    ],
    "model": [
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
        "Address",
        "NULL_ADDRESS",
        "RValue",
        "Binding",
        "HeapObject",
        "StackFrame",
        "ParamSpec",
        "FunctionSignature",
        "CallFrameLink",
    ],
    "diagnostics": [
        "DiagnosticSeverity",
        "ViolationKind",
        "Diagnostic",
        "DiagnosticReporter",
    ],
    "config": [
        "EngineConfig",
    ],
    "memory_space": [
        "MemorySpace",
    ],
    "allocation": [
        "AllocationManager",
    ],
    "aliasing": [
        "BindingAliasTracker",
        "classify_declarator",
    ],
    "calls": [
        "CallState",
        "Argument",
        "ReturnResult",
        "CallRecord",
        "CallReturnSimulator",
        "resolve_overload",
    ],
    "engine": [
        "OperationKind",
        "Operation",
        "OperationResult",
        "Simulation",
    ],
}

# ---------------------------------------------------------------------------
# Import helper
# ---------------------------------------------------------------------------

def _import_names(module_rel_name: str, names: List[str]) -> None:
    """Import *names* from a submodule and bind them in the package namespace."""
    fq_name = f"{__name__}.{module_rel_name}"
    try:
        mod = importlib.import_module(fq_name)
    except ImportError as exc:
        raise ImportError(
            f"memsafety: required submodule '{module_rel_name}' "
            f"failed to import: {exc}"
        ) from exc

    current_module = sys.modules[__name__]
    for name in names:
        if not hasattr(mod, name):
            raise AttributeError(f"memsafety.{module_rel_name} does not export '{name}'")
        setattr(current_module, name, getattr(mod, name))
        __all__.append(name)

    setattr(current_module, module_rel_name, mod)
    if module_rel_name not in __all__:
        __all__.append(module_rel_name)


for _mod, _names in _CORE_MODULES.items():
    _import_names(_mod, _names)

del _mod, _names

# ---------------------------------------------------------------------------
# Package-level utilities
# ---------------------------------------------------------------------------

def list_submodules() -> List[str]:
    """Return the names of all submodules in the package."""
    return sorted(_CORE_MODULES)


def engine_info() -> dict:
    """Return a dict of metadata about the engine (printed by ``memtrace info``)."""
    return {
        "package": __name__,
        "version": __version__,
        "python": sys.version.split()[0],
        "submodules": list_submodules(),
        "violation_kinds": [k.value for k in ViolationKind],  # noqa: F821
    }


__all__ += ["list_submodules", "engine_info", "__version__"]

if TYPE_CHECKING:
    from .engine import Simulation as Simulation
    from .diagnostics import ViolationKind as ViolationKind
    from .model import HeapKind as HeapKind
