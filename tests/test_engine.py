# tests/test_engine.py
"""
Tests for operation records and the Simulation façade, including the
end-to-end scenario suite driven through the external operation shape.
"""

import pytest

from memsafety.calls import Argument
from memsafety.config import EngineConfig
from memsafety.diagnostics import ViolationKind
from memsafety.engine import (
    Operation,
    OperationKind,
    Simulation,
    address_from,
    signature_from,
)
from memsafety.errors import CallStateError, FrameOrderError, MalformedOperationError
from memsafety.model import (
    INVALID,
    NULL_ADDRESS,
    Address,
    Declarator,
    FunctionSignature,
    HeapKind,
    ParamSpec,
    PassMode,
    ReturnMode,
    RValue,
)


class TestOperationKind:

    @pytest.mark.parametrize("text", ["push_frame", "PUSH_FRAME", "pushFrame", "PushFrame"])
    def test_parse_spellings(self, text):
        assert OperationKind.parse(text) is OperationKind.PUSH_FRAME

    def test_parse_unknown(self):
        with pytest.raises(MalformedOperationError):
            OperationKind.parse("teleport")


class TestOperationFromDict:

    def test_free_record(self):
        op = Operation.from_dict({
            "kind": "free",
            "targetAddress": {"space": "heap", "targetId": 3},
            "heapKind": "array",
        })
        assert op.kind is OperationKind.FREE
        assert op.target == Address.of_heap(3)
        assert op.heap_kind is HeapKind.ARRAY

    def test_declarator_and_rvalue(self):
        op = Operation.from_dict({
            "kind": "declare", "name": "r", "declarator": ["&"],
            "value": {"rvalue": 5, "typeName": "int"},
        })
        assert op.declarator == (Declarator.REFERENCE,)
        assert op.value == RValue(5, "int")

    def test_unknown_field(self):
        with pytest.raises(MalformedOperationError):
            Operation.from_dict({"kind": "read", "bindingID": 1})

    def test_missing_kind(self):
        with pytest.raises(MalformedOperationError):
            Operation.from_dict({"bindingId": 1})

    def test_arguments(self):
        op = Operation.from_dict({
            "kind": "call", "function": "f",
            "arguments": [{"kind": "int", "bindingId": 4}, {"kind": "nullptr_t", "value": "null"}],
        })
        assert op.arguments[0] == Argument("int", 4)
        assert op.arguments[1].kind == "nullptr_t"

    def test_bad_argument(self):
        with pytest.raises(MalformedOperationError):
            Operation.from_dict({"kind": "call", "function": "f", "arguments": [{"value": 1}]})


class TestDecoders:

    def test_address_from(self):
        assert address_from("null") == NULL_ADDRESS
        assert address_from(None) is None
        assert address_from({"space": "stack", "targetId": 2, "index": 1}) == Address.of_binding(2).element(1)

    def test_address_without_space(self):
        with pytest.raises(MalformedOperationError):
            address_from({"targetId": 2})

    def test_address_garbage(self):
        with pytest.raises(MalformedOperationError):
            address_from(12)

    def test_signature_from(self):
        sig = signature_from({
            "name": "f",
            "params": [{"type": "int", "mode": "reference", "name": "a"},
                       {"type": "bool", "default": False}],
            "returnMode": "pointer",
        })
        assert sig.params[0] == ParamSpec("int", PassMode.REFERENCE, "a")
        assert sig.params[1].default is False
        assert sig.return_mode == ReturnMode.POINTER

    def test_signature_without_name(self):
        with pytest.raises(MalformedOperationError):
            signature_from({"params": []})


class TestSimulation:

    def test_apply_returns_result_and_diagnostics(self, sim):
        h = sim.allocate(HeapKind.SCALAR, "int")
        sim.free(h)
        result = sim.apply(Operation(OperationKind.FREE, target=h, heap_kind=HeapKind.SCALAR))
        assert result.result is False
        assert not result.clean
        assert result.diagnostics[0].violation_kind == ViolationKind.DOUBLE_FREE
        assert result.diagnostics[0].operation_index == result.index

    def test_operation_indices_are_sequential(self):
        s = Simulation()
        results = s.run([{"kind": "push_frame", "name": "main"},
                         {"kind": "declare", "name": "x", "value": 1},
                         {"kind": "read", "bindingId": 2}])
        assert [r.index for r in results] == [0, 1, 2]
        assert results[2].result == 1

    def test_pop_without_frame(self):
        with pytest.raises(FrameOrderError):
            Simulation().pop_frame()

    def test_pop_of_call_frame_is_refused(self, sim):
        sim.register_function(FunctionSignature("g", (), ReturnMode.VOID))
        record = sim.call("g")
        with pytest.raises(CallStateError) as exc_info:
            sim.pop_frame()
        assert exc_info.value.hint
        assert sim.space.top_frame == record.frame_id
        assert sim.return_from(record.id).valid

    def test_declare_without_frame(self):
        with pytest.raises(FrameOrderError):
            Simulation().declare("x")

    def test_missing_binding_id(self, sim):
        with pytest.raises(MalformedOperationError):
            sim.apply({"kind": "read"})

    def test_allocate_into_pointer(self, sim):
        p = sim.declare("p", (Declarator.POINTER,), "int*")
        h = sim.allocate(HeapKind.ARRAY, "int", 4, binding_id=p)
        assert sim.read(p) == h

    def test_free_through_dangling_reference_is_skipped(self, sim, kinds):
        outer = sim.space.top_frame
        f = sim.push_frame("F")
        q = sim.declare("q", (Declarator.POINTER,), "int*", value=sim.allocate(HeapKind.SCALAR))
        r = sim.declare("r", (Declarator.REFERENCE, Declarator.POINTER), "int*&",
                        value=sim.take_address(q), frame_id=outer)
        sim.pop_frame(f)
        assert sim.free(binding_id=r) is False
        assert kinds(sim.diagnostics) == ["DanglingAccess"]

    def test_end_runs_leak_scan(self, sim, kinds):
        sim.allocate(HeapKind.SCALAR)
        leaks = sim.end()
        assert kinds(leaks) == ["Leak"]
        assert sim.finished

    def test_no_leak_scan_without_request(self, sim):
        sim.allocate(HeapKind.SCALAR)
        assert sim.diagnostics == []
        assert not sim.finished

    def test_independent_simulations(self):
        a, b = Simulation(), Simulation()
        a.push_frame("main")
        a.allocate(HeapKind.SCALAR)
        b.push_frame("main")
        assert b.finish() == []
        assert len(a.finish()) == 1

    def test_config_suppression(self, kinds):
        s = Simulation(EngineConfig(suppressed_kinds=frozenset({ViolationKind.LEAK})))
        s.push_frame("main")
        s.allocate(HeapKind.SCALAR)
        s.finish()
        assert s.diagnostics == []
        assert kinds(s.reporter.suppressed) == ["Leak"]


class TestScenarios:
    """The acceptance scenarios, expressed as external operation records."""

    def _run(self, ops):
        s = Simulation()
        results = s.run(ops)
        return s, results

    def test_scenario_a(self):
        s, results = self._run([
            {"kind": "push_frame", "name": "main"},
            {"kind": "allocate", "heapKind": "scalar", "typeName": "int"},
            {"kind": "free", "targetAddress": {"space": "heap", "targetId": 2}},
            {"kind": "free", "targetAddress": {"space": "heap", "targetId": 2}},
        ])
        assert [d.violation_kind.value for d in s.diagnostics] == ["DoubleFree"]
        assert s.diagnostics[0].operation_index == 3
        assert results[2].clean

    def test_scenario_b(self):
        s, results = self._run([
            {"kind": "push_frame", "name": "main"},
            {"kind": "allocate", "heapKind": "array", "typeName": "int", "count": 5},
            {"kind": "free", "targetAddress": {"space": "heap", "targetId": 2}, "heapKind": "scalar"},
            {"kind": "free", "targetAddress": {"space": "heap", "targetId": 2}, "heapKind": "array"},
        ])
        assert [d.violation_kind.value for d in s.diagnostics] == ["MismatchedRelease"]
        assert results[3].result is True
        assert s.finish() == []

    def test_scenario_c(self):
        s, results = self._run([
            {"kind": "push_frame", "name": "main"},                       # frame 1
            {"kind": "declare", "name": "p", "declarator": ["*"]},         # binding 2
            {"kind": "push_frame", "name": "F"},                           # frame 3
            {"kind": "declare", "name": "b", "value": 1},                  # binding 4
            {"kind": "assign_pointer", "bindingId": 2,
             "targetAddress": {"space": "stack", "targetId": 4}},
            {"kind": "pop_frame", "frameId": 3},
            {"kind": "load", "bindingId": 2},
        ])
        assert [d.violation_kind.value for d in s.diagnostics] == ["DanglingAccess"]
        assert s.diagnostics[0].operation_index == 6
        assert results[6].result is INVALID

    def test_scenario_d(self):
        s, results = self._run([
            {"kind": "push_frame", "name": "main"},
            {"kind": "register_function", "signature": {"name": "f", "params": [{"type": "int"}]}},
            {"kind": "register_function", "signature": {"name": "f", "params": [{"type": "bool"}]}},
            {"kind": "call", "function": "f", "arguments": [{"kind": "int", "value": 1}]},
        ])
        assert results[3].result.signature.params[0].type_name == "int"
        assert s.diagnostics == []
        s.return_from(results[3].result.id, value=0)
        s.call("f", [Argument("string", value="s")])
        assert [d.violation_kind.value for d in s.diagnostics] == ["NoMatchingOverload"]

    def test_scenario_e(self):
        s, results = self._run([
            {"kind": "push_frame", "name": "main"},
            {"kind": "register_function",
             "signature": {"name": "g", "params": [], "returnMode": "reference"}},
            {"kind": "call", "function": "g"},
            {"kind": "declare", "name": "local", "value": 3},
        ])
        call = results[2].result
        local = results[3].result
        result = s.return_from(call.id, binding_id=local)
        assert not result.valid
        assert [d.violation_kind.value for d in s.diagnostics] == ["DanglingReturn"]

    def test_leak_after_scenarios(self):
        s, _ = self._run([
            {"kind": "push_frame", "name": "main"},
            {"kind": "allocate", "heapKind": "scalar"},                    # heap 2
            {"kind": "free", "targetAddress": {"space": "heap", "targetId": 2}},
            {"kind": "allocate", "heapKind": "array", "count": 5},         # heap 3
            {"kind": "free", "targetAddress": {"space": "heap", "targetId": 3}, "heapKind": "array"},
            {"kind": "allocate", "heapKind": "scalar"},                    # heap 4
            {"kind": "end"},
        ])
        leaks = s.reporter.by_kind(ViolationKind.LEAK)
        assert len(leaks) == 1
        assert leaks[0].involved_ids == (4,)
        s.apply({"kind": "end"})
        assert len(s.reporter.by_kind(ViolationKind.LEAK)) == 1
