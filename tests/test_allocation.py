# tests/test_allocation.py
"""
Tests for the allocation manager: release discipline and the leak scan.
"""

import pytest

from memsafety.allocation import AllocationManager
from memsafety.diagnostics import ViolationKind
from memsafety.errors import MalformedOperationError
from memsafety.model import INDETERMINATE, NULL_ADDRESS, Address, BindingKind, HeapKind


@pytest.fixture
def manager(space, reporter):
    return AllocationManager(space, reporter)


class TestRelease:

    def test_scenario_a_double_free(self, manager, reporter, kinds):
        h = manager.allocate_scalar("int")
        assert manager.release_scalar(Address.of_heap(h))
        assert kinds(reporter.diagnostics) == []
        reporter.begin_operation()
        assert not manager.release_scalar(Address.of_heap(h))
        assert kinds(reporter.diagnostics) == ["DoubleFree"]
        assert reporter.diagnostics[0].operation_index == 1
        assert manager.release_count(h) == 1

    def test_scenario_b_mismatched_then_matching(self, manager, reporter, kinds):
        h = manager.allocate_array("int", 5)
        assert not manager.release_scalar(Address.of_heap(h))
        assert kinds(reporter.diagnostics) == ["MismatchedRelease"]
        assert manager.release_array(Address.of_heap(h))
        assert kinds(reporter.diagnostics) == ["MismatchedRelease"]

    def test_rejected_release_is_replayable(self, manager, reporter, kinds):
        h = manager.allocate_scalar()
        manager.release_array(Address.of_heap(h))
        manager.release_array(Address.of_heap(h))
        assert kinds(reporter.diagnostics) == ["MismatchedRelease", "MismatchedRelease"]
        assert manager.release_scalar(Address.of_heap(h))

    @pytest.mark.parametrize("target", [NULL_ADDRESS, None])
    def test_null_release_is_silent_noop(self, manager, reporter, target):
        assert not manager.release_scalar(target)
        assert not manager.release_array(target)
        assert reporter.diagnostics == []

    def test_stack_storage_is_invalid_free(self, manager, reporter, space, frame, kinds):
        x = space.declare_binding(frame, BindingKind.VALUE, 1, name="x")
        assert not manager.release_scalar(Address.of_binding(x))
        assert kinds(reporter.diagnostics) == ["InvalidFree"]
        assert "'x'" in reporter.diagnostics[0].message

    def test_interior_address_is_invalid_free(self, manager, reporter, kinds):
        h = manager.allocate_array("int", 4)
        assert not manager.release_array(Address.of_heap(h, 2))
        assert kinds(reporter.diagnostics) == ["InvalidFree"]
        assert manager.release_array(Address.of_heap(h))

    def test_unknown_heap_id_is_invalid_free(self, manager, reporter, kinds):
        assert not manager.release_scalar(Address.of_heap(404))
        assert kinds(reporter.diagnostics) == ["InvalidFree"]

    def test_indeterminate_is_invalid_free(self, manager, reporter, kinds):
        assert not manager.release_scalar(INDETERMINATE)
        assert kinds(reporter.diagnostics) == ["InvalidFree"]

    def test_non_address_is_malformed(self, manager):
        with pytest.raises(MalformedOperationError):
            manager.release_scalar(17)

    @pytest.mark.parametrize("alloc_kind", list(HeapKind))
    @pytest.mark.parametrize("release_kind", list(HeapKind))
    def test_at_most_one_successful_release(self, manager, alloc_kind, release_kind):
        h = manager.allocate(alloc_kind, "int", 3)
        results = [manager.release(Address.of_heap(h), release_kind) for _ in range(3)]
        assert manager.release_count(h) <= 1
        assert sum(results) == (1 if alloc_kind == release_kind else 0)


class TestAllocation:

    def test_negative_count_rejected(self, manager):
        with pytest.raises(MalformedOperationError):
            manager.allocate_array("int", -1)

    def test_allocation_records_operation(self, manager, space, reporter):
        reporter.begin_operation()
        h = manager.allocate_scalar("int")
        assert space.heap_object(h).allocated_at == 1


class TestLeakScan:

    def test_no_leaks_after_scenarios(self, manager, reporter):
        h1 = manager.allocate_scalar()
        manager.release_scalar(Address.of_heap(h1))
        h2 = manager.allocate_array("int", 5)
        manager.release_array(Address.of_heap(h2))
        assert manager.scan_leaks() == []

    def test_one_leak_per_live_object(self, manager, reporter, kinds):
        freed = manager.allocate_scalar()
        manager.release_scalar(Address.of_heap(freed))
        leaked = manager.allocate_array("int", 2)
        found = manager.scan_leaks()
        assert kinds(found) == ["Leak"]
        assert found[0].involved_ids == (leaked,)

    def test_scan_is_idempotent(self, manager, reporter):
        manager.allocate_scalar()
        manager.scan_leaks()
        assert manager.scan_leaks() == []
        assert reporter.count(ViolationKind.LEAK) == 1

    def test_live_objects(self, manager):
        a = manager.allocate_scalar()
        b = manager.allocate_scalar()
        manager.release_scalar(Address.of_heap(a))
        assert manager.live_objects() == [b]
