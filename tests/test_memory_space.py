# tests/test_memory_space.py
"""
Tests for the memory space: frame ordering, binding lifecycle, heap records
and address resolution.
"""

import pytest

from memsafety.errors import FrameOrderError, MalformedOperationError, UnknownEntityError
from memsafety.model import (
    INDETERMINATE,
    INVALID,
    NULL_ADDRESS,
    Address,
    BindingKind,
    HeapKind,
    Validity,
)


class TestFrames:

    def test_ids_are_unique_across_kinds(self, space):
        f = space.push_frame("main")
        b = space.declare_binding(f, BindingKind.VALUE, 1)
        h = space.heap_allocate(HeapKind.SCALAR)
        assert len({f, b, h}) == 3

    def test_push_pop_depth(self, space):
        f1 = space.push_frame("a")
        f2 = space.push_frame("b")
        assert space.frames == [f1, f2]
        assert space.top_frame == f2
        space.pop_frame(f2)
        assert space.depth == 1
        assert space.top_frame == f1

    def test_pop_non_top_raises(self, space):
        f1 = space.push_frame("a")
        space.push_frame("b")
        with pytest.raises(FrameOrderError):
            space.pop_frame(f1)

    def test_pop_twice_raises(self, space):
        f = space.push_frame("a")
        space.pop_frame(f)
        with pytest.raises(FrameOrderError):
            space.pop_frame(f)

    def test_pop_destroys_every_binding(self, space):
        f = space.push_frame("a")
        ids = [space.declare_binding(f, BindingKind.VALUE, i) for i in range(3)]
        space.pop_frame(f)
        assert all(space.binding(i).validity == Validity.DESTROYED for i in ids)

    def test_pop_notifies_listeners(self, space):
        seen = []
        space.add_destruction_listener(lambda sp, bids, hids: seen.append((tuple(bids), tuple(hids))))
        f = space.push_frame("a")
        b = space.declare_binding(f, BindingKind.VALUE, 1)
        space.pop_frame(f)
        assert seen == [((b,), ())]

    def test_declare_into_popped_frame_raises(self, space):
        f = space.push_frame("a")
        space.pop_frame(f)
        with pytest.raises(FrameOrderError):
            space.declare_binding(f, BindingKind.VALUE, 1)

    def test_unknown_frame(self, space):
        with pytest.raises(UnknownEntityError):
            space.frame(999)


class TestBindings:

    def test_indeterminate_tag(self, space, frame):
        b = space.declare_binding(frame, BindingKind.VALUE)
        assert "indeterminate" in space.binding(b).tags
        space.write_binding(b, 4)
        assert "indeterminate" not in space.binding(b).tags
        assert space.binding(b).content == 4

    def test_reference_needs_target(self, space, frame):
        with pytest.raises(MalformedOperationError):
            space.declare_binding(frame, BindingKind.REFERENCE)

    def test_reference_cannot_be_written(self, space, frame):
        x = space.declare_binding(frame, BindingKind.VALUE, 1)
        r = space.declare_binding(frame, BindingKind.REFERENCE,
                                  alias_target=Address.of_binding(x))
        with pytest.raises(MalformedOperationError):
            space.write_binding(r, 2)
        assert space.binding(r).alias_target == Address.of_binding(x)

    def test_moved_out_then_written_is_live(self, space, frame):
        b = space.declare_binding(frame, BindingKind.VALUE, 1)
        space.mark_moved_out(b)
        assert space.binding(b).validity == Validity.MOVED_OUT
        assert space.binding(b).content is INDETERMINATE
        space.write_binding(b, 2)
        assert space.binding(b).validity == Validity.LIVE

    def test_unknown_binding_is_lookup_error(self, space):
        with pytest.raises(LookupError):
            space.binding(42)

    def test_owner_frame(self, space, frame):
        b = space.declare_binding(frame, BindingKind.VALUE, 1)
        assert space.owner_frame(b) == frame


class TestHeap:

    def test_allocate_cells(self, space):
        h = space.heap_allocate(HeapKind.ARRAY, 4, "int", op_index=3)
        obj = space.heap_object(h)
        assert obj.cells == [INDETERMINATE] * 4
        assert obj.allocated_at == 3
        assert obj.is_live

    def test_release_marks_destroyed_and_notifies(self, space):
        seen = []
        space.add_destruction_listener(lambda sp, bids, hids: seen.extend(hids))
        h = space.heap_allocate(HeapKind.SCALAR)
        space.release_heap(h, 7)
        assert space.heap_object(h).released_at == 7
        assert seen == [h]

    def test_unknown_heap_object(self, space):
        with pytest.raises(UnknownEntityError):
            space.heap_object(5)


class TestResolve:

    def test_resolves_binding_and_heap(self, space, frame):
        b = space.declare_binding(frame, BindingKind.VALUE, 1)
        h = space.heap_allocate(HeapKind.SCALAR)
        assert space.resolve(Address.of_binding(b)).id == b
        assert space.resolve(Address.of_heap(h)).id == h

    def test_null_and_unknown_are_invalid(self, space):
        assert space.resolve(NULL_ADDRESS) is INVALID
        assert space.resolve(Address.of_binding(99)) is INVALID
        assert space.resolve(Address.of_heap(99)) is INVALID

    def test_destroyed_is_returned(self, space):
        f = space.push_frame("a")
        b = space.declare_binding(f, BindingKind.VALUE, 1)
        space.pop_frame(f)
        assert space.resolve(Address.of_binding(b)).validity == Validity.DESTROYED
