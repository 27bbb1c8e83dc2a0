"""
Tests for address range helpers.
"""

import pytest

from address_helper import (
    PAGE_SIZE_4KB, allocations_overlap, contains, containing_heap, get_allocation_size_in_bytes,
    get_overlap_size, overlaps,
)
from common_types import HeapType

from conftest import LOCAL_BASE, SEGMENT_SIZE, SYSTEM_BASE, make_segments


class TestOverlaps:
    @pytest.mark.parametrize("a, b, expected", [
        ((0, 10), (5, 15), True),
        ((0, 10), (10, 20), False),
        ((0, 10), (2, 3), True),
        ((5, 6), (0, 100), True),
        ((0, 10), (20, 30), False),
    ])
    def test_symmetric(self, a, b, expected):
        assert overlaps(*a, *b) is expected
        assert overlaps(*b, *a) is expected

    def test_zero_size_never_overlaps(self):
        assert not overlaps(5, 5, 0, 10)
        assert not overlaps(0, 10, 5, 5)
        assert not overlaps(5, 5, 5, 5)
        assert not allocations_overlap(0x1000, 0, 0x1000, 0)

    def test_allocations_overlap_uses_sizes(self):
        assert allocations_overlap(0x1000, 0x1000, 0x1fff, 1)
        assert not allocations_overlap(0x1000, 0x1000, 0x2000, 0x1000)

    def test_contains(self):
        assert contains(0x1000, 0x1000, 0x1000, 0x1000)
        assert contains(0x1000, 0x1000, 0x1800, 0x100)
        assert not contains(0x1000, 0x1000, 0x1800, 0x1000)

    def test_overlap_size(self):
        assert get_overlap_size(0, 10, 5, 20) == 5
        assert get_overlap_size(0, 10, 10, 20) == 0

    def test_allocation_size_from_pages(self):
        assert get_allocation_size_in_bytes(3) == 3 * PAGE_SIZE_4KB
        assert get_allocation_size_in_bytes(2, 0x10000) == 0x20000
        assert get_allocation_size_in_bytes(0) == 0


class TestContainingHeap:
    def test_zero_is_system_memory(self):
        assert containing_heap([], 0) == HeapType.SYSTEM

    def test_finds_segment(self):
        segments = make_segments()
        assert containing_heap(segments, LOCAL_BASE) == HeapType.LOCAL
        assert containing_heap(segments, LOCAL_BASE + SEGMENT_SIZE - 1) == HeapType.LOCAL
        assert containing_heap(segments, SYSTEM_BASE + 0x10) == HeapType.SYSTEM

    def test_unknown_address(self):
        segments = make_segments()
        assert containing_heap(segments, LOCAL_BASE + SEGMENT_SIZE * 50) == HeapType.UNKNOWN
