"""
Tests for snapshot replay.
"""

import logging

import pytest

from common_types import (
    CpuMapToken, HeapType, PageTableUpdateToken, ResidencyUpdateToken, ResourceBindToken,
    ResourceCreateToken, ResourceDestroyToken, ResourceType, VirtualAllocateToken, VirtualFreeToken,
)
from data_set import DataSet
from errors import DuplicateAllocationError, InvalidArgumentError, MalformedTraceError
from snapshot_builder import build_snapshot, generate_snapshots
from virtual_allocation_list import get_total_resource_memory_in_bytes, get_total_unbound_space_in_bytes

from conftest import ALLOC_A, ALLOC_B, make_segments


def _data_set(*streams):
    return DataSet(streams=list(streams), segment_info=make_segments(), target_process_id=1)


def _aggregates(snapshot):
    return (
        [(a.base_address, a.size_in_bytes, a.resource_count) for a in snapshot.virtual_allocations],
        [(r.identifier, r.address, r.size_in_bytes) for r in snapshot.resources],
        list(snapshot.page_table.fragments),
        dict(snapshot.page_table.mapped_per_heap),
    )


class TestBuildSnapshot:
    def test_state_at_cutoff(self, basic_data_set):
        snapshot = build_snapshot(basic_data_set, 7)

        assert snapshot.name == "snapshot_7"
        assert snapshot.timestamp == 7
        assert [a.base_address for a in snapshot.virtual_allocations] == [ALLOC_A]
        assert [r.identifier for r in snapshot.resources] == [1, 2]

        allocation = snapshot.virtual_allocations[0]
        assert allocation.resource_count == 2
        assert allocation.map_count == 1
        assert allocation.last_cpu_map == 5
        assert allocation.unbound_memory_region_count == 2
        assert get_total_resource_memory_in_bytes(allocation) == 0x2000
        assert get_total_unbound_space_in_bytes(allocation) == 0x2000
        assert snapshot.page_table.mapped_per_heap[HeapType.LOCAL] == 0x2000

    def test_token_at_cutoff_is_included(self, basic_data_set):
        assert len(build_snapshot(basic_data_set, 8).virtual_allocations) == 2
        assert len(build_snapshot(basic_data_set, 7).virtual_allocations) == 1

    def test_cutoff_before_trace_is_empty(self, basic_data_set):
        snapshot = build_snapshot(basic_data_set, 0)

        assert snapshot.virtual_allocations == ()
        assert snapshot.resources == ()

    def test_cutoff_past_end(self, basic_data_set):
        snapshot = build_snapshot(basic_data_set, 10_000)

        assert [a.base_address for a in snapshot.virtual_allocations] == [ALLOC_A]
        assert [r.identifier for r in snapshot.resources] == [1]
        assert snapshot.virtual_allocations[0].unbound_memory_region_count == 1

    def test_idempotent(self, basic_data_set):
        assert _aggregates(build_snapshot(basic_data_set, 8)) == _aggregates(build_snapshot(basic_data_set, 8))

    def test_prefix_property(self, basic_data_set):
        freed = {ALLOC_B: 10}
        destroyed = {2: 9}
        cutoffs = [0, 3, 7, 8, 9, 10, 11]
        snapshots = {cutoff: build_snapshot(basic_data_set, cutoff) for cutoff in cutoffs}

        for i, t1 in enumerate(cutoffs):
            for t2 in cutoffs[i:]:
                later_allocations = {a.base_address for a in snapshots[t2].virtual_allocations}
                later_resources = {r.identifier for r in snapshots[t2].resources}
                for allocation in snapshots[t1].virtual_allocations:
                    if not t1 < freed.get(allocation.base_address, -1) <= t2:
                        assert allocation.base_address in later_allocations
                for resource in snapshots[t1].resources:
                    if not t1 < destroyed.get(resource.identifier, -1) <= t2:
                        assert resource.identifier in later_resources

    def test_lookups(self, basic_data_set):
        snapshot = build_snapshot(basic_data_set, 7)

        assert snapshot.find_allocation(ALLOC_A + 0x3fff).base_address == ALLOC_A
        assert snapshot.find_allocation(ALLOC_A + 0x4000) is None

    def test_invalid_arguments(self, basic_data_set):
        with pytest.raises(InvalidArgumentError):
            build_snapshot(None, 5)
        with pytest.raises(InvalidArgumentError):
            build_snapshot(basic_data_set, "5")
        with pytest.raises(InvalidArgumentError):
            build_snapshot(basic_data_set, True)


class TestMalformedTrace:
    def test_overlapping_allocation(self):
        data_set = _data_set([
            VirtualAllocateToken(1, 0, 0x1000, 0x2000),
            VirtualAllocateToken(2, 0, 0x2000, 0x1000),
        ])
        with pytest.raises(DuplicateAllocationError):
            build_snapshot(data_set, 10)

    def test_overlap_with_freed_allocation_is_allowed(self):
        data_set = _data_set([
            VirtualAllocateToken(1, 0, 0x1000, 0x2000),
            VirtualFreeToken(2, 0, 0x1000),
            VirtualAllocateToken(3, 0, 0x2000, 0x1000),
        ])
        assert len(build_snapshot(data_set, 10).virtual_allocations) == 1

    def test_zero_size_allocation(self):
        data_set = _data_set([
            VirtualAllocateToken(1, 0, 0x1000, 0x1000),
            VirtualAllocateToken(2, 0, 0x1800, 0),
        ])
        with pytest.raises(MalformedTraceError, match="0x1800"):
            build_snapshot(data_set, 10)

    def test_zero_size_allocation_does_not_hide_live_allocation(self):
        data_set = _data_set([
            VirtualAllocateToken(1, 0, 0x1000, 0x1000),
            VirtualAllocateToken(2, 0, 0x1800, 0),
            VirtualAllocateToken(3, 0, 0x1c00, 0x1000),
        ])
        with pytest.raises(MalformedTraceError) as excinfo:
            build_snapshot(data_set, 10)
        assert not isinstance(excinfo.value, DuplicateAllocationError)

        # 没有空分配时，重叠仍会被检测到
        data_set = _data_set([
            VirtualAllocateToken(1, 0, 0x1000, 0x1000),
            VirtualAllocateToken(3, 0, 0x1c00, 0x1000),
        ])
        with pytest.raises(DuplicateAllocationError):
            build_snapshot(data_set, 10)

    def test_free_without_allocation(self):
        data_set = _data_set([VirtualFreeToken(1, 0, 0x5000)])
        with pytest.raises(MalformedTraceError, match="0x5000"):
            build_snapshot(data_set, 10)

    def test_destroy_without_create(self):
        data_set = _data_set([ResourceDestroyToken(1, 0, 42)])
        with pytest.raises(MalformedTraceError, match="42"):
            build_snapshot(data_set, 10)

    def test_duplicate_create(self):
        data_set = _data_set([
            ResourceCreateToken(1, 0, 1, ResourceType.BUFFER),
            ResourceCreateToken(2, 0, 1, ResourceType.BUFFER),
        ])
        with pytest.raises(MalformedTraceError):
            build_snapshot(data_set, 10)

    def test_resource_outside_allocation(self):
        data_set = _data_set([
            VirtualAllocateToken(1, 0, 0x1000, 0x1000),
            ResourceCreateToken(2, 0, 1, ResourceType.BUFFER),
            ResourceBindToken(3, 0, 1, 0x1800, 0x1000),
        ])
        with pytest.raises(MalformedTraceError):
            build_snapshot(data_set, 10)


class TestBinding:
    def test_free_orphans_resources(self):
        data_set = _data_set([
            VirtualAllocateToken(1, 0, 0x1000, 0x1000),
            ResourceCreateToken(2, 0, 1, ResourceType.BUFFER),
            ResourceBindToken(3, 0, 1, 0x1000, 0x800),
            VirtualFreeToken(4, 0, 0x1000),
        ])
        snapshot = build_snapshot(data_set, 10)

        assert snapshot.virtual_allocations == ()
        resource = snapshot.find_resource(1)
        assert resource is not None
        assert resource.bound_allocation is None

    def test_bind_without_allocation_stays_unbound(self, caplog):
        data_set = _data_set([
            ResourceCreateToken(1, 0, 1, ResourceType.IMAGE),
            ResourceBindToken(2, 0, 1, 0x9000, 0x100),
        ])
        with caplog.at_level(logging.WARNING):
            snapshot = build_snapshot(data_set, 10)

        assert snapshot.find_resource(1).bound_allocation is None
        assert "0x9000" in caplog.text

    def test_system_memory_bind(self):
        data_set = _data_set([
            VirtualAllocateToken(1, 0, 0x1000, 0x1000),
            ResourceCreateToken(2, 0, 1, ResourceType.BUFFER),
            ResourceBindToken(3, 0, 1, 0x1000, 0x100, is_system_memory=True),
        ])
        snapshot = build_snapshot(data_set, 10)

        assert snapshot.find_resource(1).bound_allocation is None
        assert snapshot.virtual_allocations[0].resource_count == 0

    def test_rebind_moves_resource(self):
        data_set = _data_set([
            VirtualAllocateToken(1, 0, 0x1000, 0x1000),
            VirtualAllocateToken(2, 0, 0x4000, 0x1000),
            ResourceCreateToken(3, 0, 1, ResourceType.BUFFER),
            ResourceBindToken(4, 0, 1, 0x1000, 0x100),
            ResourceBindToken(5, 0, 1, 0x4100, 0x100),
        ])
        snapshot = build_snapshot(data_set, 10)

        first, second = snapshot.virtual_allocations
        assert first.resource_count == 0
        assert second.resources == [snapshot.find_resource(1)]
        assert snapshot.find_resource(1).bind_time == 5

    def test_page_table_update_uses_page_size(self):
        data_set = _data_set([
            VirtualAllocateToken(1, 0, 0x100000, 0x40000),
            PageTableUpdateToken(2, 0, 0x100000, 0, 2, page_size=0x10000),
            PageTableUpdateToken(3, 0, 0x100000, 0, 1, page_size=0x10000, is_unmapping=True),
        ])

        assert build_snapshot(data_set, 2).page_table.mapped_per_heap[HeapType.SYSTEM] == 0x20000
        assert build_snapshot(data_set, 3).page_table.mapped_per_heap[HeapType.SYSTEM] == 0x10000

    def test_events_for_missing_allocation_are_ignored(self):
        data_set = _data_set([
            CpuMapToken(1, 0, 0x7000),
            ResidencyUpdateToken(2, 0, 0x7000),
            PageTableUpdateToken(3, 0, 0x7000, 0, 1),
        ])
        snapshot = build_snapshot(data_set, 10)

        assert snapshot.virtual_allocations == ()
        assert snapshot.page_table.mapped_per_heap[HeapType.SYSTEM] == 0x1000


class TestGenerateSnapshots:
    def test_matches_individual_builds(self, basic_data_set):
        snapshots = list(generate_snapshots(basic_data_set, [7, 3, 100]))

        assert [s.timestamp for s in snapshots] == [3, 7, 100, "final"]
        for snapshot in snapshots[:-1]:
            assert _aggregates(snapshot) == _aggregates(build_snapshot(basic_data_set, snapshot.timestamp))
        assert _aggregates(snapshots[-1]) == _aggregates(snapshots[2])

    def test_snapshots_are_independent(self, basic_data_set):
        early, final = generate_snapshots(basic_data_set, [3])

        assert [r.identifier for r in early.resources] == [1]
        assert early.virtual_allocations[0].resource_count == 1
        assert final.virtual_allocations[0] is not early.virtual_allocations[0]
        assert early.page_table.mapped_per_heap[HeapType.LOCAL] == 0

    def test_only_final(self, basic_data_set):
        snapshots = list(generate_snapshots(basic_data_set))

        assert len(snapshots) == 1
        assert snapshots[0].name == "final"

    def test_invalid_cutoff(self, basic_data_set):
        with pytest.raises(InvalidArgumentError):
            list(generate_snapshots(basic_data_set, [1, "x"]))
