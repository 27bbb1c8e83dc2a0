"""
Tests for resource life-cycle history replay.
"""

import pytest

from common_types import (
    CpuMapToken, DataSnapshot, PageTableUpdateToken, ResidencyUpdateToken, ResidencyUpdateType,
    Resource, ResourceBindToken, ResourceCreateToken, ResourceHistoryEventType as Event, ResourceType,
    VirtualAllocateToken, VirtualAllocation, VirtualFreeToken,
)
from data_set import DataSet
from errors import InvalidArgumentError, ResourceNotResolvableError
from page_table import PageTable
from resource_history import generate_resource_history
from snapshot_builder import build_snapshot

from conftest import make_segments


def _events(history):
    return [(event.event_type, event.timestamp) for event in history.events]


class TestResourceHistory:
    def test_ordering_with_cpu_map_before_bind(self):
        data_set = DataSet(streams=[
            [ResourceCreateToken(10, 1, 7, ResourceType.BUFFER), ResourceBindToken(20, 1, 7, 0x1000, 0x100)],
            [CpuMapToken(15, 2, 0x1000), CpuMapToken(25, 2, 0x1000, is_unmap=True)],
        ])
        allocation = VirtualAllocation(guid=0, base_address=0x1000, size_in_bytes=0x1000, timestamp=0)
        resource = Resource(
            identifier=7, resource_type=ResourceType.BUFFER, create_time=10,
            bind_time=20, address=0x1000, size_in_bytes=0x100, bound_allocation=allocation,
        )
        allocation.resources.append(resource)
        snapshot = DataSnapshot(
            name="s", timestamp=30, virtual_allocations=(allocation,), resources=(resource,),
            page_table=PageTable(), data_set=data_set,
        )

        history = generate_resource_history(snapshot, resource)

        assert _events(history) == [
            (Event.RESOURCE_CREATED, 10),
            (Event.VIRTUAL_MEMORY_MAPPED, 15),
            (Event.RESOURCE_BOUND, 20),
            (Event.VIRTUAL_MEMORY_UNMAPPED, 25),
        ]
        assert [event.thread_id for event in history.events] == [1, 2, 1, 2]
        assert history.base_allocation is allocation

    def test_replays_full_trace_past_cutoff(self, basic_data_set):
        snapshot = build_snapshot(basic_data_set, 7)

        history = generate_resource_history(snapshot, snapshot.find_resource(2))

        assert _events(history) == [
            (Event.VIRTUAL_MEMORY_ALLOCATED, 1),
            (Event.VIRTUAL_MEMORY_MAPPED, 5),
            (Event.RESOURCE_CREATED, 6),
            (Event.RESOURCE_BOUND, 7),
            (Event.RESOURCE_DESTROYED, 9),
        ]

    def test_physical_events_are_flagged(self, basic_data_set):
        snapshot = build_snapshot(basic_data_set, 100)

        history = generate_resource_history(snapshot, snapshot.find_resource(1))

        assert _events(history) == [
            (Event.VIRTUAL_MEMORY_ALLOCATED, 1),
            (Event.RESOURCE_CREATED, 2),
            (Event.RESOURCE_BOUND, 3),
            (Event.PHYSICAL_MAP_TO_LOCAL, 4),
            (Event.VIRTUAL_MEMORY_MAPPED, 5),
        ]
        assert [event.is_physical for event in history.events] == [False, False, False, True, False]

    def test_residency_and_host_mapping(self):
        data_set = DataSet(streams=[[
            VirtualAllocateToken(1, 0, 0x1000, 0x1000),
            ResourceCreateToken(2, 0, 5, ResourceType.IMAGE),
            ResourceBindToken(3, 0, 5, 0x1000, 0x1000),
            ResidencyUpdateToken(4, 0, 0x1000),
            PageTableUpdateToken(5, 0, 0x1000, 0, 1),
            PageTableUpdateToken(6, 0, 0x1000, 0, 1, is_unmapping=True),
            ResidencyUpdateToken(7, 0, 0x1000, ResidencyUpdateType.REMOVE),
            VirtualFreeToken(8, 0, 0x1000),
        ]], segment_info=make_segments())
        snapshot = build_snapshot(data_set, 7)

        history = generate_resource_history(snapshot, snapshot.find_resource(5))

        assert [event_type for event_type, _ in _events(history)] == [
            Event.VIRTUAL_MEMORY_ALLOCATED,
            Event.RESOURCE_CREATED,
            Event.RESOURCE_BOUND,
            Event.VIRTUAL_MEMORY_MAKE_RESIDENT,
            Event.PHYSICAL_MAP_TO_HOST,
            Event.PHYSICAL_UNMAP,
            Event.VIRTUAL_MEMORY_EVICT,
            Event.VIRTUAL_MEMORY_FREE,
        ]

    def test_unbound_resource_only_sees_identifier_events(self):
        data_set = DataSet(streams=[[
            ResourceCreateToken(1, 0, 3, ResourceType.BUFFER),
            ResourceBindToken(2, 0, 3, 0x9000, 0x100),
            CpuMapToken(3, 0, 0x9000),
        ]])
        snapshot = build_snapshot(data_set, 10)

        history = generate_resource_history(snapshot, snapshot.find_resource(3))

        assert _events(history) == [(Event.RESOURCE_CREATED, 1), (Event.RESOURCE_BOUND, 2)]

    def test_history_to_dict(self, basic_data_set):
        snapshot = build_snapshot(basic_data_set, 100)
        data = generate_resource_history(snapshot, snapshot.find_resource(1)).to_dict()

        assert data["resource"] == 1
        assert data["events"][3] == {"event": "physical_map_to_local", "thread_id": 200, "timestamp": 4, "physical": True}


class TestResourceHistoryErrors:
    def test_missing_arguments(self, basic_data_set):
        snapshot = build_snapshot(basic_data_set, 100)
        with pytest.raises(InvalidArgumentError):
            generate_resource_history(None, snapshot.resources[0])
        with pytest.raises(InvalidArgumentError):
            generate_resource_history(snapshot, None)

    def test_resource_without_identifier(self, basic_data_set):
        snapshot = build_snapshot(basic_data_set, 100)
        resource = Resource(identifier=None, resource_type=ResourceType.BUFFER, create_time=0)
        with pytest.raises(ResourceNotResolvableError):
            generate_resource_history(snapshot, resource)

    def test_snapshot_without_trace(self, basic_data_set):
        snapshot = build_snapshot(basic_data_set, 100)
        snapshot.data_set = None
        with pytest.raises(InvalidArgumentError):
            generate_resource_history(snapshot, snapshot.resources[0])
