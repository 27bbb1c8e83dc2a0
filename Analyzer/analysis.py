"""
Copyright (c) 2026, Chen Jie, Joungtao, Xuzheng Jiang
All rights reserved.
This source code is licensed under the BSD-2-Clause license found in the
LICENSE file in the root directory of this source tree.
"""

# analysis.py
import logging
from dataclasses import asdict, dataclass
from typing import Any

from common_types import DataSnapshot, HeapType, ResourceUsageType, SegmentStatus
from errors import InvalidArgumentError
from virtual_allocation_list import get_total_resource_memory_in_bytes, get_total_unbound_space_in_bytes

logger = logging.getLogger(__name__)


@dataclass
class HeapDelta:
    """单个堆在一个快照中的汇总，或两个快照之间的差值"""
    heap_type: HeapType
    allocation_count: int = 0
    resource_count: int = 0
    total_allocated_and_bound: int = 0
    total_allocated_and_unbound: int = 0
    total_available_size: int = 0
    free_space: int = 0

    def to_dict(self) -> dict[str, Any]:
        result = asdict(self)
        result["heap_type"] = self.heap_type.name
        return result


def get_heap_delta(snapshot: DataSnapshot, heap_type: HeapType) -> HeapDelta:
    """
    汇总首选堆为 heap_type 的所有分配：分配数、资源数、已绑定和未绑定的字节数。
    """
    if snapshot is None:
        raise InvalidArgumentError("snapshot 不能为空")

    delta = HeapDelta(heap_type=heap_type)
    total_allocated = 0
    for allocation in snapshot.virtual_allocations:
        if allocation.primary_heap != heap_type:
            continue
        total_allocated += allocation.size_in_bytes
        delta.allocation_count += 1
        delta.resource_count += allocation.resource_count
        delta.total_allocated_and_bound += get_total_resource_memory_in_bytes(allocation)
        delta.total_allocated_and_unbound += get_total_unbound_space_in_bytes(allocation)

    if snapshot.data_set is not None:
        delta.total_available_size = snapshot.data_set.get_segment_size(heap_type)
        delta.free_space = max(0, delta.total_available_size - total_allocated)
    return delta


def compare_heap_delta(base: DataSnapshot, diff: DataSnapshot, heap_type: HeapType) -> HeapDelta:
    """
    计算 diff 相对 base 在某个堆上的变化量。可用大小取自 base，其余字段为 diff - base。
    """
    if base is None or diff is None:
        raise InvalidArgumentError("比较需要 base 和 diff 两个快照")

    base_data = get_heap_delta(base, heap_type)
    diff_data = get_heap_delta(diff, heap_type)
    return HeapDelta(
        heap_type=heap_type,
        allocation_count=diff_data.allocation_count - base_data.allocation_count,
        resource_count=diff_data.resource_count - base_data.resource_count,
        total_allocated_and_bound=diff_data.total_allocated_and_bound - base_data.total_allocated_and_bound,
        total_allocated_and_unbound=diff_data.total_allocated_and_unbound - base_data.total_allocated_and_unbound,
        total_available_size=base_data.total_available_size,
        free_space=diff_data.free_space - base_data.free_space,
    )


def top_resource_usages(status: SegmentStatus, count: int) -> tuple[list[tuple[ResourceUsageType, int]], int]:
    """
    按物理字节数降序返回前 count 个资源用途 (跳过为 0 的用途)，以及其余用途的字节数之和。
    Args:
        status (SegmentStatus): 堆的统计。
        count (int): 需要返回的用途数量。
    Returns:
        tuple: ([(用途, 字节数), ...], 其余字节数)
    """
    ranked = sorted(
        ((usage, size) for usage, size in status.physical_bytes_per_resource_usage.items() if size > 0),
        key=lambda item: (-item[1], item[0]),
    )
    count = max(0, count)
    top = ranked[:count]
    remainder = sum(size for _, size in ranked[count:])
    return top, remainder


def summarize_snapshot(snapshot: DataSnapshot) -> dict[str, Any]:
    """生成快照的摘要，用于日志和导出。"""
    if snapshot is None:
        raise InvalidArgumentError("snapshot 不能为空")

    summary: dict[str, Any] = {
        "name": snapshot.name,
        "timestamp": snapshot.timestamp,
        "allocation_count": len(snapshot.virtual_allocations),
        "resource_count": len(snapshot.resources),
        "total_virtual_memory": sum(allocation.size_in_bytes for allocation in snapshot.virtual_allocations),
        "largest_resource_size": snapshot.get_largest_resource_size(),
        "smallest_resource_size": snapshot.get_smallest_resource_size(),
        "resources_without_allocation": sum(
            1 for resource in snapshot.resources
            if resource.bound_allocation is None and resource.size_in_bytes > 0
        ),
    }
    if snapshot.page_table is not None:
        summary["mapped_per_heap"] = {
            heap.name: snapshot.page_table.mapped_per_heap[heap]
            for heap in (HeapType.LOCAL, HeapType.INVISIBLE, HeapType.SYSTEM)
        }
    return summary
