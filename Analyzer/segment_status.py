"""
Copyright (c) 2026, Chen Jie, Joungtao, Xuzheng Jiang
All rights reserved.
This source code is licensed under the BSD-2-Clause license found in the
LICENSE file in the root directory of this source tree.
"""

# segment_status.py
import logging

from common_types import (
    BackingStorage, DataSnapshot, HeapType, HEAP_TYPE_COUNT, Resource, ResourceType,
    SegmentStatus, SegmentStatusFlag as Flag, SubscriptionStatus,
)
from address_helper import containing_heap
from errors import InvalidArgumentError

logger = logging.getLogger(__name__)

# 请求量超过物理大小的 80% 即视为接近上限，固定常量，不可配置
CLOSE_TO_LIMIT_NUMERATOR = 8
CLOSE_TO_LIMIT_DENOMINATOR = 10

HEAP_FLAGS = {
    HeapType.LOCAL: Flag.VRAM | Flag.GPU_VISIBLE | Flag.GPU_CACHED | Flag.CPU_VISIBLE,
    HeapType.INVISIBLE: Flag.VRAM | Flag.GPU_VISIBLE | Flag.GPU_CACHED,
    HeapType.SYSTEM: Flag.HOST | Flag.GPU_VISIBLE | Flag.GPU_CACHED | Flag.CPU_VISIBLE | Flag.CPU_CACHED,
}


def get_backing_storage_histogram(snapshot: DataSnapshot, resource: Resource) -> dict[BackingStorage, int]:
    """
    统计资源的每个字节由哪个堆支撑。没有绑定分配的资源对驻留没有影响，全部计入 UNMAPPED。
    """
    if resource.bound_allocation is None or snapshot.page_table is None:
        histogram = {storage: 0 for storage in BackingStorage}
        histogram[BackingStorage.UNMAPPED] = resource.size_in_bytes
        return histogram
    return snapshot.page_table.get_backing_histogram(resource.address, resource.size_in_bytes)


def get_segment_for_address(snapshot: DataSnapshot, address: int) -> HeapType:
    """返回物理地址所在的堆；0 表示系统内存。"""
    segments = snapshot.data_set.segment_info if snapshot.data_set is not None else []
    return containing_heap(segments, address)


def get_segment_status(snapshot: DataSnapshot, heap_type: HeapType) -> SegmentStatus:
    """
    计算某个堆的聚合统计。
    Args:
        snapshot (DataSnapshot): 已构建的快照。
        heap_type (HeapType): 目标堆。
    Returns:
        SegmentStatus: 该堆的统计。
    Raises:
        InvalidArgumentError: 快照为空或堆类型无效。
    """
    if snapshot is None:
        raise InvalidArgumentError("snapshot 不能为空")
    try:
        heap_type = HeapType(heap_type)
    except ValueError as e:
        raise InvalidArgumentError(f"无效的堆类型: {heap_type!r}") from e

    status = SegmentStatus(heap_type=heap_type, flags=HEAP_FLAGS.get(heap_type, Flag.NONE))
    if snapshot.data_set is not None:
        status.total_physical_size = snapshot.data_set.get_segment_size(heap_type)
    if snapshot.page_table is not None:
        status.total_physical_mapped_by_process = snapshot.page_table.mapped_per_heap[heap_type]
        status.total_physical_mapped_by_other_processes = snapshot.page_table.mapped_by_other_processes_per_heap[heap_type]

    min_allocation_size = None
    max_allocation_size = 0
    for allocation in snapshot.virtual_allocations:
        is_preferred_heap = allocation.primary_heap == heap_type

        if is_preferred_heap:
            status.total_virtual_memory_requested += allocation.size_in_bytes
            status.allocation_count += 1
            max_allocation_size = max(max_allocation_size, allocation.size_in_bytes)
            if min_allocation_size is None or allocation.size_in_bytes < min_allocation_size:
                min_allocation_size = allocation.size_in_bytes

        # 无论分配偏好哪个堆，都遍历其资源，统计它们在该堆中实际驻留的字节
        for resource in allocation.resources:
            if resource.resource_type == ResourceType.HEAP:
                continue
            if is_preferred_heap:
                status.total_bound_virtual_memory += resource.size_in_bytes
            if heap_type < HEAP_TYPE_COUNT:
                histogram = get_backing_storage_histogram(snapshot, resource)
                status.physical_bytes_per_resource_usage[resource.usage_type] += histogram[BackingStorage(int(heap_type))]

    status.min_allocation_size = min_allocation_size or 0
    status.max_allocation_size = max_allocation_size
    if status.allocation_count > 0:
        status.mean_allocation_size = status.total_virtual_memory_requested // status.allocation_count
    return status


def get_subscription_status(status: SegmentStatus) -> SubscriptionStatus:
    """
    比较请求的虚拟内存和物理大小：超过物理大小为 OVER_LIMIT，
    超过物理大小的 80% 为 CLOSE_TO_LIMIT，否则为 UNDER_LIMIT。两处比较都是严格大于。
    """
    if status is None:
        raise InvalidArgumentError("segment status 不能为空")
    close_limit = status.total_physical_size * CLOSE_TO_LIMIT_NUMERATOR // CLOSE_TO_LIMIT_DENOMINATOR
    if status.total_virtual_memory_requested > status.total_physical_size:
        return SubscriptionStatus.OVER_LIMIT
    if status.total_virtual_memory_requested > close_limit:
        return SubscriptionStatus.CLOSE_TO_LIMIT
    return SubscriptionStatus.UNDER_LIMIT
