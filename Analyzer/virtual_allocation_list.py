"""
Copyright (c) 2026, Chen Jie, Joungtao, Xuzheng Jiang
All rights reserved.
This source code is licensed under the BSD-2-Clause license found in the
LICENSE file in the root directory of this source tree.
"""

# virtual_allocation_list.py
import bisect
from collections.abc import Iterator

from common_types import HeapType, ResourceType, VirtualAllocation
from address_helper import overlaps
from errors import DuplicateAllocationError, MalformedTraceError


def _base_address(allocation: VirtualAllocation) -> int:
    return allocation.base_address


class VirtualAllocationList:
    """存活的虚拟分配，按基地址排序，任意两个分配的地址范围互不重叠。"""

    def __init__(self):
        self.allocations: list[VirtualAllocation] = []
        self.next_guid: int = 0

    def __len__(self) -> int:
        return len(self.allocations)

    def __iter__(self) -> Iterator[VirtualAllocation]:
        return iter(self.allocations)

    def add(
        self,
        base_address: int,
        size_in_bytes: int,
        timestamp: int,
        heap_preferences: tuple[HeapType, ...]
    ) -> VirtualAllocation:
        """
        插入新的虚拟分配。
        Raises:
            MalformedTraceError: 分配大小不是正数。
            DuplicateAllocationError: 地址范围与一个存活的分配重叠。
        """
        # 查找只检查左右邻居，依赖列表中每个分配都非空
        if size_in_bytes <= 0:
            raise MalformedTraceError(f"虚拟分配 {hex(base_address)} 的大小无效: {size_in_bytes}")

        idx = bisect.bisect_left(self.allocations, base_address, key=_base_address)
        end_address = base_address + size_in_bytes

        # 排好序且互不重叠，所以只需检查左右两个邻居
        for neighbour in self.allocations[max(0, idx - 1):idx + 1]:
            if overlaps(neighbour.base_address, neighbour.end_address, base_address, end_address):
                raise DuplicateAllocationError(
                    f"虚拟分配 [{hex(base_address)}, {hex(end_address)}) 与存活分配 "
                    f"[{hex(neighbour.base_address)}, {hex(neighbour.end_address)}) 重叠"
                )

        allocation = VirtualAllocation(
            guid=self.next_guid,
            base_address=base_address,
            size_in_bytes=size_in_bytes,
            timestamp=timestamp,
            heap_preferences=tuple(heap_preferences),
        )
        self.next_guid += 1
        self.allocations.insert(idx, allocation)
        return allocation

    def remove(self, base_address: int) -> VirtualAllocation:
        """
        移除基地址匹配的分配。仍绑定在其上的资源变为孤立状态 (反向引用被清空)。
        Raises:
            MalformedTraceError: 没有基地址匹配的存活分配。
        """
        idx = bisect.bisect_left(self.allocations, base_address, key=_base_address)
        if idx >= len(self.allocations) or self.allocations[idx].base_address != base_address:
            raise MalformedTraceError(f"释放的虚拟地址 {hex(base_address)} 没有对应的分配")

        allocation = self.allocations.pop(idx)
        for resource in allocation.resources:
            resource.bound_allocation = None
        allocation.resources = []
        return allocation

    def find_by_base_address(self, base_address: int) -> VirtualAllocation | None:
        idx = bisect.bisect_left(self.allocations, base_address, key=_base_address)
        if idx < len(self.allocations) and self.allocations[idx].base_address == base_address:
            return self.allocations[idx]
        return None

    def find_containing(self, address: int) -> VirtualAllocation | None:
        """返回包含该地址的分配 (按地址包含关系，而不是标识符)。"""
        idx = bisect.bisect_right(self.allocations, address, key=_base_address)
        if idx == 0:
            return None
        allocation = self.allocations[idx - 1]
        if allocation.base_address <= address < allocation.end_address:
            return allocation
        return None


def get_bound_ranges(allocation: VirtualAllocation) -> list[tuple[int, int]]:
    """返回分配中被非堆资源覆盖的区间，已排序并合并重叠 (资源可以别名)。"""
    ranges = sorted(
        (resource.address, resource.end_address)
        for resource in allocation.resources
        if resource.resource_type != ResourceType.HEAP and resource.size_in_bytes > 0
    )
    merged: list[tuple[int, int]] = []
    for start, end in ranges:
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def get_total_resource_memory_in_bytes(allocation: VirtualAllocation) -> int:
    """分配中所有非堆资源的大小之和。"""
    return sum(
        resource.size_in_bytes
        for resource in allocation.resources
        if resource.resource_type != ResourceType.HEAP
    )


def get_total_unbound_space_in_bytes(allocation: VirtualAllocation) -> int:
    """分配中没有被任何资源覆盖的字节数。"""
    bound = sum(end - start for start, end in get_bound_ranges(allocation))
    return allocation.size_in_bytes - bound


def count_unbound_regions(allocation: VirtualAllocation) -> int:
    """统计分配中未绑定的连续子区间的数量。"""
    count = 0
    cursor = allocation.base_address
    for start, end in get_bound_ranges(allocation):
        if start > cursor:
            count += 1
        cursor = max(cursor, end)
    if cursor < allocation.end_address:
        count += 1
    return count
