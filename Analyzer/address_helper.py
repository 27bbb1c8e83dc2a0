"""
Copyright (c) 2026, Chen Jie, Joungtao, Xuzheng Jiang
All rights reserved.
This source code is licensed under the BSD-2-Clause license found in the
LICENSE file in the root directory of this source tree.
"""

# address_helper.py
from collections.abc import Iterable

from common_types import HeapType, SegmentInfo

PAGE_SIZE_4KB = 4096


def overlaps(start_a: int, end_a: int, start_b: int, end_b: int) -> bool:
    """
    判断两个半开区间 [start_a, end_a) 和 [start_b, end_b) 是否重叠。
    空区间不与任何区间重叠，包括它自己。
    """
    return max(start_a, start_b) < min(end_a, end_b)


def allocations_overlap(address_a: int, size_a: int, address_b: int, size_b: int) -> bool:
    """以 (起始地址, 大小) 的形式判断两段内存是否重叠。"""
    return overlaps(address_a, address_a + size_a, address_b, address_b + size_b)


def contains(outer_address: int, outer_size: int, address: int, size: int) -> bool:
    """判断 [address, address + size) 是否完全落在外层区间内。"""
    return outer_address <= address and address + size <= outer_address + outer_size


def get_overlap_size(start_a: int, end_a: int, start_b: int, end_b: int) -> int:
    """返回两个半开区间重叠部分的字节数。"""
    return max(0, min(end_a, end_b) - max(start_a, start_b))


def get_allocation_size_in_bytes(size_in_pages: int, page_size: int = PAGE_SIZE_4KB) -> int:
    return size_in_pages * page_size


def containing_heap(segments: Iterable[SegmentInfo], address: int) -> HeapType:
    """
    返回物理地址所在的堆。
    段的数量很少 (通常不超过 4 个)，所以直接线性扫描。
    地址 0 是 "没有 GPU 地址 / 仅 CPU 资源" 的标记，视为系统内存。
    """
    if address == 0:
        return HeapType.SYSTEM

    for segment in segments:
        if segment.base_address <= address < segment.base_address + segment.size:
            return segment.heap_type

    return HeapType.UNKNOWN
