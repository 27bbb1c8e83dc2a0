"""
Copyright (c) 2026, Chen Jie, Joungtao, Xuzheng Jiang
All rights reserved.
This source code is licensed under the BSD-2-Clause license found in the
LICENSE file in the root directory of this source tree.
"""

# page_table.py
import bisect
from typing import Any

from common_types import BackingStorage, HeapType, HEAP_TYPE_COUNT
from address_helper import get_overlap_size

# 每个片段是 (start_addr, end_addr, heap_type)，列表始终按起始地址排序且互不重叠
Fragment = tuple[int, int, HeapType]


def _fragment_start(fragment: Fragment) -> int:
    return fragment[0]


def _update_fragments(
    fragments: list[Fragment],
    totals: dict[HeapType, int],
    addr_start: int,
    addr_end: int,
    heap_type: HeapType | None
):
    """
    把 [addr_start, addr_end) 设置为由 heap_type 支撑 (heap_type 为 None 表示解除映射)，
    切分被覆盖的旧片段，合并相邻的同堆片段，并增量维护每个堆的映射总量。
    """
    # 1. 二分查找定位受影响的片段范围
    start_idx = bisect.bisect_left(fragments, addr_start, key=_fragment_start)
    if start_idx > 0 and fragments[start_idx - 1][1] > addr_start:
        # 前一个片段跨过了 addr_start
        start_idx -= 1
    end_idx = bisect.bisect_left(fragments, addr_end, key=_fragment_start)

    # 从统计中减去被覆盖的旧片段
    for frag_start, frag_end, frag_heap in fragments[start_idx:end_idx]:
        totals[frag_heap] -= frag_end - frag_start

    # 2. 构造替换用的新片段
    new_frags: list[Fragment] = []
    if start_idx < end_idx:
        frag_start, _, frag_heap = fragments[start_idx]
        if frag_start < addr_start:
            new_frags.append((frag_start, addr_start, frag_heap))

    if heap_type is not None:
        new_frags.append((addr_start, addr_end, heap_type))

    if start_idx < end_idx:
        _, frag_end, frag_heap = fragments[end_idx - 1]
        if frag_end > addr_end:
            new_frags.append((addr_end, frag_end, frag_heap))

    # 3. 与左右邻居合并相邻的同堆片段
    merged_frags: list[Fragment] = []
    if new_frags:
        if start_idx > 0:
            left_start, left_end, left_heap = fragments[start_idx - 1]
            if left_end == new_frags[0][0] and left_heap == new_frags[0][2]:
                totals[left_heap] -= left_end - left_start
                new_frags[0] = (left_start, new_frags[0][1], left_heap)
                start_idx -= 1

        current_start, current_end, current_heap = new_frags[0]
        for next_start, next_end, next_heap in new_frags[1:]:
            if next_start == current_end and next_heap == current_heap:
                current_end = next_end
            else:
                merged_frags.append((current_start, current_end, current_heap))
                current_start, current_end, current_heap = next_start, next_end, next_heap
        merged_frags.append((current_start, current_end, current_heap))

        if end_idx < len(fragments):
            right_start, right_end, right_heap = fragments[end_idx]
            if merged_frags[-1][1] == right_start and merged_frags[-1][2] == right_heap:
                totals[right_heap] -= right_end - right_start
                merged_frags[-1] = (merged_frags[-1][0], right_end, right_heap)
                end_idx += 1

    # 4. 替换回主列表并加回新片段的统计
    fragments[start_idx:end_idx] = merged_frags
    for frag_start, frag_end, frag_heap in merged_frags:
        totals[frag_heap] += frag_end - frag_start


class PageTable:
    """
    虚拟地址到物理后备堆的映射表，由 page-table-update token 增量更新。

    被观察进程的映射保存为有序片段列表；其他进程的映射分别记账，
    只用于统计 "其他进程映射的物理内存"。
    """

    def __init__(self, target_process_id: int | None = None):
        self.target_process_id = target_process_id
        self.fragments: list[Fragment] = []
        self.mapped_per_heap: dict[HeapType, int] = {heap: 0 for heap in HeapType}
        self._other_fragments: dict[int, list[Fragment]] = {}
        self.mapped_by_other_processes_per_heap: dict[HeapType, int] = {heap: 0 for heap in HeapType}

    def to_dict(self) -> dict[str, Any]:
        return {
            "fragments": [[start, end, int(heap)] for start, end, heap in self.fragments],
            "mapped_per_heap": {heap.name: size for heap, size in self.mapped_per_heap.items()},
            "mapped_by_other_processes_per_heap": {
                heap.name: size for heap, size in self.mapped_by_other_processes_per_heap.items()
            },
        }

    def _is_target_process(self, process_id: int | None) -> bool:
        return process_id is None or self.target_process_id is None or process_id == self.target_process_id

    def map(self, virtual_address: int, size_in_bytes: int, heap_type: HeapType, process_id: int | None = None):
        """把一段虚拟地址映射到 heap_type 中的物理内存，覆盖原有映射。"""
        self._update(virtual_address, size_in_bytes, heap_type, process_id)

    def unmap(self, virtual_address: int, size_in_bytes: int, process_id: int | None = None):
        """解除一段虚拟地址的物理映射。"""
        self._update(virtual_address, size_in_bytes, None, process_id)

    def _update(self, virtual_address: int, size_in_bytes: int, heap_type: HeapType | None, process_id: int | None):
        if size_in_bytes <= 0:
            return
        if self._is_target_process(process_id):
            fragments, totals = self.fragments, self.mapped_per_heap
        else:
            fragments = self._other_fragments.setdefault(process_id, [])
            totals = self.mapped_by_other_processes_per_heap
        _update_fragments(fragments, totals, virtual_address, virtual_address + size_in_bytes, heap_type)

    def get_backing_histogram(self, address: int, size_in_bytes: int) -> dict[BackingStorage, int]:
        """
        统计 [address, address + size_in_bytes) 中每个后备位置的字节数。
        一个资源可以同时部分驻留在多个堆中，没有映射的部分计入 UNMAPPED。
        """
        histogram = {storage: 0 for storage in BackingStorage}
        if size_in_bytes <= 0:
            return histogram

        end_address = address + size_in_bytes
        mapped_bytes = 0
        idx = bisect.bisect_left(self.fragments, address, key=_fragment_start)
        if idx > 0 and self.fragments[idx - 1][1] > address:
            idx -= 1

        for frag_start, frag_end, frag_heap in self.fragments[idx:]:
            if frag_start >= end_address:
                break
            overlap = get_overlap_size(frag_start, frag_end, address, end_address)
            mapped_bytes += overlap
            if frag_heap < HEAP_TYPE_COUNT:
                histogram[BackingStorage(int(frag_heap))] += overlap

        histogram[BackingStorage.UNMAPPED] = size_in_bytes - mapped_bytes
        return histogram
