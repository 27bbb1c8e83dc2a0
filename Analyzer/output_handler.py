"""
Copyright (c) 2026, Chen Jie, Joungtao, Xuzheng Jiang
All rights reserved.
This source code is licensed under the BSD-2-Clause license found in the
LICENSE file in the root directory of this source tree.
"""

# output_handler.py
import os
import shutil
import json
import logging
from typing import Any

from common_types import DataSnapshot, ResourceHistory, SegmentStatus, SubscriptionStatus
from analysis import HeapDelta, summarize_snapshot
from errors import DestinationNotWritableError
from virtual_allocation_list import get_total_resource_memory_in_bytes, get_total_unbound_space_in_bytes

logger = logging.getLogger(__name__)

# 全局配置：默认启用美观输出
PRETTY_PRINT = True


def set_pretty_print(enable: bool):
    """设置JSON输出格式
    Args:
        enable: True=美观输出(带缩进), False=紧凑输出(无缩进)
    """
    global PRETTY_PRINT
    PRETTY_PRINT = enable


def _hex(address: int) -> str:
    return f"0x{address:010x}"


def remove_output_dir(output_dir: str = "output"):
    """
    删除指定的输出文件夹及其所有内容。

    Args:
        output_dir (str): 要删除的文件夹路径，默认为 "output"。
    """
    if os.path.exists(output_dir) and os.path.isdir(output_dir):
        shutil.rmtree(output_dir)
        logger.info(f"已删除文件夹: {output_dir}")
    else:
        logger.info(f"文件夹不存在: {output_dir}")


def _dump(data: Any, output_path: str):
    """把数据写入JSON文件，目标不可写时抛出 DestinationNotWritableError。"""
    try:
        with open(output_path, "w", encoding="utf-8") as f:
            if PRETTY_PRINT:
                json.dump(data, f, indent=2)
            else:
                json.dump(data, f, separators=(',', ':'))
    except OSError as e:
        raise DestinationNotWritableError(f"无法写入 {output_path}: {e}") from e


def snapshot_to_dict(snapshot: DataSnapshot) -> dict[str, Any]:
    """把快照转换为可导出的字典：分配列表，每个分配内嵌其资源。"""
    allocations = []
    for allocation in snapshot.virtual_allocations:
        allocations.append({
            "guid": allocation.guid,
            "address": _hex(allocation.base_address),
            "size": allocation.size_in_bytes,
            "created": allocation.timestamp,
            "heap_preferences": [heap.name for heap in allocation.heap_preferences],
            "last_cpu_map": allocation.last_cpu_map,
            "last_cpu_unmap": allocation.last_cpu_unmap,
            "last_residency_update": allocation.last_residency_update,
            "map_count": allocation.map_count,
            "bound_bytes": get_total_resource_memory_in_bytes(allocation),
            "unbound_bytes": get_total_unbound_space_in_bytes(allocation),
            "unbound_region_count": allocation.unbound_memory_region_count,
            "resources": [resource.to_dict() for resource in allocation.resources],
        })

    unbound_resources = [resource.to_dict() for resource in snapshot.resources if resource.bound_allocation is None]
    return {
        "summary": summarize_snapshot(snapshot),
        "virtual_allocations": allocations,
        "unbound_resources": unbound_resources,
    }


def write_snapshot(snapshot: DataSnapshot, output_path: str):
    """将快照写入JSON文件。"""
    if output_path:
        _dump(snapshot_to_dict(snapshot), output_path)


def write_segment_status(
    statuses: list[SegmentStatus],
    output_path: str,
    subscriptions: dict[Any, SubscriptionStatus] | None = None,
    timestamp: int | str | None = None
):
    """将各个堆的统计写入JSON文件，可选附带每个堆的超额订阅状态。"""
    if not output_path:
        return
    segments = []
    for status in statuses:
        entry = status.to_dict()
        if subscriptions and status.heap_type in subscriptions:
            entry["subscription"] = subscriptions[status.heap_type].value
        segments.append(entry)
    _dump({"timestamp": timestamp, "segments": segments}, output_path)


def write_resource_history(history: ResourceHistory, output_path: str):
    """将资源历史写入JSON文件。"""
    if output_path:
        data = history.to_dict()
        data["details"] = history.resource.to_dict()
        if history.base_allocation is not None:
            data["allocation"] = _hex(history.base_allocation.base_address)
        _dump(data, output_path)


def write_heap_delta(deltas: list[HeapDelta], output_path: str, base_name: str = "", diff_name: str = ""):
    """将两个快照之间各个堆的差值写入JSON文件。"""
    if output_path:
        _dump({
            "base": base_name,
            "diff": diff_name,
            "heaps": [delta.to_dict() for delta in deltas],
        }, output_path)
