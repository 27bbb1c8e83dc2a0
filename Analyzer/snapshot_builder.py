"""
Copyright (c) 2026, Chen Jie, Joungtao, Xuzheng Jiang
All rights reserved.
This source code is licensed under the BSD-2-Clause license found in the
LICENSE file in the root directory of this source tree.
"""

# snapshot_builder.py
import copy
import logging
from collections.abc import Callable, Iterable, Iterator

from common_types import (
    CpuMapToken, DataSnapshot, HeapType, PageTableUpdateToken, ResidencyUpdateToken,
    ResourceBindToken, ResourceCreateToken, ResourceDestroyToken, Token, TokenType,
    VirtualAllocateToken, VirtualFreeToken,
)
from address_helper import containing_heap, get_allocation_size_in_bytes
from data_set import DataSet
from errors import InvalidArgumentError
from page_table import PageTable
from resource_list import ResourceList
from virtual_allocation_list import VirtualAllocationList, count_unbound_regions

import config
logger = logging.getLogger(__name__)

DEFAULT_LOG_INTERVAL = 100000


class SnapshotContext:
    """保存快照回放过程中逐步累积的状态。"""

    def __init__(self, target_process_id: int | None = None):
        self.allocations = VirtualAllocationList()
        self.resources = ResourceList()
        self.page_table = PageTable(target_process_id)
        self.token_idx: int = 0  # 已处理的 token 总数
        self.last_timestamp: int = 0


def _handle_virtual_allocate(ctx: SnapshotContext, token: VirtualAllocateToken, data_set: DataSet):
    ctx.allocations.add(token.virtual_address, token.size_in_bytes, token.timestamp, token.heap_preferences)


def _handle_virtual_free(ctx: SnapshotContext, token: VirtualFreeToken, data_set: DataSet):
    allocation = ctx.allocations.remove(token.virtual_address)
    logger.debug(f"释放虚拟分配 {allocation.guid} ({hex(allocation.base_address)})")


def _handle_resource_create(ctx: SnapshotContext, token: ResourceCreateToken, data_set: DataSet):
    ctx.resources.create(token.resource_identifier, token.resource_type, token.timestamp, token.usage_flags)


def _handle_resource_bind(ctx: SnapshotContext, token: ResourceBindToken, data_set: DataSet):
    ctx.resources.bind(
        token.resource_identifier,
        token.virtual_address,
        token.size_in_bytes,
        token.timestamp,
        ctx.allocations,
        is_system_memory=token.is_system_memory,
    )


def _handle_resource_destroy(ctx: SnapshotContext, token: ResourceDestroyToken, data_set: DataSet):
    ctx.resources.destroy(token.resource_identifier)


def _handle_cpu_map(ctx: SnapshotContext, token: CpuMapToken, data_set: DataSet):
    """CPU 只能映射整个虚拟分配，所以按基地址匹配。"""
    allocation = ctx.allocations.find_by_base_address(token.virtual_address)
    if allocation is None:
        logger.debug(f"CPU 映射的地址 {hex(token.virtual_address)} 没有对应的分配，忽略。")
        return

    if token.is_unmap:
        allocation.last_cpu_unmap = token.timestamp
        allocation.map_count = max(0, allocation.map_count - 1)
    else:
        allocation.last_cpu_map = token.timestamp
        allocation.map_count += 1


def _handle_residency_update(ctx: SnapshotContext, token: ResidencyUpdateToken, data_set: DataSet):
    allocation = ctx.allocations.find_by_base_address(token.virtual_address)
    if allocation is None:
        # 驱动可能在释放 token 之前就拆除了分配，这种驻留事件直接忽略
        logger.debug(f"驻留更新的地址 {hex(token.virtual_address)} 没有对应的分配，忽略。")
        return
    allocation.last_residency_update = token.timestamp


def _handle_page_table_update(ctx: SnapshotContext, token: PageTableUpdateToken, data_set: DataSet):
    size_in_bytes = get_allocation_size_in_bytes(token.size_in_pages, token.page_size)
    if token.is_unmapping:
        ctx.page_table.unmap(token.virtual_address, size_in_bytes, token.process_id)
        return

    # 物理地址为 0 表示映射到主机内存，否则按物理地址查找所在的本地堆
    if token.physical_address == 0:
        heap_type = HeapType.SYSTEM
    else:
        heap_type = containing_heap(data_set.segment_info, token.physical_address)
        if heap_type == HeapType.UNKNOWN:
            logger.debug(f"物理地址 {hex(token.physical_address)} 不属于任何已知的段。")
    ctx.page_table.map(token.virtual_address, size_in_bytes, heap_type, token.process_id)


_TOKEN_HANDLERS: dict[TokenType, Callable[[SnapshotContext, Token, DataSet], None]] = {
    TokenType.VIRTUAL_ALLOCATE: _handle_virtual_allocate,
    TokenType.VIRTUAL_FREE: _handle_virtual_free,
    TokenType.RESOURCE_CREATE: _handle_resource_create,
    TokenType.RESOURCE_BIND: _handle_resource_bind,
    TokenType.RESOURCE_DESTROY: _handle_resource_destroy,
    TokenType.CPU_MAP: _handle_cpu_map,
    TokenType.RESIDENCY_UPDATE: _handle_residency_update,
    TokenType.PAGE_TABLE_UPDATE: _handle_page_table_update,
}


def process_token(ctx: SnapshotContext, token: Token, data_set: DataSet):
    """把单个 token 应用到快照状态上。"""
    _TOKEN_HANDLERS[token.token_type](ctx, token, data_set)
    ctx.token_idx += 1
    ctx.last_timestamp = token.timestamp


def _get_log_interval(log_interval: int | None) -> int:
    if log_interval is not None:
        return log_interval
    if config.settings is not None:
        return config.settings.log_interval
    return DEFAULT_LOG_INTERVAL


def _log_progress(ctx: SnapshotContext, total_tokens: int, end_timestamp: int):
    log_parts = []
    if total_tokens > 0:
        token_percent = (ctx.token_idx / total_tokens) * 100
        log_parts.append(f"token: {ctx.token_idx}/{total_tokens} ({token_percent:.1f}%)")
    else:
        log_parts.append(f"token: {ctx.token_idx}")
    if end_timestamp > 0:
        time_percent = (ctx.last_timestamp / end_timestamp) * 100
        log_parts.append(f"time: {ctx.last_timestamp}/{end_timestamp} ({time_percent:.1f}%)")
    else:
        log_parts.append(f"time: {ctx.last_timestamp}")
    logger.info(" | ".join(log_parts))


def _finalize(ctx: SnapshotContext, data_set: DataSet, timestamp: int | str, name: str | None) -> DataSnapshot:
    """计算派生字段并把上下文封装为快照。此后不再修改其中的任何对象。"""
    for allocation in ctx.allocations:
        allocation.unbound_memory_region_count = count_unbound_regions(allocation)

    return DataSnapshot(
        name=name if name is not None else f"snapshot_{timestamp}",
        timestamp=timestamp,
        virtual_allocations=tuple(ctx.allocations),
        resources=tuple(ctx.resources),
        page_table=ctx.page_table,
        data_set=data_set,
    )


def _validate(data_set: DataSet, cutoff) -> None:
    if data_set is None:
        raise InvalidArgumentError("data_set 不能为空")
    if isinstance(cutoff, bool) or not isinstance(cutoff, int):
        raise InvalidArgumentError(f"截止时间戳必须是整数: {cutoff!r}")


def build_snapshot(
    data_set: DataSet,
    cutoff: int,
    name: str | None = None,
    log_interval: int | None = None
) -> DataSnapshot:
    """
    从头回放追踪直到截止时间戳 (包含恰好等于截止时间的 token)，构建数据快照。
    每次调用使用自己的合并器游标，因此可以与其它回放并发执行。
    Args:
        data_set (DataSet): 追踪数据。
        cutoff (int): 截止时间戳。
        name (str): 快照名称，默认为 "snapshot_<cutoff>"。
        log_interval (int): 每处理多少个 token 输出一次进度。
    Returns:
        DataSnapshot: 构建好的快照。
    Raises:
        InvalidArgumentError: 参数无效。
        MalformedTraceError: 追踪数据不一致。构建失败时不会返回任何部分结果。
    """
    _validate(data_set, cutoff)
    interval = _get_log_interval(log_interval)
    total_tokens = data_set.token_count
    end_timestamp = data_set.end_timestamp

    ctx = SnapshotContext(data_set.target_process_id)
    merger = data_set.create_stream_merger()
    while not merger.is_empty():
        token = merger.advance()
        if token.timestamp > cutoff:
            break
        process_token(ctx, token, data_set)
        if interval > 0 and ctx.token_idx % interval == 0:
            _log_progress(ctx, total_tokens, end_timestamp)

    logger.info(f"快照 {cutoff} 构建完成: {len(ctx.allocations)} 个虚拟分配, {len(ctx.resources)} 个资源。")
    return _finalize(ctx, data_set, cutoff, name)


def generate_snapshots(
    data_set: DataSet,
    cutoffs: Iterable[int] | None = None,
    log_interval: int | None = None
) -> Iterator[DataSnapshot]:
    """
    只回放一遍追踪，在每个截止时间戳处产出一个独立的快照，最后产出时间戳为 "final" 的最终快照。
    超出追踪末尾的截止时间戳会得到与最终状态相同的快照。
    """
    if data_set is None:
        raise InvalidArgumentError("data_set 不能为空")
    cutoff_list = list(cutoffs) if cutoffs else []
    for cutoff in cutoff_list:
        _validate(data_set, cutoff)
    cutoff_list = sorted(set(cutoff_list))

    interval = _get_log_interval(log_interval)
    total_tokens = data_set.token_count
    end_timestamp = data_set.end_timestamp
    next_target = cutoff_list.pop(0) if cutoff_list else None

    ctx = SnapshotContext(data_set.target_process_id)
    merger = data_set.create_stream_merger()
    while not merger.is_empty():
        token = merger.advance()

        # 当前 token 已越过目标时间戳，先为目标生成快照 (上下文的深拷贝)，再处理 token
        while next_target is not None and token.timestamp > next_target:
            yield _finalize(copy.deepcopy(ctx), data_set, next_target, None)
            next_target = cutoff_list.pop(0) if cutoff_list else None

        process_token(ctx, token, data_set)
        if interval > 0 and ctx.token_idx % interval == 0:
            _log_progress(ctx, total_tokens, end_timestamp)

    while next_target is not None:
        yield _finalize(copy.deepcopy(ctx), data_set, next_target, None)
        next_target = cutoff_list.pop(0) if cutoff_list else None

    yield _finalize(ctx, data_set, "final", "final")
