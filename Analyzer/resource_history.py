"""
Copyright (c) 2026, Chen Jie, Joungtao, Xuzheng Jiang
All rights reserved.
This source code is licensed under the BSD-2-Clause license found in the
LICENSE file in the root directory of this source tree.
"""

# resource_history.py
import logging

from common_types import (
    DataSnapshot, Resource, ResourceHistory, ResourceHistoryEventType as EventType,
    ResidencyUpdateType, Token, TokenType,
)
from address_helper import allocations_overlap, get_allocation_size_in_bytes
from errors import InvalidArgumentError, ResourceNotResolvableError

logger = logging.getLogger(__name__)


def _match_resource_token(history: ResourceHistory, token: Token) -> tuple[EventType, bool] | None:
    """
    判断 token 是否与资源相关。返回 (事件类型, 是否物理事件)，不相关时返回 None。
    """
    resource = history.resource
    base_allocation = history.base_allocation
    token_type = token.token_type

    # 直接引用资源标识符的 token
    if token_type == TokenType.RESOURCE_CREATE:
        if token.resource_identifier == resource.identifier:
            return EventType.RESOURCE_CREATED, False
        return None
    if token_type == TokenType.RESOURCE_BIND:
        if token.resource_identifier == resource.identifier:
            return EventType.RESOURCE_BOUND, False
        return None
    if token_type == TokenType.RESOURCE_DESTROY:
        if token.resource_identifier == resource.identifier:
            return EventType.RESOURCE_DESTROYED, False
        return None

    # 以下事件都需要资源所在的分配才能判断
    if base_allocation is None:
        return None

    if token_type == TokenType.VIRTUAL_ALLOCATE:
        if allocations_overlap(resource.address, resource.size_in_bytes, token.virtual_address, token.size_in_bytes):
            return EventType.VIRTUAL_MEMORY_ALLOCATED, False
        return None

    if token_type == TokenType.VIRTUAL_FREE:
        if allocations_overlap(resource.address, resource.size_in_bytes, token.virtual_address, 1):
            return EventType.VIRTUAL_MEMORY_FREE, False
        return None

    # CPU 只能映射/驻留整个虚拟分配，而不是单个资源，所以按分配基地址匹配
    if token_type == TokenType.CPU_MAP:
        if token.virtual_address != base_allocation.base_address:
            return None
        if token.is_unmap:
            return EventType.VIRTUAL_MEMORY_UNMAPPED, False
        return EventType.VIRTUAL_MEMORY_MAPPED, False

    if token_type == TokenType.RESIDENCY_UPDATE:
        if token.virtual_address != base_allocation.base_address:
            return None
        if token.update_type == ResidencyUpdateType.ADD:
            return EventType.VIRTUAL_MEMORY_MAKE_RESIDENT, False
        return EventType.VIRTUAL_MEMORY_EVICT, False

    if token_type == TokenType.PAGE_TABLE_UPDATE:
        # 检查物理映射的变化是否与资源的虚拟地址范围重叠
        mapped_bytes = get_allocation_size_in_bytes(token.size_in_pages, token.page_size)
        if not allocations_overlap(token.virtual_address, mapped_bytes, resource.address, resource.size_in_bytes):
            return None
        if token.is_unmapping:
            return EventType.PHYSICAL_UNMAP, True
        if token.physical_address == 0:
            return EventType.PHYSICAL_MAP_TO_HOST, True
        return EventType.PHYSICAL_MAP_TO_LOCAL, True

    return None


def generate_resource_history(snapshot: DataSnapshot, resource: Resource) -> ResourceHistory:
    """
    重新回放整个追踪 (不受快照截止时间限制)，收集与资源相关的所有事件。
    输出顺序与合并顺序一致，即按时间排序。
    Args:
        snapshot (DataSnapshot): 资源所在的快照，提供追踪数据。
        resource (Resource): 目标资源。其 bound_allocation 决定能否匹配分配和物理事件。
    Returns:
        ResourceHistory: 新构建的资源历史，由调用者持有。
    Raises:
        InvalidArgumentError: 快照或资源为空，或快照没有关联的追踪数据。
        ResourceNotResolvableError: 资源没有标识符。
    """
    if snapshot is None:
        raise InvalidArgumentError("snapshot 不能为空")
    if resource is None:
        raise InvalidArgumentError("resource 不能为空")
    if resource.identifier is None:
        raise ResourceNotResolvableError("资源没有标识符，无法生成历史")
    if snapshot.data_set is None:
        raise InvalidArgumentError(f"快照 '{snapshot.name}' 没有关联的追踪数据")

    history = ResourceHistory(resource=resource, base_allocation=resource.bound_allocation)

    merger = snapshot.data_set.create_stream_merger()
    while not merger.is_empty():
        token = merger.advance()
        match = _match_resource_token(history, token)
        if match is None:
            continue
        event_type, is_physical = match
        history.add_event(event_type, token.thread_id, token.timestamp, is_physical)

    logger.info(f"资源 {resource.identifier} 的历史包含 {history.event_count} 个事件。")
    return history
