"""
Copyright (c) 2026, Chen Jie, Joungtao, Xuzheng Jiang
All rights reserved.
This source code is licensed under the BSD-2-Clause license found in the
LICENSE file in the root directory of this source tree.
"""

# resource_list.py
import logging
from collections.abc import Iterator

from common_types import Resource, ResourceType, ResourceUsageFlag
from address_helper import contains
from errors import MalformedTraceError
from virtual_allocation_list import VirtualAllocationList

logger = logging.getLogger(__name__)


class ResourceList:
    """存活的资源，按标识符索引，保持创建顺序。"""

    def __init__(self):
        self.resources: dict[int, Resource] = {}

    def __len__(self) -> int:
        return len(self.resources)

    def __iter__(self) -> Iterator[Resource]:
        return iter(self.resources.values())

    def get(self, identifier: int) -> Resource | None:
        return self.resources.get(identifier)

    def create(
        self,
        identifier: int,
        resource_type: ResourceType,
        timestamp: int,
        usage_flags: ResourceUsageFlag = ResourceUsageFlag.NONE
    ) -> Resource:
        if identifier in self.resources:
            raise MalformedTraceError(f"资源 {identifier} 在销毁前被重复创建")
        resource = Resource(
            identifier=identifier,
            resource_type=resource_type,
            create_time=timestamp,
            usage_flags=usage_flags,
        )
        self.resources[identifier] = resource
        return resource

    def bind(
        self,
        identifier: int,
        virtual_address: int,
        size_in_bytes: int,
        timestamp: int,
        allocations: VirtualAllocationList,
        is_system_memory: bool = False
    ) -> Resource:
        """
        把资源绑定到覆盖其地址的虚拟分配上。绑定只按地址包含关系解析，
        因为驱动的追踪只通过地址绑定。
        """
        resource = self.resources.get(identifier)
        if resource is None:
            raise MalformedTraceError(f"绑定的资源 {identifier} 没有对应的创建事件")

        # 重新绑定时先从原分配中解除
        if resource.bound_allocation is not None:
            resource.bound_allocation.resources.remove(resource)
            resource.bound_allocation = None

        resource.address = virtual_address
        resource.size_in_bytes = size_in_bytes
        resource.bind_time = timestamp

        # 仅 CPU 可见的资源没有 GPU 地址，对驻留和映射没有影响
        if is_system_memory or virtual_address == 0:
            return resource

        allocation = allocations.find_containing(virtual_address)
        if allocation is None:
            logger.warning(f"资源 {identifier} 绑定到地址 {hex(virtual_address)}，但没有覆盖该地址的虚拟分配，保持未绑定状态。")
            return resource

        if not contains(allocation.base_address, allocation.size_in_bytes, virtual_address, size_in_bytes):
            raise MalformedTraceError(
                f"资源 {identifier} 的范围 [{hex(virtual_address)}, {hex(virtual_address + size_in_bytes)}) "
                f"超出了所在分配 [{hex(allocation.base_address)}, {hex(allocation.end_address)})"
            )

        resource.bound_allocation = allocation
        allocation.resources.append(resource)
        return resource

    def destroy(self, identifier: int) -> Resource:
        resource = self.resources.pop(identifier, None)
        if resource is None:
            raise MalformedTraceError(f"销毁的资源 {identifier} 没有对应的创建事件")
        if resource.bound_allocation is not None:
            resource.bound_allocation.resources.remove(resource)
            resource.bound_allocation = None
        return resource
