"""
Copyright (c) 2026, Chen Jie, Joungtao, Xuzheng Jiang
All rights reserved.
This source code is licensed under the BSD-2-Clause license found in the
LICENSE file in the root directory of this source tree.
"""

# common_types.py
from dataclasses import dataclass, field, fields
from enum import Enum, IntEnum, IntFlag
from typing import TYPE_CHECKING, Any, ClassVar, NamedTuple
if TYPE_CHECKING:
    from data_set import DataSet
    from page_table import PageTable


class HeapType(IntEnum):
    """物理内存池的分类。前三个值同时作为 BackingStorage 的下标使用。"""
    LOCAL = 0      # 本地显存，CPU 可见
    INVISIBLE = 1  # 本地显存，CPU 不可见
    SYSTEM = 2     # 系统内存
    NONE = 3       # 堆偏好列表中未使用的槽位
    UNKNOWN = 4


HEAP_TYPE_COUNT = 3
"""真实堆的数量 (LOCAL, INVISIBLE, SYSTEM)"""


class BackingStorage(IntEnum):
    """资源的物理后备位置，与 HeapType 的前三个值一一对应"""
    LOCAL = 0
    INVISIBLE = 1
    SYSTEM = 2
    UNMAPPED = 3


class ResourceType(IntEnum):
    IMAGE = 0
    BUFFER = 1
    GPU_EVENT = 2
    BORDER_COLOR_PALETTE = 3
    INDIRECT_CMD_GENERATOR = 4
    MOTION_ESTIMATOR = 5
    PERF_EXPERIMENT = 6
    QUERY_HEAP = 7
    VIDEO_DECODER = 8
    VIDEO_ENCODER = 9
    TIMESTAMP = 10
    HEAP = 11  # 哨兵类型，不计入用途统计
    PIPELINE = 12
    DESCRIPTOR_HEAP = 13
    DESCRIPTOR_POOL = 14
    COMMAND_ALLOCATOR = 15
    MISC_INTERNAL = 16
    UNKNOWN = 17


class ResourceUsageFlag(IntFlag):
    """资源创建时附带的用途标志，用于细分 IMAGE / BUFFER 的用途"""
    NONE = 0
    COLOR_TARGET = 1
    DEPTH_STENCIL = 2
    SHADER_READ = 4
    UNORDERED_ACCESS = 8
    VERTEX_BUFFER = 16
    INDEX_BUFFER = 32


class ResourceUsageType(IntEnum):
    DEPTH_STENCIL = 0
    RENDER_TARGET = 1
    TEXTURE = 2
    VERTEX_BUFFER = 3
    INDEX_BUFFER = 4
    UAV = 5
    BUFFER = 6
    SHADER_PIPELINE = 7
    COMMAND_BUFFER = 8
    HEAP = 9
    DESCRIPTORS = 10
    GPU_EVENT = 11
    QUERY = 12
    INTERNAL = 13
    UNKNOWN = 14


# 资源类型到用途类型的静态映射；IMAGE 和 BUFFER 还会根据用途标志细分
_USAGE_BY_RESOURCE_TYPE = {
    ResourceType.IMAGE: ResourceUsageType.TEXTURE,
    ResourceType.BUFFER: ResourceUsageType.BUFFER,
    ResourceType.GPU_EVENT: ResourceUsageType.GPU_EVENT,
    ResourceType.BORDER_COLOR_PALETTE: ResourceUsageType.INTERNAL,
    ResourceType.INDIRECT_CMD_GENERATOR: ResourceUsageType.INTERNAL,
    ResourceType.MOTION_ESTIMATOR: ResourceUsageType.INTERNAL,
    ResourceType.PERF_EXPERIMENT: ResourceUsageType.INTERNAL,
    ResourceType.QUERY_HEAP: ResourceUsageType.QUERY,
    ResourceType.VIDEO_DECODER: ResourceUsageType.INTERNAL,
    ResourceType.VIDEO_ENCODER: ResourceUsageType.INTERNAL,
    ResourceType.TIMESTAMP: ResourceUsageType.INTERNAL,
    ResourceType.HEAP: ResourceUsageType.HEAP,
    ResourceType.PIPELINE: ResourceUsageType.SHADER_PIPELINE,
    ResourceType.DESCRIPTOR_HEAP: ResourceUsageType.DESCRIPTORS,
    ResourceType.DESCRIPTOR_POOL: ResourceUsageType.DESCRIPTORS,
    ResourceType.COMMAND_ALLOCATOR: ResourceUsageType.COMMAND_BUFFER,
    ResourceType.MISC_INTERNAL: ResourceUsageType.INTERNAL,
}


class ResidencyUpdateType(IntEnum):
    ADD = 0
    REMOVE = 1


class TokenType(str, Enum):
    """token 的类型标签，同时也是导出文件中 "type" 字段的取值"""
    RESOURCE_CREATE = "resource_create"
    RESOURCE_DESTROY = "resource_destroy"
    RESOURCE_BIND = "resource_bind"
    VIRTUAL_ALLOCATE = "virtual_allocate"
    VIRTUAL_FREE = "virtual_free"
    CPU_MAP = "cpu_map"
    RESIDENCY_UPDATE = "residency_update"
    PAGE_TABLE_UPDATE = "page_table_update"


class SegmentStatusFlag(IntFlag):
    NONE = 0
    VRAM = 1
    HOST = 2
    CPU_VISIBLE = 4
    CPU_CACHED = 8
    GPU_VISIBLE = 16
    GPU_CACHED = 32


class SubscriptionStatus(str, Enum):
    UNDER_LIMIT = "under_limit"
    CLOSE_TO_LIMIT = "close_to_limit"
    OVER_LIMIT = "over_limit"


class ResourceHistoryEventType(str, Enum):
    RESOURCE_CREATED = "resource_created"
    RESOURCE_BOUND = "resource_bound"
    RESOURCE_DESTROYED = "resource_destroyed"
    VIRTUAL_MEMORY_ALLOCATED = "virtual_memory_allocated"
    VIRTUAL_MEMORY_FREE = "virtual_memory_free"
    VIRTUAL_MEMORY_MAPPED = "virtual_memory_mapped"
    VIRTUAL_MEMORY_UNMAPPED = "virtual_memory_unmapped"
    VIRTUAL_MEMORY_MAKE_RESIDENT = "virtual_memory_make_resident"
    VIRTUAL_MEMORY_EVICT = "virtual_memory_evict"
    PHYSICAL_MAP_TO_LOCAL = "physical_map_to_local"
    PHYSICAL_MAP_TO_HOST = "physical_map_to_host"
    PHYSICAL_UNMAP = "physical_unmap"


# --- Tokens ---

@dataclass(frozen=True)
class Token:
    """
    单个已解码的追踪事件。时间戳只在同一个流内单调，跨流需要合并排序。
    """
    timestamp: int
    thread_id: int

    token_type: ClassVar[TokenType]

    def to_dict(self) -> dict[str, Any]:
        """将 token 转换为字典，以便写入 JSON。"""
        result: dict[str, Any] = {"type": self.token_type.value}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, tuple):
                value = [int(v) for v in value]
            elif isinstance(value, IntEnum | IntFlag):
                value = int(value)
            result[f.name] = value
        return result


@dataclass(frozen=True)
class ResourceCreateToken(Token):
    resource_identifier: int
    resource_type: ResourceType
    usage_flags: ResourceUsageFlag = ResourceUsageFlag.NONE

    token_type: ClassVar[TokenType] = TokenType.RESOURCE_CREATE


@dataclass(frozen=True)
class ResourceDestroyToken(Token):
    resource_identifier: int

    token_type: ClassVar[TokenType] = TokenType.RESOURCE_DESTROY


@dataclass(frozen=True)
class ResourceBindToken(Token):
    resource_identifier: int
    virtual_address: int
    size_in_bytes: int
    is_system_memory: bool = False  # 仅 CPU 可见的资源，没有 GPU 虚拟地址

    token_type: ClassVar[TokenType] = TokenType.RESOURCE_BIND


@dataclass(frozen=True)
class VirtualAllocateToken(Token):
    virtual_address: int
    size_in_bytes: int
    heap_preferences: tuple[HeapType, ...] = (HeapType.LOCAL,)

    token_type: ClassVar[TokenType] = TokenType.VIRTUAL_ALLOCATE


@dataclass(frozen=True)
class VirtualFreeToken(Token):
    virtual_address: int

    token_type: ClassVar[TokenType] = TokenType.VIRTUAL_FREE


@dataclass(frozen=True)
class CpuMapToken(Token):
    virtual_address: int
    is_unmap: bool = False

    token_type: ClassVar[TokenType] = TokenType.CPU_MAP


@dataclass(frozen=True)
class ResidencyUpdateToken(Token):
    virtual_address: int
    update_type: ResidencyUpdateType = ResidencyUpdateType.ADD

    token_type: ClassVar[TokenType] = TokenType.RESIDENCY_UPDATE


@dataclass(frozen=True)
class PageTableUpdateToken(Token):
    virtual_address: int
    physical_address: int
    size_in_pages: int
    page_size: int = 4096
    is_unmapping: bool = False
    process_id: int | None = None  # None 表示属于被观察的进程

    token_type: ClassVar[TokenType] = TokenType.PAGE_TABLE_UPDATE


TOKEN_CLASSES: dict[TokenType, type[Token]] = {
    cls.token_type: cls
    for cls in (
        ResourceCreateToken, ResourceDestroyToken, ResourceBindToken,
        VirtualAllocateToken, VirtualFreeToken, CpuMapToken,
        ResidencyUpdateToken, PageTableUpdateToken,
    )
}

# 反序列化时需要转换回枚举的字段
_FIELD_CONVERTERS = {
    "resource_type": ResourceType,
    "usage_flags": ResourceUsageFlag,
    "update_type": ResidencyUpdateType,
    "heap_preferences": lambda value: tuple(HeapType(h) for h in value),
}


def token_from_dict(data: dict[str, Any]) -> Token:
    """
    从字典创建 token 对象，是 Token.to_dict 的逆操作。
    未知的键会被忽略；缺失必需字段时抛出 KeyError。
    """
    cls = TOKEN_CLASSES[TokenType(data["type"])]
    kwargs = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        converter = _FIELD_CONVERTERS.get(f.name)
        kwargs[f.name] = converter(value) if converter is not None else value
    return cls(**kwargs)


# --- Snapshot state ---

class SegmentInfo(NamedTuple):
    """设备上一个物理内存段的静态描述"""
    heap_type: HeapType
    base_address: int
    size: int


@dataclass(eq=False)
class VirtualAllocation:
    """
    一段连续的虚拟地址范围 [base_address, base_address + size_in_bytes)。
    分配拥有其上资源的绑定关系，resources 只在快照构建期间被修改。
    """
    guid: int
    base_address: int
    size_in_bytes: int
    timestamp: int  # 创建时间
    heap_preferences: tuple[HeapType, ...] = (HeapType.LOCAL,)
    last_cpu_map: int = 0
    last_cpu_unmap: int = 0
    last_residency_update: int = 0
    map_count: int = 0
    unbound_memory_region_count: int = 0
    resources: list['Resource'] = field(default_factory=list, repr=False)

    @property
    def end_address(self) -> int:
        return self.base_address + self.size_in_bytes

    @property
    def primary_heap(self) -> HeapType:
        return self.heap_preferences[0] if self.heap_preferences else HeapType.NONE

    @property
    def resource_count(self) -> int:
        return len(self.resources)


@dataclass(eq=False)
class Resource:
    """
    绑定在虚拟分配中的逻辑对象 (buffer/image 等)。
    bound_allocation 只是查找用的反向引用，分配被释放时会被清空。
    """
    identifier: int | None
    resource_type: ResourceType
    create_time: int
    usage_flags: ResourceUsageFlag = ResourceUsageFlag.NONE
    bind_time: int = 0
    address: int = 0
    size_in_bytes: int = 0
    bound_allocation: VirtualAllocation | None = field(default=None, repr=False)

    @property
    def end_address(self) -> int:
        return self.address + self.size_in_bytes

    @property
    def usage_type(self) -> ResourceUsageType:
        if self.resource_type == ResourceType.IMAGE:
            if self.usage_flags & ResourceUsageFlag.DEPTH_STENCIL:
                return ResourceUsageType.DEPTH_STENCIL
            if self.usage_flags & ResourceUsageFlag.COLOR_TARGET:
                return ResourceUsageType.RENDER_TARGET
        elif self.resource_type == ResourceType.BUFFER:
            if self.usage_flags & ResourceUsageFlag.VERTEX_BUFFER:
                return ResourceUsageType.VERTEX_BUFFER
            if self.usage_flags & ResourceUsageFlag.INDEX_BUFFER:
                return ResourceUsageType.INDEX_BUFFER
            if self.usage_flags & ResourceUsageFlag.UNORDERED_ACCESS:
                return ResourceUsageType.UAV
        return _USAGE_BY_RESOURCE_TYPE.get(self.resource_type, ResourceUsageType.UNKNOWN)

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "type": self.resource_type.name,
            "usage": self.usage_type.name,
            "created": self.create_time,
            "bind": self.bind_time,
            "address": f"0x{self.address:010x}",
            "size": self.size_in_bytes,
        }


class ResourceHistoryEvent(NamedTuple):
    """资源生命周期中的一个事件"""
    event_type: ResourceHistoryEventType
    thread_id: int
    timestamp: int
    is_physical: bool


@dataclass
class ResourceHistory:
    """单个资源的按时间排序的事件列表，由调用者持有，每次请求重新构建"""
    resource: Resource
    base_allocation: VirtualAllocation | None = None
    events: list[ResourceHistoryEvent] = field(default_factory=list)

    @property
    def event_count(self) -> int:
        return len(self.events)

    def add_event(self, event_type: ResourceHistoryEventType, thread_id: int, timestamp: int, is_physical: bool):
        self.events.append(ResourceHistoryEvent(event_type, thread_id, timestamp, is_physical))

    def to_dict(self) -> dict[str, Any]:
        return {
            "resource": self.resource.identifier,
            "events": [
                {
                    "event": event.event_type.value,
                    "thread_id": event.thread_id,
                    "timestamp": event.timestamp,
                    "physical": event.is_physical,
                }
                for event in self.events
            ],
        }


@dataclass
class SegmentStatus:
    """单个堆的聚合统计"""
    heap_type: HeapType
    flags: SegmentStatusFlag = SegmentStatusFlag.NONE
    total_physical_size: int = 0
    total_virtual_memory_requested: int = 0
    total_bound_virtual_memory: int = 0
    total_physical_mapped_by_process: int = 0
    total_physical_mapped_by_other_processes: int = 0
    allocation_count: int = 0
    min_allocation_size: int = 0
    max_allocation_size: int = 0
    mean_allocation_size: int = 0
    physical_bytes_per_resource_usage: dict[ResourceUsageType, int] = field(
        default_factory=lambda: {usage: 0 for usage in ResourceUsageType}
    )

    def to_dict(self) -> dict[str, Any]:
        result = {
            "heap_type": self.heap_type.name,
            "flags": [flag.name for flag in SegmentStatusFlag if flag and flag in self.flags],
            "total_physical_size": self.total_physical_size,
            "total_virtual_memory_requested": self.total_virtual_memory_requested,
            "total_bound_virtual_memory": self.total_bound_virtual_memory,
            "total_physical_mapped_by_process": self.total_physical_mapped_by_process,
            "total_physical_mapped_by_other_processes": self.total_physical_mapped_by_other_processes,
            "allocation_count": self.allocation_count,
            "min_allocation_size": self.min_allocation_size,
            "max_allocation_size": self.max_allocation_size,
            "mean_allocation_size": self.mean_allocation_size,
        }
        # 只输出非零的用途
        result["physical_bytes_per_resource_usage"] = {
            usage.name: size for usage, size in self.physical_bytes_per_resource_usage.items() if size
        }
        return result


@dataclass
class DataSnapshot:
    """
    某个截止时间点的内存状态。构建完成后不再修改，
    多个快照 (例如比较用的 base 和 diff) 可以同时只读存在。
    """
    name: str
    timestamp: int | str  # 截止时间戳，或 "final"
    virtual_allocations: tuple[VirtualAllocation, ...] = ()
    resources: tuple[Resource, ...] = ()
    page_table: 'PageTable | None' = None
    data_set: 'DataSet | None' = field(default=None, repr=False)  # 使用 TYPE_CHECKING 避免循环导入

    def __getstate__(self):
        # data_set 持有整个追踪，缓存时不写入，加载时重新挂接
        state = self.__dict__.copy()
        state["data_set"] = None
        return state

    def find_resource(self, identifier: int) -> Resource | None:
        for resource in self.resources:
            if resource.identifier == identifier:
                return resource
        return None

    def find_allocation(self, address: int) -> VirtualAllocation | None:
        """返回包含给定地址的虚拟分配。"""
        for allocation in self.virtual_allocations:
            if allocation.base_address <= address < allocation.end_address:
                return allocation
        return None

    def get_largest_resource_size(self) -> int:
        return max((resource.size_in_bytes for resource in self.resources), default=0)

    def get_smallest_resource_size(self) -> int:
        return min((resource.size_in_bytes for resource in self.resources), default=0)
