"""
Copyright (c) 2026, Chen Jie, Joungtao, Xuzheng Jiang
All rights reserved.
This source code is licensed under the BSD-2-Clause license found in the
LICENSE file in the root directory of this source tree.
"""

# data_set.py
from collections.abc import Sequence
from dataclasses import dataclass, field

from common_types import HeapType, SegmentInfo, Token
from stream_merger import StreamMerger


@dataclass
class DataSet:
    """
    一次追踪捕获：每个捕获源 (线程/队列) 一个已解码的 token 流，以及设备的段信息。
    流只读，可以被多个并发回放共享；每次回放都应通过 create_stream_merger 获取自己的游标。
    """
    streams: Sequence[Sequence[Token]]
    segment_info: list[SegmentInfo] = field(default_factory=list)
    target_process_id: int | None = None
    name: str = ""

    def create_stream_merger(self) -> StreamMerger:
        return StreamMerger(self.streams)

    @property
    def token_count(self) -> int:
        return sum(len(stream) for stream in self.streams)

    @property
    def end_timestamp(self) -> int:
        """最后一个 token 的时间戳，空追踪返回 0。"""
        return max((stream[-1].timestamp for stream in self.streams if len(stream) > 0), default=0)

    def get_segment_size(self, heap_type: HeapType) -> int:
        """返回该堆的物理大小 (同一堆的多个段累加)。"""
        return sum(segment.size for segment in self.segment_info if segment.heap_type == heap_type)
