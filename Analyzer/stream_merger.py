"""
Copyright (c) 2026, Chen Jie, Joungtao, Xuzheng Jiang
All rights reserved.
This source code is licensed under the BSD-2-Clause license found in the
LICENSE file in the root directory of this source tree.
"""

# stream_merger.py
import heapq
from collections.abc import Iterator, Sequence

from common_types import Token
from errors import ExhaustedStreamError


class StreamMerger:
    """
    对多个 token 流做 k 路归并，按时间戳输出全局有序的 token 序列。

    每个 StreamMerger 实例就是一个独立的游标：流本身只读、可以被多个
    合并器共享，但游标 (前沿堆和各流的读取位置) 不能在并发回放之间共享。
    时间戳相同时按流的下标排序，保证回放结果可复现。
    """

    def __init__(self, streams: Sequence[Sequence[Token]]):
        self.streams = streams
        self.token_count = sum(len(stream) for stream in streams)
        # 前沿堆的元素是 (timestamp, stream_index)，每个未耗尽的流最多一个
        self._frontier: list[tuple[int, int]] = []
        self._positions: list[int] = []
        self.reset()

    def reset(self):
        """把所有输入流倒回开头。"""
        self._positions = [0] * len(self.streams)
        self._frontier = [
            (stream[0].timestamp, stream_index)
            for stream_index, stream in enumerate(self.streams)
            if len(stream) > 0
        ]
        heapq.heapify(self._frontier)

    def is_empty(self) -> bool:
        """所有流是否都已读完。"""
        return not self._frontier

    def advance(self) -> Token:
        """
        返回全局下一个 token，并把它从来源流中移除。
        Raises:
            ExhaustedStreamError: 所有流都已读完。
        """
        if not self._frontier:
            raise ExhaustedStreamError("合并流已经为空，无法继续读取 token")

        _, stream_index = self._frontier[0]
        stream = self.streams[stream_index]
        position = self._positions[stream_index]
        token = stream[position]

        # 用同一个流的下一个 token 补充前沿
        position += 1
        self._positions[stream_index] = position
        if position < len(stream):
            heapq.heapreplace(self._frontier, (stream[position].timestamp, stream_index))
        else:
            heapq.heappop(self._frontier)

        return token

    def __iter__(self) -> Iterator[Token]:
        """从当前位置开始依次读出剩余的 token。"""
        while not self.is_empty():
            yield self.advance()
