"""
Copyright (c) 2026, Chen Jie, Joungtao, Xuzheng Jiang
All rights reserved.
This source code is licensed under the BSD-2-Clause license found in the
LICENSE file in the root directory of this source tree.
"""

# snapshot_manager.py
import os
import pickle
import logging
from concurrent.futures import Future, ThreadPoolExecutor

from common_types import DataSnapshot
from data_set import DataSet
from errors import InvalidArgumentError
from snapshot_builder import build_snapshot

logger = logging.getLogger(__name__)

CACHE_PREFIX = "cache_"
CACHE_SUFFIX = ".pkl"


class SnapshotWorker:
    """
    在后台线程中构建快照。每次 submit 返回一个 Future，它只会完成一次：
    要么得到快照，要么得到构建过程中抛出的异常。
    只有在回放开始之前调用 Future.cancel() 才能取消。
    每个任务使用自己的合并器游标，所以多个任务可以共享同一份追踪数据。
    """

    def __init__(self, data_set: DataSet, max_workers: int = 1):
        if data_set is None:
            raise InvalidArgumentError("data_set 不能为空")
        self.data_set = data_set
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="snapshot")

    def submit(self, cutoff: int, name: str | None = None) -> Future:
        logger.info(f"提交快照任务: {cutoff}")
        return self._executor.submit(build_snapshot, self.data_set, cutoff, name)

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait, cancel_futures=not wait)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.shutdown(wait=True)


def _cache_path(output_dir: str, ts: int | str) -> str:
    return os.path.join(output_dir, f"{CACHE_PREFIX}{ts}{CACHE_SUFFIX}")


def _list_cache_files(output_dir: str) -> list[str]:
    if not os.path.exists(output_dir):
        return []
    return [f for f in os.listdir(output_dir) if f.startswith(CACHE_PREFIX) and f.endswith(CACHE_SUFFIX)]


def _trace_key(data_set: DataSet) -> tuple[str, int, int]:
    """用于判断缓存是否来自同一份追踪"""
    return (data_set.name, data_set.token_count, data_set.end_timestamp)


def save_snapshot_cache(snapshot: DataSnapshot, output_dir: str) -> str:
    """
    将快照保存到 Pickle 文件中，追踪数据本身不写入。
    文件名格式: cache_<timestamp>.pkl 或 cache_final.pkl
    Args:
        snapshot (DataSnapshot): 要缓存的快照。
        output_dir (str): 缓存文件保存的目录。
    Returns:
        str: 缓存文件路径。
    """
    os.makedirs(output_dir, exist_ok=True)
    cache_file = _cache_path(output_dir, snapshot.timestamp)
    payload = {
        "trace": _trace_key(snapshot.data_set) if snapshot.data_set is not None else None,
        "snapshot": snapshot,
    }
    with open(cache_file, "wb") as f:
        pickle.dump(payload, f)
    logger.info(f"快照状态已缓存至: {cache_file}")
    return cache_file


def _load_cache_file(cache_path: str, data_set: DataSet) -> DataSnapshot | None:
    try:
        with open(cache_path, "rb") as f:
            payload = pickle.load(f)
    except (pickle.UnpicklingError, EOFError, AttributeError) as e:
        logger.warning(f"加载缓存失败 {cache_path}: {e}。该缓存将被忽略。")
        return None

    if payload.get("trace") != _trace_key(data_set):
        logger.warning(f"缓存 {cache_path} 不属于当前追踪 '{data_set.name}'，将被忽略。")
        return None

    snapshot: DataSnapshot = payload["snapshot"]
    snapshot.data_set = data_set
    return snapshot


def load_snapshot_cache(output_dir: str, ts: int | str, data_set: DataSet) -> DataSnapshot | None:
    """加载指定时间戳的缓存快照，并重新挂接追踪数据。找不到或无效时返回 None。"""
    cache_file = _cache_path(output_dir, ts)
    if not os.path.exists(cache_file):
        return None
    snapshot = _load_cache_file(cache_file, data_set)
    if snapshot is not None:
        logger.info(f"发现已缓存的快照: {cache_file}")
    return snapshot


def load_latest_cache(output_dir: str, data_set: DataSet) -> tuple[DataSnapshot | None, str | None]:
    """
    在缓存目录中查找最新的缓存文件并加载。
    Returns:
        tuple: (加载的快照, 对应的字符串时间戳) 或 (None, None)。
    """
    cache_files = _list_cache_files(output_dir)
    if not cache_files:
        return (None, None)

    # 用于从文件名提取时间戳以便排序的辅助函数
    def extract_ts(filename):
        key = filename[len(CACHE_PREFIX):-len(CACHE_SUFFIX)]
        if key == 'final':
            return float('inf')  # 确保 'final' 总是最新的
        try:
            return int(key)
        except ValueError:
            return -1  # 无效文件名

    latest_cache_filename = max(cache_files, key=extract_ts)
    timestamp_str = latest_cache_filename[len(CACHE_PREFIX):-len(CACHE_SUFFIX)]
    cache_path = os.path.join(output_dir, latest_cache_filename)

    logger.info(f"发现最新缓存，正在加载: {cache_path} (时间戳: {timestamp_str})")
    snapshot = _load_cache_file(cache_path, data_set)
    if snapshot is None:
        return (None, None)
    return (snapshot, timestamp_str)


def clear_all_cache(output_dir: str) -> int:
    """
    删除输出文件夹中所有的缓存文件（cache_{timestamp}.pkl）。

    Args:
        output_dir (str): 缓存文件所在的目录。

    Returns:
        int: 成功删除的文件数量。
    """
    if not os.path.exists(output_dir):
        logger.warning(f"目录 {output_dir} 不存在。")
        return 0

    deleted_count = 0
    for cache_file in _list_cache_files(output_dir):
        cache_path = os.path.join(output_dir, cache_file)
        try:
            os.remove(cache_path)
            deleted_count += 1
        except OSError as e:
            logger.warning(f"无法删除缓存文件 {cache_path}: {e}")

    return deleted_count
