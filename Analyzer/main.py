"""
Copyright (c) 2026, Chen Jie, Joungtao, Xuzheng Jiang
All rights reserved.
This source code is licensed under the BSD-2-Clause license found in the
LICENSE file in the root directory of this source tree.
"""

# main.py
import os
import sys
import logging

import trace_loader as Loader
import snapshot_manager as SnapshotMngr
import output_handler as Output
import analysis
import utils
from common_types import DataSnapshot, HeapType, SubscriptionStatus
from data_set import DataSet
from errors import InvalidArgumentError, SnapshotError
from resource_history import generate_resource_history
from segment_status import get_segment_status, get_subscription_status
from snapshot_builder import generate_snapshots

import config
logger = logging.getLogger(__name__)

REPORT_HEAPS = (HeapType.LOCAL, HeapType.INVISIBLE, HeapType.SYSTEM)


def parse_timestamp(value: str) -> int | str:
    """把命令行中的时间戳解析为整数，"final" 保持不变。"""
    value = value.strip()
    if value == "final":
        return value
    try:
        return int(value)
    except ValueError as e:
        raise InvalidArgumentError(f"无效的时间戳: '{value}'") from e


class MainProcessor:
    def __init__(self, input_dir, output_dir):
        self.input_dir = input_dir
        self.output_dir = output_dir
        self.settings = config.settings # 直接引用全局配置

        # 内部状态
        self.data_set: DataSet | None = None
        self.snapshots: dict[int | str, DataSnapshot] = {}

    def run(self):
        """执行完整的分析流程"""
        self._prepare()

        # 加载追踪数据
        self._load_trace()

        # 回放追踪，构建所有需要的快照
        self._build_snapshots()

        # 生成报告
        self._generate_segment_reports()
        self._generate_resource_history()
        self._generate_comparison()

        # 清理临时数据
        self._cleanup()
        logger.info("所有处理完成。")

    def _prepare(self):
        """准备阶段：清空目录、设置输出格式"""
        if self.settings.clear_output_dir:
            Output.remove_output_dir(self.output_dir)
        os.makedirs(self.output_dir, exist_ok=True)

        # 设置输出格式
        if self.settings.compact_json:
            Output.set_pretty_print(False)  # 禁用美观输出

    def _load_trace(self):
        logger.info("--- 阶段 1a: 加载追踪数据 ---")
        self.data_set = Loader.load_data_set(self.input_dir)
        logger.info("--- 追踪信息 ---")
        logger.info(f"  name: {self.data_set.name}")
        logger.info(f"  total_token_count: {self.data_set.token_count}")
        logger.info(f"  time_end: {self.data_set.end_timestamp}")
        for segment in self.data_set.segment_info:
            logger.info(f"  segment {segment.heap_type.name}: {hex(segment.base_address)} ({utils.format_size(segment.size)})")
        logger.info("----------------")

    def _target_timestamps(self) -> list[int]:
        """合并 --timestamps、--snapshot-interval 和 --compare 中的时间戳"""
        targets = set()
        if self.settings.timestamps:
            for value in self.settings.timestamps.split(","):
                if value.strip():
                    ts = parse_timestamp(value)
                    if ts != "final":
                        targets.add(ts)

        # 如果提供了 --snapshot-interval，则根据时间间隔生成
        if self.settings.snapshot_interval and self.settings.snapshot_interval > 0:
            total_duration = self.data_set.end_timestamp
            if total_duration > 0:
                interval_timestamps = range(self.settings.snapshot_interval, total_duration, self.settings.snapshot_interval)
                targets.update(interval_timestamps)
                logger.info(f"根据 --snapshot-interval={self.settings.snapshot_interval} 和总时长 {total_duration} 生成了 {len(interval_timestamps)} 个时间戳。")
            else:
                logger.warning("追踪为空，无法使用 --snapshot-interval 功能。")

        for ts in self._compare_pair():
            if ts != "final":
                targets.add(ts)
        return sorted(targets)

    def _compare_pair(self) -> tuple[int | str, ...]:
        if not self.settings.compare:
            return ()
        parts = [part for part in self.settings.compare.split(",") if part.strip()]
        if len(parts) != 2:
            raise InvalidArgumentError(f"--compare 需要两个时间戳 (base,diff)，得到: '{self.settings.compare}'")
        return tuple(parse_timestamp(part) for part in parts)

    def _handle_snapshot(self, snapshot: DataSnapshot):
        """保存缓存并写入快照的JSON文件"""
        ts_str = str(snapshot.timestamp)
        self.snapshots[snapshot.timestamp] = snapshot

        if not self.settings.no_cache:
            SnapshotMngr.save_snapshot_cache(snapshot, self.output_dir)

        snapshot_file = os.path.join(self.output_dir, f"{ts_str}_snapshot.json")
        Output.write_snapshot(snapshot, snapshot_file)
        summary = analysis.summarize_snapshot(snapshot)
        logger.info(
            f"快照 {ts_str}: {summary['allocation_count']} 个分配, {summary['resource_count']} 个资源, "
            f"虚拟内存 {utils.format_size(summary['total_virtual_memory'])} -> {snapshot_file}"
        )

    def _build_snapshots(self):
        logger.info("--- 阶段 1b: 构建快照 ---")
        targets = self._target_timestamps()
        if targets:
            logger.info(f"将为 {len(targets)} 个目标时间戳生成快照。")

        # 尝试从缓存加载
        final_cached = False
        if not self.settings.no_cache:
            snapshot, ts = SnapshotMngr.load_latest_cache(self.output_dir, self.data_set)
            if snapshot is not None and ts == "final":
                self.snapshots["final"] = snapshot
                final_cached = True
            for target in targets:
                snapshot = SnapshotMngr.load_snapshot_cache(self.output_dir, target, self.data_set)
                if snapshot is not None:
                    self.snapshots[target] = snapshot

        missing = [target for target in targets if target not in self.snapshots]
        if final_cached and not missing:
            logger.info("所有快照均已从缓存加载，跳过回放。")
            return

        if self.settings.workers > 1 and missing:
            # 中间快照在后台线程中各自回放，主线程负责最终快照
            with SnapshotMngr.SnapshotWorker(self.data_set, max_workers=self.settings.workers) as worker:
                futures = [worker.submit(target) for target in missing]
                for snapshot in generate_snapshots(self.data_set, log_interval=self.settings.log_interval):
                    self._handle_snapshot(snapshot)
                for future in futures:
                    self._handle_snapshot(future.result())
        else:
            for snapshot in generate_snapshots(self.data_set, missing, log_interval=self.settings.log_interval):
                logger.info(f"--- 捕获快照: {snapshot.timestamp} ---")
                self._handle_snapshot(snapshot)

    def _report_usages(self, status):
        top, remainder = analysis.top_resource_usages(status, self.settings.top_usages)
        for usage, size in top:
            logger.info(f"    {usage.name}: {utils.format_size(size)}")
        if remainder > 0:
            logger.info(f"    其它: {utils.format_size(remainder)}")

    def _generate_segment_reports(self):
        if not self.settings.segment_status:
            return
        logger.info("--- 阶段 2: 生成堆统计 ---")
        for ts, snapshot in self.snapshots.items():
            statuses = []
            subscriptions = {}
            for heap_type in REPORT_HEAPS:
                status = get_segment_status(snapshot, heap_type)
                subscription = get_subscription_status(status)
                statuses.append(status)
                subscriptions[heap_type] = subscription

                message = (
                    f"快照 {ts} {heap_type.name}: 请求 {utils.format_size(status.total_virtual_memory_requested)} / "
                    f"物理 {utils.format_size(status.total_physical_size)} ({subscription.value})"
                )
                if subscription == SubscriptionStatus.OVER_LIMIT:
                    logger.warning(message)
                else:
                    logger.info(message)
                self._report_usages(status)

            status_file = os.path.join(self.output_dir, f"{ts}_segment_status.json")
            Output.write_segment_status(statuses, status_file, subscriptions, ts)
            logger.info(f"堆统计已生成: {status_file}")

    def _find_resource(self, identifier: int):
        # 优先使用最终快照；资源可能在结束前已被销毁，此时回退到中间快照
        ordered = sorted(self.snapshots.items(), key=lambda item: item[0] != "final")
        for _, snapshot in ordered:
            resource = snapshot.find_resource(identifier)
            if resource is not None:
                return snapshot, resource
        return None, None

    def _generate_resource_history(self):
        if self.settings.resource_id is None:
            return
        logger.info("--- 阶段 3: 生成资源历史 ---")
        snapshot, resource = self._find_resource(self.settings.resource_id)
        if resource is None:
            logger.error(f"在任何快照中都找不到资源 {self.settings.resource_id}。")
            return

        history = generate_resource_history(snapshot, resource)
        for event in history.events:
            logger.info(f"  {event.timestamp}: {event.event_type.value} (线程 {event.thread_id})")
        history_file = os.path.join(self.output_dir, f"resource_{resource.identifier}_history.json")
        Output.write_resource_history(history, history_file)
        logger.info(f"资源历史已生成: {history_file}")

    def _generate_comparison(self):
        pair = self._compare_pair()
        if not pair:
            return
        logger.info("--- 阶段 4: 比较快照 ---")
        base_ts, diff_ts = pair
        base, diff = self.snapshots[base_ts], self.snapshots[diff_ts]
        deltas = [analysis.compare_heap_delta(base, diff, heap_type) for heap_type in REPORT_HEAPS]
        for delta in deltas:
            logger.info(
                f"  {delta.heap_type.name}: 分配 {delta.allocation_count:+d}, 资源 {delta.resource_count:+d}, "
                f"已绑定 {delta.total_allocated_and_bound:+d} B, 未绑定 {delta.total_allocated_and_unbound:+d} B"
            )
        compare_file = os.path.join(self.output_dir, f"compare_{base_ts}_{diff_ts}.json")
        Output.write_heap_delta(deltas, compare_file, base.name, diff.name)
        logger.info(f"比较结果已生成: {compare_file}")

    def _cleanup(self):
        """清理工作，如删除缓存"""
        if self.settings.clear_cache:
            count_deleted = SnapshotMngr.clear_all_cache(self.output_dir)
            logger.info(f"已清理 {count_deleted} 个缓存文件。")


def main(args: list[str] | None = None) -> int:
    # 导入配置并设置日志
    config.initialize_config(args)
    utils.setup_logging()

    processor = MainProcessor(
        config.settings.input,
        os.path.join(config.settings.input, config.settings.output_dir)
    )
    try:
        processor.run()
    except (SnapshotError, FileNotFoundError) as e:
        logger.error(f"处理失败: {e}")
        return 1
    return 0

if __name__ == "__main__":
    sys.exit(main())
