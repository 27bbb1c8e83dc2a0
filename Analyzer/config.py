"""
Copyright (c) 2026, Chen Jie, Joungtao, Xuzheng Jiang
All rights reserved.
This source code is licensed under the BSD-2-Clause license found in the
LICENSE file in the root directory of this source tree.
"""

# config.py
from tap import Tap

class Config(Tap):
    """应用程序的配置模型"""

    # --- Input & Output ---
    input: str  # 输入目录 (包含 tokens.jsonl[.zst] 和 segments.json)
    output_dir: str = "output"  # 输出目录
    clear_output_dir: bool = False  # 是否清空输出目录
    compact_json: bool = False  # 是否生成紧凑的JSON格式

    # --- Snapshot Control ---
    timestamps: str | None = None  # 指定时间戳，逗号分隔
    snapshot_interval: int | None = None  # 快照间隔
    workers: int = 1  # 构建中间快照的后台线程数

    # --- Report Generation ---
    segment_status: bool = False  # 是否为每个堆生成统计报告
    top_usages: int = 5  # 统计报告中列出的资源用途数量
    resource_id: int | None = None  # 为指定资源生成历史
    compare: str | None = None  # 比较两个快照，格式: base,diff (时间戳或 final)

    # --- Cache Management ---
    no_cache: bool = False  # 是否禁用缓存
    clear_cache: bool = False  # 是否清空缓存

    # --- Advanced Settings ---
    log_interval: int = 100000  # 日志间隔


# 全局配置实例
settings: Config = None


def initialize_config(args: list[str] | None = None) -> None:
    """解析命令行参数并初始化全局的 `settings` 对象"""
    global settings
    if settings is not None:
        return
    settings = Config(underscores_to_dashes=True).parse_args(args)
