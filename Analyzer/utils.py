"""
Copyright (c) 2026, Chen Jie, Joungtao, Xuzheng Jiang
All rights reserved.
This source code is licensed under the BSD-2-Clause license found in the
LICENSE file in the root directory of this source tree.
"""

# utils.py
import logging

_SIZE_UNITS = ("B", "KB", "MB", "GB", "TB")


def setup_logging(level: int = logging.INFO):
    """配置全局日志记录器"""
    # 创建根日志记录器
    root_logger = logging.getLogger()
    # 避免重复添加处理器
    if root_logger.hasHandlers():
        return

    root_logger.setLevel(level)

    # 创建控制台处理器
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)

    # 定义日志格式
    formatter = logging.Formatter(
        '[%(asctime)s]-%(levelname)s- %(message)s',
        datefmt='%H:%M:%S'
    )
    console_handler.setFormatter(formatter)

    root_logger.addHandler(console_handler)


def format_size(size_in_bytes: int) -> str:
    """把字节数格式化为便于阅读的字符串，例如 1536 -> "1.50 KB"。"""
    size = float(size_in_bytes)
    for unit in _SIZE_UNITS:
        if abs(size) < 1024 or unit == _SIZE_UNITS[-1]:
            if unit == "B":
                return f"{int(size)} B"
            return f"{size:.2f} {unit}"
        size /= 1024
    return f"{size_in_bytes} B"
