"""
Copyright (c) 2026, Chen Jie, Joungtao, Xuzheng Jiang
All rights reserved.
This source code is licensed under the BSD-2-Clause license found in the
LICENSE file in the root directory of this source tree.
"""

# errors.py


class SnapshotError(Exception):
    """快照重建过程中所有错误的基类"""
    pass


class InvalidArgumentError(SnapshotError):
    """入口函数收到了空的或格式错误的快照、资源或输出参数"""
    pass


class MalformedTraceError(SnapshotError):
    """追踪数据本身不一致，例如释放/销毁没有对应的创建"""
    pass


class DuplicateAllocationError(MalformedTraceError):
    """新的虚拟分配与一个仍然存活的分配地址范围重叠"""
    pass


class ExhaustedStreamError(SnapshotError):
    """在合并流已经为空时仍请求下一个 token（属于编程错误）"""
    pass


class ResourceNotResolvableError(SnapshotError):
    """资源缺少标识符，或在历史回放中无法匹配"""
    pass


class ExportError(SnapshotError):
    """导出快照时的错误"""
    pass


class DestinationNotWritableError(ExportError):
    """导出目标无法写入"""
    pass
