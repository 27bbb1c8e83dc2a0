"""
Pytest configuration and shared fixtures.

Provides:
- Analyzer modules on sys.path
- A small two-stream trace used by most tests
- Token helpers
"""

import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
ANALYZER = ROOT / "Analyzer"
if str(ANALYZER) not in sys.path:
    sys.path.insert(0, str(ANALYZER))

import config  # noqa: E402
from common_types import (  # noqa: E402
    CpuMapToken, HeapType, PageTableUpdateToken, ResourceBindToken, ResourceCreateToken,
    ResourceDestroyToken, ResourceType, ResourceUsageFlag, SegmentInfo,
    VirtualAllocateToken, VirtualFreeToken,
)
from data_set import DataSet  # noqa: E402

LOCAL_BASE = 0x100000
INVISIBLE_BASE = 0x200000
SYSTEM_BASE = 0x10000000
SEGMENT_SIZE = 0x100000

ALLOC_A = 0x10000
ALLOC_B = 0x40000


def make_segments():
    return [
        SegmentInfo(HeapType.LOCAL, LOCAL_BASE, SEGMENT_SIZE),
        SegmentInfo(HeapType.INVISIBLE, INVISIBLE_BASE, SEGMENT_SIZE),
        SegmentInfo(HeapType.SYSTEM, SYSTEM_BASE, SEGMENT_SIZE),
    ]


@pytest.fixture(autouse=True)
def reset_settings(monkeypatch):
    """Core functions must not depend on a parsed command line."""
    monkeypatch.setattr(config, "settings", None)


@pytest.fixture
def segments():
    return make_segments()


@pytest.fixture
def basic_streams():
    """
    Stream 0 builds allocation A and two resources in it.
    Stream 1 maps part of A to local memory, then creates and frees allocation B
    and destroys resource 2.
    """
    stream0 = [
        VirtualAllocateToken(1, 100, ALLOC_A, 0x4000, (HeapType.LOCAL,)),
        ResourceCreateToken(2, 100, 1, ResourceType.BUFFER, ResourceUsageFlag.VERTEX_BUFFER),
        ResourceBindToken(3, 100, 1, ALLOC_A, 0x1000),
        ResourceCreateToken(6, 100, 2, ResourceType.IMAGE, ResourceUsageFlag.COLOR_TARGET),
        ResourceBindToken(7, 100, 2, ALLOC_A + 0x2000, 0x1000),
    ]
    stream1 = [
        PageTableUpdateToken(4, 200, ALLOC_A, LOCAL_BASE, 2),
        CpuMapToken(5, 200, ALLOC_A),
        VirtualAllocateToken(8, 200, ALLOC_B, 0x2000, (HeapType.SYSTEM, HeapType.LOCAL)),
        ResourceDestroyToken(9, 200, 2),
        VirtualFreeToken(10, 200, ALLOC_B),
    ]
    return [stream0, stream1]


@pytest.fixture
def basic_data_set(basic_streams, segments):
    return DataSet(streams=basic_streams, segment_info=segments, target_process_id=1, name="basic")
