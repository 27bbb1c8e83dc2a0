"""
Copyright (c) 2026, Chen Jie, Joungtao, Xuzheng Jiang
All rights reserved.
This source code is licensed under the BSD-2-Clause license found in the
LICENSE file in the root directory of this source tree.
"""

# trace_loader.py
import os
import io
import json
import logging
from typing import Any

import zstandard as zstd

from common_types import HeapType, SegmentInfo, Token, token_from_dict
from data_set import DataSet
from errors import MalformedTraceError

logger = logging.getLogger(__name__)

TOKENS_FILE = "tokens.jsonl"
TOKENS_ZST_FILE = "tokens.jsonl.zst"
SEGMENTS_FILE = "segments.json"


def decompress_zst(path: str) -> bytes:
    """解压一个 zstd 格式的压缩文件。"""
    dctx = zstd.ZstdDecompressor()
    with open(path, "rb") as f:
        reader = dctx.stream_reader(f)
        return reader.read()


def compress_zst(data: bytes, path: str, level: int = 3):
    """把数据以 zstd 格式写入文件。"""
    cctx = zstd.ZstdCompressor(level=level)
    with open(path, "wb") as f:
        f.write(cctx.compress(data))


def _parse_address(value: int | str) -> int:
    """地址可以是整数，也可以是 "0x..." 形式的十六进制字符串。"""
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


def parse_segments(file_path: str) -> dict[str, Any]:
    """
    解析 segments.json，返回段信息、目标进程和追踪名称。
    文件缺失时返回空的段列表，此时所有物理大小都为 0。
    Args:
        file_path (str): segments.json 文件的路径。
    Returns:
        dict: {"segments": list[SegmentInfo], "target_process_id": int | None, "name": str}
    """
    result: dict[str, Any] = {"segments": [], "target_process_id": None, "name": ""}
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.warning(f"段信息文件 '{SEGMENTS_FILE}' 未在路径 {os.path.dirname(file_path)} 中找到。")
        return result

    for entry in data.get("segments", []):
        heap = entry["heap_type"]
        heap_type = HeapType[heap] if isinstance(heap, str) else HeapType(heap)
        result["segments"].append(SegmentInfo(
            heap_type=heap_type,
            base_address=_parse_address(entry.get("base_address", 0)),
            size=_parse_address(entry.get("size", 0)),
        ))
    result["target_process_id"] = data.get("target_process_id")
    result["name"] = data.get("name", "")
    return result


def parse_tokens(text: str) -> list[list[Token]]:
    """
    解析 JSON Lines 格式的 token 列表。每行一个 token，"stream" 字段指定所属的流。
    每个流内的顺序保持文件中的顺序，且时间戳必须不减。
    """
    streams: dict[int, list[Token]] = {}
    for line_no, line in enumerate(io.StringIO(text), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            data = json.loads(line)
            stream_index = int(data.get("stream", 0))
            token = token_from_dict(data)
        except (ValueError, KeyError, TypeError) as e:
            raise MalformedTraceError(f"第 {line_no} 行无法解析为 token: {e}") from e

        stream = streams.setdefault(stream_index, [])
        if stream and token.timestamp < stream[-1].timestamp:
            raise MalformedTraceError(
                f"第 {line_no} 行: 流 {stream_index} 的时间戳 {token.timestamp} 小于前一个 token 的 {stream[-1].timestamp}"
            )
        stream.append(token)

    return [streams[index] for index in sorted(streams)]


def load_data_set(input_dir: str) -> DataSet:
    """
    从目录加载追踪数据：segments.json 和 tokens.jsonl(.zst)。
    优先读取压缩文件。
    Raises:
        FileNotFoundError: 目录中没有 token 文件。
        MalformedTraceError: token 文件格式错误。
    """
    zst_path = os.path.join(input_dir, TOKENS_ZST_FILE)
    plain_path = os.path.join(input_dir, TOKENS_FILE)
    if os.path.exists(zst_path):
        logger.info("解压输入文件...")
        text = decompress_zst(zst_path).decode("utf-8")
        logger.info("文件解压完成。")
    elif os.path.exists(plain_path):
        with open(plain_path, 'r', encoding='utf-8') as f:
            text = f.read()
    else:
        raise FileNotFoundError(f"在目录 '{input_dir}' 中未找到 '{TOKENS_ZST_FILE}' 或 '{TOKENS_FILE}' 文件。")

    meta = parse_segments(os.path.join(input_dir, SEGMENTS_FILE))
    streams = parse_tokens(text)
    data_set = DataSet(
        streams=streams,
        segment_info=meta["segments"],
        target_process_id=meta["target_process_id"],
        name=meta["name"] or os.path.basename(os.path.normpath(input_dir)),
    )
    logger.info(f"已加载追踪 '{data_set.name}': {len(streams)} 个流, {data_set.token_count} 个 token, {len(data_set.segment_info)} 个段。")
    return data_set


def save_data_set(data_set: DataSet, output_dir: str, compress: bool = True):
    """把追踪数据写成 load_data_set 可读取的格式。"""
    os.makedirs(output_dir, exist_ok=True)
    lines = []
    for stream_index, stream in enumerate(data_set.streams):
        for token in stream:
            lines.append(json.dumps({"stream": stream_index, **token.to_dict()}))
    text = "\n".join(lines) + "\n"

    if compress:
        compress_zst(text.encode("utf-8"), os.path.join(output_dir, TOKENS_ZST_FILE))
    else:
        with open(os.path.join(output_dir, TOKENS_FILE), "w", encoding="utf-8") as f:
            f.write(text)

    segments = {
        "name": data_set.name,
        "target_process_id": data_set.target_process_id,
        "segments": [
            {"heap_type": segment.heap_type.name, "base_address": segment.base_address, "size": segment.size}
            for segment in data_set.segment_info
        ],
    }
    with open(os.path.join(output_dir, SEGMENTS_FILE), "w", encoding="utf-8") as f:
        json.dump(segments, f, indent=2)
