"""
字幕格式转换模块

- SRT 解析 / 写出
- VTT → SRT 转换
- 时间轴重叠修复
- SRT → 带样式字幕 JSON（B 站字幕资源格式）
"""

import re
import shutil
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from core.logger import get_logger

logger = get_logger()


OVERLAP_GAP_MS = 10
MIN_DURATION_MS = 400

STYLED_DEFAULTS: Dict[str, Any] = {
    "font_size": 0.4,
    "font_color": "#FFFFFF",
    "background_alpha": 0.5,
    "background_color": "#9C27B0",
    "Stroke": "none",
    "location": 2,
}

_TIME_RANGE = re.compile(
    r"((?:\d{1,2}:)?\d{1,2}:\d{2}[,.]\d{1,3})\s*-->\s*((?:\d{1,2}:)?\d{1,2}:\d{2}[,.]\d{1,3})"
)
_VTT_TAGS = re.compile(r"</?[cvibu](?:[.\s][^>]*)?>|<\d{2}:\d{2}:\d{2}\.\d{3}>|<\d{2}:\d{2}\.\d{3}>")
_WHITESPACE = re.compile(r"\s+")


@dataclass
class SubtitleEntry:
    """一条字幕"""
    index: int
    start_ms: int
    end_ms: int
    text: str


def ms_to_srt_time(ms: int) -> str:
    """将毫秒转换为 SRT 时间格式 (HH:MM:SS,mmm)"""
    ms = max(0, int(ms))
    hours = ms // 3600000
    minutes = (ms % 3600000) // 60000
    seconds = (ms % 60000) // 1000
    milliseconds = ms % 1000
    return f"{hours:02d}:{minutes:02d}:{seconds:02d},{milliseconds:03d}"


def srt_time_to_ms(value: str) -> int:
    """把 HH:MM:SS,mmm / HH:MM:SS.mmm / MM:SS.mmm 转换为毫秒

    Raises:
        ValueError: 格式不合法
    """
    value = value.strip().replace(",", ".")
    main, _, frac = value.partition(".")
    parts = [int(p) for p in main.split(":")]
    if len(parts) == 2:
        parts.insert(0, 0)
    if len(parts) != 3:
        raise ValueError(f"无法解析时间: {value}")
    hours, minutes, seconds = parts
    millis = int((frac + "000")[:3]) if frac else 0
    return ((hours * 60 + minutes) * 60 + seconds) * 1000 + millis


def parse_srt(content: str) -> List[SubtitleEntry]:
    """解析 SRT 内容，跳过无法解析的块"""
    entries: List[SubtitleEntry] = []
    content = content.replace("\r\n", "\n").replace("\r", "\n").lstrip("﻿")
    for block in re.split(r"\n\s*\n", content.strip()):
        lines = [line for line in block.split("\n")]
        for i, line in enumerate(lines):
            match = _TIME_RANGE.search(line)
            if not match:
                continue
            try:
                start = srt_time_to_ms(match.group(1))
                end = srt_time_to_ms(match.group(2))
            except ValueError:
                break
            text = "\n".join(l.strip() for l in lines[i + 1:] if l.strip())
            entries.append(SubtitleEntry(len(entries) + 1, start, end, text))
            break
    return entries


def format_srt(entries: List[SubtitleEntry]) -> str:
    """写出 SRT，序号从 1 重新编号"""
    blocks = []
    for i, entry in enumerate(entries, 1):
        blocks.append(
            f"{i}\n{ms_to_srt_time(entry.start_ms)} --> {ms_to_srt_time(entry.end_ms)}\n{entry.text}\n"
        )
    return "\n".join(blocks)


def _clean_vtt_text(line: str) -> str:
    line = _VTT_TAGS.sub("", line)
    return _WHITESPACE.sub(" ", line).strip()


def convert_vtt_to_srt(vtt_content: str) -> str:
    """将 VTT (WebVTT) 格式转换为 SRT 格式

    - 去掉 WEBVTT 头部以及 NOTE / STYLE / REGION 块
    - HH:MM:SS.mmm 改为 HH:MM:SS,mmm，去掉位置设置
    - 去掉 <c…> <v…> <i> <b> <u> 等行内标签，合并连续空白
    - 序号从 1 开始
    """
    content = vtt_content.replace("\r\n", "\n").replace("\r", "\n").lstrip("﻿")
    entries: List[SubtitleEntry] = []

    for block in re.split(r"\n\s*\n", content.strip()):
        lines = block.split("\n")
        first = lines[0].strip()
        if first.startswith(("WEBVTT", "NOTE", "STYLE", "REGION")):
            continue
        for i, line in enumerate(lines):
            match = _TIME_RANGE.search(line)
            if not match:
                continue
            try:
                start = srt_time_to_ms(match.group(1))
                end = srt_time_to_ms(match.group(2))
            except ValueError:
                break
            text_lines = [_clean_vtt_text(l) for l in lines[i + 1:]]
            text = "\n".join(l for l in text_lines if l)
            if text:
                entries.append(SubtitleEntry(len(entries) + 1, start, end, text))
            break

    return format_srt(entries)


def fix_overlaps(
    entries: List[SubtitleEntry],
    gap_ms: int = OVERLAP_GAP_MS,
    min_duration_ms: int = MIN_DURATION_MS,
) -> Tuple[List[SubtitleEntry], int]:
    """修复时间轴重叠

    按开始时间稳定排序只用来找相邻条目；对每一对 prev.end > next.start：
    prev.end = next.start - gap；若因此 prev.end <= prev.start，则 prev.end = prev.start + min_duration。
    输出保持原有顺序。重复执行结果不变。

    Returns:
        (修复后的条目, 修改的条目数)
    """
    fixed = [replace(e) for e in entries]
    order = sorted(range(len(fixed)), key=lambda i: fixed[i].start_ms)
    changed = 0
    for a, b in zip(order, order[1:]):
        prev, nxt = fixed[a], fixed[b]
        if prev.end_ms <= nxt.start_ms:
            continue
        new_end = nxt.start_ms - gap_ms
        if new_end <= prev.start_ms:
            new_end = prev.start_ms + min_duration_ms
        if new_end != prev.end_ms:
            prev.end_ms = new_end
            changed += 1
    return fixed, changed


def fix_overlaps_in_file(path: Union[str, Path]) -> int:
    """就地修复 SRT 文件的重叠，覆盖前创建 .backup

    Returns:
        修改的条目数（0 表示文件未改动）
    """
    path = Path(path)
    content = path.read_text(encoding="utf-8", errors="replace")
    entries = parse_srt(content)
    fixed, changed = fix_overlaps(entries)
    if changed == 0:
        return 0
    backup = path.with_name(path.name + ".backup")
    shutil.copy2(path, backup)
    path.write_text(format_srt(fixed), encoding="utf-8")
    logger.info(f"字幕重叠已修复: {path.name}，修改 {changed} 条")
    return changed


def srt_to_styled_json(
    entries: List[SubtitleEntry], style: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """SRT 条目转换为带样式的字幕 JSON

    {font_size, font_color, background_alpha, background_color, Stroke,
     body: [{from, to, location, content}]}，from/to 为秒（浮点）
    """
    merged = dict(STYLED_DEFAULTS)
    if style:
        merged.update(style)
    location = int(merged.pop("location"))
    body = [
        {
            "from": entry.start_ms / 1000.0,
            "to": entry.end_ms / 1000.0,
            "location": location,
            "content": entry.text,
        }
        for entry in entries
    ]
    return {
        "font_size": merged["font_size"],
        "font_color": merged["font_color"],
        "background_alpha": merged["background_alpha"],
        "background_color": merged["background_color"],
        "Stroke": merged["Stroke"],
        "body": body,
    }
