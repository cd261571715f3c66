"""
字幕后处理

下载完成后对视频目录中的字幕依次处理：
1. 去掉文件名中的分辨率标识（{id}_1080p.en.srt → {id}.en.srt）
2. VTT 转为 SRT（yt-dlp 在没有 ffmpeg 时只能给出 VTT）
3. 可选：修复时间轴重叠
4. 复制为 {标题}[{id}].{lang}.{ext}，原文件保留
"""

import re
import shutil
from pathlib import Path
from typing import Dict, List, Optional

from core.exceptions import StorageError
from core.logger import get_logger
from core.subtitle_format import convert_vtt_to_srt, fix_overlaps_in_file
from core.workdir import WorkDirRepository, sanitize_title, truncate_title_for_filename

logger = get_logger()

# 输出模板 %(id)s_%(height)sp.%(ext)s 产生的字幕名：{id}_1080p.en.srt
_RESOLUTION_SUFFIX = re.compile(r"_(\d{3,5})p(\.[A-Za-z-]+\.(srt|vtt))$")


def strip_resolution_suffix(name: str) -> str:
    """abc_1080p.en-US.vtt → abc.en-US.vtt；不匹配时原样返回"""
    return _RESOLUTION_SUFFIX.sub(r"\2", name)


def split_subtitle_name(path: Path, video_id: str) -> Optional[tuple]:
    """把 {id}.{lang}.{ext} 拆成 (lang, ext)，不符合格式返回 None

    语言取倒数第二段，例如 abc.en-US.srt → ("en-US", "srt")
    """
    name = path.name
    if not name.startswith(f"{video_id}."):
        return None
    parts = name.split(".")
    if len(parts) < 3:
        return None
    return parts[-2], parts[-1]


def subtitle_language(path: Path) -> str:
    """字幕文件的语言代码（文件名倒数第二段）"""
    parts = Path(path).name.split(".")
    return parts[-2] if len(parts) >= 3 else ""


class SubtitleNormalizer:
    """视频目录级别的字幕整理"""

    def __init__(self, repo: WorkDirRepository, auto_fix_overlap: bool = False):
        self.repo = repo
        self.auto_fix_overlap = auto_fix_overlap

    def strip_resolution(self, video_dir: Path) -> List[Path]:
        """把 {id}_1080p.{lang}.{ext} 改名为 {id}.{lang}.{ext}，目标已存在时覆盖

        Returns:
            改名后的路径列表
        """
        renamed = []
        for path in self.repo.find_subtitle_files(video_dir):
            new_name = strip_resolution_suffix(path.name)
            if new_name == path.name:
                continue
            target = path.with_name(new_name)
            try:
                path.replace(target)
            except OSError as e:
                raise StorageError(f"字幕改名失败: {path} → {target}", cause=e) from e
            logger.debug(f"去除字幕分辨率标识: {path.name} → {new_name}")
            renamed.append(target)
        return renamed

    def convert_vtt_files(self, video_dir: Path) -> List[Path]:
        """把目录中的 .vtt 转为同名 .srt（已存在的 .srt 不覆盖）"""
        converted = []
        for path in self.repo.find_subtitle_files(video_dir):
            if path.suffix.lower() != ".vtt":
                continue
            target = path.with_suffix(".srt")
            if target.exists():
                continue
            try:
                content = path.read_text(encoding="utf-8", errors="replace")
                target.write_text(convert_vtt_to_srt(content), encoding="utf-8")
            except OSError as e:
                raise StorageError(f"VTT 转换失败: {path}", cause=e) from e
            logger.debug(f"VTT → SRT: {target.name}")
            converted.append(target)
        return converted

    def fix_overlaps(self, video_dir: Path) -> int:
        """修复目录中所有 SRT 的时间轴重叠，返回修改条目总数"""
        total = 0
        for path in self.repo.find_subtitle_files(video_dir):
            if path.suffix.lower() != ".srt":
                continue
            try:
                total += fix_overlaps_in_file(path)
            except OSError as e:
                raise StorageError(f"字幕重叠修复失败: {path}", cause=e) from e
        return total

    def rename_with_title(self, video_dir: Path, video_id: str, title: str) -> List[Path]:
        """把 {id}.{lang}.{ext} 复制为 {标题}[{id}].{lang}.{ext}

        已经带 [id] 的文件跳过；目标已存在不覆盖。

        Returns:
            新文件名的字幕路径列表（包括已经存在的）
        """
        clean_title = sanitize_title(title)
        renamed = []
        for path in self.repo.find_subtitle_files(video_dir):
            if f"[{video_id}]" in path.name:
                continue
            parts = split_subtitle_name(path, video_id)
            if parts is None:
                continue
            lang, ext = parts
            short_title = truncate_title_for_filename(clean_title, video_id, lang, ext)
            target = path.with_name(f"{short_title}[{video_id}].{lang}.{ext}")
            if not target.exists():
                try:
                    shutil.copy2(path, target)
                except OSError as e:
                    raise StorageError(f"复制字幕失败: {path} → {target}", cause=e) from e
            renamed.append(target)
        return renamed

    def normalize(self, video_dir: Path, video_id: str, title: str) -> Dict[str, str]:
        """完整的字幕后处理流程

        Returns:
            语言 → 字幕路径（优先 SRT，优先带标题的文件名）
        """
        video_dir = Path(video_dir)
        self.strip_resolution(video_dir)
        self.convert_vtt_files(video_dir)
        if self.auto_fix_overlap:
            changed = self.fix_overlaps(video_dir)
            if changed:
                logger.info(f"字幕重叠修复 {changed} 条", video_id=video_id)
        self.rename_with_title(video_dir, video_id, title)

        result: Dict[str, str] = {}
        for path in self.repo.find_subtitle_files(video_dir):
            lang = subtitle_language(path)
            if not lang:
                continue
            current = result.get(lang)
            if current is None or _subtitle_rank(path, video_id) > _subtitle_rank(Path(current), video_id):
                result[lang] = str(path)
        if result:
            logger.info(f"字幕整理完成: {', '.join(sorted(result))}", video_id=video_id)
        return result


def _subtitle_rank(path: Path, video_id: str) -> int:
    rank = 0
    if path.suffix.lower() == ".srt":
        rank += 2
    if f"[{video_id}]" in path.name:
        rank += 1
    return rank
