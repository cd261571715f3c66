"""
工作目录仓库

负责 {root}/ 下所有文件的读写：
- 目录布局：{root}/{channel_id}/{video_id}/
- 状态文件原子写入（tmp + fsync + os.replace）
- 标题清理与字幕文件名截断
- 未完成下载（.part / .ytdl）检测

其他组件只从这里拿路径，不自行拼接。
"""

import json
import os
import re
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from core.exceptions import StorageError
from core.logger import get_logger
from core.models import VideoInfo
from core.state.status import (
    DownloadState,
    DownloadStatus,
    InvalidTransitionError,
    UploadState,
    UploadStatus,
    shorten_error_message,
)
from core.url_parser import extract_channel_id

logger = get_logger()


CHANNEL_INFO_FILE = "channel_info.json"
PENDING_DOWNLOADS_FILE = "pending_downloads.json"
DOWNLOAD_STATUS_FILE = "download_status.json"
UPLOAD_STATUS_FILE = "upload_status.json"
ORGANIZED_MARKER = ".organized"
GLOBAL_DIR = ".global"

VIDEO_EXTENSIONS = (".mp4", ".mkv", ".webm")
PARTIAL_EXTENSIONS = (".part", ".ytdl")
# 停滞检测统计的文件类型
DOWNLOAD_EXTENSIONS = (".part", ".mp4", ".m4a", ".webm", ".mkv", ".ytdl")
COVER_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".gif")

MAX_FILENAME_BYTES = 255

# {id}_{height}p.{ext}，height 可能是 NA
_VIDEO_FILE_PATTERN = re.compile(r"^.+_[^_/\\]*p\.(mp4|mkv|webm)$", re.IGNORECASE)
_HOSTILE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f\ud800-\udfff\ufffd]')


def atomic_write_json(path: Path, data: Any) -> None:
    """原子写入 JSON 文件

    先写同目录下的唯一临时文件并 fsync，再 os.replace 到目标路径，
    崩溃时目标文件要么是旧内容要么是新内容，不会出现半截 JSON。

    Raises:
        StorageError: 写入失败
    """
    path = Path(path)
    content = json.dumps(data, ensure_ascii=False, indent=2)
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        raise StorageError(f"写入文件失败: {path}", cause=e) from e
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                logger.warning(f"清理临时文件失败: {tmp_path}")


def read_json(path: Path) -> Optional[Any]:
    """读取 JSON 文件，文件不存在返回 None

    Raises:
        StorageError: 读取失败或内容不是合法 JSON
    """
    path = Path(path)
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise StorageError(f"读取文件失败: {path}", cause=e) from e


def is_partial_file(name: str) -> bool:
    lower = name.lower()
    return lower.endswith(PARTIAL_EXTENSIONS) or ".part" in lower


def measure_download_bytes(directory: Path) -> int:
    """统计目录中下载相关文件的总字节数（停滞检测用）

    统计扩展名为 .part/.mp4/.m4a/.webm/.mkv/.ytdl 或文件名包含 .part 的文件
    """
    total = 0
    try:
        entries = list(os.scandir(directory))
    except OSError:
        return 0
    for entry in entries:
        name = entry.name.lower()
        if not (name.endswith(DOWNLOAD_EXTENSIONS) or ".part" in name):
            continue
        try:
            if entry.is_file():
                total += entry.stat().st_size
        except OSError:
            # 下载过程中文件可能被重命名
            continue
    return total


def sanitize_title(title: Union[str, bytes]) -> str:
    """把标题中不能出现在路径里的字符替换为 "_"

    替换：<>:"/\\|?*、C0 控制字符、0x7F、非法 UTF-8 序列；保留中日韩文字。
    去掉首尾空格和点，清理后为空返回 "untitled"。
    """
    if isinstance(title, bytes):
        title = title.decode("utf-8", errors="replace")
    sanitized = _HOSTILE_CHARS.sub("_", title or "")
    sanitized = sanitized.strip().strip(".").strip()
    return sanitized or "untitled"


def truncate_title_for_filename(title: str, video_id: str, lang: str, ext: str) -> str:
    """截断标题，使 "{title}[{id}].{lang}.{ext}" 不超过 255 字节

    按字节截断且不拆分 UTF-8 多字节字符。
    """
    ext = ext.lstrip(".")
    suffix = f"[{video_id}].{lang}.{ext}"
    budget = MAX_FILENAME_BYTES - len(suffix.encode("utf-8"))
    if budget <= 0:
        return ""
    encoded = title.encode("utf-8")
    if len(encoded) <= budget:
        return title
    # errors="ignore" 丢弃被截断的半个字符
    return encoded[:budget].decode("utf-8", errors="ignore").rstrip()


class WorkDirRepository:
    """工作目录仓库

    目录结构：
        {root}/.global/upload_quota.json
        {root}/{channel_id}/channel_info.json
        {root}/{channel_id}/{video_id}/download_status.json ...

    同一视频目录的写入由编排器串行化，这里不加锁。
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    # ------------------------------------------------------------------ 目录

    def channel_id_for(self, channel_url: str) -> str:
        return extract_channel_id(channel_url)

    def channel_dir(self, channel_id: str) -> Path:
        return self.root / channel_id

    def video_dir(self, channel_id: str, video_id: str) -> Path:
        return self.root / channel_id / video_id

    def ensure_channel_dir(self, channel_id: str) -> Path:
        return self._mkdir(self.channel_dir(channel_id))

    def ensure_video_dir(self, channel_id: str, video_id: str) -> Path:
        """创建 {root}/{channel_id}/{video_id}/（0755，幂等）"""
        return self._mkdir(self.video_dir(channel_id, video_id))

    def global_dir(self) -> Path:
        return self._mkdir(self.root / GLOBAL_DIR)

    def list_video_dirs(self, channel_id: str) -> List[Path]:
        channel_dir = self.channel_dir(channel_id)
        if not channel_dir.is_dir():
            return []
        return sorted(
            p for p in channel_dir.iterdir()
            if p.is_dir() and not p.name.startswith(".")
        )

    def list_channel_ids(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(
            p.name for p in self.root.iterdir()
            if p.is_dir() and (p / CHANNEL_INFO_FILE).exists()
        )

    @staticmethod
    def _mkdir(path: Path) -> Path:
        try:
            path.mkdir(mode=0o755, parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"创建目录失败: {path}", cause=e) from e
        return path

    # ------------------------------------------------------------------ 文件查找

    def find_video_file(self, directory: Path) -> Optional[Path]:
        """查找第一个 *_*p.{mp4,mkv,webm}，忽略 .part / .ytdl

        Returns:
            视频文件路径，找不到返回 None
        """
        directory = Path(directory)
        if not directory.is_dir():
            return None
        for path in sorted(directory.iterdir()):
            if not path.is_file() or is_partial_file(path.name):
                continue
            if _VIDEO_FILE_PATTERN.match(path.name):
                return path
        return None

    def find_any_video_file(self, directory: Path) -> Optional[Path]:
        """查找任意 .mp4/.mkv/.webm（上传前的兜底查找）"""
        directory = Path(directory)
        if not directory.is_dir():
            return None
        for path in sorted(directory.iterdir()):
            if path.is_file() and not is_partial_file(path.name) and path.suffix.lower() in VIDEO_EXTENSIONS:
                return path
        return None

    def find_subtitle_files(self, directory: Path) -> List[Path]:
        """返回 *.srt 和 *.vtt，排除 .backup 与 .frame.srt"""
        directory = Path(directory)
        if not directory.is_dir():
            return []
        result = []
        for path in sorted(directory.iterdir()):
            name = path.name.lower()
            if not path.is_file():
                continue
            if ".backup" in name or name.endswith(".frame.srt"):
                continue
            if name.endswith((".srt", ".vtt")):
                result.append(path)
        return result

    def find_cover_file(self, directory: Path, video_path: Optional[Path] = None) -> Optional[Path]:
        """按顺序查找封面

        1. 与视频同名的 .jpg（{video_basename}.jpg）
        2. cover.{jpg,jpeg,png,webp,gif}
        3. thumbnail.jpg
        """
        directory = Path(directory)
        candidates: List[Path] = []
        if video_path is not None:
            candidates.append(Path(video_path).with_suffix(".jpg"))
        candidates.extend(directory / f"cover{ext}" for ext in COVER_EXTENSIONS)
        candidates.append(directory / "thumbnail.jpg")
        for candidate in candidates:
            if candidate.is_file():
                return candidate
        return None

    def has_partial_files(self, directory: Path) -> bool:
        directory = Path(directory)
        if not directory.is_dir():
            return False
        return any(is_partial_file(p.name) for p in directory.iterdir() if p.is_file())

    def cleanup_partial_files(self, directory: Path) -> int:
        """删除 *.part 和 *.ytdl（仅在决定重新下载时调用）

        Returns:
            删除的文件数
        """
        directory = Path(directory)
        removed = 0
        if not directory.is_dir():
            return removed
        for path in directory.iterdir():
            if path.is_file() and is_partial_file(path.name):
                try:
                    path.unlink()
                    removed += 1
                except OSError as e:
                    raise StorageError(f"删除未完成文件失败: {path}", cause=e) from e
        if removed:
            logger.info(f"已清理 {removed} 个未完成下载文件: {directory}")
        return removed

    # ------------------------------------------------------------------ 下载状态

    def load_download_status(self, directory: Path) -> DownloadStatus:
        data = read_json(Path(directory) / DOWNLOAD_STATUS_FILE)
        if not isinstance(data, dict):
            return DownloadStatus()
        return DownloadStatus.from_dict(data)

    def save_download_status(self, directory: Path, status: DownloadStatus) -> None:
        atomic_write_json(Path(directory) / DOWNLOAD_STATUS_FILE, status.to_dict())

    def _update_download_status(
        self, directory: Path, mutate: Callable[[DownloadStatus], None]
    ) -> DownloadStatus:
        """读取、修改、原子写回 download_status.json"""
        status = self.load_download_status(directory)
        try:
            mutate(status)
        except InvalidTransitionError as e:
            raise StorageError(f"{e}: {directory}", cause=e) from e
        self.save_download_status(directory, status)
        return status

    def mark_downloading(self, directory: Path, force: bool = False) -> DownloadStatus:
        return self._update_download_status(
            directory, lambda s: s.mark_downloading(force=force)
        )

    def mark_downloaded(
        self,
        directory: Path,
        video_path: Path,
        has_1080p: bool,
        height: Optional[int] = None,
    ) -> DownloadStatus:
        return self._update_download_status(
            directory, lambda s: s.mark_completed(str(video_path), height, has_1080p)
        )

    def mark_download_failed(
        self, directory: Path, error: str, error_type: Optional[str] = None
    ) -> DownloadStatus:
        return self._update_download_status(
            directory, lambda s: s.mark_failed(error, error_type)
        )

    def mark_undownloadable(self, directory: Path, reason: str) -> DownloadStatus:
        return self._update_download_status(
            directory, lambda s: s.mark_undownloadable(reason)
        )

    def record_download_attempt(self, directory: Path, attempt: int) -> None:
        def _set(status: DownloadStatus) -> None:
            status.attempts = attempt

        self._update_download_status(directory, _set)

    def record_subtitles(self, directory: Path, subtitles: Dict[str, str]) -> None:
        def _set(status: DownloadStatus) -> None:
            status.subtitles = dict(subtitles)

        self._update_download_status(directory, _set)

    def get_download_state(self, directory: Path) -> Optional[DownloadState]:
        try:
            return self.load_download_status(directory).status
        except StorageError as e:
            logger.warning(f"下载状态文件损坏，按未下载处理: {e}")
            return None

    def is_video_downloaded(self, directory: Path) -> bool:
        """状态为 completed 且目录中没有 .part / .ytdl"""
        if self.get_download_state(directory) != DownloadState.COMPLETED:
            return False
        return not self.has_partial_files(directory)

    def is_undownloadable(self, directory: Path) -> bool:
        return self.get_download_state(directory) == DownloadState.UNDOWNLOADABLE

    def repair_download_status(self, directory: Path) -> bool:
        """离线补偿：上传已完成但下载状态不是 completed 时修复

        目录中仍有视频文件则写入 completed；原文件已在上传后删除时也写入 completed。

        Returns:
            是否做了修复
        """
        directory = Path(directory)
        if not self.is_video_uploaded(directory):
            return False
        status = self.load_download_status(directory)
        if status.status == DownloadState.COMPLETED:
            return False
        video_path = self.find_video_file(directory)
        height = parse_height_from_filename(video_path.name) if video_path else status.height
        status.status = DownloadState.COMPLETED
        status.completed_at = status.completed_at or datetime.now().isoformat(timespec="seconds")
        status.updated_at = datetime.now().isoformat(timespec="seconds")
        status.video_path = str(video_path) if video_path else status.video_path
        status.height = height
        status.has_1080p = bool(height and height >= 1080)
        status.last_error = None
        status.error_type = None
        self.save_download_status(directory, status)
        logger.info(f"已修复下载状态: {directory}")
        return True

    def settle_partial_files(self, directory: Path) -> bool:
        """状态为 completed 但目录中仍有 .part / .ytdl 时的补偿

        有视频文件：残留文件来自已结束的运行，直接清理；
        没有视频文件：下载其实没有完成，状态改写为 failed，下一次下载从头开始。

        Returns:
            目录是否为完整的已下载状态
        """
        directory = Path(directory)
        if self.get_download_state(directory) != DownloadState.COMPLETED:
            return False
        if not self.has_partial_files(directory):
            return True
        if self.find_video_file(directory) is not None:
            removed = self.cleanup_partial_files(directory)
            logger.warning(f"已完成的目录中有 {removed} 个残留的未完成文件，已清理: {directory}")
            return True
        status = self.load_download_status(directory)
        status.status = DownloadState.FAILED
        status.completed_at = None
        status.has_1080p = False
        status.last_error = shorten_error_message("状态为 completed 但只有未完成文件，需要重新下载")
        status.error_type = "incomplete"
        status.updated_at = datetime.now().isoformat(timespec="seconds")
        self.save_download_status(directory, status)
        logger.warning(f"下载状态与目录内容不一致，已改为 failed: {directory}")
        return False

    # ------------------------------------------------------------------ 上传状态

    def load_upload_status(self, directory: Path) -> UploadStatus:
        data = read_json(Path(directory) / UPLOAD_STATUS_FILE)
        if not isinstance(data, dict):
            return UploadStatus()
        return UploadStatus.from_dict(data)

    def _update_upload_status(
        self, directory: Path, mutate: Callable[[UploadStatus], None]
    ) -> UploadStatus:
        status = self.load_upload_status(directory)
        mutate(status)
        atomic_write_json(Path(directory) / UPLOAD_STATUS_FILE, status.to_dict())
        return status

    def mark_uploading(self, directory: Path, account: Optional[str] = None) -> UploadStatus:
        return self._update_upload_status(directory, lambda s: s.mark_uploading(account))

    def mark_uploaded(self, directory: Path, aid: str, account: str) -> UploadStatus:
        return self._update_upload_status(directory, lambda s: s.mark_completed(aid, account))

    def mark_upload_failed(
        self,
        directory: Path,
        error: str,
        error_type: Optional[str] = None,
        error_code: Optional[int] = None,
    ) -> UploadStatus:
        return self._update_upload_status(
            directory, lambda s: s.mark_failed(error, error_type, error_code)
        )

    def is_video_uploaded(self, directory: Path) -> bool:
        try:
            return self.load_upload_status(directory).status == UploadState.COMPLETED
        except StorageError as e:
            logger.warning(f"上传状态文件损坏，按未上传处理: {e}")
            return False

    # ------------------------------------------------------------------ 整理标记

    def mark_organized(self, directory: Path) -> None:
        marker = Path(directory) / ORGANIZED_MARKER
        try:
            marker.write_text(datetime.now().isoformat(timespec="seconds"), encoding="utf-8")
        except OSError as e:
            raise StorageError(f"写入整理标记失败: {marker}", cause=e) from e

    def is_organized(self, directory: Path) -> bool:
        return (Path(directory) / ORGANIZED_MARKER).exists()

    # ------------------------------------------------------------------ 频道信息

    def channel_info_exists(self, channel_id: str) -> bool:
        return (self.channel_dir(channel_id) / CHANNEL_INFO_FILE).exists()

    def save_channel_info(self, channel_id: str, videos: List[VideoInfo]) -> Path:
        """整体覆盖写入 channel_info.json"""
        self.ensure_channel_dir(channel_id)
        path = self.channel_dir(channel_id) / CHANNEL_INFO_FILE
        atomic_write_json(path, [v.to_dict() for v in videos])
        return path

    def load_channel_info(self, channel_id: str) -> List[VideoInfo]:
        """读取频道视频列表（保持文件中的顺序）

        Raises:
            StorageError: 文件不存在或内容非法
        """
        path = self.channel_dir(channel_id) / CHANNEL_INFO_FILE
        data = read_json(path)
        if data is None:
            raise StorageError(f"频道信息不存在，请先解析频道: {path}")
        if not isinstance(data, list):
            raise StorageError(f"频道信息格式错误（应为数组）: {path}")
        return [VideoInfo.from_dict(item) for item in data if isinstance(item, dict)]

    def save_pending_downloads(self, channel_id: str, data: Dict[str, Any]) -> Path:
        path = self.ensure_channel_dir(channel_id) / PENDING_DOWNLOADS_FILE
        atomic_write_json(path, data)
        return path

    # ------------------------------------------------------------------ 视频元数据

    def find_metadata_file(self, directory: Path, video_id: str, suffix: str) -> Optional[Path]:
        """查找 yt-dlp 写出的元数据文件：{id}{suffix}，或按输出模板命名的 {id}_{height}p{suffix}"""
        directory = Path(directory)
        plain = directory / f"{video_id}{suffix}"
        if plain.is_file():
            return plain
        if not directory.is_dir():
            return None
        for path in sorted(directory.glob(f"{video_id}_*p{suffix}")):
            if path.is_file() and parse_height_from_filename(path.name) is not None:
                return path
        return None

    def load_info_json(self, directory: Path, video_id: str) -> Dict[str, Any]:
        """读取 yt-dlp 写出的 info.json，缺失或损坏时返回空字典"""
        path = self.find_metadata_file(directory, video_id, ".info.json")
        if path is None:
            return {}
        try:
            data = read_json(path)
        except StorageError as e:
            logger.warning(f"info.json 无法解析，忽略: {e}", video_id=video_id)
            return {}
        return data if isinstance(data, dict) else {}

    def read_description(self, directory: Path, video_id: str) -> str:
        path = self.find_metadata_file(directory, video_id, ".description")
        if path is None:
            return ""
        try:
            return path.read_text(encoding="utf-8", errors="replace").strip()
        except OSError as e:
            raise StorageError(f"读取描述文件失败: {path}", cause=e) from e

    # ------------------------------------------------------------------ 全局状态

    def load_global(self, name: str) -> Optional[Any]:
        return read_json(self.root / GLOBAL_DIR / name)

    def save_global(self, name: str, data: Any) -> None:
        atomic_write_json(self.global_dir() / name, data)


def parse_height_from_filename(name: str) -> Optional[int]:
    """从 {id}_{height}p.{ext} 中解析高度"""
    match = re.search(r"_(\d+)p\.", name)
    if match:
        return int(match.group(1))
    return None
