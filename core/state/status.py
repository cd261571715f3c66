"""
视频状态文档 - 断点续传状态机

每个视频目录下有两份状态文件：
- download_status.json：下载阶段
- upload_status.json：上传阶段

状态流转（下载）：
    (absent) → DOWNLOADING → COMPLETED
                           ↘ FAILED
                           ↘ UNDOWNLOADABLE
    FAILED → DOWNLOADING（下一轮从头重试）
    UNDOWNLOADABLE → DOWNLOADING（仅在 force_download_undownloadable 时）

COMPLETED 是终态，不允许回到 DOWNLOADING。
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


ERROR_MESSAGE_LIMIT = 300


def shorten_error_message(message: Optional[str]) -> str:
    """只保留首行并限制长度，避免把整段堆栈写进状态文件"""
    text = (message or "").strip()
    if not text:
        return text
    text = text.split("\n", 1)[0]
    if len(text) > ERROR_MESSAGE_LIMIT:
        return text[:ERROR_MESSAGE_LIMIT] + "..."
    return text


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


class DownloadState(str, Enum):
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"
    UNDOWNLOADABLE = "undownloadable"


class UploadState(str, Enum):
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


_DOWNLOAD_TRANSITIONS = {
    None: {DownloadState.DOWNLOADING},
    DownloadState.DOWNLOADING: {
        DownloadState.DOWNLOADING,
        DownloadState.COMPLETED,
        DownloadState.FAILED,
        DownloadState.UNDOWNLOADABLE,
    },
    DownloadState.FAILED: {DownloadState.DOWNLOADING},
    DownloadState.UNDOWNLOADABLE: set(),
    DownloadState.COMPLETED: set(),
}


class InvalidTransitionError(ValueError):
    """非法的状态流转"""


def check_download_transition(
    current: Optional[DownloadState], new: DownloadState, force: bool = False
) -> None:
    """检查下载状态流转是否合法

    Args:
        current: 当前状态（None 表示状态文件不存在）
        new: 目标状态
        force: 允许 UNDOWNLOADABLE → DOWNLOADING

    Raises:
        InvalidTransitionError: 流转不合法
    """
    if new in _DOWNLOAD_TRANSITIONS.get(current, set()):
        return
    if force and current == DownloadState.UNDOWNLOADABLE and new == DownloadState.DOWNLOADING:
        return
    current_value = current.value if current else "absent"
    raise InvalidTransitionError(f"非法的下载状态流转: {current_value} → {new.value}")


@dataclass
class DownloadStatus:
    """download_status.json 的内容

    Attributes:
        status: 当前状态
        started_at: 本轮开始下载时间
        completed_at: 完成时间
        last_error: 最近一次错误（已截断）
        error_type: 最近一次错误的分类
        video_path: 成品视频文件路径
        height: 视频高度
        has_1080p: 是否达到 1080p
        attempts: 本轮整视频重试次数
        subtitles: 语言 → 字幕文件路径
    """
    status: Optional[DownloadState] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    last_error: Optional[str] = None
    error_type: Optional[str] = None
    video_path: Optional[str] = None
    height: Optional[int] = None
    has_1080p: bool = False
    attempts: int = 0
    subtitles: Dict[str, str] = field(default_factory=dict)
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value if self.status else None,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "last_error": self.last_error,
            "error_type": self.error_type,
            "video_path": self.video_path,
            "height": self.height,
            "has_1080p": self.has_1080p,
            "attempts": self.attempts,
            "subtitles": self.subtitles,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DownloadStatus":
        raw_status = data.get("status")
        try:
            status = DownloadState(raw_status) if raw_status else None
        except ValueError:
            status = None
        return cls(
            status=status,
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            last_error=data.get("last_error"),
            error_type=data.get("error_type"),
            video_path=data.get("video_path"),
            height=data.get("height"),
            has_1080p=bool(data.get("has_1080p", False)),
            attempts=int(data.get("attempts") or 0),
            subtitles=dict(data.get("subtitles") or {}),
            updated_at=data.get("updated_at"),
        )

    def transition(self, new: DownloadState, force: bool = False) -> None:
        check_download_transition(self.status, new, force=force)
        self.status = new
        self.updated_at = _now()

    def mark_downloading(self, force: bool = False) -> None:
        self.transition(DownloadState.DOWNLOADING, force=force)
        self.started_at = self.updated_at
        self.completed_at = None
        self.last_error = None
        self.error_type = None

    def mark_completed(self, video_path: str, height: Optional[int], has_1080p: bool) -> None:
        self.transition(DownloadState.COMPLETED)
        self.completed_at = self.updated_at
        self.video_path = video_path
        self.height = height
        self.has_1080p = has_1080p
        self.last_error = None
        self.error_type = None

    def mark_failed(self, error: str, error_type: Optional[str] = None) -> None:
        self.transition(DownloadState.FAILED)
        self.last_error = shorten_error_message(error)
        self.error_type = error_type
        self.has_1080p = False

    def mark_undownloadable(self, reason: str) -> None:
        self.transition(DownloadState.UNDOWNLOADABLE)
        self.last_error = shorten_error_message(reason)
        self.error_type = "undownloadable"


@dataclass
class UploadStatus:
    """upload_status.json 的内容"""
    status: Optional[UploadState] = None
    bilibili_aid: Optional[str] = None
    account: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    last_error: Optional[str] = None
    error_type: Optional[str] = None
    error_code: Optional[int] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value if self.status else None,
            "bilibili_aid": self.bilibili_aid,
            "account": self.account,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "last_error": self.last_error,
            "error_type": self.error_type,
            "error_code": self.error_code,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UploadStatus":
        raw_status = data.get("status")
        try:
            status = UploadState(raw_status) if raw_status else None
        except ValueError:
            status = None
        return cls(
            status=status,
            bilibili_aid=data.get("bilibili_aid"),
            account=data.get("account"),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            last_error=data.get("last_error"),
            error_type=data.get("error_type"),
            error_code=data.get("error_code"),
            updated_at=data.get("updated_at"),
        )

    def mark_uploading(self, account: Optional[str] = None) -> None:
        self.status = UploadState.UPLOADING
        self.updated_at = _now()
        self.started_at = self.updated_at
        self.account = account
        self.last_error = None
        self.error_type = None
        self.error_code = None

    def mark_completed(self, aid: str, account: str) -> None:
        self.status = UploadState.COMPLETED
        self.updated_at = _now()
        self.completed_at = self.updated_at
        self.bilibili_aid = aid
        self.account = account
        self.last_error = None
        self.error_type = None
        self.error_code = None

    def mark_failed(
        self, error: str, error_type: Optional[str] = None, error_code: Optional[int] = None
    ) -> None:
        self.status = UploadState.FAILED
        self.updated_at = _now()
        self.last_error = shorten_error_message(error)
        self.error_type = error_type
        self.error_code = error_code
