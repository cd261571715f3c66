"""
Video Processing State Management Module - 视频状态文档与状态机
"""

from .status import (
    DownloadState,
    UploadState,
    DownloadStatus,
    UploadStatus,
    InvalidTransitionError,
    check_download_transition,
    shorten_error_message,
)

__all__ = [
    "DownloadState",
    "UploadState",
    "DownloadStatus",
    "UploadStatus",
    "InvalidTransitionError",
    "check_download_transition",
    "shorten_error_message",
]
