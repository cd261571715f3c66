"""
core.pipeline 包的 __init__.py
导出下载 / 上传服务与编排器
"""

from .download_service import DownloadService, select_videos
from .orchestrator import Orchestrator
from .quota import DailyDownloadCounter, UploadQuota, sleep_until_next_day
from .rest import BotRestController, VideoRestController
from .upload_service import UploadService, pick_upload_subtitles

__all__ = [
    "DownloadService",
    "select_videos",
    "Orchestrator",
    "DailyDownloadCounter",
    "UploadQuota",
    "sleep_until_next_day",
    "BotRestController",
    "VideoRestController",
    "UploadService",
    "pick_upload_subtitles",
]
