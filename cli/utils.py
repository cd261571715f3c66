"""
CLI 工具函数
共用的辅助函数：组装服务、安装 SIGINT 处理、选择频道、输出统计
"""
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from config.manager import AppConfig, ChannelConfig
from core.bilibili.uploader import BilibiliUploader
from core.cancel_token import CancelToken
from core.downloader import VideoDownloader
from core.exceptions import ConfigError
from core.fetcher import VideoFetcher
from core.logger import get_logger
from core.pipeline import DownloadService, Orchestrator, UploadQuota, UploadService
from core.subprocess_utils import find_executable
from core.workdir import WorkDirRepository

logger = get_logger()


@dataclass
class App:
    """一次命令运行所需的全部对象"""
    config: AppConfig
    repo: WorkDirRepository
    cancel_token: CancelToken
    orchestrator: Orchestrator


def build_app(config: AppConfig, cancel_token: Optional[CancelToken] = None) -> App:
    """按配置组装仓库、下载 / 上传服务与编排器

    Args:
        config: 已校验的应用配置
        cancel_token: 根取消令牌（为 None 时新建）
    """
    cancel_token = cancel_token or CancelToken()
    repo = WorkDirRepository(Path(config.output.directory))

    ffmpeg_available = find_executable(config.bilibili.ffmpeg_path) is not None
    if not ffmpeg_available:
        logger.warning("未找到 ffmpeg，字幕不会转换为 SRT，封面无法自动补边")

    fetcher = VideoFetcher(config.youtube)
    downloader = VideoDownloader(
        repo,
        config.youtube,
        auto_fix_overlap=config.subtitles.auto_fix_overlap,
        cancel_token=cancel_token,
        ffmpeg_available=ffmpeg_available,
    )
    download_service = DownloadService(config, repo, fetcher, downloader, cancel_token=cancel_token)

    uploader = BilibiliUploader(
        repo,
        base_url=config.bilibili.base_url,
        chunk_retries=config.bilibili.chunk_upload_retries,
        chunk_backoff=config.bilibili.chunk_retry_backoff_seconds,
        ffmpeg_path=config.bilibili.ffmpeg_path,
        cancel_token=cancel_token,
    )
    quota = UploadQuota(repo, config.bilibili.daily_upload_limit)
    upload_service = UploadService(config, repo, uploader, quota, cancel_token=cancel_token)

    orchestrator = Orchestrator(config, repo, download_service, upload_service, cancel_token)
    return App(config=config, repo=repo, cancel_token=cancel_token, orchestrator=orchestrator)


def install_interrupt_handler(cancel_token: CancelToken) -> None:
    """第一次 Ctrl+C 取消根令牌（在视频之间退出），第二次恢复默认行为立即中断"""

    def _handler(signum, frame):
        logger.warning("收到中断信号，正在停止（再次按 Ctrl+C 强制退出）")
        cancel_token.cancel("用户中断")
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, _handler)


def select_channels(app: App, args) -> List[ChannelConfig]:
    """根据 --channel / --all 选择频道

    Raises:
        ConfigError: 未指定或频道不在配置中
    """
    channels = app.orchestrator.select_channels(
        getattr(args, "channel", None), getattr(args, "all", False)
    )
    if not channels:
        raise ConfigError("配置中没有任何频道，请先在 channels 中添加")
    return channels


def log_summary(title: str, stats: Dict[str, int]) -> None:
    logger.info("=" * 60)
    logger.info(title)
    for key in sorted(stats):
        logger.info(f"  {key}: {stats[key]}")
    logger.info("=" * 60)
