"""
parse / download 命令
解析频道视频列表，按 channel_info.json 顺序批量下载
"""
from cli.utils import App, log_summary, select_channels
from core.logger import get_logger

logger = get_logger()


def parse_command(args, app: App) -> int:
    """解析频道并写入 channel_info.json

    Returns:
        退出码（0 表示成功）
    """
    channels = select_channels(app, args)
    version = app.orchestrator.download_service.fetcher.check_installed()
    if version is None:
        logger.error(f"yt-dlp 不可用: {app.config.youtube.yt_dlp_path}")
        return 1
    logger.info(f"yt-dlp 版本: {version}")

    stats = app.orchestrator.parse_channels(channels)
    log_summary(f"解析完成（{len(channels)} 个频道）", stats)
    return 0


def download_command(args, app: App) -> int:
    """批量下载（缺少 channel_info.json 时先解析）"""
    channels = select_channels(app, args)
    if app.orchestrator.download_service.fetcher.check_installed() is None:
        logger.error(f"yt-dlp 不可用: {app.config.youtube.yt_dlp_path}")
        return 1

    stats = app.orchestrator.download_channels(channels)
    log_summary(f"下载完成（{len(channels)} 个频道）", stats)
    return 0
