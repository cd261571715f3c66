"""
sync / batch 命令
- sync：逐个视频下载后立即上传
- batch：先下载全部频道，再上传全部频道
"""
from cli.utils import App, log_summary, select_channels
from core.logger import get_logger

logger = get_logger()


def _check_extractor(app: App) -> bool:
    if app.orchestrator.download_service.fetcher.check_installed() is None:
        logger.error(f"yt-dlp 不可用: {app.config.youtube.yt_dlp_path}")
        return False
    return True


def sync_command(args, app: App) -> int:
    channels = select_channels(app, args)
    if not _check_extractor(app):
        return 1
    stats = app.orchestrator.sync(channels)
    log_summary(f"顺序同步完成（{len(channels)} 个频道）", stats)
    return 0


def batch_command(args, app: App) -> int:
    channels = select_channels(app, args)
    if not _check_extractor(app):
        return 1
    stats = app.orchestrator.batch(channels)
    log_summary(f"批量下载上传完成（{len(channels)} 个频道）", stats)
    return 0
