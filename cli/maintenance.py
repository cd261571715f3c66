"""
fix-status 命令
上传已完成但下载状态不是 completed 的目录，在媒体文件存在时补写下载状态
"""
from cli.utils import App, log_summary, select_channels


def fix_status_command(args, app: App) -> int:
    channels = select_channels(app, args)
    stats = app.orchestrator.fix_status(channels)
    log_summary("下载状态修复完成", stats)
    return 0
