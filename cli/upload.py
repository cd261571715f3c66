"""
upload 命令
上传所有已下载完成的视频
"""
import dataclasses

from cli.utils import App, log_summary, select_channels
from core.exceptions import ConfigError
from core.logger import get_logger

logger = get_logger()


def upload_command(args, app: App) -> int:
    """批量上传；--account 覆盖频道配置的账号

    Returns:
        退出码（0 表示成功）
    """
    channels = select_channels(app, args)
    account = getattr(args, "account", None)
    if account:
        known = app.orchestrator.upload_service.account_names()
        if account not in known:
            raise ConfigError(f"账号未定义: {account}（可用: {', '.join(known)}）")
        logger.info(f"本次上传固定使用账号: {account}", account=account)
        channels = [dataclasses.replace(channel, account=account) for channel in channels]

    stats = app.orchestrator.upload_all_channels(channels)
    log_summary(f"上传完成（{len(channels)} 个频道）", stats)
    return 0
