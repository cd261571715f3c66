"""
CLI 主入口
参数解析和命令分发
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from config.manager import ConfigManager
from core.exceptions import AppException, ConfigError, StorageError, TaskCancelledError
from core.logger import clear_log_context, configure_logger, generate_run_id, get_logger, set_log_context

from cli.download import download_command, parse_command
from cli.maintenance import fix_status_command
from cli.sync import batch_command, sync_command
from cli.upload import upload_command
from cli.utils import build_app, install_interrupt_handler

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def create_parser() -> argparse.ArgumentParser:
    """创建命令行参数解析器

    Returns:
        配置好的 ArgumentParser 实例
    """
    parser = argparse.ArgumentParser(
        prog="yt2bili",
        description="YouTube 频道视频批量下载并上传到 bilibili.tv",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "示例:\n"
            "  yt2bili parse --all\n"
            "  yt2bili download --channel https://www.youtube.com/@name/videos\n"
            "  yt2bili upload --all --account main\n"
            "  yt2bili sync --all"
        ),
    )
    parser.add_argument("--config", type=str, help="配置文件路径（默认位于用户数据目录）")
    parser.add_argument(
        "--log-level", type=str.upper, choices=LOG_LEVELS, help="日志级别（覆盖配置文件）"
    )

    # 创建子命令解析器
    subparsers = parser.add_subparsers(dest="command", help="子命令")

    _add_parse_parser(subparsers)
    _add_download_parser(subparsers)
    _add_upload_parser(subparsers)
    _add_sync_parser(subparsers)
    _add_batch_parser(subparsers)
    _add_fix_status_parser(subparsers)

    return parser


def _add_channel_arguments(parser, allow_single: bool = True) -> None:
    """--channel URL 与 --all 二选一"""
    group = parser.add_mutually_exclusive_group()
    if allow_single:
        group.add_argument("--channel", type=str, help="只处理该频道（必须已在配置中）")
    group.add_argument("--all", action="store_true", help="处理配置中的全部频道")


def _add_parse_parser(subparsers):
    """添加 parse 子命令解析器"""
    parse_parser = subparsers.add_parser("parse", help="解析频道视频列表，写入 channel_info.json")
    _add_channel_arguments(parse_parser)
    parse_parser.set_defaults(func=parse_command)


def _add_download_parser(subparsers):
    """添加 download 子命令解析器"""
    download_parser = subparsers.add_parser("download", help="批量下载频道视频")
    _add_channel_arguments(download_parser)
    download_parser.set_defaults(func=download_command)


def _add_upload_parser(subparsers):
    """添加 upload 子命令解析器"""
    upload_parser = subparsers.add_parser("upload", help="上传已下载完成的视频")
    _add_channel_arguments(upload_parser)
    upload_parser.add_argument("--account", type=str, help="固定使用该账号上传")
    upload_parser.set_defaults(func=upload_command)


def _add_sync_parser(subparsers):
    """添加 sync 子命令解析器"""
    sync_parser = subparsers.add_parser("sync", help="逐个视频下载后立即上传")
    _add_channel_arguments(sync_parser)
    sync_parser.set_defaults(func=sync_command)


def _add_batch_parser(subparsers):
    """添加 batch 子命令解析器"""
    batch_parser = subparsers.add_parser("batch", help="先下载全部频道，再上传全部频道")
    _add_channel_arguments(batch_parser, allow_single=False)
    batch_parser.set_defaults(func=batch_command)


def _add_fix_status_parser(subparsers):
    """添加 fix-status 子命令解析器"""
    fix_parser = subparsers.add_parser(
        "fix-status", help="修复上传已完成但下载状态不是 completed 的视频"
    )
    _add_channel_arguments(fix_parser)
    fix_parser.set_defaults(func=fix_status_command)


def _log_file_for(config, config_manager: ConfigManager) -> Path:
    if config.logging.file_path:
        return Path(config.logging.file_path)
    return config_manager.get_logs_dir() / "app.log"


def main(argv: Optional[List[str]] = None) -> int:
    """CLI 主入口

    Returns:
        退出码（0 表示成功）
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    # 如果没有提供命令，显示帮助
    if not args.command:
        parser.print_help()
        return 1

    logger = get_logger()
    try:
        config_manager = ConfigManager(Path(args.config) if args.config else None)
        config = config_manager.load()
        logger = configure_logger(
            level=args.log_level or config.logging.level,
            log_file=_log_file_for(config, config_manager),
            console_output=config.logging.console,
            file_output=True,
        )
        config.validate()
    except ConfigError as e:
        logger.error(f"配置错误: {e}", error_type=e.error_type.value)
        return 1

    set_log_context(run_id=generate_run_id(), task=args.command)
    logger.info(f"配置文件: {config_manager.config_file}")

    app = build_app(config)
    install_interrupt_handler(app.cancel_token)

    # 执行对应命令
    try:
        return args.func(args, app)
    except TaskCancelledError as e:
        logger.warning(f"已取消: {e}")
        return 0
    except (ConfigError, StorageError) as e:
        logger.error(f"{e}", error_type=e.error_type.value)
        return 1
    except AppException as e:
        logger.error(f"命令执行失败: {e}", error_type=e.error_type.value)
        return 1
    finally:
        clear_log_context()


if __name__ == "__main__":
    sys.exit(main())
