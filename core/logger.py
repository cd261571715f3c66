"""
统一日志系统
支持：文件输出、控制台输出、敏感信息脱敏、上下文字段、日志轮转
"""

import logging
import sys
import time
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from threading import local
from typing import Any, Dict, Optional

from core.sanitizer import sanitize_message as _sanitize_message


# Windows 控制台编码修复
if sys.platform == "win32":
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8")
            sys.stderr.reconfigure(encoding="utf-8")
    except (AttributeError, OSError):
        pass


LOGGER_NAME = "yt2bili"

# 追加在消息末尾的结构化字段（按顺序输出）
EXTRA_FIELD_KEYS = (
    "channel",
    "account",
    "strategy",
    "client",
    "cookies",
    "attempt",
    "exit_code",
    "status_code",
    "error_type",
    "url",
)

# Python logging 的保留字段（不能作为 extra 传递）
_RESERVED_FIELDS = {
    "filename",
    "lineno",
    "funcName",
    "pathname",
    "process",
    "processName",
    "thread",
    "threadName",
    "created",
    "msecs",
    "relativeCreated",
    "levelname",
    "levelno",
    "message",
    "name",
    "args",
    "exc_info",
    "exc_text",
    "stack_info",
    "module",
}

# 线程本地存储，用于存储上下文信息（run_id, task, video_id等）
_context = local()


def set_log_context(
    run_id: Optional[str] = None,
    task: Optional[str] = None,
    video_id: Optional[str] = None,
    **kwargs,
) -> None:
    """设置日志上下文（线程本地）

    Args:
        run_id: 本次运行 ID（格式：YYYYMMDD_HHMMSS）
        task: 任务阶段（parse, download, upload, sync 等）
        video_id: 视频ID
        **kwargs: 其他上下文字段（channel, account 等）
    """
    _context.run_id = run_id
    _context.task = task
    _context.video_id = video_id
    _context.extra_fields = kwargs


def update_log_context(**kwargs) -> None:
    """在保留现有上下文的基础上更新部分字段"""
    for key in ("run_id", "task", "video_id"):
        if key in kwargs:
            setattr(_context, key, kwargs.pop(key))
    fields = dict(getattr(_context, "extra_fields", {}) or {})
    fields.update(kwargs)
    _context.extra_fields = fields


def clear_log_context() -> None:
    """清除日志上下文"""
    for attr in ("run_id", "task", "video_id", "extra_fields"):
        if hasattr(_context, attr):
            delattr(_context, attr)


def generate_run_id() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S")


class ContextFormatter(logging.Formatter):
    """支持上下文字段的日志格式化器

    格式：[时间] [级别] [run:<id>] [task:<stage>] [video:<id>] 消息 [额外字段]
    """

    def format(self, record: logging.LogRecord) -> str:
        context_parts = []

        run_id = getattr(record, "run_id", None) or getattr(_context, "run_id", None)
        if run_id:
            context_parts.append(f"[run:{run_id}]")

        task = getattr(record, "task", None) or getattr(_context, "task", None)
        if task:
            context_parts.append(f"[task:{task}]")

        video_id = getattr(record, "video_id", None) or getattr(_context, "video_id", None)
        if video_id:
            context_parts.append(f"[video:{video_id}]")

        extra_fields = getattr(_context, "extra_fields", {}) or {}
        extra_parts = []
        for key in EXTRA_FIELD_KEYS:
            value = getattr(record, key, None)
            if value is None:
                value = extra_fields.get(key)
            if value is not None:
                extra_parts.append(f"{key}={value}")

        context_str = " ".join(context_parts)
        extra_str = " " + " ".join(extra_parts) if extra_parts else ""

        timestamp = datetime.fromtimestamp(record.created).strftime(
            "%Y-%m-%d %H:%M:%S.%f"
        )[:-3]
        level_str = f"{record.levelname:5s}"
        message = _sanitize_message(record.getMessage())
        if context_str:
            return f"[{timestamp}] [{level_str}] {context_str} {message}{extra_str}"
        return f"[{timestamp}] [{level_str}] {message}{extra_str}"


class Logger:
    """统一日志管理器

    - 日志格式包含 run/task/video 字段
    - 敏感信息脱敏
    - 日志轮转（20MB x 5份）
    - 回退策略（目录不可写时回退到控制台）
    """

    LEVELS = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARN": logging.WARNING,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    def __init__(
        self,
        name: str = LOGGER_NAME,
        log_file: Optional[Path] = None,
        level: str = "INFO",
        console_output: bool = True,
        file_output: bool = True,
        auto_cleanup: bool = True,
        max_log_age_days: int = 14,
    ):
        """初始化日志器

        Args:
            name: 日志器名称
            log_file: 日志文件路径，如果为 None 则使用用户数据目录下的 logs/app.log
            level: 日志级别（DEBUG/INFO/WARN/ERROR）
            console_output: 是否输出到控制台
            file_output: 是否输出到文件
            auto_cleanup: 是否在初始化时清理过期日志
            max_log_age_days: 日志最大保留天数
        """
        self.name = name
        self.level = self.LEVELS.get(level.upper(), logging.INFO)
        self.logger = logging.getLogger(name)
        self.logger.setLevel(self.level)
        self.logger.propagate = False

        # 重新初始化时替换旧 handler
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

        if file_output and log_file is None:
            log_file = _default_log_dir() / "app.log"

        if auto_cleanup and file_output and log_file is not None:
            cleanup_old_logs(log_file.parent, max_log_age_days)

        formatter = ContextFormatter()

        if console_output:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(self.level)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

        if file_output:
            file_handler = self._create_file_handler(log_file, formatter)
            if file_handler:
                self.logger.addHandler(file_handler)
            else:
                if not console_output:
                    console_handler = logging.StreamHandler(sys.stdout)
                    console_handler.setLevel(self.level)
                    console_handler.setFormatter(formatter)
                    self.logger.addHandler(console_handler)
                self.logger.critical("日志目录不可写，已回退到控制台输出")

    def _create_file_handler(
        self, log_file: Path, formatter: logging.Formatter
    ) -> Optional[RotatingFileHandler]:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=20 * 1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
            file_handler.setLevel(self.level)
            file_handler.setFormatter(formatter)
            return file_handler
        except OSError:
            return None

    def _log_with_context(
        self, level: int, message: str, video_id: Optional[str] = None, **kwargs
    ) -> None:
        """带上下文的日志记录

        Args:
            level: 日志级别
            message: 日志消息（格式化时脱敏）
            video_id: 视频ID（可选，会覆盖上下文中的video_id）
            **kwargs: 额外字段（channel, account, strategy, exit_code ...）
        """
        # 同名 Logger 共享底层 logging.Logger，级别以底层为准
        if not self.logger.isEnabledFor(level):
            return

        extra: Dict[str, Any] = {
            k: v for k, v in kwargs.items() if k not in _RESERVED_FIELDS
        }
        if video_id:
            extra["video_id"] = video_id

        record = self.logger.makeRecord(
            self.logger.name,
            level,
            "",
            0,
            message,
            (),
            None,
            func="",
            extra=extra,
        )
        self.logger.handle(record)

    def debug(self, message: str, video_id: Optional[str] = None, **kwargs) -> None:
        self._log_with_context(logging.DEBUG, message, video_id, **kwargs)

    def info(self, message: str, video_id: Optional[str] = None, **kwargs) -> None:
        self._log_with_context(logging.INFO, message, video_id, **kwargs)

    def warning(self, message: str, video_id: Optional[str] = None, **kwargs) -> None:
        self._log_with_context(logging.WARNING, message, video_id, **kwargs)

    def warn(self, message: str, video_id: Optional[str] = None, **kwargs) -> None:
        self.warning(message, video_id, **kwargs)

    def error(self, message: str, video_id: Optional[str] = None, **kwargs) -> None:
        self._log_with_context(logging.ERROR, message, video_id, **kwargs)

    def critical(self, message: str, video_id: Optional[str] = None, **kwargs) -> None:
        self._log_with_context(logging.CRITICAL, message, video_id, **kwargs)

    def set_level(self, level: str) -> None:
        """设置日志级别"""
        self.level = self.LEVELS.get(level.upper(), logging.INFO)
        self.logger.setLevel(self.level)
        for handler in self.logger.handlers:
            handler.setLevel(self.level)


def _default_log_dir() -> Path:
    # 延迟导入，避免 config.manager 与 core.logger 互相依赖
    from config.manager import get_user_data_dir

    return get_user_data_dir() / "logs"


# 全局 logger 实例（单例模式）
_global_logger: Optional[Logger] = None


def get_logger(
    name: str = LOGGER_NAME,
    log_file: Optional[Path] = None,
    level: str = "INFO",
    console_output: bool = True,
    file_output: bool = False,
) -> Logger:
    """获取全局 logger 实例（单例模式）

    首次调用时创建；CLI 启动后通过 configure_logger 按配置重建。
    """
    global _global_logger
    if _global_logger is None:
        _global_logger = Logger(
            name=name,
            log_file=log_file,
            level=level,
            console_output=console_output,
            file_output=file_output,
            auto_cleanup=False,
        )
    return _global_logger


def configure_logger(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    console_output: bool = True,
    file_output: bool = True,
) -> Logger:
    """按配置重建全局 logger（CLI 启动时调用一次）"""
    global _global_logger
    _global_logger = Logger(
        log_file=log_file,
        level=level,
        console_output=console_output,
        file_output=file_output,
    )
    return _global_logger


def set_global_logger(logger: Logger) -> None:
    """设置全局 logger 实例（用于测试或自定义配置）"""
    global _global_logger
    _global_logger = logger


def cleanup_old_logs(log_dir: Optional[Path] = None, max_age_days: int = 14) -> int:
    """清理过期的日志文件（app.log, app.log.1 ...）

    Args:
        log_dir: 日志目录路径，如果为 None 则使用默认路径
        max_age_days: 最大保留天数

    Returns:
        清理的文件数量
    """
    if log_dir is None:
        log_dir = _default_log_dir()
    if not log_dir.exists():
        return 0

    max_age_seconds = max_age_days * 24 * 3600
    now = time.time()
    cleaned_count = 0
    try:
        for log_file in log_dir.iterdir():
            if not log_file.is_file() or not log_file.name.startswith("app.log"):
                continue
            try:
                if now - log_file.stat().st_mtime > max_age_seconds:
                    log_file.unlink()
                    cleaned_count += 1
            except OSError:
                # 被其他进程占用的文件跳过
                continue
    except OSError:
        return cleaned_count
    return cleaned_count
