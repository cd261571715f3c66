"""
yt-dlp 错误分类模块

把一次 yt-dlp 运行的结果（输出、退出码、是否被停滞检测杀掉）映射为 AppException。
判定顺序：机器人检测 → 停滞 → 永久不可下载 → ERROR 行 → 非零退出码。
"""

from typing import Optional

from core.exceptions import (
    AppException,
    BotDetectedError,
    ExtractorError,
    StuckError,
    TransientError,
    UndownloadableError,
    preview_text,
)

# 区分大小写匹配，与 yt-dlp 原文一致
BOT_KEYWORDS = (
    "Sign in to confirm",
    "confirm you're not a bot",
    "not a bot",
    "authentication",
    "bot detection",
)

# 视频本身不可用，换策略也没有意义
UNDOWNLOADABLE_KEYWORDS = (
    "Private video",
    "Video unavailable",
    "This video has been removed",
    "members-only",
    "Join this channel",
    "not available in your country",
)

FORMAT_UNAVAILABLE = "Requested format is not available"

OUTPUT_PREVIEW_LIMIT = 800


def is_bot_detection(output: str) -> bool:
    """输出中是否包含机器人检测关键词"""
    if not output:
        return False
    return any(keyword in output for keyword in BOT_KEYWORDS)


def is_error_line(line: str) -> bool:
    """以 "ERROR:" 开头的行才算错误，WARNING 不算"""
    return line.strip().startswith("ERROR:")


def has_error_line(output: str) -> bool:
    if not output:
        return False
    return any(is_error_line(line) for line in output.splitlines())


def is_undownloadable(output: str) -> bool:
    if not output:
        return False
    return any(keyword in output for keyword in UNDOWNLOADABLE_KEYWORDS)


def extract_error_message(output: str) -> str:
    """从 yt-dlp 输出中提取 ERROR 行，过滤掉 WARNING 与进度信息

    Returns:
        ERROR 行（多行以换行拼接）；没有 ERROR 行时返回原始输出
    """
    if not output:
        return ""
    error_lines = [line.strip() for line in output.splitlines() if is_error_line(line)]
    if not error_lines:
        return output.strip()
    return "\n".join(error_lines)


def classify_run(output: str, exit_code: Optional[int], stalled: bool = False) -> Optional[AppException]:
    """对一次 yt-dlp 运行做分类

    Args:
        output: stdout + stderr 的完整输出
        exit_code: 进程退出码（被杀时可能为负数或 None）
        stalled: 是否被停滞检测杀掉

    Returns:
        None 表示成功（退出码 0 且没有 ERROR 行）；否则返回对应的异常实例
    """
    preview = preview_text(output, OUTPUT_PREVIEW_LIMIT)

    if is_bot_detection(output):
        return BotDetectedError(preview=preview)

    if stalled:
        return StuckError(preview=preview)

    if has_error_line(output):
        message = preview_text(extract_error_message(output), 300)
        if is_undownloadable(output):
            return UndownloadableError(f"视频不可下载: {message}", preview=preview)
        return ExtractorError(f"yt-dlp 报错: {message}", preview=preview)

    if exit_code not in (0, None):
        return TransientError(
            f"yt-dlp 异常退出，退出码 {exit_code}", component="downloader", preview=preview
        )

    if exit_code is None:
        return TransientError("yt-dlp 未正常退出", component="downloader", preview=preview)

    return None


def is_format_unavailable(output: str) -> bool:
    """分辨率门槛导致的失败（最低高度的格式不存在）"""
    return bool(output) and FORMAT_UNAVAILABLE in output
