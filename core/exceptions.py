"""
统一异常定义
下载 / 上传流水线的错误分类，每种错误都对应一种恢复策略
"""
from enum import Enum
from typing import Optional


PREVIEW_LIMIT = 500


class ErrorType(str, Enum):
    """统一错误类型枚举

    所有模块抛错必须映射到以下类型，编排器根据类型决定恢复方式
    """
    CONFIG = "config"  # 配置缺失或非法，进程直接退出
    STORAGE = "storage"  # 工作目录读写失败
    EXTRACTOR = "extractor"  # yt-dlp 输出 ERROR 行
    BOT_DETECTED = "bot_detected"  # YouTube 要求登录确认非机器人
    STUCK = "stuck"  # 下载目录字节数长时间不变
    TRANSIENT = "transient"  # 网络抖动、HTTP 5xx、非零退出码
    AUTH = "auth"  # Cookie 失效、缺少 CSRF
    UPLOAD = "upload"  # 分片耗尽重试、提交失败
    PUBLISH = "publish"  # 投稿接口返回 code != 0
    MISSING_COVER = "missing_cover"  # 找不到封面文件
    CANCELLED = "cancelled"  # 用户主动取消（CancelToken）
    UNKNOWN = "unknown"  # 无法归类的其他错误


def preview_text(text: Optional[str], limit: int = PREVIEW_LIMIT) -> str:
    """截断长文本用于日志和错误信息

    Args:
        text: 原始文本
        limit: 最大字符数

    Returns:
        截断后的文本，超长时追加 "..."
    """
    if not text:
        return ""
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class AppException(Exception):
    """统一应用异常

    Attributes:
        error_type: 错误类型（ErrorType 枚举）
        cause: 原始异常（可选）
        component: 抛出错误的组件名（workdir / downloader / uploader ...）
        preview: 相关输出或响应的截断预览
    """

    def __init__(
        self,
        message: str,
        *,
        error_type: ErrorType,
        cause: Optional[Exception] = None,
        component: Optional[str] = None,
        preview: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_type = error_type
        self.cause = cause
        self.component = component
        self.preview = preview_text(preview) if preview else None

    def __str__(self) -> str:
        base = f"[{self.error_type.value}] {super().__str__()}"
        if self.cause:
            base += f" (caused by: {type(self.cause).__name__}: {self.cause})"
        return base


class ConfigError(AppException):
    """配置错误，进程以退出码 1 结束"""

    def __init__(self, message: str, *, cause: Optional[Exception] = None):
        super().__init__(message, error_type=ErrorType.CONFIG, cause=cause, component="config")


class StorageError(AppException):
    """工作目录 I/O 错误，当前视频失败但编排器继续"""

    def __init__(self, message: str, *, cause: Optional[Exception] = None):
        super().__init__(message, error_type=ErrorType.STORAGE, cause=cause, component="workdir")


class ExtractorError(AppException):
    """yt-dlp 报告了错误（格式不可用、解析失败等）"""

    def __init__(self, message: str, *, preview: Optional[str] = None, component: str = "downloader"):
        super().__init__(
            message, error_type=ErrorType.EXTRACTOR, component=component, preview=preview
        )


class UndownloadableError(ExtractorError):
    """视频永久不可下载（私有、已删除、会员专属、地区限制）"""


class BotDetectedError(AppException):
    """触发 YouTube 机器人检测"""

    def __init__(self, message: str = "触发 YouTube 机器人检测", *, preview: Optional[str] = None):
        super().__init__(
            message, error_type=ErrorType.BOT_DETECTED, component="downloader", preview=preview
        )


class StuckError(AppException):
    """下载卡住：目录字节数在停滞窗口内没有变化"""

    def __init__(self, message: str = "stuck", *, preview: Optional[str] = None):
        super().__init__(message, error_type=ErrorType.STUCK, component="downloader", preview=preview)


class TransientError(AppException):
    """可重试的临时错误（网络、HTTP 5xx、非零退出码）"""

    def __init__(
        self,
        message: str,
        *,
        cause: Optional[Exception] = None,
        component: Optional[str] = None,
        preview: Optional[str] = None,
    ):
        super().__init__(
            message,
            error_type=ErrorType.TRANSIENT,
            cause=cause,
            component=component,
            preview=preview,
        )


class AuthError(AppException):
    """认证错误：缺少 CSRF、Cookie 失效"""

    def __init__(self, message: str, *, cause: Optional[Exception] = None):
        super().__init__(message, error_type=ErrorType.AUTH, cause=cause, component="uploader")


class UploadError(AppException):
    """上传错误：分片重试耗尽、提交失败、封面上传失败"""

    def __init__(
        self,
        message: str,
        *,
        cause: Optional[Exception] = None,
        preview: Optional[str] = None,
    ):
        super().__init__(
            message, error_type=ErrorType.UPLOAD, cause=cause, component="uploader", preview=preview
        )


class PublishError(AppException):
    """投稿接口返回非零 code

    Attributes:
        code: 接口返回的错误码
        response_message: 接口返回的错误信息
        request_preview: 请求体预览
    """

    def __init__(
        self,
        code: int,
        response_message: str,
        *,
        request_preview: Optional[str] = None,
        response_preview: Optional[str] = None,
    ):
        super().__init__(
            f"投稿失败: code={code}, message={response_message}",
            error_type=ErrorType.PUBLISH,
            component="uploader",
            preview=response_preview,
        )
        self.code = code
        self.response_message = response_message
        self.request_preview = preview_text(request_preview) if request_preview else None


class MissingCoverError(AppException):
    """视频目录中没有可用的封面文件"""

    def __init__(self, video_dir: str):
        super().__init__(
            f"未找到封面文件: {video_dir}",
            error_type=ErrorType.MISSING_COVER,
            component="uploader",
        )
        self.video_dir = video_dir


class TaskCancelledError(AppException):
    """任务已取消异常

    根取消令牌被触发后由各阻塞点抛出，编排器在视频之间退出
    """

    def __init__(self, reason: Optional[str] = None):
        message = f"任务已取消{f'：{reason}' if reason else ''}"
        super().__init__(message=message, error_type=ErrorType.CANCELLED)
        self.reason = reason
