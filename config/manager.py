"""
配置模型 + 读写逻辑（用户目录）
配置管理器
"""
import json
import os
import platform
from pathlib import Path
from typing import Dict, List, Optional
from dataclasses import dataclass, field

from core.exceptions import ConfigError


def get_user_data_dir() -> Path:
    """获取用户数据目录路径（跨平台）

    - Windows: %APPDATA%/yt2bili/
    - Linux: ~/.config/yt2bili/
    - macOS: ~/Library/Application Support/yt2bili/

    Returns:
        用户数据目录的 Path 对象
    """
    system = platform.system()

    if system == "Windows":
        base_dir = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
    elif system == "Darwin":  # macOS
        base_dir = Path.home() / "Library" / "Application Support"
    else:  # Linux 和其他 Unix-like
        base_dir = Path.home() / ".config"

    data_dir = base_dir / "yt2bili"
    data_dir.mkdir(parents=True, exist_ok=True)

    return data_dir


@dataclass
class OutputConfig:
    """输出目录配置"""
    directory: str = "./downloads"  # 工作目录根
    subtitle_archive: str = "./output"  # 上传完成后字幕归档到 {subtitle_archive}/{aid}/

    def to_dict(self) -> dict:
        return {"directory": self.directory, "subtitle_archive": self.subtitle_archive}

    @classmethod
    def from_dict(cls, data: dict) -> "OutputConfig":
        return cls(
            directory=data.get("directory", "./downloads"),
            subtitle_archive=data.get("subtitle_archive", "./output"),
        )


@dataclass
class YouTubeConfig:
    """YouTube 下载配置

    sleep_interval_seconds 每次调用 yt-dlp 时随机放大 0-50%；
    休息时长（分钟）实际会随机增加 0-10%
    """
    cookies_file: str = ""
    cookies_from_browser: str = ""  # chrome / firefox / safari / edge
    yt_dlp_path: str = "yt-dlp"
    min_height: int = 1080  # 低于该高度视为下载失败
    force_ipv6: bool = True
    disable_android_fallback: bool = True
    retries: int = 3
    fragment_retries: int = 3
    concurrent_fragments: int = 1
    sleep_interval_seconds: int = 60
    sleep_requests_seconds: int = 3
    sleep_subtitles_seconds: int = 2
    buffer_size: str = "1M"
    file_access_retries: int = 5
    limit_rate: str = "10M"
    video_limit_before_rest: int = 10  # 0 表示不休息
    video_limit_rest_duration: int = 60
    bot_detection_threshold: int = 10
    bot_detection_rest_duration: int = 480
    force_download_undownloadable: bool = False
    cleanup_partial_files_on_failure: bool = True
    daily_video_limit: int = 0  # 0 表示不限制
    download_delay_seconds: int = 0  # 视频之间的基础间隔，实际 ×1.0~1.5

    def to_dict(self) -> dict:
        return {
            "cookies_file": self.cookies_file,
            "cookies_from_browser": self.cookies_from_browser,
            "yt_dlp_path": self.yt_dlp_path,
            "min_height": self.min_height,
            "force_ipv6": self.force_ipv6,
            "disable_android_fallback": self.disable_android_fallback,
            "retries": self.retries,
            "fragment_retries": self.fragment_retries,
            "concurrent_fragments": self.concurrent_fragments,
            "sleep_interval_seconds": self.sleep_interval_seconds,
            "sleep_requests_seconds": self.sleep_requests_seconds,
            "sleep_subtitles_seconds": self.sleep_subtitles_seconds,
            "buffer_size": self.buffer_size,
            "file_access_retries": self.file_access_retries,
            "limit_rate": self.limit_rate,
            "video_limit_before_rest": self.video_limit_before_rest,
            "video_limit_rest_duration": self.video_limit_rest_duration,
            "bot_detection_threshold": self.bot_detection_threshold,
            "bot_detection_rest_duration": self.bot_detection_rest_duration,
            "force_download_undownloadable": self.force_download_undownloadable,
            "cleanup_partial_files_on_failure": self.cleanup_partial_files_on_failure,
            "daily_video_limit": self.daily_video_limit,
            "download_delay_seconds": self.download_delay_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "YouTubeConfig":
        default = cls()
        values = {}
        for key, value in default.to_dict().items():
            values[key] = data.get(key, value)
        return cls(**values)


@dataclass
class BilibiliConfig:
    """B 站上传配置"""
    base_url: str = "https://www.bilibili.tv/en/"
    cookies_file: str = ""  # 全局 cookies（账号未配置时使用）
    daily_upload_limit: int = 160  # 每个账号每日上传上限
    upload_subtitles: bool = False
    chunk_upload_retries: int = 5
    chunk_retry_backoff_seconds: int = 1  # 第 n 次重试等待 n × 该值 秒
    delete_original_after_upload: bool = True
    ffmpeg_path: str = "ffmpeg"

    def to_dict(self) -> dict:
        return {
            "base_url": self.base_url,
            "cookies_file": self.cookies_file,
            "daily_upload_limit": self.daily_upload_limit,
            "upload_subtitles": self.upload_subtitles,
            "chunk_upload_retries": self.chunk_upload_retries,
            "chunk_retry_backoff_seconds": self.chunk_retry_backoff_seconds,
            "delete_original_after_upload": self.delete_original_after_upload,
            "ffmpeg_path": self.ffmpeg_path,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BilibiliConfig":
        default = cls()
        values = {}
        for key, value in default.to_dict().items():
            values[key] = data.get(key, value)
        return cls(**values)


@dataclass
class SubtitlesConfig:
    auto_fix_overlap: bool = False
    languages: List[str] = field(default_factory=list)  # 为空表示下载全部

    def to_dict(self) -> dict:
        return {"auto_fix_overlap": self.auto_fix_overlap, "languages": list(self.languages)}

    @classmethod
    def from_dict(cls, data: dict) -> "SubtitlesConfig":
        return cls(
            auto_fix_overlap=data.get("auto_fix_overlap", False),
            languages=list(data.get("languages") or []),
        )


@dataclass
class ChannelConfig:
    """单个 YouTube 频道

    offset/limit 基于 channel_info.json 的顺序，用于把大频道分给多台机器
    """
    url: str = ""
    languages: List[str] = field(default_factory=list)
    offset: int = 0
    limit: int = 0  # <= 0 表示不限制
    account: str = ""  # 指定上传账号，为空则随机轮转

    def to_dict(self) -> dict:
        return {
            "url": self.url,
            "languages": list(self.languages),
            "offset": self.offset,
            "limit": self.limit,
            "account": self.account,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChannelConfig":
        return cls(
            url=(data.get("url") or "").strip(),
            languages=list(data.get("languages") or []),
            offset=int(data.get("offset") or 0),
            limit=int(data.get("limit") or 0),
            account=data.get("account") or "",
        )


@dataclass
class AccountConfig:
    """B 站上传账号"""
    username: str = ""
    cookies_file: str = ""  # 优先于 bilibili.cookies_file

    def to_dict(self) -> dict:
        return {"username": self.username, "cookies_file": self.cookies_file}

    @classmethod
    def from_dict(cls, data: dict) -> "AccountConfig":
        return cls(
            username=data.get("username", ""),
            cookies_file=data.get("cookies_file", ""),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file_path: str = ""  # 为空时写入用户数据目录 logs/app.log
    console: bool = True

    def to_dict(self) -> dict:
        return {"level": self.level, "file_path": self.file_path, "console": self.console}

    @classmethod
    def from_dict(cls, data: dict) -> "LoggingConfig":
        return cls(
            level=data.get("level", "INFO"),
            file_path=data.get("file_path", ""),
            console=data.get("console", True),
        )


@dataclass
class AppConfig:
    """应用配置模型

    所有可持久化配置的统一入口
    """
    output: OutputConfig = field(default_factory=OutputConfig)
    youtube: YouTubeConfig = field(default_factory=YouTubeConfig)
    bilibili: BilibiliConfig = field(default_factory=BilibiliConfig)
    subtitles: SubtitlesConfig = field(default_factory=SubtitlesConfig)
    channels: List[ChannelConfig] = field(default_factory=list)
    accounts: Dict[str, AccountConfig] = field(default_factory=dict)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    generate_pending_downloads: bool = True

    def to_dict(self) -> dict:
        """转换为字典（用于 JSON 序列化）"""
        return {
            "output": self.output.to_dict(),
            "youtube": self.youtube.to_dict(),
            "bilibili": self.bilibili.to_dict(),
            "subtitles": self.subtitles.to_dict(),
            "channels": [c.to_dict() for c in self.channels],
            "accounts": {name: a.to_dict() for name, a in self.accounts.items()},
            "logging": self.logging.to_dict(),
            "channel": {"generate_pending_downloads": self.generate_pending_downloads},
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AppConfig":
        """从字典创建（用于 JSON 反序列化）"""
        return cls(
            output=OutputConfig.from_dict(data.get("output") or {}),
            youtube=YouTubeConfig.from_dict(data.get("youtube") or {}),
            bilibili=BilibiliConfig.from_dict(data.get("bilibili") or {}),
            subtitles=SubtitlesConfig.from_dict(data.get("subtitles") or {}),
            channels=[ChannelConfig.from_dict(c) for c in data.get("channels") or []],
            accounts={
                name: AccountConfig.from_dict(a or {})
                for name, a in (data.get("accounts") or {}).items()
            },
            logging=LoggingConfig.from_dict(data.get("logging") or {}),
            generate_pending_downloads=(data.get("channel") or {}).get(
                "generate_pending_downloads", True
            ),
        )

    @classmethod
    def default(cls) -> "AppConfig":
        """创建默认配置"""
        return cls()

    def validate(self) -> None:
        """检查配置，一次列出所有问题

        Raises:
            ConfigError: 存在任何问题
        """
        problems = []
        if not self.output.directory.strip():
            problems.append("output.directory 不能为空")
        if not self.bilibili.base_url.strip():
            problems.append("bilibili.base_url 不能为空")
        if self.youtube.min_height <= 0:
            problems.append("youtube.min_height 必须大于 0")
        for i, channel in enumerate(self.channels):
            if not channel.url:
                problems.append(f"channels[{i}] 缺少 url")
            if channel.account and channel.account not in self.accounts:
                problems.append(f"channels[{i}] 指定的账号未定义: {channel.account}")
        for name, account in self.accounts.items():
            if not account.username:
                problems.append(f"accounts.{name} 缺少 username")
            if not account.cookies_file and not self.bilibili.cookies_file:
                problems.append(f"accounts.{name} 缺少 cookies_file，且未配置 bilibili.cookies_file")
        if problems:
            raise ConfigError("配置校验失败: " + "; ".join(problems))

    def find_channel(self, url: str) -> Optional[ChannelConfig]:
        for channel in self.channels:
            if channel.url == url:
                return channel
        return None

    def channel_languages(self, channel: ChannelConfig) -> List[str]:
        """频道自己的语言列表优先，否则用全局 subtitles.languages"""
        return list(channel.languages or self.subtitles.languages)

    def cookies_for_account(self, name: str) -> str:
        account = self.accounts.get(name)
        if account and account.cookies_file:
            return account.cookies_file
        return self.bilibili.cookies_file


class ConfigManager:
    """配置管理器

    负责读写 config.json（默认位于用户数据目录）
    """

    def __init__(self, config_file: Optional[Path] = None):
        """初始化配置管理器

        Args:
            config_file: 配置文件路径，如果为 None 则使用默认路径
        """
        if config_file is None:
            self.data_dir = get_user_data_dir()
            self.config_file = self.data_dir / "config.json"
        else:
            self.config_file = Path(config_file)
            self.data_dir = self.config_file.parent

        self.data_dir.mkdir(parents=True, exist_ok=True)
        (self.data_dir / "logs").mkdir(exist_ok=True)

    def load(self) -> AppConfig:
        """加载配置

        文件不存在时写入默认配置并返回；文件损坏时备份为 config.json.bak 并报错

        Raises:
            ConfigError: 配置文件无法解析
        """
        if not self.config_file.exists():
            config = AppConfig.default()
            self.save(config)
            return config

        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError("配置文件顶层必须是对象")
            return AppConfig.from_dict(data)
        except (json.JSONDecodeError, KeyError, ValueError, TypeError) as e:
            backup_file = self.config_file.with_suffix(".json.bak")
            try:
                self.config_file.replace(backup_file)
            except OSError:
                backup_file = self.config_file
            raise ConfigError(f"配置文件损坏，已备份到 {backup_file}", cause=e) from e
        except OSError as e:
            raise ConfigError(f"读取配置文件失败: {self.config_file}", cause=e) from e

    def save(self, config: AppConfig) -> None:
        """保存配置

        Raises:
            ConfigError: 写入失败
        """
        temp_file = self.config_file.with_suffix(".json.tmp")
        try:
            # 先写入临时文件，再重命名（原子操作）
            with open(temp_file, "w", encoding="utf-8") as f:
                json.dump(config.to_dict(), f, ensure_ascii=False, indent=2)
            temp_file.replace(self.config_file)
        except OSError as e:
            raise ConfigError(f"保存配置文件失败: {self.config_file}", cause=e) from e

    def get_logs_dir(self) -> Path:
        """获取日志目录"""
        return self.data_dir / "logs"
