"""
数据模型定义
视频描述、下载策略、下载结果、上传请求
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional


@dataclass
class VideoInfo:
    """视频描述（频道解析器的输出单元）

    对应 channel_info.json 中的一条记录，(channel_id, video_id) 唯一
    """

    video_id: str  # 视频 ID（11 位）
    url: str  # 完整 URL
    title: str  # 视频标题
    playlist_index: int = 0  # 在频道列表中的位置（从 1 开始）
    channel_id: Optional[str] = None  # 频道 ID（如 "UCxxxxxx"）
    channel_name: Optional[str] = None  # 频道名称
    channel_url: Optional[str] = None  # 频道 URL
    duration: Optional[float] = None  # 视频时长（秒）
    upload_date: Optional[str] = None  # 上传日期（YYYYMMDD 格式）
    description: Optional[str] = None  # 视频描述（flat-playlist 下通常为空）

    def __str__(self) -> str:
        return f"{self.video_id} - {self.title}"

    def to_dict(self) -> Dict[str, Any]:
        """转换为 channel_info.json 条目"""
        data: Dict[str, Any] = {
            "id": self.video_id,
            "title": self.title,
            "url": self.url,
            "playlist_index": self.playlist_index,
        }
        optional = {
            "channel_id": self.channel_id,
            "channel": self.channel_name,
            "channel_url": self.channel_url,
            "duration": self.duration,
            "upload_date": self.upload_date,
            "description": self.description,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VideoInfo":
        video_id = data.get("id") or data.get("video_id") or ""
        url = data.get("url") or ""
        if not url and video_id:
            url = f"https://www.youtube.com/watch?v={video_id}"
        return cls(
            video_id=video_id,
            url=url,
            title=data.get("title") or "",
            playlist_index=int(data.get("playlist_index") or 0),
            channel_id=data.get("channel_id"),
            channel_name=data.get("channel") or data.get("channel_name"),
            channel_url=data.get("channel_url"),
            duration=data.get("duration"),
            upload_date=data.get("upload_date"),
            description=data.get("description"),
        )


@dataclass(frozen=True)
class Strategy:
    """一次 yt-dlp 尝试的参数组合

    策略之间只有命令行参数不同，作为配置值而不是多态类型
    """

    player_client: str
    include_cookies: bool
    pre_sleep: float = 0.0

    def describe(self) -> str:
        cookies = "cookies" if self.include_cookies else "no-cookies"
        return f"{self.player_client}/{cookies}"


def default_strategies(disable_android_fallback: bool = True) -> List[Strategy]:
    """默认策略序列：web+cookies → web 无 cookies → android 无 cookies（可关闭）"""
    strategies = [
        Strategy("web", True, 0),
        Strategy("web", False, 3),
    ]
    if not disable_android_fallback:
        strategies.append(Strategy("android", False, 3))
    return strategies


@dataclass
class DownloadResult:
    """单个视频下载成功后的产物"""

    video_id: str
    video_dir: Path
    video_path: Path
    height: Optional[int] = None
    has_1080p: bool = False
    subtitle_paths: List[Path] = field(default_factory=list)
    attempts: int = 1


@dataclass
class UploadRequest:
    """上传器的输入"""

    video_path: Path
    title: str
    description: str = ""
    subtitle_paths: List[Path] = field(default_factory=list)
    account: str = ""
    video_dir: Optional[Path] = None

    def __post_init__(self):
        self.video_path = Path(self.video_path)
        if self.video_dir is None:
            self.video_dir = self.video_path.parent
        self.subtitle_paths = [Path(p) for p in self.subtitle_paths]
