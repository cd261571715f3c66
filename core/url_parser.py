"""
YouTube URL 解析器模块
从频道 URL 推导稳定的频道目录名，从视频 URL 提取 video_id
"""

import re
from typing import Optional


YOUTUBE_PATTERNS = {
    "video": re.compile(
        r"(?:youtube\.com/watch\?(?:.*&)?v=|youtu\.be/|youtube\.com/shorts/)([a-zA-Z0-9_-]{11})"
    ),
    "handle": re.compile(r"youtube\.com/@([^/?#]+)"),
    "channel": re.compile(r"youtube\.com/channel/([^/?#]+)"),
}


def identify_url_type(url: str) -> str:
    """识别 YouTube URL 类型

    Returns:
        'video', 'channel', 'playlist', 'unknown'
    """
    url_lower = url.lower()

    if "watch?" in url_lower or "youtu.be/" in url_lower or "/shorts/" in url_lower:
        return "video"
    if "playlist?list=" in url_lower:
        return "playlist"
    if any(x in url_lower for x in ["/c/", "/user/", "/channel/", "/@"]):
        return "channel"
    return "unknown"


def extract_video_id(url: str) -> Optional[str]:
    """从 URL 中提取视频 ID，无法提取时返回 None"""
    match = YOUTUBE_PATTERNS["video"].search(url or "")
    if match:
        return match.group(1)
    return None


def extract_channel_id(channel_url: str) -> str:
    """从频道 URL 推导频道目录名

    - https://www.youtube.com/@name/videos → name
    - https://www.youtube.com/channel/UCxxxx → UCxxxx
    - 其他 URL：把 "/" 和 ":" 替换为 "_"

    Args:
        channel_url: 频道 URL

    Returns:
        频道标识（同一 URL 总是得到同一结果）
    """
    channel_url = (channel_url or "").strip()

    match = YOUTUBE_PATTERNS["handle"].search(channel_url)
    if match:
        return match.group(1).strip()

    match = YOUTUBE_PATTERNS["channel"].search(channel_url)
    if match:
        return match.group(1).strip()

    return channel_url.replace("/", "_").replace(":", "_")
