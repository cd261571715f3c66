"""
频道解析模块
调用 yt-dlp 的 flat-playlist 模式获取频道视频列表（不访问每个视频页面）
"""

import json
import subprocess
from dataclasses import dataclass
from typing import List, Optional, Tuple

from config.manager import YouTubeConfig
from core.exceptions import ExtractorError, TransientError, preview_text
from core.logger import get_logger
from core.models import VideoInfo
from core.subprocess_utils import run_command
from core.url_parser import extract_channel_id
from core.ytdlp_args import build_parser_args
from core.ytdlp_errors import extract_error_message

logger = get_logger()

# 大频道的 flat-playlist 也可能需要几分钟
PARSE_TIMEOUT_SECONDS = 1800


@dataclass
class ParseStats:
    """逐行解析的统计"""
    total: int = 0
    empty: int = 0
    parse_errors: int = 0
    skipped_by_type: int = 0
    missing_fields: int = 0
    valid: int = 0

    def summary(self) -> str:
        return (
            f"总行数={self.total}, 空行={self.empty}, 解析错误={self.parse_errors}, "
            f"跳过类型={self.skipped_by_type}, 缺少字段={self.missing_fields}, 有效视频={self.valid}"
        )


def parse_flat_playlist(output: str, channel_url: str = "") -> Tuple[List[VideoInfo], ParseStats]:
    """解析 --dump-json 输出（每行一个 JSON）

    无法解码、_type 不是 "url"、缺少 id/title 的行计数后跳过
    """
    stats = ParseStats()
    videos: List[VideoInfo] = []
    lines = output.split("\n") if output else []
    stats.total = len(lines)

    for position, line in enumerate(lines, 1):
        line = line.strip()
        if not line:
            stats.empty += 1
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            stats.parse_errors += 1
            continue
        if not isinstance(data, dict):
            stats.parse_errors += 1
            continue

        if data.get("_type") != "url":
            stats.skipped_by_type += 1
            continue

        video_id = data.get("id") or ""
        title = data.get("title") or ""
        if not video_id or not title:
            stats.missing_fields += 1
            continue

        # flat-playlist 模式下 channel_id / channel 经常为 null
        channel_id = data.get("channel_id") or data.get("playlist_channel_id")
        channel_name = (
            data.get("channel")
            or data.get("playlist_uploader")
            or data.get("playlist_channel")
        )
        videos.append(
            VideoInfo(
                video_id=video_id,
                url=data.get("url") or f"https://www.youtube.com/watch?v={video_id}",
                title=title,
                playlist_index=int(data.get("playlist_index") or position),
                channel_id=channel_id,
                channel_name=channel_name,
                channel_url=data.get("channel_url") or channel_url or None,
                duration=data.get("duration"),
                upload_date=data.get("upload_date"),
                description=data.get("description"),
            )
        )
        stats.valid += 1

    return videos, stats


class VideoFetcher:
    """频道解析器

    负责从频道 URL 中提取有序的视频列表
    """

    def __init__(self, config: YouTubeConfig):
        self.config = config
        self.yt_dlp_path = config.yt_dlp_path or "yt-dlp"

    def extract_videos(self, channel_url: str) -> List[VideoInfo]:
        """获取频道的所有视频（保持 yt-dlp 输出顺序）

        Raises:
            ExtractorError: 没有解析出任何视频
            TransientError: yt-dlp 超时或无法启动
        """
        cmd = [self.yt_dlp_path] + build_parser_args(channel_url, self.config)
        logger.info(f"开始解析频道: {channel_url}", channel=extract_channel_id(channel_url))

        try:
            result = run_command(cmd, timeout=PARSE_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired as e:
            raise TransientError(
                f"解析频道超时: {channel_url}", cause=e, component="parser"
            ) from e
        except OSError as e:
            raise TransientError(
                f"无法启动 yt-dlp: {self.yt_dlp_path}", cause=e, component="parser"
            ) from e

        videos, stats = parse_flat_playlist(result.stdout or "", channel_url)
        logger.debug(f"频道解析统计: {stats.summary()}", url=channel_url)

        if stats.valid == 0:
            output = (result.stdout or "") + "\n" + (result.stderr or "")
            error = ExtractorError(
                f"频道解析失败，未获取到任何视频（退出码 {result.returncode}）: "
                f"{preview_text(extract_error_message(result.stderr or ''), 300)}",
                preview=output,
                component="parser",
            )
            logger.error(str(error), url=channel_url, exit_code=result.returncode, error_type=error.error_type.value)
            raise error

        if result.returncode != 0:
            logger.warning(
                f"yt-dlp 退出码非零，但已解析出 {stats.valid} 个视频",
                url=channel_url,
                exit_code=result.returncode,
            )
        logger.info(f"频道解析完成: {len(videos)} 个视频（{stats.summary()}）", url=channel_url)
        return videos

    def check_installed(self) -> Optional[str]:
        """返回 yt-dlp 版本号，不可用时返回 None"""
        try:
            result = run_command([self.yt_dlp_path, "--version"], timeout=10)
        except (OSError, subprocess.TimeoutExpired):
            return None
        if result.returncode != 0:
            return None
        return result.stdout.strip()
