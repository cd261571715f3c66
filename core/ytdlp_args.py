"""
yt-dlp 命令行参数构建

下载参数由五个互不重叠的构建函数拼出来：
- base：输出模板、缩略图、info.json、IPv4/IPv6
- cookies：cookies 文件或浏览器
- subtitles：字幕语言、转 SRT
- stability：重试、分片、休眠、并发
- format：最低分辨率格式选择与封装容器

同一个参数只允许出现在一个构建函数里。
"""

import os
import random
from pathlib import Path
from typing import List, Optional, Sequence

from config.manager import YouTubeConfig
from core.models import Strategy
from core.subprocess_utils import find_executable

OUTPUT_TEMPLATE = "%(id)s_%(height)sp.%(ext)s"

PARSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/131.0.0.0 Safari/537.36"
)


def build_base_args(video_dir: Path, config: YouTubeConfig) -> List[str]:
    args = [
        "-o", os.path.join(str(video_dir), OUTPUT_TEMPLATE),
        "--write-thumbnail",
        "--convert-thumbnails", "jpg",
        "--embed-thumbnail",
        "--write-info-json",
        "--write-description",
    ]
    args.append("--force-ipv6" if config.force_ipv6 else "--force-ipv4")
    return args


def build_cookies_args(include_cookies: bool, cookies_file: str = "", cookies_from_browser: str = "") -> List[str]:
    """cookies 文件优先于浏览器；策略不带 cookies 时返回空列表"""
    if not include_cookies:
        return []
    if cookies_file:
        return ["--cookies", os.path.abspath(cookies_file)]
    if cookies_from_browser:
        return ["--cookies-from-browser", cookies_from_browser]
    return []


def build_subtitle_args(languages: Optional[Sequence[str]], ffmpeg_available: Optional[bool] = None) -> List[str]:
    """字幕参数；有 ffmpeg 时让 yt-dlp 直接转为 SRT"""
    args = ["--write-sub", "--write-auto-sub"]
    langs = [lang for lang in (languages or []) if lang]
    args.extend(["--sub-langs", ",".join(langs) if langs else "all"])
    if ffmpeg_available is None:
        ffmpeg_available = find_executable("ffmpeg") is not None
    if ffmpeg_available:
        args.extend(["--convert-subs", "srt"])
    return args


def jittered_sleep_interval(base_seconds: int) -> int:
    """在基础值上随机放大 0-50%"""
    return int(base_seconds * (1.0 + random.random() * 0.5))


def build_stability_args(config: YouTubeConfig) -> List[str]:
    args = [
        "--retries", str(config.retries or 3),
        "--fragment-retries", str(config.fragment_retries or 3),
        "--skip-unavailable-fragments",
        "--sleep-interval", str(jittered_sleep_interval(config.sleep_interval_seconds or 60)),
        "--concurrent-fragments", str(config.concurrent_fragments or 1),
        "--sleep-requests", str(config.sleep_requests_seconds or 3),
        "--sleep-subtitles", str(config.sleep_subtitles_seconds or 2),
        "--buffer-size", config.buffer_size or "1M",
        "--file-access-retries", str(config.file_access_retries or 5),
    ]
    if config.limit_rate:
        args.extend(["--limit-rate", config.limit_rate])
    return args


def build_format_args(min_height: int = 1080) -> List[str]:
    if min_height <= 0:
        min_height = 1080
    return [
        "-f", f"bv*[height>={min_height}]+ba/b[height>={min_height}]",
        "--merge-output-format", "mp4",
    ]


def build_player_client_args(player_client: str) -> List[str]:
    if not player_client:
        return []
    return ["--extractor-args", f"youtube:player_client={player_client}"]


def build_download_args(
    video_dir: Path,
    video_url: str,
    config: YouTubeConfig,
    strategy: Strategy,
    languages: Optional[Sequence[str]] = None,
    ffmpeg_available: Optional[bool] = None,
) -> List[str]:
    """按策略拼出完整的下载参数（不含可执行文件本身）"""
    args: List[str] = []
    args.extend(build_base_args(video_dir, config))
    args.extend(build_cookies_args(strategy.include_cookies, config.cookies_file, config.cookies_from_browser))
    args.extend(build_subtitle_args(languages, ffmpeg_available))
    args.extend(build_stability_args(config))
    args.extend(build_format_args(config.min_height))
    args.extend(build_player_client_args(strategy.player_client))
    args.append(video_url)
    return args


def build_parser_args(channel_url: str, config: YouTubeConfig) -> List[str]:
    """频道解析参数：flat-playlist，每行一个 JSON，不访问视频页面"""
    args = [
        "--flat-playlist",
        "--dump-json",
        "--no-warnings",
        "--extractor-args", "youtube:player_client=android,ios,web",
        "--user-agent", PARSER_USER_AGENT,
        "--referer", "https://www.youtube.com/",
        "--add-header", "Accept-Language:en-US,en;q=0.9",
    ]
    args.extend(build_cookies_args(True, config.cookies_file, config.cookies_from_browser))
    args.append(channel_url)
    return args


def flag_names(args: Sequence[str]) -> List[str]:
    """参数列表中的所有选项名（以 - 开头的项）"""
    return [a for a in args if a.startswith("-")]
